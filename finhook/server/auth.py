"""ASGI middleware guarding the operator endpoints with a Bearer token."""

from __future__ import annotations

import hmac
import logging

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger(__name__)

# Providers and the link page cannot present a token; webhook requests carry
# signatures and Connect retrieval carries a PKCE verifier instead.
PUBLIC_PATHS = {"/health"}
PUBLIC_PREFIXES = ("/webhook/", "/api/connect/")


class BearerTokenMiddleware:
    """Validates ``Authorization: Bearer`` with constant-time comparison."""

    def __init__(self, app: ASGIApp, token: str) -> None:
        self.app = app
        self._token = token.encode()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        path = request.url.path
        if path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES):
            await self.app(scope, receive, send)
            return

        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith("Bearer "):
            self._log_failure(request, "missing_token" if not auth_header else "invalid_format")
            await JSONResponse({"error": "Authentication required"}, status_code=401)(scope, receive, send)
            return

        if not hmac.compare_digest(auth_header[7:].encode(), self._token):
            self._log_failure(request, "invalid_token")
            await JSONResponse({"error": "Access denied"}, status_code=403)(scope, receive, send)
            return

        await self.app(scope, receive, send)

    @staticmethod
    def _log_failure(request: Request, reason: str) -> None:
        logger.warning(
            "Rejected %s %s from %s: %s",
            request.method,
            request.url.path,
            request.client.host if request.client else "unknown",
            reason,
        )
