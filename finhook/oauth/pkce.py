"""PKCE (RFC 7636) helpers and the Connect relay session protocol.

The verifier never leaves this process until retrieval: the relay session is
created with the challenge only, and the relay must re-derive the challenge
from the presented verifier before releasing the stored credential.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Literal

import httpx
from pydantic import BaseModel

from finhook.config import DEFAULT_CONNECT_RELAY_URL
from finhook.errors import RelayError, classify_exception

logger = logging.getLogger(__name__)

CodeChallengeMethod = Literal["S256", "plain"]

MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_code_verifier(length: int = MAX_VERIFIER_LENGTH) -> str:
    """Random verifier from the unreserved set; length clamped to 43..128."""
    length = max(MIN_VERIFIER_LENGTH, min(MAX_VERIFIER_LENGTH, length))
    return _b64url(secrets.token_bytes(length))[:length]


def generate_code_challenge(code_verifier: str, method: CodeChallengeMethod = "S256") -> str:
    if method == "plain":
        return code_verifier
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


@dataclass(frozen=True)
class PKCEPair:
    code_verifier: str
    code_challenge: str
    code_challenge_method: CodeChallengeMethod = "S256"


def generate_pkce_pair(
    method: CodeChallengeMethod = "S256",
    verifier_length: int = MAX_VERIFIER_LENGTH,
) -> PKCEPair:
    verifier = generate_code_verifier(verifier_length)
    return PKCEPair(verifier, generate_code_challenge(verifier, method), method)


def verify_pkce(
    code_challenge: str,
    code_verifier: str,
    method: CodeChallengeMethod = "S256",
) -> bool:
    """True iff ``code_verifier`` derives ``code_challenge`` under ``method``."""
    if not code_verifier.isascii() or not code_challenge.isascii():
        return False
    expected = generate_code_challenge(code_verifier, method)
    return hmac.compare_digest(expected, code_challenge)


# --- Connect relay protocol ---


class ConnectSession(BaseModel):
    session_id: str
    expires_in: int = 0


class RelayCredential(BaseModel):
    session_id: str = ""
    provider: str = ""
    public_token: str | None = None
    access_token: str | None = None
    metadata: str | None = None
    retrieval_count: int | None = None

    @property
    def token(self) -> str | None:
        return self.public_token or self.access_token


class ConnectRelayClient:
    """Client for ``{relay}/api/connect/*`` session endpoints."""

    def __init__(
        self,
        relay_url: str = DEFAULT_CONNECT_RELAY_URL,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.relay_url = relay_url.rstrip("/")
        self._client = client

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.request(method, url, **kwargs)
            async with httpx.AsyncClient() as client:
                return await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise classify_exception(exc, relay_url=self.relay_url) from exc

    @staticmethod
    def _unwrap(resp: httpx.Response, action: str) -> dict[str, Any] | None:
        """Return ``data`` from a ``{success, data, message}`` envelope or raise."""
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        message = payload.get("message") or payload.get("error")
        if not resp.is_success:
            raise RelayError(
                message or f"Failed to {action}: {resp.status_code}",
                status_code=resp.status_code,
            )
        if not payload.get("success", False):
            raise RelayError(message or f"Failed to {action}", status_code=resp.status_code)
        data = payload.get("data")
        return data if isinstance(data, dict) else None

    async def init_session(self, pair: PKCEPair) -> ConnectSession:
        resp = await self._request(
            "POST",
            f"{self.relay_url}/api/connect/session",
            json={
                "code_challenge": pair.code_challenge,
                "code_challenge_method": pair.code_challenge_method,
            },
            timeout=10.0,
        )
        data = self._unwrap(resp, "init session")
        if not data or not data.get("session_id"):
            raise RelayError("Relay did not return a session ID")
        return ConnectSession.model_validate(data)

    async def retrieve_credential(
        self,
        session_id: str,
        code_verifier: str | None,
        *,
        wait: bool = True,
        timeout: int = 30,
    ) -> RelayCredential | None:
        """Present the verifier; returns None while the credential is not ready."""
        params: dict[str, str] = {}
        if code_verifier is not None:
            params["code_verifier"] = code_verifier
        if wait:
            params.update(wait="true", timeout=str(timeout))
        resp = await self._request(
            "GET",
            f"{self.relay_url}/api/connect/credentials/{session_id}",
            params=params,
            timeout=(timeout + 5) if wait else 10.0,
        )
        data = self._unwrap(resp, "retrieve credential")
        if not data:
            return None
        credential = RelayCredential.model_validate(data)
        return credential if credential.token else None

    async def confirm_deletion(self, session_id: str) -> bool:
        """Ask the relay to drop its copy; failures are logged, never raised."""
        try:
            resp = await self._request(
                "DELETE",
                f"{self.relay_url}/api/connect/credentials/{session_id}",
                timeout=5.0,
            )
        except Exception as exc:
            logger.debug("Credential deletion for %s failed: %s", session_id, exc)
            return False
        return resp.is_success
