"""FastAPI application for webhook reception."""

from __future__ import annotations

import dataclasses
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Literal

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from finhook.config import AppConfig, ConfigProvider, FileConfigProvider
from finhook.connection.health import HealthChecker
from finhook.connection.selector import ConnectionModeSelector
from finhook.credentials import ConfigCredentialStore, CredentialStore
from finhook.errors import CacheStorageError, RelayError, log_error
from finhook.events.bus import EventBus
from finhook.events.log import EventLog
from finhook.models import WebhookSource
from finhook.oauth.completion import OAuthCompletionService
from finhook.oauth.store import ConnectSessionStore
from finhook.server.auth import BearerTokenMiddleware
from finhook.tasks import PeriodicTask
from finhook.webhook.deduplication import (
    CLEANUP_INTERVAL_SECONDS,
    DeduplicationCache,
    FileDeduplicationCache,
)
from finhook.webhook.handlers import DEFAULT_HANDLERS, HandlerContext
from finhook.webhook.ingress import IngressRateLimiter, client_ip_from_headers
from finhook.webhook.manager import RelayFactory, WebhookManager
from finhook.webhook.models import WebhookErrorCode, WebhookResponse, build_webhook_request
from finhook.webhook.processor import WebhookProcessor
from finhook.webhook.rate_limiter import SyncRateLimiter
from finhook.webhook.router import WebhookRouter
from finhook.webhook.security import WebhookSecurity
from finhook.webhook.sync import HttpSyncProvider, SyncDispatcher, SyncProvider

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    """Everything one receiver instance owns."""

    config: ConfigProvider
    events: EventBus
    processor: WebhookProcessor
    deduplication: DeduplicationCache
    rate_limiter: SyncRateLimiter
    ingress: IngressRateLimiter
    connect_store: ConnectSessionStore
    dispatcher: SyncDispatcher | None = None
    manager: WebhookManager | None = None
    oauth: OAuthCompletionService | None = None


def build_services(
    config: ConfigProvider,
    app_config: AppConfig,
    *,
    sync_provider: SyncProvider | None = None,
    deduplication: DeduplicationCache | None = None,
    secrets: dict[str, str] | None = None,
    event_log: EventLog | None = None,
    relay_factory: RelayFactory | None = None,
    credentials: CredentialStore | None = None,
) -> AppServices:
    """Wire the pipeline from a loaded configuration snapshot.

    ``credentials`` defaults to the configuration-backed store; the same store
    feeds relay health checks and the manager's relay connection.
    """
    events = EventBus()
    if event_log is not None:
        events.on("*", event_log.record)

    deduplication = deduplication or FileDeduplicationCache.in_data_dir(app_config.data_path)
    security_config = app_config.security
    security = None
    if security_config.replay_protection:
        security = WebhookSecurity(
            deduplication,
            max_timestamp_age=security_config.max_timestamp_age,
            future_tolerance=security_config.future_tolerance,
            nonce_ttl=security_config.nonce_ttl,
        )

    rate_limiter = SyncRateLimiter(app_config.rate_limits)
    dispatcher = SyncDispatcher(sync_provider, events) if sync_provider is not None else None
    context = HandlerContext(config, events, rate_limiter, dispatcher)
    router = WebhookRouter()
    for handler_cls in DEFAULT_HANDLERS:
        router.register(handler_cls(context))

    processor = WebhookProcessor(
        router,
        security,
        {**security_config.webhook_secrets, **(secrets or {})},
        events,
    )
    credentials = credentials or ConfigCredentialStore(config)
    selector = ConnectionModeSelector(config, HealthChecker(credentials=credentials))
    manager = WebhookManager(
        config,
        selector,
        events=events,
        processor=processor,
        dispatcher=dispatcher,
        rate_limiter=rate_limiter,
        credentials=credentials,
        relay_factory=relay_factory,
    )
    return AppServices(
        config=config,
        events=events,
        processor=processor,
        deduplication=deduplication,
        rate_limiter=rate_limiter,
        ingress=IngressRateLimiter(app_config.ingress),
        connect_store=ConnectSessionStore(app_config.oauth.timeout),
        dispatcher=dispatcher,
        manager=manager,
        oauth=OAuthCompletionService(config, selector, events=events),
    )


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    provider = FileConfigProvider(os.environ.get("FINHOOK_CONFIG_PATH", "~/.finhook/config.json"))
    app_config = provider.load()
    data_dir = os.environ.get("FINHOOK_DATA_DIR")
    if data_dir:
        app_config = app_config.model_copy(update={"data_dir": data_dir})

    secrets: dict[str, str] = {}
    for source, var in (
        (WebhookSource.PLAID, "PLAID_WEBHOOK_SECRET"),
        (WebhookSource.GOCARDLESS, "GOCARDLESS_WEBHOOK_SECRET"),
    ):
        if os.environ.get(var):
            secrets[source.value] = os.environ[var]

    event_log_path = os.environ.get("FINHOOK_EVENT_LOG_PATH")
    event_log = EventLog.from_env(event_log_path) if event_log_path else None

    sync_url = os.environ.get("FINHOOK_SYNC_URL")
    sync_provider = None
    if sync_url:
        sync_provider = HttpSyncProvider(sync_url, os.environ.get("FINHOOK_SYNC_TOKEN"))
    else:
        logger.warning("FINHOOK_SYNC_URL not set; webhooks will be acknowledged without syncing")

    services = build_services(
        provider,
        app_config,
        sync_provider=sync_provider,
        secrets=secrets,
        event_log=event_log,
    )
    return create_app(services, api_token=os.environ.get("FINHOOK_API_TOKEN"))


# --- Connect session protocol ---


class ConnectSessionRequest(BaseModel):
    code_challenge: str
    code_challenge_method: Literal["S256", "plain"] = "S256"


class ConnectCredentialRequest(BaseModel):
    provider: str = "plaid"
    public_token: str
    metadata: str | None = None


def _envelope(data: Any = None, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"success": True, "data": data}, status_code=status_code)


def _envelope_error(exc: RelayError) -> JSONResponse:
    return JSONResponse(
        {"success": False, "message": exc.message},
        status_code=exc.status_code or 400,
    )


def _webhook_json(response: WebhookResponse) -> JSONResponse:
    headers = {}
    if response.error is not None and response.error.retry_after is not None:
        headers["Retry-After"] = str(response.error.retry_after)
    return JSONResponse(response.to_dict(), status_code=response.status, headers=headers)


def create_app(
    services: AppServices,
    *,
    manage_lifecycle: bool = True,
    api_token: str | None = None,
) -> FastAPI:
    """Create the receiver app around ``services``.

    With ``api_token`` the operator endpoints (``/status``) require a Bearer
    token; webhook, Connect and health routes stay open.

    With ``manage_lifecycle`` the app lifespan starts the webhook manager and
    the cleanup timer, and on shutdown stops them, cancels OAuth sessions and
    drains in-flight syncs.
    """

    async def _cleanup() -> None:
        removed = services.deduplication.cleanup()
        services.rate_limiter.cleanup()
        services.ingress.prune()
        services.connect_store.prune()
        if removed:
            logger.info("Removed %d expired webhook nonces", removed)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if not manage_lifecycle:
            yield
            return
        cleanup = PeriodicTask("cache-cleanup", CLEANUP_INTERVAL_SECONDS, _cleanup)
        if services.manager is not None:
            await services.manager.start()
        if services.oauth is not None:
            await services.oauth.start()
        cleanup.start()
        try:
            yield
        finally:
            await cleanup.cancel()
            if services.oauth is not None:
                await services.oauth.stop()
            if services.manager is not None:
                await services.manager.stop()
            if services.dispatcher is not None:
                await services.dispatcher.drain()

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.services = services
    if api_token:
        app.add_middleware(BearerTokenMiddleware, token=api_token)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/status")
    async def status() -> dict[str, Any]:
        manager = services.manager
        return {
            "manager": manager.state().to_dict() if manager is not None else None,
            "rate_limiter": dataclasses.asdict(services.rate_limiter.stats()),
            "deduplication": dataclasses.asdict(services.deduplication.stats()),
            "oauth_sessions": len(services.oauth.active_sessions()) if services.oauth else 0,
            "connect_sessions": len(services.connect_store),
        }

    @app.post("/webhook/{source}")
    async def receive_webhook(request: Request, source: str) -> JSONResponse:
        try:
            webhook_source = WebhookSource(source)
        except ValueError:
            return _webhook_json(WebhookResponse.fail(
                404, WebhookErrorCode.NO_HANDLER, f"Unknown webhook source: {source}",
            ))

        headers = dict(request.headers)
        client_ip = client_ip_from_headers(headers, request.client.host if request.client else None)
        if not services.ingress.check(source, client_ip):
            logger.warning("Ingress limit hit for %s from %s", source, client_ip)
            return _webhook_json(WebhookResponse.fail(
                429, WebhookErrorCode.RATE_LIMITED, "Too many requests",
                retryable=True,
                retry_after=services.ingress.retry_after(source, client_ip),
            ))

        webhook = build_webhook_request(
            webhook_source,
            await request.body(),
            headers,
            dict(request.query_params),
            client_ip,
        )
        try:
            response = await services.processor.process(webhook)
        except CacheStorageError as exc:
            log_error(logger, exc, source=source)
            return _webhook_json(WebhookResponse.fail(
                503, exc.code, "Webhook storage unavailable", retryable=True,
            ))
        return _webhook_json(response)

    @app.post("/api/connect/session")
    async def connect_session(body: ConnectSessionRequest) -> JSONResponse:
        session = services.connect_store.create(body.code_challenge, body.code_challenge_method)
        return _envelope(session.model_dump())

    @app.post("/api/connect/credentials/{session_id}")
    async def connect_store_credential(session_id: str, body: ConnectCredentialRequest) -> JSONResponse:
        try:
            services.connect_store.store(session_id, body.provider, body.public_token, body.metadata)
        except RelayError as exc:
            return _envelope_error(exc)
        return _envelope()

    @app.get("/api/connect/credentials/{session_id}")
    async def connect_retrieve_credential(
        session_id: str,
        code_verifier: str | None = None,
        wait: bool = False,
        timeout: int = 30,
    ) -> JSONResponse:
        try:
            credential = await services.connect_store.retrieve(
                session_id, code_verifier, wait=min(max(timeout, 0), 30) if wait else 0,
            )
        except RelayError as exc:
            return _envelope_error(exc)
        return _envelope(credential.model_dump() if credential is not None else None)

    @app.delete("/api/connect/credentials/{session_id}")
    async def connect_delete_credential(session_id: str) -> JSONResponse:
        return _envelope({"deleted": services.connect_store.delete(session_id)})

    return app
