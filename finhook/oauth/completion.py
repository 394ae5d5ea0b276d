"""OAuth completion service.

Tracks account-linking attempts from start to a terminal status. Each session
owns one polling task; completing, cancelling or timing out a session stops
that task, and ``stop()`` cancels every task the service started. Finished
sessions stay queryable for a short grace period so late callbacks can still
read them.

Plaid sessions go through the PKCE handoff (relay, and direct unless
``oauth.pkce_for_direct`` is off). Gmail uses the device authorization grant.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel

from finhook.config import AppConfig, ConfigProvider
from finhook.connection.selector import ConnectionModeSelector
from finhook.errors import (
    FinhookError,
    OAuthError,
    RelayError,
    classify_exception,
    log_error,
    manual_intervention,
    reauthenticate,
)
from finhook.events.bus import EventBus
from finhook.models import ConnectionMode, ConnectionPurpose
from finhook.oauth.pkce import ConnectRelayClient, generate_pkce_pair
from finhook.tasks import TaskTracker

logger = logging.getLogger(__name__)

GOOGLE_DEVICE_CODE_URL = "https://oauth2.googleapis.com/device/code"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_PROFILE_URL = "https://gmail.googleapis.com/gmail/v1/users/me/profile"
GOOGLE_DEVICE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"
GMAIL_SCOPE = "https://www.googleapis.com/auth/gmail.readonly"

_SLOW_DOWN_STEP = 5.0


class OAuthProvider(str, Enum):
    PLAID = "plaid"
    GMAIL = "gmail"


class SessionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class OAuthCredentials(BaseModel):
    access_token: str
    refresh_token: str | None = None
    item_id: str | None = None
    email_address: str | None = None
    token_expiry: str | None = None


class OAuthCompletionResult(BaseModel):
    session_id: str
    provider: OAuthProvider
    status: SessionStatus
    credentials: OAuthCredentials | None = None
    error: dict[str, str] | None = None


@dataclass
class OAuthSession:
    session_id: str
    provider: OAuthProvider
    mode: ConnectionMode
    start_time: float
    timeout: float
    poll_interval: float
    status: SessionStatus = SessionStatus.PENDING
    account_name: str | None = None
    code_verifier: str | None = field(default=None, repr=False)
    device_code: str | None = field(default=None, repr=False)
    relay_url: str | None = None
    result: OAuthCompletionResult | None = None
    task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def expired(self) -> bool:
        return time.time() - self.start_time >= self.timeout


@dataclass(frozen=True)
class StartedSession:
    session_id: str
    mode: ConnectionMode
    connect_url: str
    user_code: str | None = None


CompletionCallback = Callable[[OAuthCompletionResult], Awaitable[None] | None]


class OAuthCompletionService:
    def __init__(
        self,
        config: ConfigProvider,
        selector: ConnectionModeSelector | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        events: EventBus | None = None,
    ) -> None:
        self._config = config
        self._selector = selector or ConnectionModeSelector(config)
        self._client = client
        self._events = events
        self._sessions: dict[str, OAuthSession] = {}
        self._callbacks: dict[str, list[CompletionCallback]] = {}
        self._cleanup = TaskTracker("oauth-cleanup")
        self._running = False

    # --- Lifecycle ---

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        """Cancel every pending session and drop all state."""
        self._running = False
        for session in list(self._sessions.values()):
            if session.status == SessionStatus.PENDING:
                await self.cancel_session(session.session_id)
        await self._cleanup.cancel_all()
        self._sessions.clear()
        self._callbacks.clear()

    # --- Queries ---

    def get_session(self, session_id: str) -> OAuthSession | None:
        return self._sessions.get(session_id)

    def active_sessions(self) -> list[OAuthSession]:
        return [s for s in self._sessions.values() if s.status == SessionStatus.PENDING]

    def cleanup_completed(self) -> int:
        done = [sid for sid, s in self._sessions.items() if s.status != SessionStatus.PENDING]
        for sid in done:
            self._sessions.pop(sid, None)
            self._callbacks.pop(sid, None)
        return len(done)

    def on_complete(self, session_id: str, callback: CompletionCallback) -> None:
        self._callbacks.setdefault(session_id, []).append(callback)

    def off_complete(self, session_id: str, callback: CompletionCallback) -> None:
        callbacks = self._callbacks.get(session_id, [])
        if callback in callbacks:
            callbacks.remove(callback)

    # --- HTTP ---

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.request(method, url, **kwargs)
            async with httpx.AsyncClient() as client:
                return await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise classify_exception(exc, url=url) from exc

    # --- Starting sessions ---

    async def start_session(
        self,
        provider: OAuthProvider,
        *,
        account_name: str | None = None,
        timeout: float | None = None,
        device_code: str | None = None,
        user_code: str | None = None,
    ) -> StartedSession:
        """Open a linking attempt and start polling for its credential.

        Raises ``ConnectionModeError`` when neither direct nor relay can serve
        OAuth.
        """
        if not self._running:
            await self.start()
        config = await self._config.get_config()
        mode = (await self._selector.select(ConnectionPurpose.OAUTH)).mode

        if provider == OAuthProvider.PLAID:
            session, connect_url = await self._start_plaid(config, mode)
        else:
            session, connect_url, user_code = await self._start_gmail(
                config, mode, device_code, user_code,
            )

        session.account_name = account_name
        session.timeout = timeout or config.oauth.timeout
        self._sessions[session.session_id] = session
        session.task = asyncio.create_task(
            self._run(session), name=f"oauth-poll-{session.session_id}",
        )
        logger.info(
            "OAuth session started: %s (%s, %s mode)",
            session.session_id, provider.value, mode.value,
        )
        return StartedSession(session.session_id, mode, connect_url, user_code)

    def _new_session(self, session_id: str, provider: OAuthProvider, mode: ConnectionMode, config: AppConfig) -> OAuthSession:
        return OAuthSession(
            session_id=session_id,
            provider=provider,
            mode=mode,
            start_time=time.time(),
            timeout=config.oauth.timeout,
            poll_interval=config.oauth.poll_interval,
        )

    async def _start_plaid(self, config: AppConfig, mode: ConnectionMode) -> tuple[OAuthSession, str]:
        public_url = (config.connect.public_url or "").rstrip("/")
        direct = mode == ConnectionMode.DIRECT

        if direct and not config.oauth.pkce_for_direct:
            session_id = str(uuid.uuid4())
            session = self._new_session(session_id, OAuthProvider.PLAID, mode, config)
            session.relay_url = public_url
            return session, f"{public_url}/oauth/plaid/link?session={session_id}"

        relay_url = public_url if direct else config.oauth.connect_relay_url
        pair = generate_pkce_pair("S256")
        connect = ConnectRelayClient(relay_url, self._client)
        remote = await connect.init_session(pair)

        session = self._new_session(remote.session_id, OAuthProvider.PLAID, mode, config)
        session.code_verifier = pair.code_verifier
        session.relay_url = relay_url
        if direct:
            url = f"{public_url}/oauth/plaid/link?session={remote.session_id}"
        else:
            url = f"{config.oauth.connect_ui_url.rstrip('/')}/plaid?session={remote.session_id}"
        return session, url

    async def _start_gmail(
        self,
        config: AppConfig,
        mode: ConnectionMode,
        device_code: str | None,
        user_code: str | None,
    ) -> tuple[OAuthSession, str, str | None]:
        verification_url = "https://www.google.com/device"
        interval = config.oauth.poll_interval
        if device_code is None:
            if not config.gmail.client_id:
                raise OAuthError(
                    "Gmail OAuth client is not configured",
                    code="OAUTH_CLIENT_NOT_CONFIGURED",
                    recoverable=False,
                    next_actions=[manual_intervention("Set gmail.client_id and gmail.client_secret")],
                )
            resp = await self._request(
                "POST",
                GOOGLE_DEVICE_CODE_URL,
                data={"client_id": config.gmail.client_id, "scope": GMAIL_SCOPE},
                timeout=10.0,
            )
            if not resp.is_success:
                raise OAuthError(f"Device code request failed: {resp.status_code}")
            grant = resp.json()
            device_code = grant["device_code"]
            user_code = grant.get("user_code")
            verification_url = grant.get("verification_url", verification_url)
            interval = max(interval, float(grant.get("interval", interval)))

        session = self._new_session(device_code, OAuthProvider.GMAIL, mode, config)
        session.device_code = device_code
        session.poll_interval = interval
        return session, verification_url, user_code

    # --- Polling ---

    async def _run(self, session: OAuthSession) -> None:
        while session.status == SessionStatus.PENDING:
            remaining = session.start_time + session.timeout - time.time()
            if remaining <= 0:
                await self._complete(
                    session, SessionStatus.TIMEOUT,
                    error={"code": "OAUTH_TIMEOUT", "message": "OAuth session timed out"},
                )
                return
            try:
                credentials = await asyncio.wait_for(self.poll_once(session), timeout=remaining)
            except TimeoutError:
                continue
            except asyncio.CancelledError:
                raise
            except Exception as raw:
                exc = classify_exception(raw, session_id=session.session_id)
                if self._is_terminal(exc):
                    log_error(logger, exc, session_id=session.session_id)
                    await self._complete(
                        session, SessionStatus.FAILED,
                        error={"code": exc.code, "message": exc.message},
                    )
                    return
                logger.debug("Transient error polling %s: %s", session.session_id, exc.message)
                credentials = None

            if credentials is not None:
                await self._complete(session, SessionStatus.COMPLETED, credentials=credentials)
                return
            await asyncio.sleep(min(session.poll_interval, max(remaining, 0.0)))

    @staticmethod
    def _is_terminal(exc: FinhookError) -> bool:
        if isinstance(exc, RelayError):
            return exc.terminal
        return isinstance(exc, OAuthError) and not exc.recoverable

    async def poll_once(self, session: OAuthSession) -> OAuthCredentials | None:
        """One retrieval attempt; None means not ready yet."""
        config = await self._config.get_config()
        if session.provider == OAuthProvider.GMAIL:
            return await self._poll_gmail(session, config)
        return await self._poll_connect(session, config)

    async def _poll_connect(self, session: OAuthSession, config: AppConfig) -> OAuthCredentials | None:
        connect = ConnectRelayClient(session.relay_url or config.oauth.connect_relay_url, self._client)
        protected = session.code_verifier is not None
        remaining = session.start_time + session.timeout - time.time()
        wait = max(1, min(config.oauth.retrieval_wait, int(remaining)))
        credential = await connect.retrieve_credential(
            session.session_id, session.code_verifier, wait=protected, timeout=wait,
        )
        if credential is None or credential.token is None:
            return None
        if not await connect.confirm_deletion(session.session_id):
            logger.warning("Stored copy of %s was not confirmed deleted", session.session_id)
        return OAuthCredentials(access_token=credential.token, item_id=credential.metadata)

    async def _poll_gmail(self, session: OAuthSession, config: AppConfig) -> OAuthCredentials | None:
        if not config.gmail.client_id or not config.gmail.client_secret:
            raise OAuthError(
                "Gmail OAuth credentials not configured",
                code="OAUTH_CLIENT_NOT_CONFIGURED",
                recoverable=False,
            )
        resp = await self._request(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                "client_id": config.gmail.client_id,
                "client_secret": config.gmail.client_secret,
                "device_code": session.device_code or session.session_id,
                "grant_type": GOOGLE_DEVICE_GRANT,
            },
            timeout=10.0,
        )
        if resp.is_success:
            token = resp.json()
            expiry = datetime.now(UTC) + timedelta(seconds=int(token.get("expires_in", 3600)))
            return OAuthCredentials(
                access_token=token["access_token"],
                refresh_token=token.get("refresh_token"),
                token_expiry=expiry.isoformat(),
                email_address=await self._gmail_address(token["access_token"]),
            )

        try:
            error = resp.json().get("error", "")
        except ValueError:
            error = ""
        if error == "authorization_pending":
            return None
        if error == "slow_down":
            session.poll_interval += _SLOW_DOWN_STEP
            return None
        if error == "expired_token":
            raise OAuthError(
                "Device code expired",
                code="OAUTH_DEVICE_CODE_EXPIRED",
                recoverable=False,
                next_actions=[reauthenticate()],
            )
        if error == "access_denied":
            raise OAuthError(
                "Access denied by user",
                code="OAUTH_ACCESS_DENIED",
                recoverable=False,
                next_actions=[reauthenticate()],
            )
        raise OAuthError(f"Token request failed: {error or resp.status_code}")

    async def _gmail_address(self, access_token: str) -> str | None:
        try:
            resp = await self._request(
                "GET", GOOGLE_PROFILE_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=10.0,
            )
        except FinhookError as exc:
            logger.debug("Gmail profile lookup failed: %s", exc.message)
            return None
        if not resp.is_success:
            return None
        return resp.json().get("emailAddress")

    # --- Terminal transitions ---

    async def cancel_session(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None or session.status != SessionStatus.PENDING:
            return False
        task = session.task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._complete(session, SessionStatus.CANCELLED)
        return True

    async def _complete(
        self,
        session: OAuthSession,
        status: SessionStatus,
        *,
        credentials: OAuthCredentials | None = None,
        error: dict[str, str] | None = None,
    ) -> None:
        if session.status != SessionStatus.PENDING:
            return
        session.status = status
        session.code_verifier = None
        result = OAuthCompletionResult(
            session_id=session.session_id,
            provider=session.provider,
            status=status,
            credentials=credentials,
            error=error,
        )
        session.result = result
        logger.info("OAuth session %s: %s", status.value, session.session_id)

        for callback in list(self._callbacks.get(session.session_id, [])):
            try:
                outcome = callback(result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("OAuth callback failed for %s", session.session_id)

        if self._events is not None:
            await self._events.emit(f"oauth.{status.value}", {
                "session_id": session.session_id,
                "provider": session.provider.value,
                "account_name": session.account_name,
                "error": error,
            })
        self._cleanup.spawn(self._forget_later(session.session_id))

    async def _forget_later(self, session_id: str) -> None:
        config = await self._config.get_config()
        await asyncio.sleep(config.oauth.grace_period)
        self._sessions.pop(session_id, None)
        self._callbacks.pop(session_id, None)
