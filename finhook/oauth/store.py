"""Local Connect session store.

Serves the Connect session protocol from the receiver itself when it is
reachable directly, so direct-mode OAuth gets the same PKCE handoff as the
relay. Sessions without a challenge are accepted for the unprotected direct
flow and released to any caller that knows the session id.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
import time
from dataclasses import dataclass, field

from finhook.errors import RelayError
from finhook.oauth.pkce import CodeChallengeMethod, ConnectSession, RelayCredential, verify_pkce

logger = logging.getLogger(__name__)

SESSION_TTL_SECONDS = 600
MAX_RETRIEVAL_ATTEMPTS = 5


@dataclass
class _Entry:
    session_id: str
    created_at: float
    code_challenge: str | None = None
    method: CodeChallengeMethod = "S256"
    credential: RelayCredential | None = None
    retrieval_count: int = 0
    failed_attempts: int = 0
    ready: asyncio.Event = field(default_factory=asyncio.Event)

    def expired(self, ttl: float) -> bool:
        return time.time() - self.created_at >= ttl


class ConnectSessionStore:
    def __init__(self, ttl: float = SESSION_TTL_SECONDS, max_retrievals: int = MAX_RETRIEVAL_ATTEMPTS) -> None:
        self._ttl = ttl
        self._max_retrievals = max_retrievals
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def create(self, code_challenge: str, method: CodeChallengeMethod = "S256") -> ConnectSession:
        session_id = secrets.token_urlsafe(16)
        self._entries[session_id] = _Entry(session_id, time.time(), code_challenge, method)
        return ConnectSession(session_id=session_id, expires_in=int(self._ttl))

    def _live(self, session_id: str) -> _Entry:
        entry = self._entries.get(session_id)
        if entry is None:
            raise RelayError("Session not found", status_code=404)
        if entry.expired(self._ttl):
            self._entries.pop(session_id, None)
            raise RelayError("Session expired", status_code=410)
        return entry

    def store(
        self,
        session_id: str,
        provider: str,
        public_token: str,
        metadata: str | None = None,
    ) -> None:
        """Attach the credential produced by the provider's link flow."""
        if session_id not in self._entries:
            self._entries[session_id] = _Entry(session_id, time.time())
        entry = self._live(session_id)
        entry.credential = RelayCredential(
            session_id=session_id,
            provider=provider,
            public_token=public_token,
            metadata=metadata,
        )
        entry.ready.set()
        logger.info("Credential stored for session %s (%s)", session_id, provider)

    async def retrieve(
        self,
        session_id: str,
        code_verifier: str | None,
        *,
        wait: float = 0,
    ) -> RelayCredential | None:
        """Release the credential once the verifier matches the challenge.

        Returns None when nothing has been stored within ``wait`` seconds.
        Only verifier mismatches count against the attempt cap, so pending
        long-polls can continue until the session expires.
        """
        entry = self._live(session_id)
        if entry.code_challenge is not None:
            if entry.failed_attempts >= self._max_retrievals:
                raise RelayError("Maximum retrieval attempts exceeded", status_code=429)
            if not code_verifier or not verify_pkce(entry.code_challenge, code_verifier, entry.method):
                entry.failed_attempts += 1
                raise RelayError("Invalid code_verifier", status_code=403)

        if entry.credential is None and wait > 0:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(entry.ready.wait(), timeout=wait)
        if entry.credential is None:
            return None
        entry.retrieval_count += 1
        return entry.credential.model_copy(update={"retrieval_count": entry.retrieval_count})

    def delete(self, session_id: str) -> bool:
        return self._entries.pop(session_id, None) is not None

    def prune(self) -> int:
        expired = [sid for sid, e in self._entries.items() if e.expired(self._ttl)]
        for sid in expired:
            del self._entries[sid]
        return len(expired)
