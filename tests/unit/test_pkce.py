"""Tests for PKCE helpers and the Connect relay client."""

from __future__ import annotations

import base64
import hashlib
import json
import string

import httpx
import pytest

from finhook.errors import NetworkError, RelayError
from finhook.oauth.pkce import (
    ConnectRelayClient,
    generate_code_challenge,
    generate_code_verifier,
    generate_pkce_pair,
    verify_pkce,
)

UNRESERVED = set(string.ascii_letters + string.digits + "-._~")
RELAY = "https://relay.example.com"


class TestVerifier:
    def test_default_length_and_alphabet(self) -> None:
        verifier = generate_code_verifier()
        assert len(verifier) == 128
        assert set(verifier) <= UNRESERVED

    @pytest.mark.parametrize(("requested", "expected"), [(10, 43), (43, 43), (64, 64), (500, 128)])
    def test_length_clamped(self, requested: int, expected: int) -> None:
        assert len(generate_code_verifier(requested)) == expected

    def test_unique(self) -> None:
        assert len({generate_code_verifier() for _ in range(20)}) == 20


class TestChallenge:
    def test_s256_matches_rfc_example(self) -> None:
        # RFC 7636 appendix B
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_s256_is_unpadded_b64url(self) -> None:
        verifier = generate_code_verifier()
        challenge = generate_code_challenge(verifier)
        digest = hashlib.sha256(verifier.encode()).digest()
        assert challenge == base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
        assert "=" not in challenge

    def test_plain(self) -> None:
        assert generate_code_challenge("abc", "plain") == "abc"

    def test_pair_verifies(self) -> None:
        for method in ("S256", "plain"):
            pair = generate_pkce_pair(method)  # type: ignore[arg-type]
            assert pair.code_challenge_method == method
            assert verify_pkce(pair.code_challenge, pair.code_verifier, pair.code_challenge_method)

    def test_single_character_mutation_fails(self) -> None:
        pair = generate_pkce_pair()
        for i in (0, 42, 127):
            replacement = "A" if pair.code_verifier[i] != "A" else "B"
            mutated = pair.code_verifier[:i] + replacement + pair.code_verifier[i + 1:]
            assert not verify_pkce(pair.code_challenge, mutated)

    def test_non_ascii_rejected(self) -> None:
        pair = generate_pkce_pair()
        assert not verify_pkce(pair.code_challenge, pair.code_verifier + "é")


def _client(handler: object) -> ConnectRelayClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))  # type: ignore[arg-type]
    return ConnectRelayClient(RELAY + "/", client=http)


class TestConnectRelayClient:
    @pytest.mark.asyncio
    async def test_init_session_sends_challenge_only(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={
                "success": True, "data": {"session_id": "s-1", "expires_in": 600},
            })

        pair = generate_pkce_pair()
        session = await _client(handler).init_session(pair)

        assert session.session_id == "s-1"
        assert session.expires_in == 600
        assert str(seen[0].url) == f"{RELAY}/api/connect/session"
        body = json.loads(seen[0].content)
        assert body == {"code_challenge": pair.code_challenge, "code_challenge_method": "S256"}
        assert pair.code_verifier not in seen[0].content.decode()

    @pytest.mark.asyncio
    async def test_init_session_without_id(self) -> None:
        client = _client(lambda r: httpx.Response(200, json={"success": True, "data": {}}))
        with pytest.raises(RelayError, match="session ID"):
            await client.init_session(generate_pkce_pair())

    @pytest.mark.asyncio
    async def test_retrieve_ready(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True, "data": {
                "session_id": "s-1", "provider": "plaid", "public_token": "public-123",
                "metadata": "item_1", "retrieval_count": 1,
            }})

        credential = await _client(handler).retrieve_credential("s-1", "verifier", timeout=20)

        assert credential is not None
        assert credential.token == "public-123"
        assert credential.metadata == "item_1"
        params = seen[0].url.params
        assert params["code_verifier"] == "verifier"
        assert params["wait"] == "true"
        assert params["timeout"] == "20"

    @pytest.mark.asyncio
    async def test_retrieve_pending_is_none(self) -> None:
        client = _client(lambda r: httpx.Response(200, json={"success": True, "data": None}))
        assert await client.retrieve_credential("s-1", "v", wait=False) is None

    @pytest.mark.asyncio
    async def test_retrieve_without_verifier_omits_param(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True, "data": None})

        await _client(handler).retrieve_credential("s-1", None, wait=False)
        assert "code_verifier" not in seen[0].url.params
        assert "wait" not in seen[0].url.params

    @pytest.mark.parametrize(("status", "message", "terminal"), [
        (403, "Invalid code_verifier", True),
        (410, "Session expired", True),
        (429, "Maximum retrieval attempts exceeded", True),
        (404, "Session not found", False),
        (502, None, False),
    ])
    @pytest.mark.asyncio
    async def test_retrieve_errors(self, status: int, message: str | None, terminal: bool) -> None:
        body = {"success": False, "message": message} if message else {}
        client = _client(lambda r: httpx.Response(status, json=body))
        with pytest.raises(RelayError) as exc_info:
            await client.retrieve_credential("s-1", "v")
        assert exc_info.value.status_code == status
        assert exc_info.value.terminal is terminal

    @pytest.mark.asyncio
    async def test_unsuccessful_envelope_on_200(self) -> None:
        client = _client(lambda r: httpx.Response(200, json={"success": False, "error": "nope"}))
        with pytest.raises(RelayError, match="nope"):
            await client.retrieve_credential("s-1", "v")

    @pytest.mark.asyncio
    async def test_transport_error_classified(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(NetworkError) as exc_info:
            await _client(handler).retrieve_credential("s-1", "v")
        assert exc_info.value.code == "NETWORK_TIMEOUT"

    @pytest.mark.asyncio
    async def test_confirm_deletion_best_effort(self) -> None:
        assert await _client(lambda r: httpx.Response(200, json={"success": True})).confirm_deletion("s-1")
        assert not await _client(lambda r: httpx.Response(404)).confirm_deletion("s-1")

        def broken(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        assert not await _client(broken).confirm_deletion("s-1")
