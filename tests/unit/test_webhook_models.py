"""Tests for webhook request normalization and response shapes."""

from __future__ import annotations

import base64
import json

import pytest

from finhook.models import WebhookSource
from finhook.webhook.models import WebhookErrorCode, WebhookResponse, build_webhook_request
from tests.conftest import plaid_payload


class TestBuildWebhookRequest:
    def test_plaid_fields(self) -> None:
        body = plaid_payload(webhook_id="wh_9")
        request = build_webhook_request(
            WebhookSource.PLAID,
            body,
            {"Plaid-Verification": "sha256=abc", "Plaid-Timestamp": "1700000000"},
            client_ip="1.2.3.4",
        )
        assert request.nonce == "wh_9_SYNC_UPDATES_AVAILABLE"
        assert request.signature == "sha256=abc"
        assert request.timestamp == 1_700_000_000_000
        assert request.body["item_id"] == "item_1"
        assert request.raw_body == body
        assert request.client_ip == "1.2.3.4"

    def test_millisecond_timestamp_kept(self) -> None:
        request = build_webhook_request(
            WebhookSource.PLAID, b"{}", {"plaid-timestamp": "1700000000123"},
        )
        assert request.timestamp == 1_700_000_000_123

    def test_unparseable_timestamp_ignored(self) -> None:
        request = build_webhook_request(WebhookSource.PLAID, b"{}", {"plaid-timestamp": "soon"})
        assert request.timestamp is None
        assert request.nonce is None

    def test_gocardless_nonce_from_first_event(self) -> None:
        body = json.dumps({"events": [{"id": "EV1"}, {"id": "EV2"}]}).encode()
        request = build_webhook_request(
            WebhookSource.GOCARDLESS, body, {"Webhook-Signature": "deadbeef"},
        )
        assert request.nonce == "EV1"
        assert request.signature == "deadbeef"

    def test_gmail_nonce_from_message_id(self) -> None:
        data = base64.b64encode(b'{"emailAddress":"a@b.c"}').decode()
        body = json.dumps({"message": {"data": data, "messageId": "m-1"}}).encode()
        request = build_webhook_request(WebhookSource.GMAIL, body, {})
        assert request.nonce == "gmail_m-1"

    def test_generic_headers(self) -> None:
        request = build_webhook_request(
            WebhookSource.TEST,
            b'{"ping": true}',
            {
                "X-Webhook-Timestamp": "1700000000",
                "X-Webhook-Nonce": "n-1",
                "X-Webhook-Signature": "sig",
            },
            query={"a": "1"},
        )
        assert request.nonce == "n-1"
        assert request.signature == "sig"
        assert request.timestamp == 1_700_000_000_000
        assert request.query == {"a": "1"}

    def test_non_json_body_kept_as_text(self) -> None:
        request = build_webhook_request(WebhookSource.TEST, b"plain text", {})
        assert request.body == "plain text"

    def test_empty_body(self) -> None:
        assert build_webhook_request(WebhookSource.TEST, b"", {}).body == {}

    @pytest.mark.parametrize("value", ["inf", "-inf", "nan", "1e400"])
    def test_non_finite_timestamp_ignored(self, value: str) -> None:
        request = build_webhook_request(WebhookSource.PLAID, b"{}", {"plaid-timestamp": value})
        assert request.timestamp is None

    @pytest.mark.parametrize(
        ("source", "body"),
        [
            (WebhookSource.GMAIL, {"message": "x"}),
            (WebhookSource.GMAIL, {"message": ["m-1"]}),
            (WebhookSource.GOCARDLESS, {"events": {"a": 1}}),
            (WebhookSource.GOCARDLESS, {"events": ["EV1"]}),
            (WebhookSource.GOCARDLESS, {"events": []}),
        ],
    )
    def test_malformed_nonce_fields_ignored(self, source: WebhookSource, body: dict) -> None:
        request = build_webhook_request(source, json.dumps(body).encode(), {})
        assert request.nonce is None
        assert request.body == body


class TestWebhookResponse:
    def test_ok(self) -> None:
        response = WebhookResponse.ok()
        assert response.status == 200
        assert response.to_dict() == {"received": True, "processed": True}

    def test_fail_shape(self) -> None:
        response = WebhookResponse.fail(
            429, WebhookErrorCode.RATE_LIMITED, "slow down", retryable=True, retry_after=30,
        )
        assert response.to_dict() == {
            "received": False,
            "error": {
                "code": "RATE_LIMITED",
                "message": "slow down",
                "retryable": True,
                "retry_after": 30,
            },
        }
