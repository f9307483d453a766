"""Tests for trigger signature verification and callback scheduling."""

import json
from datetime import datetime, timezone

import httpx
import pytest
from jose import jwt

from app.services.job_trigger import (
    JobSignatureError,
    JobTriggerClient,
    create_signature,
    verify_signature,
)
from tests.conftest import NEXT_SIGNING_KEY, SIGNING_KEY

URL = "http://testserver/api/notifications/process"
BODY = b'{"timestamp": 1704099600000}'


# ============================================================================
# Signature verification
# ============================================================================

class TestVerifySignature:
    """Tests for inbound signature checks."""

    def test_current_key_is_accepted(self):
        verify_signature(create_signature(BODY, SIGNING_KEY, url=URL), BODY, url=URL)

    def test_next_key_is_accepted(self):
        """Signatures from the rotated-in key verify too."""
        verify_signature(create_signature(BODY, NEXT_SIGNING_KEY, url=URL), BODY, url=URL)

    def test_empty_body(self):
        verify_signature(create_signature(b"", SIGNING_KEY), b"")

    def test_missing_signature(self):
        with pytest.raises(JobSignatureError, match="Missing"):
            verify_signature(None, BODY)

    def test_unknown_key_is_rejected(self):
        with pytest.raises(JobSignatureError):
            verify_signature(create_signature(BODY, "someone-else"), BODY)

    def test_tampered_body_is_rejected(self):
        signature = create_signature(BODY, SIGNING_KEY)

        with pytest.raises(JobSignatureError):
            verify_signature(signature, b'{"timestamp": 0}')

    def test_expired_signature_is_rejected(self):
        signature = create_signature(BODY, SIGNING_KEY, expires_in=-60)

        with pytest.raises(JobSignatureError):
            verify_signature(signature, BODY)

    def test_signature_for_other_url_is_rejected(self):
        signature = create_signature(BODY, SIGNING_KEY, url="https://elsewhere.example.com/hook")

        with pytest.raises(JobSignatureError, match="different URL"):
            verify_signature(signature, BODY, url=URL)

    def test_wrong_issuer_is_rejected(self):
        signature = create_signature(BODY, SIGNING_KEY, issuer="NotTheTrigger")

        with pytest.raises(JobSignatureError):
            verify_signature(signature, BODY)

    def test_garbage_is_rejected(self):
        with pytest.raises(JobSignatureError):
            verify_signature("not-a-jwt", BODY)

    def test_no_keys_configured(self, monkeypatch):
        from app.config import get_settings

        settings = get_settings()
        monkeypatch.setattr(settings, "JOB_TRIGGER_SIGNING_KEY", "")
        monkeypatch.setattr(settings, "JOB_TRIGGER_NEXT_SIGNING_KEY", "")

        with pytest.raises(JobSignatureError, match="No signing key"):
            verify_signature(create_signature(BODY, SIGNING_KEY), BODY)

    def test_padded_body_claim_is_accepted(self):
        """Some signers keep base64 padding on the body hash."""
        claims = jwt.get_unverified_claims(create_signature(BODY, SIGNING_KEY))
        claims["body"] = claims["body"] + "="

        verify_signature(jwt.encode(claims, SIGNING_KEY, algorithm="HS256"), BODY)


# ============================================================================
# JobTriggerClient
# ============================================================================

def client_with(handler) -> JobTriggerClient:
    client = JobTriggerClient(
        base_url="https://trigger.example.com",
        token="trigger-token",
        app_url="https://app.example.com",
    )
    client._client = httpx.Client(transport=httpx.MockTransport(handler))
    return client


class TestJobTriggerClient:
    """Tests for outbound callback scheduling."""

    AT = datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)

    def test_disabled_without_configuration(self):
        client = JobTriggerClient()

        assert client.enabled is False
        assert client.schedule_processing(self.AT) is False

    def test_schedule_posts_callback_request(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, json={"messageId": "msg_1"})

        client = client_with(handler)

        assert client.schedule_processing(self.AT) is True

        request = requests[0]
        assert request.url.host == "trigger.example.com"
        assert "/v2/publish/" in str(request.url)
        assert str(request.url).endswith("app.example.com/api/notifications/process")
        assert request.headers["Authorization"] == "Bearer trigger-token"
        assert request.headers["Upstash-Not-Before"] == "1704186000"
        assert request.headers["Upstash-Deduplication-Id"] == "notifications-process-1704186000000"
        assert json.loads(request.content) == {"timestamp": 1704186000000}

    def test_same_instant_shares_deduplication_id(self):
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers["Upstash-Deduplication-Id"])
            return httpx.Response(200)

        client = client_with(handler)
        client.schedule_processing(self.AT)
        client.schedule_processing(self.AT)

        assert len(set(seen)) == 1

    def test_server_error_returns_false(self):
        client = client_with(lambda request: httpx.Response(500, text="boom"))

        assert client.schedule_processing(self.AT) is False

    def test_connection_error_returns_false(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        assert client_with(handler).schedule_processing(self.AT) is False

    def test_close_resets_client(self):
        client = client_with(lambda request: httpx.Response(200))

        client.close()

        assert client._client is None
