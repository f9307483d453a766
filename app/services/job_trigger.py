"""External job trigger integration.

Two directions:
1. Inbound: every processing call carries a signature header, an HS256
   JWT over the request body. ``verify_signature`` rejects anything that
   does not check out before the queue is touched.
2. Outbound: ``JobTriggerClient`` asks the trigger service to call the
   processing endpoint back at a given instant. Scheduling is best-effort;
   failures are logged and do NOT raise, since the regular cron trigger
   still drains anything left behind.
"""

import base64
import hashlib
import hmac
import logging
from datetime import datetime, timedelta
from typing import Any

import httpx
from jose import JWTError, jwt

from app.config import get_settings
from app.utils.time import ensure_utc, to_score, utcnow

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Upstash-Signature"
PROCESS_PATH = "/api/notifications/process"


class JobSignatureError(Exception):
    """The trigger request is not signed by a trusted key."""


def body_digest(body: bytes) -> str:
    """Unpadded base64url SHA-256 of the raw request body."""
    return base64.urlsafe_b64encode(hashlib.sha256(body).digest()).rstrip(b"=").decode("ascii")


def create_signature(
    body: bytes,
    signing_key: str,
    url: str | None = None,
    issuer: str | None = None,
    expires_in: int = 300,
) -> str:
    """Sign a request body the way the trigger service does."""
    now = ensure_utc(utcnow())
    claims: dict[str, Any] = {
        "iss": issuer or get_settings().JOB_TRIGGER_ISSUER,
        "iat": int(now.timestamp()),
        "nbf": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
        "body": body_digest(body),
    }
    if url:
        claims["sub"] = url
    return jwt.encode(claims, signing_key, algorithm="HS256")


def _verify_with_key(signature: str, body: bytes, key: str, url: str | None) -> None:
    settings = get_settings()
    claims = jwt.decode(
        signature,
        key,
        algorithms=["HS256"],
        issuer=settings.JOB_TRIGGER_ISSUER,
        options={"verify_aud": False},
    )

    expected = body_digest(body)
    claimed = str(claims.get("body", "")).rstrip("=")
    if not hmac.compare_digest(claimed, expected):
        raise JobSignatureError("Body hash does not match signature")

    subject = claims.get("sub")
    if url and subject and subject.rstrip("/") != url.rstrip("/"):
        raise JobSignatureError("Signature was issued for a different URL")


def verify_signature(signature: str | None, body: bytes, url: str | None = None) -> None:
    """Check a trigger signature against the current and next signing keys.

    Raises:
        JobSignatureError: If the header is missing or no key verifies it
    """
    if not signature:
        raise JobSignatureError("Missing signature")

    settings = get_settings()
    keys = [
        key
        for key in (settings.JOB_TRIGGER_SIGNING_KEY, settings.JOB_TRIGGER_NEXT_SIGNING_KEY)
        if key
    ]
    if not keys:
        raise JobSignatureError("No signing key configured")

    last_error: Exception | None = None
    for key in keys:
        try:
            _verify_with_key(signature, body, key, url)
            return
        except (JWTError, JobSignatureError) as e:
            last_error = e

    raise JobSignatureError(f"Invalid signature: {last_error}")


class JobTriggerClient:
    """Schedules future processing callbacks with the trigger service."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        app_url: str | None = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url if base_url is not None else settings.JOB_TRIGGER_URL).rstrip("/")
        self.token = token if token is not None else settings.JOB_TRIGGER_TOKEN
        self.app_url = (app_url or settings.APP_URL).rstrip("/")
        self._client: httpx.Client | None = None

    @property
    def client(self) -> httpx.Client:
        """Lazy-initialize HTTP client."""
        if self._client is None:
            self._client = httpx.Client(timeout=5.0)
        return self._client

    @property
    def enabled(self) -> bool:
        return bool(self.base_url and self.token)

    @property
    def destination(self) -> str:
        return f"{self.app_url}{PROCESS_PATH}"

    def schedule_processing(self, at: datetime) -> bool:
        """Ask for a processing call at ``at``.

        Requests for the same instant share a deduplication id, so
        repeated fan-out of the same occurrence schedules one callback.

        Returns:
            bool: True if the trigger service accepted the request
        """
        if not self.enabled:
            logger.debug("Job trigger not configured, skipping schedule")
            return False

        score = to_score(at)
        try:
            response = self.client.post(
                f"{self.base_url}/v2/publish/{self.destination}",
                json={"timestamp": score},
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Upstash-Not-Before": str(score // 1000),
                    "Upstash-Deduplication-Id": f"notifications-process-{score}",
                },
            )
            response.raise_for_status()

            logger.info(
                "Processing callback scheduled",
                extra={"fire_at_ms": score},
            )
            return True

        except httpx.ConnectError:
            logger.warning(
                "Job trigger not reachable, callback not scheduled",
                extra={"fire_at_ms": score},
            )
            return False

        except httpx.HTTPStatusError as e:
            logger.error(
                "Job trigger rejected schedule request",
                extra={
                    "fire_at_ms": score,
                    "status_code": e.response.status_code,
                    "response": e.response.text,
                },
            )
            return False

        except httpx.HTTPError as e:
            logger.error(
                "Unexpected error scheduling callback",
                extra={"fire_at_ms": score, "error": str(e)},
            )
            return False

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            self._client.close()
            self._client = None


_client_instance: JobTriggerClient | None = None


def get_job_trigger() -> JobTriggerClient:
    """Get or create the job trigger client singleton.

    Returns:
        JobTriggerClient: The client instance
    """
    global _client_instance
    if _client_instance is None:
        _client_instance = JobTriggerClient()
    return _client_instance
