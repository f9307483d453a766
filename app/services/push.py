"""Web Push channel.

``PushChannel`` sends one message per subscription and never lets one
subscription's failure reach its siblings or the caller: ``send_all``
settles every subscription and returns one ``PushOutcome`` each.
If VAPID keys are not configured the transport reports a failure for
every send instead of raising.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import UUID

from pywebpush import WebPushException, webpush

from app.config import get_settings
from app.models.notification import PushSubscription
from app.services.delivery_queue import DeliveryPayload

logger = logging.getLogger(__name__)

# Push services answer 404/410 for subscriptions that no longer exist
GONE_STATUS_CODES = frozenset({404, 410})


class PushTransportError(Exception):
    """A push service rejected or failed to accept a message."""

    def __init__(self, reason: str, status_code: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class PushTransport(Protocol):
    def send(self, subscription_info: dict[str, Any], data: str) -> None:
        """Deliver ``data`` to one subscription or raise ``PushTransportError``."""
        ...


class WebPushTransport:
    """Encrypted Web Push via ``pywebpush`` with VAPID authentication."""

    def __init__(
        self,
        vapid_private_key: str | None = None,
        vapid_subject: str | None = None,
        ttl: int | None = None,
        timeout: float = 10.0,
    ) -> None:
        settings = get_settings()
        self.vapid_private_key = vapid_private_key or settings.VAPID_PRIVATE_KEY
        self.vapid_subject = vapid_subject or settings.VAPID_SUBJECT
        self.ttl = ttl if ttl is not None else settings.PUSH_TTL_SECONDS
        self.timeout = timeout

    def send(self, subscription_info: dict[str, Any], data: str) -> None:
        if not self.vapid_private_key:
            raise PushTransportError("VAPID private key is not configured")

        try:
            webpush(
                subscription_info=subscription_info,
                data=data,
                vapid_private_key=self.vapid_private_key,
                # webpush() adds aud/exp to the claims dict, so pass a fresh one
                vapid_claims={"sub": self.vapid_subject},
                ttl=self.ttl,
                timeout=self.timeout,
            )
        except WebPushException as e:
            response = getattr(e, "response", None)
            status_code = getattr(response, "status_code", None)
            raise PushTransportError(str(e), status_code=status_code) from e


@dataclass(frozen=True)
class PushOutcome:
    """Result of sending to one subscription."""

    subscription_id: UUID
    endpoint: str
    success: bool
    status_code: int | None = None
    error: str | None = None

    @property
    def expired(self) -> bool:
        return not self.success and self.status_code in GONE_STATUS_CODES


def build_push_message(payload: DeliveryPayload, sound_enabled: bool) -> dict[str, Any]:
    """JSON body understood by the client's service worker."""
    url = None
    if payload.item_id and payload.item_type:
        url = f"/{payload.item_type}/{payload.item_id}"
    return {
        "title": payload.title,
        "message": payload.message,
        "soundEnabled": sound_enabled,
        "url": url,
    }


class PushChannel:
    """Fans one message out to a user's push subscriptions."""

    def __init__(self, transport: PushTransport | None = None) -> None:
        self.transport = transport or WebPushTransport()

    def send(self, subscription: PushSubscription, message: dict[str, Any]) -> PushOutcome:
        """Send to one subscription. Transport failures become a failed outcome."""
        try:
            self.transport.send(subscription.subscription_info(), json.dumps(message))
        except PushTransportError as e:
            return PushOutcome(
                subscription_id=subscription.id,
                endpoint=subscription.endpoint,
                success=False,
                status_code=e.status_code,
                error=e.reason[:500],
            )
        except Exception as e:
            logger.error(
                "Unexpected push transport error",
                extra={"subscription_id": str(subscription.id), "error": str(e)},
                exc_info=True,
            )
            return PushOutcome(
                subscription_id=subscription.id,
                endpoint=subscription.endpoint,
                success=False,
                error=str(e)[:500],
            )

        return PushOutcome(
            subscription_id=subscription.id,
            endpoint=subscription.endpoint,
            success=True,
        )

    def send_all(
        self,
        subscriptions: list[PushSubscription],
        message: dict[str, Any],
    ) -> list[PushOutcome]:
        """Send to every subscription; one outcome per subscription, in order."""
        outcomes = [self.send(subscription, message) for subscription in subscriptions]

        for outcome in outcomes:
            if not outcome.success:
                logger.warning(
                    "Push delivery failed for subscription",
                    extra={
                        "subscription_id": str(outcome.subscription_id),
                        "status_code": outcome.status_code,
                        "expired": outcome.expired,
                        "error": outcome.error,
                    },
                )
        return outcomes


_channel_instance: PushChannel | None = None


def get_push_channel() -> PushChannel:
    """Get or create the push channel singleton."""
    global _channel_instance
    if _channel_instance is None:
        _channel_instance = PushChannel()
    return _channel_instance
