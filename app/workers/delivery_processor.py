"""Delivery processor.

Drains due deliveries from the queue:
1. Claims each due delivery (a lost claim means another processor has it)
2. Drops deliveries for users who turned notifications off
3. Writes the history row, at most once per delivery key
4. Pushes to every subscription of the user if push is enabled
5. Removes the delivery from the queue

A failure in steps 2-4 releases the claim and pushes the delivery back
by an exponential backoff. Each cycle fetches only claimable rows and
puts deliveries with fewer failed attempts first, so a delivery that
keeps failing cannot hold up the rest of the queue. The history write
is idempotent, so a retry after a partial failure never produces a
second inbox row.
"""

import logging
import socket
from datetime import datetime, timedelta
from uuid import uuid4

from app.config import get_settings
from app.db.session import SessionFactory
from app.services.delivery_queue import DeliveryQueue, QueuedDelivery, get_delivery_queue
from app.services.history import record_delivery
from app.services.preferences import (
    get_user_settings,
    list_push_subscriptions,
    prune_push_subscriptions,
)
from app.services.push import PushChannel, build_push_message, get_push_channel
from app.workers.base import WorkerBase

logger = logging.getLogger(__name__)


def default_claimant() -> str:
    """Identity written on claimed deliveries: host plus a per-process id."""
    return f"{socket.gethostname()}:{uuid4().hex[:8]}"


class DeliveryProcessor(WorkerBase[QueuedDelivery]):
    """Worker that turns due queue entries into history rows and pushes."""

    def __init__(
        self,
        queue: DeliveryQueue | None = None,
        push_channel: PushChannel | None = None,
        session_factory: SessionFactory | None = None,
        batch_size: int | None = None,
        concurrency: int | None = None,
        claimant: str | None = None,
        prune_expired: bool | None = None,
    ) -> None:
        settings = get_settings()
        super().__init__(
            batch_size=batch_size or settings.WORKER_BATCH_SIZE,
            concurrency=concurrency or settings.PROCESSOR_CONCURRENCY,
            session_factory=session_factory,
        )
        self.queue = queue or get_delivery_queue()
        self.push_channel = push_channel or get_push_channel()
        self.claimant = claimant or default_claimant()
        self.prune_expired = (
            prune_expired if prune_expired is not None else settings.PUSH_PRUNE_EXPIRED_SUBSCRIPTIONS
        )
        self.retry_backoff_seconds = settings.RETRY_BACKOFF_SECONDS
        self.retry_backoff_max_seconds = settings.RETRY_BACKOFF_MAX_SECONDS

    @property
    def worker_name(self) -> str:
        return "DeliveryProcessor"

    def get_item_id(self, item: QueuedDelivery) -> str:
        return item.key

    def fetch_pending(self, now: datetime) -> list[QueuedDelivery]:
        return self.queue.claimable_before(now, limit=self.batch_size)

    def mark_processing(self, item: QueuedDelivery, now: datetime) -> bool:
        return self.queue.claim(item.key, self.claimant, now)

    def process_item(self, item: QueuedDelivery) -> bool:
        """Deliver one claimed entry.

        Returns:
            False if the user has notifications disabled, True otherwise
        """
        context = {"queue_key": item.key, "user_id": str(item.user_id)}

        with self._session_factory() as session:
            settings = get_user_settings(session, item.user_id)

            if not settings.notifications_enabled:
                self._logger.info(
                    f"[{self.worker_name}] Notifications disabled, dropping delivery",
                    extra={**context, "stage": "settings"},
                )
                return False

            _, created = record_delivery(session, item)
            if not created:
                self._logger.info(
                    f"[{self.worker_name}] History already recorded, retrying push",
                    extra={**context, "stage": "history"},
                )

            if settings.push_enabled:
                self._push(session, item, settings.sound_enabled, context)

        return True

    def _push(self, session, item: QueuedDelivery, sound_enabled: bool, context: dict) -> None:
        subscriptions = list_push_subscriptions(session, item.user_id)
        if not subscriptions:
            self._logger.debug(
                f"[{self.worker_name}] No push subscriptions",
                extra={**context, "stage": "push"},
            )
            return

        message = build_push_message(item.payload, sound_enabled)
        outcomes = self.push_channel.send_all(subscriptions, message)

        delivered = sum(1 for outcome in outcomes if outcome.success)
        self._logger.info(
            f"[{self.worker_name}] Push sent to {delivered}/{len(outcomes)} subscriptions",
            extra={**context, "stage": "push"},
        )

        expired = [outcome.subscription_id for outcome in outcomes if outcome.expired]
        if expired and self.prune_expired:
            prune_push_subscriptions(session, expired)

    def mark_completed(self, item: QueuedDelivery) -> None:
        if not self.queue.remove(item.key, self.claimant):
            self._logger.warning(
                f"[{self.worker_name}] Lost claim on {item.key} before completion",
                extra={"queue_key": item.key, "user_id": str(item.user_id)},
            )

    def retry_at(self, item: QueuedDelivery) -> datetime:
        """Next fire instant after a failure: exponential in the attempt count, capped."""
        delay = min(
            self.retry_backoff_seconds * 2 ** item.attempts,
            self.retry_backoff_max_seconds,
        )
        return item.fire_at + timedelta(seconds=delay)

    def mark_failed(self, item: QueuedDelivery, error: str, can_retry: bool) -> None:
        # Always released; the attempt counter only affects log severity
        self.queue.release(item.key, self.claimant, retry_at=self.retry_at(item))
        if not can_retry:
            self._logger.warning(
                f"[{self.worker_name}] Delivery {item.key} keeps failing",
                extra={
                    "queue_key": item.key,
                    "user_id": str(item.user_id),
                    "attempts": item.attempts + 1,
                    "error": error,
                },
            )
