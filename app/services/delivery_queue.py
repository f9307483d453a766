"""Durable, time-ordered delivery queue.

Every producer (recurring rule fan-out, deadline reminders, direct sends)
and the single consumer (the delivery processor) go through the
``DeliveryQueue`` interface. The relational implementation keeps the
score index (``fire_at_ms``) and the payload in one row, so removing a
key removes both in a single statement and a removed key can never show
up in a later ``due_before`` call.

Claim state machine::

    queued --claim--> claimed --remove--> (delivered)
                         |
                         +--release--> queued (attempts += 1, optional new score)

A claim whose lease has expired can be taken over by another processor,
which covers a processor that died between claim and remove. Once taken
over, only the new holder can remove or release the entry.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select

from app.config import get_settings
from app.db.session import SessionFactory, new_session
from app.models.delivery import QueueStatus, ScheduledDelivery
from app.utils.time import ensure_utc, from_score, to_score, utcnow

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Queue keys
# -----------------------------------------------------------------------------


def scheduled_key(rule_id: UUID, user_id: UUID, fire_at: datetime) -> str:
    """Deterministic key for one rule occurrence for one user."""
    return f"scheduled:{rule_id}:{user_id}:{to_score(fire_at)}"


def rule_key_prefix(rule_id: UUID) -> str:
    """Common prefix of every queue key produced by one rule."""
    return f"scheduled:{rule_id}:"


def reminder_key(
    user_id: UUID, item_type: str, item_id: str, kind: str, fire_at: datetime
) -> str:
    """Deterministic key for one deadline reminder of a user's item.

    Item ids are only unique per user, so the user is part of the key.
    """
    return f"reminder:{user_id}:{item_type}:{item_id}:{kind}:{to_score(fire_at)}"


def direct_key(user_id: UUID) -> str:
    """Unique key for an ad hoc notification."""
    return f"direct:{user_id}:{uuid4().hex}"


# -----------------------------------------------------------------------------
# Queue value types
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class DeliveryPayload:
    """What gets delivered, independent of where it sits in the queue."""

    user_id: UUID
    title: str
    message: str
    notification_type: str = "scheduled"
    item_id: str | None = None
    item_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["user_id"] = str(self.user_id)
        return data


@dataclass(frozen=True)
class QueuedDelivery:
    """A queue entry as returned by ``due_before``."""

    key: str
    payload: DeliveryPayload
    fire_at: datetime
    status: QueueStatus = QueueStatus.QUEUED
    attempts: int = 0

    @property
    def user_id(self) -> UUID:
        return self.payload.user_id

    @classmethod
    def from_row(cls, row: ScheduledDelivery) -> "QueuedDelivery":
        return cls(
            key=row.queue_key,
            payload=DeliveryPayload(
                user_id=row.user_id,
                title=row.title,
                message=row.message,
                notification_type=row.notification_type,
                item_id=row.item_id,
                item_type=row.item_type,
            ),
            fire_at=from_score(row.fire_at_ms),
            status=row.status,
            attempts=row.attempts,
        )


# -----------------------------------------------------------------------------
# Interface
# -----------------------------------------------------------------------------


class DeliveryQueue(ABC):
    """Time-ordered queue of pending deliveries."""

    @abstractmethod
    def enqueue(self, key: str, payload: DeliveryPayload, fire_at: datetime) -> bool:
        """Store ``payload`` under ``key`` scored by ``fire_at``.

        Returns:
            True if the queue changed, False for an identical re-enqueue
        """

    @abstractmethod
    def due_before(self, now: datetime, limit: int | None = None) -> list[QueuedDelivery]:
        """Entries scored at or before ``now``, ascending. Does not remove."""

    @abstractmethod
    def claimable_before(self, now: datetime, limit: int | None = None) -> list[QueuedDelivery]:
        """Due entries a processor could claim at ``now``.

        Entries held under an unexpired lease are left out. Entries that
        have failed fewer times come first, then ascending fire instant.
        """

    @abstractmethod
    def remove(self, key: str, claimant: str | None = None) -> bool:
        """Remove index entry and payload. Missing keys are a no-op.

        With ``claimant``, only removes the entry while that claimant
        still holds it.
        """

    @abstractmethod
    def claim(self, key: str, claimant: str, now: datetime | None = None) -> bool:
        """Move ``key`` from queued to claimed. False if someone else holds it."""

    @abstractmethod
    def release(self, key: str, claimant: str, retry_at: datetime | None = None) -> bool:
        """Return a claimed entry to the queue for retry, optionally at ``retry_at``."""

    @abstractmethod
    def pending_for_user(self, user_id: UUID) -> list[QueuedDelivery]:
        """All entries for one user, ascending by fire instant."""

    @abstractmethod
    def reschedule(self, key: str, fire_at: datetime) -> bool:
        """Move an existing entry to a new fire instant."""

    @abstractmethod
    def clear_user(self, user_id: UUID) -> int:
        """Drop every entry for a user. Returns the number removed."""

    @abstractmethod
    def remove_prefix(self, prefix: str) -> int:
        """Drop every unclaimed entry whose key starts with ``prefix``."""


# -----------------------------------------------------------------------------
# Relational implementation
# -----------------------------------------------------------------------------


class SqlDeliveryQueue(DeliveryQueue):
    """Delivery queue stored in the ``scheduled_deliveries`` table.

    Each operation runs in its own short transaction so the queue is safe
    to share between threads and between overlapping processing cycles.
    """

    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        lease_seconds: int | None = None,
    ) -> None:
        self._session_factory = session_factory or new_session
        self.lease_seconds = (
            lease_seconds if lease_seconds is not None else get_settings().CLAIM_LEASE_SECONDS
        )

    def enqueue(self, key: str, payload: DeliveryPayload, fire_at: datetime) -> bool:
        score = to_score(fire_at)
        values = {
            "user_id": payload.user_id,
            "title": payload.title,
            "message": payload.message,
            "scheduled_for": ensure_utc(fire_at),
            "fire_at_ms": score,
            "item_id": payload.item_id,
            "item_type": payload.item_type,
            "notification_type": payload.notification_type,
        }

        with self._session_factory() as session:
            existing = session.get(ScheduledDelivery, key)

            if existing is None:
                session.add(ScheduledDelivery(queue_key=key, **values))
                try:
                    session.commit()
                except IntegrityError:
                    # Lost an insert race on the same key; the winner's row stands
                    session.rollback()
                    logger.debug("Concurrent enqueue of existing key", extra={"queue_key": key})
                    return False
                logger.debug(
                    "Delivery enqueued",
                    extra={"queue_key": key, "fire_at_ms": score},
                )
                return True

            # scheduled_for mirrors fire_at_ms and may come back without an offset
            if all(
                getattr(existing, name) == value
                for name, value in values.items()
                if name != "scheduled_for"
            ):
                return False

            for name, value in values.items():
                setattr(existing, name, value)
            session.add(existing)
            session.commit()

        logger.info(
            "Delivery replaced in queue",
            extra={"queue_key": key, "fire_at_ms": score},
        )
        return True

    def due_before(self, now: datetime, limit: int | None = None) -> list[QueuedDelivery]:
        query = (
            select(ScheduledDelivery)
            .where(ScheduledDelivery.fire_at_ms <= to_score(now))
            .order_by(ScheduledDelivery.fire_at_ms, ScheduledDelivery.queue_key)
        )
        if limit is not None:
            query = query.limit(limit)

        with self._session_factory() as session:
            rows = session.exec(query).all()
            return [QueuedDelivery.from_row(row) for row in rows]

    def claimable_before(self, now: datetime, limit: int | None = None) -> list[QueuedDelivery]:
        query = (
            select(ScheduledDelivery)
            .where(ScheduledDelivery.fire_at_ms <= to_score(now))
            .where(self._claimable(self._lease_cutoff(now)))
            .order_by(
                ScheduledDelivery.attempts,
                ScheduledDelivery.fire_at_ms,
                ScheduledDelivery.queue_key,
            )
        )
        if limit is not None:
            query = query.limit(limit)

        with self._session_factory() as session:
            rows = session.exec(query).all()
            return [QueuedDelivery.from_row(row) for row in rows]

    def remove(self, key: str, claimant: str | None = None) -> bool:
        statement = delete(ScheduledDelivery).where(ScheduledDelivery.queue_key == key)
        if claimant is not None:
            statement = statement.where(ScheduledDelivery.claimed_by == claimant)

        with self._session_factory() as session:
            result = session.execute(statement)
            session.commit()
            return result.rowcount > 0

    def claim(self, key: str, claimant: str, now: datetime | None = None) -> bool:
        claimed_at = ensure_utc(now) if now is not None else utcnow()

        with self._session_factory() as session:
            result = session.execute(
                update(ScheduledDelivery)
                .where(ScheduledDelivery.queue_key == key)
                .where(self._claimable(self._lease_cutoff(claimed_at)))
                .values(
                    status=QueueStatus.CLAIMED,
                    claimed_by=claimant,
                    claimed_at=claimed_at,
                )
            )
            session.commit()
            return result.rowcount == 1

    def release(self, key: str, claimant: str, retry_at: datetime | None = None) -> bool:
        values: dict[str, Any] = {
            "status": QueueStatus.QUEUED,
            "claimed_by": None,
            "claimed_at": None,
            "attempts": ScheduledDelivery.attempts + 1,
        }
        if retry_at is not None:
            values["fire_at_ms"] = to_score(retry_at)
            values["scheduled_for"] = ensure_utc(retry_at)

        with self._session_factory() as session:
            result = session.execute(
                update(ScheduledDelivery)
                .where(ScheduledDelivery.queue_key == key)
                .where(ScheduledDelivery.claimed_by == claimant)
                .values(**values)
            )
            session.commit()
            return result.rowcount == 1

    def pending_for_user(self, user_id: UUID) -> list[QueuedDelivery]:
        with self._session_factory() as session:
            rows = session.exec(
                select(ScheduledDelivery)
                .where(ScheduledDelivery.user_id == user_id)
                .order_by(ScheduledDelivery.fire_at_ms, ScheduledDelivery.queue_key)
            ).all()
            return [QueuedDelivery.from_row(row) for row in rows]

    def reschedule(self, key: str, fire_at: datetime) -> bool:
        with self._session_factory() as session:
            result = session.execute(
                update(ScheduledDelivery)
                .where(ScheduledDelivery.queue_key == key)
                .values(
                    fire_at_ms=to_score(fire_at),
                    scheduled_for=ensure_utc(fire_at),
                )
            )
            session.commit()
            return result.rowcount == 1

    def clear_user(self, user_id: UUID) -> int:
        with self._session_factory() as session:
            result = session.execute(
                delete(ScheduledDelivery).where(ScheduledDelivery.user_id == user_id)
            )
            session.commit()
            count = result.rowcount

        if count:
            logger.info(
                "Cleared queued deliveries for user",
                extra={"user_id": str(user_id), "count": count},
            )
        return count

    def remove_prefix(self, prefix: str) -> int:
        with self._session_factory() as session:
            result = session.execute(
                delete(ScheduledDelivery)
                .where(col(ScheduledDelivery.queue_key).startswith(prefix, autoescape=True))
                .where(ScheduledDelivery.status == QueueStatus.QUEUED)
            )
            session.commit()
            return result.rowcount

    def _lease_cutoff(self, now: datetime) -> datetime:
        return ensure_utc(now) - timedelta(seconds=self.lease_seconds)

    @staticmethod
    def _claimable(lease_cutoff: datetime):
        """Rows that are queued, or claimed under a lease older than the cutoff."""
        return or_(
            ScheduledDelivery.status == QueueStatus.QUEUED,
            ScheduledDelivery.claimed_at < lease_cutoff,
        )


# -----------------------------------------------------------------------------
# Singleton
# -----------------------------------------------------------------------------

_queue_instance: DeliveryQueue | None = None


def get_delivery_queue() -> DeliveryQueue:
    """Get or create the process-wide delivery queue.

    Returns:
        DeliveryQueue: The queue instance
    """
    global _queue_instance
    if _queue_instance is None:
        _queue_instance = SqlDeliveryQueue()
    return _queue_instance
