"""Base worker abstraction.

Provides a clean interface for background workers that:
1. Poll for due work items
2. Claim each item before any side effect
3. Process claimed items on a bounded thread pool
4. Complete or release each item and report per-cycle statistics

Workers hold no open session across items. Each step opens its own
short-lived session from the worker's session factory, so items can be
processed concurrently without sharing database state.
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from app.db.session import SessionFactory, new_session
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


class WorkerStatus(str, Enum):
    """Status of a worker run."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some items processed, some failed
    FAILED = "failed"
    NO_WORK = "no_work"


class ItemOutcome(str, Enum):
    """What happened to a single item."""

    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_CLAIMED = "not_claimed"


@dataclass
class WorkerResult:
    """Result of a worker processing cycle.

    Attributes:
        status: Overall status of the worker run
        processed_count: Number of items successfully processed
        failed_count: Number of items that failed
        skipped_count: Items completed without side effects
        duration_ms: Time taken for the processing cycle
        errors: List of error details for failed items
        metadata: Additional worker-specific metadata
    """

    status: WorkerStatus
    processed_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    duration_ms: float = 0.0
    errors: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "status": self.status.value,
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "duration_ms": self.duration_ms,
            "errors": self.errors,
            "metadata": self.metadata,
        }


# Generic type for work items
T = TypeVar("T")


class WorkerBase(ABC, Generic[T]):
    """Abstract base class for background workers.

    Workers follow this lifecycle per item:
    1. fetch_pending() - Get items that are due
    2. mark_processing() - Claim the item (False if someone else holds it)
    3. process_item() - Do the actual work
    4. mark_completed() or mark_failed() - Finish or give the item back

    Subclasses must implement all abstract methods.
    """

    def __init__(
        self,
        batch_size: int = 50,
        max_retries: int = 3,
        concurrency: int = 1,
        session_factory: SessionFactory | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            batch_size: Maximum items to process per cycle
            max_retries: Attempts after which failures are logged as final
            concurrency: Maximum items processed at the same time
            session_factory: Callable returning a new database session
        """
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.concurrency = max(1, concurrency)
        self._session_factory = session_factory or new_session
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    @abstractmethod
    def worker_name(self) -> str:
        """Return the worker name for logging."""
        pass

    @abstractmethod
    def fetch_pending(self, now: datetime) -> list[T]:
        """Fetch items due at or before ``now`` (up to batch_size)."""
        pass

    @abstractmethod
    def mark_processing(self, item: T, now: datetime) -> bool:
        """Claim an item.

        Returns:
            True if claimed, False if another processor already holds it
        """
        pass

    @abstractmethod
    def process_item(self, item: T) -> bool:
        """Process a single claimed item.

        Returns:
            True if the item had effects, False if it was skipped

        Raises:
            Exception: If processing fails
        """
        pass

    @abstractmethod
    def mark_completed(self, item: T) -> None:
        """Mark an item as successfully completed."""
        pass

    @abstractmethod
    def mark_failed(self, item: T, error: str, can_retry: bool) -> None:
        """Give a failed item back for a later attempt."""
        pass

    @abstractmethod
    def get_item_id(self, item: T) -> str:
        """Get the unique identifier for an item."""
        pass

    def should_retry(self, item: T) -> bool:
        """Check if an item should be retried.

        Default implementation checks ``attempts`` against max_retries.
        Override for custom logic.
        """
        if hasattr(item, "attempts"):
            return item.attempts < self.max_retries
        return False

    def handle_item(self, item: T, now: datetime) -> tuple[ItemOutcome, dict[str, Any] | None]:
        """Run the full lifecycle for one item. Never raises."""
        item_id = self.get_item_id(item)

        try:
            if not self.mark_processing(item, now):
                self._logger.debug(
                    f"[{self.worker_name}] Item {item_id} already claimed"
                )
                return ItemOutcome.NOT_CLAIMED, None
        except Exception as e:
            self._logger.error(
                f"[{self.worker_name}] Failed to claim item {item_id}",
                extra={"item_id": item_id, "stage": "claim", "error": str(e)},
                exc_info=True,
            )
            return ItemOutcome.FAILED, {"item_id": item_id, "error": str(e)[:500]}

        try:
            effective = self.process_item(item)
            self.mark_completed(item)
        except Exception as e:
            error_msg = str(e)[:500]  # Truncate long errors
            can_retry = self.should_retry(item)

            self._logger.error(
                f"[{self.worker_name}] Failed to process item {item_id}",
                extra={
                    "item_id": item_id,
                    "error": error_msg,
                    "can_retry": can_retry,
                },
                exc_info=True,
            )

            try:
                self.mark_failed(item, error_msg, can_retry)
            except Exception as release_error:
                # The claim lease expires and the item is taken over later
                self._logger.error(
                    f"[{self.worker_name}] Failed to release item {item_id}",
                    extra={"item_id": item_id, "stage": "release", "error": str(release_error)},
                    exc_info=True,
                )

            return ItemOutcome.FAILED, {
                "item_id": item_id,
                "error": error_msg,
                "can_retry": can_retry,
            }

        if effective:
            self._logger.info(
                f"[{self.worker_name}] Processed item {item_id}",
                extra={"item_id": item_id},
            )
            return ItemOutcome.PROCESSED, None

        self._logger.info(
            f"[{self.worker_name}] Skipped item {item_id}",
            extra={"item_id": item_id},
        )
        return ItemOutcome.SKIPPED, None

    def run(self, now: datetime | None = None) -> WorkerResult:
        """Execute one processing cycle.

        This is the main entry point for worker execution.

        Args:
            now: Cycle instant; items due at or before it are processed

        Returns:
            WorkerResult with processing statistics
        """
        start_time = utcnow()
        now = now or start_time
        processed = 0
        failed = 0
        skipped = 0
        errors: list[dict[str, Any]] = []

        self._logger.info(
            f"[{self.worker_name}] Starting processing cycle",
            extra={"batch_size": self.batch_size, "concurrency": self.concurrency},
        )

        try:
            items = self.fetch_pending(now)
        except Exception as e:
            self._logger.error(
                f"[{self.worker_name}] Worker cycle failed",
                extra={"error": str(e)},
                exc_info=True,
            )
            return WorkerResult(
                status=WorkerStatus.FAILED,
                duration_ms=self._elapsed_ms(start_time),
                errors=[{"error": str(e)}],
            )

        if not items:
            self._logger.debug(f"[{self.worker_name}] No pending items")
            return WorkerResult(
                status=WorkerStatus.NO_WORK,
                duration_ms=self._elapsed_ms(start_time),
            )

        self._logger.info(
            f"[{self.worker_name}] Found {len(items)} items to process"
        )

        with ThreadPoolExecutor(
            max_workers=self.concurrency,
            thread_name_prefix=self.worker_name,
        ) as executor:
            outcomes = list(executor.map(lambda item: self.handle_item(item, now), items))

        for outcome, error in outcomes:
            if outcome == ItemOutcome.PROCESSED:
                processed += 1
            elif outcome == ItemOutcome.SKIPPED:
                skipped += 1
            elif outcome == ItemOutcome.FAILED:
                failed += 1
                if error:
                    errors.append(error)

        # Determine overall status
        if failed == 0 and (processed > 0 or skipped > 0):
            status = WorkerStatus.SUCCESS
        elif failed > 0 and (processed > 0 or skipped > 0):
            status = WorkerStatus.PARTIAL
        elif failed > 0:
            status = WorkerStatus.FAILED
        else:
            status = WorkerStatus.NO_WORK

        result = WorkerResult(
            status=status,
            processed_count=processed,
            failed_count=failed,
            skipped_count=skipped,
            duration_ms=self._elapsed_ms(start_time),
            errors=errors,
        )

        self._logger.info(
            f"[{self.worker_name}] Cycle complete",
            extra=result.to_dict(),
        )

        return result

    def _elapsed_ms(self, start: datetime) -> float:
        """Calculate elapsed time in milliseconds."""
        return (utcnow() - start).total_seconds() * 1000
