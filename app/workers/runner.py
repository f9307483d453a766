"""Notification cycle runner.

One cycle:
1. Expand every active rule into queued per-user deliveries
2. Drain every delivery that is due

The processing endpoint runs exactly one cycle per trigger call. For
local development without the external trigger, ``run_worker_loop``
runs cycles on an interval:
- run_worker_once(): Single cycle
- run_worker_loop(): Continuous cycles until interrupted
"""

import logging
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.config import get_settings
from app.services.fanout import ExpansionResult, FanoutExpander
from app.utils.time import utcnow
from app.workers.base import WorkerResult, WorkerStatus
from app.workers.delivery_processor import DeliveryProcessor

logger = logging.getLogger(__name__)


@dataclass
class RunnerResult:
    """Result of one notification cycle.

    Attributes:
        started_at: When the cycle started
        completed_at: When the cycle completed
        expansions: Per-rule fan-out results
        processor_result: Result of draining the queue
        errors: Top-level errors during the cycle
    """

    started_at: datetime
    completed_at: datetime | None = None
    expansions: list[ExpansionResult] = field(default_factory=list)
    processor_result: WorkerResult | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def expanded(self) -> int:
        """Deliveries newly enqueued by fan-out this cycle."""
        return sum(expansion.enqueued for expansion in self.expansions)

    @property
    def processed(self) -> int:
        return self.processor_result.processed_count if self.processor_result else 0

    @property
    def failed(self) -> int:
        return self.processor_result.failed_count if self.processor_result else 0

    @property
    def skipped(self) -> int:
        return self.processor_result.skipped_count if self.processor_result else 0

    @property
    def success(self) -> bool:
        if self.errors:
            return False
        return self.processor_result is None or self.processor_result.status != WorkerStatus.FAILED

    def summary(self) -> dict[str, Any]:
        """Aggregate counts returned to the trigger caller."""
        return {
            "success": self.success,
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "expanded": self.expanded,
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": (
                (self.completed_at - self.started_at).total_seconds() * 1000
                if self.completed_at
                else None
            ),
            **self.summary(),
            "rules_expanded": len(self.expansions),
            "processor_result": self.processor_result.to_dict() if self.processor_result else None,
            "errors": self.errors,
        }


class NotificationCycleRunner:
    """Runs fan-out then delivery processing.

    Usage:
        runner = NotificationCycleRunner()
        result = runner.run_once()
    """

    def __init__(
        self,
        expander: FanoutExpander | None = None,
        processor: DeliveryProcessor | None = None,
        expand_rules: bool = True,
    ) -> None:
        self.expander = expander or FanoutExpander()
        self.processor = processor or DeliveryProcessor()
        self.expand_rules = expand_rules
        self._logger = logging.getLogger(self.__class__.__name__)
        self._shutdown_requested = False

    def run_once(self, now: datetime | None = None) -> RunnerResult:
        """Execute one complete cycle.

        A fan-out failure is recorded and the queue is still drained, so
        deliveries that are already due are never held back by a broken rule.
        """
        now = now or utcnow()
        result = RunnerResult(started_at=utcnow())

        self._logger.info("Starting notification cycle", extra={"as_of": now.isoformat()})

        if self.expand_rules:
            try:
                result.expansions = self.expander.expand_active_rules(now)
            except Exception as e:
                error_msg = f"Fan-out failed: {str(e)}"
                result.errors.append(error_msg)
                self._logger.error(error_msg, extra={"stage": "expand"}, exc_info=True)

        try:
            result.processor_result = self.processor.run(now)
        except Exception as e:
            error_msg = f"{self.processor.worker_name} failed: {str(e)}"
            result.errors.append(error_msg)
            self._logger.error(
                error_msg,
                extra={"worker": self.processor.worker_name},
                exc_info=True,
            )

        result.completed_at = utcnow()

        self._logger.info(
            "Notification cycle completed",
            extra=result.to_dict(),
        )

        return result

    def run_loop(
        self,
        interval_seconds: int | None = None,
        max_iterations: int | None = None,
    ) -> None:
        """Run cycles continuously in a loop.

        Args:
            interval_seconds: Seconds between cycles (default from config)
            max_iterations: Max cycles to run (None for infinite)
        """
        settings = get_settings()
        interval = interval_seconds or settings.WORKER_POLL_INTERVAL_SECONDS
        iterations = 0

        # Setup signal handlers for clean shutdown
        self._setup_signal_handlers()

        self._logger.info(
            "Starting cycle loop",
            extra={
                "interval_seconds": interval,
                "max_iterations": max_iterations,
            },
        )

        try:
            while not self._shutdown_requested:
                if max_iterations is not None and iterations >= max_iterations:
                    self._logger.info(
                        f"Reached max iterations ({max_iterations}), stopping"
                    )
                    break

                result = self.run_once()
                iterations += 1

                self._logger.info(
                    f"Iteration {iterations} complete",
                    extra=result.summary(),
                )

                if not self._shutdown_requested:
                    self._logger.debug(f"Sleeping for {interval} seconds")
                    time.sleep(interval)

        except KeyboardInterrupt:
            self._logger.info("Keyboard interrupt received, shutting down")

        self._logger.info(
            "Cycle loop stopped",
            extra={"total_iterations": iterations},
        )

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def handle_signal(signum, frame):
            self._logger.info(f"Received signal {signum}, requesting shutdown")
            self._shutdown_requested = True

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

    def request_shutdown(self) -> None:
        """Request graceful shutdown of the loop."""
        self._shutdown_requested = True


# Convenience functions for easy usage


def _build_runner(
    batch_size: int | None,
    concurrency: int | None,
    expand_rules: bool,
) -> NotificationCycleRunner:
    return NotificationCycleRunner(
        processor=DeliveryProcessor(batch_size=batch_size, concurrency=concurrency),
        expand_rules=expand_rules,
    )


def run_worker_once(
    batch_size: int | None = None,
    concurrency: int | None = None,
    expand_rules: bool = True,
) -> RunnerResult:
    """Run one notification cycle and return results.

    Example:
        >>> from app.workers import run_worker_once
        >>> result = run_worker_once()
        >>> print(f"Processed: {result.processed}")
    """
    return _build_runner(batch_size, concurrency, expand_rules).run_once()


def run_worker_loop(
    interval_seconds: int | None = None,
    max_iterations: int | None = None,
    batch_size: int | None = None,
    concurrency: int | None = None,
    expand_rules: bool = True,
) -> None:
    """Run notification cycles until interrupted (Ctrl+C) or max_iterations reached.

    Example:
        >>> from app.workers import run_worker_loop
        >>> run_worker_loop(interval_seconds=10)  # Ctrl+C to stop
    """
    runner = _build_runner(batch_size, concurrency, expand_rules)
    runner.run_loop(
        interval_seconds=interval_seconds,
        max_iterations=max_iterations,
    )


# Configure logging for worker runs
def configure_worker_logging(level: int = logging.INFO) -> None:
    """Configure logging for worker processes.

    Args:
        level: Logging level (default: INFO)
    """
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Set specific loggers
    logging.getLogger("app.workers").setLevel(level)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
