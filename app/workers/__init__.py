"""Background workers for notification processing.

- DeliveryProcessor: drains due deliveries into history and push
- NotificationCycleRunner: rule fan-out followed by delivery processing

Cycles can be started via:
- run_worker_once(): Single cycle
- run_worker_loop(): Continuous cycles with interval
"""

from app.workers.base import (
    ItemOutcome,
    WorkerBase,
    WorkerResult,
    WorkerStatus,
)
from app.workers.delivery_processor import DeliveryProcessor
from app.workers.runner import (
    NotificationCycleRunner,
    RunnerResult,
    run_worker_once,
    run_worker_loop,
    configure_worker_logging,
)

__all__ = [
    # Base classes
    "ItemOutcome",
    "WorkerBase",
    "WorkerResult",
    "WorkerStatus",
    # Workers
    "DeliveryProcessor",
    # Runner
    "NotificationCycleRunner",
    "RunnerResult",
    "run_worker_once",
    "run_worker_loop",
    "configure_worker_logging",
]
