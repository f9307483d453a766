"""Fan-out of recurring notification rules into per-user deliveries.

For each active rule:
1. Resolve the rule's next calendar occurrence once
2. Map it to each target user's local wall clock (their timezone)
3. Render the message template with that user's live values
4. Enqueue one delivery per user under a deterministic key
5. Ask the job trigger for a processing call at each distinct instant

Per-user work (steps 2-4) runs on a bounded thread pool so the metrics
queries behind template variables never exceed ``METRICS_CONCURRENCY``.
Queue keys are derived from (rule, user, instant), so expanding the same
occurrence again on a later cycle leaves the queue unchanged.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlmodel import select

from app.config import get_settings
from app.db.session import SessionFactory, new_session
from app.models.notification import NotificationRule, NotificationType
from app.services.delivery_queue import (
    DeliveryPayload,
    DeliveryQueue,
    get_delivery_queue,
    scheduled_key,
)
from app.services.job_trigger import JobTriggerClient, get_job_trigger
from app.services.preferences import NotificationTarget, list_notification_targets
from app.services.recurrence import localize_occurrence, next_occurrence
from app.services.templates import TemplateVariableRegistry, get_template_registry
from app.utils.time import ensure_utc

logger = logging.getLogger(__name__)


@dataclass
class ExpansionResult:
    """Outcome of expanding one rule.

    Attributes:
        rule_id: The expanded rule
        occurrence: Shared calendar occurrence (None if the rule was skipped)
        enqueued: Deliveries newly written or replaced
        unchanged: Deliveries already queued with identical content
        failed: Users whose delivery could not be produced
        trigger_instants: Distinct instants a processing call was requested for
        errors: Per-user error details
    """

    rule_id: UUID
    occurrence: datetime | None = None
    enqueued: int = 0
    unchanged: int = 0
    failed: int = 0
    trigger_instants: list[datetime] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def targets(self) -> int:
        return self.enqueued + self.unchanged + self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": str(self.rule_id),
            "occurrence": self.occurrence.isoformat() if self.occurrence else None,
            "enqueued": self.enqueued,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "trigger_instants": [at.isoformat() for at in self.trigger_instants],
            "errors": self.errors,
        }


class FanoutExpander:
    """Expands notification rules into queued per-user deliveries."""

    def __init__(
        self,
        queue: DeliveryQueue | None = None,
        session_factory: SessionFactory | None = None,
        registry: TemplateVariableRegistry | None = None,
        job_trigger: JobTriggerClient | None = None,
        max_workers: int | None = None,
        default_timezone: str | None = None,
    ) -> None:
        settings = get_settings()
        self.queue = queue or get_delivery_queue()
        self._session_factory = session_factory or new_session
        self.registry = registry or get_template_registry()
        self.job_trigger = job_trigger or get_job_trigger()
        self.max_workers = max_workers or settings.METRICS_CONCURRENCY
        self.default_timezone = default_timezone or settings.DEFAULT_TIMEZONE

    def user_instant(self, rule: Any, occurrence: datetime, as_of: datetime, tz: str) -> datetime:
        """UTC instant at which ``occurrence`` happens for a user in ``tz``.

        If the user's local wall-clock time for the shared occurrence has
        already passed (timezones ahead of the default), the user's own
        next occurrence is used instead.
        """
        instant = localize_occurrence(occurrence, tz)
        if instant <= ensure_utc(as_of):
            instant = localize_occurrence(next_occurrence(rule, as_of, tz), tz)
        return instant

    def expand(self, rule: NotificationRule, as_of: datetime) -> ExpansionResult:
        """Enqueue the next occurrence of ``rule`` for every target user."""
        result = ExpansionResult(rule_id=rule.id)

        if not rule.is_active or rule.is_deleted:
            logger.debug("Skipping inactive rule", extra={"rule_id": str(rule.id)})
            return result

        occurrence = next_occurrence(rule, as_of, self.default_timezone)
        result.occurrence = occurrence

        with self._session_factory() as session:
            targets = list_notification_targets(session)

        if not targets:
            logger.info("No notification targets for rule", extra={"rule_id": str(rule.id)})
            return result

        instants: set[datetime] = set()

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="fanout") as executor:
            futures = {
                executor.submit(self._expand_for_user, rule, occurrence, as_of, target): target
                for target in targets
            }
            for future in as_completed(futures):
                target = futures[future]
                try:
                    fire_at, changed = future.result()
                except Exception as e:
                    result.failed += 1
                    result.errors.append({"user_id": str(target.user_id), "error": str(e)[:500]})
                    logger.error(
                        "Failed to expand rule for user",
                        extra={
                            "rule_id": str(rule.id),
                            "user_id": str(target.user_id),
                            "stage": "expand",
                            "error": str(e),
                        },
                        exc_info=True,
                    )
                    continue

                instants.add(fire_at)
                if changed:
                    result.enqueued += 1
                else:
                    result.unchanged += 1

        for fire_at in sorted(instants):
            if self.job_trigger.schedule_processing(fire_at):
                result.trigger_instants.append(fire_at)

        logger.info("Rule expanded", extra=result.to_dict())
        return result

    def _expand_for_user(
        self,
        rule: NotificationRule,
        occurrence: datetime,
        as_of: datetime,
        target: NotificationTarget,
    ) -> tuple[datetime, bool]:
        fire_at = self.user_instant(rule, occurrence, as_of, target.timezone)

        with self._session_factory() as session:
            rendered = self.registry.render(rule.message, session, target.user_id)

        payload = DeliveryPayload(
            user_id=target.user_id,
            title=rule.title,
            message=rendered.text,
            notification_type=NotificationType.SCHEDULED.value,
        )
        changed = self.queue.enqueue(scheduled_key(rule.id, target.user_id, fire_at), payload, fire_at)
        return fire_at, changed

    def expand_active_rules(self, as_of: datetime) -> list[ExpansionResult]:
        """Expand every active rule; one failing rule does not stop the rest."""
        with self._session_factory() as session:
            rules = list(
                session.exec(
                    select(NotificationRule)
                    .where(NotificationRule.is_active == True)  # noqa: E712
                    .where(NotificationRule.is_deleted == False)  # noqa: E712
                    .order_by(NotificationRule.created_at)
                ).all()
            )

        results = []
        for rule in rules:
            try:
                results.append(self.expand(rule, as_of))
            except Exception as e:
                logger.error(
                    "Failed to expand rule",
                    extra={"rule_id": str(rule.id), "stage": "expand", "error": str(e)},
                    exc_info=True,
                )
                results.append(
                    ExpansionResult(rule_id=rule.id, errors=[{"error": str(e)[:500]}])
                )
        return results
