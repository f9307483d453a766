"""Notification rule authoring (administrator CRUD)."""

import logging
from uuid import UUID

from sqlmodel import Session, select

from app.models.notification import (
    NotificationRule,
    NotificationRuleCreate,
    NotificationRuleUpdate,
)
from app.services.delivery_queue import DeliveryQueue, rule_key_prefix
from app.services.recurrence import validate_rule_schedule
from app.services.templates import TemplateVariableRegistry, get_template_registry
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


def _validate(rule: NotificationRuleCreate | NotificationRule, registry: TemplateVariableRegistry) -> None:
    validate_rule_schedule(rule.schedule_type, rule.schedule_time, rule.schedule_day)
    registry.validate(rule.title)
    registry.validate(rule.message)


def create_rule(
    session: Session,
    created_by: UUID,
    rule_data: NotificationRuleCreate,
    registry: TemplateVariableRegistry | None = None,
) -> NotificationRule:
    """Create a rule after checking its schedule and template.

    Raises:
        RuleValidationError: If the rule could never be delivered
    """
    _validate(rule_data, registry or get_template_registry())

    rule = NotificationRule(
        title=rule_data.title,
        message=rule_data.message,
        schedule_type=rule_data.schedule_type,
        schedule_time=rule_data.schedule_time,
        schedule_day=rule_data.schedule_day,
        is_active=rule_data.is_active,
        created_by=created_by,
    )
    session.add(rule)
    session.commit()
    session.refresh(rule)

    logger.info("Notification rule created", extra={"rule_id": str(rule.id)})
    return rule


def list_rules(session: Session, include_inactive: bool = True) -> list[NotificationRule]:
    """Rules that have not been removed, newest first."""
    query = select(NotificationRule).where(NotificationRule.is_deleted == False)  # noqa: E712
    if not include_inactive:
        query = query.where(NotificationRule.is_active == True)  # noqa: E712
    return list(session.exec(query.order_by(NotificationRule.created_at.desc())).all())


def get_rule(session: Session, rule_id: UUID) -> NotificationRule | None:
    rule = session.get(NotificationRule, rule_id)
    if rule is None or rule.is_deleted:
        return None
    return rule


def update_rule(
    session: Session,
    rule: NotificationRule,
    rule_data: NotificationRuleUpdate,
    queue: DeliveryQueue | None = None,
    registry: TemplateVariableRegistry | None = None,
) -> NotificationRule:
    """Apply a partial update.

    Queued deliveries from the old definition are dropped so the next
    fan-out enqueues the edited one instead of both.

    Raises:
        RuleValidationError: If the updated rule could never be delivered
    """
    update_data = rule_data.model_dump(exclude_unset=True)

    candidate = NotificationRuleCreate(
        title=update_data.get("title", rule.title),
        message=update_data.get("message", rule.message),
        schedule_type=update_data.get("schedule_type", rule.schedule_type),
        schedule_time=update_data.get("schedule_time", rule.schedule_time),
        schedule_day=update_data.get("schedule_day", rule.schedule_day),
        is_active=update_data.get("is_active", rule.is_active),
    )
    _validate(candidate, registry or get_template_registry())

    for key, value in update_data.items():
        setattr(rule, key, value)

    rule.updated_at = utcnow()
    session.add(rule)
    session.commit()
    session.refresh(rule)

    if queue is not None:
        queue.remove_prefix(rule_key_prefix(rule.id))

    logger.info(
        "Notification rule updated",
        extra={"rule_id": str(rule.id), "fields": sorted(update_data)},
    )
    return rule


def delete_rule(
    session: Session,
    rule: NotificationRule,
    queue: DeliveryQueue | None = None,
) -> None:
    """Soft-remove a rule; it is kept for history but never expanded again."""
    rule.is_deleted = True
    rule.is_active = False
    rule.updated_at = utcnow()
    session.add(rule)
    session.commit()

    if queue is not None:
        queue.remove_prefix(rule_key_prefix(rule.id))

    logger.info("Notification rule removed", extra={"rule_id": str(rule.id)})
