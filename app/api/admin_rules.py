"""Administrator endpoints for recurring notification rules."""

from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from app.api.deps import AdminUser, DBSession, Queue
from app.models.notification import (
    NotificationRuleCreate,
    NotificationRuleResponse,
    NotificationRuleUpdate,
)
from app.services.recurrence import RuleValidationError
from app.services.rules import create_rule, delete_rule, get_rule, list_rules, update_rule
from app.services.templates import get_template_registry

router = APIRouter(prefix="/api/admin/notification-rules", tags=["Admin"])


def _get_rule_or_404(session: DBSession, rule_id: UUID):
    rule = get_rule(session, rule_id)
    if rule is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Notification rule not found",
        )
    return rule


@router.get("", response_model=list[NotificationRuleResponse])
def list_rules_endpoint(
    session: DBSession,
    admin: AdminUser,
) -> list[NotificationRuleResponse]:
    """List every rule that has not been removed."""
    return [NotificationRuleResponse.model_validate(rule) for rule in list_rules(session)]


@router.get("/variables")
def list_template_variables_endpoint(admin: AdminUser) -> dict[str, str]:
    """Placeholders available to rule messages, with descriptions."""
    return get_template_registry().describe()


@router.post("", response_model=NotificationRuleResponse, status_code=status.HTTP_201_CREATED)
def create_rule_endpoint(
    session: DBSession,
    admin: AdminUser,
    rule_data: NotificationRuleCreate,
) -> NotificationRuleResponse:
    """Create a recurring notification rule."""
    try:
        rule = create_rule(session, admin.id, rule_data)
    except RuleValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )
    return NotificationRuleResponse.model_validate(rule)


@router.patch("/{rule_id}", response_model=NotificationRuleResponse)
def update_rule_endpoint(
    session: DBSession,
    admin: AdminUser,
    queue: Queue,
    rule_id: UUID,
    rule_data: NotificationRuleUpdate,
) -> NotificationRuleResponse:
    """Edit or toggle a rule."""
    rule = _get_rule_or_404(session, rule_id)
    try:
        rule = update_rule(session, rule, rule_data, queue=queue)
    except RuleValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )
    return NotificationRuleResponse.model_validate(rule)


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_rule_endpoint(
    session: DBSession,
    admin: AdminUser,
    queue: Queue,
    rule_id: UUID,
) -> None:
    """Soft-remove a rule."""
    rule = _get_rule_or_404(session, rule_id)
    delete_rule(session, rule, queue=queue)
