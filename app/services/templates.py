"""Message template variables for notification rules.

Rule messages contain ``{placeholder}`` tokens that are filled in per user
at fan-out time with live values (e.g. ``"{todoCount} todos left"``).
Each placeholder is a registration in ``TemplateVariableRegistry`` mapping
a name to a resolver ``(session, user_id) -> value``; adding a variable is
a ``register`` call, not an edit to the rendering code.
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from uuid import UUID

from sqlmodel import Session, func, select

from app.models.brainstorm import Brainstorm
from app.models.note import Note
from app.models.task import Task
from app.services.recurrence import RuleValidationError

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")

Resolver = Callable[[Session, UUID], int | str]


@dataclass(frozen=True)
class TemplateVariable:
    """A named placeholder and the live query behind it."""

    name: str
    resolver: Resolver
    description: str = ""


@dataclass
class RenderedTemplate:
    """Result of rendering a template for one user.

    Attributes:
        text: Message with every recognized placeholder substituted
        values: Resolved value per placeholder name
        unresolved: Placeholders left in ``text`` because nothing resolves them
    """

    text: str
    values: dict[str, str] = field(default_factory=dict)
    unresolved: list[str] = field(default_factory=list)


def placeholders(template: str) -> list[str]:
    """Distinct placeholder names in order of first appearance."""
    seen: dict[str, None] = {}
    for name in PLACEHOLDER_PATTERN.findall(template):
        seen.setdefault(name, None)
    return list(seen)


class TemplateVariableRegistry:
    """Registry of template variables available to rule authors."""

    def __init__(self) -> None:
        self._variables: dict[str, TemplateVariable] = {}

    def register(self, name: str, resolver: Resolver, description: str = "") -> None:
        if not PLACEHOLDER_PATTERN.fullmatch(f"{{{name}}}"):
            raise ValueError(f"Invalid template variable name: {name!r}")
        self._variables[name] = TemplateVariable(name, resolver, description)

    def variable(self, name: str, description: str = "") -> Callable[[Resolver], Resolver]:
        """Decorator form of ``register``."""

        def decorator(resolver: Resolver) -> Resolver:
            self.register(name, resolver, description)
            return resolver

        return decorator

    def __contains__(self, name: object) -> bool:
        return name in self._variables

    def names(self) -> list[str]:
        return sorted(self._variables)

    def describe(self) -> dict[str, str]:
        return {name: self._variables[name].description for name in self.names()}

    def validate(self, template: str) -> None:
        """Reject templates that reference unknown variables.

        Raises:
            RuleValidationError: Listing every unknown placeholder
        """
        unknown = [name for name in placeholders(template) if name not in self._variables]
        if unknown:
            raise RuleValidationError(
                "Unknown template variables: "
                + ", ".join(f"{{{name}}}" for name in unknown)
                + f". Available: {', '.join(self.names()) or 'none'}"
            )

    def render(self, template: str, session: Session, user_id: UUID) -> RenderedTemplate:
        """Substitute live per-user values into ``template``.

        Each recognized placeholder costs one query. Unrecognized ones stay
        in the text verbatim and are reported in ``unresolved``.
        """
        values: dict[str, str] = {}
        unresolved: list[str] = []

        for name in placeholders(template):
            variable = self._variables.get(name)
            if variable is None:
                unresolved.append(name)
                continue
            values[name] = str(variable.resolver(session, user_id))

        if unresolved:
            logger.warning(
                "Template has placeholders with no registered variable",
                extra={"user_id": str(user_id), "unresolved": unresolved},
            )

        text = PLACEHOLDER_PATTERN.sub(
            lambda match: values.get(match.group(1), match.group(0)),
            template,
        )
        return RenderedTemplate(text=text, values=values, unresolved=unresolved)


# -----------------------------------------------------------------------------
# Default variables
# -----------------------------------------------------------------------------

default_registry = TemplateVariableRegistry()


@default_registry.variable("todoCount", "Number of incomplete todos")
def _todo_count(session: Session, user_id: UUID) -> int:
    return session.exec(
        select(func.count())
        .select_from(Task)
        .where(Task.user_id == user_id, Task.is_completed == False)  # noqa: E712
    ).one()


@default_registry.variable("brainstormCount", "Number of brainstorm ideas")
def _brainstorm_count(session: Session, user_id: UUID) -> int:
    return session.exec(
        select(func.count()).select_from(Brainstorm).where(Brainstorm.user_id == user_id)
    ).one()


@default_registry.variable("noteCount", "Number of notes")
def _note_count(session: Session, user_id: UUID) -> int:
    return session.exec(
        select(func.count()).select_from(Note).where(Note.user_id == user_id)
    ).one()


def get_template_registry() -> TemplateVariableRegistry:
    """Registry used by rule validation and fan-out."""
    return default_registry
