"""Task (todo item) entity model."""

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import DateTime
from sqlmodel import Field, Relationship, SQLModel

from app.utils.time import utcnow

if TYPE_CHECKING:
    from app.models.user import User


class Task(SQLModel, table=True):
    """Task database model.

    Incomplete tasks feed the ``{todoCount}`` template variable.
    """

    __tablename__ = "tasks"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", index=True)
    title: str = Field(min_length=1, max_length=200)
    is_completed: bool = Field(default=False, index=True)
    due_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    user: "User" = Relationship(back_populates="tasks")
