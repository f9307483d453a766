"""Brainstorm entity model."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from app.utils.time import utcnow


class Brainstorm(SQLModel, table=True):
    """Brainstorm idea, counted by ``{brainstormCount}``."""

    __tablename__ = "brainstorms"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", index=True)
    title: str = Field(max_length=200)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
