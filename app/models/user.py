"""User entity model."""

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import DateTime
from sqlmodel import Field, Relationship, SQLModel

from app.utils.time import utcnow

if TYPE_CHECKING:
    from app.models.task import Task


class UserBase(SQLModel):
    """Base User schema."""

    email: str = Field(max_length=255, unique=True, index=True)


class User(UserBase, table=True):
    """User database model.

    Accounts are created by the auth layer; this service only reads them
    to find notification targets and to authorize admin endpoints.
    """

    __tablename__ = "users"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    is_admin: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    tasks: list["Task"] = Relationship(
        back_populates="user",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class UserResponse(SQLModel):
    """Schema for user response."""

    id: UUID
    email: str
    is_admin: bool
    created_at: datetime

    model_config = {"from_attributes": True}
