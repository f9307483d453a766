"""Database session management for PostgreSQL (SQLite in tests)."""

from collections.abc import Callable, Generator
from functools import lru_cache

from sqlalchemy.engine import Engine
from sqlmodel import Session, create_engine

from app.config import get_settings

SessionFactory = Callable[[], Session]


def resolve_database_url() -> str:
    database_url = get_settings().DATABASE_URL or "sqlite://"
    # Convert postgresql:// to postgresql+psycopg:// for psycopg v3 driver
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return database_url


@lru_cache
def get_engine() -> Engine:
    """Create the engine on first use."""
    database_url = resolve_database_url()
    is_postgres = database_url.startswith("postgresql")
    return create_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        connect_args={"sslmode": "require"} if is_postgres else {},
    )


def new_session() -> Session:
    """Open a standalone session; callers own commit and close."""
    return Session(get_engine())


def get_session() -> Generator[Session, None, None]:
    """Get database session with automatic cleanup."""
    with Session(get_engine()) as session:
        yield session
