"""Shared pytest fixtures: in-memory database, users and push doubles."""

import json
from typing import Any
from unittest.mock import Mock

import pytest
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

from app.config import get_settings
from app.models.notification import NotificationSettings, PushSubscription
from app.models.user import User
from app.services.delivery_queue import SqlDeliveryQueue
from app.services.job_trigger import JobTriggerClient
from app.services.push import PushChannel, PushTransportError
from app.utils.time import resolve_timezone

SIGNING_KEY = "sig_current_signing_key"
NEXT_SIGNING_KEY = "sig_next_signing_key"
AUTH_SECRET = "test-auth-secret"


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Deterministic settings for every test."""
    monkeypatch.setenv("BETTER_AUTH_SECRET", AUTH_SECRET)
    monkeypatch.setenv("JOB_TRIGGER_SIGNING_KEY", SIGNING_KEY)
    monkeypatch.setenv("JOB_TRIGGER_NEXT_SIGNING_KEY", NEXT_SIGNING_KEY)
    monkeypatch.setenv("JOB_TRIGGER_URL", "")
    monkeypatch.setenv("JOB_TRIGGER_TOKEN", "")
    monkeypatch.setenv("APP_URL", "http://testserver")
    monkeypatch.setenv("DEFAULT_TIMEZONE", "UTC")
    monkeypatch.setenv("PUSH_PRUNE_EXPIRED_SUBSCRIPTIONS", "true")
    get_settings.cache_clear()
    resolve_timezone.cache_clear()
    yield get_settings()
    get_settings.cache_clear()
    resolve_timezone.cache_clear()


# ============================================================================
# Database
# ============================================================================

@pytest.fixture
def engine():
    """In-memory SQLite engine shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Import all models to register them
    import app.models  # noqa: F401

    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Callable returning a new session, as the services expect."""
    return lambda: Session(engine)


@pytest.fixture
def db_session(engine):
    """Create a test database session."""
    with Session(engine) as session:
        yield session


@pytest.fixture
def queue(session_factory):
    return SqlDeliveryQueue(session_factory=session_factory, lease_seconds=300)


@pytest.fixture
def make_user(db_session: Session):
    """Factory creating users, optionally with stored notification settings."""
    counter = {"n": 0}

    def _make_user(
        timezone: str | None = None,
        is_admin: bool = False,
        **settings: Any,
    ) -> User:
        counter["n"] += 1
        user = User(email=f"user{counter['n']}@example.com", is_admin=is_admin)
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)

        if timezone is not None or settings:
            db_session.add(
                NotificationSettings(user_id=user.id, timezone=timezone or "UTC", **settings)
            )
            db_session.commit()
        return user

    return _make_user


@pytest.fixture
def test_user(make_user):
    """Create a test user."""
    return make_user()


@pytest.fixture
def make_subscription(db_session: Session):
    def _make_subscription(user: User, endpoint: str) -> PushSubscription:
        subscription = PushSubscription(
            user_id=user.id,
            endpoint=endpoint,
            auth="auth-secret",
            p256dh="public-key",
        )
        db_session.add(subscription)
        db_session.commit()
        db_session.refresh(subscription)
        return subscription

    return _make_subscription


# ============================================================================
# Push and trigger doubles
# ============================================================================

class RecordingTransport:
    """Push transport that records sends and fails for chosen endpoints."""

    def __init__(self, failures: dict[str, int | None] | None = None) -> None:
        self.failures = failures or {}
        self.sent: list[tuple[str, dict[str, Any]]] = []

    def send(self, subscription_info: dict[str, Any], data: str) -> None:
        endpoint = subscription_info["endpoint"]
        if endpoint in self.failures:
            raise PushTransportError("push service error", status_code=self.failures[endpoint])
        self.sent.append((endpoint, json.loads(data)))


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def push_channel(transport):
    return PushChannel(transport=transport)


@pytest.fixture
def job_trigger():
    trigger = Mock(spec=JobTriggerClient)
    trigger.schedule_processing.return_value = True
    return trigger
