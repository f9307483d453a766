"""Environment configuration for the notification engine."""

import os
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Application settings loaded from environment variables."""

    def __init__(self) -> None:
        self.DATABASE_URL: str = os.getenv("DATABASE_URL", "")
        self.BETTER_AUTH_SECRET: str = os.getenv("BETTER_AUTH_SECRET", "")
        self.FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")
        self.APP_URL: str = os.getenv("APP_URL", "http://localhost:8000")
        self.JWT_ALGORITHM: str = "HS256"

        # External job trigger (schedules and signs processing callbacks)
        self.JOB_TRIGGER_URL: str = os.getenv("JOB_TRIGGER_URL", "")
        self.JOB_TRIGGER_TOKEN: str = os.getenv("JOB_TRIGGER_TOKEN", "")
        self.JOB_TRIGGER_SIGNING_KEY: str = os.getenv("JOB_TRIGGER_SIGNING_KEY", "")
        self.JOB_TRIGGER_NEXT_SIGNING_KEY: str = os.getenv("JOB_TRIGGER_NEXT_SIGNING_KEY", "")
        self.JOB_TRIGGER_ISSUER: str = os.getenv("JOB_TRIGGER_ISSUER", "Upstash")

        # Web push
        self.VAPID_PUBLIC_KEY: str = os.getenv("VAPID_PUBLIC_KEY", "")
        self.VAPID_PRIVATE_KEY: str = os.getenv("VAPID_PRIVATE_KEY", "")
        self.VAPID_SUBJECT: str = os.getenv("VAPID_SUBJECT", "mailto:notifications@example.com")
        self.PUSH_TTL_SECONDS: int = int(os.getenv("PUSH_TTL_SECONDS", "86400"))
        self.PUSH_PRUNE_EXPIRED_SUBSCRIPTIONS: bool = _env_bool(
            "PUSH_PRUNE_EXPIRED_SUBSCRIPTIONS", True
        )

        # Scheduling
        self.DEFAULT_TIMEZONE: str = os.getenv("DEFAULT_TIMEZONE", "UTC")

        # Workers
        self.WORKER_BATCH_SIZE: int = int(os.getenv("WORKER_BATCH_SIZE", "500"))
        self.WORKER_POLL_INTERVAL_SECONDS: int = int(os.getenv("WORKER_POLL_INTERVAL_SECONDS", "60"))
        self.PROCESSOR_CONCURRENCY: int = int(os.getenv("PROCESSOR_CONCURRENCY", "8"))
        self.METRICS_CONCURRENCY: int = int(os.getenv("METRICS_CONCURRENCY", "4"))
        self.CLAIM_LEASE_SECONDS: int = int(os.getenv("CLAIM_LEASE_SECONDS", "300"))
        self.RETRY_BACKOFF_SECONDS: int = int(os.getenv("RETRY_BACKOFF_SECONDS", "60"))
        self.RETRY_BACKOFF_MAX_SECONDS: int = int(os.getenv("RETRY_BACKOFF_MAX_SECONDS", "3600"))

        self.HISTORY_DEFAULT_LIMIT: int = int(os.getenv("HISTORY_DEFAULT_LIMIT", "50"))

    def validate(self) -> None:
        """Validate that required environment variables are set."""
        if not self.DATABASE_URL:
            raise ValueError("DATABASE_URL environment variable is required")
        if not self.BETTER_AUTH_SECRET:
            raise ValueError("BETTER_AUTH_SECRET environment variable is required")
        if not self.JOB_TRIGGER_SIGNING_KEY:
            raise ValueError("JOB_TRIGGER_SIGNING_KEY environment variable is required")
        if self.PROCESSOR_CONCURRENCY < 1 or self.METRICS_CONCURRENCY < 1:
            raise ValueError("Worker concurrency settings must be at least 1")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()
    return settings
