from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_DATABASE_URL = "sqlite:///./pilltime.sqlite"
DEFAULT_VAPID_SUBJECT = "mailto:admin@pilltime.app"
DEFAULT_RETENTION_DAYS = 90


@dataclass(frozen=True)
class VapidCredentials:
    public_key: str
    private_key: str
    subject: str


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    vapid_public_key: str | None = None
    vapid_private_key: str | None = None
    vapid_subject: str = DEFAULT_VAPID_SUBJECT
    push_timeout_seconds: float = 10.0
    subscription_retention_days: int = DEFAULT_RETENTION_DAYS
    scheduler_timezone: str | None = None
    enable_scheduler: bool = True

    @property
    def push_enabled(self) -> bool:
        return bool(self.vapid_public_key and self.vapid_private_key)

    def vapid_credentials(self) -> VapidCredentials | None:
        if not self.push_enabled:
            return None
        return VapidCredentials(
            public_key=self.vapid_public_key,
            private_key=self.vapid_private_key,
            subject=self.vapid_subject,
        )


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_settings() -> Settings:
    timeout = float(os.getenv("PUSH_TIMEOUT_SECONDS", "10"))
    retention = int(os.getenv("SUBSCRIPTION_RETENTION_DAYS", str(DEFAULT_RETENTION_DAYS)))
    if timeout <= 0:
        raise ValueError("PUSH_TIMEOUT_SECONDS must be positive")
    if retention < 1:
        raise ValueError("SUBSCRIPTION_RETENTION_DAYS must be at least 1")

    return Settings(
        database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
        vapid_public_key=os.getenv("VAPID_PUBLIC_KEY") or None,
        vapid_private_key=os.getenv("VAPID_PRIVATE_KEY") or None,
        vapid_subject=os.getenv("VAPID_SUBJECT", DEFAULT_VAPID_SUBJECT),
        push_timeout_seconds=timeout,
        subscription_retention_days=retention,
        scheduler_timezone=os.getenv("SCHEDULER_TIMEZONE") or None,
        enable_scheduler=_env_bool("ENABLE_SCHEDULER", True),
    )
