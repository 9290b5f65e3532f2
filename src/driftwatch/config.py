"""Runtime settings, populated from CLI options and DRIFTWATCH_* env vars."""

from dataclasses import dataclass
from datetime import timedelta

ENV_PREFIX = "DRIFTWATCH"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///driftwatch.db"
    tick_interval_seconds: int = 120
    retention_hours: int = 24
    max_workers: int = 5
    remote_timeout_seconds: float = 20.0
    sts_region: str = "us-east-1"
    default_region: str = "us-east-1"
    slack_webhook_url: str | None = None

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self.retention_hours)
