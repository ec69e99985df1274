"""Environment-driven configuration for the role lifecycle engine."""

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional


def _int_env(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _float_env(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


@dataclass
class LifecycleConfig:
    """
    Tunables for the engine, the sweep and the notification dispatcher.

    Storage backends are chosen by whether their table name is set; when it
    is not, the in-memory implementation is used.
    """

    grants_table_name: Optional[str] = None
    audit_table_name: Optional[str] = None
    dedup_table_name: Optional[str] = None
    region: str = "us-west-2"

    notification_webhook_url: Optional[str] = None
    notification_api_key: Optional[str] = None

    reminder_3day_hours: int = 72
    reminder_1day_hours: int = 24
    sweep_page_size: int = 100
    bulk_concurrency: int = 10
    mutation_max_retries: int = 3

    notify_timeout_seconds: float = 10.0
    notify_max_retries: int = 2
    notify_dedup_ttl_hours: int = 48

    @property
    def reminder_3day_window(self) -> timedelta:
        return timedelta(hours=self.reminder_3day_hours)

    @property
    def reminder_1day_window(self) -> timedelta:
        return timedelta(hours=self.reminder_1day_hours)

    @property
    def notify_dedup_ttl(self) -> timedelta:
        return timedelta(hours=self.notify_dedup_ttl_hours)

    @classmethod
    def from_env(cls) -> "LifecycleConfig":
        return cls(
            grants_table_name=os.environ.get("DYNAMODB_ROLE_GRANTS_TABLE_NAME"),
            audit_table_name=os.environ.get("DYNAMODB_ROLE_AUDIT_TABLE_NAME"),
            dedup_table_name=os.environ.get("DYNAMODB_NOTIFICATION_DEDUP_TABLE_NAME"),
            region=os.getenv("AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-west-2")),
            notification_webhook_url=os.environ.get("ROLE_NOTIFICATION_WEBHOOK_URL"),
            notification_api_key=os.environ.get("ROLE_NOTIFICATION_API_KEY"),
            reminder_3day_hours=_int_env("ROLE_REMINDER_3DAY_HOURS", 72),
            reminder_1day_hours=_int_env("ROLE_REMINDER_1DAY_HOURS", 24),
            sweep_page_size=_int_env("ROLE_SWEEP_PAGE_SIZE", 100),
            bulk_concurrency=_int_env("ROLE_BULK_CONCURRENCY", 10),
            mutation_max_retries=_int_env("ROLE_MUTATION_MAX_RETRIES", 3),
            notify_timeout_seconds=_float_env("ROLE_NOTIFY_TIMEOUT_SECONDS", 10.0),
            notify_max_retries=_int_env("ROLE_NOTIFY_MAX_RETRIES", 2),
            notify_dedup_ttl_hours=_int_env("ROLE_NOTIFY_DEDUP_TTL_HOURS", 48),
        )
