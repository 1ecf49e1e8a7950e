from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="EARNINGS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -----------------------------
    # Withdrawal policy
    # -----------------------------
    minimum_withdrawal: Decimal = Decimal("10")

    # 0 means every read recomputes from the stores.
    summary_max_age_seconds: int = 0

    # -----------------------------
    # Storage
    # -----------------------------
    # Unset -> in-memory storage (local dev / tests).
    database_url: Optional[str] = None

    # -----------------------------
    # Notifications
    # -----------------------------
    notification_webhook_url: Optional[str] = None
    notification_timeout_seconds: float = 5.0
    notification_workers: int = 4
    # deliveries queued or running; further events are dropped and logged
    notification_max_pending: int = 1000

    # -----------------------------
    # Logging
    # -----------------------------
    log_level: str = "INFO"
    log_json: bool = True

    def model_post_init(self, __context) -> None:  # pydantic v2 hook
        if self.minimum_withdrawal <= 0:
            raise ValueError("minimum_withdrawal must be positive.")
        if self.summary_max_age_seconds < 0:
            raise ValueError("summary_max_age_seconds cannot be negative.")
        if self.notification_timeout_seconds <= 0:
            raise ValueError("notification_timeout_seconds must be positive.")
        if self.notification_workers < 1:
            raise ValueError("notification_workers must be at least 1.")
        if self.notification_max_pending < 1:
            raise ValueError("notification_max_pending must be at least 1.")


@lru_cache
def get_settings() -> Settings:
    return Settings()
