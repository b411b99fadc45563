# outreach/config.py
from __future__ import annotations

import logging
import uuid
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_processor_id() -> str:
    return f"proc-{uuid.uuid4().hex[:12]}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"
    processor_id: str = Field(default_factory=_default_processor_id)  # Identity stamped on claimed rows
    admin_token: str | None = None
    enable_request_logging: bool = True

    # Database
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_command_timeout: int = 60

    # Telephony vendor (Retell-compatible create-phone-call API)
    telephony_api_key: str | None = None
    telephony_base_url: str = "https://api.retellai.com"
    telephony_timeout_seconds: float = 25.0

    # Event publisher (Pusher Channels REST API)
    # If any credential is missing, events are only written to the log.
    pusher_app_id: str | None = None
    pusher_key: str | None = None
    pusher_secret: str | None = None
    pusher_cluster: str = "us2"

    # Adaptive batch sizing
    dispatch_initial_batch_size: int = 10
    dispatch_min_batch_size: int = 1
    dispatch_max_batch_size: int = 20
    dispatch_grow_threshold: float = 0.9      # Success ratio at or above which the batch grows by 1
    dispatch_shrink_threshold: float = 0.7    # Success ratio below which the batch shrinks
    dispatch_shrink_factor: float = 0.75

    # Per-call error guard
    dispatch_consecutive_error_limit: int = 3
    dispatch_error_backoff_seconds: float = 5.0
    dispatch_error_backoff_cap: int = 5       # Backoff = seconds * min(cap, consecutive_errors)

    # Rate limiting / retries / concurrency defaults (overridable per run / org)
    dispatch_default_calls_per_minute: int = 10
    dispatch_min_call_interval_seconds: float = 1.0
    dispatch_default_max_retries: int = 3
    dispatch_default_concurrency_limit: int = 20

    # Loop waits
    dispatch_outside_hours_wait_seconds: float = 900.0  # 15 minutes
    dispatch_no_capacity_wait_seconds: float = 5.0
    dispatch_idle_wait_seconds: float = 5.0
    dispatch_processed_ids_ttl_seconds: float = 10.0

    # Recovery
    dispatch_stuck_row_timeout_seconds: int = 600      # Rows 'calling' longer than this are reset
    dispatch_reaper_interval_seconds: float = 60.0
    dispatch_verify_delay_seconds: float = 3.0         # Grace period before checking for a raced webhook
    dispatch_verify_window_seconds: int = 60

    # Run metrics notifications
    metrics_debounce_seconds: float = 0.5

    # Scheduler trigger
    scheduler_poll_enabled: bool = True
    scheduler_poll_interval_seconds: float = 30.0
    resume_running_runs_on_startup: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    @property
    def telephony_enabled(self) -> bool:
        return bool(self.telephony_api_key)

    @property
    def pusher_enabled(self) -> bool:
        """Check if Pusher credentials are configured"""
        return bool(self.pusher_app_id and self.pusher_key and self.pusher_secret)

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        required_fields = [
            ("admin_token", self.admin_token),
            ("telephony_api_key", self.telephony_api_key),
        ]
        return [name for name, value in required_fields if not value]


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if not s.admin_token:
        warnings.append("admin_token is not set (ops endpoints will answer 503).")

    if not s.telephony_enabled:
        warnings.append("telephony_api_key is missing: every dispatch will fail and rows will exhaust retries.")

    if not s.pusher_enabled:
        warnings.append("Pusher credentials are incomplete: run events will only be logged.")

    if s.dispatch_min_batch_size > s.dispatch_max_batch_size:
        warnings.append("dispatch_min_batch_size > dispatch_max_batch_size (batch size will be pinned to max).")

    if not (0 < s.dispatch_shrink_factor < 1):
        warnings.append("dispatch_shrink_factor should be between 0 and 1.")

    if s.dispatch_stuck_row_timeout_seconds < 120:
        warnings.append(
            "dispatch_stuck_row_timeout_seconds < 120: live calls may be reset and re-dialed."
        )

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()
    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    log = logging.getLogger("outreach.config")
    for msg in warn_on_risky_config(s):
        log.warning("[config] %s", msg)


settings = Settings()
