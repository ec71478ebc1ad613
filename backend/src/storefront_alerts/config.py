from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int, *, minimum: int = 0) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Storefront Alerts"
    api_prefix: str = "/api/v1"
    alert_store_backend: str = "inmemory"
    database_url: str = ""
    notifier_enabled: bool = False
    notifier_channel: str = "email,sms"
    notifier_api_base_url: str = ""
    notifier_api_key: str = ""
    notifier_timeout_seconds: int = 30
    notifier_sender_type: str = "stub"
    dispatch_max_workers: int = 16
    claim_retry_attempts: int = 3
    claim_retry_base_seconds: float = 0.05
    review_request_grace_days: int = 3
    storefront_web_url: str = "http://localhost:8910"
    internal_job_token: str = "dev-job-token"
    runtime_secret_guard_mode: str = "warn"

    def notifier_channels(self) -> set[str]:
        parsed = {item.strip().lower() for item in self.notifier_channel.split(",") if item.strip()}
        return parsed or {"email", "sms"}


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("ALERTS_APP_NAME", "Storefront Alerts"),
        api_prefix=os.getenv("ALERTS_API_PREFIX", "/api/v1"),
        alert_store_backend=os.getenv("ALERT_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), False),
        notifier_channel=os.getenv("NOTIFIER_CHANNEL", "email,sms"),
        notifier_api_base_url=os.getenv("NOTIFIER_API_BASE_URL", ""),
        notifier_api_key=os.getenv("NOTIFIER_API_KEY", ""),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 30, minimum=1),
        notifier_sender_type=_normalize_mode(
            os.getenv("NOTIFIER_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        dispatch_max_workers=_as_int(os.getenv("DISPATCH_MAX_WORKERS"), 16, minimum=1),
        claim_retry_attempts=_as_int(os.getenv("CLAIM_RETRY_ATTEMPTS"), 3, minimum=1),
        claim_retry_base_seconds=_as_float(os.getenv("CLAIM_RETRY_BASE_SECONDS"), 0.05),
        review_request_grace_days=_as_int(os.getenv("REVIEW_REQUEST_GRACE_DAYS"), 3),
        storefront_web_url=os.getenv("STOREFRONT_WEB_URL", "http://localhost:8910"),
        internal_job_token=os.getenv("INTERNAL_JOB_TOKEN", "dev-job-token"),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.internal_job_token,
        defaults={"dev-job-token", "change-me-in-production"},
    ):
        issues.append("INTERNAL_JOB_TOKEN is empty or uses a development placeholder")
    if settings.notifier_sender_type == "http":
        if not settings.notifier_api_base_url.strip():
            issues.append("NOTIFIER_API_BASE_URL is required when NOTIFIER_SENDER_TYPE=http")
        if not settings.notifier_api_key.strip():
            issues.append("NOTIFIER_API_KEY is required when NOTIFIER_SENDER_TYPE=http")
    if settings.alert_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when ALERT_STORE_BACKEND=postgres")
    return tuple(issues)
