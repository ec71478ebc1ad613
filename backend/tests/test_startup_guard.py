from __future__ import annotations

import logging
import os

import pytest

from storefront_alerts.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _base_runtime_secret_env() -> dict[str, str | None]:
    return {
        "INTERNAL_JOB_TOKEN": "prod-job-token-001",
        "RUNTIME_SECRET_GUARD_MODE": "enforce",
        "NOTIFIER_SENDER_TYPE": "stub",
        "ALERT_STORE_BACKEND": "inmemory",
        "ALERTS_APP_NAME": None,
    }


def test_create_app_starts_with_production_secrets() -> None:
    previous = _set_env(_base_runtime_secret_env())
    try:
        app = create_app()
        assert app.title == "Storefront Alerts"
    finally:
        _restore_env(previous)


def test_create_app_blocks_placeholder_job_token_under_enforce() -> None:
    previous = _set_env({**_base_runtime_secret_env(), "INTERNAL_JOB_TOKEN": "dev-job-token"})
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        message = str(exc_info.value)
        assert "INTERNAL_JOB_TOKEN" in message
        assert "RUNTIME_SECRET_GUARD_MODE" in message
    finally:
        _restore_env(previous)


def test_create_app_blocks_http_sender_without_credentials() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "NOTIFIER_SENDER_TYPE": "http",
            "NOTIFIER_API_BASE_URL": None,
            "NOTIFIER_API_KEY": None,
        }
    )
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        assert "NOTIFIER_API_BASE_URL is required" in str(exc_info.value)
    finally:
        _restore_env(previous)


def test_create_app_only_warns_in_warn_mode(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env({**_base_runtime_secret_env(), "INTERNAL_JOB_TOKEN": None, "RUNTIME_SECRET_GUARD_MODE": "warn"})
    try:
        with caplog.at_level(logging.WARNING, logger="storefront_alerts.main"):
            app = create_app()
        assert app.title == "Storefront Alerts"
        assert any("INTERNAL_JOB_TOKEN" in record.getMessage() for record in caplog.records)
    finally:
        _restore_env(previous)
