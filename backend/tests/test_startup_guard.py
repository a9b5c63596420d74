from __future__ import annotations

import os

import pytest

from engagement_web.main import create_app


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
        "RUNTIME_SECRET_GUARD_MODE": "enforce",
        "WEBHOOK_SIGNATURE_MODE": "enforce",
        "ENGAGEMENT_APP_NAME": None,
        "ENGAGEMENT_STORE_BACKEND": None,
        "OUTBOUND_SENDER_TYPE": None,
        "ZAPI_WEBHOOK_SECRET": "zapi-secret-001",
        "ZAPI_CLIENT_TOKEN": None,
        "WHATSAPP_WEBHOOK_SECRET": "whatsapp-secret-001",
    }


def test_create_app_starts_when_enabled_providers_have_secrets() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "WEBHOOK_PROVIDER_TWILIO_ENABLED": None,
            "TWILIO_AUTH_TOKEN": None,
        }
    )
    try:
        app = create_app()
        assert app.title == "Donor Engagement Web"
    finally:
        _restore_env(previous)


def test_create_app_blocks_when_twilio_enabled_without_auth_token() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "WEBHOOK_PROVIDER_TWILIO_ENABLED": "true",
            "TWILIO_AUTH_TOKEN": None,
        }
    )
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        message = str(exc_info.value)
        assert "TWILIO_AUTH_TOKEN is required" in message
        assert "WEBHOOK_PROVIDER_*_ENABLED=false" in message
    finally:
        _restore_env(previous)


def test_create_app_only_warns_in_warn_mode() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "RUNTIME_SECRET_GUARD_MODE": "warn",
            "WEBHOOK_PROVIDER_TWILIO_ENABLED": "true",
            "TWILIO_AUTH_TOKEN": None,
        }
    )
    try:
        app = create_app()
        assert app.title == "Donor Engagement Web"
    finally:
        _restore_env(previous)
