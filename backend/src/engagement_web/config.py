from __future__ import annotations

import os
from dataclasses import dataclass, field


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_mapping(value: str | None) -> dict[str, str]:
    """Parse ``key=value,key=value`` pairs; malformed entries are skipped."""
    if value is None:
        return {}
    mapping: dict[str, str] = {}
    for item in value.split(","):
        key, sep, mapped = item.partition("=")
        if not sep:
            continue
        key = key.strip()
        mapped = mapped.strip()
        if key and mapped:
            mapping[key] = mapped
    return mapping


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "Donor Engagement Web"
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"
    store_backend: str = "inmemory"
    database_url: str = ""
    default_country_code: str = "55"
    default_tenant_id: str = ""
    instance_tenants: dict[str, str] = field(default_factory=dict)
    runtime_secret_guard_mode: str = "warn"
    event_dispatch_mode: str = "sync"
    webhook_signature_mode: str = "if_present"
    webhook_provider_zapi_enabled: bool = True
    webhook_provider_twilio_enabled: bool = False
    webhook_provider_whatsapp_enabled: bool = True
    zapi_webhook_secret: str = ""
    zapi_client_token: str = ""
    twilio_auth_token: str = ""
    whatsapp_webhook_secret: str = ""
    outbound_sender_type: str = "stub"
    outbound_enabled: bool = True
    zapi_api_base_url: str = "https://api.z-api.io"
    zapi_instance_id: str = ""
    zapi_instance_token: str = ""
    zapi_timeout_seconds: int = 15

    def webhook_provider_enabled(self, provider: str) -> bool:
        normalized = provider.strip().lower()
        if normalized == "zapi":
            return self.webhook_provider_zapi_enabled
        if normalized == "twilio":
            return self.webhook_provider_twilio_enabled
        if normalized == "whatsapp":
            return self.webhook_provider_whatsapp_enabled
        return False

    def tenant_for_instance(self, instance_id: str | None) -> str | None:
        if instance_id:
            mapped = self.instance_tenants.get(instance_id.strip())
            if mapped:
                return mapped
        return self.default_tenant_id.strip() or None


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("ENGAGEMENT_APP_NAME", "Donor Engagement Web"),
        api_prefix=os.getenv("API_PREFIX", "/api/v1"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        store_backend=_normalize_mode(
            os.getenv("ENGAGEMENT_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres", "sqlalchemy"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        default_country_code=os.getenv("DEFAULT_COUNTRY_CODE", "55").strip() or "55",
        default_tenant_id=os.getenv("DEFAULT_TENANT_ID", ""),
        instance_tenants=_as_mapping(os.getenv("WEBHOOK_INSTANCE_TENANTS")),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        event_dispatch_mode=_normalize_mode(
            os.getenv("EVENT_DISPATCH_MODE"),
            default="sync",
            allowed={"sync", "background"},
        ),
        webhook_signature_mode=_normalize_mode(
            os.getenv("WEBHOOK_SIGNATURE_MODE"),
            default="if_present",
            allowed={"off", "if_present", "enforce"},
        ),
        webhook_provider_zapi_enabled=_as_bool(os.getenv("WEBHOOK_PROVIDER_ZAPI_ENABLED"), True),
        webhook_provider_twilio_enabled=_as_bool(os.getenv("WEBHOOK_PROVIDER_TWILIO_ENABLED"), False),
        webhook_provider_whatsapp_enabled=_as_bool(os.getenv("WEBHOOK_PROVIDER_WHATSAPP_ENABLED"), True),
        zapi_webhook_secret=os.getenv("ZAPI_WEBHOOK_SECRET", ""),
        zapi_client_token=os.getenv("ZAPI_CLIENT_TOKEN", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        whatsapp_webhook_secret=os.getenv("WHATSAPP_WEBHOOK_SECRET", ""),
        outbound_sender_type=_normalize_mode(
            os.getenv("OUTBOUND_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "zapi"},
        ),
        outbound_enabled=_as_bool(os.getenv("OUTBOUND_ENABLED"), True),
        zapi_api_base_url=os.getenv("ZAPI_API_BASE_URL", "https://api.z-api.io"),
        zapi_instance_id=os.getenv("ZAPI_INSTANCE_ID", ""),
        zapi_instance_token=os.getenv("ZAPI_INSTANCE_TOKEN", ""),
        zapi_timeout_seconds=_as_int(os.getenv("ZAPI_TIMEOUT_SECONDS"), 15),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.store_backend in {"postgres", "sqlalchemy"} and not settings.database_url.strip():
        issues.append(f"DATABASE_URL is required when ENGAGEMENT_STORE_BACKEND={settings.store_backend}")
    if settings.outbound_sender_type == "zapi" and (
        not settings.zapi_instance_id.strip() or not settings.zapi_instance_token.strip()
    ):
        issues.append("ZAPI_INSTANCE_ID and ZAPI_INSTANCE_TOKEN are required when OUTBOUND_SENDER_TYPE=zapi")

    if settings.webhook_signature_mode != "enforce":
        return tuple(issues)
    if (
        settings.webhook_provider_zapi_enabled
        and not settings.zapi_webhook_secret.strip()
        and not settings.zapi_client_token.strip()
    ):
        issues.append(
            "ZAPI_WEBHOOK_SECRET or ZAPI_CLIENT_TOKEN is required when WEBHOOK_SIGNATURE_MODE=enforce "
            "and WEBHOOK_PROVIDER_ZAPI_ENABLED=true"
        )
    if settings.webhook_provider_twilio_enabled and not settings.twilio_auth_token.strip():
        issues.append(
            "TWILIO_AUTH_TOKEN is required when WEBHOOK_SIGNATURE_MODE=enforce "
            "and WEBHOOK_PROVIDER_TWILIO_ENABLED=true"
        )
    if settings.webhook_provider_whatsapp_enabled and not settings.whatsapp_webhook_secret.strip():
        issues.append(
            "WHATSAPP_WEBHOOK_SECRET is required when WEBHOOK_SIGNATURE_MODE=enforce "
            "and WEBHOOK_PROVIDER_WHATSAPP_ENABLED=true"
        )
    return tuple(issues)
