from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Mapping

from twilio.request_validator import RequestValidator

from .config import Settings


class WebhookVerification:
    def __init__(self, *, verified: bool, reason: str | None = None) -> None:
        self.verified = verified
        self.reason = reason


def _normalize_header_value(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def _hmac_matches(secret: str, body: bytes, provided: str) -> bool:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected_hex = digest.hex()
    expected_b64 = base64.b64encode(digest).decode("utf-8")

    normalized_provided = provided.strip()
    if normalized_provided.startswith("sha256="):
        normalized_provided = normalized_provided.split("=", 1)[1]

    return hmac.compare_digest(expected_hex, normalized_provided) or hmac.compare_digest(
        expected_b64, normalized_provided
    )


def verify_zapi_request(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
) -> WebhookVerification:
    """Accept either an HMAC of the raw body or the instance ``Client-Token`` header."""
    mode = settings.webhook_signature_mode
    if mode == "off":
        return WebhookVerification(verified=True)

    secret = settings.zapi_webhook_secret.strip()
    client_token = settings.zapi_client_token.strip()
    provided_signature = _normalize_header_value(headers, "X-Z-API-Signature") or _normalize_header_value(
        headers, "X-Webhook-Signature"
    )
    provided_token = _normalize_header_value(headers, "Client-Token") or _normalize_header_value(
        headers, "Z-API-Token"
    )

    if provided_signature is None and provided_token is None:
        if mode == "if_present":
            return WebhookVerification(verified=True)
        return WebhookVerification(verified=False, reason="signature_missing")

    if not secret and not client_token:
        if mode == "if_present":
            return WebhookVerification(verified=True)
        return WebhookVerification(verified=False, reason="zapi_webhook_secret_missing")

    if provided_signature is not None and secret and _hmac_matches(secret, body, provided_signature):
        return WebhookVerification(verified=True)
    if provided_token is not None and client_token and hmac.compare_digest(client_token, provided_token):
        return WebhookVerification(verified=True)
    return WebhookVerification(verified=False, reason="signature_mismatch")


def verify_twilio_signature(
    *,
    settings: Settings,
    url: str,
    form_data: Mapping[str, str],
    headers: Mapping[str, str],
) -> WebhookVerification:
    mode = settings.webhook_signature_mode
    if mode == "off":
        return WebhookVerification(verified=True)

    provided = _normalize_header_value(headers, "X-Twilio-Signature")
    if provided is None:
        if mode == "if_present":
            return WebhookVerification(verified=True)
        return WebhookVerification(verified=False, reason="signature_missing")

    auth_token = settings.twilio_auth_token.strip()
    if not auth_token:
        if mode == "if_present":
            return WebhookVerification(verified=True)
        return WebhookVerification(verified=False, reason="twilio_auth_token_missing")

    validator = RequestValidator(auth_token)
    if not validator.validate(url, dict(form_data), provided):
        return WebhookVerification(verified=False, reason="signature_mismatch")

    return WebhookVerification(verified=True)


def verify_whatsapp_signature(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
) -> WebhookVerification:
    mode = settings.webhook_signature_mode
    if mode == "off":
        return WebhookVerification(verified=True)

    provided = _normalize_header_value(headers, "X-Hub-Signature-256") or _normalize_header_value(
        headers, "X-Webhook-Signature"
    )
    if provided is None:
        if mode == "if_present":
            return WebhookVerification(verified=True)
        return WebhookVerification(verified=False, reason="signature_missing")

    secret = settings.whatsapp_webhook_secret.strip()
    if not secret:
        if mode == "if_present":
            return WebhookVerification(verified=True)
        return WebhookVerification(verified=False, reason="whatsapp_webhook_secret_missing")

    if not _hmac_matches(secret, body, provided):
        return WebhookVerification(verified=False, reason="signature_mismatch")

    return WebhookVerification(verified=True)
