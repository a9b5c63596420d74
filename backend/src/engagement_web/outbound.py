from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from typing import Any, Protocol

from .config import Settings
from .phones import mask_phone

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
    success: bool
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class OutboundSender(Protocol):
    def send(self, *, phone: str, content: str, tenant_id: str) -> SendResult: ...


class StubOutboundSender:
    """Local sender; numbers listed in ``failing_phones`` always fail."""

    def __init__(self, *, enabled: bool, failing_phones: set[str] | None = None) -> None:
        self._enabled = enabled
        self._failing_phones = failing_phones or set()
        self._counter = count(1)
        self.sent: list[tuple[str, str, str]] = []

    def send(self, *, phone: str, content: str, tenant_id: str) -> SendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return SendResult(
                success=False,
                attempted_at=attempted_at,
                error_code="outbound_disabled",
                error_message="Outbound delivery is disabled",
            )

        if phone in self._failing_phones:
            return SendResult(
                success=False,
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for phone",
            )

        self.sent.append((tenant_id, phone, content))
        message_id = f"stub-{next(self._counter):06d}"
        return SendResult(success=True, attempted_at=attempted_at, provider_message_id=message_id)


class _ZApiSendError(Exception):
    """Internal error raised when a Z-API HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpZApiSender:
    """Sends text messages through the Z-API ``send-text`` endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        instance_id: str,
        instance_token: str,
        client_token: str = "",
        timeout_seconds: int = 15,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not instance_id.strip():
            raise ValueError("instance_id must not be empty")
        if not instance_token.strip():
            raise ValueError("instance_token must not be empty")
        self._base_url = stripped_url
        self._instance_id = instance_id.strip()
        self._instance_token = instance_token.strip()
        self._client_token = client_token.strip()
        self._timeout_seconds = timeout_seconds

    def send(self, *, phone: str, content: str, tenant_id: str) -> SendResult:
        attempted_at = datetime.now(timezone.utc)
        digits = "".join(ch for ch in phone if ch.isdigit())
        if not digits:
            return SendResult(
                success=False,
                attempted_at=attempted_at,
                error_code="invalid_phone",
                error_message="Recipient phone has no digits",
            )
        if not content.strip():
            return SendResult(
                success=False,
                attempted_at=attempted_at,
                error_code="empty_content",
                error_message="Message content is empty",
            )

        try:
            response_data = self._post("send-text", {"phone": digits, "message": content})
        except _ZApiSendError as exc:
            logger.warning("z-api send failed tenant=%s phone=%s code=%s", tenant_id, mask_phone(digits), exc.error_code)
            return SendResult(
                success=False,
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_phone(digits)})",
            )

        message_id = response_data.get("messageId") or response_data.get("id")
        if not message_id:
            return SendResult(
                success=False,
                attempted_at=attempted_at,
                error_code="missing_message_id",
                error_message="Z-API response did not include a messageId",
            )
        return SendResult(success=True, attempted_at=attempted_at, provider_message_id=str(message_id))

    def _post(self, endpoint: str, body: dict[str, str]) -> dict[str, Any]:
        url = f"{self._base_url}/instances/{self._instance_id}/token/{self._instance_token}/{endpoint}"
        headers = {"Content-Type": "application/json"}
        if self._client_token:
            headers["Client-Token"] = self._client_token
        request = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _ZApiSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _ZApiSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _ZApiSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except json.JSONDecodeError as exc:
            raise _ZApiSendError(
                error_code="invalid_response",
                message=f"Response was not JSON: {exc}",
            ) from exc


def create_outbound_sender(settings: Settings) -> OutboundSender:
    if settings.outbound_sender_type == "zapi":
        if not settings.zapi_instance_id.strip() or not settings.zapi_instance_token.strip():
            logger.warning("z-api sender selected without instance credentials; outbound delivery disabled")
            return StubOutboundSender(enabled=False)
        return HttpZApiSender(
            base_url=settings.zapi_api_base_url,
            instance_id=settings.zapi_instance_id,
            instance_token=settings.zapi_instance_token,
            client_token=settings.zapi_client_token,
            timeout_seconds=settings.zapi_timeout_seconds,
        )
    return StubOutboundSender(enabled=settings.outbound_enabled)
