from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from .errors import MalformedPayloadError
from .models import ContactChannel, WebhookProvider
from .phones import is_group_or_broadcast, is_opaque_identifier, strip_provider_address


@dataclass(frozen=True)
class NormalizedInboundMessage:
    provider: WebhookProvider
    channel: ContactChannel
    sender_phone: str
    content: str
    provider_message_id: str
    timestamp: datetime | None
    instance_id: str | None
    from_me: bool
    sender_name: str | None = None
    external_thread_id: str | None = None
    media_url: str | None = None
    media_mime_type: str | None = None


@dataclass(frozen=True)
class InboundParseResult:
    message: NormalizedInboundMessage | None
    ignored_reason: str | None = None

    @classmethod
    def ignored(cls, reason: str) -> InboundParseResult:
        return cls(message=None, ignored_reason=reason)


@dataclass(frozen=True)
class StatusCallback:
    provider: WebhookProvider
    provider_message_ids: tuple[str, ...]
    raw_status: str
    instance_id: str | None


def _flag(value: Any) -> bool:
    # Z-API sends booleans, older integrations send "true"/"false" strings.
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _epoch_to_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        epoch = float(value)
    except (TypeError, ValueError):
        return None
    if epoch > 1e12:
        epoch /= 1000.0
    try:
        return datetime.fromtimestamp(epoch, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _require_mapping(payload: Any, *, provider: str) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise MalformedPayloadError(f"{provider} payload must be a JSON object")
    return payload


def _zapi_media(payload: Mapping[str, Any]) -> tuple[str | None, str | None, str | None]:
    """Return ``(url, mime_type, caption)`` for the first media block present."""
    for key, url_key in (("audio", "audioUrl"), ("image", "imageUrl"), ("video", "videoUrl"), ("document", "documentUrl")):
        block = payload.get(key)
        if isinstance(block, Mapping):
            url = _text(block.get(url_key)) or _text(block.get("url"))
            if url:
                return url, _text(block.get("mimeType")), _text(block.get("caption"))
    legacy = payload.get("message")
    if isinstance(legacy, Mapping):
        for key in ("imageMessage", "videoMessage", "documentMessage", "audioMessage"):
            block = legacy.get(key)
            if isinstance(block, Mapping) and _text(block.get("url")):
                return _text(block.get("url")), _text(block.get("mimeType")), _text(block.get("caption"))
    return None, None, None


def parse_zapi_inbound(payload: Any) -> InboundParseResult:
    body = _require_mapping(payload, provider="zapi")

    callback_type = _text(body.get("type"))
    if callback_type in {"DeliveryCallback", "MessageStatusCallback"}:
        return InboundParseResult.ignored("delivery_callback")
    if _flag(body.get("isGroup")):
        return InboundParseResult.ignored("group_message")
    phone = _text(body.get("phone"))
    if phone is not None and is_group_or_broadcast(phone):
        return InboundParseResult.ignored("newsletter_or_broadcast")
    if is_opaque_identifier(phone):
        return InboundParseResult.ignored("linked_id_sender")
    if _text(body.get("notification")) == "REVOKE":
        return InboundParseResult.ignored("message_revoked")

    message_id = _text(body.get("messageId"))
    if message_id is None:
        raise MalformedPayloadError("zapi payload is missing messageId")
    if phone is None:
        raise MalformedPayloadError("zapi payload is missing phone")

    content: str | None = None
    text_block = body.get("text")
    if isinstance(text_block, Mapping):
        content = _text(text_block.get("message"))
    media_url, media_mime_type, caption = _zapi_media(body)
    content = content or caption
    if content is None and media_url is None:
        return InboundParseResult.ignored("unsupported_content")

    return InboundParseResult(
        message=NormalizedInboundMessage(
            provider="zapi",
            channel="whatsapp",
            sender_phone=phone,
            content=content or "",
            provider_message_id=message_id,
            timestamp=_epoch_to_datetime(body.get("momment")),
            instance_id=_text(body.get("instanceId")),
            from_me=_flag(body.get("fromMe")) or _flag(body.get("fromApi")),
            sender_name=_text(body.get("senderName")) or _text(body.get("chatName")),
            external_thread_id=_text(body.get("chatLid")),
            media_url=media_url,
            media_mime_type=media_mime_type,
        )
    )


def parse_twilio_inbound(form: Mapping[str, str]) -> InboundParseResult:
    message_sid = _text(form.get("MessageSid")) or _text(form.get("SmsMessageSid"))
    if message_sid is None:
        raise MalformedPayloadError("twilio payload is missing MessageSid")
    sender = _text(form.get("From"))
    if sender is None:
        raise MalformedPayloadError("twilio payload is missing From")

    channel: ContactChannel = "whatsapp" if sender.lower().startswith("whatsapp:") else "sms"
    body = _text(form.get("Body"))
    media_url = _text(form.get("MediaUrl0"))
    if body is None and media_url is None:
        return InboundParseResult.ignored("unsupported_content")

    return InboundParseResult(
        message=NormalizedInboundMessage(
            provider="twilio",
            channel=channel,
            sender_phone=strip_provider_address(sender),
            content=body or "",
            provider_message_id=message_sid,
            timestamp=None,
            instance_id=_text(form.get("AccountSid")),
            from_me=False,
            sender_name=_text(form.get("ProfileName")),
            external_thread_id=_text(form.get("WaId")),
            media_url=media_url,
            media_mime_type=_text(form.get("MediaContentType0")),
        )
    )


def parse_whatsapp_inbound(payload: Any) -> InboundParseResult:
    body = _require_mapping(payload, provider="whatsapp")
    data = body.get("data")
    if not isinstance(data, Mapping):
        raise MalformedPayloadError("whatsapp payload is missing data")

    phone = _text(data.get("phone"))
    message_id = _text(data.get("messageId"))
    if phone is None or message_id is None:
        raise MalformedPayloadError("whatsapp payload requires data.phone and data.messageId")
    if is_group_or_broadcast(phone):
        return InboundParseResult.ignored("newsletter_or_broadcast")
    if is_opaque_identifier(phone):
        return InboundParseResult.ignored("linked_id_sender")
    content = _text(data.get("message"))
    media_url = _text(data.get("mediaUrl"))
    if content is None and media_url is None:
        return InboundParseResult.ignored("unsupported_content")

    return InboundParseResult(
        message=NormalizedInboundMessage(
            provider="whatsapp",
            channel="whatsapp",
            sender_phone=phone,
            content=content or "",
            provider_message_id=message_id,
            timestamp=_epoch_to_datetime(data.get("timestamp")),
            instance_id=_text(data.get("instanceId")),
            from_me=_flag(data.get("fromMe")),
            sender_name=_text(data.get("senderName")),
            external_thread_id=_text(data.get("chatId")),
            media_url=media_url,
            media_mime_type=_text(data.get("mimeType")),
        )
    )


def parse_zapi_status(payload: Any) -> StatusCallback:
    body = _require_mapping(payload, provider="zapi")
    raw_ids = body.get("ids")
    ids: list[str] = []
    if isinstance(raw_ids, list):
        ids = [value for value in (_text(item) for item in raw_ids) if value]
    single = _text(body.get("messageId")) or _text(body.get("id"))
    if single and single not in ids:
        ids.append(single)
    status = _text(body.get("status"))
    if not ids or status is None:
        raise MalformedPayloadError("zapi status callback requires ids and status")
    return StatusCallback(provider="zapi", provider_message_ids=tuple(ids), raw_status=status, instance_id=_text(body.get("instanceId")))


def parse_twilio_status(form: Mapping[str, str]) -> StatusCallback:
    message_sid = _text(form.get("MessageSid")) or _text(form.get("SmsSid"))
    status = _text(form.get("MessageStatus")) or _text(form.get("SmsStatus"))
    if message_sid is None or status is None:
        raise MalformedPayloadError("twilio status callback requires MessageSid and MessageStatus")
    return StatusCallback(provider="twilio", provider_message_ids=(message_sid,), raw_status=status, instance_id=_text(form.get("AccountSid")))


def parse_whatsapp_status(payload: Any) -> StatusCallback:
    body = _require_mapping(payload, provider="whatsapp")
    data = body.get("data") if isinstance(body.get("data"), Mapping) else body
    message_id = _text(data.get("messageId"))
    status = _text(data.get("status"))
    if message_id is None or status is None:
        raise MalformedPayloadError("whatsapp status callback requires messageId and status")
    return StatusCallback(provider="whatsapp", provider_message_ids=(message_id,), raw_status=status, instance_id=_text(data.get("instanceId")))
