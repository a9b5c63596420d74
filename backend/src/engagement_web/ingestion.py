from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from .campaigns import CampaignContactService
from .config import Settings
from .conversations import ConversationRepository, ConversationRouter, MessageRecord, NewMessage
from .customers import IdentityResolver
from .delivery_status import DeliveryStatusTracker, map_provider_status
from .errors import EngagementError, MalformedPayloadError, NotFoundError, TransientError, UnauthorizedError
from .events import EventPublisher, MessageCreatedEvent
from .models import InboundWebhookResponse, StatusCallbackResponse
from .phones import mask_phone
from .providers import (
    InboundParseResult,
    StatusCallback,
    parse_twilio_inbound,
    parse_twilio_status,
    parse_whatsapp_inbound,
    parse_whatsapp_status,
    parse_zapi_inbound,
    parse_zapi_status,
)
from .webhook_security import (
    WebhookVerification,
    verify_twilio_signature,
    verify_whatsapp_signature,
    verify_zapi_request,
)

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("zapi", "twilio", "whatsapp")


@dataclass(frozen=True)
class WebhookRequest:
    """Raw webhook call as received by the HTTP layer."""

    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)
    url: str = ""
    form: Mapping[str, str] | None = None


def _decode_json(body: bytes, provider: str) -> Any:
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError(f"{provider} payload is not valid JSON") from exc


class MessageIngestionPipeline:
    def __init__(
        self,
        *,
        settings: Settings,
        resolver: IdentityResolver,
        router: ConversationRouter,
        conversations: ConversationRepository,
        campaigns: CampaignContactService,
        tracker: DeliveryStatusTracker,
        publisher: EventPublisher,
    ) -> None:
        self._settings = settings
        self._resolver = resolver
        self._router = router
        self._conversations = conversations
        self._campaigns = campaigns
        self._tracker = tracker
        self._publisher = publisher

    def ingest(self, provider: str, request: WebhookRequest) -> InboundWebhookResponse:
        provider = self._require_provider(provider)
        self._authenticate(provider, request)

        try:
            parsed = self._parse_inbound(provider, request)
        except MalformedPayloadError as exc:
            logger.warning("malformed %s webhook: %s", provider, exc.message)
            raise
        if parsed.message is None:
            logger.info("%s webhook ignored reason=%s", provider, parsed.ignored_reason)
            return InboundWebhookResponse(status="ignored", reason=parsed.ignored_reason)

        inbound = parsed.message
        if inbound.from_me:
            return InboundWebhookResponse(status="ignored", reason="self_echo")

        tenant_id = self._settings.tenant_for_instance(inbound.instance_id)
        if tenant_id is None:
            raise NotFoundError(f"no tenant configured for instance: {inbound.instance_id}")

        existing = self._conversations.find_message_by_provider_message_id(tenant_id, inbound.provider_message_id)
        if existing is not None:
            return InboundWebhookResponse(
                status="success",
                message_id=existing.message_id,
                conversation_id=existing.conversation_id,
                deduped=True,
            )

        customer = self._resolver.resolve_customer(tenant_id, inbound.sender_phone, inbound.sender_name)
        try:
            conversation, _ = self._router.route_inbound(
                tenant_id,
                customer.customer_id,
                inbound.channel,
                external_thread_id=inbound.external_thread_id,
            )
            message, created = self._conversations.insert_message(
                NewMessage(
                    tenant_id=tenant_id,
                    conversation_id=conversation.conversation_id,
                    direction="inbound",
                    sender_type="customer",
                    sender_id=customer.customer_id,
                    content=inbound.content,
                    provider_message_id=inbound.provider_message_id,
                    status="received",
                    media_url=inbound.media_url,
                    media_mime_type=inbound.media_mime_type,
                )
            )
        except EngagementError:
            raise
        except Exception as exc:
            logger.exception("failed to persist %s inbound message tenant=%s", provider, tenant_id)
            raise TransientError("failed to persist inbound message") from exc

        if not created:
            return InboundWebhookResponse(
                status="success",
                message_id=message.message_id,
                conversation_id=message.conversation_id,
                deduped=True,
            )

        logger.info(
            "inbound message stored provider=%s tenant=%s from=%s message=%s",
            provider,
            tenant_id,
            mask_phone(customer.phone),
            message.message_id,
        )
        self._correlate_campaign(tenant_id, customer.customer_id)
        self._publish_and_record(provider, tenant_id, message)
        return InboundWebhookResponse(
            status="success",
            message_id=message.message_id,
            conversation_id=conversation.conversation_id,
            deduped=False,
        )

    def process_status_callback(self, provider: str, request: WebhookRequest) -> StatusCallbackResponse:
        provider = self._require_provider(provider)
        self._authenticate(provider, request)
        callback = self._parse_status(provider, request)

        tenant_id = self._settings.tenant_for_instance(callback.instance_id)
        if tenant_id is None:
            logger.warning("status callback without tenant provider=%s instance=%s", provider, callback.instance_id)
            return StatusCallbackResponse(updated=0, unmatched=len(callback.provider_message_ids))

        new_status = map_provider_status(provider, callback.raw_status)
        updated = unmatched = 0
        for provider_message_id in callback.provider_message_ids:
            outcome = self._tracker.apply_status_outcome(provider_message_id, new_status, tenant_id)
            if outcome == "applied":
                updated += 1
            elif outcome == "unmatched":
                unmatched += 1
        return StatusCallbackResponse(updated=updated, unmatched=unmatched)

    def _require_provider(self, provider: str) -> str:
        normalized = provider.strip().lower()
        if normalized not in SUPPORTED_PROVIDERS or not self._settings.webhook_provider_enabled(normalized):
            raise NotFoundError(f"webhook provider not available: {provider}")
        return normalized

    def _authenticate(self, provider: str, request: WebhookRequest) -> None:
        verification: WebhookVerification
        if provider == "zapi":
            verification = verify_zapi_request(settings=self._settings, body=request.body, headers=request.headers)
        elif provider == "twilio":
            verification = verify_twilio_signature(
                settings=self._settings,
                url=request.url,
                form_data=request.form or {},
                headers=request.headers,
            )
        else:
            verification = verify_whatsapp_signature(settings=self._settings, body=request.body, headers=request.headers)
        if not verification.verified:
            logger.warning("%s webhook rejected reason=%s", provider, verification.reason)
            raise UnauthorizedError(f"webhook verification failed: {verification.reason}")

    @staticmethod
    def _parse_inbound(provider: str, request: WebhookRequest) -> InboundParseResult:
        if provider == "twilio":
            if request.form is None:
                raise MalformedPayloadError("twilio payload must be form encoded")
            return parse_twilio_inbound(request.form)
        payload = _decode_json(request.body, provider)
        if provider == "zapi":
            return parse_zapi_inbound(payload)
        return parse_whatsapp_inbound(payload)

    @staticmethod
    def _parse_status(provider: str, request: WebhookRequest) -> StatusCallback:
        if provider == "twilio":
            if request.form is None:
                raise MalformedPayloadError("twilio status callback must be form encoded")
            return parse_twilio_status(request.form)
        payload = _decode_json(request.body, provider)
        if provider == "zapi":
            return parse_zapi_status(payload)
        return parse_whatsapp_status(payload)

    def _correlate_campaign(self, tenant_id: str, customer_id: str) -> None:
        try:
            self._campaigns.mark_responded_for_customer(tenant_id, customer_id)
        except Exception:
            logger.exception("campaign reply correlation failed tenant=%s customer=%s", tenant_id, customer_id)

    def _publish_and_record(self, provider: str, tenant_id: str, message: MessageRecord) -> None:
        # The message is already stored and a redelivery would be deduped, so
        # neither step may fail the webhook.
        try:
            self._publisher.publish_message_created(
                MessageCreatedEvent(tenant_id=tenant_id, conversation_id=message.conversation_id, message=message)
            )
        except Exception:
            logger.exception("message created publish failed tenant=%s message=%s", tenant_id, message.message_id)
        try:
            self._conversations.append_event(
                conversation_id=message.conversation_id,
                event_type="inbound_received",
                payload={"provider": provider, "message_id": message.message_id},
            )
        except Exception:
            logger.exception("inbound audit event failed tenant=%s message=%s", tenant_id, message.message_id)
