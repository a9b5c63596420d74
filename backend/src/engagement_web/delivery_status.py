from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Literal, Protocol

from .conversations import ConversationRepository, MessageRecord
from .models import MessageStatus, WebhookProvider

logger = logging.getLogger(__name__)

StatusApplyOutcome = Literal["applied", "ignored", "unmatched"]

STATUS_RANK: dict[str, int] = {
    "received": 0,
    "sent": 1,
    "delivered": 2,
    "read": 3,
}

PROVIDER_STATUS_MAP: dict[str, dict[str, MessageStatus]] = {
    "zapi": {
        "SENT": "sent",
        "RECEIVED": "delivered",
        "DELIVERY_ACK": "delivered",
        "DELIVERED": "delivered",
        "READ": "read",
        "READ_BY_ME": "read",
        "PLAYED": "read",
        "FAILED": "failed",
        "ERROR": "failed",
    },
    "twilio": {
        "QUEUED": "sent",
        "ACCEPTED": "sent",
        "SENDING": "sent",
        "SENT": "sent",
        "DELIVERED": "delivered",
        "READ": "read",
        "FAILED": "failed",
        "UNDELIVERED": "failed",
    },
    "whatsapp": {
        "SENT": "sent",
        "ACK": "sent",
        "DELIVERED": "delivered",
        "READ": "read",
        "FAILED": "failed",
        "ERROR": "failed",
    },
}


def map_provider_status(provider: WebhookProvider | str, raw_status: str | None) -> MessageStatus:
    """Unknown provider statuses fall back to ``sent``, the lowest rank."""
    normalized = (raw_status or "").strip().upper()
    mapped = PROVIDER_STATUS_MAP.get(provider, {}).get(normalized)
    if mapped is None:
        logger.warning("unknown provider status provider=%s status=%s; treating as sent", provider, raw_status)
        return "sent"
    return mapped


def should_apply_status(current: MessageStatus, new_status: MessageStatus) -> bool:
    if current == "failed":
        return False
    if new_status == "failed":
        return True
    if new_status not in STATUS_RANK:
        return False
    return STATUS_RANK[new_status] > STATUS_RANK.get(current, 0)


class CampaignStatusListener(Protocol):
    def apply_delivery_status(self, tenant_id: str, provider_message_id: str, status: MessageStatus) -> bool: ...


class DeliveryStatusTracker:
    def __init__(
        self,
        *,
        repository: ConversationRepository,
        campaign_listener: CampaignStatusListener | None = None,
    ) -> None:
        self._repository = repository
        self._campaign_listener = campaign_listener

    def apply_status(self, provider_message_id: str, new_status: MessageStatus, tenant_id: str) -> bool:
        return self.apply_status_outcome(provider_message_id, new_status, tenant_id) == "applied"

    def apply_status_outcome(
        self, provider_message_id: str, new_status: MessageStatus, tenant_id: str
    ) -> StatusApplyOutcome:
        message: MessageRecord | None = self._repository.find_message_by_provider_message_id(
            tenant_id, provider_message_id
        )
        if message is None:
            logger.info("status callback for unknown message tenant=%s provider_message_id=%s", tenant_id, provider_message_id)
            return "unmatched"

        while True:
            if not should_apply_status(message.status, new_status):
                logger.debug(
                    "status callback ignored message=%s current=%s new=%s",
                    message.message_id,
                    message.status,
                    new_status,
                )
                return "ignored"
            if self._repository.compare_and_set_message_status(
                message_id=message.message_id,
                expected_status=message.status,
                new_status=new_status,
                changed_at=datetime.now(timezone.utc),
            ):
                break
            refreshed = self._repository.get_message(message.message_id)
            if refreshed is None:
                return "unmatched"
            message = refreshed

        logger.info("message status advanced message=%s from=%s to=%s", message.message_id, message.status, new_status)
        self._notify_campaign(tenant_id, provider_message_id, new_status)
        return "applied"

    def _notify_campaign(self, tenant_id: str, provider_message_id: str, status: MessageStatus) -> None:
        if self._campaign_listener is None:
            return
        try:
            self._campaign_listener.apply_delivery_status(tenant_id, provider_message_id, status)
        except Exception:
            logger.exception(
                "campaign delivery correlation failed tenant=%s provider_message_id=%s",
                tenant_id,
                provider_message_id,
            )
