from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

WebhookProvider = Literal["zapi", "twilio", "whatsapp"]
ContactChannel = Literal["whatsapp", "sms"]
ConversationStatus = Literal["inbox", "waiting", "active", "closed"]
MessageDirection = Literal["inbound", "outbound"]
MessageSenderType = Literal["customer", "user", "system", "ai"]
MessageStatus = Literal["received", "sent", "delivered", "read", "failed"]
CampaignContactStatus = Literal[
    "pending",
    "sent",
    "delivered",
    "read",
    "responded",
    "failed",
    "excluded",
]
InboundWebhookStatus = Literal["success", "ignored"]


class InboundWebhookResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: InboundWebhookStatus
    message_id: str | None = Field(default=None, serialization_alias="messageId")
    conversation_id: str | None = Field(default=None, serialization_alias="conversationId")
    deduped: bool = False
    reason: str | None = None


class StatusCallbackResponse(BaseModel):
    status: Literal["ok"] = "ok"
    updated: int
    unmatched: int


class CustomerResolveRequest(BaseModel):
    phone: str = Field(min_length=1, max_length=64)
    display_name: str | None = Field(default=None, max_length=256)

    @field_validator("display_name")
    @classmethod
    def _normalize_display_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class CustomerBlockRequest(BaseModel):
    blocked: bool = True


class CustomerItem(BaseModel):
    customer_id: str
    phone: str
    display_name: str
    blocked: bool
    created_at: datetime
    updated_at: datetime


class ConversationItem(BaseModel):
    conversation_id: str
    customer_id: str
    channel: ContactChannel
    status: ConversationStatus
    external_thread_id: str | None = None
    last_message_preview: str | None = None
    last_inbound_at: datetime | None = None
    last_outbound_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None = None


class ConversationListResponse(BaseModel):
    items: list[ConversationItem]


class MessageItem(BaseModel):
    message_id: str
    direction: MessageDirection
    sender_type: MessageSenderType
    sender_id: str | None = None
    content: str
    status: MessageStatus
    provider_message_id: str | None = None
    media_url: str | None = None
    media_mime_type: str | None = None
    created_at: datetime
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    read_at: datetime | None = None
    failed_at: datetime | None = None


class ConversationDetailResponse(BaseModel):
    conversation: ConversationItem
    messages: list[MessageItem]


class ConversationStatusRequest(BaseModel):
    status: ConversationStatus


class ParticipantRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)

    @field_validator("user_id")
    @classmethod
    def _normalize_user_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("user_id cannot be blank")
        return normalized


class ParticipantItem(BaseModel):
    user_id: str
    active: bool
    joined_at: datetime


class ParticipantListResponse(BaseModel):
    conversation_id: str
    items: list[ParticipantItem]


class MarkReadRequest(ParticipantRequest):
    pass


class UnreadCountItem(BaseModel):
    user_id: str
    conversation_id: str
    unread_count: int
    last_read_at: datetime | None = None
    updated_at: datetime


class UnreadCountListResponse(BaseModel):
    user_id: str
    total_unread: int
    items: list[UnreadCountItem]


class MarkAllReadResponse(BaseModel):
    user_id: str
    conversations_marked: int


class CampaignCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    message_text: str = Field(min_length=1, max_length=4096)

    @field_validator("name", "message_text")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("campaign fields cannot be blank")
        return normalized


class CampaignItem(BaseModel):
    campaign_id: str
    name: str
    message_text: str
    created_at: datetime


class CampaignContactAddRequest(BaseModel):
    customer_id: str = Field(min_length=1, max_length=128)


class CampaignContactItem(BaseModel):
    contact_id: str
    campaign_id: str
    customer_id: str
    status: CampaignContactStatus
    error_message: str | None = None
    provider_message_id: str | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    read_at: datetime | None = None
    responded_at: datetime | None = None
    failed_at: datetime | None = None
    excluded_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class CampaignContactListResponse(BaseModel):
    campaign_id: str
    items: list[CampaignContactItem]


class CampaignStatsResponse(BaseModel):
    campaign_id: str
    total: int
    by_status: dict[str, int]


class CampaignContactExcludeRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=512)

    @field_validator("reason")
    @classmethod
    def _normalize_reason(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("reason cannot be blank")
        return normalized


class CampaignRetryAllResponse(BaseModel):
    campaign_id: str
    retried_count: int


class CampaignDispatchRequest(BaseModel):
    limit: int = Field(default=50, ge=1, le=500)


class CampaignDispatchResponse(BaseModel):
    campaign_id: str
    attempted: int
    sent: int
    failed: int
