from __future__ import annotations

from typing import NoReturn

from fastapi import APIRouter, HTTPException, Query, Request, status
from starlette.concurrency import run_in_threadpool

from .campaigns import CampaignContactService, CampaignRepository, create_campaign_repository
from .config import Settings, get_settings
from .conversations import ConversationRepository, ConversationRouter, create_conversation_repository
from .customers import CustomerRepository, IdentityResolver, create_customer_repository
from .delivery_status import DeliveryStatusTracker
from .errors import EngagementError
from .events import InProcessEventBus
from .ingestion import MessageIngestionPipeline, WebhookRequest
from .models import (
    CampaignContactAddRequest,
    CampaignContactExcludeRequest,
    CampaignContactItem,
    CampaignContactListResponse,
    CampaignContactStatus,
    CampaignCreateRequest,
    CampaignDispatchRequest,
    CampaignDispatchResponse,
    CampaignItem,
    CampaignRetryAllResponse,
    CampaignStatsResponse,
    ConversationDetailResponse,
    ConversationItem,
    ConversationListResponse,
    ConversationStatus,
    ConversationStatusRequest,
    CustomerBlockRequest,
    CustomerItem,
    CustomerResolveRequest,
    InboundWebhookResponse,
    MarkAllReadResponse,
    MarkReadRequest,
    ParticipantItem,
    ParticipantListResponse,
    ParticipantRequest,
    StatusCallbackResponse,
    UnreadCountItem,
    UnreadCountListResponse,
)
from .outbound import OutboundSender, create_outbound_sender
from .unread_counts import UnreadCounterMaintainer, UnreadCountRepository, create_unread_count_repository

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["engagement"])

customer_repo: CustomerRepository
conversation_repo: ConversationRepository
campaign_repo: CampaignRepository
unread_repo: UnreadCountRepository
event_bus: InProcessEventBus
identity_resolver: IdentityResolver
conversation_router: ConversationRouter
campaign_service: CampaignContactService
delivery_tracker: DeliveryStatusTracker
unread_maintainer: UnreadCounterMaintainer
ingestion_pipeline: MessageIngestionPipeline
outbound_sender: OutboundSender


def configure_runtime(settings: Settings) -> None:
    """(Re)build repositories and services from ``settings``."""
    global _settings, customer_repo, conversation_repo, campaign_repo, unread_repo, event_bus
    global identity_resolver, conversation_router, campaign_service, delivery_tracker, unread_maintainer
    global ingestion_pipeline, outbound_sender

    _settings = settings
    customer_repo = create_customer_repository(backend=settings.store_backend, database_url=settings.database_url)
    conversation_repo = create_conversation_repository(backend=settings.store_backend, database_url=settings.database_url)
    campaign_repo = create_campaign_repository(backend=settings.store_backend, database_url=settings.database_url)
    unread_repo = create_unread_count_repository(backend=settings.store_backend, database_url=settings.database_url)
    event_bus = InProcessEventBus(dispatch_mode=settings.event_dispatch_mode)

    identity_resolver = IdentityResolver(repository=customer_repo, default_country_code=settings.default_country_code)
    conversation_router = ConversationRouter(repository=conversation_repo)
    campaign_service = CampaignContactService(
        repository=campaign_repo,
        customers=customer_repo,
        router=conversation_router,
        conversations=conversation_repo,
        publisher=event_bus,
    )
    delivery_tracker = DeliveryStatusTracker(repository=conversation_repo, campaign_listener=campaign_service)
    unread_maintainer = UnreadCounterMaintainer(repository=unread_repo, conversations=conversation_repo)
    event_bus.subscribe(unread_maintainer.handle_message_created)
    ingestion_pipeline = MessageIngestionPipeline(
        settings=settings,
        resolver=identity_resolver,
        router=conversation_router,
        conversations=conversation_repo,
        campaigns=campaign_service,
        tracker=delivery_tracker,
        publisher=event_bus,
    )
    outbound_sender = create_outbound_sender(settings)


configure_runtime(_settings)


def reset_runtime_state_for_tests() -> None:
    unread_repo.reset()
    campaign_repo.reset()
    conversation_repo.reset()
    customer_repo.reset()


def _raise_http(exc: EngagementError) -> NoReturn:
    raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


def _require_tenant(request: Request) -> str:
    tenant_id = request.headers.get("X-Tenant-Id", "").strip()
    if not tenant_id:
        raise HTTPException(400, "X-Tenant-Id header required")
    return tenant_id


async def _webhook_request(request: Request, provider: str) -> WebhookRequest:
    body = await request.body()
    form: dict[str, str] | None = None
    if provider.strip().lower() == "twilio":
        content_type = request.headers.get("content-type", "")
        if content_type.startswith("application/x-www-form-urlencoded") or content_type.startswith(
            "multipart/form-data"
        ):
            submitted = await request.form()
            form = {key: str(value) for key, value in submitted.items()}
    return WebhookRequest(body=body, headers=dict(request.headers), url=str(request.url), form=form)


@router.get("/health")
def health() -> dict:
    return {"status": "ok", "store_backend": _settings.store_backend}


# Webhooks


@router.post(
    "/webhooks/{provider}/inbound",
    response_model=InboundWebhookResponse,
    response_model_exclude_none=True,
)
async def receive_inbound_webhook(provider: str, request: Request) -> InboundWebhookResponse:
    webhook_request = await _webhook_request(request, provider)
    try:
        return await run_in_threadpool(ingestion_pipeline.ingest, provider, webhook_request)
    except EngagementError as exc:
        _raise_http(exc)


@router.post("/webhooks/{provider}/status", response_model=StatusCallbackResponse)
async def receive_status_callback(provider: str, request: Request) -> StatusCallbackResponse:
    webhook_request = await _webhook_request(request, provider)
    try:
        return await run_in_threadpool(ingestion_pipeline.process_status_callback, provider, webhook_request)
    except EngagementError as exc:
        _raise_http(exc)


# Customers


@router.post("/customers/resolve", response_model=CustomerItem)
def resolve_customer(payload: CustomerResolveRequest, request: Request) -> CustomerItem:
    tenant_id = _require_tenant(request)
    try:
        customer = identity_resolver.resolve_customer(tenant_id, payload.phone, payload.display_name)
    except EngagementError as exc:
        _raise_http(exc)
    return identity_resolver.to_item(customer)


@router.get("/customers/{customer_id}", response_model=CustomerItem)
def get_customer(customer_id: str, request: Request) -> CustomerItem:
    tenant_id = _require_tenant(request)
    try:
        return identity_resolver.to_item(identity_resolver.get_customer(tenant_id, customer_id))
    except EngagementError as exc:
        _raise_http(exc)


@router.post("/customers/{customer_id}/block", response_model=CustomerItem)
def block_customer(customer_id: str, payload: CustomerBlockRequest, request: Request) -> CustomerItem:
    tenant_id = _require_tenant(request)
    try:
        return identity_resolver.to_item(identity_resolver.set_blocked(tenant_id, customer_id, payload.blocked))
    except EngagementError as exc:
        _raise_http(exc)


# Conversations


@router.get("/conversations", response_model=ConversationListResponse)
def list_conversations(
    request: Request,
    status_filter: ConversationStatus | None = Query(default=None, alias="status"),
    limit: int = 100,
) -> ConversationListResponse:
    tenant_id = _require_tenant(request)
    return conversation_router.list_conversations(tenant_id, status=status_filter, limit=max(1, min(limit, 500)))


@router.get("/conversations/{conversation_id}", response_model=ConversationDetailResponse)
def get_conversation(conversation_id: str, request: Request) -> ConversationDetailResponse:
    tenant_id = _require_tenant(request)
    try:
        return conversation_router.get_detail(tenant_id, conversation_id)
    except EngagementError as exc:
        _raise_http(exc)


@router.post("/conversations/{conversation_id}/status", response_model=ConversationItem)
def change_conversation_status(
    conversation_id: str, payload: ConversationStatusRequest, request: Request
) -> ConversationItem:
    tenant_id = _require_tenant(request)
    try:
        conversation = conversation_router.change_status(tenant_id, conversation_id, payload.status)
    except EngagementError as exc:
        _raise_http(exc)
    return conversation_router.to_item(conversation)


@router.get("/conversations/{conversation_id}/participants", response_model=ParticipantListResponse)
def list_participants(conversation_id: str, request: Request) -> ParticipantListResponse:
    tenant_id = _require_tenant(request)
    try:
        return conversation_router.list_participants(tenant_id, conversation_id)
    except EngagementError as exc:
        _raise_http(exc)


@router.post(
    "/conversations/{conversation_id}/participants",
    response_model=ParticipantItem,
    status_code=status.HTTP_201_CREATED,
)
def add_participant(conversation_id: str, payload: ParticipantRequest, request: Request) -> ParticipantItem:
    tenant_id = _require_tenant(request)
    try:
        participant = conversation_router.add_participant(tenant_id, conversation_id, payload.user_id)
    except EngagementError as exc:
        _raise_http(exc)
    return ParticipantItem(user_id=participant.user_id, active=participant.active, joined_at=participant.joined_at)


@router.delete("/conversations/{conversation_id}/participants/{user_id}")
def remove_participant(conversation_id: str, user_id: str, request: Request) -> dict:
    tenant_id = _require_tenant(request)
    try:
        removed = conversation_router.remove_participant(tenant_id, conversation_id, user_id)
    except EngagementError as exc:
        _raise_http(exc)
    if removed:
        unread_maintainer.forget_participant(conversation_id, user_id)
    return {"conversation_id": conversation_id, "user_id": user_id, "removed": removed}


@router.post("/conversations/{conversation_id}/read", response_model=UnreadCountItem)
def mark_conversation_read(conversation_id: str, payload: MarkReadRequest, request: Request) -> UnreadCountItem:
    tenant_id = _require_tenant(request)
    try:
        record = unread_maintainer.mark_as_read(tenant_id, conversation_id, payload.user_id)
    except EngagementError as exc:
        _raise_http(exc)
    return unread_maintainer.to_item(record)


# Unread counts


@router.get("/users/{user_id}/unread-counts", response_model=UnreadCountListResponse)
def list_unread_counts(user_id: str, request: Request, only_unread: bool = False) -> UnreadCountListResponse:
    tenant_id = _require_tenant(request)
    return unread_maintainer.list_unread_counts(tenant_id, user_id, only_unread=only_unread)


@router.post("/users/{user_id}/unread-counts/read-all", response_model=MarkAllReadResponse)
def mark_all_read(user_id: str, request: Request) -> MarkAllReadResponse:
    tenant_id = _require_tenant(request)
    return unread_maintainer.mark_all_as_read(tenant_id, user_id)


@router.get("/users/{user_id}/unread-counts/{conversation_id}")
def get_unread_count(user_id: str, conversation_id: str, request: Request) -> dict:
    tenant_id = _require_tenant(request)
    try:
        unread = unread_maintainer.get_unread_count(tenant_id, user_id, conversation_id)
    except EngagementError as exc:
        _raise_http(exc)
    return {"user_id": user_id, "conversation_id": conversation_id, "unread_count": unread}


@router.post("/users/{user_id}/unread-counts/{conversation_id}/recalculate")
def recalculate_unread_count(user_id: str, conversation_id: str, request: Request) -> dict:
    tenant_id = _require_tenant(request)
    try:
        unread = unread_maintainer.recalculate(tenant_id, user_id, conversation_id)
    except EngagementError as exc:
        _raise_http(exc)
    return {"user_id": user_id, "conversation_id": conversation_id, "unread_count": unread}


@router.post("/unread-counts/cleanup")
def cleanup_unread_counts(request: Request, older_than_days: int = Query(default=30, ge=0)) -> dict:
    tenant_id = _require_tenant(request)
    removed = unread_maintainer.cleanup_empty_counters(tenant_id, older_than_days=older_than_days)
    return {"removed": removed, "older_than_days": older_than_days}


# Campaigns


@router.post("/campaigns", response_model=CampaignItem, status_code=status.HTTP_201_CREATED)
def create_campaign(payload: CampaignCreateRequest, request: Request) -> CampaignItem:
    tenant_id = _require_tenant(request)
    campaign = campaign_service.create_campaign(tenant_id, name=payload.name, message_text=payload.message_text)
    return campaign_service.to_campaign_item(campaign)


@router.post(
    "/campaigns/{campaign_id}/contacts",
    response_model=CampaignContactItem,
    status_code=status.HTTP_201_CREATED,
)
def add_campaign_contact(
    campaign_id: str, payload: CampaignContactAddRequest, request: Request
) -> CampaignContactItem:
    tenant_id = _require_tenant(request)
    try:
        contact = campaign_service.add_contact(tenant_id, campaign_id, payload.customer_id)
    except EngagementError as exc:
        _raise_http(exc)
    return campaign_service.to_item(contact)


@router.get("/campaigns/{campaign_id}/contacts", response_model=CampaignContactListResponse)
def list_campaign_contacts(
    campaign_id: str,
    request: Request,
    status_filter: CampaignContactStatus | None = Query(default=None, alias="status"),
) -> CampaignContactListResponse:
    tenant_id = _require_tenant(request)
    try:
        return campaign_service.list_contacts(tenant_id, campaign_id, status=status_filter)
    except EngagementError as exc:
        _raise_http(exc)


@router.get("/campaigns/{campaign_id}/stats", response_model=CampaignStatsResponse)
def get_campaign_stats(campaign_id: str, request: Request) -> CampaignStatsResponse:
    tenant_id = _require_tenant(request)
    try:
        return campaign_service.campaign_stats(tenant_id, campaign_id)
    except EngagementError as exc:
        _raise_http(exc)


@router.post("/campaigns/{campaign_id}/dispatch", response_model=CampaignDispatchResponse)
def dispatch_campaign(
    campaign_id: str, request: Request, payload: CampaignDispatchRequest | None = None
) -> CampaignDispatchResponse:
    tenant_id = _require_tenant(request)
    limit = payload.limit if payload is not None else 50
    try:
        return campaign_service.dispatch_pending(tenant_id, campaign_id, outbound_sender, limit=limit)
    except EngagementError as exc:
        _raise_http(exc)


@router.post("/campaigns/{campaign_id}/retry-failed", response_model=CampaignRetryAllResponse)
def retry_failed_contacts(campaign_id: str, request: Request) -> CampaignRetryAllResponse:
    tenant_id = _require_tenant(request)
    try:
        retried = campaign_service.retry_all_failed(tenant_id, campaign_id)
    except EngagementError as exc:
        _raise_http(exc)
    return CampaignRetryAllResponse(campaign_id=campaign_id, retried_count=retried)


@router.post("/campaign-contacts/{contact_id}/dispatch", response_model=CampaignContactItem)
def dispatch_campaign_contact(contact_id: str, request: Request) -> CampaignContactItem:
    tenant_id = _require_tenant(request)
    try:
        contact = campaign_service.dispatch(tenant_id, contact_id, outbound_sender)
    except EngagementError as exc:
        _raise_http(exc)
    return campaign_service.to_item(contact)


@router.post("/campaign-contacts/{contact_id}/retry", response_model=CampaignContactItem)
def retry_campaign_contact(contact_id: str, request: Request) -> CampaignContactItem:
    tenant_id = _require_tenant(request)
    try:
        contact = campaign_service.retry(tenant_id, contact_id)
    except EngagementError as exc:
        _raise_http(exc)
    return campaign_service.to_item(contact)


@router.post("/campaign-contacts/{contact_id}/exclude", response_model=CampaignContactItem)
def exclude_campaign_contact(
    contact_id: str, payload: CampaignContactExcludeRequest, request: Request
) -> CampaignContactItem:
    tenant_id = _require_tenant(request)
    try:
        contact = campaign_service.exclude(tenant_id, contact_id, payload.reason)
    except EngagementError as exc:
        _raise_http(exc)
    return campaign_service.to_item(contact)


@router.post("/campaign-contacts/{contact_id}/reinclude", response_model=CampaignContactItem)
def reinclude_campaign_contact(contact_id: str, request: Request) -> CampaignContactItem:
    tenant_id = _require_tenant(request)
    try:
        contact = campaign_service.reinclude(tenant_id, contact_id)
    except EngagementError as exc:
        _raise_http(exc)
    return campaign_service.to_item(contact)
