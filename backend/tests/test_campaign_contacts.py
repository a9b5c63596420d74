from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

import pytest

from engagement_web.campaigns import (
    CampaignContactService,
    InMemoryCampaignRepository,
    SqlAlchemyCampaignRepository,
)
from engagement_web.conversations import (
    ConversationRouter,
    InMemoryConversationRepository,
    SqlAlchemyConversationRepository,
)
from engagement_web.customers import IdentityResolver, InMemoryCustomerRepository, SqlAlchemyCustomerRepository
from engagement_web.errors import MalformedPayloadError, NotFoundError, PreconditionFailedError
from engagement_web.events import InProcessEventBus, MessageCreatedEvent
from engagement_web.outbound import StubOutboundSender

TENANT = "tenant-a"


@dataclass
class _Runtime:
    service: CampaignContactService
    resolver: IdentityResolver
    conversations: InMemoryConversationRepository | SqlAlchemyConversationRepository
    events: list[MessageCreatedEvent]


def _runtime(database_url: str | None = None) -> _Runtime:
    if database_url is None:
        customers = InMemoryCustomerRepository()
        conversations = InMemoryConversationRepository()
        campaigns = InMemoryCampaignRepository()
    else:
        customers = SqlAlchemyCustomerRepository(database_url)
        conversations = SqlAlchemyConversationRepository(database_url)
        campaigns = SqlAlchemyCampaignRepository(database_url)
    bus = InProcessEventBus()
    events: list[MessageCreatedEvent] = []
    bus.subscribe(events.append)
    service = CampaignContactService(
        repository=campaigns,
        customers=customers,
        router=ConversationRouter(repository=conversations),
        conversations=conversations,
        publisher=bus,
    )
    return _Runtime(
        service=service,
        resolver=IdentityResolver(repository=customers),
        conversations=conversations,
        events=events,
    )


def _contact(runtime: _Runtime, phone: str = "5511999990000", campaign_id: str | None = None) -> str:
    if campaign_id is None:
        campaign_id = runtime.service.create_campaign(TENANT, name="Spring", message_text="Hello donor").campaign_id
    customer = runtime.resolver.resolve_customer(TENANT, phone)
    return runtime.service.add_contact(TENANT, campaign_id, customer.customer_id).contact_id


def test_retry_all_failed_moves_failed_contacts_back_to_pending() -> None:
    runtime = _runtime()
    contact_id = _contact(runtime)
    contact = runtime.service.get_contact(TENANT, contact_id)
    failed = runtime.service.mark_failed(TENANT, contact_id, "timeout")
    assert failed.status == "failed" and failed.error_message == "timeout"

    retried = runtime.service.retry_all_failed(TENANT, contact.campaign_id)

    assert retried == 1
    refreshed = runtime.service.get_contact(TENANT, contact_id)
    assert refreshed.status == "pending"
    assert refreshed.error_message is None
    assert refreshed.failed_at is not None


def test_inbound_reply_marks_contact_responded_once() -> None:
    runtime = _runtime()
    contact_id = _contact(runtime)
    runtime.service.mark_sent(TENANT, contact_id, "p-1")
    customer_id = runtime.service.get_contact(TENANT, contact_id).customer_id

    responded = runtime.service.mark_responded_for_customer(TENANT, customer_id)
    second = runtime.service.mark_responded_for_customer(TENANT, customer_id)

    assert responded is not None and responded.status == "responded"
    assert responded.responded_at is not None
    assert second is None
    assert runtime.service.get_contact(TENANT, contact_id).status == "responded"


def test_reply_correlates_to_most_recently_sent_contact() -> None:
    runtime = _runtime()
    older = _contact(runtime)
    newer = _contact(runtime)
    runtime.service.mark_sent(TENANT, older, "p-old")
    runtime.service.mark_sent(TENANT, newer, "p-new")
    customer_id = runtime.service.get_contact(TENANT, older).customer_id

    responded = runtime.service.mark_responded_for_customer(TENANT, customer_id)

    assert responded is not None and responded.contact_id == newer
    assert runtime.service.get_contact(TENANT, older).status == "sent"


def test_retry_and_reinclude_are_no_ops_for_pending_contacts() -> None:
    runtime = _runtime()
    contact_id = _contact(runtime)

    assert runtime.service.retry(TENANT, contact_id).status == "pending"
    assert runtime.service.reinclude(TENANT, contact_id).status == "pending"


def test_state_machine_rejects_invalid_source_states() -> None:
    runtime = _runtime()
    contact_id = _contact(runtime)
    runtime.service.mark_sent(TENANT, contact_id, "p-1")
    again = runtime.service.mark_sent(TENANT, contact_id, "p-2")

    assert again.provider_message_id == "p-1"
    with pytest.raises(PreconditionFailedError):
        runtime.service.retry(TENANT, contact_id)
    with pytest.raises(PreconditionFailedError):
        runtime.service.reinclude(TENANT, contact_id)

    customer_id = runtime.service.get_contact(TENANT, contact_id).customer_id
    runtime.service.mark_responded_for_customer(TENANT, customer_id)
    with pytest.raises(PreconditionFailedError):
        runtime.service.exclude(TENANT, contact_id, "opted out")
    with pytest.raises(PreconditionFailedError):
        runtime.service.mark_failed(TENANT, contact_id, "late failure")


def test_exclude_requires_reason_and_reinclude_restores_pending() -> None:
    runtime = _runtime()
    contact_id = _contact(runtime)

    with pytest.raises(MalformedPayloadError):
        runtime.service.exclude(TENANT, contact_id, "   ")
    excluded = runtime.service.exclude(TENANT, contact_id, "opted out")
    excluded_again = runtime.service.exclude(TENANT, contact_id, "different reason")
    reincluded = runtime.service.reinclude(TENANT, contact_id)

    assert excluded.status == "excluded"
    assert excluded.error_message == "Excluded: opted out"
    assert excluded_again.error_message == "Excluded: opted out"
    assert reincluded.status == "pending"
    assert reincluded.error_message is None
    assert reincluded.excluded_at == excluded.excluded_at


def test_unknown_ids_and_foreign_tenants_raise_not_found() -> None:
    runtime = _runtime()
    contact_id = _contact(runtime)
    campaign_id = runtime.service.get_contact(TENANT, contact_id).campaign_id

    with pytest.raises(NotFoundError):
        runtime.service.retry(TENANT, "ccontact_missing")
    with pytest.raises(NotFoundError):
        runtime.service.get_contact("tenant-b", contact_id)
    with pytest.raises(NotFoundError):
        runtime.service.retry_all_failed("tenant-b", campaign_id)
    with pytest.raises(NotFoundError):
        runtime.service.add_contact(TENANT, campaign_id, "cust_missing")


def test_add_contact_is_idempotent_per_customer() -> None:
    runtime = _runtime()
    campaign = runtime.service.create_campaign(TENANT, name="Spring", message_text="Hello donor")
    customer = runtime.resolver.resolve_customer(TENANT, "5511999990000")

    first = runtime.service.add_contact(TENANT, campaign.campaign_id, customer.customer_id)
    second = runtime.service.add_contact(TENANT, campaign.campaign_id, customer.customer_id)

    assert first.contact_id == second.contact_id


def test_delivery_status_advances_contact_monotonically() -> None:
    runtime = _runtime()
    contact_id = _contact(runtime)
    runtime.service.mark_sent(TENANT, contact_id, "p-1")

    assert runtime.service.apply_delivery_status(TENANT, "p-1", "read") is True
    assert runtime.service.apply_delivery_status(TENANT, "p-1", "delivered") is False
    assert runtime.service.apply_delivery_status(TENANT, "unknown", "read") is False
    assert runtime.service.get_contact(TENANT, contact_id).status == "read"

    assert runtime.service.apply_delivery_status(TENANT, "p-1", "failed") is True
    failed = runtime.service.get_contact(TENANT, contact_id)
    assert failed.status == "failed"
    assert failed.error_message == "Provider reported delivery failure"


def test_dispatch_sends_message_and_marks_contact_sent() -> None:
    runtime = _runtime()
    contact_id = _contact(runtime)
    sender = StubOutboundSender(enabled=True)

    dispatched = runtime.service.dispatch(TENANT, contact_id, sender)

    assert dispatched.status == "sent"
    assert dispatched.provider_message_id == "stub-000001"
    assert sender.sent == [(TENANT, "5511999990000", "Hello donor")]
    message = runtime.conversations.find_message_by_provider_message_id(TENANT, "stub-000001")
    assert message is not None
    assert message.direction == "outbound"
    assert message.status == "sent"
    assert len(runtime.events) == 1
    assert runtime.events[0].message.message_id == message.message_id
    with pytest.raises(PreconditionFailedError):
        runtime.service.dispatch(TENANT, contact_id, sender)


def test_dispatch_failure_marks_contact_failed() -> None:
    runtime = _runtime()
    contact_id = _contact(runtime)
    sender = StubOutboundSender(enabled=True, failing_phones={"5511999990000"})

    dispatched = runtime.service.dispatch(TENANT, contact_id, sender)

    assert dispatched.status == "failed"
    assert dispatched.error_message == "Stub sender forced failure for phone"
    assert sender.sent == []


def test_dispatch_to_blocked_customer_fails_without_sending() -> None:
    runtime = _runtime()
    contact_id = _contact(runtime)
    customer_id = runtime.service.get_contact(TENANT, contact_id).customer_id
    runtime.resolver.set_blocked(TENANT, customer_id, True)
    sender = StubOutboundSender(enabled=True)

    dispatched = runtime.service.dispatch(TENANT, contact_id, sender)

    assert dispatched.status == "failed"
    assert dispatched.error_message == "customer_blocked"
    assert sender.sent == []


def test_dispatch_records_sender_exceptions_as_failures() -> None:
    class _ExplodingSender:
        def send(self, *, phone: str, content: str, tenant_id: str):
            raise ConnectionError("boom")

    runtime = _runtime()
    contact_id = _contact(runtime)

    dispatched = runtime.service.dispatch(TENANT, contact_id, _ExplodingSender())

    assert dispatched.status == "failed"
    assert dispatched.error_message == "send_error: boom"


def test_dispatch_pending_and_stats() -> None:
    runtime = _runtime()
    campaign = runtime.service.create_campaign(TENANT, name="Spring", message_text="Hello donor")
    _contact(runtime, "5511999990001", campaign.campaign_id)
    _contact(runtime, "5511999990002", campaign.campaign_id)
    excluded = _contact(runtime, "5511999990003", campaign.campaign_id)
    runtime.service.exclude(TENANT, excluded, "do not contact")
    sender = StubOutboundSender(enabled=True, failing_phones={"5511999990002"})

    summary = runtime.service.dispatch_pending(TENANT, campaign.campaign_id, sender, limit=10)
    stats = runtime.service.campaign_stats(TENANT, campaign.campaign_id)

    assert (summary.attempted, summary.sent, summary.failed) == (2, 1, 1)
    assert stats.total == 3
    assert stats.by_status["sent"] == 1
    assert stats.by_status["failed"] == 1
    assert stats.by_status["excluded"] == 1
    assert stats.by_status["pending"] == 0
    listed = runtime.service.list_contacts(TENANT, campaign.campaign_id, status="failed")
    assert [value.status for value in listed.items] == ["failed"]


def test_concurrent_retries_move_contact_exactly_once() -> None:
    runtime = _runtime()
    contact_id = _contact(runtime)
    campaign_id = runtime.service.get_contact(TENANT, contact_id).campaign_id
    runtime.service.mark_failed(TENANT, contact_id, "timeout")

    with ThreadPoolExecutor(max_workers=2) as pool:
        counts = list(pool.map(lambda _: runtime.service.retry_all_failed(TENANT, campaign_id), range(2)))

    assert sum(counts) == 1
    assert runtime.service.get_contact(TENANT, contact_id).status == "pending"


def test_concurrent_single_contact_retries_agree_on_pending() -> None:
    runtime = _runtime()
    contact_id = _contact(runtime)
    runtime.service.mark_failed(TENANT, contact_id, "timeout")

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: runtime.service.retry(TENANT, contact_id), range(8)))

    assert {value.status for value in results} == {"pending"}


def test_sql_backend_retry_and_reply_flow(tmp_path: Path) -> None:
    runtime = _runtime(f"sqlite:///{tmp_path / 'campaigns.db'}")
    contact_id = _contact(runtime)
    campaign_id = runtime.service.get_contact(TENANT, contact_id).campaign_id

    runtime.service.mark_failed(TENANT, contact_id, "timeout")
    assert runtime.service.retry_all_failed(TENANT, campaign_id) == 1
    assert runtime.service.retry_all_failed(TENANT, campaign_id) == 0

    dispatched = runtime.service.dispatch(TENANT, contact_id, StubOutboundSender(enabled=True))
    assert dispatched.status == "sent"
    assert dispatched.sent_at is not None and dispatched.sent_at.tzinfo is not None

    assert runtime.service.apply_delivery_status(TENANT, "stub-000001", "delivered") is True
    responded = runtime.service.mark_responded_for_customer(TENANT, dispatched.customer_id)
    assert responded is not None and responded.status == "responded"
    assert runtime.service.mark_responded_for_customer(TENANT, dispatched.customer_id) is None
