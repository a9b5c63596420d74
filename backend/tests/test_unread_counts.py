from __future__ import annotations

import random
import time
from datetime import timedelta
from pathlib import Path

import pytest

from engagement_web.conversations import (
    ConversationRepository,
    ConversationRouter,
    InMemoryConversationRepository,
    NewMessage,
    SqlAlchemyConversationRepository,
)
from engagement_web.customers import SqlAlchemyCustomerRepository
from engagement_web.errors import NotFoundError
from engagement_web.events import InProcessEventBus, MessageCreatedEvent
from engagement_web.unread_counts import (
    InMemoryUnreadCountRepository,
    SqlAlchemyUnreadCountRepository,
    UnreadCounterMaintainer,
    UnreadCountRepository,
)

TENANT = "tenant-a"
USERS = ("agent-1", "agent-2", "agent-3")


class _Harness:
    def __init__(self, conversations: ConversationRepository, counts: UnreadCountRepository, customer_id: str) -> None:
        self.conversations = conversations
        self.router = ConversationRouter(repository=conversations)
        self.maintainer = UnreadCounterMaintainer(repository=counts, conversations=conversations)
        self.bus = InProcessEventBus()
        self.bus.subscribe(self.maintainer.handle_message_created)
        conversation, _ = self.router.route_inbound(TENANT, customer_id, "whatsapp")
        self.conversation_id = conversation.conversation_id
        self.customer_id = customer_id

    def post(self, sender_id: str | None, *, sender_type: str = "user") -> None:
        message, _ = self.conversations.insert_message(
            NewMessage(
                tenant_id=TENANT,
                conversation_id=self.conversation_id,
                direction="inbound" if sender_type == "customer" else "outbound",
                sender_type=sender_type,  # type: ignore[arg-type]
                sender_id=sender_id,
                content="message",
                provider_message_id=None,
                status="received" if sender_type == "customer" else "sent",
            )
        )
        self.bus.publish_message_created(
            MessageCreatedEvent(tenant_id=TENANT, conversation_id=self.conversation_id, message=message)
        )

    def join(self, user_id: str) -> None:
        self.router.add_participant(TENANT, self.conversation_id, user_id)

    def leave(self, user_id: str) -> None:
        if self.router.remove_participant(TENANT, self.conversation_id, user_id):
            self.maintainer.forget_participant(self.conversation_id, user_id)

    def read(self, user_id: str) -> None:
        self.maintainer.mark_as_read(TENANT, self.conversation_id, user_id)

    def unread(self, user_id: str) -> int:
        return self.maintainer.get_unread_count(TENANT, user_id, self.conversation_id)


def _in_memory_harness() -> _Harness:
    return _Harness(InMemoryConversationRepository(), InMemoryUnreadCountRepository(), "cust-1")


def _tick() -> None:
    # Keeps timestamps of consecutive steps strictly ordered.
    time.sleep(0.002)


def test_messages_increment_other_participants_only() -> None:
    harness = _in_memory_harness()
    harness.join("agent-1")
    harness.join("agent-2")
    _tick()

    harness.post(harness.customer_id, sender_type="customer")
    harness.post("agent-1")
    harness.post(None, sender_type="system")

    assert harness.unread("agent-1") == 2
    assert harness.unread("agent-2") == 3
    assert harness.unread("agent-3") == 0


def test_mark_as_read_resets_and_later_messages_count_again() -> None:
    harness = _in_memory_harness()
    harness.join("agent-1")
    _tick()
    harness.post(harness.customer_id, sender_type="customer")
    harness.post(harness.customer_id, sender_type="customer")
    _tick()

    harness.read("agent-1")
    assert harness.unread("agent-1") == 0
    _tick()
    harness.post(harness.customer_id, sender_type="customer")

    assert harness.unread("agent-1") == 1
    assert harness.maintainer.recalculate(TENANT, "agent-1", harness.conversation_id) == 1


def test_messages_before_joining_are_not_counted() -> None:
    harness = _in_memory_harness()
    harness.post(harness.customer_id, sender_type="customer")
    _tick()
    harness.join("agent-1")
    _tick()
    harness.post(harness.customer_id, sender_type="customer")

    assert harness.unread("agent-1") == 1
    assert harness.maintainer.recalculate(TENANT, "agent-1", harness.conversation_id) == 1


def test_recalculate_repairs_a_drifted_counter() -> None:
    counts = InMemoryUnreadCountRepository()
    harness = _Harness(InMemoryConversationRepository(), counts, "cust-1")
    harness.join("agent-1")
    _tick()
    harness.post(harness.customer_id, sender_type="customer")
    counts.set_count(tenant_id=TENANT, user_id="agent-1", conversation_id=harness.conversation_id, unread_count=9)

    assert harness.maintainer.recalculate(TENANT, "agent-1", harness.conversation_id) == 1
    assert harness.unread("agent-1") == 1


def test_recalculate_is_zero_for_removed_participants() -> None:
    harness = _in_memory_harness()
    harness.join("agent-1")
    _tick()
    harness.post(harness.customer_id, sender_type="customer")
    harness.leave("agent-1")

    assert harness.unread("agent-1") == 0
    assert harness.maintainer.recalculate(TENANT, "agent-1", harness.conversation_id) == 0
    assert harness.maintainer.recalculate(TENANT, "outsider", harness.conversation_id) == 0


def test_unknown_conversation_raises_not_found() -> None:
    harness = _in_memory_harness()

    with pytest.raises(NotFoundError):
        harness.maintainer.mark_as_read(TENANT, "conv_missing", "agent-1")
    with pytest.raises(NotFoundError):
        harness.maintainer.recalculate("tenant-b", "agent-1", harness.conversation_id)


def test_listing_totals_and_mark_all_read() -> None:
    conversations = InMemoryConversationRepository()
    counts = InMemoryUnreadCountRepository()
    first = _Harness(conversations, counts, "cust-1")
    second = _Harness(conversations, counts, "cust-2")
    first.join("agent-1")
    second.join("agent-1")
    _tick()
    first.post("cust-1", sender_type="customer")
    second.post("cust-2", sender_type="customer")
    second.post("cust-2", sender_type="customer")

    listing = first.maintainer.list_unread_counts(TENANT, "agent-1")
    assert listing.total_unread == 3
    assert {value.conversation_id: value.unread_count for value in listing.items} == {
        first.conversation_id: 1,
        second.conversation_id: 2,
    }

    marked = first.maintainer.mark_all_as_read(TENANT, "agent-1")
    assert marked.conversations_marked == 2
    assert first.maintainer.total_unread(TENANT, "agent-1") == 0
    assert first.maintainer.list_unread_counts(TENANT, "agent-1", only_unread=True).items == []


def test_cleanup_removes_only_stale_empty_counters() -> None:
    counts = InMemoryUnreadCountRepository()
    harness = _Harness(InMemoryConversationRepository(), counts, "cust-1")
    harness.join("agent-1")
    harness.read("agent-2")

    assert harness.maintainer.cleanup_empty_counters(TENANT, older_than_days=30) == 0
    record = counts.get(user_id="agent-2", conversation_id=harness.conversation_id)
    assert record is not None
    assert counts.delete_empty_before("tenant-b", record.updated_at + timedelta(seconds=1)) == 0
    assert counts.delete_empty_before(TENANT, record.updated_at + timedelta(seconds=1)) == 1
    assert counts.get(user_id="agent-2", conversation_id=harness.conversation_id) is None


@pytest.mark.parametrize("seed", [3, 17, 2024])
def test_incremental_counts_match_recalculation_for_random_histories(seed: int) -> None:
    rng = random.Random(seed)
    harness = _in_memory_harness()

    for _ in range(120):
        action = rng.choice(("customer", "user", "system", "join", "leave", "read"))
        user_id = rng.choice(USERS)
        if action == "customer":
            harness.post(harness.customer_id, sender_type="customer")
        elif action == "user":
            harness.post(user_id)
        elif action == "system":
            harness.post(None, sender_type="system")
        elif action == "join":
            harness.join(user_id)
        elif action == "leave":
            harness.leave(user_id)
        else:
            harness.read(user_id)

        if rng.random() < 0.2:
            for candidate in USERS:
                incremental = harness.unread(candidate)
                assert harness.maintainer.recalculate(TENANT, candidate, harness.conversation_id) == incremental

    for candidate in USERS:
        incremental = harness.unread(candidate)
        assert harness.maintainer.recalculate(TENANT, candidate, harness.conversation_id) == incremental


def test_sql_counts_match_recalculation(tmp_path: Path) -> None:
    database_url = f"sqlite:///{tmp_path / 'unread.db'}"
    customer, _ = SqlAlchemyCustomerRepository(database_url).insert_or_get(
        tenant_id=TENANT, phone="5511987654321", display_name="Maria"
    )
    harness = _Harness(
        SqlAlchemyConversationRepository(database_url),
        SqlAlchemyUnreadCountRepository(database_url),
        customer.customer_id,
    )
    harness.join("agent-1")
    harness.join("agent-2")
    _tick()
    harness.post(customer.customer_id, sender_type="customer")
    harness.post("agent-1")
    _tick()
    harness.read("agent-2")
    _tick()
    harness.post(customer.customer_id, sender_type="customer")

    assert harness.unread("agent-1") == 2
    assert harness.unread("agent-2") == 1
    for user_id in ("agent-1", "agent-2"):
        assert harness.maintainer.recalculate(TENANT, user_id, harness.conversation_id) == harness.unread(user_id)
