from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from .db import EngagementBase, as_utc, session_factory_for, uses_sql_backend
from .errors import NotFoundError, PreconditionFailedError
from .models import (
    ContactChannel,
    ConversationDetailResponse,
    ConversationItem,
    ConversationListResponse,
    ConversationStatus,
    MessageDirection,
    MessageItem,
    MessageSenderType,
    MessageStatus,
    ParticipantItem,
    ParticipantListResponse,
)

logger = logging.getLogger(__name__)

OPEN_CREATE_ATTEMPTS = 3


@dataclass(frozen=True)
class ConversationRecord:
    conversation_id: str
    tenant_id: str
    customer_id: str
    channel: ContactChannel
    status: ConversationStatus
    external_thread_id: str | None
    last_message_preview: str | None
    last_inbound_at: datetime | None
    last_outbound_at: datetime | None
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    tenant_id: str
    conversation_id: str
    direction: MessageDirection
    sender_type: MessageSenderType
    sender_id: str | None
    content: str
    provider_message_id: str | None
    status: MessageStatus
    media_url: str | None
    media_mime_type: str | None
    created_at: datetime
    sent_at: datetime | None
    delivered_at: datetime | None
    read_at: datetime | None
    failed_at: datetime | None


@dataclass(frozen=True)
class ParticipantRecord:
    conversation_id: str
    user_id: str
    active: bool
    joined_at: datetime


@dataclass(frozen=True)
class NewMessage:
    tenant_id: str
    conversation_id: str
    direction: MessageDirection
    sender_type: MessageSenderType
    sender_id: str | None
    content: str
    provider_message_id: str | None
    status: MessageStatus
    media_url: str | None = None
    media_mime_type: str | None = None


class ConversationRepository(Protocol):
    def reset(self) -> None: ...

    def create_or_get_open_conversation(
        self,
        *,
        tenant_id: str,
        customer_id: str,
        channel: ContactChannel,
        external_thread_id: str | None,
    ) -> tuple[ConversationRecord, bool]: ...

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None: ...

    def find_open_conversation(
        self, *, tenant_id: str, customer_id: str, channel: ContactChannel
    ) -> ConversationRecord | None: ...

    def list_conversations(
        self, *, tenant_id: str, status: ConversationStatus | None, limit: int
    ) -> list[ConversationRecord]: ...

    def transition_conversation_status(
        self,
        *,
        conversation_id: str,
        expected_status: ConversationStatus,
        new_status: ConversationStatus,
    ) -> ConversationRecord | None: ...

    def append_event(self, *, conversation_id: str, event_type: str, payload: dict[str, Any]) -> None: ...

    def list_events(self, conversation_id: str) -> list[dict[str, Any]]: ...

    def insert_message(self, message: NewMessage) -> tuple[MessageRecord, bool]: ...

    def get_message(self, message_id: str) -> MessageRecord | None: ...

    def find_message_by_provider_message_id(self, tenant_id: str, provider_message_id: str) -> MessageRecord | None: ...

    def list_messages(self, conversation_id: str, *, limit: int) -> list[MessageRecord]: ...

    def compare_and_set_message_status(
        self,
        *,
        message_id: str,
        expected_status: MessageStatus,
        new_status: MessageStatus,
        changed_at: datetime,
    ) -> bool: ...

    def count_messages_after(self, *, conversation_id: str, after: datetime | None, exclude_sender_id: str) -> int: ...

    def upsert_participant(self, *, conversation_id: str, user_id: str) -> ParticipantRecord: ...

    def deactivate_participant(self, *, conversation_id: str, user_id: str) -> bool: ...

    def get_participant(self, *, conversation_id: str, user_id: str) -> ParticipantRecord | None: ...

    def list_participants(self, conversation_id: str, *, active_only: bool) -> list[ParticipantRecord]: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _preview(content: str, *, limit: int = 120) -> str:
    clean = " ".join(content.split())
    if len(clean) <= limit:
        return clean
    return clean[: limit - 3] + "..."


# Timestamp column stamped when a message enters each status.
STATUS_TIMESTAMP_FIELDS: dict[str, str] = {
    "sent": "sent_at",
    "delivered": "delivered_at",
    "read": "read_at",
    "failed": "failed_at",
}


class InMemoryConversationRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._conversation_counter = count(1)
        self._message_counter = count(1)
        self._event_counter = count(1)
        self._conversations: dict[str, ConversationRecord] = {}
        self._open_by_key: dict[tuple[str, str, str], str] = {}
        self._messages: dict[str, MessageRecord] = {}
        self._message_ids_by_conversation: dict[str, list[str]] = defaultdict(list)
        self._message_by_provider_id: dict[tuple[str, str], str] = {}
        self._events: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self._participants: dict[tuple[str, str], ParticipantRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._conversation_counter = count(1)
            self._message_counter = count(1)
            self._event_counter = count(1)
            self._conversations.clear()
            self._open_by_key.clear()
            self._messages.clear()
            self._message_ids_by_conversation.clear()
            self._message_by_provider_id.clear()
            self._events.clear()
            self._participants.clear()

    def create_or_get_open_conversation(
        self,
        *,
        tenant_id: str,
        customer_id: str,
        channel: ContactChannel,
        external_thread_id: str | None,
    ) -> tuple[ConversationRecord, bool]:
        key = (tenant_id, customer_id, channel)
        with self._lock:
            existing_id = self._open_by_key.get(key)
            if existing_id is not None:
                existing = self._conversations[existing_id]
                if existing.external_thread_id is None and external_thread_id:
                    existing = ConversationRecord(**{**existing.__dict__, "external_thread_id": external_thread_id})
                    self._conversations[existing_id] = existing
                return existing, False

            now = _now_utc()
            created = ConversationRecord(
                conversation_id=f"conv_{next(self._conversation_counter):06d}",
                tenant_id=tenant_id,
                customer_id=customer_id,
                channel=channel,
                status="inbox",
                external_thread_id=external_thread_id,
                last_message_preview=None,
                last_inbound_at=None,
                last_outbound_at=None,
                created_at=now,
                updated_at=now,
                closed_at=None,
            )
            self._conversations[created.conversation_id] = created
            self._open_by_key[key] = created.conversation_id
            return created, True

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        return self._conversations.get(conversation_id)

    def find_open_conversation(
        self, *, tenant_id: str, customer_id: str, channel: ContactChannel
    ) -> ConversationRecord | None:
        conversation_id = self._open_by_key.get((tenant_id, customer_id, channel))
        return self._conversations.get(conversation_id) if conversation_id else None

    def list_conversations(
        self, *, tenant_id: str, status: ConversationStatus | None, limit: int
    ) -> list[ConversationRecord]:
        with self._lock:
            matching = [
                value
                for value in self._conversations.values()
                if value.tenant_id == tenant_id and (status is None or value.status == status)
            ]
        ordered = sorted(matching, key=lambda value: value.updated_at, reverse=True)
        return ordered[:limit]

    def transition_conversation_status(
        self,
        *,
        conversation_id: str,
        expected_status: ConversationStatus,
        new_status: ConversationStatus,
    ) -> ConversationRecord | None:
        with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None or current.status != expected_status:
                return None
            now = _now_utc()
            updated = ConversationRecord(
                **{
                    **current.__dict__,
                    "status": new_status,
                    "updated_at": now,
                    "closed_at": now if new_status == "closed" else current.closed_at,
                }
            )
            self._conversations[conversation_id] = updated
            if new_status == "closed":
                self._open_by_key.pop((current.tenant_id, current.customer_id, current.channel), None)
            return updated

    def append_event(self, *, conversation_id: str, event_type: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self._events[conversation_id].append(
                {
                    "event_id": next(self._event_counter),
                    "event_type": event_type,
                    "payload": payload,
                    "created_at": _now_utc().isoformat(),
                }
            )

    def list_events(self, conversation_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._events.get(conversation_id, []))

    def insert_message(self, message: NewMessage) -> tuple[MessageRecord, bool]:
        with self._lock:
            conversation = self._conversations.get(message.conversation_id)
            if conversation is None:
                raise KeyError(message.conversation_id)
            if message.provider_message_id:
                existing_id = self._message_by_provider_id.get((message.tenant_id, message.provider_message_id))
                if existing_id is not None:
                    return self._messages[existing_id], False

            now = _now_utc()
            stamp = STATUS_TIMESTAMP_FIELDS.get(message.status)
            record = MessageRecord(
                message_id=f"msg_{next(self._message_counter):06d}",
                tenant_id=message.tenant_id,
                conversation_id=message.conversation_id,
                direction=message.direction,
                sender_type=message.sender_type,
                sender_id=message.sender_id,
                content=message.content,
                provider_message_id=message.provider_message_id,
                status=message.status,
                media_url=message.media_url,
                media_mime_type=message.media_mime_type,
                created_at=now,
                sent_at=now if stamp == "sent_at" else None,
                delivered_at=None,
                read_at=None,
                failed_at=now if stamp == "failed_at" else None,
            )
            self._messages[record.message_id] = record
            self._message_ids_by_conversation[record.conversation_id].append(record.message_id)
            if record.provider_message_id:
                self._message_by_provider_id[(record.tenant_id, record.provider_message_id)] = record.message_id

            update_values: dict[str, Any] = {
                "last_message_preview": _preview(record.content) if record.content else conversation.last_message_preview,
                "updated_at": now,
            }
            if record.direction == "inbound":
                update_values["last_inbound_at"] = now
            else:
                update_values["last_outbound_at"] = now
            self._conversations[conversation.conversation_id] = ConversationRecord(
                **{**conversation.__dict__, **update_values}
            )
            return record, True

    def get_message(self, message_id: str) -> MessageRecord | None:
        return self._messages.get(message_id)

    def find_message_by_provider_message_id(self, tenant_id: str, provider_message_id: str) -> MessageRecord | None:
        message_id = self._message_by_provider_id.get((tenant_id, provider_message_id))
        return self._messages.get(message_id) if message_id else None

    def list_messages(self, conversation_id: str, *, limit: int) -> list[MessageRecord]:
        with self._lock:
            message_ids = self._message_ids_by_conversation.get(conversation_id, [])
            return [self._messages[value] for value in message_ids[-limit:]]

    def compare_and_set_message_status(
        self,
        *,
        message_id: str,
        expected_status: MessageStatus,
        new_status: MessageStatus,
        changed_at: datetime,
    ) -> bool:
        with self._lock:
            current = self._messages.get(message_id)
            if current is None or current.status != expected_status:
                return False
            values: dict[str, Any] = {"status": new_status}
            stamp = STATUS_TIMESTAMP_FIELDS.get(new_status)
            if stamp is not None:
                values[stamp] = changed_at
            self._messages[message_id] = MessageRecord(**{**current.__dict__, **values})
            return True

    def count_messages_after(self, *, conversation_id: str, after: datetime | None, exclude_sender_id: str) -> int:
        with self._lock:
            message_ids = list(self._message_ids_by_conversation.get(conversation_id, []))
            return sum(
                1
                for message_id in message_ids
                if (after is None or self._messages[message_id].created_at > after)
                and self._messages[message_id].sender_id != exclude_sender_id
            )

    def upsert_participant(self, *, conversation_id: str, user_id: str) -> ParticipantRecord:
        with self._lock:
            if conversation_id not in self._conversations:
                raise KeyError(conversation_id)
            key = (conversation_id, user_id)
            existing = self._participants.get(key)
            if existing is not None and existing.active:
                return existing
            record = ParticipantRecord(conversation_id=conversation_id, user_id=user_id, active=True, joined_at=_now_utc())
            self._participants[key] = record
            return record

    def deactivate_participant(self, *, conversation_id: str, user_id: str) -> bool:
        with self._lock:
            existing = self._participants.get((conversation_id, user_id))
            if existing is None or not existing.active:
                return False
            self._participants[(conversation_id, user_id)] = ParticipantRecord(
                **{**existing.__dict__, "active": False}
            )
            return True

    def get_participant(self, *, conversation_id: str, user_id: str) -> ParticipantRecord | None:
        return self._participants.get((conversation_id, user_id))

    def list_participants(self, conversation_id: str, *, active_only: bool) -> list[ParticipantRecord]:
        with self._lock:
            return [
                value
                for (participant_conversation_id, _), value in self._participants.items()
                if participant_conversation_id == conversation_id and (value.active or not active_only)
            ]


class _ConversationRow(EngagementBase):
    __tablename__ = "conversations"
    __table_args__ = (
        # At most one non-closed conversation per (tenant, customer, channel).
        Index(
            "uq_conversations_open_key",
            "tenant_id",
            "customer_id",
            "channel",
            unique=True,
            sqlite_where=text("status != 'closed'"),
            postgresql_where=text("status != 'closed'"),
        ),
    )

    conversation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(64), ForeignKey("customers.customer_id"), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="inbox", index=True)
    external_thread_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    last_message_preview: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_inbound_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_outbound_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class _MessageRow(EngagementBase):
    __tablename__ = "messages"
    __table_args__ = (UniqueConstraint("tenant_id", "provider_message_id", name="uq_messages_tenant_provider_id"),)

    message_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.conversation_id"), nullable=False, index=True
    )
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    sender_type: Mapped[str] = mapped_column(String(16), nullable=False)
    sender_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    media_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    media_mime_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class _ConversationEventRow(EngagementBase):
    __tablename__ = "conversation_events"

    event_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.conversation_id"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ParticipantRow(EngagementBase):
    __tablename__ = "conversation_participants"

    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.conversation_id"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyConversationRepository:
    def __init__(self, database_url: str) -> None:
        self._session_factory = session_factory_for(database_url)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ParticipantRow).delete()
                session.query(_ConversationEventRow).delete()
                session.query(_MessageRow).delete()
                session.query(_ConversationRow).delete()

    def create_or_get_open_conversation(
        self,
        *,
        tenant_id: str,
        customer_id: str,
        channel: ContactChannel,
        external_thread_id: str | None,
    ) -> tuple[ConversationRecord, bool]:
        for _ in range(OPEN_CREATE_ATTEMPTS):
            with self._session() as session:
                with session.begin():
                    row = session.scalar(self._open_query(tenant_id, customer_id, channel))
                    if row is not None:
                        if row.external_thread_id is None and external_thread_id:
                            row.external_thread_id = external_thread_id
                            session.flush()
                        return self._conversation_record(row), False
            now = _now_utc()
            try:
                with self._session() as session:
                    with session.begin():
                        row = _ConversationRow(
                            conversation_id=f"conv_{uuid4().hex}",
                            tenant_id=tenant_id,
                            customer_id=customer_id,
                            channel=channel,
                            status="inbox",
                            external_thread_id=external_thread_id,
                            last_message_preview=None,
                            last_inbound_at=None,
                            last_outbound_at=None,
                            created_at=now,
                            updated_at=now,
                            closed_at=None,
                        )
                        session.add(row)
                    return self._conversation_record(row), True
            except IntegrityError:
                logger.info("open conversation insert lost a race tenant=%s customer=%s", tenant_id, customer_id)
        raise RuntimeError(f"could not open a conversation for customer {customer_id}")

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with self._session() as session:
            row = session.get(_ConversationRow, conversation_id)
            return self._conversation_record(row) if row is not None else None

    def find_open_conversation(
        self, *, tenant_id: str, customer_id: str, channel: ContactChannel
    ) -> ConversationRecord | None:
        with self._session() as session:
            row = session.scalar(self._open_query(tenant_id, customer_id, channel))
            return self._conversation_record(row) if row is not None else None

    def list_conversations(
        self, *, tenant_id: str, status: ConversationStatus | None, limit: int
    ) -> list[ConversationRecord]:
        query = select(_ConversationRow).where(_ConversationRow.tenant_id == tenant_id)
        if status is not None:
            query = query.where(_ConversationRow.status == status)
        with self._session() as session:
            rows = session.scalars(query.order_by(_ConversationRow.updated_at.desc()).limit(limit)).all()
            return [self._conversation_record(row) for row in rows]

    def transition_conversation_status(
        self,
        *,
        conversation_id: str,
        expected_status: ConversationStatus,
        new_status: ConversationStatus,
    ) -> ConversationRecord | None:
        now = _now_utc()
        values: dict[str, Any] = {"status": new_status, "updated_at": now}
        if new_status == "closed":
            values["closed_at"] = now
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_ConversationRow)
                    .where(_ConversationRow.conversation_id == conversation_id)
                    .where(_ConversationRow.status == expected_status)
                    .values(**values)
                )
                if result.rowcount != 1:
                    return None
        return self.get_conversation(conversation_id)

    def append_event(self, *, conversation_id: str, event_type: str, payload: dict[str, Any]) -> None:
        with self._session() as session:
            with session.begin():
                session.add(
                    _ConversationEventRow(
                        conversation_id=conversation_id,
                        event_type=event_type,
                        payload_json=json.dumps(payload, sort_keys=True, separators=(",", ":")),
                        created_at=_now_utc(),
                    )
                )

    def list_events(self, conversation_id: str) -> list[dict[str, Any]]:
        with self._session() as session:
            rows = session.scalars(
                select(_ConversationEventRow)
                .where(_ConversationEventRow.conversation_id == conversation_id)
                .order_by(_ConversationEventRow.event_id.asc())
            ).all()
            return [
                {
                    "event_id": row.event_id,
                    "event_type": row.event_type,
                    "payload": json.loads(row.payload_json),
                    "created_at": as_utc(row.created_at).isoformat(),
                }
                for row in rows
            ]

    def insert_message(self, message: NewMessage) -> tuple[MessageRecord, bool]:
        now = _now_utc()
        stamp = STATUS_TIMESTAMP_FIELDS.get(message.status)
        try:
            with self._session() as session:
                with session.begin():
                    conversation = session.get(_ConversationRow, message.conversation_id)
                    if conversation is None:
                        raise KeyError(message.conversation_id)
                    row = _MessageRow(
                        message_id=f"msg_{uuid4().hex}",
                        tenant_id=message.tenant_id,
                        conversation_id=message.conversation_id,
                        direction=message.direction,
                        sender_type=message.sender_type,
                        sender_id=message.sender_id,
                        content=message.content,
                        provider_message_id=message.provider_message_id,
                        status=message.status,
                        media_url=message.media_url,
                        media_mime_type=message.media_mime_type,
                        created_at=now,
                        sent_at=now if stamp == "sent_at" else None,
                        delivered_at=None,
                        read_at=None,
                        failed_at=now if stamp == "failed_at" else None,
                    )
                    session.add(row)
                    if message.content:
                        conversation.last_message_preview = _preview(message.content)
                    conversation.updated_at = now
                    if message.direction == "inbound":
                        conversation.last_inbound_at = now
                    else:
                        conversation.last_outbound_at = now
                return self._message_record(row), True
        except IntegrityError:
            if not message.provider_message_id:
                raise
            existing = self.find_message_by_provider_message_id(message.tenant_id, message.provider_message_id)
            if existing is None:
                raise
            return existing, False

    def get_message(self, message_id: str) -> MessageRecord | None:
        with self._session() as session:
            row = session.get(_MessageRow, message_id)
            return self._message_record(row) if row is not None else None

    def find_message_by_provider_message_id(self, tenant_id: str, provider_message_id: str) -> MessageRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_MessageRow)
                .where(_MessageRow.tenant_id == tenant_id)
                .where(_MessageRow.provider_message_id == provider_message_id)
            )
            return self._message_record(row) if row is not None else None

    def list_messages(self, conversation_id: str, *, limit: int) -> list[MessageRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_MessageRow)
                .where(_MessageRow.conversation_id == conversation_id)
                .order_by(_MessageRow.created_at.desc())
                .limit(limit)
            ).all()
            return [self._message_record(row) for row in reversed(rows)]

    def compare_and_set_message_status(
        self,
        *,
        message_id: str,
        expected_status: MessageStatus,
        new_status: MessageStatus,
        changed_at: datetime,
    ) -> bool:
        values: dict[str, Any] = {"status": new_status}
        stamp = STATUS_TIMESTAMP_FIELDS.get(new_status)
        if stamp is not None:
            values[stamp] = changed_at
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_MessageRow)
                    .where(_MessageRow.message_id == message_id)
                    .where(_MessageRow.status == expected_status)
                    .values(**values)
                )
                return result.rowcount == 1

    def count_messages_after(self, *, conversation_id: str, after: datetime | None, exclude_sender_id: str) -> int:
        query = (
            select(func.count())
            .select_from(_MessageRow)
            .where(_MessageRow.conversation_id == conversation_id)
            .where((_MessageRow.sender_id.is_(None)) | (_MessageRow.sender_id != exclude_sender_id))
        )
        if after is not None:
            query = query.where(_MessageRow.created_at > after)
        with self._session() as session:
            return int(session.scalar(query) or 0)

    def upsert_participant(self, *, conversation_id: str, user_id: str) -> ParticipantRecord:
        try:
            with self._session() as session:
                with session.begin():
                    if session.get(_ConversationRow, conversation_id) is None:
                        raise KeyError(conversation_id)
                    row = session.get(_ParticipantRow, (conversation_id, user_id))
                    if row is None:
                        row = _ParticipantRow(
                            conversation_id=conversation_id,
                            user_id=user_id,
                            active=True,
                            joined_at=_now_utc(),
                        )
                        session.add(row)
                    elif not row.active:
                        row.active = True
                        row.joined_at = _now_utc()
                return self._participant_record(row)
        except IntegrityError:
            existing = self.get_participant(conversation_id=conversation_id, user_id=user_id)
            if existing is None:
                raise
            return existing

    def deactivate_participant(self, *, conversation_id: str, user_id: str) -> bool:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_ParticipantRow)
                    .where(_ParticipantRow.conversation_id == conversation_id)
                    .where(_ParticipantRow.user_id == user_id)
                    .where(_ParticipantRow.active.is_(True))
                    .values(active=False)
                )
                return result.rowcount == 1

    def get_participant(self, *, conversation_id: str, user_id: str) -> ParticipantRecord | None:
        with self._session() as session:
            row = session.get(_ParticipantRow, (conversation_id, user_id))
            return self._participant_record(row) if row is not None else None

    def list_participants(self, conversation_id: str, *, active_only: bool) -> list[ParticipantRecord]:
        query = select(_ParticipantRow).where(_ParticipantRow.conversation_id == conversation_id)
        if active_only:
            query = query.where(_ParticipantRow.active.is_(True))
        with self._session() as session:
            rows = session.scalars(query.order_by(_ParticipantRow.joined_at.asc())).all()
            return [self._participant_record(row) for row in rows]

    @staticmethod
    def _open_query(tenant_id: str, customer_id: str, channel: str):
        return (
            select(_ConversationRow)
            .where(_ConversationRow.tenant_id == tenant_id)
            .where(_ConversationRow.customer_id == customer_id)
            .where(_ConversationRow.channel == channel)
            .where(_ConversationRow.status != "closed")
        )

    @staticmethod
    def _conversation_record(row: _ConversationRow) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=row.conversation_id,
            tenant_id=row.tenant_id,
            customer_id=row.customer_id,
            channel=row.channel,  # type: ignore[arg-type]
            status=row.status,  # type: ignore[arg-type]
            external_thread_id=row.external_thread_id,
            last_message_preview=row.last_message_preview,
            last_inbound_at=as_utc(row.last_inbound_at),
            last_outbound_at=as_utc(row.last_outbound_at),
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
            closed_at=as_utc(row.closed_at),
        )

    @staticmethod
    def _message_record(row: _MessageRow) -> MessageRecord:
        return MessageRecord(
            message_id=row.message_id,
            tenant_id=row.tenant_id,
            conversation_id=row.conversation_id,
            direction=row.direction,  # type: ignore[arg-type]
            sender_type=row.sender_type,  # type: ignore[arg-type]
            sender_id=row.sender_id,
            content=row.content,
            provider_message_id=row.provider_message_id,
            status=row.status,  # type: ignore[arg-type]
            media_url=row.media_url,
            media_mime_type=row.media_mime_type,
            created_at=as_utc(row.created_at),
            sent_at=as_utc(row.sent_at),
            delivered_at=as_utc(row.delivered_at),
            read_at=as_utc(row.read_at),
            failed_at=as_utc(row.failed_at),
        )

    @staticmethod
    def _participant_record(row: _ParticipantRow) -> ParticipantRecord:
        return ParticipantRecord(
            conversation_id=row.conversation_id,
            user_id=row.user_id,
            active=row.active,
            joined_at=as_utc(row.joined_at),
        )


def create_conversation_repository(*, backend: str, database_url: str) -> ConversationRepository:
    if uses_sql_backend(backend):
        return SqlAlchemyConversationRepository(database_url)
    return InMemoryConversationRepository()


class ConversationRouter:
    def __init__(self, *, repository: ConversationRepository) -> None:
        self._repository = repository

    def reset(self) -> None:
        self._repository.reset()

    def route_inbound(
        self,
        tenant_id: str,
        customer_id: str,
        channel: ContactChannel,
        *,
        external_thread_id: str | None = None,
    ) -> tuple[ConversationRecord, bool]:
        conversation, created = self._repository.create_or_get_open_conversation(
            tenant_id=tenant_id,
            customer_id=customer_id,
            channel=channel,
            external_thread_id=external_thread_id,
        )
        if created:
            logger.info(
                "conversation opened tenant=%s conversation=%s channel=%s",
                tenant_id,
                conversation.conversation_id,
                channel,
            )
        return conversation, created

    def get_conversation(self, tenant_id: str, conversation_id: str) -> ConversationRecord:
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is None or conversation.tenant_id != tenant_id:
            raise NotFoundError(f"conversation not found: {conversation_id}")
        return conversation

    def change_status(
        self, tenant_id: str, conversation_id: str, new_status: ConversationStatus
    ) -> ConversationRecord:
        current = self.get_conversation(tenant_id, conversation_id)
        while True:
            if current.status == new_status:
                return current
            if current.status == "closed":
                raise PreconditionFailedError(f"conversation {conversation_id} is closed and cannot be reopened")
            updated = self._repository.transition_conversation_status(
                conversation_id=conversation_id,
                expected_status=current.status,
                new_status=new_status,
            )
            if updated is not None:
                self._repository.append_event(
                    conversation_id=conversation_id,
                    event_type="status_changed",
                    payload={"from": current.status, "to": new_status},
                )
                return updated
            current = self.get_conversation(tenant_id, conversation_id)

    def list_conversations(
        self, tenant_id: str, *, status: ConversationStatus | None = None, limit: int = 100
    ) -> ConversationListResponse:
        records = self._repository.list_conversations(tenant_id=tenant_id, status=status, limit=limit)
        return ConversationListResponse(items=[self.to_item(value) for value in records])

    def get_detail(self, tenant_id: str, conversation_id: str, *, limit: int = 500) -> ConversationDetailResponse:
        conversation = self.get_conversation(tenant_id, conversation_id)
        messages = self._repository.list_messages(conversation_id, limit=limit)
        return ConversationDetailResponse(
            conversation=self.to_item(conversation),
            messages=[self.to_message_item(value) for value in messages],
        )

    def add_participant(self, tenant_id: str, conversation_id: str, user_id: str) -> ParticipantRecord:
        self.get_conversation(tenant_id, conversation_id)
        participant = self._repository.upsert_participant(conversation_id=conversation_id, user_id=user_id)
        self._repository.append_event(
            conversation_id=conversation_id,
            event_type="participant_added",
            payload={"user_id": user_id},
        )
        return participant

    def remove_participant(self, tenant_id: str, conversation_id: str, user_id: str) -> bool:
        self.get_conversation(tenant_id, conversation_id)
        removed = self._repository.deactivate_participant(conversation_id=conversation_id, user_id=user_id)
        if removed:
            self._repository.append_event(
                conversation_id=conversation_id,
                event_type="participant_removed",
                payload={"user_id": user_id},
            )
        return removed

    def list_participants(self, tenant_id: str, conversation_id: str) -> ParticipantListResponse:
        self.get_conversation(tenant_id, conversation_id)
        participants = self._repository.list_participants(conversation_id, active_only=False)
        return ParticipantListResponse(
            conversation_id=conversation_id,
            items=[
                ParticipantItem(user_id=value.user_id, active=value.active, joined_at=value.joined_at)
                for value in participants
            ],
        )

    @staticmethod
    def to_item(record: ConversationRecord) -> ConversationItem:
        return ConversationItem(
            conversation_id=record.conversation_id,
            customer_id=record.customer_id,
            channel=record.channel,
            status=record.status,
            external_thread_id=record.external_thread_id,
            last_message_preview=record.last_message_preview,
            last_inbound_at=record.last_inbound_at,
            last_outbound_at=record.last_outbound_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
            closed_at=record.closed_at,
        )

    @staticmethod
    def to_message_item(record: MessageRecord) -> MessageItem:
        return MessageItem(
            message_id=record.message_id,
            direction=record.direction,
            sender_type=record.sender_type,
            sender_id=record.sender_id,
            content=record.content,
            status=record.status,
            provider_message_id=record.provider_message_id,
            media_url=record.media_url,
            media_mime_type=record.media_mime_type,
            created_at=record.created_at,
            sent_at=record.sent_at,
            delivered_at=record.delivered_at,
            read_at=record.read_at,
            failed_at=record.failed_at,
        )
