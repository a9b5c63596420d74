from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, ForeignKey, Integer, String, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from .conversations import ConversationRepository
from .db import EngagementBase, as_utc, session_factory_for, uses_sql_backend
from .errors import NotFoundError
from .events import MessageCreatedEvent
from .models import MarkAllReadResponse, UnreadCountItem, UnreadCountListResponse

logger = logging.getLogger(__name__)

INCREMENT_ATTEMPTS = 3


@dataclass(frozen=True)
class UnreadCountRecord:
    tenant_id: str
    user_id: str
    conversation_id: str
    unread_count: int
    last_read_at: datetime | None
    last_message_id: str | None
    updated_at: datetime


class UnreadCountRepository(Protocol):
    def reset(self) -> None: ...

    def increment_if_unread(
        self,
        *,
        tenant_id: str,
        user_id: str,
        conversation_id: str,
        message_id: str,
        message_created_at: datetime,
    ) -> bool: ...

    def mark_read(self, *, tenant_id: str, user_id: str, conversation_id: str, read_at: datetime) -> UnreadCountRecord: ...

    def set_count(self, *, tenant_id: str, user_id: str, conversation_id: str, unread_count: int) -> UnreadCountRecord: ...

    def get(self, *, user_id: str, conversation_id: str) -> UnreadCountRecord | None: ...

    def list_for_user(self, *, tenant_id: str, user_id: str) -> list[UnreadCountRecord]: ...

    def delete(self, *, user_id: str, conversation_id: str) -> bool: ...

    def delete_empty_before(self, tenant_id: str, cutoff: datetime) -> int: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryUnreadCountRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counts: dict[tuple[str, str], UnreadCountRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()

    def increment_if_unread(
        self,
        *,
        tenant_id: str,
        user_id: str,
        conversation_id: str,
        message_id: str,
        message_created_at: datetime,
    ) -> bool:
        key = (user_id, conversation_id)
        with self._lock:
            current = self._counts.get(key)
            if current is None:
                self._counts[key] = UnreadCountRecord(
                    tenant_id=tenant_id,
                    user_id=user_id,
                    conversation_id=conversation_id,
                    unread_count=1,
                    last_read_at=None,
                    last_message_id=message_id,
                    updated_at=_now_utc(),
                )
                return True
            if current.last_read_at is not None and message_created_at <= current.last_read_at:
                return False
            self._counts[key] = UnreadCountRecord(
                **{
                    **current.__dict__,
                    "unread_count": current.unread_count + 1,
                    "last_message_id": message_id,
                    "updated_at": _now_utc(),
                }
            )
            return True

    def mark_read(self, *, tenant_id: str, user_id: str, conversation_id: str, read_at: datetime) -> UnreadCountRecord:
        with self._lock:
            current = self._counts.get((user_id, conversation_id))
            record = UnreadCountRecord(
                tenant_id=tenant_id,
                user_id=user_id,
                conversation_id=conversation_id,
                unread_count=0,
                last_read_at=read_at,
                last_message_id=current.last_message_id if current else None,
                updated_at=read_at,
            )
            self._counts[(user_id, conversation_id)] = record
            return record

    def set_count(self, *, tenant_id: str, user_id: str, conversation_id: str, unread_count: int) -> UnreadCountRecord:
        with self._lock:
            current = self._counts.get((user_id, conversation_id))
            record = UnreadCountRecord(
                tenant_id=tenant_id,
                user_id=user_id,
                conversation_id=conversation_id,
                unread_count=unread_count,
                last_read_at=current.last_read_at if current else None,
                last_message_id=current.last_message_id if current else None,
                updated_at=_now_utc(),
            )
            self._counts[(user_id, conversation_id)] = record
            return record

    def get(self, *, user_id: str, conversation_id: str) -> UnreadCountRecord | None:
        return self._counts.get((user_id, conversation_id))

    def list_for_user(self, *, tenant_id: str, user_id: str) -> list[UnreadCountRecord]:
        with self._lock:
            values = [
                value for value in self._counts.values() if value.tenant_id == tenant_id and value.user_id == user_id
            ]
        return sorted(values, key=lambda value: value.updated_at, reverse=True)

    def delete(self, *, user_id: str, conversation_id: str) -> bool:
        with self._lock:
            return self._counts.pop((user_id, conversation_id), None) is not None

    def delete_empty_before(self, tenant_id: str, cutoff: datetime) -> int:
        with self._lock:
            stale = [
                key
                for key, value in self._counts.items()
                if value.tenant_id == tenant_id and value.unread_count == 0 and value.updated_at < cutoff
            ]
            for key in stale:
                del self._counts[key]
            return len(stale)


class _UnreadCountRow(EngagementBase):
    __tablename__ = "unread_message_counts"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.conversation_id"), primary_key=True
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyUnreadCountRepository:
    def __init__(self, database_url: str) -> None:
        self._session_factory = session_factory_for(database_url)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_UnreadCountRow).delete()

    def increment_if_unread(
        self,
        *,
        tenant_id: str,
        user_id: str,
        conversation_id: str,
        message_id: str,
        message_created_at: datetime,
    ) -> bool:
        for _ in range(INCREMENT_ATTEMPTS):
            try:
                with self._session() as session:
                    with session.begin():
                        result = session.execute(
                            update(_UnreadCountRow)
                            .where(_UnreadCountRow.user_id == user_id)
                            .where(_UnreadCountRow.conversation_id == conversation_id)
                            .where(
                                or_(
                                    _UnreadCountRow.last_read_at.is_(None),
                                    _UnreadCountRow.last_read_at < message_created_at,
                                )
                            )
                            .values(
                                unread_count=_UnreadCountRow.unread_count + 1,
                                last_message_id=message_id,
                                updated_at=_now_utc(),
                            )
                        )
                        if result.rowcount == 1:
                            return True
                        if session.get(_UnreadCountRow, (user_id, conversation_id)) is not None:
                            return False
                        session.add(
                            _UnreadCountRow(
                                user_id=user_id,
                                conversation_id=conversation_id,
                                tenant_id=tenant_id,
                                unread_count=1,
                                last_read_at=None,
                                last_message_id=message_id,
                                updated_at=_now_utc(),
                            )
                        )
                    return True
            except IntegrityError:
                logger.debug("unread counter insert raced user=%s conversation=%s", user_id, conversation_id)
        raise RuntimeError(f"could not increment unread counter for {user_id}/{conversation_id}")

    def mark_read(self, *, tenant_id: str, user_id: str, conversation_id: str, read_at: datetime) -> UnreadCountRecord:
        return self._write(tenant_id, user_id, conversation_id, unread_count=0, read_at=read_at)

    def set_count(self, *, tenant_id: str, user_id: str, conversation_id: str, unread_count: int) -> UnreadCountRecord:
        return self._write(tenant_id, user_id, conversation_id, unread_count=unread_count, read_at=None)

    def _write(
        self,
        tenant_id: str,
        user_id: str,
        conversation_id: str,
        *,
        unread_count: int,
        read_at: datetime | None,
    ) -> UnreadCountRecord:
        now = read_at or _now_utc()
        for _ in range(INCREMENT_ATTEMPTS):
            try:
                with self._session() as session:
                    with session.begin():
                        row = session.get(_UnreadCountRow, (user_id, conversation_id))
                        if row is None:
                            row = _UnreadCountRow(
                                user_id=user_id,
                                conversation_id=conversation_id,
                                tenant_id=tenant_id,
                                unread_count=unread_count,
                                last_read_at=read_at,
                                last_message_id=None,
                                updated_at=now,
                            )
                            session.add(row)
                        else:
                            row.unread_count = unread_count
                            if read_at is not None:
                                row.last_read_at = read_at
                            row.updated_at = now
                        session.flush()
                        return self._record(row)
            except IntegrityError:
                logger.debug("unread counter write raced user=%s conversation=%s", user_id, conversation_id)
        raise RuntimeError(f"could not write unread counter for {user_id}/{conversation_id}")

    def get(self, *, user_id: str, conversation_id: str) -> UnreadCountRecord | None:
        with self._session() as session:
            row = session.get(_UnreadCountRow, (user_id, conversation_id))
            return self._record(row) if row is not None else None

    def list_for_user(self, *, tenant_id: str, user_id: str) -> list[UnreadCountRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_UnreadCountRow)
                .where(_UnreadCountRow.tenant_id == tenant_id)
                .where(_UnreadCountRow.user_id == user_id)
                .order_by(_UnreadCountRow.updated_at.desc())
            ).all()
            return [self._record(row) for row in rows]

    def delete(self, *, user_id: str, conversation_id: str) -> bool:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    delete(_UnreadCountRow)
                    .where(_UnreadCountRow.user_id == user_id)
                    .where(_UnreadCountRow.conversation_id == conversation_id)
                )
                return result.rowcount == 1

    def delete_empty_before(self, tenant_id: str, cutoff: datetime) -> int:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    delete(_UnreadCountRow)
                    .where(_UnreadCountRow.tenant_id == tenant_id)
                    .where(_UnreadCountRow.unread_count == 0)
                    .where(_UnreadCountRow.updated_at < cutoff)
                )
                return int(result.rowcount or 0)

    @staticmethod
    def _record(row: _UnreadCountRow) -> UnreadCountRecord:
        return UnreadCountRecord(
            tenant_id=row.tenant_id,
            user_id=row.user_id,
            conversation_id=row.conversation_id,
            unread_count=row.unread_count,
            last_read_at=as_utc(row.last_read_at),
            last_message_id=row.last_message_id,
            updated_at=as_utc(row.updated_at),
        )


def create_unread_count_repository(*, backend: str, database_url: str) -> UnreadCountRepository:
    if uses_sql_backend(backend):
        return SqlAlchemyUnreadCountRepository(database_url)
    return InMemoryUnreadCountRepository()


class UnreadCounterMaintainer:
    def __init__(self, *, repository: UnreadCountRepository, conversations: ConversationRepository) -> None:
        self._repository = repository
        self._conversations = conversations

    def reset(self) -> None:
        self._repository.reset()

    def handle_message_created(self, event: MessageCreatedEvent) -> None:
        message = event.message
        for participant in self._conversations.list_participants(event.conversation_id, active_only=True):
            if message.sender_id is not None and participant.user_id == message.sender_id:
                continue
            if message.created_at <= participant.joined_at:
                continue
            self._repository.increment_if_unread(
                tenant_id=event.tenant_id,
                user_id=participant.user_id,
                conversation_id=event.conversation_id,
                message_id=message.message_id,
                message_created_at=message.created_at,
            )

    def mark_as_read(self, tenant_id: str, conversation_id: str, user_id: str) -> UnreadCountRecord:
        self._require_conversation(tenant_id, conversation_id)
        return self._repository.mark_read(
            tenant_id=tenant_id,
            user_id=user_id,
            conversation_id=conversation_id,
            read_at=_now_utc(),
        )

    def mark_all_as_read(self, tenant_id: str, user_id: str) -> MarkAllReadResponse:
        marked = 0
        for record in self._repository.list_for_user(tenant_id=tenant_id, user_id=user_id):
            if record.unread_count == 0:
                continue
            self._repository.mark_read(
                tenant_id=tenant_id,
                user_id=user_id,
                conversation_id=record.conversation_id,
                read_at=_now_utc(),
            )
            marked += 1
        return MarkAllReadResponse(user_id=user_id, conversations_marked=marked)

    def recalculate(self, tenant_id: str, user_id: str, conversation_id: str) -> int:
        """Rebuild the counter from stored messages; the incremental value must agree."""
        self._require_conversation(tenant_id, conversation_id)
        participant = self._conversations.get_participant(conversation_id=conversation_id, user_id=user_id)
        current = self._repository.get(user_id=user_id, conversation_id=conversation_id)
        if participant is None or not participant.active:
            if current is not None and current.unread_count != 0:
                self._repository.set_count(tenant_id=tenant_id, user_id=user_id, conversation_id=conversation_id, unread_count=0)
            return 0

        after = participant.joined_at
        if current is not None and current.last_read_at is not None and current.last_read_at > after:
            after = current.last_read_at
        unread = self._conversations.count_messages_after(
            conversation_id=conversation_id,
            after=after,
            exclude_sender_id=user_id,
        )
        if current is None or current.unread_count != unread:
            logger.info(
                "unread counter corrected user=%s conversation=%s stored=%s actual=%d",
                user_id,
                conversation_id,
                current.unread_count if current else None,
                unread,
            )
        self._repository.set_count(tenant_id=tenant_id, user_id=user_id, conversation_id=conversation_id, unread_count=unread)
        return unread

    def get_unread_count(self, tenant_id: str, user_id: str, conversation_id: str) -> int:
        self._require_conversation(tenant_id, conversation_id)
        record = self._repository.get(user_id=user_id, conversation_id=conversation_id)
        return record.unread_count if record is not None else 0

    def list_unread_counts(self, tenant_id: str, user_id: str, *, only_unread: bool = False) -> UnreadCountListResponse:
        records = self._repository.list_for_user(tenant_id=tenant_id, user_id=user_id)
        if only_unread:
            records = [value for value in records if value.unread_count > 0]
        return UnreadCountListResponse(
            user_id=user_id,
            total_unread=sum(value.unread_count for value in records),
            items=[self.to_item(value) for value in records],
        )

    def total_unread(self, tenant_id: str, user_id: str) -> int:
        return sum(value.unread_count for value in self._repository.list_for_user(tenant_id=tenant_id, user_id=user_id))

    def forget_participant(self, conversation_id: str, user_id: str) -> None:
        self._repository.delete(user_id=user_id, conversation_id=conversation_id)

    def cleanup_empty_counters(self, tenant_id: str, *, older_than_days: int = 30) -> int:
        removed = self._repository.delete_empty_before(tenant_id, _now_utc() - timedelta(days=older_than_days))
        if removed:
            logger.info("removed %d empty unread counters tenant=%s", removed, tenant_id)
        return removed

    def _require_conversation(self, tenant_id: str, conversation_id: str) -> None:
        conversation = self._conversations.get_conversation(conversation_id)
        if conversation is None or conversation.tenant_id != tenant_id:
            raise NotFoundError(f"conversation not found: {conversation_id}")

    @staticmethod
    def to_item(record: UnreadCountRecord) -> UnreadCountItem:
        return UnreadCountItem(
            user_id=record.user_id,
            conversation_id=record.conversation_id,
            unread_count=record.unread_count,
            last_read_at=record.last_read_at,
            updated_at=record.updated_at,
        )
