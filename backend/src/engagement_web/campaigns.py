from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, String, Text, UniqueConstraint, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from .conversations import ConversationRepository, ConversationRouter, NewMessage
from .customers import CustomerRepository
from .db import EngagementBase, as_utc, session_factory_for, uses_sql_backend
from .errors import MalformedPayloadError, NotFoundError, PreconditionFailedError
from .events import EventPublisher, MessageCreatedEvent
from .models import (
    CampaignContactItem,
    CampaignContactListResponse,
    CampaignContactStatus,
    CampaignDispatchResponse,
    CampaignItem,
    CampaignStatsResponse,
    MessageStatus,
)
from .outbound import OutboundSender

logger = logging.getLogger(__name__)

CAMPAIGN_CONTACT_STATUSES: tuple[CampaignContactStatus, ...] = (
    "pending",
    "sent",
    "delivered",
    "read",
    "responded",
    "failed",
    "excluded",
)
# Contacts still waiting on the customer; an inbound reply can close any of them.
ACTIVE_CONTACT_STATUSES: frozenset[str] = frozenset({"pending", "sent", "delivered", "read"})


@dataclass(frozen=True)
class CampaignRecord:
    campaign_id: str
    tenant_id: str
    name: str
    message_text: str
    created_at: datetime


@dataclass(frozen=True)
class CampaignContactRecord:
    contact_id: str
    tenant_id: str
    campaign_id: str
    customer_id: str
    status: CampaignContactStatus
    error_message: str | None
    provider_message_id: str | None
    sent_at: datetime | None
    delivered_at: datetime | None
    read_at: datetime | None
    responded_at: datetime | None
    failed_at: datetime | None
    excluded_at: datetime | None
    created_at: datetime
    updated_at: datetime


class CampaignRepository(Protocol):
    def reset(self) -> None: ...

    def create_campaign(self, *, tenant_id: str, name: str, message_text: str) -> CampaignRecord: ...

    def get_campaign(self, campaign_id: str) -> CampaignRecord | None: ...

    def add_contact(self, *, tenant_id: str, campaign_id: str, customer_id: str) -> tuple[CampaignContactRecord, bool]: ...

    def get_contact(self, contact_id: str) -> CampaignContactRecord | None: ...

    def list_contacts(
        self, campaign_id: str, *, status: CampaignContactStatus | None, limit: int | None = None
    ) -> list[CampaignContactRecord]: ...

    def list_contacts_for_customer(self, *, tenant_id: str, customer_id: str) -> list[CampaignContactRecord]: ...

    def find_contact_by_provider_message_id(
        self, tenant_id: str, provider_message_id: str
    ) -> CampaignContactRecord | None: ...

    def transition_contact(
        self,
        *,
        contact_id: str,
        expected_status: CampaignContactStatus,
        new_status: CampaignContactStatus,
        values: dict[str, Any],
    ) -> CampaignContactRecord | None: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryCampaignRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._campaign_counter = count(1)
        self._contact_counter = count(1)
        self._campaigns: dict[str, CampaignRecord] = {}
        self._contacts: dict[str, CampaignContactRecord] = {}
        self._contact_by_pair: dict[tuple[str, str], str] = {}

    def reset(self) -> None:
        with self._lock:
            self._campaign_counter = count(1)
            self._contact_counter = count(1)
            self._campaigns.clear()
            self._contacts.clear()
            self._contact_by_pair.clear()

    def create_campaign(self, *, tenant_id: str, name: str, message_text: str) -> CampaignRecord:
        with self._lock:
            record = CampaignRecord(
                campaign_id=f"camp_{next(self._campaign_counter):06d}",
                tenant_id=tenant_id,
                name=name,
                message_text=message_text,
                created_at=_now_utc(),
            )
            self._campaigns[record.campaign_id] = record
            return record

    def get_campaign(self, campaign_id: str) -> CampaignRecord | None:
        return self._campaigns.get(campaign_id)

    def add_contact(self, *, tenant_id: str, campaign_id: str, customer_id: str) -> tuple[CampaignContactRecord, bool]:
        with self._lock:
            existing_id = self._contact_by_pair.get((campaign_id, customer_id))
            if existing_id is not None:
                return self._contacts[existing_id], False
            now = _now_utc()
            record = CampaignContactRecord(
                contact_id=f"ccontact_{next(self._contact_counter):06d}",
                tenant_id=tenant_id,
                campaign_id=campaign_id,
                customer_id=customer_id,
                status="pending",
                error_message=None,
                provider_message_id=None,
                sent_at=None,
                delivered_at=None,
                read_at=None,
                responded_at=None,
                failed_at=None,
                excluded_at=None,
                created_at=now,
                updated_at=now,
            )
            self._contacts[record.contact_id] = record
            self._contact_by_pair[(campaign_id, customer_id)] = record.contact_id
            return record, True

    def get_contact(self, contact_id: str) -> CampaignContactRecord | None:
        return self._contacts.get(contact_id)

    def list_contacts(
        self, campaign_id: str, *, status: CampaignContactStatus | None, limit: int | None = None
    ) -> list[CampaignContactRecord]:
        with self._lock:
            matching = [
                value
                for value in self._contacts.values()
                if value.campaign_id == campaign_id and (status is None or value.status == status)
            ]
        ordered = sorted(matching, key=lambda value: value.created_at)
        return ordered[:limit] if limit is not None else ordered

    def list_contacts_for_customer(self, *, tenant_id: str, customer_id: str) -> list[CampaignContactRecord]:
        with self._lock:
            return [
                value
                for value in self._contacts.values()
                if value.tenant_id == tenant_id and value.customer_id == customer_id
            ]

    def find_contact_by_provider_message_id(
        self, tenant_id: str, provider_message_id: str
    ) -> CampaignContactRecord | None:
        with self._lock:
            for value in self._contacts.values():
                if value.tenant_id == tenant_id and value.provider_message_id == provider_message_id:
                    return value
        return None

    def transition_contact(
        self,
        *,
        contact_id: str,
        expected_status: CampaignContactStatus,
        new_status: CampaignContactStatus,
        values: dict[str, Any],
    ) -> CampaignContactRecord | None:
        with self._lock:
            current = self._contacts.get(contact_id)
            if current is None or current.status != expected_status:
                return None
            updated = CampaignContactRecord(
                **{**current.__dict__, **values, "status": new_status, "updated_at": _now_utc()}
            )
            self._contacts[contact_id] = updated
            return updated


class _CampaignRow(EngagementBase):
    __tablename__ = "campaigns"

    campaign_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    message_text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _CampaignContactRow(EngagementBase):
    __tablename__ = "campaign_contacts"
    __table_args__ = (UniqueConstraint("campaign_id", "customer_id", name="uq_campaign_contacts_campaign_customer"),)

    contact_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    campaign_id: Mapped[str] = mapped_column(String(64), ForeignKey("campaigns.campaign_id"), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(64), ForeignKey("customers.customer_id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True, index=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    excluded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyCampaignRepository:
    def __init__(self, database_url: str) -> None:
        self._session_factory = session_factory_for(database_url)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_CampaignContactRow).delete()
                session.query(_CampaignRow).delete()

    def create_campaign(self, *, tenant_id: str, name: str, message_text: str) -> CampaignRecord:
        with self._session() as session:
            with session.begin():
                row = _CampaignRow(
                    campaign_id=f"camp_{uuid4().hex}",
                    tenant_id=tenant_id,
                    name=name,
                    message_text=message_text,
                    created_at=_now_utc(),
                )
                session.add(row)
            return self._campaign_record(row)

    def get_campaign(self, campaign_id: str) -> CampaignRecord | None:
        with self._session() as session:
            row = session.get(_CampaignRow, campaign_id)
            return self._campaign_record(row) if row is not None else None

    def add_contact(self, *, tenant_id: str, campaign_id: str, customer_id: str) -> tuple[CampaignContactRecord, bool]:
        existing = self._find_pair(campaign_id, customer_id)
        if existing is not None:
            return existing, False
        now = _now_utc()
        try:
            with self._session() as session:
                with session.begin():
                    row = _CampaignContactRow(
                        contact_id=f"ccontact_{uuid4().hex}",
                        tenant_id=tenant_id,
                        campaign_id=campaign_id,
                        customer_id=customer_id,
                        status="pending",
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(row)
                return self._contact_record(row), True
        except IntegrityError:
            existing = self._find_pair(campaign_id, customer_id)
            if existing is None:
                raise
            return existing, False

    def get_contact(self, contact_id: str) -> CampaignContactRecord | None:
        with self._session() as session:
            row = session.get(_CampaignContactRow, contact_id)
            return self._contact_record(row) if row is not None else None

    def list_contacts(
        self, campaign_id: str, *, status: CampaignContactStatus | None, limit: int | None = None
    ) -> list[CampaignContactRecord]:
        query = select(_CampaignContactRow).where(_CampaignContactRow.campaign_id == campaign_id)
        if status is not None:
            query = query.where(_CampaignContactRow.status == status)
        query = query.order_by(_CampaignContactRow.created_at.asc())
        if limit is not None:
            query = query.limit(limit)
        with self._session() as session:
            return [self._contact_record(row) for row in session.scalars(query).all()]

    def list_contacts_for_customer(self, *, tenant_id: str, customer_id: str) -> list[CampaignContactRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_CampaignContactRow)
                .where(_CampaignContactRow.tenant_id == tenant_id)
                .where(_CampaignContactRow.customer_id == customer_id)
            ).all()
            return [self._contact_record(row) for row in rows]

    def find_contact_by_provider_message_id(
        self, tenant_id: str, provider_message_id: str
    ) -> CampaignContactRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_CampaignContactRow)
                .where(_CampaignContactRow.tenant_id == tenant_id)
                .where(_CampaignContactRow.provider_message_id == provider_message_id)
            )
            return self._contact_record(row) if row is not None else None

    def transition_contact(
        self,
        *,
        contact_id: str,
        expected_status: CampaignContactStatus,
        new_status: CampaignContactStatus,
        values: dict[str, Any],
    ) -> CampaignContactRecord | None:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_CampaignContactRow)
                    .where(_CampaignContactRow.contact_id == contact_id)
                    .where(_CampaignContactRow.status == expected_status)
                    .values(**values, status=new_status, updated_at=_now_utc())
                )
                if result.rowcount != 1:
                    return None
        return self.get_contact(contact_id)

    def _find_pair(self, campaign_id: str, customer_id: str) -> CampaignContactRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_CampaignContactRow)
                .where(_CampaignContactRow.campaign_id == campaign_id)
                .where(_CampaignContactRow.customer_id == customer_id)
            )
            return self._contact_record(row) if row is not None else None

    @staticmethod
    def _campaign_record(row: _CampaignRow) -> CampaignRecord:
        return CampaignRecord(
            campaign_id=row.campaign_id,
            tenant_id=row.tenant_id,
            name=row.name,
            message_text=row.message_text,
            created_at=as_utc(row.created_at),
        )

    @staticmethod
    def _contact_record(row: _CampaignContactRow) -> CampaignContactRecord:
        return CampaignContactRecord(
            contact_id=row.contact_id,
            tenant_id=row.tenant_id,
            campaign_id=row.campaign_id,
            customer_id=row.customer_id,
            status=row.status,  # type: ignore[arg-type]
            error_message=row.error_message,
            provider_message_id=row.provider_message_id,
            sent_at=as_utc(row.sent_at),
            delivered_at=as_utc(row.delivered_at),
            read_at=as_utc(row.read_at),
            responded_at=as_utc(row.responded_at),
            failed_at=as_utc(row.failed_at),
            excluded_at=as_utc(row.excluded_at),
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )


def create_campaign_repository(*, backend: str, database_url: str) -> CampaignRepository:
    if uses_sql_backend(backend):
        return SqlAlchemyCampaignRepository(database_url)
    return InMemoryCampaignRepository()


def _response_priority(contact: CampaignContactRecord) -> tuple[bool, datetime, datetime]:
    # Most recently sent first; never-sent contacts only win when nothing was sent.
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return (contact.sent_at is not None, contact.sent_at or epoch, contact.created_at)


class CampaignContactService:
    def __init__(
        self,
        *,
        repository: CampaignRepository,
        customers: CustomerRepository,
        router: ConversationRouter,
        conversations: ConversationRepository,
        publisher: EventPublisher | None = None,
    ) -> None:
        self._repository = repository
        self._customers = customers
        self._router = router
        self._conversations = conversations
        self._publisher = publisher

    def reset(self) -> None:
        self._repository.reset()

    def create_campaign(self, tenant_id: str, *, name: str, message_text: str) -> CampaignRecord:
        return self._repository.create_campaign(tenant_id=tenant_id, name=name, message_text=message_text)

    def get_campaign(self, tenant_id: str, campaign_id: str) -> CampaignRecord:
        campaign = self._repository.get_campaign(campaign_id)
        if campaign is None or campaign.tenant_id != tenant_id:
            raise NotFoundError(f"campaign not found: {campaign_id}")
        return campaign

    def add_contact(self, tenant_id: str, campaign_id: str, customer_id: str) -> CampaignContactRecord:
        self.get_campaign(tenant_id, campaign_id)
        customer = self._customers.get(customer_id)
        if customer is None or customer.tenant_id != tenant_id:
            raise NotFoundError(f"customer not found: {customer_id}")
        contact, _ = self._repository.add_contact(tenant_id=tenant_id, campaign_id=campaign_id, customer_id=customer_id)
        return contact

    def get_contact(self, tenant_id: str, contact_id: str) -> CampaignContactRecord:
        contact = self._repository.get_contact(contact_id)
        if contact is None or contact.tenant_id != tenant_id:
            raise NotFoundError(f"campaign contact not found: {contact_id}")
        return contact

    def mark_sent(self, tenant_id: str, contact_id: str, provider_message_id: str | None) -> CampaignContactRecord:
        record, _ = self._transition(
            tenant_id,
            contact_id,
            target="sent",
            allowed_from={"pending"},
            values={"sent_at": _now_utc(), "provider_message_id": provider_message_id, "error_message": None},
        )
        return record

    def mark_failed(self, tenant_id: str, contact_id: str, error_message: str) -> CampaignContactRecord:
        record, _ = self._transition(
            tenant_id,
            contact_id,
            target="failed",
            allowed_from={"pending", "sent"},
            values={"failed_at": _now_utc(), "error_message": error_message},
        )
        return record

    def exclude(self, tenant_id: str, contact_id: str, reason: str) -> CampaignContactRecord:
        normalized = reason.strip()
        if not normalized:
            raise MalformedPayloadError("an exclusion reason is required")
        record, changed = self._transition(
            tenant_id,
            contact_id,
            target="excluded",
            allowed_from=set(ACTIVE_CONTACT_STATUSES),
            values={"excluded_at": _now_utc(), "error_message": f"Excluded: {normalized}"},
        )
        if changed:
            logger.info("campaign contact excluded contact=%s", contact_id)
        return record

    def reinclude(self, tenant_id: str, contact_id: str) -> CampaignContactRecord:
        record, _ = self._transition(
            tenant_id,
            contact_id,
            target="pending",
            allowed_from={"excluded"},
            values={"error_message": None},
        )
        return record

    def retry(self, tenant_id: str, contact_id: str) -> CampaignContactRecord:
        record, _ = self._transition(
            tenant_id,
            contact_id,
            target="pending",
            allowed_from={"failed"},
            values={"error_message": None},
        )
        return record

    def retry_all_failed(self, tenant_id: str, campaign_id: str) -> int:
        self.get_campaign(tenant_id, campaign_id)
        retried = 0
        for contact in self._repository.list_contacts(campaign_id, status="failed"):
            try:
                _, changed = self._transition(
                    tenant_id,
                    contact.contact_id,
                    target="pending",
                    allowed_from={"failed"},
                    values={"error_message": None},
                )
            except Exception:
                logger.exception("retry failed for campaign contact=%s", contact.contact_id)
                continue
            if changed:
                retried += 1
        logger.info("campaign retry_all_failed campaign=%s retried=%d", campaign_id, retried)
        return retried

    def apply_delivery_status(self, tenant_id: str, provider_message_id: str, status: MessageStatus) -> bool:
        contact = self._repository.find_contact_by_provider_message_id(tenant_id, provider_message_id)
        if contact is None:
            return False
        now = _now_utc()
        if status == "delivered":
            allowed, values = {"sent"}, {"delivered_at": now}
        elif status == "read":
            allowed, values = {"sent", "delivered"}, {"read_at": now}
        elif status == "failed":
            allowed, values = {"sent", "delivered", "read"}, {"failed_at": now, "error_message": "Provider reported delivery failure"}
        else:
            return False
        while contact is not None and contact.status in allowed:
            updated = self._repository.transition_contact(
                contact_id=contact.contact_id,
                expected_status=contact.status,
                new_status=status,  # type: ignore[arg-type]
                values=values,
            )
            if updated is not None:
                return True
            contact = self._repository.get_contact(contact.contact_id)
        return False

    def mark_responded_for_customer(self, tenant_id: str, customer_id: str) -> CampaignContactRecord | None:
        while True:
            candidates = [
                value
                for value in self._repository.list_contacts_for_customer(tenant_id=tenant_id, customer_id=customer_id)
                if value.status in ACTIVE_CONTACT_STATUSES
            ]
            if not candidates:
                return None
            chosen = max(candidates, key=_response_priority)
            updated = self._repository.transition_contact(
                contact_id=chosen.contact_id,
                expected_status=chosen.status,
                new_status="responded",
                values={"responded_at": _now_utc()},
            )
            if updated is not None:
                logger.info("campaign contact responded contact=%s campaign=%s", updated.contact_id, updated.campaign_id)
                return updated

    def dispatch(self, tenant_id: str, contact_id: str, sender: OutboundSender) -> CampaignContactRecord:
        contact = self.get_contact(tenant_id, contact_id)
        if contact.status != "pending":
            raise PreconditionFailedError(f"campaign contact {contact_id} is {contact.status}, not pending")
        campaign = self.get_campaign(tenant_id, contact.campaign_id)
        customer = self._customers.get(contact.customer_id)
        if customer is None:
            raise NotFoundError(f"customer not found: {contact.customer_id}")
        if customer.blocked:
            return self.mark_failed(tenant_id, contact_id, "customer_blocked")

        conversation, _ = self._router.route_inbound(tenant_id, customer.customer_id, "whatsapp")
        try:
            result = sender.send(phone=customer.phone, content=campaign.message_text, tenant_id=tenant_id)
        except Exception as exc:
            logger.exception("campaign send raised contact=%s", contact_id)
            return self.mark_failed(tenant_id, contact_id, f"send_error: {exc}")

        message, _ = self._conversations.insert_message(
            NewMessage(
                tenant_id=tenant_id,
                conversation_id=conversation.conversation_id,
                direction="outbound",
                sender_type="system",
                sender_id=None,
                content=campaign.message_text,
                provider_message_id=result.provider_message_id,
                status="sent" if result.success else "failed",
            )
        )
        if self._publisher is not None:
            self._publisher.publish_message_created(
                MessageCreatedEvent(tenant_id=tenant_id, conversation_id=conversation.conversation_id, message=message)
            )
        if result.success:
            return self.mark_sent(tenant_id, contact_id, result.provider_message_id)
        return self.mark_failed(tenant_id, contact_id, result.error_message or result.error_code or "send_failed")

    def dispatch_pending(
        self, tenant_id: str, campaign_id: str, sender: OutboundSender, *, limit: int = 50
    ) -> CampaignDispatchResponse:
        self.get_campaign(tenant_id, campaign_id)
        attempted = sent = failed = 0
        for contact in self._repository.list_contacts(campaign_id, status="pending", limit=limit):
            attempted += 1
            try:
                outcome = self.dispatch(tenant_id, contact.contact_id, sender)
            except PreconditionFailedError:
                attempted -= 1
                continue
            if outcome.status == "sent":
                sent += 1
            elif outcome.status == "failed":
                failed += 1
        return CampaignDispatchResponse(campaign_id=campaign_id, attempted=attempted, sent=sent, failed=failed)

    def list_contacts(
        self, tenant_id: str, campaign_id: str, *, status: CampaignContactStatus | None = None
    ) -> CampaignContactListResponse:
        self.get_campaign(tenant_id, campaign_id)
        contacts = self._repository.list_contacts(campaign_id, status=status)
        return CampaignContactListResponse(campaign_id=campaign_id, items=[self.to_item(value) for value in contacts])

    def campaign_stats(self, tenant_id: str, campaign_id: str) -> CampaignStatsResponse:
        self.get_campaign(tenant_id, campaign_id)
        contacts = self._repository.list_contacts(campaign_id, status=None)
        counts = Counter(value.status for value in contacts)
        return CampaignStatsResponse(
            campaign_id=campaign_id,
            total=len(contacts),
            by_status={status: counts.get(status, 0) for status in CAMPAIGN_CONTACT_STATUSES},
        )

    def _transition(
        self,
        tenant_id: str,
        contact_id: str,
        *,
        target: CampaignContactStatus,
        allowed_from: set[str],
        values: dict[str, Any],
    ) -> tuple[CampaignContactRecord, bool]:
        """Compare-and-set ``contact_id`` into ``target``; a contact already there is left alone."""
        while True:
            current = self.get_contact(tenant_id, contact_id)
            if current.status == target:
                return current, False
            if current.status not in allowed_from:
                raise PreconditionFailedError(
                    f"campaign contact {contact_id} cannot move from {current.status} to {target}"
                )
            updated = self._repository.transition_contact(
                contact_id=contact_id,
                expected_status=current.status,
                new_status=target,
                values=values,
            )
            if updated is not None:
                return updated, True

    @staticmethod
    def to_campaign_item(record: CampaignRecord) -> CampaignItem:
        return CampaignItem(
            campaign_id=record.campaign_id,
            name=record.name,
            message_text=record.message_text,
            created_at=record.created_at,
        )

    @staticmethod
    def to_item(record: CampaignContactRecord) -> CampaignContactItem:
        return CampaignContactItem(
            contact_id=record.contact_id,
            campaign_id=record.campaign_id,
            customer_id=record.customer_id,
            status=record.status,
            error_message=record.error_message,
            provider_message_id=record.provider_message_id,
            sent_at=record.sent_at,
            delivered_at=record.delivered_at,
            read_at=record.read_at,
            responded_at=record.responded_at,
            failed_at=record.failed_at,
            excluded_at=record.excluded_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
