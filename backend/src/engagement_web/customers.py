from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Protocol
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, String, UniqueConstraint, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from .db import EngagementBase, as_utc, session_factory_for, uses_sql_backend
from .errors import NotFoundError
from .models import CustomerItem
from .phones import canonical_phone, default_display_name, is_placeholder_name, mask_phone, normalize_phone

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CustomerRecord:
    customer_id: str
    tenant_id: str
    phone: str
    display_name: str
    blocked: bool
    created_at: datetime
    updated_at: datetime


class CustomerRepository(Protocol):
    def reset(self) -> None: ...

    def get(self, customer_id: str) -> CustomerRecord | None: ...

    def find_by_phone(self, tenant_id: str, phone: str) -> CustomerRecord | None: ...

    def insert_or_get(self, *, tenant_id: str, phone: str, display_name: str) -> tuple[CustomerRecord, bool]: ...

    def update_display_name(self, customer_id: str, display_name: str) -> CustomerRecord: ...

    def set_blocked(self, customer_id: str, blocked: bool) -> CustomerRecord: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryCustomerRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self._customers: dict[str, CustomerRecord] = {}
        self._by_phone: dict[tuple[str, str], str] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._customers.clear()
            self._by_phone.clear()

    def get(self, customer_id: str) -> CustomerRecord | None:
        return self._customers.get(customer_id)

    def find_by_phone(self, tenant_id: str, phone: str) -> CustomerRecord | None:
        customer_id = self._by_phone.get((tenant_id, canonical_phone(phone)))
        return self._customers.get(customer_id) if customer_id is not None else None

    def insert_or_get(self, *, tenant_id: str, phone: str, display_name: str) -> tuple[CustomerRecord, bool]:
        key = (tenant_id, canonical_phone(phone))
        with self._lock:
            existing_id = self._by_phone.get(key)
            if existing_id is not None:
                return self._customers[existing_id], False
            now = _now_utc()
            created = CustomerRecord(
                customer_id=f"cust_{next(self._counter):06d}",
                tenant_id=tenant_id,
                phone=phone,
                display_name=display_name,
                blocked=False,
                created_at=now,
                updated_at=now,
            )
            self._customers[created.customer_id] = created
            self._by_phone[key] = created.customer_id
            return created, True

    def update_display_name(self, customer_id: str, display_name: str) -> CustomerRecord:
        return self._replace(customer_id, display_name=display_name)

    def set_blocked(self, customer_id: str, blocked: bool) -> CustomerRecord:
        return self._replace(customer_id, blocked=blocked)

    def _replace(self, customer_id: str, **values: object) -> CustomerRecord:
        with self._lock:
            current = self._customers.get(customer_id)
            if current is None:
                raise KeyError(customer_id)
            updated = CustomerRecord(**{**current.__dict__, **values, "updated_at": _now_utc()})
            self._customers[customer_id] = updated
            return updated


class _CustomerRow(EngagementBase):
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "canonical_phone", name="uq_customers_tenant_canonical_phone"),
    )

    customer_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    canonical_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    display_name: Mapped[str] = mapped_column(String(256), nullable=False)
    blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyCustomerRepository:
    def __init__(self, database_url: str) -> None:
        self._session_factory = session_factory_for(database_url)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_CustomerRow).delete()

    def get(self, customer_id: str) -> CustomerRecord | None:
        with self._session() as session:
            row = session.get(_CustomerRow, customer_id)
            return self._record(row) if row is not None else None

    def find_by_phone(self, tenant_id: str, phone: str) -> CustomerRecord | None:
        with self._session() as session:
            row = session.scalars(
                select(_CustomerRow)
                .where(_CustomerRow.tenant_id == tenant_id)
                .where(_CustomerRow.canonical_phone == canonical_phone(phone))
            ).first()
            return self._record(row) if row is not None else None

    def insert_or_get(self, *, tenant_id: str, phone: str, display_name: str) -> tuple[CustomerRecord, bool]:
        now = _now_utc()
        try:
            with self._session() as session:
                with session.begin():
                    row = _CustomerRow(
                        customer_id=f"cust_{uuid4().hex}",
                        tenant_id=tenant_id,
                        phone=phone,
                        canonical_phone=canonical_phone(phone),
                        display_name=display_name,
                        blocked=False,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(row)
                return self._record(row), True
        except IntegrityError:
            existing = self.find_by_phone(tenant_id, phone)
            if existing is None:
                raise
            return existing, False

    def update_display_name(self, customer_id: str, display_name: str) -> CustomerRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_CustomerRow, customer_id)
                if row is None:
                    raise KeyError(customer_id)
                row.display_name = display_name
                row.updated_at = _now_utc()
                session.flush()
                return self._record(row)

    def set_blocked(self, customer_id: str, blocked: bool) -> CustomerRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_CustomerRow, customer_id)
                if row is None:
                    raise KeyError(customer_id)
                row.blocked = blocked
                row.updated_at = _now_utc()
                session.flush()
                return self._record(row)

    @staticmethod
    def _record(row: _CustomerRow) -> CustomerRecord:
        return CustomerRecord(
            customer_id=row.customer_id,
            tenant_id=row.tenant_id,
            phone=row.phone,
            display_name=row.display_name,
            blocked=row.blocked,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )


def create_customer_repository(*, backend: str, database_url: str) -> CustomerRepository:
    if uses_sql_backend(backend):
        return SqlAlchemyCustomerRepository(database_url)
    return InMemoryCustomerRepository()


class IdentityResolver:
    def __init__(self, *, repository: CustomerRepository, default_country_code: str = "55") -> None:
        self._repository = repository
        self._default_country_code = default_country_code

    def reset(self) -> None:
        self._repository.reset()

    def normalize(self, phone: str | None) -> str:
        return normalize_phone(phone, default_country_code=self._default_country_code)

    def resolve_customer(self, tenant_id: str, phone: str, display_name_hint: str | None = None) -> CustomerRecord:
        normalized = self.normalize(phone)
        hint = (display_name_hint or "").strip() or None

        existing = self._repository.find_by_phone(tenant_id, normalized)
        if existing is None:
            existing, created = self._repository.insert_or_get(
                tenant_id=tenant_id,
                phone=normalized,
                display_name=hint or default_display_name(normalized),
            )
            if created:
                logger.info("customer created tenant=%s customer=%s phone=%s", tenant_id, existing.customer_id, mask_phone(normalized))
                return existing

        if hint and hint != existing.display_name and is_placeholder_name(existing.display_name, existing.phone):
            return self._repository.update_display_name(existing.customer_id, hint)
        return existing

    def get_customer(self, tenant_id: str, customer_id: str) -> CustomerRecord:
        customer = self._repository.get(customer_id)
        if customer is None or customer.tenant_id != tenant_id:
            raise NotFoundError(f"customer not found: {customer_id}")
        return customer

    def set_blocked(self, tenant_id: str, customer_id: str, blocked: bool) -> CustomerRecord:
        self.get_customer(tenant_id, customer_id)
        return self._repository.set_blocked(customer_id, blocked)

    @staticmethod
    def to_item(record: CustomerRecord) -> CustomerItem:
        return CustomerItem(
            customer_id=record.customer_id,
            phone=record.phone,
            display_name=record.display_name,
            blocked=record.blocked,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
