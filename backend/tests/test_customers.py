from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from threading import Barrier, local

import pytest

from engagement_web.customers import IdentityResolver, InMemoryCustomerRepository, SqlAlchemyCustomerRepository
from engagement_web.errors import InvalidIdentifierError, NotFoundError


class _LookupBarrierRepository(SqlAlchemyCustomerRepository):
    """Holds both resolvers after their lookup so each one goes on to insert."""

    def __init__(self, database_url: str, barrier: Barrier) -> None:
        super().__init__(database_url)
        self._barrier = barrier
        self._seen = local()

    def find_by_phone(self, tenant_id: str, phone: str):
        found = super().find_by_phone(tenant_id, phone)
        # Only the first lookup per thread waits; the refetch after a lost insert must not.
        if not getattr(self._seen, "waited", False):
            self._seen.waited = True
            self._barrier.wait()
        return found


def _resolver() -> IdentityResolver:
    return IdentityResolver(repository=InMemoryCustomerRepository())


def test_resolve_customer_creates_once_per_normalized_phone() -> None:
    resolver = _resolver()

    first = resolver.resolve_customer("tenant-a", "+55 11 98765-4321")
    second = resolver.resolve_customer("tenant-a", "11987654321")
    third = resolver.resolve_customer("tenant-a", "whatsapp:+5511987654321")

    assert first.customer_id == second.customer_id == third.customer_id
    assert first.phone == "5511987654321"
    assert first.display_name == "WhatsApp 4321"


def test_resolve_customer_matches_number_without_ninth_digit() -> None:
    resolver = _resolver()

    with_ninth = resolver.resolve_customer("tenant-a", "5511987654321")
    without_ninth = resolver.resolve_customer("tenant-a", "551187654321")

    assert with_ninth.customer_id == without_ninth.customer_id


def test_resolve_customer_is_scoped_by_tenant() -> None:
    resolver = _resolver()

    tenant_a = resolver.resolve_customer("tenant-a", "5511987654321")
    tenant_b = resolver.resolve_customer("tenant-b", "5511987654321")

    assert tenant_a.customer_id != tenant_b.customer_id
    with pytest.raises(NotFoundError):
        resolver.get_customer("tenant-b", tenant_a.customer_id)


def test_placeholder_display_name_is_upgraded_but_real_names_are_kept() -> None:
    resolver = _resolver()

    created = resolver.resolve_customer("tenant-a", "5511987654321")
    upgraded = resolver.resolve_customer("tenant-a", "5511987654321", display_name_hint="Maria Silva")
    unchanged = resolver.resolve_customer("tenant-a", "5511987654321", display_name_hint="Someone Else")

    assert created.display_name == "WhatsApp 4321"
    assert upgraded.display_name == "Maria Silva"
    assert unchanged.display_name == "Maria Silva"


def test_resolve_customer_uses_hint_for_new_customers() -> None:
    resolver = _resolver()

    created = resolver.resolve_customer("tenant-a", "14155550123", display_name_hint="  Ana  ")

    assert created.display_name == "Ana"


def test_resolve_customer_rejects_invalid_phone() -> None:
    resolver = _resolver()

    with pytest.raises(InvalidIdentifierError):
        resolver.resolve_customer("tenant-a", "not-a-phone")


def test_set_blocked_updates_customer() -> None:
    resolver = _resolver()
    customer = resolver.resolve_customer("tenant-a", "5511987654321")

    blocked = resolver.set_blocked("tenant-a", customer.customer_id, True)

    assert blocked.blocked is True
    assert resolver.get_customer("tenant-a", customer.customer_id).blocked is True
    with pytest.raises(NotFoundError):
        resolver.set_blocked("tenant-a", "cust_missing", True)


def test_concurrent_resolution_creates_a_single_customer() -> None:
    resolver = _resolver()

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: resolver.resolve_customer("tenant-a", "5511987654321"), range(32)))

    assert len({value.customer_id for value in results}) == 1


def test_sql_repository_resolves_and_blocks(tmp_path: Path) -> None:
    repository = SqlAlchemyCustomerRepository(f"sqlite:///{tmp_path / 'customers.db'}")
    resolver = IdentityResolver(repository=repository)

    created = resolver.resolve_customer("tenant-a", "11987654321", display_name_hint="Maria")
    again = resolver.resolve_customer("tenant-a", "551187654321")
    blocked = resolver.set_blocked("tenant-a", created.customer_id, True)

    assert again.customer_id == created.customer_id
    assert blocked.blocked is True
    assert blocked.created_at.tzinfo is not None
    assert resolver.get_customer("tenant-a", created.customer_id).display_name == "Maria"


def test_sql_insert_or_get_returns_existing_row_on_unique_violation(tmp_path: Path) -> None:
    repository = SqlAlchemyCustomerRepository(f"sqlite:///{tmp_path / 'customers_race.db'}")

    first, first_created = repository.insert_or_get(tenant_id="tenant-a", phone="5511987654321", display_name="A")
    second, second_created = repository.insert_or_get(tenant_id="tenant-a", phone="5511987654321", display_name="B")

    assert first_created is True
    assert second_created is False
    assert second.customer_id == first.customer_id
    assert second.display_name == "A"


def test_concurrent_first_messages_with_and_without_ninth_digit_share_a_customer(tmp_path: Path) -> None:
    database_url = f"sqlite:///{tmp_path / 'customers_ninth_digit.db'}"
    resolver = IdentityResolver(repository=_LookupBarrierRepository(database_url, Barrier(2, timeout=5)))

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(
            pool.map(lambda phone: resolver.resolve_customer("tenant-a", phone), ["5511999990000", "551199990000"])
        )

    assert results[0].customer_id == results[1].customer_id
    assert SqlAlchemyCustomerRepository(database_url).find_by_phone("tenant-a", "551199990000") is not None


def test_in_memory_insert_or_get_keys_on_canonical_phone() -> None:
    repository = InMemoryCustomerRepository()

    first, first_created = repository.insert_or_get(tenant_id="tenant-a", phone="551199990000", display_name="A")
    second, second_created = repository.insert_or_get(tenant_id="tenant-a", phone="5511999990000", display_name="B")

    assert (first_created, second_created) == (True, False)
    assert second.customer_id == first.customer_id
    assert second.phone == "551199990000"
