from __future__ import annotations

from datetime import datetime, timezone
from functools import lru_cache
from typing import overload

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class EngagementBase(DeclarativeBase):
    pass


@lru_cache(maxsize=None)
def session_factory_for(database_url: str) -> sessionmaker[Session]:
    """One engine per URL so every repository shares a connection pool."""
    if not database_url:
        raise RuntimeError("DATABASE_URL is required for ENGAGEMENT_STORE_BACKEND=postgres")
    engine = create_engine(database_url, future=True, pool_pre_ping=True)
    if database_url.startswith("sqlite"):
        # Import for side effects so every table is registered before create_all.
        from . import campaigns, conversations, customers, unread_counts  # noqa: F401

        EngagementBase.metadata.create_all(engine)
    return sessionmaker(engine, expire_on_commit=False, future=True)


def uses_sql_backend(backend: str) -> bool:
    return backend.strip().lower() in {"postgres", "sqlalchemy"}


@overload
def as_utc(value: datetime) -> datetime: ...


@overload
def as_utc(value: None) -> None: ...


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
