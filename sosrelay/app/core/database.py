"""
Device-local durable store — key-value entries via SQLAlchemy 2.0.

Every device keeps its replica state in a small key-value table so that it
survives a process restart:

    receivedAlerts       — bounded list of merged alerts (newest first)
    seenAlertIds         — ids ever merged, kept past cache pruning (bounded)
    sos_<id>             — per-alert backup, wire-encoded, read by the
                           shared-storage fallback pass
    lastEmergencyCheck   — sync checkpoint (epoch milliseconds)
    syncOutbox           — originated alerts whose push is not yet confirmed

The engine is synchronous on purpose: a write completes before the awaiting
caller resumes, so a merge's check-then-write never straddles a suspension
point. Any SQLAlchemy failure is re-raised as StorageError.

Usage:
    from sosrelay.app.core.database import KeyValueStore

    store = KeyValueStore("sqlite:///device.db")
    store.set_json("lastEmergencyCheck", 1718000000000)
    store.get_json("lastEmergencyCheck")
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import DateTime, String, Text, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from sosrelay.app.core.config import settings
from sosrelay.app.core.errors import StorageError

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for device-local tables."""
    pass


class KeyValueEntry(Base):
    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )


def _engine_kwargs(url: str) -> dict:
    # In-memory sqlite lives per connection; pin one connection for the store lifetime.
    if url in ("sqlite://", "sqlite:///:memory:"):
        return {
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }
    return {}


class KeyValueStore:
    """Durable string key-value store backed by a single SQL table."""

    def __init__(self, url: Optional[str] = None, *, echo: bool = False):
        self.url = url or settings.STORE_URL
        try:
            self._engine = create_engine(self.url, echo=echo, **_engine_kwargs(self.url))
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise StorageError("open", self.url, str(exc)) from exc
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False)
        logger.debug("Key-value store ready: %s", self.url)

    def get(self, key: str) -> Optional[str]:
        try:
            with self._session_factory() as session:
                entry = session.get(KeyValueEntry, key)
                return entry.value if entry is not None else None
        except SQLAlchemyError as exc:
            raise StorageError("get", key, str(exc)) from exc

    def set(self, key: str, value: str) -> None:
        try:
            with self._session_factory.begin() as session:
                session.merge(KeyValueEntry(
                    key=key,
                    value=value,
                    updated_at=datetime.now(timezone.utc),
                ))
        except SQLAlchemyError as exc:
            raise StorageError("set", key, str(exc)) from exc

    def delete(self, key: str) -> None:
        try:
            with self._session_factory.begin() as session:
                entry = session.get(KeyValueEntry, key)
                if entry is not None:
                    session.delete(entry)
        except SQLAlchemyError as exc:
            raise StorageError("delete", key, str(exc)) from exc

    def keys(self, prefix: str = "") -> List[str]:
        """All keys starting with ``prefix``, in key order."""
        stmt = select(KeyValueEntry.key).order_by(KeyValueEntry.key)
        if prefix:
            stmt = stmt.where(KeyValueEntry.key.startswith(prefix, autoescape=True))
        try:
            with self._session_factory() as session:
                return list(session.scalars(stmt))
        except SQLAlchemyError as exc:
            raise StorageError("keys", prefix or "*", str(exc)) from exc

    def get_json(self, key: str, default: Any = None) -> Any:
        """Decode a JSON value; a corrupt entry reads as ``default``."""
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError as exc:
            logger.warning("Corrupt JSON in store key %s: %s", key, exc)
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value, default=str, separators=(",", ":")))

    def close(self) -> None:
        """Dispose engine connections."""
        self._engine.dispose()
        logger.debug("Key-value store closed: %s", self.url)
