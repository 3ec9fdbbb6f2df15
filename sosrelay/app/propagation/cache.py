"""
cache.py — Local Durable Cache: this device's replica of known alerts.

Holds at most ``max_records`` alerts, newest insertion first. Inserting a
new id prepends it and prunes the oldest beyond the bound; putting an id
that is already cached replaces it in place (the authoritative copy from a
sync overwrites the first-seen copy wholesale).

Every id ever inserted is also remembered in a separate, larger bounded
list, so an alert pruned from the cache is still recognised when another
pipe delivers it again.

Persistence is best-effort: every change is written through to the durable
store before ``put`` returns, but a failed write is logged and the
in-memory list stays authoritative for the session. No method here
suspends, so a caller's check-then-write is atomic on the event loop.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from sosrelay.app.core.config import settings
from sosrelay.app.core.database import KeyValueStore
from sosrelay.app.core.errors import StorageError
from sosrelay.app.emergency.models import EmergencyRecord

logger = logging.getLogger(__name__)

RECEIVED_ALERTS_KEY = "receivedAlerts"
SEEN_IDS_KEY = "seenAlertIds"


class LocalCache:
    """Bounded, persisted, newest-first list of EmergencyRecords."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_records: Optional[int] = None,
        max_seen: Optional[int] = None,
    ):
        self._store = store
        self.max_records = max_records or settings.CACHE_MAX_RECORDS
        self.max_seen = max(max_seen or settings.CACHE_SEEN_IDS_MAX, self.max_records)
        self._records: List[EmergencyRecord] = []
        # oldest first; dict keeps insertion order
        self._seen: Dict[str, None] = {}

    def load(self) -> List[EmergencyRecord]:
        """
        Replace the in-memory list with the persisted one.

        Safe to call repeatedly. Unreadable entries are skipped; an
        unreadable store leaves the current in-memory list untouched.
        """
        try:
            raw = self._store.get_json(RECEIVED_ALERTS_KEY, default=[])
        except StorageError as exc:
            logger.warning("Could not load cached alerts: %s", exc)
            return self.records()

        loaded: List[EmergencyRecord] = []
        seen = set()
        for item in raw if isinstance(raw, list) else []:
            try:
                record = EmergencyRecord.model_validate(item)
            except PydanticValidationError as exc:
                logger.warning("Dropping unreadable cached alert: %s", exc.errors()[:1])
                continue
            if record.id in seen:
                continue
            seen.add(record.id)
            loaded.append(record)

        self._records = loaded[: self.max_records]
        self._seen = dict.fromkeys(self._load_seen())
        for record in reversed(self._records):
            self._remember(record.id)
        logger.info("Loaded %d cached alerts", len(self._records))
        return self.records()

    def records(self) -> List[EmergencyRecord]:
        """Snapshot, newest first."""
        return list(self._records)

    def active(self) -> List[EmergencyRecord]:
        return [r for r in self._records if not r.is_terminal]

    def contains(self, emergency_id: str) -> bool:
        return any(r.id == emergency_id for r in self._records)

    def has_seen(self, emergency_id: str) -> bool:
        """True for cached ids and for ids pruned from the cache earlier."""
        return emergency_id in self._seen or self.contains(emergency_id)

    def get(self, emergency_id: str) -> Optional[EmergencyRecord]:
        for record in self._records:
            if record.id == emergency_id:
                return record
        return None

    def __len__(self) -> int:
        return len(self._records)

    def put(self, record: EmergencyRecord) -> bool:
        """
        Insert or replace by id. Returns True when the id was not cached.

        Never raises on persistence failure.
        """
        inserted = True
        for index, existing in enumerate(self._records):
            if existing.id == record.id:
                self._records[index] = record
                inserted = False
                break

        if inserted:
            self._records.insert(0, record)
            self._remember(record.id)
            pruned = self._records[self.max_records:]
            if pruned:
                del self._records[self.max_records:]
                logger.debug("Pruned %d oldest cached alerts", len(pruned))

        self._persist()
        return inserted

    def _persist(self) -> None:
        try:
            self._store.set_json(
                RECEIVED_ALERTS_KEY, [r.to_dict() for r in self._records],
            )
            self._store.set_json(SEEN_IDS_KEY, list(self._seen))
        except StorageError as exc:
            logger.warning("Cache persistence failed, keeping in-memory copy: %s", exc)

    def _remember(self, emergency_id: str) -> None:
        self._seen.pop(emergency_id, None)
        self._seen[emergency_id] = None
        while len(self._seen) > self.max_seen:
            del self._seen[next(iter(self._seen))]

    def _load_seen(self) -> List[str]:
        try:
            raw = self._store.get_json(SEEN_IDS_KEY, default=[])
        except StorageError as exc:
            logger.warning("Could not load seen alert ids: %s", exc)
            return list(self._seen)
        if not isinstance(raw, list):
            return []
        return [item for item in raw if isinstance(item, str)][-self.max_seen:]
