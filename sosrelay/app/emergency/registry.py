"""
registry.py — Authoritative emergency collection behind the REST API.

The backend of record is the convergence point of the propagation
subsystem: origin devices push here, relayed alerts arrive here once any
carrier regains connectivity, and every device's sync poller reads from
here. It is also the only place where concurrent status edits are resolved
(last writer wins, in submission order).

Records live in memory, newest first. When a snapshot path is configured
the collection is loaded from and rewritten to a JSON file on each
mutation, which keeps a single-node deployment restartable.
"""

from __future__ import annotations

import json
import logging
import random
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from sosrelay.app.core.config import settings
from sosrelay.app.core.errors import (
    DuplicateEmergencyError,
    NotFoundError,
    ValidationError,
)
from sosrelay.app.emergency.models import (
    EmergencyRecord,
    EmergencyType,
    create_emergency,
)

logger = logging.getLogger(__name__)

# Fields a downstream role may change after creation
PATCHABLE_FIELDS = ("status", "hospital_id", "ambulance_id")


class EmergencyRegistry:
    """In-memory backend-of-record store (optionally snapshotted)."""

    def __init__(self, snapshot_path: Optional[str] = None):
        self._records: Dict[str, EmergencyRecord] = {}
        self._snapshot_path = Path(snapshot_path) if snapshot_path else None
        if self._snapshot_path is not None:
            self._load_snapshot()

    # ── Queries ──

    def __len__(self) -> int:
        return len(self._records)

    def get(self, emergency_id: str) -> EmergencyRecord:
        record = self._records.get(emergency_id)
        if record is None:
            raise NotFoundError("Emergency", id=emergency_id)
        return record

    def list(
        self,
        *,
        sort: str = "id",
        order: str = "desc",
        limit: Optional[int] = None,
        status: Optional[str] = None,
    ) -> List[EmergencyRecord]:
        """
        List records, json-server style.

        ``sort`` accepts ``id`` / ``createdAt`` (both order by origin
        timestamp) or any other record field (string order).
        """
        records = list(self._records.values())
        if status:
            records = [r for r in records if r.status == status]

        if sort in ("id", "createdAt", "created_at"):
            records.sort(key=lambda r: (r.timestamp_ms or 0, r.id))
        else:
            records.sort(key=lambda r: str(r.to_dict().get(sort, "")))

        if order.lower() == "desc":
            records.reverse()
        if limit is not None and limit > 0:
            records = records[:limit]
        return records

    def counts_by_status(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for record in self._records.values():
            counts[record.status] = counts.get(record.status, 0) + 1
        return counts

    # ── Mutations ──

    def create(self, record: EmergencyRecord) -> EmergencyRecord:
        """Insert a device-built record; the id must be new."""
        if record.id in self._records:
            raise DuplicateEmergencyError(record.id)
        if record.created_at is None:
            record = record.model_copy(update={"created_at": datetime.now(timezone.utc)})
        self._records[record.id] = record
        self._save_snapshot()
        logger.info(
            "Emergency %s stored (%s, %s)", record.id, record.type.value, record.status,
            extra={"alert_id": record.id},
        )
        return record

    def create_from_sos(
        self,
        *,
        name: str,
        location: str,
        type: EmergencyType,
        ward_no: Optional[str] = None,
        phone: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ) -> EmergencyRecord:
        """Custom creation path: server assigns id, time, status and defaults."""
        record = create_emergency(
            name, location, type,
            ward_no=ward_no, phone=phone, lat=lat, lng=lng, rng=rng,
        )
        while record.id in self._records:
            record = create_emergency(
                name, location, type,
                ward_no=ward_no, phone=phone, lat=record.lat, lng=record.lng,
            )
        return self.create(record)

    def patch(self, emergency_id: str, changes: Dict[str, Any]) -> EmergencyRecord:
        """Partial update; last writer wins."""
        current = self.get(emergency_id)
        update = {k: v for k, v in changes.items() if k in PATCHABLE_FIELDS and v is not None}
        if not update:
            raise ValidationError(
                "No patchable fields supplied",
                allowed=list(PATCHABLE_FIELDS),
            )
        try:
            patched = EmergencyRecord.model_validate({**current.to_dict(), **_aliased(update)})
        except PydanticValidationError as exc:
            raise ValidationError(str(exc), id=emergency_id) from exc
        self._records[emergency_id] = patched
        self._save_snapshot()
        logger.info(
            "Emergency %s updated: %s", emergency_id, update,
            extra={"alert_id": emergency_id},
        )
        return patched

    # ── Snapshot ──

    def _load_snapshot(self) -> None:
        path = self._snapshot_path
        if path is None or not path.exists():
            return
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Could not read registry snapshot %s: %s", path, exc)
            return
        if not isinstance(data, dict):
            logger.error("Registry snapshot %s has no emergencies collection", path)
            return
        for item in data.get("emergencies", []):
            try:
                record = EmergencyRecord.model_validate(item)
            except PydanticValidationError as exc:
                logger.warning("Skipping invalid snapshot entry: %s", exc)
                continue
            self._records[record.id] = record
        logger.info("Loaded %d emergencies from %s", len(self._records), path)

    def _save_snapshot(self) -> None:
        path = self._snapshot_path
        if path is None:
            return
        body = {"emergencies": [r.to_dict() for r in self.list()]}
        try:
            path.write_text(json.dumps(body, indent=2), encoding="utf-8")
        except OSError as exc:
            logger.error("Could not write registry snapshot %s: %s", path, exc)


def _aliased(update: Dict[str, Any]) -> Dict[str, Any]:
    aliases = {"hospital_id": "hospitalId", "ambulance_id": "ambulanceId"}
    return {aliases.get(k, k): v for k, v in update.items()}


def default_registry() -> EmergencyRegistry:
    return EmergencyRegistry(settings.REGISTRY_SNAPSHOT_PATH)
