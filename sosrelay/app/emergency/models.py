"""
models.py — Canonical shape of an SOS alert and its status lifecycle.

Defines:
    • EmergencyType    — what kind of help is needed
    • EmergencyStatus  — named lifecycle states (status itself is opaque text)
    • EmergencyRecord  — the replicated alert record (REST body and relay body)
    • create_emergency — origin-side factory with service-area defaults

═══════════════════════════════════════════════════════════════════════════
STATUS LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    Pending ──► Forwarded / Ambulance Assigned ──► Received
            ──► Ambulance Dispatched / On Route ──► Reached
            ──► Treated / Complete / Resolved   (terminal)

Transitions are issued by downstream roles against the backend of record
only. Devices replicate whatever status string the backend holds and never
validate a transition, so unknown status strings are carried as-is.

═══════════════════════════════════════════════════════════════════════════
IDS AND ORDERING
═══════════════════════════════════════════════════════════════════════════

    E1718000000000          origin epoch milliseconds
    E1718000000000-3fa9     … plus a random tie-breaker

The embedded timestamp is what pollers compare against their checkpoint.
`createdAt` is used only when the id carries no parseable timestamp.
"""

from __future__ import annotations

import random
import re
import secrets
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sosrelay.app.core.config import settings


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class EmergencyType(str, Enum):
    PREGNANCY = "Pregnancy"
    ACCIDENT  = "Accident"
    ILLNESS   = "Illness"
    OTHER     = "Other"


class EmergencyStatus(str, Enum):
    """Known status values, in lifecycle order."""
    PENDING              = "Pending"
    FORWARDED            = "Forwarded"
    AMBULANCE_ASSIGNED   = "Ambulance Assigned"
    RECEIVED             = "Received"
    AMBULANCE_DISPATCHED = "Ambulance Dispatched"
    ON_ROUTE             = "On Route"
    REACHED              = "Reached"
    TREATED              = "Treated"
    COMPLETE             = "Complete"
    RESOLVED             = "Resolved"


TERMINAL_STATUSES: FrozenSet[str] = frozenset({
    EmergencyStatus.RESOLVED.value,
    EmergencyStatus.COMPLETE.value,
    EmergencyStatus.TREATED.value,
})


def _status_text(status: Any) -> str:
    # Enum members hash by name, so compare on the plain value.
    return status.value if isinstance(status, Enum) else status


def is_terminal_status(status: Any) -> bool:
    return _status_text(status) in TERMINAL_STATUSES


# ═══════════════════════════════════════════════════════════════════════════
# Id / timestamp helpers
# ═══════════════════════════════════════════════════════════════════════════

ID_PATTERN = r"^E\d{1,16}(?:-[0-9A-Za-z]{1,16})?$"
_ID_TIMESTAMP_RE = re.compile(r"^E(\d{1,16})")


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_emergency_id(at_ms: Optional[int] = None, *, tie_breaker: bool = True) -> str:
    stamp = now_ms() if at_ms is None else at_ms
    if tie_breaker:
        return f"E{stamp}-{secrets.token_hex(2)}"
    return f"E{stamp}"


def embedded_timestamp_ms(emergency_id: str) -> Optional[int]:
    """Origin timestamp embedded in an id, or None when the id carries none."""
    match = _ID_TIMESTAMP_RE.match(emergency_id or "")
    if not match:
        return None
    return int(match.group(1))


def format_display_time(moment: datetime) -> str:
    """Locale-style display string, e.g. ``09:41 AM``."""
    return moment.astimezone().strftime("%I:%M %p")


# ═══════════════════════════════════════════════════════════════════════════
# Record
# ═══════════════════════════════════════════════════════════════════════════

class EmergencyRecord(BaseModel):
    """
    One SOS alert as replicated between devices and the backend of record.

    Field names follow the wire (camelCase) via aliases; Python code uses
    the snake_case attributes. Instances are immutable; a status change is
    a copy (`with_status`).
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra="ignore",
    )

    id: str = Field(..., pattern=ID_PATTERN, examples=["E1718000000000"])
    name: str = Field(..., min_length=1, examples=["Sita Tamang"])
    location: str = Field(..., min_length=1, examples=["Tamaghat"])
    ward_no: str = Field(..., alias="wardNo", examples=["Ward 16"])
    phone: Optional[str] = Field(None, examples=["9800000000"])
    type: EmergencyType = Field(..., examples=["Accident"])
    status: str = Field(EmergencyStatus.PENDING.value, min_length=1)
    lat: Optional[float] = Field(None, ge=-90.0, le=90.0)
    lng: Optional[float] = Field(None, ge=-180.0, le=180.0)
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    time: str = ""
    hospital_id: Optional[str] = Field(None, alias="hospitalId")
    ambulance_id: Optional[str] = Field(None, alias="ambulanceId")

    @field_validator("status", mode="before")
    @classmethod
    def _plain_status(cls, value: Any) -> Any:
        return _status_text(value)

    @property
    def timestamp_ms(self) -> Optional[int]:
        stamp = embedded_timestamp_ms(self.id)
        if stamp is not None:
            return stamp
        if self.created_at is not None:
            created = self.created_at
            if created.tzinfo is None:
                created = created.replace(tzinfo=timezone.utc)
            return int(created.timestamp() * 1000)
        return None

    @property
    def is_terminal(self) -> bool:
        return is_terminal_status(self.status)

    def with_status(self, status: Any) -> "EmergencyRecord":
        return self.model_copy(update={"status": _status_text(status)})

    def to_dict(self) -> Dict[str, Any]:
        """Wire/JSON form with camelCase keys, absent optionals omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def create_emergency(
    name: str,
    location: str,
    type: EmergencyType,
    *,
    ward_no: Optional[str] = None,
    phone: Optional[str] = None,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    at: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> EmergencyRecord:
    """
    Build a new Pending record at the origin.

    Missing coordinates are replaced by a point jittered around the
    configured service area, so a failed geolocation never blocks an alert.
    """
    moment = at or datetime.now(timezone.utc)
    rnd = rng or random
    jitter = settings.SERVICE_AREA_JITTER_DEG
    if lat is None:
        lat = settings.SERVICE_AREA_LAT + rnd.uniform(-jitter, jitter)
    if lng is None:
        lng = settings.SERVICE_AREA_LNG + rnd.uniform(-jitter, jitter)

    return EmergencyRecord(
        id=generate_emergency_id(int(moment.timestamp() * 1000)),
        name=name,
        location=location,
        ward_no=ward_no or settings.DEFAULT_WARD_NO,
        phone=phone or None,
        type=EmergencyType(type),
        status=EmergencyStatus.PENDING.value,
        lat=lat,
        lng=lng,
        created_at=moment,
        time=format_display_time(moment),
    )
