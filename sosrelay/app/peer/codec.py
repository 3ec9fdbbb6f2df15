"""
codec.py — Relay wire format.

Payloads travel as UTF-8 compact JSON inside a tagged, versioned envelope:

    {"kind":"sos-alert","v":1,"alert":{...EmergencyRecord...}}

The receiver validates the envelope strictly (unknown kind, version or
top-level keys are rejected) and the record with the normal model rules.
Anything that fails raises MalformedPayloadError; the relay channel logs
and drops it.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from sosrelay.app.core.errors import MalformedPayloadError
from sosrelay.app.emergency.models import EmergencyRecord

PAYLOAD_KIND = "sos-alert"
PAYLOAD_VERSION = 1

# Upper bound for a single characteristic value
MAX_PAYLOAD_BYTES = 4096


class RelayEnvelope(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["sos-alert"]
    v: Literal[1]
    alert: EmergencyRecord


def encode_payload(record: EmergencyRecord) -> bytes:
    envelope = RelayEnvelope(kind=PAYLOAD_KIND, v=PAYLOAD_VERSION, alert=record)
    data = envelope.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")
    if len(data) > MAX_PAYLOAD_BYTES:
        raise MalformedPayloadError("encoded alert too large", size=len(data))
    return data


def decode_payload(data: bytes) -> EmergencyRecord:
    if not isinstance(data, (bytes, bytearray)):
        raise MalformedPayloadError("payload is not a byte sequence", type=type(data).__name__)
    if not data:
        raise MalformedPayloadError("empty payload")
    if len(data) > MAX_PAYLOAD_BYTES:
        raise MalformedPayloadError("payload too large", size=len(data))
    try:
        text = bytes(data).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedPayloadError(f"not UTF-8: {exc}") from exc
    try:
        envelope = RelayEnvelope.model_validate_json(text)
    except PydanticValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        raise MalformedPayloadError(
            first.get("msg", "invalid envelope"),
            location=".".join(str(p) for p in first.get("loc", ())),
        ) from exc
    return envelope.alert
