"""
Pydantic schemas for the backend-of-record API.

Separated from the route handlers so device-side code and tests can build
the same request bodies.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from sosrelay.app.emergency.models import EmergencyType


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class SosAlertRequest(BaseModel):
    """
    Body for POST /api/v1/sos-alert.

    The server assigns id, time, status, createdAt and any missing
    coordinates.
    """
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, examples=["Sita Tamang"])
    location: str = Field(..., min_length=1, examples=["Tamaghat"])
    type: EmergencyType = Field(..., examples=["Accident"])
    ward_no: Optional[str] = Field(None, alias="wardNo", examples=["Ward 16"])
    phone: Optional[str] = Field(None, examples=["9800000000"])
    lat: Optional[float] = Field(None, ge=-90.0, le=90.0)
    lng: Optional[float] = Field(None, ge=-180.0, le=180.0)


class EmergencyPatch(BaseModel):
    """Partial update from a downstream role (hospital, ambulance, municipality)."""
    model_config = ConfigDict(populate_by_name=True)

    status: Optional[str] = Field(None, min_length=1, examples=["Accepted"])
    hospital_id: Optional[str] = Field(None, alias="hospitalId")
    ambulance_id: Optional[str] = Field(None, alias="ambulanceId")


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class SosAlertResponse(BaseModel):
    success: bool = True
    message: str = "SOS Alert triggered successfully"
    emergency: Dict[str, Any]


class SosAlertUsage(BaseModel):
    success: bool = True
    message: str = "SOS Alert API Endpoint"
    usage: Dict[str, Any]


SOS_REQUIRED_FIELDS: List[str] = ["name", "location", "type"]
SOS_OPTIONAL_FIELDS: List[str] = ["wardNo", "phone", "lat", "lng"]
