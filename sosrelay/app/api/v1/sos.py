"""
FastAPI route: one-shot SOS submission.

    GET  /api/v1/sos-alert   — usage document
    POST /api/v1/sos-alert   — create with server-assigned fields

Used by callers that cannot build a full record themselves (kiosk,
SMS gateway, scripted tests). Device apps push complete records to
/emergencies instead so the id is fixed at the origin.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request

from sosrelay.app.api.schemas import (
    SOS_OPTIONAL_FIELDS,
    SOS_REQUIRED_FIELDS,
    SosAlertRequest,
    SosAlertResponse,
    SosAlertUsage,
)
from sosrelay.app.core.config import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{settings.BACKEND_API_PREFIX}/sos-alert", tags=["sos"])


@router.get("", response_model=SosAlertUsage, summary="SOS endpoint usage")
async def sos_usage() -> SosAlertUsage:
    return SosAlertUsage(
        usage={
            "method": "POST",
            "endpoint": f"{settings.BACKEND_API_PREFIX}/sos-alert",
            "requiredFields": SOS_REQUIRED_FIELDS,
            "optionalFields": SOS_OPTIONAL_FIELDS,
            "example": {
                "name": "John Doe",
                "wardNo": settings.DEFAULT_WARD_NO,
                "location": "Tamaghat",
                "phone": "1234567890",
                "type": "Accident",
            },
        },
    )


@router.post("", status_code=201, response_model=SosAlertResponse, summary="Trigger an SOS alert")
async def trigger_sos(request: Request, body: SosAlertRequest) -> SosAlertResponse:
    record = request.app.state.registry.create_from_sos(
        name=body.name,
        location=body.location,
        type=body.type,
        ward_no=body.ward_no,
        phone=body.phone,
        lat=body.lat,
        lng=body.lng,
    )
    logger.info("SOS alert %s raised via API", record.id, extra={"alert_id": record.id})
    return SosAlertResponse(emergency=record.to_dict())
