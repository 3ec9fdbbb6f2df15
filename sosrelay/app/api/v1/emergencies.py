"""
FastAPI routes: the emergencies collection (backend of record).

    GET   /api/v1/emergencies          — list, json-server style query names
    POST  /api/v1/emergencies          — create from a device-built record
    GET   /api/v1/emergencies/{id}     — one record
    PATCH /api/v1/emergencies/{id}     — status / assignment update

Devices poll the list endpoint every few seconds with
``_sort=id&_order=desc&_limit=50``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Query, Request

from sosrelay.app.api.schemas import EmergencyPatch
from sosrelay.app.core.config import settings
from sosrelay.app.emergency.models import EmergencyRecord
from sosrelay.app.emergency.registry import EmergencyRegistry

router = APIRouter(prefix=f"{settings.BACKEND_API_PREFIX}/emergencies", tags=["emergencies"])


def _registry(request: Request) -> EmergencyRegistry:
    return request.app.state.registry


@router.get("", summary="List emergencies")
async def list_emergencies(
    request: Request,
    sort: str = Query("id", alias="_sort"),
    order: str = Query("desc", alias="_order"),
    limit: Optional[int] = Query(None, alias="_limit", ge=1, le=1000),
    status: Optional[str] = Query(None),
) -> List[Dict[str, Any]]:
    records = _registry(request).list(sort=sort, order=order, limit=limit, status=status)
    return [r.to_dict() for r in records]


@router.post("", status_code=201, summary="Store a device-built emergency")
async def create_emergency(request: Request, record: EmergencyRecord) -> Dict[str, Any]:
    return _registry(request).create(record).to_dict()


@router.get("/{emergency_id}", summary="Get one emergency")
async def get_emergency(request: Request, emergency_id: str) -> Dict[str, Any]:
    return _registry(request).get(emergency_id).to_dict()


@router.patch("/{emergency_id}", summary="Update status or assignment")
async def patch_emergency(
    request: Request, emergency_id: str, patch: EmergencyPatch,
) -> Dict[str, Any]:
    changes = patch.model_dump(exclude_none=True)
    return _registry(request).patch(emergency_id, changes).to_dict()
