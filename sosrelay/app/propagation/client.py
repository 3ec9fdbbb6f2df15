"""
client.py — Async HTTP client for the backend of record.

The backend exposes a json-server style collection:

    GET   {prefix}/emergencies?_sort=id&_order=desc&_limit=50
    POST  {prefix}/emergencies           (full record, 201; 409 if id exists)
    PATCH {prefix}/emergencies/{id}      (partial update)
    POST  {prefix}/sos-alert             (server-assigned defaults)

Error handling strategy
=======================
    Transport errors (DNS, refused, timeout)  → BackendUnavailableError
    HTTP 409 on create                        → DuplicateEmergencyError
    Any other non-2xx                         → BackendUnavailableError
    Unparseable items in a list response      → skipped with a warning

Callers on the device treat BackendUnavailableError as transient: the
record stays in the outbox / the pull is retried on the next cycle.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from sosrelay.app.core.config import settings
from sosrelay.app.core.errors import BackendUnavailableError, DuplicateEmergencyError
from sosrelay.app.emergency.models import EmergencyRecord, EmergencyType

logger = logging.getLogger(__name__)

_NO_CACHE_HEADERS = {
    "Accept": "application/json",
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
}


class BackendClient:
    """
    Thin typed wrapper over httpx.AsyncClient.

    Usage:
        client = BackendClient("http://10.0.0.5:3001")
        records = await client.list_emergencies(limit=20)
        await client.close()

    Tests inject a preconfigured ``httpx.AsyncClient`` (e.g. one bound to
    the FastAPI app through ``httpx.ASGITransport``).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        api_prefix: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        device_id: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.BACKEND_URL).rstrip("/")
        self.api_prefix = api_prefix if api_prefix is not None else settings.BACKEND_API_PREFIX
        self.timeout_seconds = timeout_seconds or settings.BACKEND_TIMEOUT_SECONDS
        self._headers = dict(_NO_CACHE_HEADERS)
        if device_id:
            self._headers["X-Device-ID"] = device_id
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client (only if this instance created it)."""
        if self._owns_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{self.api_prefix}{path}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(
                method, self._url(path), headers=self._headers, **kwargs,
            )
        except httpx.HTTPError as exc:
            raise BackendUnavailableError(f"{method} {path}: {exc!r}") from exc

        if response.status_code >= 400:
            raise BackendUnavailableError(
                f"{method} {path} → HTTP {response.status_code}",
                upstream_status=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise BackendUnavailableError(f"invalid JSON body: {exc}") from exc

    # ── Collection ──

    async def list_emergencies(
        self,
        *,
        sort: str = "id",
        order: str = "desc",
        limit: Optional[int] = None,
        status: Optional[str] = None,
    ) -> List[EmergencyRecord]:
        params: Dict[str, Any] = {"_sort": sort, "_order": order}
        if limit:
            params["_limit"] = limit
        if status:
            params["status"] = status

        body = self._json(await self._request("GET", "/emergencies", params=params))
        if not isinstance(body, list):
            raise BackendUnavailableError("expected a list of emergencies")

        records: List[EmergencyRecord] = []
        for item in body:
            try:
                records.append(EmergencyRecord.model_validate(item))
            except PydanticValidationError as exc:
                logger.warning(
                    "Skipping unreadable emergency from backend (%s): %s",
                    item.get("id") if isinstance(item, dict) else "?",
                    exc.errors()[:1],
                )
        return records

    async def create_emergency(self, record: EmergencyRecord) -> EmergencyRecord:
        try:
            response = await self._request("POST", "/emergencies", json=record.to_dict())
        except BackendUnavailableError as exc:
            if exc.upstream_status == 409:
                raise DuplicateEmergencyError(record.id) from exc
            raise
        return self._parse_record(response, fallback=record)

    async def update_status(self, emergency_id: str, status: Any) -> EmergencyRecord:
        status_text = getattr(status, "value", status)
        response = await self._request(
            "PATCH", f"/emergencies/{emergency_id}", json={"status": status_text},
        )
        return self._parse_record(response)

    async def submit_sos(
        self,
        name: str,
        location: str,
        type: EmergencyType,
        *,
        ward_no: Optional[str] = None,
        phone: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> EmergencyRecord:
        """Create through the custom SOS endpoint (server-assigned fields)."""
        payload: Dict[str, Any] = {
            "name": name,
            "location": location,
            "type": getattr(type, "value", type),
        }
        optional = {"wardNo": ward_no, "phone": phone, "lat": lat, "lng": lng}
        payload.update({k: v for k, v in optional.items() if v is not None})

        body = self._json(await self._request("POST", "/sos-alert", json=payload))
        try:
            return EmergencyRecord.model_validate(body["emergency"])
        except (KeyError, TypeError, PydanticValidationError) as exc:
            raise BackendUnavailableError(f"unexpected sos-alert response: {exc}") from exc

    def _parse_record(
        self,
        response: httpx.Response,
        fallback: Optional[EmergencyRecord] = None,
    ) -> EmergencyRecord:
        try:
            return EmergencyRecord.model_validate(self._json(response))
        except (BackendUnavailableError, PydanticValidationError) as exc:
            if fallback is not None:
                # Some json-server setups answer POST with an empty body.
                logger.debug("Backend returned no usable record body: %s", exc)
                return fallback
            raise BackendUnavailableError(f"unexpected record body: {exc}") from exc
