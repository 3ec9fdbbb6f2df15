"""
Shared helpers for the propagation tests: record builders, an in-process
backend reachable through httpx, and a polling wait.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, List, Tuple

import httpx

from sosrelay.app.emergency.models import EmergencyRecord, EmergencyType
from sosrelay.app.emergency.registry import EmergencyRegistry
from sosrelay.app.main import create_app
from sosrelay.app.propagation.client import BackendClient

BACKEND_BASE_URL = "http://backend.test"


def make_record(
    emergency_id: str = "E1000",
    name: str = "Sita Tamang",
    location: str = "Tamaghat",
    type: EmergencyType = EmergencyType.ACCIDENT,
    status: str = "Pending",
    **extra: Any,
) -> EmergencyRecord:
    return EmergencyRecord(
        id=emergency_id,
        name=name,
        location=location,
        ward_no=extra.pop("ward_no", "Ward 16"),
        type=type,
        status=status,
        lat=extra.pop("lat", 27.65),
        lng=extra.pop("lng", 85.45),
        **extra,
    )


class SwitchableTransport(httpx.AsyncBaseTransport):
    """ASGI transport to the in-process backend with an on/off network switch."""

    def __init__(self, app: Any):
        self._inner = httpx.ASGITransport(app=app)
        self.online = True
        self.requests: List[Tuple[str, str]] = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        if not self.online:
            raise httpx.ConnectError("network unreachable", request=request)
        return await self._inner.handle_async_request(request)


class Backend:
    """One backend-of-record app plus helpers to make device clients for it."""

    def __init__(self) -> None:
        self.registry = EmergencyRegistry()
        self.app = create_app(self.registry)

    def client(self) -> Tuple[BackendClient, SwitchableTransport]:
        transport = SwitchableTransport(self.app)
        http = httpx.AsyncClient(transport=transport, timeout=5.0)
        return BackendClient(BACKEND_BASE_URL, http_client=http), transport


async def wait_until(
    predicate: Callable[[], bool],
    timeout: float = 3.0,
    interval: float = 0.01,
) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"condition not met within {timeout:.1f}s")
        await asyncio.sleep(interval)
