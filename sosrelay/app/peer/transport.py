"""
transport.py — What the relay channel needs from a short-range radio.

The radio itself (BLE stack, pairing, platform permissions) is an external
capability. Anything that can:

    • advertise a service id with one readable/writable characteristic,
    • report nearby devices advertising a given service id,
    • connect to one of them and read/write that characteristic,

can carry alerts. Discovery is an async event stream consumed by the relay
channel's single coordinating task, not a set of callbacks.

Events
======
    PeerDiscovered   — a nearby device advertising the service id
    PayloadReceived  — a peer wrote bytes to this device's characteristic
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Protocol, Union


@dataclass(frozen=True)
class PeerDevice:
    peer_id: str
    name: str = ""
    rssi: Optional[int] = None


@dataclass(frozen=True)
class PeerDiscovered:
    peer: PeerDevice


@dataclass(frozen=True)
class PayloadReceived:
    peer_id: str
    data: bytes


RelayEvent = Union[PeerDiscovered, PayloadReceived]


class PeerLink(Protocol):
    """An open connection to one peer. Every method may raise PeerLinkError."""

    async def discover_services(self) -> Dict[str, List[str]]:
        """Service id → characteristic ids exposed by the peer."""
        ...

    async def read(self, service_id: str, characteristic_id: str) -> bytes:
        ...

    async def write(self, service_id: str, characteristic_id: str, data: bytes) -> None:
        ...

    async def disconnect(self) -> None:
        ...


class PeerTransport(Protocol):
    async def is_available(self) -> bool:
        """False when the radio is off, missing or not permitted."""
        ...

    async def start_advertising(
        self, service_id: str, characteristic_id: str, payload: bytes,
    ) -> None:
        ...

    async def stop_advertising(self) -> None:
        ...

    def events(self, service_id: str) -> AsyncIterator[RelayEvent]:
        """Scan while iterated; closing the iterator stops the scan."""
        ...

    async def connect(self, peer_id: str) -> PeerLink:
        ...
