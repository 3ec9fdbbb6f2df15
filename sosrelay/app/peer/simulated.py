"""
simulated.py — In-process radio for tests, demos and local simulation.

A SimulatedAirspace is a shared neighbourhood: every SimulatedTransport
registered with it is in range of every other one. Advertising a service
announces the device to everyone currently scanning for that service;
starting a scan reports everyone already advertising it. Writes to a
device's characteristic surface on that device's scan stream as
PayloadReceived events.

Fault injection mirrors what goes wrong in the field:
    powered = False     radio off / permission missing
    fail_connect        peer ids whose connection attempt fails
    fail_read           peer ids whose characteristic read drops the link
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple

from sosrelay.app.core.errors import CapabilityUnavailableError, PeerLinkError
from sosrelay.app.peer.transport import (
    PayloadReceived,
    PeerDevice,
    PeerDiscovered,
    RelayEvent,
)

logger = logging.getLogger(__name__)


class SimulatedAirspace:
    """Registry of simulated radios that can hear each other."""

    def __init__(self) -> None:
        self._radios: Dict[str, "SimulatedTransport"] = {}

    def register(self, radio: "SimulatedTransport") -> None:
        self._radios[radio.device_id] = radio

    def get(self, device_id: str) -> Optional["SimulatedTransport"]:
        return self._radios.get(device_id)

    def advertisers(self, service_id: str, *, exclude: str) -> List["SimulatedTransport"]:
        return [
            radio for radio in self._radios.values()
            if radio.device_id != exclude and radio.powered and radio.advertises(service_id)
        ]

    def announce(self, radio: "SimulatedTransport") -> None:
        """Tell every scanner of the radio's service that it is nearby."""
        if radio.advert is None:
            return
        service_id = radio.advert[0]
        for other in self._radios.values():
            if other.device_id != radio.device_id:
                other.notify(service_id, PeerDiscovered(radio.device))

    def beacon(self) -> None:
        """Re-announce every advertiser (periodic advertising packets)."""
        for radio in list(self._radios.values()):
            if radio.powered:
                self.announce(radio)


class SimulatedTransport:
    """One device's radio inside a SimulatedAirspace."""

    def __init__(
        self,
        airspace: SimulatedAirspace,
        device_id: str,
        *,
        name: str = "",
        powered: bool = True,
    ):
        self.airspace = airspace
        self.device_id = device_id
        self.device = PeerDevice(peer_id=device_id, name=name or device_id)
        self.powered = powered
        self.fail_connect: Set[str] = set()
        self.fail_read: Set[str] = set()
        self.advert: Optional[Tuple[str, str, bytes]] = None
        self.connect_attempts: List[str] = []
        self._scans: Dict[str, asyncio.Queue] = {}
        airspace.register(self)

    def advertises(self, service_id: str) -> bool:
        return self.advert is not None and self.advert[0] == service_id

    def notify(self, service_id: str, event: RelayEvent) -> None:
        queue = self._scans.get(service_id)
        if queue is not None and self.powered:
            queue.put_nowait(event)

    # ── PeerTransport ──

    async def is_available(self) -> bool:
        return self.powered

    async def start_advertising(
        self, service_id: str, characteristic_id: str, payload: bytes,
    ) -> None:
        if not self.powered:
            raise CapabilityUnavailableError("radio", "powered off")
        self.advert = (service_id, characteristic_id, bytes(payload))
        self.airspace.announce(self)

    async def stop_advertising(self) -> None:
        self.advert = None

    async def events(self, service_id: str) -> AsyncIterator[RelayEvent]:
        if not self.powered:
            raise CapabilityUnavailableError("radio", "powered off")
        queue: asyncio.Queue = asyncio.Queue()
        self._scans[service_id] = queue
        for radio in self.airspace.advertisers(service_id, exclude=self.device_id):
            queue.put_nowait(PeerDiscovered(radio.device))
        try:
            while True:
                yield await queue.get()
        finally:
            self._scans.pop(service_id, None)

    async def connect(self, peer_id: str) -> "SimulatedLink":
        self.connect_attempts.append(peer_id)
        await asyncio.sleep(0)
        target = self.airspace.get(peer_id)
        if not self.powered:
            raise PeerLinkError(peer_id, "connect", "local radio off")
        if target is None or not target.powered:
            raise PeerLinkError(peer_id, "connect", "peer out of range")
        if peer_id in self.fail_connect:
            raise PeerLinkError(peer_id, "connect", "link refused")
        return SimulatedLink(self, target)

    def receive_write(self, from_id: str, service_id: str, characteristic_id: str, data: bytes) -> None:
        if self.advert is None or self.advert[:2] != (service_id, characteristic_id):
            raise PeerLinkError(self.device_id, "write", "characteristic not exposed")
        self.notify(service_id, PayloadReceived(peer_id=from_id, data=bytes(data)))


class SimulatedLink:
    """Open connection from ``source`` to ``target``."""

    def __init__(self, source: SimulatedTransport, target: SimulatedTransport):
        self._source = source
        self._target = target
        self._open = True

    def _check(self, step: str) -> None:
        if not self._open:
            raise PeerLinkError(self._target.device_id, step, "link closed")
        if not self._target.powered:
            raise PeerLinkError(self._target.device_id, step, "link dropped")

    async def discover_services(self) -> Dict[str, List[str]]:
        self._check("discover")
        await asyncio.sleep(0)
        if self._target.advert is None:
            return {}
        service_id, characteristic_id, _ = self._target.advert
        return {service_id: [characteristic_id]}

    async def read(self, service_id: str, characteristic_id: str) -> bytes:
        self._check("read")
        await asyncio.sleep(0)
        if self._target.device_id in self._source.fail_read:
            raise PeerLinkError(self._target.device_id, "read", "link dropped mid-read")
        advert = self._target.advert
        if advert is None or advert[:2] != (service_id, characteristic_id):
            raise PeerLinkError(self._target.device_id, "read", "characteristic not exposed")
        return advert[2]

    async def write(self, service_id: str, characteristic_id: str, data: bytes) -> None:
        self._check("write")
        await asyncio.sleep(0)
        self._target.receive_write(self._source.device_id, service_id, characteristic_id, data)

    async def disconnect(self) -> None:
        self._open = False
