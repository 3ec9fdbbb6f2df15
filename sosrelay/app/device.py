"""
device.py — One participating device: the propagation component graph.

    ┌────────────────────────────────────────────────────────────────┐
    │ DeviceNode                                                     │
    │                                                                │
    │   raise_sos ──► LocalCache ◄── MergeEngine ──► Notification    │
    │       │             ▲            ▲    ▲         Dispatcher     │
    │       │             │            │    │                        │
    │       ├──► RelayChannel ─────────┘    │   (peer + shared       │
    │       │     advertise / scan          │    storage pass)       │
    │       │                               │                        │
    │       └──► SyncPoller ────────────────┘   (push + pull)        │
    │                 │                                              │
    └─────────────────┼──────────────────────────────────────────────┘
                      ▼
               backend of record

Origin flow (raise_sos): the operator is told "sent" as soon as the record
is in the local cache. Advertising and the backend push happen after that;
a push failure is reported on the warning side channel and retried by the
poller, never raised to the caller.

Alerts absorbed from a peer are re-advertised (multi-hop carry) unless this
device is advertising an alert it raised itself.

Run one device from the command line:
    python -m sosrelay.app.device
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional, Set

from sosrelay.app.core.config import settings
from sosrelay.app.core.database import KeyValueStore
from sosrelay.app.emergency.models import EmergencyRecord, EmergencyType, create_emergency
from sosrelay.app.peer.channel import RelayChannel
from sosrelay.app.peer.transport import PeerTransport
from sosrelay.app.propagation.cache import LocalCache
from sosrelay.app.propagation.client import BackendClient
from sosrelay.app.propagation.dedup import MergeEngine, MergeSource
from sosrelay.app.propagation.notifier import NotificationDispatcher
from sosrelay.app.propagation.poller import PushOutcome, SyncPoller

logger = logging.getLogger(__name__)


@dataclass
class SosReceipt:
    """What the operator sees right after pressing SOS."""
    record: EmergencyRecord
    sent: bool
    advertised: bool = False
    push_task: Optional["asyncio.Task[PushOutcome]"] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.record.id,
            "sent": self.sent,
            "advertised": self.advertised,
            "push_pending": self.push_task is not None and not self.push_task.done(),
        }


class DeviceNode:
    """Cache, merge engine, sync poller and relay channel for one device."""

    def __init__(
        self,
        device_id: str,
        *,
        store: KeyValueStore,
        client: BackendClient,
        transport: Optional[PeerTransport] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        on_warning: Optional[Callable[[str], None]] = None,
        forward_received: Optional[bool] = None,
        poller_options: Optional[Dict[str, Any]] = None,
        relay_options: Optional[Dict[str, Any]] = None,
    ):
        self.device_id = device_id
        self.store = store
        self.client = client
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.cache = LocalCache(store)
        self.engine = MergeEngine(self.cache, self.dispatcher)
        self.poller = SyncPoller(client, self.engine, self.cache, store, **(poller_options or {}))
        self.relay = RelayChannel(transport, self.engine, self.cache, store, **(relay_options or {}))

        self.forward_received = (
            settings.RELAY_FORWARD_RECEIVED if forward_received is None else forward_received
        )
        self.warnings: Deque[str] = deque(maxlen=settings.DEVICE_WARNINGS_MAX)
        self._on_warning = on_warning
        self._own_alert_id: Optional[str] = None
        self._forward_tasks: Set[asyncio.Task] = set()
        self._running = False

        self.engine.add_listener(self._forward)

    @property
    def is_running(self) -> bool:
        return self._running

    # ── Lifecycle ──

    async def start(self) -> None:
        """Load the cache and start sync and relay; no-op when running."""
        if self._running:
            return
        self._running = True
        self.cache.load()
        await self.poller.start()
        await self.relay.start()
        logger.info(
            "Device %s online with %d cached alerts", self.device_id, len(self.cache),
            extra={"device_id": self.device_id},
        )

    async def stop(self) -> None:
        """Tear everything down; safe when never started and when repeated."""
        if not self._running:
            return
        self._running = False
        await self.relay.stop()
        await self.poller.stop()
        await self.relay.withdraw()
        for task in list(self._forward_tasks):
            task.cancel()
        await asyncio.gather(*self._forward_tasks, return_exceptions=True)
        logger.info("Device %s stopped", self.device_id, extra={"device_id": self.device_id})

    async def __aenter__(self) -> "DeviceNode":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # ── Origin flow ──

    async def raise_sos(
        self,
        name: str,
        location: str,
        type: EmergencyType,
        *,
        ward_no: Optional[str] = None,
        phone: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> SosReceipt:
        """
        Originate an alert on this device.

        Returns once the record is in the local cache. The backend push
        runs in the background; a failure lands in ``warnings`` (and the
        ``on_warning`` callback) when it fails.
        """
        record = create_emergency(
            name, location, type,
            ward_no=ward_no, phone=phone, lat=lat, lng=lng,
        )
        self.cache.put(record)
        self._own_alert_id = record.id
        logger.info(
            "SOS %s raised on %s (%s at %s)", record.id, self.device_id,
            record.type.value, record.location,
            extra={"alert_id": record.id, "device_id": self.device_id},
        )

        advertised = await self.relay.advertise(record)
        push_task = self.poller.push_detached(record, self._report_push)
        return SosReceipt(record=record, sent=True, advertised=advertised, push_task=push_task)

    def _report_push(self, outcome: PushOutcome) -> None:
        if outcome.success:
            return
        message = (
            f"Alert {outcome.alert_id} saved on this device but not yet synced "
            f"({outcome.error}); it will be retried automatically."
        )
        self._warn(message)

    def _warn(self, message: str) -> None:
        self.warnings.append(message)
        logger.warning(message, extra={"device_id": self.device_id})
        if self._on_warning is not None:
            try:
                self._on_warning(message)
            except Exception as exc:
                logger.error("Warning callback failed: %s", exc)

    # ── Multi-hop carry ──

    def _advertising_own_alert(self) -> bool:
        return self._own_alert_id is not None and self.relay.advertised_id == self._own_alert_id

    def _forward(self, record: EmergencyRecord, source: MergeSource) -> None:
        if not self.forward_received or source is not MergeSource.PEER or record.is_terminal:
            return
        if not self._running or self._advertising_own_alert():
            return
        task = asyncio.create_task(self._carry(record), name=f"forward-{record.id}")
        self._forward_tasks.add(task)
        task.add_done_callback(self._forward_tasks.discard)

    async def _carry(self, record: EmergencyRecord) -> None:
        if not self._running or self._advertising_own_alert():
            return
        logger.info(
            "Carrying alert %s for onward relay", record.id,
            extra={"alert_id": record.id, "device_id": self.device_id},
        )
        await self.relay.advertise(record)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

async def _run_device() -> None:
    device_id = settings.DEVICE_ID
    store = KeyValueStore(settings.STORE_URL)
    client = BackendClient(device_id=device_id)
    node = DeviceNode(device_id, store=store, client=client)
    try:
        async with node:
            while True:
                await asyncio.sleep(3600)
    finally:
        await client.close()
        store.close()


if __name__ == "__main__":
    from sosrelay.app.core.logging_config import bind_log_context, setup_logging

    setup_logging()
    bind_log_context(device_id=settings.DEVICE_ID)
    try:
        asyncio.run(_run_device())
    except KeyboardInterrupt:
        logger.info("Device %s interrupted", settings.DEVICE_ID)
