"""
channel.py — Peer discovery & relay channel.

Makes this device's active alert discoverable to nearby devices and absorbs
alerts from them, with no internet connection on either side.

═══════════════════════════════════════════════════════════════════════════
PATHS
═══════════════════════════════════════════════════════════════════════════

    advertise(record)   write sos_<id> backup, publish the encoded alert on
                        the well-known service / characteristic
    scan                one coordinating task consumes the transport's
                        event stream:
                          PeerDiscovered  → bounded peer interaction
                          PayloadReceived → decode → merge
                        a radio that is off at start, or a stream that
                        ends, is retried on every fallback pass
    fallback pass       every ~10 s, re-read every sos_<id> backup in the
                        durable store (own alerts included), merge what
                        the cache has not seen and delete backups of
                        alerts it has already pruned

═══════════════════════════════════════════════════════════════════════════
PEER INTERACTION
═══════════════════════════════════════════════════════════════════════════

    connect ─► settle ─► discover services ─► read alert ─► (write ours) ─► disconnect

Each step is bounded by a timeout. Any failure aborts this peer only and
is logged; other peers and the scan carry on. A peer already being
interacted with is never attempted twice concurrently, and a peer contacted
within the cooldown is not attempted again.

stop() cancels in-flight peer interactions; results that still complete
after stop() are discarded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, FrozenSet, List, Optional, Set

from sosrelay.app.core.config import settings
from sosrelay.app.core.database import KeyValueStore
from sosrelay.app.core.errors import (
    CapabilityUnavailableError,
    MalformedPayloadError,
    StorageError,
)
from sosrelay.app.emergency.models import EmergencyRecord
from sosrelay.app.peer.codec import decode_payload, encode_payload
from sosrelay.app.peer.transport import (
    PayloadReceived,
    PeerDevice,
    PeerDiscovered,
    PeerTransport,
    RelayEvent,
)
from sosrelay.app.propagation.cache import LocalCache
from sosrelay.app.propagation.dedup import MergeEngine, MergeSource

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "sos_"


def backup_key(emergency_id: str) -> str:
    return f"{BACKUP_PREFIX}{emergency_id}"


class RelayChannel:
    """Advertise, scan and fallback-poll for SOS alerts."""

    def __init__(
        self,
        transport: Optional[PeerTransport],
        engine: MergeEngine,
        cache: LocalCache,
        store: KeyValueStore,
        *,
        service_id: Optional[str] = None,
        characteristic_id: Optional[str] = None,
        fallback_interval_seconds: Optional[float] = None,
        step_timeout_seconds: Optional[float] = None,
        link_settle_seconds: Optional[float] = None,
        peer_cooldown_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._transport = transport
        self._engine = engine
        self._cache = cache
        self._store = store
        self.service_id = service_id or settings.RELAY_SERVICE_UUID
        self.characteristic_id = characteristic_id or settings.RELAY_CHARACTERISTIC_UUID
        self.fallback_interval_seconds = (
            fallback_interval_seconds or settings.RELAY_FALLBACK_INTERVAL_SECONDS
        )
        self.step_timeout_seconds = step_timeout_seconds or settings.RELAY_STEP_TIMEOUT_SECONDS
        self.link_settle_seconds = (
            settings.RELAY_LINK_SETTLE_SECONDS if link_settle_seconds is None else link_settle_seconds
        )
        self.peer_cooldown_seconds = (
            settings.RELAY_PEER_COOLDOWN_SECONDS if peer_cooldown_seconds is None else peer_cooldown_seconds
        )
        self._clock = clock

        self._scanning = False
        self._generation = 0
        self._events_task: Optional[asyncio.Task] = None
        self._fallback_task: Optional[asyncio.Task] = None
        self._peer_tasks: Set[asyncio.Task] = set()
        self._in_progress: Set[str] = set()
        self._discovered: Dict[str, PeerDevice] = {}
        self._last_contact: Dict[str, float] = {}

        self._outgoing: Optional[bytes] = None
        self._outgoing_id: Optional[str] = None
        self._advertising = False

    # ── State ──

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    @property
    def is_advertising(self) -> bool:
        return self._advertising

    @property
    def advertised_id(self) -> Optional[str]:
        return self._outgoing_id

    @property
    def discovered_peers(self) -> List[PeerDevice]:
        return list(self._discovered.values())

    @property
    def in_progress(self) -> FrozenSet[str]:
        return frozenset(self._in_progress)

    # ── Advertise ──

    async def advertise(self, record: EmergencyRecord) -> bool:
        """
        Make ``record`` available to nearby devices.

        The durable backup is written first so the fallback pass sees the
        alert even when the radio is unavailable. Returns True only when
        the radio is actually advertising.
        """
        try:
            payload = encode_payload(record)
        except MalformedPayloadError as exc:
            logger.error("Cannot relay alert %s: %s", record.id, exc.message)
            return False

        try:
            self._store.set(backup_key(record.id), payload.decode("utf-8"))
        except StorageError as exc:
            logger.warning("Could not write relay backup for %s: %s", record.id, exc)

        self._outgoing = payload
        self._outgoing_id = record.id

        if self._transport is None:
            logger.info("No relay radio; alert %s kept for shared-storage pickup", record.id)
            return False
        try:
            if not await self._transport.is_available():
                logger.warning("Relay radio unavailable; alert %s not advertised", record.id)
                return False
            await self._transport.start_advertising(
                self.service_id, self.characteristic_id, payload,
            )
        except Exception as exc:
            logger.warning(
                "Advertising alert %s failed: %s", record.id, exc,
                extra={"alert_id": record.id},
            )
            return False

        self._advertising = True
        logger.info("Advertising alert %s to nearby devices", record.id, extra={"alert_id": record.id})
        return True

    async def withdraw(self) -> None:
        """Stop advertising; the durable backup stays."""
        self._outgoing = None
        self._outgoing_id = None
        if not self._advertising or self._transport is None:
            self._advertising = False
            return
        self._advertising = False
        try:
            await self._transport.stop_advertising()
        except Exception as exc:
            logger.warning("Stopping advertisement failed: %s", exc)

    # ── Scan lifecycle ──

    async def start(self) -> None:
        """Start scanning and the fallback pass; no-op when already active."""
        if self._scanning:
            logger.debug("Relay scan already active")
            return
        self._scanning = True
        generation = self._generation

        radio_ok = await self._ensure_scan()
        if self._transport is None:
            logger.warning("No relay radio configured; running shared-storage pass only")
        elif not radio_ok:
            logger.warning("Relay radio unavailable; retrying with each shared-storage pass")

        if generation != self._generation or not self._scanning:
            return

        self._fallback_task = asyncio.create_task(self._run_fallback(), name="relay-fallback")
        logger.info(
            "Relay channel started (scan=%s, fallback every %.0fs)",
            "on" if radio_ok else "off", self.fallback_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop scanning; safe when never started and when repeated."""
        if not self._scanning:
            return
        self._scanning = False
        self._generation += 1

        tasks = [t for t in (self._events_task, self._fallback_task) if t is not None]
        tasks.extend(self._peer_tasks)
        self._events_task = None
        self._fallback_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._discovered.clear()
        self._last_contact.clear()
        logger.info("Relay channel stopped")

    async def _ensure_scan(self) -> bool:
        """Attach the scan stream unless one is running; False while the radio is unusable."""
        if self._transport is None:
            return False
        if self._events_task is not None and not self._events_task.done():
            return True

        generation = self._generation
        try:
            radio_ok = await self._transport.is_available()
        except Exception as exc:
            logger.warning("Relay radio check failed: %s", exc)
            return False
        if not radio_ok or generation != self._generation or not self._scanning:
            return False

        self._events_task = asyncio.create_task(self._run_events(), name="relay-scan")
        logger.info("Relay scan attached")
        return True

    async def _run_events(self) -> None:
        assert self._transport is not None
        try:
            async for event in self._transport.events(self.service_id):
                self._handle_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Relay scan stream ended (%s); reattaching on next pass", exc)

    async def _run_fallback(self) -> None:
        while True:
            await asyncio.sleep(self.fallback_interval_seconds)
            await self._ensure_scan()
            try:
                self.fallback_scan()
            except Exception:
                logger.exception("Shared-storage pass failed")

    def _handle_event(self, event: RelayEvent) -> None:
        if isinstance(event, PayloadReceived):
            self._absorb(event.data, event.peer_id, self._generation)
        elif isinstance(event, PeerDiscovered):
            self._on_discovered(event.peer)

    def _on_discovered(self, peer: PeerDevice) -> None:
        self._discovered[peer.peer_id] = peer
        if peer.peer_id in self._in_progress:
            logger.debug("Peer %s already in progress", peer.peer_id)
            return
        last = self._last_contact.get(peer.peer_id)
        if last is not None and self._clock() - last < self.peer_cooldown_seconds:
            return

        logger.info("Found alert-bearing peer %s", peer.peer_id, extra={"peer_id": peer.peer_id})
        self._in_progress.add(peer.peer_id)
        task = asyncio.create_task(self._interact(peer), name=f"relay-peer-{peer.peer_id}")
        self._peer_tasks.add(task)
        task.add_done_callback(self._peer_tasks.discard)

    # ── Peer interaction ──

    async def _interact(self, peer: PeerDevice) -> None:
        assert self._transport is not None
        generation = self._generation
        timeout = self.step_timeout_seconds
        link = None
        try:
            link = await asyncio.wait_for(self._transport.connect(peer.peer_id), timeout)
            if self.link_settle_seconds > 0:
                await asyncio.sleep(self.link_settle_seconds)

            services = await asyncio.wait_for(link.discover_services(), timeout)
            if self.characteristic_id not in services.get(self.service_id, []):
                raise CapabilityUnavailableError(
                    "sos-characteristic", f"not exposed by {peer.peer_id}",
                )

            data = await asyncio.wait_for(
                link.read(self.service_id, self.characteristic_id), timeout,
            )
            remote_id = self._absorb(data, peer.peer_id, generation)

            outgoing, outgoing_id = self._outgoing, self._outgoing_id
            if outgoing is not None and outgoing_id != remote_id:
                await asyncio.wait_for(
                    link.write(self.service_id, self.characteristic_id, outgoing), timeout,
                )
                logger.info(
                    "Relayed alert %s to peer %s", outgoing_id, peer.peer_id,
                    extra={"alert_id": outgoing_id, "peer_id": peer.peer_id},
                )
        except asyncio.TimeoutError:
            logger.warning("Peer %s timed out; skipping", peer.peer_id, extra={"peer_id": peer.peer_id})
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "Peer %s interaction aborted: %s", peer.peer_id, exc,
                extra={"peer_id": peer.peer_id},
            )
        finally:
            if link is not None:
                try:
                    await asyncio.wait_for(link.disconnect(), timeout)
                except Exception as exc:
                    logger.debug("Disconnect from %s failed: %s", peer.peer_id, exc)
            self._last_contact[peer.peer_id] = self._clock()
            self._in_progress.discard(peer.peer_id)

    def _absorb(self, data: bytes, peer_id: str, generation: int) -> Optional[str]:
        """Decode and merge a peer payload; returns the alert id when decodable."""
        try:
            record = decode_payload(data)
        except MalformedPayloadError as exc:
            logger.warning(
                "Dropping malformed payload from %s: %s", peer_id, exc.message,
                extra={"peer_id": peer_id},
            )
            return None

        if generation != self._generation or not self._scanning:
            logger.debug("Relay stopped; discarding alert %s from %s", record.id, peer_id)
            return record.id

        self._engine.merge(record, MergeSource.PEER)
        return record.id

    # ── Shared-storage fallback ──

    def fallback_scan(self) -> int:
        """
        Merge every persisted sos_<id> backup the cache has not seen yet.

        Backups of alerts the cache has already pruned are deleted, so the
        backups stay bounded together with the cache.
        """
        try:
            keys = self._store.keys(BACKUP_PREFIX)
        except StorageError as exc:
            logger.warning("Shared-storage pass could not list backups: %s", exc)
            return 0

        merged = 0
        for key in keys:
            try:
                raw = self._store.get(key)
            except StorageError as exc:
                logger.warning("Shared-storage pass could not read %s: %s", key, exc)
                continue
            if raw is None:
                continue
            try:
                record = decode_payload(raw.encode("utf-8"))
            except MalformedPayloadError as exc:
                logger.warning("Skipping unreadable backup %s: %s", key, exc.message)
                continue
            if self._is_stale(record.id):
                self._drop_backup(key)
                continue
            if self._engine.merge(record, MergeSource.SHARED_STORAGE):
                merged += 1

        if merged:
            logger.info("Shared-storage pass merged %d alert(s)", merged)
        return merged

    def _is_stale(self, emergency_id: str) -> bool:
        return (
            emergency_id != self._outgoing_id
            and self._cache.has_seen(emergency_id)
            and not self._cache.contains(emergency_id)
        )

    def _drop_backup(self, key: str) -> None:
        try:
            self._store.delete(key)
        except StorageError as exc:
            logger.warning("Could not delete stale backup %s: %s", key, exc)
            return
        logger.debug("Deleted stale backup %s", key)
