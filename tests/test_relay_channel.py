"""
test_relay_channel.py — Peer advertise/scan/relay over the simulated radio,
and the shared-storage fallback pass.

Run with:
    pytest tests/test_relay_channel.py -v
"""

from __future__ import annotations

import asyncio
from typing import Optional

from unittest.mock import patch

from sosrelay.app.core.config import settings
from sosrelay.app.core.database import KeyValueStore
from sosrelay.app.core.errors import PeerLinkError
from sosrelay.app.peer.channel import RelayChannel, backup_key
from sosrelay.app.peer.codec import decode_payload, encode_payload
from sosrelay.app.peer.simulated import SimulatedAirspace, SimulatedLink, SimulatedTransport
from sosrelay.app.propagation.cache import LocalCache
from sosrelay.app.propagation.dedup import MergeEngine
from sosrelay.app.propagation.notifier import NotificationDispatcher

from support import make_record, wait_until

SERVICE = settings.RELAY_SERVICE_UUID
CHARACTERISTIC = settings.RELAY_CHARACTERISTIC_UUID


class Phone:
    """One device's relay stack on a simulated radio."""

    def __init__(self, airspace: Optional[SimulatedAirspace], device_id: str, **options):
        options.setdefault("fallback_interval_seconds", 0.05)
        options.setdefault("step_timeout_seconds", 1.0)
        options.setdefault("link_settle_seconds", 0)
        options.setdefault("peer_cooldown_seconds", 30)
        self.store = KeyValueStore("sqlite://")
        self.cache = LocalCache(self.store)
        self.dispatcher = NotificationDispatcher(sink=lambda notification: None)
        self.engine = MergeEngine(self.cache, self.dispatcher)
        self.radio = SimulatedTransport(airspace, device_id) if airspace is not None else None
        self.channel = RelayChannel(self.radio, self.engine, self.cache, self.store, **options)

    async def originate(self, record):
        self.cache.put(record)
        return await self.channel.advertise(record)

    def notified(self):
        return [n.alert_id for n in self.dispatcher.delivered]


# ═══════════════════════════════════════════════════════════════════════════
# Advertise
# ═══════════════════════════════════════════════════════════════════════════

class TestAdvertise:

    def test_writes_backup_and_publishes(self):
        airspace = SimulatedAirspace()
        a = Phone(airspace, "A")
        record = make_record("E1")

        assert asyncio.run(a.channel.advertise(record))
        assert decode_payload(a.store.get(backup_key("E1")).encode()) == record
        assert a.radio.advert == (SERVICE, CHARACTERISTIC, encode_payload(record))
        assert a.channel.is_advertising
        assert a.channel.advertised_id == "E1"

    def test_radio_off_still_writes_backup(self):
        a = Phone(SimulatedAirspace(), "A")
        a.radio.powered = False
        assert not asyncio.run(a.channel.advertise(make_record("E1")))
        assert a.store.get(backup_key("E1")) is not None
        assert not a.channel.is_advertising

    def test_no_radio_still_writes_backup(self):
        a = Phone(None, "A")
        assert not asyncio.run(a.channel.advertise(make_record("E1")))
        assert a.store.keys("sos_") == ["sos_E1"]

    def test_withdraw(self):
        a = Phone(SimulatedAirspace(), "A")

        async def scenario():
            await a.channel.advertise(make_record("E1"))
            await a.channel.withdraw()
            await a.channel.withdraw()

        asyncio.run(scenario())
        assert a.radio.advert is None
        assert a.channel.advertised_id is None
        assert a.store.get(backup_key("E1")) is not None


# ═══════════════════════════════════════════════════════════════════════════
# Scan & relay
# ═══════════════════════════════════════════════════════════════════════════

class TestRelay:

    def test_scanner_absorbs_advertised_alert(self):
        airspace = SimulatedAirspace()
        a, b = Phone(airspace, "A"), Phone(airspace, "B")

        async def scenario():
            await a.originate(make_record("E1"))
            await b.channel.start()
            await wait_until(lambda: b.cache.contains("E1"))
            await b.channel.stop()

        asyncio.run(scenario())
        assert b.notified() == ["E1"]
        assert a.notified() == []

    def test_alert_discovered_while_scanning(self):
        airspace = SimulatedAirspace()
        a, b = Phone(airspace, "A"), Phone(airspace, "B")

        async def scenario():
            await b.channel.start()
            await asyncio.sleep(0.01)
            await a.originate(make_record("E1"))
            await wait_until(lambda: b.cache.contains("E1"))
            assert [p.peer_id for p in b.channel.discovered_peers] == ["A"]
            await b.channel.stop()

        asyncio.run(scenario())
        assert b.channel.discovered_peers == []

    def test_two_originators_exchange_alerts(self):
        airspace = SimulatedAirspace()
        a, b = Phone(airspace, "A"), Phone(airspace, "B")

        async def scenario():
            await a.originate(make_record("E1"))
            await b.originate(make_record("E2"))
            await a.channel.start()
            await b.channel.start()
            await wait_until(lambda: a.cache.contains("E2") and b.cache.contains("E1"))
            await asyncio.sleep(0.1)
            await a.channel.stop()
            await b.channel.stop()

        asyncio.run(scenario())
        assert a.notified() == ["E2"]
        assert b.notified() == ["E1"]

    def test_payload_written_by_peer_is_merged(self):
        airspace = SimulatedAirspace()
        a = Phone(airspace, "A")
        carrier = SimulatedTransport(airspace, "C")

        async def scenario():
            await a.originate(make_record("E1"))
            await a.channel.start()
            await asyncio.sleep(0.01)
            link = await carrier.connect("A")
            await link.write(SERVICE, CHARACTERISTIC, encode_payload(make_record("E7")))
            await link.disconnect()
            await wait_until(lambda: a.cache.contains("E7"))
            await a.channel.stop()

        asyncio.run(scenario())
        assert a.notified() == ["E7"]

    def test_connect_failure_skips_only_that_peer(self):
        airspace = SimulatedAirspace()
        a, b, c = Phone(airspace, "A"), Phone(airspace, "B"), Phone(airspace, "C")
        b.radio.fail_connect.add("A")

        async def scenario():
            await a.originate(make_record("E1"))
            await c.originate(make_record("E3"))
            await b.channel.start()
            await wait_until(lambda: b.cache.contains("E3"))
            await wait_until(lambda: "A" in b.radio.connect_attempts and not b.channel.in_progress)
            assert b.channel.is_scanning
            await b.channel.stop()

        asyncio.run(scenario())
        assert not b.cache.contains("E1")

    def test_read_failure_is_contained(self):
        airspace = SimulatedAirspace()
        a, b = Phone(airspace, "A"), Phone(airspace, "B")
        b.radio.fail_read.add("A")

        async def scenario():
            await a.originate(make_record("E1"))
            await b.channel.start()
            await wait_until(lambda: "A" in b.radio.connect_attempts and not b.channel.in_progress)
            assert b.channel.is_scanning
            await b.channel.stop()

        asyncio.run(scenario())
        assert len(b.cache) == 0

    def test_malformed_payload_dropped(self, caplog):
        airspace = SimulatedAirspace()
        a, b, c = Phone(airspace, "A"), Phone(airspace, "B"), Phone(airspace, "C")

        async def scenario():
            a.radio.advert = (SERVICE, CHARACTERISTIC, b"\x00not-an-alert")
            await c.originate(make_record("E3"))
            await b.channel.start()
            await wait_until(lambda: b.cache.contains("E3"))
            await wait_until(lambda: "A" in b.radio.connect_attempts and not b.channel.in_progress)
            await b.channel.stop()

        with caplog.at_level("WARNING"):
            asyncio.run(scenario())
        assert [r.id for r in b.cache.records()] == ["E3"]
        assert "malformed payload from A" in caplog.text

    def test_peer_without_characteristic_skipped(self):
        airspace = SimulatedAirspace()
        a, b = Phone(airspace, "A"), Phone(airspace, "B")

        async def scenario():
            a.radio.advert = (SERVICE, "other-characteristic", encode_payload(make_record("E1")))
            await b.channel.start()
            await wait_until(lambda: "A" in b.radio.connect_attempts and not b.channel.in_progress)
            await b.channel.stop()

        asyncio.run(scenario())
        assert len(b.cache) == 0

    def test_slow_step_times_out(self):
        airspace = SimulatedAirspace()
        a = Phone(airspace, "A")
        b = Phone(airspace, "B", step_timeout_seconds=0.05)

        async def stalled_read(self, service_id, characteristic_id):
            await asyncio.sleep(10)

        async def scenario():
            await a.originate(make_record("E1"))
            with patch.object(SimulatedLink, "read", stalled_read):
                await b.channel.start()
                await wait_until(lambda: "A" in b.radio.connect_attempts)
                await wait_until(lambda: not b.channel.in_progress)
            await b.channel.stop()

        asyncio.run(scenario())
        assert len(b.cache) == 0

    def test_recently_contacted_peer_not_retried(self):
        airspace = SimulatedAirspace()
        a, b = Phone(airspace, "A"), Phone(airspace, "B")

        async def scenario():
            await a.originate(make_record("E1"))
            await b.channel.start()
            await wait_until(lambda: b.cache.contains("E1") and not b.channel.in_progress)
            airspace.beacon()
            airspace.beacon()
            await asyncio.sleep(0.05)
            await b.channel.stop()

        asyncio.run(scenario())
        assert b.radio.connect_attempts == ["A"]

    def test_results_after_stop_are_discarded(self):
        b = Phone(SimulatedAirspace(), "B")

        async def scenario():
            await b.channel.start()
            generation = b.channel._generation
            await b.channel.stop()
            return b.channel._absorb(encode_payload(make_record("E1")), "A", generation)

        assert asyncio.run(scenario()) == "E1"
        assert len(b.cache) == 0


# ═══════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestLifecycle:

    def test_start_and_stop_are_idempotent(self):
        b = Phone(SimulatedAirspace(), "B")

        async def scenario():
            await b.channel.stop()
            await b.channel.start()
            task = b.channel._events_task
            await b.channel.start()
            assert b.channel._events_task is task
            await b.channel.stop()
            await b.channel.stop()

        asyncio.run(scenario())
        assert not b.channel.is_scanning

    def test_radio_off_degrades_to_fallback(self):
        b = Phone(SimulatedAirspace(), "B")
        b.radio.powered = False
        b.store.set(backup_key("E9"), encode_payload(make_record("E9")).decode())

        async def scenario():
            await b.channel.start()
            assert b.channel._events_task is None
            await wait_until(lambda: b.cache.contains("E9"))
            await b.channel.stop()

        asyncio.run(scenario())

    def test_no_transport_degrades_to_fallback(self):
        b = Phone(None, "B")
        b.store.set(backup_key("E9"), encode_payload(make_record("E9")).decode())

        async def scenario():
            await b.channel.start()
            assert b.channel.is_scanning
            await wait_until(lambda: b.cache.contains("E9"))
            await b.channel.stop()

        asyncio.run(scenario())

    def test_radio_powered_on_later_attaches_scan(self):
        airspace = SimulatedAirspace()
        a, b = Phone(airspace, "A"), Phone(airspace, "B")
        b.radio.powered = False

        async def scenario():
            await b.channel.start()
            assert b.channel._events_task is None
            b.radio.powered = True
            await a.originate(make_record("E1"))
            await wait_until(lambda: b.cache.contains("E1"))
            await b.channel.stop()

        asyncio.run(scenario())
        assert b.notified() == ["E1"]

    def test_ended_scan_stream_is_reattached(self):
        airspace = SimulatedAirspace()
        a, b = Phone(airspace, "A"), Phone(airspace, "B")
        original_events = SimulatedTransport.events
        attached = []

        async def flaky_events(self, service_id):
            attached.append(service_id)
            if len(attached) == 1:
                raise PeerLinkError(self.device_id, "scan", "radio stack reset")
            async for event in original_events(self, service_id):
                yield event

        async def scenario():
            await a.originate(make_record("E1"))
            with patch.object(SimulatedTransport, "events", flaky_events):
                await b.channel.start()
                await wait_until(lambda: b.cache.contains("E1"))
                await b.channel.stop()

        asyncio.run(scenario())
        assert len(attached) >= 2

    def test_stop_cancels_peer_interactions(self):
        airspace = SimulatedAirspace()
        a = Phone(airspace, "A")
        b = Phone(airspace, "B", step_timeout_seconds=30)

        async def stalled_read(self, service_id, characteristic_id):
            await asyncio.sleep(30)

        async def scenario():
            await a.originate(make_record("E1"))
            with patch.object(SimulatedLink, "read", stalled_read):
                await b.channel.start()
                await wait_until(lambda: "A" in b.channel.in_progress)
                pending = set(b.channel._peer_tasks)
                await b.channel.stop()
            return pending

        pending = asyncio.run(scenario())
        assert pending and all(task.cancelled() for task in pending)
        assert not b.channel._peer_tasks
        assert not b.channel.in_progress
        assert len(b.cache) == 0


# ═══════════════════════════════════════════════════════════════════════════
# Shared-storage fallback
# ═══════════════════════════════════════════════════════════════════════════

class TestFallbackScan:

    def test_merges_backups_not_yet_cached(self):
        b = Phone(None, "B")
        for eid in ("E1", "E2"):
            b.store.set(backup_key(eid), encode_payload(make_record(eid)).decode())
        b.cache.put(make_record("E1"))

        assert b.channel.fallback_scan() == 1
        assert b.channel.fallback_scan() == 0
        assert b.notified() == ["E2"]

    def test_own_alert_backup_is_not_renotified(self):
        a = Phone(None, "A")
        record = make_record("E1")
        a.cache.put(record)
        asyncio.run(a.channel.advertise(record))
        assert a.channel.fallback_scan() == 0
        assert a.notified() == []

    def test_corrupt_backup_skipped(self):
        b = Phone(None, "B")
        b.store.set(backup_key("E1"), "{broken")
        b.store.set(backup_key("E2"), encode_payload(make_record("E2")).decode())
        assert b.channel.fallback_scan() == 1
        assert [r.id for r in b.cache.records()] == ["E2"]

    def test_backups_beyond_cache_bound_notify_once(self):
        b = Phone(None, "B")
        ids = [f"E{n}" for n in range(1000, 1051)]
        for eid in ids:
            b.store.set(backup_key(eid), encode_payload(make_record(eid)).decode())

        merged = [b.channel.fallback_scan() for _ in range(4)]

        assert merged == [51, 0, 0, 0]
        assert b.notified() == ids
        assert len(b.cache) == 50
        assert b.store.keys("sos_") == [backup_key(eid) for eid in ids[1:]]

    def test_backup_of_pruned_own_alert_is_kept(self):
        a = Phone(None, "A")
        a.cache = LocalCache(a.store, max_records=1)
        a.channel = RelayChannel(None, MergeEngine(a.cache, a.dispatcher), a.cache, a.store)
        own = make_record("E1")
        a.cache.put(own)
        asyncio.run(a.channel.advertise(own))
        a.cache.put(make_record("E2"))

        assert a.channel.fallback_scan() == 0
        assert a.store.get(backup_key("E1")) is not None
