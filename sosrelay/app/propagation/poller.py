"""
poller.py — Authoritative sync poller: reconcile this device with the
backend of record.

═══════════════════════════════════════════════════════════════════════════
CYCLE
═══════════════════════════════════════════════════════════════════════════

    ┌──────────────────────┐
    │ 1. Flush outbox      │  originated alerts whose push failed earlier
    └─────────┬────────────┘
              ▼
    ┌──────────────────────┐
    │ 2. Pull              │  GET emergencies, newest first, bounded
    └─────────┬────────────┘
              ▼
    ┌──────────────────────┐
    │ 3. Reconcile         │  cached ids take the backend copy wholesale
    └─────────┬────────────┘  (status updates arrive only this way)
              ▼
    ┌──────────────────────┐
    │ 4. Classify new      │  drop terminal statuses, then
    │                      │  ts > checkpoint  OR  age < grace window
    └─────────┬────────────┘
              ▼
    ┌──────────────────────┐
    │ 5. Merge             │  MergeEngine (same point as peer relay)
    └─────────┬────────────┘
              ▼
    ┌──────────────────────┐
    │ 6. Checkpoint        │  max timestamp of the batch, forward only,
    └──────────────────────┘  persisted as lastEmergencyCheck

The grace window keeps a just-created alert that narrowly predates the
checkpoint (clock skew between devices, late propagation) from being
missed. Re-classifying an already-cached alert as new is harmless: the
merge engine drops it.

═══════════════════════════════════════════════════════════════════════════
SCHEDULING
═══════════════════════════════════════════════════════════════════════════

A ticker task fires one cycle per interval and skips a tick while the
previous cycle is still in flight. stop() cancels the ticker, the in-flight
cycle and any detached pushes; a cycle that still completes afterwards
discards its result because the poller's generation has moved on.

Push is separate from the cycle: push_detached() runs a create request as
a background task and reports the outcome through a callback, so the
origin flow can confirm "sent" as soon as the alert is stored locally. The
alert sits in the outbox until the backend accepts it, so a push cut short
by stop() is retried by the next cycle.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import ValidationError as PydanticValidationError

from sosrelay.app.core.config import settings
from sosrelay.app.core.database import KeyValueStore
from sosrelay.app.core.errors import (
    BackendUnavailableError,
    DuplicateEmergencyError,
    StorageError,
)
from sosrelay.app.emergency.models import EmergencyRecord, now_ms
from sosrelay.app.propagation.cache import LocalCache
from sosrelay.app.propagation.client import BackendClient
from sosrelay.app.propagation.dedup import MergeEngine, MergeSource

logger = logging.getLogger(__name__)

CHECKPOINT_KEY = "lastEmergencyCheck"
OUTBOX_KEY = "syncOutbox"

_UNSET = object()


@dataclass
class PushOutcome:
    """Result of submitting one originated alert to the backend."""
    alert_id: str
    success: bool
    already_present: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "success": self.success,
            "already_present": self.already_present,
            "error": self.error,
        }


@dataclass
class PullReport:
    """Summary of one sync cycle."""
    success: bool = False
    discarded: bool = False
    pushed: int = 0
    fetched: int = 0
    active: int = 0
    new: int = 0
    merged: int = 0
    reconciled: int = 0
    checkpoint_ms: int = 0
    error: Optional[str] = None
    merged_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "discarded": self.discarded,
            "pushed": self.pushed,
            "fetched": self.fetched,
            "active": self.active,
            "new": self.new,
            "merged": self.merged,
            "reconciled": self.reconciled,
            "checkpoint_ms": self.checkpoint_ms,
            "error": self.error,
            "merged_ids": list(self.merged_ids),
        }


class SyncPoller:
    """Push originated alerts, pull and reconcile authoritative ones."""

    def __init__(
        self,
        client: BackendClient,
        engine: MergeEngine,
        cache: LocalCache,
        store: KeyValueStore,
        *,
        interval_seconds: Optional[float] = None,
        grace_window_seconds: Optional[float] = None,
        fetch_limit: Any = _UNSET,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._client = client
        self._engine = engine
        self._cache = cache
        self._store = store
        self.interval_seconds = interval_seconds or settings.SYNC_POLL_INTERVAL_SECONDS
        grace = settings.SYNC_GRACE_WINDOW_SECONDS if grace_window_seconds is None else grace_window_seconds
        self.grace_window_ms = int(grace * 1000)
        self.fetch_limit = settings.SYNC_FETCH_LIMIT if fetch_limit is _UNSET else fetch_limit
        self._clock = clock or now_ms

        self._checkpoint_ms = self._load_checkpoint()
        self._outbox: List[EmergencyRecord] = self._load_outbox()

        self._polling = False
        self._generation = 0
        self._ticker: Optional[asyncio.Task] = None
        self._cycle: Optional[asyncio.Task] = None
        self._push_tasks: Set[asyncio.Task] = set()

    # ── State ──

    @property
    def checkpoint_ms(self) -> int:
        return self._checkpoint_ms

    @property
    def is_polling(self) -> bool:
        return self._polling

    @property
    def pending_push_ids(self) -> List[str]:
        return [r.id for r in self._outbox]

    # ── Persistence ──

    def _load_checkpoint(self) -> int:
        try:
            value = self._store.get_json(CHECKPOINT_KEY, default=0)
        except StorageError as exc:
            logger.warning("Could not read sync checkpoint, starting from 0: %s", exc)
            return 0
        try:
            return max(0, int(value))
        except (TypeError, ValueError):
            logger.warning("Ignoring unreadable sync checkpoint %r", value)
            return 0

    def _save_checkpoint(self) -> None:
        try:
            self._store.set_json(CHECKPOINT_KEY, self._checkpoint_ms)
        except StorageError as exc:
            logger.warning("Could not persist sync checkpoint: %s", exc)

    def _load_outbox(self) -> List[EmergencyRecord]:
        try:
            raw = self._store.get_json(OUTBOX_KEY, default=[])
        except StorageError as exc:
            logger.warning("Could not read sync outbox: %s", exc)
            return []
        outbox: List[EmergencyRecord] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                outbox.append(EmergencyRecord.model_validate(item))
            except PydanticValidationError:
                logger.warning("Dropping unreadable outbox entry")
        return outbox

    def _save_outbox(self) -> None:
        try:
            self._store.set_json(OUTBOX_KEY, [r.to_dict() for r in self._outbox])
        except StorageError as exc:
            logger.warning("Could not persist sync outbox: %s", exc)

    def _enqueue(self, record: EmergencyRecord) -> None:
        if any(r.id == record.id for r in self._outbox):
            return
        self._outbox.append(record)
        self._save_outbox()

    def _dequeue(self, emergency_id: str) -> None:
        remaining = [r for r in self._outbox if r.id != emergency_id]
        if len(remaining) != len(self._outbox):
            self._outbox = remaining
            self._save_outbox()

    # ── Push ──

    async def push(self, record: EmergencyRecord) -> PushOutcome:
        """Submit one originated alert; it stays in the outbox until accepted."""
        self._enqueue(record)
        try:
            await self._client.create_emergency(record)
        except DuplicateEmergencyError:
            self._dequeue(record.id)
            logger.info(
                "Alert %s already at backend of record", record.id,
                extra={"alert_id": record.id},
            )
            return PushOutcome(record.id, success=True, already_present=True)
        except BackendUnavailableError as exc:
            logger.warning(
                "Push of %s failed, queued for retry: %s", record.id, exc.message,
                extra={"alert_id": record.id},
            )
            return PushOutcome(record.id, success=False, error=exc.message)

        self._dequeue(record.id)
        logger.info("Alert %s synced to backend of record", record.id, extra={"alert_id": record.id})
        return PushOutcome(record.id, success=True)

    def push_detached(
        self,
        record: EmergencyRecord,
        on_result: Optional[Callable[[PushOutcome], None]] = None,
    ) -> "asyncio.Task[PushOutcome]":
        """Fire-and-forget push; the outcome goes to ``on_result``."""

        async def run() -> PushOutcome:
            outcome = await self.push(record)
            if on_result is not None:
                try:
                    on_result(outcome)
                except Exception as exc:
                    logger.error("Push result callback failed for %s: %s", record.id, exc)
            return outcome

        task = asyncio.create_task(run(), name=f"push-{record.id}")
        self._push_tasks.add(task)
        task.add_done_callback(self._push_tasks.discard)
        return task

    async def flush_outbox(self) -> int:
        """Retry queued pushes in order; stops at the first failure."""
        pushed = 0
        for record in list(self._outbox):
            outcome = await self.push(record)
            if not outcome.success:
                break
            pushed += 1
        return pushed

    # ── Pull ──

    def classify_new(
        self,
        records: List[EmergencyRecord],
        now: Optional[int] = None,
    ) -> List[EmergencyRecord]:
        """Records that count as new relative to the current checkpoint."""
        current = self._clock() if now is None else now
        fresh: List[EmergencyRecord] = []
        for record in records:
            stamp = record.timestamp_ms
            if stamp is None:
                fresh.append(record)
            elif stamp > self._checkpoint_ms:
                fresh.append(record)
            elif not record.is_terminal and current - stamp < self.grace_window_ms:
                fresh.append(record)
        return fresh

    def _advance_checkpoint(self, records: List[EmergencyRecord]) -> None:
        stamps = [r.timestamp_ms for r in records if r.timestamp_ms is not None]
        if not stamps:
            return
        newest = max(stamps)
        if newest > self._checkpoint_ms:
            self._checkpoint_ms = newest
            self._save_checkpoint()
            logger.debug("Sync checkpoint advanced to %d", newest)

    async def poll_once(self) -> PullReport:
        """Run one full cycle (outbox flush, pull, reconcile, merge)."""
        generation = self._generation
        report = PullReport(checkpoint_ms=self._checkpoint_ms)

        if self._outbox:
            report.pushed = await self.flush_outbox()

        try:
            records = await self._client.list_emergencies(
                sort="id", order="desc", limit=self.fetch_limit,
            )
        except BackendUnavailableError as exc:
            report.error = exc.message
            logger.warning("Sync pull failed, retrying next cycle: %s", exc.message)
            return report

        if generation != self._generation:
            report.discarded = True
            logger.debug("Poller stopped during pull, discarding %d records", len(records))
            return report

        report.success = True
        report.fetched = len(records)

        for record in records:
            cached = self._cache.get(record.id)
            if cached is not None and cached != record:
                self._cache.put(record)
                report.reconciled += 1

        active = [r for r in records if not r.is_terminal]
        fresh = self.classify_new(active)
        report.active = len(active)
        report.new = len(fresh)

        for record in fresh:
            if self._engine.merge(record, MergeSource.SYNC):
                report.merged += 1
                report.merged_ids.append(record.id)

        self._advance_checkpoint(records)
        report.checkpoint_ms = self._checkpoint_ms

        if report.merged or report.reconciled:
            logger.info(
                "Sync: %d fetched, %d new merged, %d reconciled",
                report.fetched, report.merged, report.reconciled,
            )
        return report

    # ── Lifecycle ──

    async def start(self) -> None:
        """Begin periodic cycles; a second call while polling is a no-op."""
        if self._polling:
            logger.debug("Sync poller already running")
            return
        self._polling = True
        self._ticker = asyncio.create_task(self._run_ticker(), name="sync-poller")
        logger.info("Sync poller started (every %.1fs)", self.interval_seconds)

    async def stop(self) -> None:
        """Stop periodic cycles; safe when never started and when repeated."""
        if not self._polling:
            return
        self._polling = False
        self._generation += 1
        tasks = [t for t in (self._ticker, self._cycle) if t is not None]
        tasks.extend(self._push_tasks)
        self._ticker = None
        self._cycle = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Sync poller stopped")

    async def _run_ticker(self) -> None:
        while True:
            if self._cycle is None or self._cycle.done():
                self._cycle = asyncio.create_task(self._run_cycle())
            else:
                logger.debug("Previous sync cycle still running, skipping tick")
            await asyncio.sleep(self.interval_seconds)

    async def _run_cycle(self) -> None:
        try:
            await self.poll_once()
        except Exception:
            logger.exception("Sync cycle failed")
