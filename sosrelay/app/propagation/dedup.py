"""
dedup.py — The single merge point for alerts arriving from any inbound pipe.

    peer relay ─────────┐
    shared-storage pass ─┼──► MergeEngine.merge ──► LocalCache.put ──► NotificationDispatcher
    sync poller (pull) ──┘

Policy: a candidate is merged iff the cache has never seen its id, including
ids since pruned by the cache bound. There is no per-field conflict
resolution; the first-seen copy wins locally until a sync overwrites it
with the authoritative one (LocalCache.put from the poller's reconcile
step, which does not pass through here).

merge() never awaits. The membership check, the cache write and the
dispatch run back to back on the event loop, so two interleaved arrivals of
the same id cannot both pass the check.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, List

from sosrelay.app.emergency.models import EmergencyRecord
from sosrelay.app.propagation.cache import LocalCache
from sosrelay.app.propagation.notifier import NotificationDispatcher

logger = logging.getLogger(__name__)


class MergeSource(str, Enum):
    """Which inbound pipe delivered a candidate."""
    PEER           = "peer"
    SHARED_STORAGE = "shared_storage"
    SYNC           = "sync"


MergeListener = Callable[[EmergencyRecord, MergeSource], None]


class MergeEngine:
    def __init__(self, cache: LocalCache, dispatcher: NotificationDispatcher):
        self._cache = cache
        self._dispatcher = dispatcher
        self._listeners: List[MergeListener] = []

    def add_listener(self, listener: MergeListener) -> None:
        """Called after every successful merge (e.g. to re-advertise)."""
        self._listeners.append(listener)

    def should_merge(self, candidate: EmergencyRecord) -> bool:
        return not self._cache.has_seen(candidate.id)

    def merge(self, candidate: EmergencyRecord, source: MergeSource) -> bool:
        """Merge once per id; returns True when the candidate was new."""
        if not self.should_merge(candidate):
            logger.debug(
                "Alert %s already known, ignoring copy from %s",
                candidate.id, source.value,
                extra={"alert_id": candidate.id, "source": source.value},
            )
            return False

        self._cache.put(candidate)
        logger.info(
            "Merged alert %s (%s at %s) via %s",
            candidate.id, candidate.type.value, candidate.location, source.value,
            extra={"alert_id": candidate.id, "source": source.value},
        )
        self._dispatcher.dispatch(candidate)

        for listener in self._listeners:
            try:
                listener(candidate, source)
            except Exception as exc:
                logger.error("Merge listener failed for %s: %s", candidate.id, exc)
        return True
