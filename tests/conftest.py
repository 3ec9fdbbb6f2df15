from __future__ import annotations

import pytest

from sosrelay.app.core.database import KeyValueStore
from sosrelay.app.propagation.cache import LocalCache
from sosrelay.app.propagation.dedup import MergeEngine
from sosrelay.app.propagation.notifier import NotificationDispatcher


@pytest.fixture
def store():
    kv = KeyValueStore("sqlite://")
    yield kv
    kv.close()


@pytest.fixture
def cache(store):
    return LocalCache(store, max_records=50)


@pytest.fixture
def dispatcher():
    return NotificationDispatcher(sink=lambda notification: None)


@pytest.fixture
def engine(cache, dispatcher):
    return MergeEngine(cache, dispatcher)
