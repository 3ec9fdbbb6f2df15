"""
test_dedup_notifier.py — Merge-once policy and operator notifications.

Run with:
    pytest tests/test_dedup_notifier.py -v
"""

from __future__ import annotations

from unittest.mock import MagicMock

from sosrelay.app.propagation.cache import LocalCache
from sosrelay.app.propagation.dedup import MergeEngine, MergeSource
from sosrelay.app.propagation.notifier import (
    NotificationDispatcher,
    NotificationPermission,
    build_notification,
)

from support import make_record


class TestMergeEngine:

    def test_new_record_is_merged_and_notified(self, engine, cache, dispatcher):
        assert engine.merge(make_record("E1"), MergeSource.PEER)
        assert cache.contains("E1")
        assert [n.alert_id for n in dispatcher.delivered] == ["E1"]

    def test_same_id_merged_once_across_sources(self, engine, dispatcher):
        record = make_record("E1")
        results = [
            engine.merge(record, MergeSource.PEER),
            engine.merge(record, MergeSource.SHARED_STORAGE),
            engine.merge(record, MergeSource.SYNC),
        ]
        assert results == [True, False, False]
        assert len(dispatcher.delivered) == 1

    def test_first_seen_copy_wins(self, engine, cache):
        engine.merge(make_record("E1", name="First"), MergeSource.PEER)
        engine.merge(make_record("E1", name="Second"), MergeSource.SYNC)
        assert cache.get("E1").name == "First"

    def test_already_cached_is_not_renotified(self, cache, dispatcher):
        cache.put(make_record("E1"))
        engine = MergeEngine(cache, dispatcher)
        assert not engine.should_merge(make_record("E1"))
        assert not engine.merge(make_record("E1"), MergeSource.SHARED_STORAGE)
        assert not dispatcher.delivered

    def test_pruned_id_is_not_renotified(self, store, dispatcher):
        engine = MergeEngine(LocalCache(store, max_records=2), dispatcher)
        for alert_id in ("E1", "E2", "E3"):
            engine.merge(make_record(alert_id), MergeSource.PEER)
        assert not engine.merge(make_record("E1"), MergeSource.SHARED_STORAGE)
        assert [n.alert_id for n in dispatcher.delivered] == ["E1", "E2", "E3"]

    def test_listeners_see_source(self, engine):
        listener = MagicMock()
        engine.add_listener(listener)
        record = make_record("E1")
        engine.merge(record, MergeSource.PEER)
        engine.merge(record, MergeSource.PEER)
        listener.assert_called_once_with(record, MergeSource.PEER)

    def test_listener_failure_does_not_undo_merge(self, engine, cache):
        engine.add_listener(MagicMock(side_effect=RuntimeError("boom")))
        assert engine.merge(make_record("E1"), MergeSource.SYNC)
        assert cache.contains("E1")


class TestNotificationDispatcher:

    def test_notification_text(self):
        n = build_notification(make_record("E7", name="Hari", location="Bhimphedi"))
        assert n.tag == "sos-E7"
        assert n.title == "SOS Alert: Accident"
        assert n.body == "Hari - Accident at Bhimphedi (Ward 16)"
        assert n.to_dict()["alert_id"] == "E7"

    def test_delivers_to_sink(self):
        sink = MagicMock()
        dispatcher = NotificationDispatcher(sink)
        notification = dispatcher.dispatch(make_record("E1"))
        sink.assert_called_once_with(notification)
        assert list(dispatcher.delivered) == [notification]

    def test_permission_not_granted_skips(self):
        sink = MagicMock()
        for permission in (NotificationPermission.DENIED, NotificationPermission.DEFAULT):
            dispatcher = NotificationDispatcher(sink, permission=permission)
            assert dispatcher.dispatch(make_record("E1")) is None
        sink.assert_not_called()

    def test_permission_can_be_granted_later(self):
        dispatcher = NotificationDispatcher(MagicMock(), permission=NotificationPermission.DEFAULT)
        dispatcher.set_permission(NotificationPermission.GRANTED)
        assert dispatcher.dispatch(make_record("E1")) is not None

    def test_sink_failure_is_contained(self):
        dispatcher = NotificationDispatcher(MagicMock(side_effect=OSError("no display")))
        assert dispatcher.dispatch(make_record("E1")) is None
        assert not dispatcher.delivered

    def test_default_sink_logs(self, caplog):
        dispatcher = NotificationDispatcher()
        with caplog.at_level("INFO"):
            dispatcher.dispatch(make_record("E1"))
        assert "SOS Alert: Accident" in caplog.text

    def test_history_keeps_most_recent(self):
        dispatcher = NotificationDispatcher(MagicMock(), history_size=3)
        for i in range(1, 6):
            dispatcher.dispatch(make_record(f"E{i}"))
        assert [n.alert_id for n in dispatcher.delivered] == ["E3", "E4", "E5"]
