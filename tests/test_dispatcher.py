"""
test_dispatcher.py — Tests for community fan-out and per-observer filtering.

Covers:
    • Publish through the dispatcher (success, store failure)
    • One shared store subscription per community
    • History replay through the freshness filter on subscribe
    • Independent watermarks and identities per observer
    • Late joiners fed every record still inside the lookback
    • Re-subscription, unsubscribe idempotence, close()
    • Store errors terminating a subscription
    • Sink / hook failures contained per observer

Run with:
    pytest tests/test_dispatcher.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from backend.app.alerts.dispatcher import AlertDispatcher
from backend.app.alerts.freshness import format_timestamp
from backend.app.alerts.models import PublishStatus, RejectReason
from backend.app.core.errors import StoreError
from backend.app.store.base import alert_partition
from backend.app.store.memory import InMemoryAlertStore


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

NOW = datetime(2026, 10, 19, 14, 0, 0)
NOW_MS = int(NOW.timestamp() * 1000)
LOOKBACK_MS = 5 * 60 * 1000
COMMUNITY = "riverside"


def _make_raw(sender: str = "USER-AB2", offset_seconds: int = 0) -> dict:
    return {
        "type": "EMERGENCY",
        "senderId": sender,
        "senderPhone": "",
        "timestamp": format_timestamp(NOW + timedelta(seconds=offset_seconds)),
        "location": "Location Unavailable",
        "source": "Unknown",
        "rawLat": 0.0,
        "rawLon": 0.0,
    }


class _Collector:
    """Sink that remembers every record it was handed."""

    def __init__(self):
        self.records = []

    def __call__(self, record):
        self.records.append(record)

    @property
    def senders(self):
        return [r.sender_id for r in self.records]


@pytest.fixture
def store():
    return InMemoryAlertStore()


@pytest.fixture
def dispatcher(store):
    d = AlertDispatcher(store, clock=lambda: NOW_MS, lookback_ms=LOOKBACK_MS)
    yield d
    d.close()


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Publish
# ═══════════════════════════════════════════════════════════════════════════

class TestPublish:

    def test_publish_appends_to_partition(self, store, dispatcher):
        result = dispatcher.publish(COMMUNITY, _make_raw())
        assert result.ok
        assert result.community_id == COMMUNITY
        assert result.key
        assert len(store.history(alert_partition(COMMUNITY))) == 1

    def test_keys_sort_in_publish_order(self, dispatcher):
        keys = [dispatcher.publish(COMMUNITY, _make_raw(offset_seconds=i)).key for i in range(5)]
        assert keys == sorted(keys)

    def test_store_exception_becomes_failed_result(self):
        broken = MagicMock()
        broken.publish.side_effect = RuntimeError("connection reset")
        d = AlertDispatcher(broken, clock=lambda: NOW_MS, lookback_ms=LOOKBACK_MS)
        result = d.publish(COMMUNITY, _make_raw())
        assert result.status == PublishStatus.FAILED
        assert "connection reset" in result.error

    def test_publishing_does_not_require_subscribers(self, store, dispatcher):
        dispatcher.publish("empty", _make_raw())
        assert not dispatcher.has_subscription("empty")


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Subscribe & Filtering
# ═══════════════════════════════════════════════════════════════════════════

class TestSubscribe:

    def test_history_is_filtered_on_subscribe(self, store, dispatcher):
        dispatcher.publish(COMMUNITY, _make_raw("USER-AB2", -600))   # too old
        dispatcher.publish(COMMUNITY, _make_raw("USER-AB2", -60))    # inside lookback
        sink = _Collector()

        reg = dispatcher.subscribe(COMMUNITY, "ui", sink, self_identity="USER-ME1")

        assert sink.senders == ["USER-AB2"]
        assert reg.watermark == NOW_MS - 60_000
        assert reg.rejected[RejectReason.STALE] == 1

    def test_live_records_delivered(self, dispatcher):
        sink = _Collector()
        dispatcher.subscribe(COMMUNITY, "ui", sink, self_identity="USER-ME1")
        dispatcher.publish(COMMUNITY, _make_raw("USER-AB2", 5))
        dispatcher.publish(COMMUNITY, _make_raw("USER-CD3", 6))
        assert sink.senders == ["USER-AB2", "USER-CD3"]

    def test_own_alerts_never_delivered(self, dispatcher):
        sink = _Collector()
        reg = dispatcher.subscribe(COMMUNITY, "ui", sink, self_identity="USER-ME1")
        dispatcher.publish(COMMUNITY, _make_raw("USER-ME1", 5))
        assert sink.records == []
        assert reg.rejected[RejectReason.SELF] == 1

    def test_identity_callable_read_per_record(self, dispatcher):
        identity = {"handle": None}
        sink = _Collector()
        dispatcher.subscribe(COMMUNITY, "ui", sink, self_identity=lambda: identity["handle"])
        dispatcher.publish(COMMUNITY, _make_raw("USER-ME1", 5))
        identity["handle"] = "USER-ME1"
        dispatcher.publish(COMMUNITY, _make_raw("USER-ME1", 6))
        assert len(sink.records) == 1

    def test_explicit_watermark_is_used(self, dispatcher):
        sink = _Collector()
        reg = dispatcher.subscribe(COMMUNITY, "bg", sink, watermark=NOW_MS + 10_000)
        dispatcher.publish(COMMUNITY, _make_raw("USER-AB2", 5))
        assert sink.records == []
        assert reg.watermark == NOW_MS + 10_000

    def test_empty_community_rejected(self, dispatcher):
        with pytest.raises(ValueError):
            dispatcher.subscribe("", "ui", _Collector())

    def test_one_store_subscription_per_community(self, store, dispatcher):
        dispatcher.subscribe(COMMUNITY, "ui", _Collector())
        dispatcher.subscribe(COMMUNITY, "bg", _Collector())
        dispatcher.subscribe("hilltop", "ui", _Collector())
        assert store.subscriber_count(alert_partition(COMMUNITY)) == 1
        assert store.subscriber_count() == 2
        assert dispatcher.stats()["observers"] == 3

    def test_on_accept_hook_gets_new_watermark(self, dispatcher):
        hook = MagicMock()
        dispatcher.subscribe(COMMUNITY, "bg", _Collector(), on_accept=hook)
        dispatcher.publish(COMMUNITY, _make_raw("USER-AB2", 5))
        record, watermark = hook.call_args[0]
        assert record.sender_id == "USER-AB2"
        assert watermark == NOW_MS + 5000

    def test_malformed_records_silently_dropped(self, dispatcher):
        sink = _Collector()
        reg = dispatcher.subscribe(COMMUNITY, "ui", sink)
        dispatcher.publish(COMMUNITY, {"senderId": "USER-AB2", "timestamp": "tomorrow"})
        dispatcher.publish(COMMUNITY, {"junk": True})
        assert sink.records == []
        assert reg.rejected[RejectReason.MALFORMED] == 2


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Independent Observers
# ═══════════════════════════════════════════════════════════════════════════

class TestObserverIndependence:

    def test_same_alert_reaches_both_observers(self, dispatcher):
        ui, bg = _Collector(), _Collector()
        dispatcher.subscribe(COMMUNITY, "ui", ui, self_identity="USER-ME1")
        dispatcher.subscribe(COMMUNITY, "bg", bg, self_identity="USER-ME1")
        dispatcher.publish(COMMUNITY, _make_raw("USER-AB2", 5))
        assert ui.senders == ["USER-AB2"]
        assert bg.senders == ["USER-AB2"]

    def test_watermarks_advance_separately(self, dispatcher):
        ui_reg = dispatcher.subscribe(COMMUNITY, "ui", _Collector())
        bg_reg = dispatcher.subscribe(COMMUNITY, "bg", _Collector(), watermark=NOW_MS + 60_000)
        dispatcher.publish(COMMUNITY, _make_raw("USER-AB2", 5))
        assert ui_reg.watermark == NOW_MS + 5000
        assert bg_reg.watermark == NOW_MS + 60_000

    def test_late_joiner_replayed_from_buffer(self, dispatcher):
        dispatcher.subscribe(COMMUNITY, "bg", _Collector())
        dispatcher.publish(COMMUNITY, _make_raw("USER-AB2", 5))
        late = _Collector()
        dispatcher.subscribe(COMMUNITY, "ui", late)
        assert late.senders == ["USER-AB2"]

    def test_late_joiner_sees_every_record_in_window(self, store, dispatcher):
        senders = [f"USER-{i:03d}" for i in range(300)]
        dispatcher.subscribe(COMMUNITY, "bg", _Collector())
        for i, sender in enumerate(senders):
            dispatcher.publish(COMMUNITY, _make_raw(sender, -290 + i))

        late = _Collector()
        dispatcher.subscribe(COMMUNITY, "ui", late)

        fresh = _Collector()
        other = AlertDispatcher(store, clock=lambda: NOW_MS, lookback_ms=LOOKBACK_MS)
        other.subscribe(COMMUNITY, "ui", fresh)
        other.close()

        assert late.senders == senders
        assert late.senders == fresh.senders

    def test_late_joiner_skips_records_outside_lookback(self, dispatcher):
        dispatcher.subscribe(COMMUNITY, "bg", _Collector())
        dispatcher.publish(COMMUNITY, _make_raw("USER-OLD", -600))
        dispatcher.publish(COMMUNITY, _make_raw("USER-NEW", -60))
        late = _Collector()
        dispatcher.subscribe(COMMUNITY, "ui", late)
        assert late.senders == ["USER-NEW"]
        subscription = dispatcher.stats()["subscriptions"][COMMUNITY]
        assert subscription["replay_window"] == 1

    def test_replay_window_ages_with_clock(self, store):
        clock = [NOW_MS]
        d = AlertDispatcher(store, clock=lambda: clock[0], lookback_ms=LOOKBACK_MS)
        d.subscribe(COMMUNITY, "bg", _Collector())
        d.publish(COMMUNITY, _make_raw("USER-AB2", -60))
        clock[0] += LOOKBACK_MS
        d.publish(COMMUNITY, _make_raw("USER-CD3", 240))
        assert d.stats()["subscriptions"][COMMUNITY]["replay_window"] == 1
        d.close()

    def test_malformed_records_not_kept_for_replay(self, dispatcher):
        dispatcher.subscribe(COMMUNITY, "bg", _Collector())
        dispatcher.publish(COMMUNITY, {"senderId": "USER-AB2", "timestamp": "yesterday"})
        assert dispatcher.stats()["subscriptions"][COMMUNITY]["replay_window"] == 0

    def test_failing_sink_does_not_affect_others(self, dispatcher):
        def explode(record):
            raise RuntimeError("ui crashed")

        bg = _Collector()
        ui_reg = dispatcher.subscribe(COMMUNITY, "ui", explode)
        dispatcher.subscribe(COMMUNITY, "bg", bg)
        dispatcher.publish(COMMUNITY, _make_raw("USER-AB2", 5))
        assert bg.senders == ["USER-AB2"]
        assert ui_reg.watermark == NOW_MS + 5000

    def test_failing_hook_still_delivers(self, dispatcher):
        sink = _Collector()
        hook = MagicMock(side_effect=OSError("disk full"))
        dispatcher.subscribe(COMMUNITY, "bg", sink, on_accept=hook)
        dispatcher.publish(COMMUNITY, _make_raw("USER-AB2", 5))
        assert sink.senders == ["USER-AB2"]


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestLifecycle:

    def test_resubscribe_replaces_registration(self, store, dispatcher):
        first = dispatcher.subscribe(COMMUNITY, "ui", _Collector())
        second = dispatcher.subscribe(COMMUNITY, "ui", _Collector())
        assert not first.active
        assert second.active
        assert dispatcher.registration(COMMUNITY, "ui") is second
        assert store.subscriber_count() == 1

    def test_unsubscribe_last_observer_releases_store(self, store, dispatcher):
        dispatcher.subscribe(COMMUNITY, "ui", _Collector())
        dispatcher.subscribe(COMMUNITY, "bg", _Collector())
        assert dispatcher.unsubscribe(COMMUNITY, "ui")
        assert store.subscriber_count() == 1
        assert dispatcher.unsubscribe(COMMUNITY, "bg")
        assert store.subscriber_count() == 0
        assert not dispatcher.has_subscription(COMMUNITY)

    def test_unsubscribe_is_idempotent(self, dispatcher):
        dispatcher.subscribe(COMMUNITY, "ui", _Collector())
        assert dispatcher.unsubscribe(COMMUNITY, "ui")
        assert not dispatcher.unsubscribe(COMMUNITY, "ui")
        assert not dispatcher.unsubscribe("nowhere", "ui")

    def test_no_delivery_after_unsubscribe(self, dispatcher):
        sink = _Collector()
        dispatcher.subscribe(COMMUNITY, "ui", sink)
        dispatcher.unsubscribe(COMMUNITY, "ui")
        dispatcher.publish(COMMUNITY, _make_raw("USER-AB2", 5))
        assert sink.records == []

    def test_unsubscribe_from_inside_sink(self, dispatcher):
        sink = _Collector()

        def leave(record):
            sink(record)
            dispatcher.unsubscribe(COMMUNITY, "ui")

        dispatcher.subscribe(COMMUNITY, "ui", leave)
        dispatcher.publish(COMMUNITY, _make_raw("USER-AB2", 5))
        dispatcher.publish(COMMUNITY, _make_raw("USER-AB2", 6))
        assert len(sink.records) == 1

    def test_resubscribe_reseeds_and_skips_accepted(self, dispatcher):
        sink = _Collector()
        dispatcher.subscribe(COMMUNITY, "ui", sink)
        dispatcher.publish(COMMUNITY, _make_raw("USER-AB2", -30))
        dispatcher.unsubscribe(COMMUNITY, "ui")

        again = _Collector()
        reg = dispatcher.subscribe(COMMUNITY, "ui", again, watermark=NOW_MS - 30_000)
        assert again.records == []
        assert reg.rejected[RejectReason.STALE] == 1

    def test_close_releases_everything(self, store, dispatcher):
        regs = [
            dispatcher.subscribe(COMMUNITY, "ui", _Collector()),
            dispatcher.subscribe("hilltop", "bg", _Collector()),
        ]
        dispatcher.close()
        assert store.subscriber_count() == 0
        assert all(not r.active for r in regs)
        assert dispatcher.stats()["communities"] == 0


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Store Errors
# ═══════════════════════════════════════════════════════════════════════════

class TestStoreErrors:

    def test_cancelled_subscription_notifies_every_observer(self, store, dispatcher):
        ui_err, bg_err = MagicMock(), MagicMock()
        ui = dispatcher.subscribe(COMMUNITY, "ui", _Collector(), on_error=ui_err)
        bg = dispatcher.subscribe(COMMUNITY, "bg", _Collector(), on_error=bg_err)

        assert store.cancel_partition(alert_partition(COMMUNITY), "permission denied") == 1

        ui_err.assert_called_once()
        bg_err.assert_called_once()
        assert isinstance(ui_err.call_args[0][0], StoreError)
        assert not ui.active and not bg.active
        assert not dispatcher.has_subscription(COMMUNITY)

    def test_no_records_after_error(self, store, dispatcher):
        sink = _Collector()
        dispatcher.subscribe(COMMUNITY, "ui", sink)
        store.cancel_partition(alert_partition(COMMUNITY))
        dispatcher.publish(COMMUNITY, _make_raw("USER-AB2", 5))
        assert sink.records == []

    def test_subscribe_failure_raises_store_error(self):
        broken = MagicMock()
        broken.subscribe_tail.side_effect = ConnectionError("offline")
        d = AlertDispatcher(broken, clock=lambda: NOW_MS, lookback_ms=LOOKBACK_MS)
        with pytest.raises(StoreError):
            d.subscribe(COMMUNITY, "ui", _Collector())
        assert not d.has_subscription(COMMUNITY)

    def test_can_resubscribe_after_error(self, store, dispatcher):
        dispatcher.subscribe(COMMUNITY, "ui", _Collector())
        store.cancel_partition(alert_partition(COMMUNITY))
        sink = _Collector()
        dispatcher.subscribe(COMMUNITY, "ui", sink)
        dispatcher.publish(COMMUNITY, _make_raw("USER-AB2", 5))
        assert sink.senders == ["USER-AB2"]
