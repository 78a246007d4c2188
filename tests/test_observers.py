"""
test_observers.py — Tests for the foreground/background observer pair.

Covers:
    • AlertObserver state machine (attach, switch, detach, errors)
    • Watermark policies (ephemeral re-seed, persisted resume)
    • DualObserverCoordinator (start, foreground attach/detach, sync, stop)
    • Independence of the two observers' watermarks
    • Opt-in shared durable watermark

Run with:
    pytest tests/test_observers.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from backend.app.alerts.dispatcher import AlertDispatcher
from backend.app.alerts.freshness import format_timestamp
from backend.app.alerts.observers import (
    AlertObserver,
    DualObserverCoordinator,
    EphemeralWatermark,
    ObserverState,
    PersistentWatermark,
)
from backend.app.core.config import Settings
from backend.app.core.preferences import PreferenceStore
from backend.app.store.base import alert_partition
from backend.app.store.memory import InMemoryAlertStore


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

NOW = datetime(2026, 10, 19, 14, 0, 0)
NOW_MS = int(NOW.timestamp() * 1000)
LOOKBACK_MS = 5 * 60 * 1000
MINUTE_MS = 60 * 1000


class _Clock:
    """Settable epoch-ms clock."""

    def __init__(self, value: int = NOW_MS):
        self.value = value

    def __call__(self) -> int:
        return self.value

    def advance(self, ms: int) -> None:
        self.value += ms


def _make_raw(sender: str = "USER-AB2", offset_seconds: int = 0) -> dict:
    return {
        "type": "EMERGENCY",
        "senderId": sender,
        "senderPhone": "+15550100",
        "timestamp": format_timestamp(NOW + timedelta(seconds=offset_seconds)),
        "location": "Lat: 12.9, Lon: 77.6",
        "source": "GPS (Fresh)",
        "rawLat": 12.9,
        "rawLon": 77.6,
    }


def _make_settings(**overrides) -> Settings:
    return Settings(ALERT_LOOKBACK_SECONDS=300, **overrides)


@pytest.fixture
def clock():
    return _Clock()


@pytest.fixture
def store():
    return InMemoryAlertStore()


@pytest.fixture
def prefs():
    p = PreferenceStore()
    p.set_handle("USER-ME1")
    p.set_active_community("riverside")
    return p


@pytest.fixture
def dispatcher(store, clock):
    d = AlertDispatcher(store, clock=clock, lookback_ms=LOOKBACK_MS)
    yield d
    d.close()


@pytest.fixture
def coordinator(dispatcher, prefs):
    c = DualObserverCoordinator(dispatcher, prefs, config=_make_settings())
    yield c
    c.stop()


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Observer State Machine
# ═══════════════════════════════════════════════════════════════════════════

class TestObserverStateMachine:

    def _observer(self, dispatcher, sink=None):
        return AlertObserver(
            "ui", dispatcher, EphemeralWatermark(), sink or MagicMock(), identity="USER-ME1",
        )

    def test_starts_detached(self, dispatcher):
        assert self._observer(dispatcher).state == ObserverState.DETACHED

    def test_attach_listens(self, dispatcher):
        observer = self._observer(dispatcher)
        assert observer.attach("riverside") == ObserverState.LISTENING
        assert observer.community_id == "riverside"
        assert dispatcher.has_subscription("riverside")

    @pytest.mark.parametrize("community", [None, ""])
    def test_attach_without_community_stays_detached(self, dispatcher, community):
        observer = self._observer(dispatcher)
        assert observer.attach(community) == ObserverState.DETACHED
        assert dispatcher.stats()["communities"] == 0

    def test_attach_same_community_is_noop(self, dispatcher):
        observer = self._observer(dispatcher)
        observer.attach("riverside")
        registration = observer.registration
        observer.attach("riverside")
        assert observer.registration is registration

    def test_switch_community_moves_subscription(self, dispatcher):
        observer = self._observer(dispatcher)
        observer.attach("riverside")
        assert observer.switch_community("hilltop") == ObserverState.LISTENING
        assert observer.community_id == "hilltop"
        assert not dispatcher.has_subscription("riverside")
        assert dispatcher.has_subscription("hilltop")

    def test_attach_empty_detaches(self, dispatcher):
        observer = self._observer(dispatcher)
        observer.attach("riverside")
        observer.attach("")
        assert observer.state == ObserverState.DETACHED
        assert not dispatcher.has_subscription("riverside")

    def test_detach_is_idempotent(self, dispatcher):
        observer = self._observer(dispatcher)
        observer.attach("riverside")
        observer.detach()
        observer.detach()
        assert observer.state == ObserverState.DETACHED
        assert observer.community_id is None

    def test_store_error_returns_to_detached(self, store, dispatcher):
        observer = self._observer(dispatcher)
        observer.attach("riverside")
        store.cancel_partition(alert_partition("riverside"), "permission denied")
        assert observer.state == ObserverState.DETACHED
        assert "permission denied" in observer.last_error

    def test_subscribe_failure_returns_to_detached(self, clock):
        broken = MagicMock()
        broken.subscribe_tail.side_effect = ConnectionError("offline")
        d = AlertDispatcher(broken, clock=clock, lookback_ms=LOOKBACK_MS)
        observer = self._observer(d)
        assert observer.attach("riverside") == ObserverState.DETACHED
        assert "offline" in observer.last_error

    def test_reattach_after_error(self, store, dispatcher):
        observer = self._observer(dispatcher)
        observer.attach("riverside")
        store.cancel_partition(alert_partition("riverside"))
        assert observer.attach("riverside") == ObserverState.LISTENING
        assert observer.last_error is None

    def test_status_shape(self, dispatcher):
        observer = self._observer(dispatcher)
        observer.attach("riverside")
        status = observer.status()
        assert status["state"] == "listening"
        assert status["watermark"] == NOW_MS - LOOKBACK_MS
        assert status["durable"] is False


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Watermark Policies
# ═══════════════════════════════════════════════════════════════════════════

class TestWatermarkPolicies:

    def test_ephemeral_seed(self):
        assert EphemeralWatermark().seed(NOW_MS, LOOKBACK_MS) == NOW_MS - LOOKBACK_MS

    def test_ephemeral_without_mirror_persists_nothing(self, prefs):
        EphemeralWatermark().on_accept(MagicMock(), NOW_MS)
        assert prefs.get_watermark() is None

    def test_ephemeral_mirror_advances_prefs(self, prefs):
        EphemeralWatermark(mirror=prefs).on_accept(MagicMock(), NOW_MS)
        assert prefs.get_watermark() == NOW_MS

    def test_persistent_seed_prefers_later_stored_value(self, prefs):
        prefs.get_and_advance_watermark(NOW_MS - MINUTE_MS)
        assert PersistentWatermark(prefs).seed(NOW_MS, LOOKBACK_MS) == NOW_MS - MINUTE_MS

    def test_persistent_seed_floors_at_lookback(self, prefs):
        prefs.get_and_advance_watermark(NOW_MS - 60 * MINUTE_MS)
        assert PersistentWatermark(prefs).seed(NOW_MS, LOOKBACK_MS) == NOW_MS - LOOKBACK_MS

    def test_persistent_on_accept_never_moves_back(self, prefs):
        policy = PersistentWatermark(prefs)
        policy.on_accept(MagicMock(), NOW_MS)
        policy.on_accept(MagicMock(), NOW_MS - 1000)
        assert prefs.get_watermark() == NOW_MS


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Coordinator
# ═══════════════════════════════════════════════════════════════════════════

class TestCoordinator:

    def test_background_start_listens_on_active_community(self, coordinator):
        assert coordinator.start_background() == ObserverState.LISTENING
        assert coordinator.background.community_id == "riverside"
        assert coordinator.foreground.state == ObserverState.DETACHED

    def test_background_without_community_stays_detached(self, dispatcher):
        c = DualObserverCoordinator(dispatcher, PreferenceStore(), config=_make_settings())
        assert c.start_background() == ObserverState.DETACHED

    def test_both_channels_receive_the_same_alert(self, coordinator, dispatcher):
        coordinator.start_background()
        coordinator.attach_foreground()
        dispatcher.publish("riverside", _make_raw("USER-AB2", 5))

        dialog = coordinator.foreground.sink.drain()
        notices = coordinator.background.sink.drain()
        assert [d["title"] for d in dialog] == ["EMERGENCY ALERT"]
        assert [n["title"] for n in notices] == ["EMERGENCY: USER-AB2"]

    def test_own_broadcast_shows_nowhere(self, coordinator, dispatcher):
        coordinator.start_background()
        coordinator.attach_foreground()
        dispatcher.publish("riverside", _make_raw("USER-ME1", 5))
        assert len(coordinator.foreground.sink) == 0
        assert len(coordinator.background.sink) == 0

    def test_background_persists_watermark(self, coordinator, dispatcher, prefs):
        coordinator.start_background()
        dispatcher.publish("riverside", _make_raw("USER-AB2", 5))
        assert prefs.get_watermark() == NOW_MS + 5000

    def test_foreground_does_not_touch_durable_watermark(self, coordinator, dispatcher, prefs):
        coordinator.attach_foreground()
        dispatcher.publish("riverside", _make_raw("USER-AB2", 5))
        assert len(coordinator.foreground.sink) == 1
        assert prefs.get_watermark() is None

    def test_foreground_accept_does_not_hide_alert_from_background(
        self, coordinator, dispatcher,
    ):
        coordinator.attach_foreground()
        dispatcher.publish("riverside", _make_raw("USER-AB2", 5))
        coordinator.start_background()
        assert len(coordinator.background.sink) == 1

    def test_foreground_attaching_late_sees_full_window(self, coordinator, dispatcher):
        coordinator.start_background()
        for i in range(280):
            dispatcher.publish("riverside", _make_raw(f"USER-{i:03d}", -280 + i))

        coordinator.attach_foreground()
        assert coordinator.background.sink.delivered == 280
        assert coordinator.foreground.sink.delivered == 280

    def test_shared_watermark_opt_in(self, dispatcher, prefs):
        c = DualObserverCoordinator(
            dispatcher, prefs, config=_make_settings(SHARE_FOREGROUND_WATERMARK=True),
        )
        c.attach_foreground()
        dispatcher.publish("riverside", _make_raw("USER-AB2", 5))
        assert prefs.get_watermark() == NOW_MS + 5000

        c.start_background()
        assert len(c.background.sink) == 0
        c.stop()

    def test_detach_foreground_keeps_background(self, coordinator, dispatcher):
        coordinator.start_background()
        coordinator.attach_foreground()
        coordinator.detach_foreground()
        assert coordinator.foreground.state == ObserverState.DETACHED
        assert coordinator.background.is_listening
        assert dispatcher.has_subscription("riverside")

    def test_sync_follows_community_change(self, coordinator, prefs, dispatcher):
        coordinator.start_background()
        coordinator.attach_foreground()
        prefs.set_active_community("hilltop")
        states = coordinator.sync()
        assert states == {"ui": "listening", "background": "listening"}
        assert coordinator.background.community_id == "hilltop"
        assert coordinator.foreground.community_id == "hilltop"
        assert not dispatcher.has_subscription("riverside")

    def test_sync_leaves_stopped_observers_alone(self, coordinator):
        states = coordinator.sync()
        assert states == {"ui": "detached", "background": "detached"}

    def test_sync_recovers_after_store_error(self, coordinator, store):
        coordinator.start_background()
        store.cancel_partition(alert_partition("riverside"))
        assert coordinator.background.state == ObserverState.DETACHED
        coordinator.sync()
        assert coordinator.background.is_listening

    def test_stop_detaches_both(self, coordinator, dispatcher):
        coordinator.start_background()
        coordinator.attach_foreground()
        coordinator.stop()
        assert dispatcher.stats()["communities"] == 0

    def test_observer_lookup(self, coordinator):
        assert coordinator.observer("ui") is coordinator.foreground
        assert coordinator.observer("background") is coordinator.background
        assert coordinator.observer("watch") is None

    def test_status_lists_both(self, coordinator):
        status = coordinator.status()
        assert status["active_community"] == "riverside"
        assert [o["observer_id"] for o in status["observers"]] == ["ui", "background"]


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Restart / Re-attach
# ═══════════════════════════════════════════════════════════════════════════

class TestResubscription:

    def test_background_resumes_from_persisted_watermark(self, store, clock, prefs):
        first = AlertDispatcher(store, clock=clock, lookback_ms=LOOKBACK_MS)
        c1 = DualObserverCoordinator(first, prefs, config=_make_settings())
        c1.start_background()
        first.publish("riverside", _make_raw("USER-AB2", 5))
        assert len(c1.background.sink) == 1
        c1.stop()
        first.close()

        # Process restarts a minute later; history replays in full
        clock.advance(MINUTE_MS)
        second = AlertDispatcher(store, clock=clock, lookback_ms=LOOKBACK_MS)
        c2 = DualObserverCoordinator(second, prefs, config=_make_settings())
        c2.start_background()
        assert len(c2.background.sink) == 0

        second.publish("riverside", _make_raw("USER-CD3", 70))
        assert [n["sender_id"] for n in c2.background.sink.drain()] == ["USER-CD3"]
        c2.stop()
        second.close()

    def test_foreground_reseeds_from_lookback(self, coordinator, dispatcher, clock):
        coordinator.attach_foreground()
        dispatcher.publish("riverside", _make_raw("USER-AB2", 5))
        coordinator.foreground.sink.drain()
        coordinator.detach_foreground()

        clock.advance(6 * MINUTE_MS)
        coordinator.attach_foreground()
        assert coordinator.foreground.registration.watermark == clock() - LOOKBACK_MS
        assert len(coordinator.foreground.sink) == 0
