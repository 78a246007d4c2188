"""
observers.py — Foreground and background alert observers.

Two logical observers watch the same community on one device:

    Observer      id            Watermark                    Channel
    ──────────    ──────────    ─────────────────────────    ───────────────────
    foreground    "ui"          memory only, re-seeded on    in-app dialog
                                every attach
    background    "background"  persisted after each accept, system notification
                                reloaded on start

Each registers separately with the dispatcher and owns its watermark, so
one observer consuming an alert never hides it from the other. The same
alert reaching both channels is intended.

═══════════════════════════════════════════════════════════════════════════
STATE MACHINE (per observer)
═══════════════════════════════════════════════════════════════════════════

    DETACHED ──attach(c)──▶ SUBSCRIBING ──subscribed──▶ LISTENING
       ▲                        │                          │
       │                  store error                detach() / error /
       └────────────────────────┴──────────────────── community change

Attaching to a different community while LISTENING goes
LISTENING → DETACHED → SUBSCRIBING(new) → LISTENING.

═══════════════════════════════════════════════════════════════════════════
SHARED DURABLE WATERMARK (opt-in)
═══════════════════════════════════════════════════════════════════════════

With SHARE_FOREGROUND_WATERMARK enabled, foreground accepts are also
written to the persisted background watermark. That lets an alert seen
in-app suppress the later system notification, and it also means an
alert that arrives while only the UI is open is marked seen for the
background channel before it ever notifies. Off by default.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, Optional

from backend.app.alerts.channels import in_app_dialog, system_notification
from backend.app.alerts.channels.outbox import ChannelOutbox
from backend.app.alerts.dispatcher import (
    AlertDispatcher,
    AlertSink,
    IdentitySource,
    ObserverRegistration,
)
from backend.app.alerts.freshness import seed_watermark
from backend.app.alerts.models import AlertRecord
from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.errors import StoreError
from backend.app.core.preferences import PreferenceStore

logger = logging.getLogger(__name__)


class ObserverState(str, Enum):
    DETACHED    = "detached"
    SUBSCRIBING = "subscribing"
    LISTENING   = "listening"


# ═══════════════════════════════════════════════════════════════════════════
# Watermark Policies
# ═══════════════════════════════════════════════════════════════════════════

class WatermarkPolicy(ABC):
    """How an observer seeds its watermark and what an accept persists."""

    durable = False

    @abstractmethod
    def seed(self, now: int, lookback_ms: int) -> int:
        ...

    def on_accept(self, record: AlertRecord, watermark: int) -> None:
        return None


class EphemeralWatermark(WatermarkPolicy):
    """
    Memory-only watermark, reset to ``now - lookback`` on every attach.

    ``mirror`` enables the legacy coupling: accepts also advance the
    persisted background watermark.
    """

    def __init__(self, mirror: Optional[PreferenceStore] = None) -> None:
        self.mirror = mirror

    def seed(self, now: int, lookback_ms: int) -> int:
        return seed_watermark(now, lookback_ms)

    def on_accept(self, record: AlertRecord, watermark: int) -> None:
        if self.mirror is not None:
            self.mirror.get_and_advance_watermark(watermark)


class PersistentWatermark(WatermarkPolicy):
    """Watermark stored in preferences; survives process restarts."""

    durable = True

    def __init__(self, preferences: PreferenceStore) -> None:
        self.preferences = preferences

    def seed(self, now: int, lookback_ms: int) -> int:
        return seed_watermark(now, lookback_ms, self.preferences.get_watermark())

    def on_accept(self, record: AlertRecord, watermark: int) -> None:
        self.preferences.get_and_advance_watermark(watermark)


# ═══════════════════════════════════════════════════════════════════════════
# Observer
# ═══════════════════════════════════════════════════════════════════════════

class AlertObserver:
    """One logical consumer of a community's alert stream."""

    def __init__(
        self,
        observer_id: str,
        dispatcher: AlertDispatcher,
        policy: WatermarkPolicy,
        sink: AlertSink,
        *,
        identity: IdentitySource = None,
    ) -> None:
        self.observer_id = observer_id
        self.dispatcher = dispatcher
        self.policy = policy
        self.sink = sink
        self.identity = identity
        self.state = ObserverState.DETACHED
        self.community_id: Optional[str] = None
        self.registration: Optional[ObserverRegistration] = None
        self.last_error: Optional[str] = None
        self._generation = 0
        self._lock = threading.RLock()

    @property
    def is_listening(self) -> bool:
        return self.state == ObserverState.LISTENING

    def attach(self, community_id: Optional[str]) -> ObserverState:
        """
        Start listening to ``community_id``. A no-op when already listening
        there; detaches first when listening elsewhere. An empty community
        leaves the observer detached.
        """
        with self._lock:
            if not community_id:
                self._detach_locked()
                return self.state
            if self.is_listening and community_id == self.community_id:
                return self.state
            if self.state != ObserverState.DETACHED:
                self._detach_locked()

            self._generation += 1
            generation = self._generation
            self.state = ObserverState.SUBSCRIBING
            self.community_id = community_id
            self.last_error = None

            seed = self.policy.seed(self.dispatcher.clock(), self.dispatcher.lookback_ms)
            try:
                registration = self.dispatcher.subscribe(
                    community_id,
                    self.observer_id,
                    self.sink,
                    self_identity=self.identity,
                    watermark=seed,
                    on_accept=self.policy.on_accept,
                    on_error=lambda exc: self._on_error(generation, exc),
                )
            except StoreError as exc:
                logger.error(
                    "Observer %s could not subscribe to %s: %s",
                    self.observer_id, community_id, exc.message,
                    extra={"observer_id": self.observer_id, "community_id": community_id},
                )
                self._reset(error=exc.message)
                return self.state

            if generation != self._generation or not registration.active:
                # Terminated while the history was replaying
                return self.state

            self.registration = registration
            self.state = ObserverState.LISTENING
            return self.state

    def switch_community(self, community_id: Optional[str]) -> ObserverState:
        return self.attach(community_id)

    def detach(self) -> None:
        """Stop listening. Safe to call when already detached."""
        with self._lock:
            self._detach_locked()

    def _detach_locked(self) -> None:
        if self.state == ObserverState.DETACHED:
            return
        community_id = self.community_id
        self._generation += 1
        if community_id:
            self.dispatcher.unsubscribe(community_id, self.observer_id)
        logger.info(
            "Observer %s detached from %s", self.observer_id, community_id,
            extra={"observer_id": self.observer_id, "community_id": community_id},
        )
        self._reset()

    def _reset(self, error: Optional[str] = None) -> None:
        self.state = ObserverState.DETACHED
        self.community_id = None
        self.registration = None
        if error is not None:
            self.last_error = error

    def _on_error(self, generation: int, exc: StoreError) -> None:
        with self._lock:
            if generation != self._generation:
                return
            logger.warning(
                "Observer %s lost its subscription to %s: %s",
                self.observer_id, self.community_id, exc.message,
                extra={"observer_id": self.observer_id, "community_id": self.community_id},
            )
            self._generation += 1
            self._reset(error=exc.message)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            registration = self.registration
            return {
                "observer_id": self.observer_id,
                "state": self.state.value,
                "community_id": self.community_id,
                "durable": self.policy.durable,
                "watermark": registration.watermark if registration else None,
                "accepted": registration.accepted if registration else 0,
                "pending": len(self.sink) if isinstance(self.sink, ChannelOutbox) else None,
                "last_error": self.last_error,
            }


# ═══════════════════════════════════════════════════════════════════════════
# Coordinator
# ═══════════════════════════════════════════════════════════════════════════

class DualObserverCoordinator:
    """
    Owns the foreground and background observers for one device.

    The background observer runs from start_background() until stop();
    the foreground observer only between attach_foreground() and
    detach_foreground(). sync() re-reads the active community and moves
    every running observer onto it.
    """

    def __init__(
        self,
        dispatcher: AlertDispatcher,
        preferences: PreferenceStore,
        *,
        foreground_sink: Optional[AlertSink] = None,
        background_sink: Optional[AlertSink] = None,
        config: Optional[Settings] = None,
    ) -> None:
        config = config or default_settings
        self.dispatcher = dispatcher
        self.preferences = preferences
        identity: Callable[[], Optional[str]] = preferences.get_handle

        mirror = preferences if config.SHARE_FOREGROUND_WATERMARK else None
        self.foreground = AlertObserver(
            config.FOREGROUND_OBSERVER_ID,
            dispatcher,
            EphemeralWatermark(mirror=mirror),
            foreground_sink or ChannelOutbox(in_app_dialog.CHANNEL_NAME, in_app_dialog.render),
            identity=identity,
        )
        self.background = AlertObserver(
            config.BACKGROUND_OBSERVER_ID,
            dispatcher,
            PersistentWatermark(preferences),
            background_sink or ChannelOutbox(
                system_notification.CHANNEL_NAME, system_notification.render,
            ),
            identity=identity,
        )
        self._background_running = False
        self._foreground_visible = False

    def observer(self, observer_id: str) -> Optional[AlertObserver]:
        for candidate in (self.foreground, self.background):
            if candidate.observer_id == observer_id:
                return candidate
        return None

    def start_background(self) -> ObserverState:
        self._background_running = True
        return self.background.attach(self.preferences.get_active_community())

    def attach_foreground(self) -> ObserverState:
        self._foreground_visible = True
        return self.foreground.attach(self.preferences.get_active_community())

    def detach_foreground(self) -> None:
        self._foreground_visible = False
        self.foreground.detach()

    def sync(self) -> Dict[str, str]:
        """Follow a change of active community (or retry after an error)."""
        community_id = self.preferences.get_active_community()
        if self._background_running:
            self.background.attach(community_id)
        if self._foreground_visible:
            self.foreground.attach(community_id)
        return {
            self.foreground.observer_id: self.foreground.state.value,
            self.background.observer_id: self.background.state.value,
        }

    def stop(self) -> None:
        self._foreground_visible = False
        self._background_running = False
        self.foreground.detach()
        self.background.detach()

    def status(self) -> Dict[str, Any]:
        return {
            "active_community": self.preferences.get_active_community(),
            "observers": [self.foreground.status(), self.background.status()],
        }
