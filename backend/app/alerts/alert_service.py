"""
alert_service.py — Wires the alert pipeline together for one device/process.

    ┌─────────────────────┐
    │  AlertStoreClient   │  memory | redis (ALERT_STORE_BACKEND)
    └─────────┬───────────┘
              │ passed in explicitly, no global handle
              ▼
    ┌─────────────────────┐        ┌─────────────────────┐
    │  AlertDispatcher    │◀───────│  AlertPublisher     │  sender side
    └─────────┬───────────┘        └─────────────────────┘
              │
              ▼
    ┌─────────────────────┐        ┌─────────────────────┐
    │  DualObserver       │───────▶│  ChannelOutbox x2   │  dialog / notification
    │  Coordinator        │        └─────────────────────┘
    └─────────────────────┘
              ▲
              │ active community, handle, durable watermark
    ┌─────────────────────┐        ┌─────────────────────┐
    │  PreferenceStore    │◀───────│  CommunityRegistry  │  setup flow
    └─────────────────────┘        └─────────────────────┘

The FastAPI app builds one AlertService at startup (see main.py) and
tears it down on shutdown.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from backend.app.alerts.channels.system_notification import monitoring_notice
from backend.app.alerts.dispatcher import AlertDispatcher
from backend.app.alerts.freshness import now_ms
from backend.app.alerts.observers import DualObserverCoordinator
from backend.app.alerts.publisher import AlertPublisher
from backend.app.community.registry import CommunityRegistry
from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.preferences import PreferenceStore
from backend.app.store import AlertStoreClient, create_store

logger = logging.getLogger(__name__)


class AlertService:
    """Owns the store, dispatcher, observers and collaborators."""

    def __init__(
        self,
        store: AlertStoreClient,
        preferences: PreferenceStore,
        *,
        config: Optional[Settings] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.config = config or default_settings
        self.store = store
        self.preferences = preferences
        self.dispatcher = AlertDispatcher(
            store,
            clock=clock,
            lookback_ms=self.config.lookback_ms,
            timestamp_format=self.config.ALERT_TIMESTAMP_FORMAT,
        )
        self.coordinator = DualObserverCoordinator(
            self.dispatcher, preferences, config=self.config,
        )
        self.publisher = AlertPublisher(self.dispatcher, preferences, config=self.config)
        self.registry = CommunityRegistry(store, preferences, config=self.config, clock=clock)

    def start(self) -> None:
        """Begin background monitoring of the active community."""
        state = self.coordinator.start_background()
        logger.info(
            "Alert service started (store=%s, community=%s, background=%s)",
            self.store.name,
            self.preferences.get_active_community(),
            state.value,
        )

    def shutdown(self) -> None:
        self.coordinator.stop()
        self.dispatcher.close()
        self.store.close()
        logger.info("Alert service stopped")

    def status(self) -> Dict[str, Any]:
        monitoring = self.coordinator.background.is_listening
        return {
            "store": self.store.name,
            "handle": self.preferences.get_handle(),
            **self.coordinator.status(),
            "dispatcher": self.dispatcher.stats(),
            # persistent notice shown while the background monitor runs
            "monitor_notice": monitoring_notice() if monitoring else None,
        }


def build_alert_service(
    config: Optional[Settings] = None,
    *,
    store: Optional[AlertStoreClient] = None,
    preferences: Optional[PreferenceStore] = None,
) -> AlertService:
    """Construct the service from settings (store and prefs overridable)."""
    config = config or default_settings
    return AlertService(
        store or create_store(config),
        preferences or PreferenceStore(config.PREFERENCES_PATH),
        config=config,
    )
