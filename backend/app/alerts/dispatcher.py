"""
dispatcher.py — Fan one community tail out to many observers.

The dispatcher owns at most ONE store subscription per community and
evaluates every delivered record separately for each registered observer,
each against its own watermark.

═══════════════════════════════════════════════════════════════════════════
FLOW
═══════════════════════════════════════════════════════════════════════════

    store.subscribe_tail(alerts/{community})
              │  history first, then live records
              ▼
    ┌──────────────────────────┐
    │  _on_record(channel)     │  keep in replay window
    └────────────┬─────────────┘
                 │  for each observer on the community
                 ▼
    ┌──────────────────────────┐
    │  freshness.evaluate()    │  own watermark, own identity
    └────────────┬─────────────┘
        accept   │   reject → counted, dropped
                 ▼
    watermark advanced → on_accept(record, watermark) → sink(record)

Observers joining an already-live subscription are first fed the replay
window: every record whose timestamp is still inside the lookback. No
observer is ever seeded below `now - lookback`, so anything older would be
rejected as stale by a fresh tail too.

═══════════════════════════════════════════════════════════════════════════
CONCURRENCY
═══════════════════════════════════════════════════════════════════════════

One re-entrant lock serializes registration changes and every filter
evaluation. Sinks run under it and may call back into the dispatcher
(e.g. unsubscribe from inside a sink). Calls into the store are made
outside the lock, since stores deliver records under locks of their own.
Exceptions raised by sinks and hooks are logged and contained; one
observer never breaks another.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from backend.app.alerts.freshness import (
    FreshnessDecision,
    evaluate,
    now_ms,
    parse_timestamp,
    seed_watermark,
)
from backend.app.alerts.models import AlertRecord, PublishResult, PublishStatus, RejectReason
from backend.app.core.config import settings
from backend.app.core.errors import StoreError
from backend.app.store.base import AlertStoreClient, SubscriptionHandle, alert_partition

logger = logging.getLogger(__name__)

AlertSink = Callable[[AlertRecord], None]
AcceptHook = Callable[[AlertRecord, int], None]
ObserverErrorCallback = Callable[[StoreError], None]
IdentitySource = Union[str, Callable[[], Optional[str]], None]


# ═══════════════════════════════════════════════════════════════════════════
# Registration
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(eq=False)
class ObserverRegistration:
    """One observer's view of one community subscription."""
    community_id: str
    observer_id: str
    sink: AlertSink
    watermark: int
    identity: IdentitySource = None
    on_accept: Optional[AcceptHook] = None
    on_error: Optional[ObserverErrorCallback] = None
    active: bool = True
    accepted: int = 0
    rejected: Counter = field(default_factory=Counter)

    def self_identity(self) -> Optional[str]:
        if callable(self.identity):
            return self.identity()
        return self.identity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "community_id": self.community_id,
            "observer_id": self.observer_id,
            "watermark": self.watermark,
            "active": self.active,
            "accepted": self.accepted,
            "rejected": {reason.value: n for reason, n in self.rejected.items()},
        }


ReplayEntry = Tuple[int, Mapping[str, Any]]


@dataclass(eq=False)
class _CommunityChannel:
    community_id: str
    replay: List[ReplayEntry] = field(default_factory=list)   # (alert_time, raw)
    observers: Dict[str, ObserverRegistration] = field(default_factory=dict)
    handle: Optional[SubscriptionHandle] = None
    records_seen: int = 0


# ═══════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═══════════════════════════════════════════════════════════════════════════

class AlertDispatcher:
    """
    Shares community subscriptions between observers.

    Parameters
    ----------
    store : AlertStoreClient
        Passed in explicitly; the dispatcher owns the subscriptions it opens.
    clock : callable
        Returns "now" in epoch ms (injectable for tests).
    lookback_ms : int
        Default watermark seed distance when an observer brings none.
    timestamp_format : str
        Wire timestamp pattern, used to age records out of the replay window.
    """

    def __init__(
        self,
        store: AlertStoreClient,
        *,
        clock: Callable[[], int] = now_ms,
        lookback_ms: Optional[int] = None,
        timestamp_format: Optional[str] = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.lookback_ms = lookback_ms if lookback_ms is not None else settings.lookback_ms
        self.timestamp_format = timestamp_format or settings.ALERT_TIMESTAMP_FORMAT
        self._channels: Dict[str, _CommunityChannel] = {}
        self._lock = threading.RLock()

    # ── Publish side ──

    def publish(self, community_id: str, record: Union[AlertRecord, Mapping[str, Any]]) -> PublishResult:
        """Append a record to the community partition. No queuing, no retry."""
        payload = record.to_dict() if isinstance(record, AlertRecord) else dict(record)
        try:
            result = self.store.publish(alert_partition(community_id), payload)
        except Exception as exc:
            logger.error("Publish to %s raised: %s", community_id, exc)
            return PublishResult(
                community_id=community_id,
                status=PublishStatus.FAILED,
                error=str(exc),
            )
        result.community_id = community_id
        if result.ok:
            logger.info(
                "Published alert %s to %s", result.key, community_id,
                extra={"community_id": community_id, "alert_key": result.key},
            )
        else:
            logger.warning(
                "Publish to %s failed: %s", community_id, result.error,
                extra={"community_id": community_id},
            )
        return result

    # ── Subscribe side ──

    def subscribe(
        self,
        community_id: str,
        observer_id: str,
        sink: AlertSink,
        *,
        self_identity: IdentitySource = None,
        watermark: Optional[int] = None,
        on_accept: Optional[AcceptHook] = None,
        on_error: Optional[ObserverErrorCallback] = None,
    ) -> ObserverRegistration:
        """
        Register an observer on a community.

        The first observer on a community opens the store subscription;
        later ones share it. Re-registering an observer id that is already
        present replaces its registration (fresh watermark).

        Raises StoreError if the store refuses the subscription.
        """
        if not community_id:
            raise ValueError("community_id must not be empty")

        seed = watermark if watermark is not None else seed_watermark(
            self.clock(), self.lookback_ms,
        )
        registration = ObserverRegistration(
            community_id=community_id,
            observer_id=observer_id,
            sink=sink,
            watermark=seed,
            identity=self_identity,
            on_accept=on_accept,
            on_error=on_error,
        )

        with self._lock:
            channel = self._channels.get(community_id)
            if channel is not None:
                previous = channel.observers.pop(observer_id, None)
                if previous is not None:
                    previous.active = False
                    logger.warning(
                        "Observer %s re-subscribed to %s; replacing registration",
                        observer_id, community_id,
                    )
                channel.observers[observer_id] = registration
                self._prune_replay(channel)
                for _, raw in list(channel.replay):
                    self._evaluate_for(registration, raw)
                logger.info(
                    "Observer %s joined live subscription on %s (watermark=%d)",
                    observer_id, community_id, seed,
                    extra={"community_id": community_id, "observer_id": observer_id},
                )
                return registration

            channel = _CommunityChannel(community_id=community_id)
            channel.observers[observer_id] = registration
            self._channels[community_id] = channel

        # Store calls happen outside our lock: stores deliver under their own
        try:
            handle = self.store.subscribe_tail(
                alert_partition(community_id),
                lambda raw, ch=channel: self._on_record(ch, raw),
                lambda exc, ch=channel: self._on_store_error(ch, exc),
            )
        except Exception as exc:
            error = exc if isinstance(exc, StoreError) else StoreError(
                "subscribe", str(exc), community_id=community_id,
            )
            with self._lock:
                if self._channels.get(community_id) is channel:
                    self._channels.pop(community_id, None)
                others = [r for r in channel.observers.values() if r is not registration]
                channel.observers.clear()
                registration.active = False
                for other in others:
                    other.active = False
            for other in others:
                if other.on_error is not None:
                    other.on_error(error)
            if error is exc:
                raise
            raise error from exc

        with self._lock:
            attached = self._channels.get(community_id) is channel
            if attached:
                channel.handle = handle
        if not attached:
            # Every observer left while the history was replaying
            self.store.unsubscribe(handle)

        logger.info(
            "Subscribed %s to %s (watermark=%d)",
            observer_id, community_id, seed,
            extra={"community_id": community_id, "observer_id": observer_id},
        )
        return registration

    def unsubscribe(self, community_id: str, observer_id: str) -> bool:
        """
        Remove an observer. Releases the store subscription when it was the
        last one. Idempotent; returns False when nothing was registered.
        """
        handle: Optional[SubscriptionHandle] = None
        with self._lock:
            channel = self._channels.get(community_id)
            if channel is None:
                return False
            registration = channel.observers.pop(observer_id, None)
            if registration is None:
                return False
            registration.active = False
            released = not channel.observers
            if released:
                self._channels.pop(community_id, None)
                handle, channel.handle = channel.handle, None
        if handle is not None:
            self.store.unsubscribe(handle)

        logger.info(
            "Unsubscribed %s from %s%s",
            observer_id, community_id,
            " (subscription released)" if released else "",
            extra={"community_id": community_id, "observer_id": observer_id},
        )
        return True

    def close(self) -> None:
        """Release every subscription and forget all observers."""
        handles: List[SubscriptionHandle] = []
        with self._lock:
            channels = list(self._channels.values())
            self._channels.clear()
            for channel in channels:
                for registration in channel.observers.values():
                    registration.active = False
                channel.observers.clear()
                if channel.handle is not None:
                    handles.append(channel.handle)
                    channel.handle = None
        for handle in handles:
            self.store.unsubscribe(handle)

    # ── Introspection ──

    def registration(self, community_id: str, observer_id: str) -> Optional[ObserverRegistration]:
        with self._lock:
            channel = self._channels.get(community_id)
            return channel.observers.get(observer_id) if channel else None

    def has_subscription(self, community_id: str) -> bool:
        with self._lock:
            return community_id in self._channels

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "communities": len(self._channels),
                "observers": sum(len(c.observers) for c in self._channels.values()),
                "subscriptions": {
                    c.community_id: {
                        "records_seen": c.records_seen,
                        "replay_window": len(c.replay),
                        "observers": [r.to_dict() for r in c.observers.values()],
                    }
                    for c in self._channels.values()
                },
            }

    # ── Store callbacks ──

    def _on_record(self, channel: _CommunityChannel, raw: Mapping[str, Any]) -> None:
        with self._lock:
            if self._channels.get(channel.community_id) is not channel:
                return  # late delivery on a released subscription
            channel.records_seen += 1
            self._remember(channel, raw)
            for registration in list(channel.observers.values()):
                self._evaluate_for(registration, raw)

    def _remember(self, channel: _CommunityChannel, raw: Mapping[str, Any]) -> None:
        """Keep a record for late joiners while it is inside the lookback."""
        try:
            alert_time = parse_timestamp(raw.get("timestamp"), self.timestamp_format)
        except (AttributeError, TypeError, ValueError):
            return  # unparseable: no observer could ever accept it
        channel.replay.append((alert_time, raw))
        self._prune_replay(channel)

    def _prune_replay(self, channel: _CommunityChannel) -> None:
        # Every seed is >= now - lookback, so older records are stale for anyone
        horizon = self.clock() - self.lookback_ms
        if channel.replay and min(t for t, _ in channel.replay) <= horizon:
            channel.replay = [entry for entry in channel.replay if entry[0] > horizon]

    def _evaluate_for(self, registration: ObserverRegistration, raw: Mapping[str, Any]) -> None:
        if not registration.active:
            return

        decision: FreshnessDecision = evaluate(
            raw, registration.watermark, registration.self_identity(),
        )
        if not decision.accepted:
            registration.rejected[decision.reason or RejectReason.MALFORMED] += 1
            return

        registration.watermark = decision.watermark
        registration.accepted += 1
        record = decision.record
        logger.info(
            "Alert from %s accepted by %s on %s",
            record.sender_id, registration.observer_id, registration.community_id,
            extra={
                "community_id": registration.community_id,
                "observer_id": registration.observer_id,
                "sender_id": record.sender_id,
                "alert_time": decision.alert_time,
                "watermark": decision.watermark,
            },
        )

        if registration.on_accept is not None:
            try:
                registration.on_accept(record, decision.watermark)
            except Exception:
                logger.exception(
                    "on_accept hook of %s failed", registration.observer_id,
                )
        try:
            registration.sink(record)
        except Exception:
            logger.exception(
                "Sink of observer %s failed for alert from %s",
                registration.observer_id, record.sender_id,
            )

    def _on_store_error(self, channel: _CommunityChannel, exc: StoreError) -> None:
        with self._lock:
            if self._channels.get(channel.community_id) is not channel:
                return
            self._channels.pop(channel.community_id, None)
            registrations: List[ObserverRegistration] = list(channel.observers.values())
            channel.observers.clear()
            for registration in registrations:
                registration.active = False
            handle, channel.handle = channel.handle, None
        if handle is not None:
            self.store.unsubscribe(handle)

        logger.error(
            "Subscription on %s terminated: %s", channel.community_id, exc.message,
            extra={"community_id": channel.community_id},
        )
        for registration in registrations:
            if registration.on_error is None:
                continue
            try:
                registration.on_error(exc)
            except Exception:
                logger.exception(
                    "on_error callback of %s failed", registration.observer_id,
                )
