"""
memory.py — Process-local alert store for development and tests.

Mirrors the semantics of the remote store closely enough for the core:
    • subscribe_tail replays the partition's history synchronously
      before returning, then delivers live records in publish order
    • delivery happens on the publisher's thread, under the store lock,
      so every subscription sees one time-ordered sequence
    • records and values are copied on the way in and out
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from backend.app.alerts.models import PublishResult, PublishStatus
from backend.app.core.errors import StoreError
from backend.app.store.base import (
    AlertStoreClient,
    ErrorCallback,
    RecordCallback,
    SubscriptionHandle,
)

logger = logging.getLogger(__name__)


@dataclass
class _Listener:
    handle: SubscriptionHandle
    on_record: RecordCallback
    on_error: Optional[ErrorCallback]


class InMemoryAlertStore(AlertStoreClient):
    """Thread-safe in-memory implementation of AlertStoreClient."""

    name = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._partitions: Dict[str, List[Tuple[str, Dict[str, Any]]]] = {}
        self._listeners: Dict[str, List[_Listener]] = {}
        self._values: Dict[str, Any] = {}
        self._seq = itertools.count(1)

    # ── Event log ──

    def _next_key(self) -> str:
        # Sorts in insertion order, like server push ids
        return f"{int(time.time() * 1000):013d}-{next(self._seq):06d}"

    def publish(self, partition_key: str, record: Dict[str, Any]) -> PublishResult:
        with self._lock:
            key = self._next_key()
            stored = copy.deepcopy(dict(record))
            self._partitions.setdefault(partition_key, []).append((key, stored))
            for listener in list(self._listeners.get(partition_key, [])):
                self._deliver(listener, stored)

        logger.debug("Appended %s to %s", key, partition_key)
        return PublishResult(
            community_id=partition_key.rsplit("/", 1)[-1],
            status=PublishStatus.PUBLISHED,
            key=key,
        )

    def subscribe_tail(
        self,
        partition_key: str,
        on_record: RecordCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> SubscriptionHandle:
        handle = SubscriptionHandle(partition_key=partition_key)
        listener = _Listener(handle, on_record, on_error)
        with self._lock:
            for _key, stored in self._partitions.get(partition_key, []):
                if not handle.active:
                    break
                self._deliver(listener, stored)
            if handle.active:
                self._listeners.setdefault(partition_key, []).append(listener)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        with self._lock:
            handle.active = False
            listeners = self._listeners.get(handle.partition_key, [])
            remaining = [l for l in listeners if l.handle is not handle]
            if remaining:
                self._listeners[handle.partition_key] = remaining
            else:
                self._listeners.pop(handle.partition_key, None)

    def _deliver(self, listener: _Listener, stored: Dict[str, Any]) -> None:
        if not listener.handle.active:
            return
        try:
            listener.on_record(copy.deepcopy(stored))
        except Exception:
            logger.exception(
                "Subscriber %s raised while handling a record",
                listener.handle.handle_id,
            )

    def cancel_partition(self, partition_key: str, reason: str = "cancelled") -> int:
        """
        Terminate every subscription on a partition with an error, the
        way a remote store reports revoked access or a dropped channel.

        Returns the number of subscriptions cancelled.
        """
        with self._lock:
            listeners = self._listeners.pop(partition_key, [])
            for listener in listeners:
                listener.handle.active = False
        for listener in listeners:
            if listener.on_error is not None:
                listener.on_error(
                    StoreError("subscribe", reason, partition=partition_key)
                )
        return len(listeners)

    def history(self, partition_key: str) -> List[Tuple[str, Dict[str, Any]]]:
        with self._lock:
            return copy.deepcopy(self._partitions.get(partition_key, []))

    def subscriber_count(self, partition_key: Optional[str] = None) -> int:
        with self._lock:
            if partition_key is not None:
                return len(self._listeners.get(partition_key, []))
            return sum(len(v) for v in self._listeners.values())

    # ── Key-value ──

    def get(self, path: str) -> Any:
        with self._lock:
            return copy.deepcopy(self._values.get(path))

    def set(self, path: str, value: Any) -> None:
        with self._lock:
            self._values[path] = copy.deepcopy(value)

    def set_if_absent(self, path: str, value: Any) -> bool:
        with self._lock:
            if self._values.get(path) is not None:
                return False
            self._values[path] = copy.deepcopy(value)
            return True

    def close(self) -> None:
        with self._lock:
            for listeners in self._listeners.values():
                for listener in listeners:
                    listener.handle.active = False
            self._listeners.clear()
