"""
base.py — Contract of the remote alert store consumed by the core.

The store is an ordered, append-only event log partitioned by community,
plus a small key-value namespace for point lookups:

    Operation                                 Semantics
    ──────────────────────────────────────    ───────────────────────────────
    publish(partition, record)                append; store assigns the key
    subscribe_tail(partition, on_record)      ALL existing records first, then
                                              live ones, ascending order
    unsubscribe(handle)                       idempotent
    get(path) / set(path, value)              point read / write
    set_if_absent(path, value)                write only when missing

Store paths:

    alerts/{community}             alert partitions
    communities/{name}             {"creator": ..., "createdAt": ...}
    unique_handles/{handle}        True when the handle is taken
    phone_mappings/{safe_phone}    handle registered for a phone
    users/{handle}/phone           phone registered for a handle
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from backend.app.alerts.models import PublishResult
from backend.app.core.errors import StoreError

RecordCallback = Callable[[Dict[str, Any]], None]
ErrorCallback = Callable[[StoreError], None]

ALERTS_ROOT = "alerts"
COMMUNITIES_ROOT = "communities"
HANDLES_ROOT = "unique_handles"
PHONE_MAPPINGS_ROOT = "phone_mappings"
USERS_ROOT = "users"


def alert_partition(community_id: str) -> str:
    return f"{ALERTS_ROOT}/{community_id}"


@dataclass(eq=False)
class SubscriptionHandle:
    """One live tail read; owned by whoever called subscribe_tail."""
    partition_key: str
    handle_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    active: bool = True

    def __repr__(self) -> str:
        state = "active" if self.active else "released"
        return f"<SubscriptionHandle {self.handle_id} {self.partition_key} {state}>"


class AlertStoreClient(ABC):
    """Abstract pub/sub + key-value store."""

    name = "abstract"

    @abstractmethod
    def publish(self, partition_key: str, record: Dict[str, Any]) -> PublishResult:
        """Append a record; failures are reported in the result, not raised."""

    @abstractmethod
    def subscribe_tail(
        self,
        partition_key: str,
        on_record: RecordCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> SubscriptionHandle:
        """Replay the partition's history, then stream new records."""

    @abstractmethod
    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Release a subscription. Safe to call more than once."""

    @abstractmethod
    def get(self, path: str) -> Any:
        """Value stored at ``path`` or None. Raises StoreError."""

    @abstractmethod
    def set(self, path: str, value: Any) -> None:
        """Overwrite the value at ``path``. Raises StoreError."""

    def exists(self, path: str) -> bool:
        return self.get(path) is not None

    def set_if_absent(self, path: str, value: Any) -> bool:
        """Write ``value`` unless ``path`` is taken; True when written."""
        if self.exists(path):
            return False
        self.set(path, value)
        return True

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        """Release every connection and subscription."""
