"""
store — Clients for the remote alert store.

Sub-modules:
    base         — AlertStoreClient contract, subscription handle, paths
    memory       — in-process store (development, tests)
    redis_store  — Redis Streams store (production)
"""

from __future__ import annotations

import logging
from typing import Optional

from backend.app.core.config import Settings, settings as default_settings
from backend.app.store.base import AlertStoreClient, SubscriptionHandle, alert_partition
from backend.app.store.memory import InMemoryAlertStore

logger = logging.getLogger(__name__)


def create_store(config: Optional[Settings] = None) -> AlertStoreClient:
    """Build the store client selected by ALERT_STORE_BACKEND."""
    config = config or default_settings
    backend = config.ALERT_STORE_BACKEND.lower()

    if backend == "memory":
        return InMemoryAlertStore()
    if backend == "redis":
        from backend.app.store.redis_store import RedisAlertStore
        logger.info("Using Redis alert store at %s", config.REDIS_URL.split("@")[-1])
        return RedisAlertStore(
            config.REDIS_URL,
            key_prefix=config.REDIS_KEY_PREFIX,
            block_ms=config.REDIS_BLOCK_MS,
        )
    raise ValueError(f"Unknown ALERT_STORE_BACKEND: {config.ALERT_STORE_BACKEND!r}")


__all__ = [
    "AlertStoreClient",
    "InMemoryAlertStore",
    "SubscriptionHandle",
    "alert_partition",
    "create_store",
]
