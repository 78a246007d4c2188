"""
outbox.py — Bounded holding area between an observer and its channel.

A ChannelOutbox is the sink an observer hands to the dispatcher: each
accepted record is rendered by the channel and queued until the UI (or
the HTTP API) drains it. When full, the oldest entry is dropped.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from backend.app.alerts.models import AlertRecord
from backend.app.core.config import settings

logger = logging.getLogger(__name__)

Renderer = Callable[[AlertRecord], Dict[str, Any]]


class ChannelOutbox:
    """Callable sink: render → enqueue."""

    def __init__(
        self,
        name: str,
        renderer: Renderer,
        *,
        capacity: Optional[int] = None,
    ) -> None:
        self.name = name
        self._renderer = renderer
        self._items: Deque[Dict[str, Any]] = deque(
            maxlen=capacity or settings.CHANNEL_OUTBOX_SIZE
        )
        self._lock = threading.Lock()
        self.delivered = 0
        self.dropped = 0

    def __call__(self, record: AlertRecord) -> None:
        rendered = self._renderer(record)
        with self._lock:
            if len(self._items) == self._items.maxlen:
                self.dropped += 1
                logger.warning("Outbox %s full; dropping oldest alert", self.name)
            self._items.append(rendered)
            self.delivered += 1

    def drain(self) -> List[Dict[str, Any]]:
        """Remove and return everything queued, oldest first."""
        with self._lock:
            items = list(self._items)
            self._items.clear()
        return items

    def peek(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
