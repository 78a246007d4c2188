"""
Local device state — the one owned store for persisted preferences.

Keys:
    COMMUNITY_ID           active community (written by setup, read by observers)
    MY_HANDLE              this device's user handle, e.g. USER-AB2
    MY_PHONE               this user's phone number
    EMERGENCY_PHONE        contact to dial in an emergency
    LAST_ALERT_TIMESTAMP   background observer's durable watermark (epoch ms)

The foreground and background observers may both call
get_and_advance_watermark() concurrently. That race is benign: every
write is "take the max" under one lock, so the stored value only moves
forward whichever caller wins.

Values are kept in memory and, when a path is configured, flushed to a
JSON file after every write (temp file + atomic rename).
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)


class PreferenceKey(str, Enum):
    COMMUNITY_ID = "COMMUNITY_ID"
    MY_HANDLE = "MY_HANDLE"
    MY_PHONE = "MY_PHONE"
    EMERGENCY_PHONE = "EMERGENCY_PHONE"
    LAST_ALERT_TIMESTAMP = "LAST_ALERT_TIMESTAMP"


class PreferenceStore:
    """Thread-safe key-value preferences with optional JSON persistence."""

    def __init__(self, path: Optional[Union[str, Path]] = None) -> None:
        self.path = Path(path) if path else None
        self._lock = threading.RLock()
        self._values: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable preferences %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring preferences %s: not a JSON object", self.path)
            return {}
        return data

    def _flush(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".prefs-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._values, fh, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    # ── Generic access ──

    def get(self, key: Union[PreferenceKey, str], default: Any = None) -> Any:
        with self._lock:
            return self._values.get(_name(key), default)

    def set(self, key: Union[PreferenceKey, str], value: Any) -> None:
        self.update({_name(key): value})

    def update(self, values: Dict[Union[PreferenceKey, str], Any]) -> None:
        with self._lock:
            for key, value in values.items():
                if value is None:
                    self._values.pop(_name(key), None)
                else:
                    self._values[_name(key)] = value
            self._flush()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._values)

    # ── Typed accessors ──

    def get_active_community(self) -> Optional[str]:
        value = self.get(PreferenceKey.COMMUNITY_ID)
        if not isinstance(value, str) or not value.strip():
            return None
        return value.strip()

    def set_active_community(self, community_id: str) -> None:
        self.set(PreferenceKey.COMMUNITY_ID, community_id)

    def get_handle(self) -> Optional[str]:
        value = self.get(PreferenceKey.MY_HANDLE)
        return value.strip() if isinstance(value, str) and value.strip() else None

    def set_handle(self, handle: str) -> None:
        self.set(PreferenceKey.MY_HANDLE, handle)

    def get_phone(self) -> str:
        value = self.get(PreferenceKey.MY_PHONE)
        return value if isinstance(value, str) else ""

    def get_watermark(self) -> Optional[int]:
        value = self.get(PreferenceKey.LAST_ALERT_TIMESTAMP)
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    def get_and_advance_watermark(self, candidate: Optional[int] = None) -> Optional[int]:
        """
        Move the durable watermark forward to ``candidate`` if that is
        later than what is stored, and return the resulting value.
        Never moves it backward. With no candidate, just reads it.
        """
        with self._lock:
            current = self.get_watermark()
            if candidate is None:
                return current
            if current is not None and current >= candidate:
                return current
            self._values[PreferenceKey.LAST_ALERT_TIMESTAMP.value] = int(candidate)
            self._flush()
            return int(candidate)


def _name(key: Union[PreferenceKey, str]) -> str:
    return key.value if isinstance(key, PreferenceKey) else key
