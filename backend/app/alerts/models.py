"""
models.py — Shared data structures for community alert distribution.

Defines:
    • AlertType       — kind of broadcast (single variant today)
    • LocationSource  — provenance of the sender's coordinates
    • LocationFix     — a latitude/longitude pair from the device
    • AlertRecord     — the immutable broadcast record (wire format)
    • PublishStatus / PublishResult — outcome of a publish call
    • RejectReason    — why the freshness filter dropped a record

═══════════════════════════════════════════════════════════════════════════
WIRE FORMAT
═══════════════════════════════════════════════════════════════════════════

Records are stored as flat maps under ``alerts/{community}``:

    Key            Type     Example
    ───────────    ──────   ─────────────────────────────────────
    type           str      "EMERGENCY"
    senderId       str      "USER-AB2"
    senderPhone    str      "+15550100" or ""
    timestamp      str      "2026-10-19 14:03:27"   (device local time)
    location       str      "Lat: 12.9, Lon: 77.6" or "Location Unavailable"
    source         str      "GPS (Fresh)" | "GPS (Cached Fallback)" | "Unknown" | "Error"
    rawLat         float    12.9  (0.0 when unavailable)
    rawLon         float    77.6  (0.0 when unavailable)

The timestamp is written by the sender's clock, not the server, so
consumers must tolerate skew (see freshness.py).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional


LOCATION_UNAVAILABLE = "Location Unavailable"
MAP_LINK_TEMPLATE = "https://maps.google.com/?q={lat},{lon}"


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertType(str, Enum):
    """Kind of broadcast."""
    EMERGENCY = "EMERGENCY"


class LocationSource(str, Enum):
    """Where the sender's coordinates came from."""
    GPS_FRESH  = "GPS (Fresh)"
    GPS_CACHED = "GPS (Cached Fallback)"
    UNKNOWN    = "Unknown"   # no fix available at all
    ERROR      = "Error"     # location lookup raised

    @property
    def has_fix(self) -> bool:
        return self in (LocationSource.GPS_FRESH, LocationSource.GPS_CACHED)


class PublishStatus(str, Enum):
    PUBLISHED = "published"
    FAILED    = "failed"


class RejectReason(str, Enum):
    """Why the freshness filter dropped a record."""
    SELF      = "self"        # our own broadcast echoed back
    NO_SENDER = "no_sender"   # senderId missing or blank
    MALFORMED = "malformed"   # unparsable timestamp or not a record
    STALE     = "stale"       # at or below the observer's watermark


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LocationFix:
    latitude: float
    longitude: float

    def describe(self) -> str:
        return f"Lat: {self.latitude}, Lon: {self.longitude}"


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


@dataclass(frozen=True)
class AlertRecord:
    """
    An emergency broadcast, created once by the sender and never mutated.

    Attributes
    ----------
    sender_id : str
        Stable handle of the sender (e.g. ``USER-AB2``).
    timestamp : str
        Creation time in the fixed ``yyyy-MM-dd HH:mm:ss`` local format.
    location : str
        Human-readable coordinates or ``LOCATION_UNAVAILABLE``.
    raw_latitude, raw_longitude : float
        Only meaningful when ``location_available`` is True.
    source : LocationSource
        Provenance of the coordinates.
    sender_phone : str
        Optional contact number, may be empty.
    type : AlertType
    """
    sender_id: str
    timestamp: str
    location: str = LOCATION_UNAVAILABLE
    raw_latitude: float = 0.0
    raw_longitude: float = 0.0
    source: LocationSource = LocationSource.UNKNOWN
    sender_phone: str = ""
    type: AlertType = AlertType.EMERGENCY

    @property
    def location_available(self) -> bool:
        return bool(self.location) and self.location != LOCATION_UNAVAILABLE

    @property
    def map_link(self) -> Optional[str]:
        """Map URL for the sender's position, or None when unknown."""
        if not self.location_available:
            return None
        return MAP_LINK_TEMPLATE.format(
            lat=self.raw_latitude, lon=self.raw_longitude,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "senderId": self.sender_id,
            "senderPhone": self.sender_phone,
            "timestamp": self.timestamp,
            "location": self.location,
            "source": self.source.value,
            "rawLat": self.raw_latitude,
            "rawLon": self.raw_longitude,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AlertRecord":
        """
        Build a record from its stored map.

        Raises ValueError when the map cannot be a record: not a mapping,
        non-string timestamp, or an unknown alert type. Every other field
        degrades to its default.
        """
        if not isinstance(data, Mapping):
            raise ValueError(f"alert record must be a mapping, got {type(data).__name__}")

        timestamp = data.get("timestamp")
        if not isinstance(timestamp, str):
            raise ValueError("alert record has no textual timestamp")

        raw_type = data.get("type", AlertType.EMERGENCY.value)
        try:
            alert_type = AlertType(raw_type)
        except ValueError:
            raise ValueError(f"unknown alert type: {raw_type!r}")

        try:
            source = LocationSource(data.get("source"))
        except ValueError:
            source = LocationSource.UNKNOWN

        return cls(
            sender_id=_as_str(data.get("senderId")).strip(),
            timestamp=timestamp,
            location=_as_str(data.get("location")) or LOCATION_UNAVAILABLE,
            raw_latitude=_as_float(data.get("rawLat")),
            raw_longitude=_as_float(data.get("rawLon")),
            source=source,
            sender_phone=_as_str(data.get("senderPhone")).strip(),
            type=alert_type,
        )


@dataclass
class PublishResult:
    """Outcome of appending one record to a community partition."""
    community_id: str
    status: PublishStatus
    key: Optional[str] = None       # server-assigned child key
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == PublishStatus.PUBLISHED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "community_id": self.community_id,
            "status": self.status.value,
            "key": self.key,
            "error": self.error,
        }
