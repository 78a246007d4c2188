"""
system_notification.py — Background channel: OS-level notification.

The background observer surfaces accepted alerts here even when the app
is not in the foreground. Two notification channels exist on the device:

    Channel id                 Importance   Purpose
    ────────────────────────   ──────────   ─────────────────────────────
    SAFETY_MONITOR_CHANNEL     min          persistent "monitoring" notice
    EMERGENCY_CHANNEL          high         one notification per alert

Only the emergency notification is produced per alert; the monitor
notice is static and described by monitoring_notice().
"""

from __future__ import annotations

import itertools
from typing import Any, Dict

from backend.app.alerts.models import AlertRecord

CHANNEL_NAME = "system_notification"
MONITOR_CHANNEL_ID = "SAFETY_MONITOR_CHANNEL"
EMERGENCY_CHANNEL_ID = "EMERGENCY_CHANNEL"
MONITOR_NOTIFICATION_ID = 999

_notification_ids = itertools.count(MONITOR_NOTIFICATION_ID + 1)


def render(record: AlertRecord) -> Dict[str, Any]:
    """Build the emergency notification for one accepted alert."""
    sender = record.sender_id or "Unknown"
    location = record.location or "Unknown Location"
    return {
        "channel": CHANNEL_NAME,
        "channel_id": EMERGENCY_CHANNEL_ID,
        "notification_id": next(_notification_ids),
        "title": f"EMERGENCY: {sender}",
        "body": f"Help needed at {location}",
        "priority": "max",
        "auto_cancel": True,
        "sender_id": record.sender_id,
        "timestamp": record.timestamp,
        "map_link": record.map_link,
    }


def monitoring_notice() -> Dict[str, Any]:
    return {
        "channel": CHANNEL_NAME,
        "channel_id": MONITOR_CHANNEL_ID,
        "notification_id": MONITOR_NOTIFICATION_ID,
        "title": "FindMe Active",
        "body": "Monitoring for community alerts...",
        "priority": "min",
    }
