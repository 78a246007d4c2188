"""
in_app_dialog.py — Foreground channel: the emergency dialog shown in-app.

Rendered payload (consumed by the UI layer):

    {
        "channel": "in_app_dialog",
        "title":   "EMERGENCY ALERT",
        "message": "User: USER-AB2\\nPhone: +15550100\\n\\nLocation: ...\\n\\nTime: ...",
        "actions": [
            {"action": "open_map",  "label": "OPEN MAP",  "url": "https://maps..."},
            {"action": "call_user", "label": "CALL USER", "tel": "+15550100"},
            {"action": "dismiss",   "label": "DISMISS"},
        ],
    }

OPEN MAP is only offered when the sender's location was captured, and
CALL USER only when the sender shared a phone number.
"""

from __future__ import annotations

from typing import Any, Dict, List

from backend.app.alerts.models import AlertRecord

CHANNEL_NAME = "in_app_dialog"
DIALOG_TITLE = "EMERGENCY ALERT"


def _message(record: AlertRecord) -> str:
    lines = [f"User: {record.sender_id or 'Unknown'}"]
    if record.sender_phone:
        lines.append(f"Phone: {record.sender_phone}")
    return (
        "\n".join(lines)
        + f"\n\nLocation: {record.location}"
        + f"\n\nTime: {record.timestamp}"
    )


def render(record: AlertRecord) -> Dict[str, Any]:
    """Build the dialog model for one accepted alert."""
    actions: List[Dict[str, Any]] = []

    map_link = record.map_link
    if map_link:
        actions.append({"action": "open_map", "label": "OPEN MAP", "url": map_link})
    if record.sender_phone:
        actions.append({
            "action": "call_user",
            "label": "CALL USER",
            "tel": record.sender_phone,
        })
    actions.append({"action": "dismiss", "label": "DISMISS"})

    return {
        "channel": CHANNEL_NAME,
        "title": DIALOG_TITLE,
        "message": _message(record),
        "sender_id": record.sender_id,
        "timestamp": record.timestamp,
        "actions": actions,
    }
