"""
publisher.py — Build an emergency record from a sender action and publish it.

Location fallback chain (device location acquisition itself is external):

    1. current fix        → source "GPS (Fresh)"
    2. last known fix     → source "GPS (Cached Fallback)"
    3. neither            → "Location Unavailable", source "Unknown"
       lookup raised      → "Location Unavailable", source "Error"

Publishing is fire-and-forget from the core's side: the caller gets a
PublishResult and decides whether to retry. Nothing is queued here.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Tuple

from backend.app.alerts.dispatcher import AlertDispatcher
from backend.app.alerts.freshness import format_timestamp
from backend.app.alerts.models import (
    LOCATION_UNAVAILABLE,
    AlertRecord,
    AlertType,
    LocationFix,
    LocationSource,
    PublishResult,
)
from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.preferences import PreferenceStore

logger = logging.getLogger(__name__)

ANONYMOUS_SENDER = "ANONYMOUS"


def resolve_location(
    current: Optional[LocationFix],
    last_known: Optional[LocationFix] = None,
    *,
    lookup_failed: bool = False,
) -> Tuple[Optional[LocationFix], LocationSource]:
    """Pick the best available fix and its provenance tag."""
    if lookup_failed:
        return None, LocationSource.ERROR
    if current is not None:
        return current, LocationSource.GPS_FRESH
    if last_known is not None:
        return last_known, LocationSource.GPS_CACHED
    return None, LocationSource.UNKNOWN


def build_alert_record(
    sender_id: str,
    *,
    sender_phone: str = "",
    fix: Optional[LocationFix] = None,
    source: Optional[LocationSource] = None,
    moment: Optional[datetime] = None,
    timestamp_format: Optional[str] = None,
) -> AlertRecord:
    """
    Create the immutable record for one broadcast.

    Coordinates are zeroed and the location marked unavailable when there
    is no fix, so consumers never build a map link from them.
    """
    if fix is None:
        return AlertRecord(
            type=AlertType.EMERGENCY,
            sender_id=sender_id,
            sender_phone=sender_phone,
            timestamp=format_timestamp(moment, timestamp_format),
            location=LOCATION_UNAVAILABLE,
            raw_latitude=0.0,
            raw_longitude=0.0,
            source=source if source and not source.has_fix else LocationSource.UNKNOWN,
        )
    return AlertRecord(
        type=AlertType.EMERGENCY,
        sender_id=sender_id,
        sender_phone=sender_phone,
        timestamp=format_timestamp(moment, timestamp_format),
        location=fix.describe(),
        raw_latitude=fix.latitude,
        raw_longitude=fix.longitude,
        source=source or LocationSource.GPS_FRESH,
    )


class AlertPublisher:
    """Sender side: identity from preferences, fan-out via the dispatcher."""

    def __init__(
        self,
        dispatcher: AlertDispatcher,
        preferences: PreferenceStore,
        *,
        config: Optional[Settings] = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.preferences = preferences
        self.config = config or default_settings

    def target_community(self, community_id: Optional[str] = None) -> str:
        return (
            community_id
            or self.preferences.get_active_community()
            or self.config.DEFAULT_COMMUNITY
        )

    def broadcast(
        self,
        *,
        current_fix: Optional[LocationFix] = None,
        last_known_fix: Optional[LocationFix] = None,
        lookup_failed: bool = False,
        community_id: Optional[str] = None,
        moment: Optional[datetime] = None,
    ) -> Tuple[AlertRecord, PublishResult]:
        """Build this user's emergency record and publish it once."""
        fix, source = resolve_location(
            current_fix, last_known_fix, lookup_failed=lookup_failed,
        )
        record = build_alert_record(
            self.preferences.get_handle() or ANONYMOUS_SENDER,
            sender_phone=self.preferences.get_phone(),
            fix=fix,
            source=source,
            moment=moment,
            timestamp_format=self.config.ALERT_TIMESTAMP_FORMAT,
        )
        target = self.target_community(community_id)

        logger.info(
            "Broadcasting emergency from %s to %s (%s)",
            record.sender_id, target, source.value,
            extra={"community_id": target, "sender_id": record.sender_id},
        )
        return record, self.dispatcher.publish(target, record)
