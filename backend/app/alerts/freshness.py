"""
freshness.py — Decide whether an incoming alert is new for an observer.

The alert store replays a community's ENTIRE history to every new tail
subscriber before streaming live records. This filter is the only thing
that keeps historical alerts from re-notifying a user on every start.

═══════════════════════════════════════════════════════════════════════════
DECISION ORDER
═══════════════════════════════════════════════════════════════════════════

    1. Sender check     senderId blank            → Reject(NO_SENDER)
                        senderId == self identity → Reject(SELF)
    2. Timestamp parse  not "yyyy-MM-dd HH:mm:ss" → Reject(MALFORMED)
    3. Watermark        alert_time <= watermark   → Reject(STALE)
    4. Otherwise        Accept, watermark' = max(watermark, alert_time)

All times are epoch milliseconds. Timestamps on the wire are local
wall-clock strings with one-second resolution.

═══════════════════════════════════════════════════════════════════════════
WATERMARK SEEDING
═══════════════════════════════════════════════════════════════════════════

    seed = now - lookback                      (ephemeral observers)
    seed = max(persisted, now - lookback)      (durable observers)

The lookback (default 5 min) keeps a just-sent alert from being dropped
when the sender's clock runs slightly behind ours, and bounds how far
back a restarted background observer will catch up.

evaluate() never raises: anything it cannot understand is a Reject.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Union

from backend.app.alerts.models import AlertRecord, RejectReason
from backend.app.core.config import settings

logger = logging.getLogger(__name__)

_PARSE_ERRORS = (ValueError, TypeError, OverflowError, OSError)


# ═══════════════════════════════════════════════════════════════════════════
# Time Helpers
# ═══════════════════════════════════════════════════════════════════════════

def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def format_timestamp(moment: Optional[datetime] = None, fmt: Optional[str] = None) -> str:
    """Render a local wall-clock time in the wire format."""
    moment = moment or datetime.now()
    return moment.strftime(fmt or settings.ALERT_TIMESTAMP_FORMAT)


def format_epoch_ms(epoch_ms: int, fmt: Optional[str] = None) -> str:
    return format_timestamp(datetime.fromtimestamp(epoch_ms / 1000), fmt)


def parse_timestamp(text: str, fmt: Optional[str] = None) -> int:
    """
    Parse a wire timestamp into epoch milliseconds (local time zone).

    Raises ValueError / TypeError on anything that does not match the
    fixed pattern.
    """
    parsed = datetime.strptime(text, fmt or settings.ALERT_TIMESTAMP_FORMAT)
    return int(parsed.timestamp() * 1000)


def seed_watermark(
    now: int,
    lookback_ms: int,
    persisted: Optional[int] = None,
) -> int:
    """Initial watermark for an observer starting at ``now``."""
    floor = now - lookback_ms
    if persisted is None:
        return floor
    return max(persisted, floor)


# ═══════════════════════════════════════════════════════════════════════════
# Decision
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FreshnessDecision:
    accepted: bool
    watermark: int                              # watermark after this record
    reason: Optional[RejectReason] = None       # set when rejected
    alert_time: Optional[int] = None            # parsed timestamp, if any
    record: Optional[AlertRecord] = None

    @classmethod
    def reject(
        cls,
        watermark: int,
        reason: RejectReason,
        *,
        alert_time: Optional[int] = None,
        record: Optional[AlertRecord] = None,
    ) -> "FreshnessDecision":
        return cls(False, watermark, reason, alert_time, record)


def evaluate(
    record: Union[AlertRecord, Mapping[str, Any]],
    watermark: int,
    self_identity: Optional[str],
    *,
    timestamp_format: Optional[str] = None,
) -> FreshnessDecision:
    """
    Evaluate one delivered record against an observer's watermark.

    Parameters
    ----------
    record : AlertRecord or mapping
        The record as delivered by the store (raw maps are decoded here).
    watermark : int
        Observer's last-accepted alert time (epoch ms).
    self_identity : str | None
        The observer's own handle; its broadcasts are never surfaced.

    Returns
    -------
    FreshnessDecision
    """
    if not isinstance(record, AlertRecord):
        try:
            record = AlertRecord.from_dict(record)
        except ValueError as exc:
            logger.debug("Dropping malformed alert record: %s", exc)
            return FreshnessDecision.reject(watermark, RejectReason.MALFORMED)

    sender = record.sender_id.strip()
    if not sender:
        return FreshnessDecision.reject(
            watermark, RejectReason.NO_SENDER, record=record,
        )
    if sender == (self_identity or "").strip():
        return FreshnessDecision.reject(
            watermark, RejectReason.SELF, record=record,
        )

    try:
        alert_time = parse_timestamp(record.timestamp, timestamp_format)
    except _PARSE_ERRORS:
        logger.debug(
            "Dropping alert from %s with unparsable timestamp %r",
            sender, record.timestamp,
        )
        return FreshnessDecision.reject(
            watermark, RejectReason.MALFORMED, record=record,
        )

    if alert_time <= watermark:
        return FreshnessDecision.reject(
            watermark, RejectReason.STALE,
            alert_time=alert_time, record=record,
        )

    return FreshnessDecision(
        accepted=True,
        watermark=max(watermark, alert_time),
        alert_time=alert_time,
        record=record,
    )


def accept(
    record: Union[AlertRecord, Mapping[str, Any]],
    watermark: int,
    self_identity: Optional[str],
) -> Optional[int]:
    """Shorthand for evaluate(): the new watermark, or None on reject."""
    decision = evaluate(record, watermark, self_identity)
    return decision.watermark if decision.accepted else None
