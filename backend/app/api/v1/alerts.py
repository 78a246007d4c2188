"""
FastAPI route: Emergency broadcast and observer control.

Provides endpoints to:
    POST /api/v1/alerts/{community_id}/broadcast          — publish an SOS
    GET  /api/v1/alerts/observers                         — observer states
    POST /api/v1/alerts/observers/sync                    — follow community change
    POST /api/v1/alerts/observers/foreground/attach       — app came to foreground
    POST /api/v1/alerts/observers/foreground/detach       — app left foreground
    GET  /api/v1/alerts/observers/{observer_id}/pending   — drain channel outbox
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, Request

from backend.app.alerts.alert_service import AlertService
from backend.app.alerts.channels.outbox import ChannelOutbox
from backend.app.api.schemas import (
    BroadcastRequest,
    BroadcastResponse,
    PendingAlertsResponse,
)
from backend.app.core.errors import BroadcastError, NotFoundError

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


def get_service(request: Request) -> AlertService:
    """The AlertService built by the app lifespan."""
    return request.app.state.alert_service


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/{community_id}/broadcast",
    response_model=BroadcastResponse,
    summary="Broadcast an emergency alert",
    description=(
        "Builds an emergency record for this device's handle with the best "
        "available location and appends it to the community's alert stream."
    ),
)
def broadcast(
    community_id: str,
    request: BroadcastRequest,
    service: AlertService = Depends(get_service),
):
    record, result = service.publisher.broadcast(
        current_fix=request.current_fix,
        last_known_fix=request.last_known_fix,
        lookup_failed=request.location_failed,
        community_id=community_id,
    )
    if not result.ok:
        raise BroadcastError(community_id, result.error or "Publish failed")

    return BroadcastResponse(
        community_id=result.community_id,
        status=result.status.value,
        key=result.key,
        alert=record.to_dict(),
    )


@router.get("/observers", summary="Observer states")
def list_observers(service: AlertService = Depends(get_service)) -> Dict[str, Any]:
    return service.status()


@router.post(
    "/observers/sync",
    summary="Re-read the active community",
    description="Moves every running observer onto the active community, or retries after a store error.",
)
def sync_observers(service: AlertService = Depends(get_service)) -> Dict[str, Any]:
    return {"observers": service.coordinator.sync()}


@router.post("/observers/foreground/attach", summary="Start the in-app observer")
def attach_foreground(service: AlertService = Depends(get_service)) -> Dict[str, Any]:
    state = service.coordinator.attach_foreground()
    return {**service.coordinator.foreground.status(), "state": state.value}


@router.post("/observers/foreground/detach", summary="Stop the in-app observer")
def detach_foreground(service: AlertService = Depends(get_service)) -> Dict[str, Any]:
    service.coordinator.detach_foreground()
    return service.coordinator.foreground.status()


@router.get(
    "/observers/{observer_id}/pending",
    response_model=PendingAlertsResponse,
    summary="Alerts waiting in an observer's channel",
)
def pending_alerts(
    observer_id: str,
    peek: bool = Query(False, description="Return without removing"),
    service: AlertService = Depends(get_service),
):
    observer = service.coordinator.observer(observer_id)
    if observer is None or not isinstance(observer.sink, ChannelOutbox):
        raise NotFoundError("Observer", observer_id=observer_id)

    outbox = observer.sink
    return PendingAlertsResponse(
        observer_id=observer_id,
        channel=outbox.name,
        dropped=outbox.dropped,
        alerts=outbox.peek() if peek else outbox.drain(),
    )
