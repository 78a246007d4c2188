"""
Pydantic schemas for the community alert API.

Separated from the route handlers so they are reusable across the
codebase (routers, tests).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from backend.app.alerts.models import LocationFix


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class BroadcastRequest(BaseModel):
    """
    Sender-side location state at the moment the SOS was pressed.

    Location acquisition happens on the device; the API only receives
    whatever fix it produced (or none).
    """
    latitude: Optional[float] = Field(
        None, ge=-90.0, le=90.0,
        description="Fresh fix latitude",
        examples=[12.9716],
    )
    longitude: Optional[float] = Field(
        None, ge=-180.0, le=180.0,
        description="Fresh fix longitude",
        examples=[77.5946],
    )
    last_known_latitude: Optional[float] = Field(
        None, ge=-90.0, le=90.0,
        description="Last known (cached) fix latitude",
    )
    last_known_longitude: Optional[float] = Field(
        None, ge=-180.0, le=180.0,
        description="Last known (cached) fix longitude",
    )
    location_failed: bool = Field(
        False,
        description="Set when the device's location lookup raised",
    )

    @model_validator(mode="after")
    def _pairs_complete(self) -> "BroadcastRequest":
        for lat, lon, label in (
            (self.latitude, self.longitude, "latitude/longitude"),
            (self.last_known_latitude, self.last_known_longitude,
             "last_known_latitude/last_known_longitude"),
        ):
            if (lat is None) != (lon is None):
                raise ValueError(f"{label} must be given together")
        return self

    @property
    def current_fix(self) -> Optional[LocationFix]:
        if self.latitude is None or self.longitude is None:
            return None
        return LocationFix(self.latitude, self.longitude)

    @property
    def last_known_fix(self) -> Optional[LocationFix]:
        if self.last_known_latitude is None or self.last_known_longitude is None:
            return None
        return LocationFix(self.last_known_latitude, self.last_known_longitude)


class CommunityRequest(BaseModel):
    """Request body for POST /api/v1/communities and .../join."""
    name: str = Field(..., min_length=1, examples=["riverside"])
    my_phone: str = Field(..., min_length=1, examples=["+15550100"])
    emergency_phone: str = Field("", examples=["+15550199"])

    @field_validator("name", "my_phone", "emergency_phone")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()


class JoinRequest(BaseModel):
    """Request body for POST /api/v1/communities/{name}/join."""
    my_phone: str = Field(..., min_length=1, examples=["+15550100"])
    emergency_phone: str = Field("", examples=["+15550199"])


class PhoneRequest(BaseModel):
    """Request body for POST /api/v1/identity/phone."""
    phone: str = Field(..., min_length=1, examples=["+15550100"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class BroadcastResponse(BaseModel):
    community_id: str
    status: str
    key: Optional[str] = None
    error: Optional[str] = None
    alert: Dict[str, Any]


class PendingAlertsResponse(BaseModel):
    observer_id: str
    channel: str
    dropped: int
    alerts: List[Dict[str, Any]]


class HandleResponse(BaseModel):
    handle: str
    recovered: bool = False


class SetupResponse(BaseModel):
    handle: str
    community_id: str
    created: bool
    recovered: bool
