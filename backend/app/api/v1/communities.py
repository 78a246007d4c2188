"""
FastAPI route: Community setup.

Provides endpoints to:
    POST /api/v1/communities               — create a community and join it
    POST /api/v1/communities/{name}/join   — join an existing community

Both run the full setup flow (phone → handle, community existence,
local preferences) and then move running observers onto the new
community.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from backend.app.alerts.alert_service import AlertService
from backend.app.api.schemas import CommunityRequest, JoinRequest, SetupResponse
from backend.app.api.v1.alerts import get_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/communities", tags=["communities"])


def _connect(
    service: AlertService,
    name: str,
    my_phone: str,
    emergency_phone: str,
    *,
    create: bool,
) -> SetupResponse:
    result = service.registry.connect(
        name, my_phone, emergency_phone=emergency_phone, create=create,
    )
    states = service.coordinator.sync()
    logger.debug("Observers after setup: %s", states, extra={"community_id": name})
    return SetupResponse(**result.to_dict())


@router.post(
    "",
    response_model=SetupResponse,
    status_code=201,
    summary="Create a community",
    description="Fails with 409 when the name is taken.",
)
def create_community(
    request: CommunityRequest,
    service: AlertService = Depends(get_service),
):
    return _connect(
        service, request.name, request.my_phone, request.emergency_phone, create=True,
    )


@router.post(
    "/{name}/join",
    response_model=SetupResponse,
    summary="Join an existing community",
    description="Fails with 404 when the community does not exist.",
)
def join_community(
    name: str,
    request: JoinRequest,
    service: AlertService = Depends(get_service),
):
    return _connect(
        service, name, request.my_phone, request.emergency_phone, create=False,
    )
