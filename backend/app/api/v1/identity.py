"""
FastAPI route: Device identity.

    POST /api/v1/identity/handle   — return this device's handle, allocating one
    POST /api/v1/identity/phone    — recover the handle mapped to a phone, or
                                     register this device's handle for it
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.app.alerts.alert_service import AlertService
from backend.app.api.schemas import HandleResponse, PhoneRequest
from backend.app.api.v1.alerts import get_service

router = APIRouter(prefix="/api/v1/identity", tags=["identity"])


@router.post("/handle", response_model=HandleResponse, summary="Get or allocate handle")
def ensure_handle(service: AlertService = Depends(get_service)):
    return HandleResponse(handle=service.registry.ensure_handle())


@router.post("/phone", response_model=HandleResponse, summary="Map phone to handle")
def register_phone(
    request: PhoneRequest,
    service: AlertService = Depends(get_service),
):
    handle, recovered = service.registry.register_phone(request.phone)
    return HandleResponse(handle=handle, recovered=recovered)
