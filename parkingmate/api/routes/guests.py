"""
Guest parking API routes.

Lets the driver of an unregistered vehicle confirm guest parking after the
entry camera has seen the plate.
"""

from datetime import datetime

from fastapi import APIRouter, HTTPException, status
from pydantic import AliasChoices, Field

from parkingmate.api.deps import GuestValidation, RateLimited
from parkingmate.api.schemas import CamelModel
from parkingmate.application.guest_validation import GuestValidationStatus
from parkingmate.core.logging import get_logger
from parkingmate.domain.models import GuestStatus

logger = get_logger(__name__)

router = APIRouter(prefix="/guest", tags=["guests"])


class ValidatePlateRequest(CamelModel):
    plate: str = Field(
        validation_alias=AliasChoices("plate", "licensePlate"),
        description="Plate as typed by the driver",
        examples=["AB-123"],
    )
    organization_id: str | None = None


class ValidatePlateResponse(CamelModel):
    """Confirmed guest allowance."""

    success: bool = True
    plate: str
    guest_id: str
    status: GuestStatus
    expires_at: datetime = Field(description="End of the guest parking allowance")
    session_id: str | None = None
    message: str


_REJECTIONS = {
    GuestValidationStatus.INVALID_PLATE: (
        status.HTTP_400_BAD_REQUEST,
        "Invalid license plate",
    ),
    GuestValidationStatus.REGISTERED_VEHICLE: (
        status.HTTP_409_CONFLICT,
        "This vehicle is registered and does not need guest parking",
    ),
    GuestValidationStatus.ALREADY_CONFIRMED: (
        status.HTTP_409_CONFLICT,
        "Guest parking is already confirmed for this plate",
    ),
    GuestValidationStatus.NO_ENTRY_DETECTED: (
        status.HTTP_404_NOT_FOUND,
        "No entry detected for this plate",
    ),
    GuestValidationStatus.CONFIRMATION_WINDOW_EXPIRED: (
        status.HTTP_400_BAD_REQUEST,
        "The confirmation window for this entry has expired",
    ),
}


@router.post(
    "/validate-plate",
    response_model=ValidatePlateResponse,
    summary="Confirm guest parking",
    responses={
        400: {"description": "Invalid plate or confirmation window expired"},
        404: {"description": "No entry detected"},
        409: {"description": "Registered vehicle or guest already confirmed"},
        429: {"description": "Rate limit exceeded"},
    },
)
async def validate_plate(
    payload: ValidatePlateRequest,
    service: GuestValidation,
    _: RateLimited,
) -> ValidatePlateResponse:
    """
    Confirm the pending guest for a plate.

    Succeeds only while the entry detection is inside the confirmation
    window. Confirmation opens a guest parking session.
    """
    result = await service.validate_plate(payload.plate, payload.organization_id)

    if result.status != GuestValidationStatus.CONFIRMED:
        code, detail = _REJECTIONS[result.status]
        raise HTTPException(status_code=code, detail=detail)

    return ValidatePlateResponse(
        plate=result.plate,
        guest_id=result.guest.id,
        status=result.guest.status,
        expires_at=result.guest.expires_at,
        session_id=result.parking_session.id if result.parking_session else None,
        message="Guest parking confirmed",
    )
