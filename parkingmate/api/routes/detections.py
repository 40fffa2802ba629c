"""
Detection API routes.

Camera webhook receiving plate detections, plus a read-only view of the
detection audit trail.
"""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query, Response, status
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from parkingmate.api.deps import ApiKeyAuth, Processor, RateLimited, Session
from parkingmate.api.schemas import CamelModel
from parkingmate.core.logging import get_logger
from parkingmate.domain.models import (
    DetectionAction,
    DetectionInput,
    DetectionOutcome,
    Direction,
    ProcessingError,
)
from parkingmate.domain.services import PlateNormalizer
from parkingmate.infrastructure.db.repository import CameraEventRepository

logger = get_logger(__name__)

router = APIRouter(tags=["detections"])


class DetectionRequest(BaseModel):
    """
    Detection payload from a camera.

    Accepts both the camera's own field names (``licensePlate``,
    ``timestamp``, ``locationName``, ``imageBase64``, ``eventId``) and the
    canonical ones. Everything is optional here; missing or malformed values
    are reported by the processor as a validation error.
    """

    model_config = ConfigDict(populate_by_name=True)

    plate: str | None = Field(
        default=None,
        validation_alias=AliasChoices("plate", "licensePlate", "license_plate"),
        description="Plate text as read by the camera",
        examples=["AB 123"],
    )
    timestamp: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("timestampUtc", "timestamp"),
        description="Detection time (UTC when no offset is given)",
    )
    camera_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("cameraId", "camera_id"),
        examples=["gate-1"],
    )
    direction: str | None = Field(default=None, examples=["entry"])
    organization_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("organizationId", "orgId", "organization_id"),
    )
    external_event_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("externalEventId", "eventId", "external_event_id"),
    )
    location_label: str | None = Field(
        default=None,
        validation_alias=AliasChoices("locationLabel", "locationName", "location_label"),
    )
    image_ref: str | None = Field(
        default=None,
        validation_alias=AliasChoices("imageRef", "imageBase64", "image_ref"),
    )
    confidence: float | None = Field(default=None, examples=[0.94])
    device_type: str | None = Field(
        default=None,
        validation_alias=AliasChoices("deviceType", "device_type"),
    )

    def to_input(self) -> DetectionInput:
        return DetectionInput(
            plate=self.plate,
            direction=self.direction,
            timestamp=self.timestamp,
            camera_id=self.camera_id,
            org_id=self.organization_id,
            external_event_id=self.external_event_id,
            location_label=self.location_label,
            image_ref=self.image_ref,
            confidence=self.confidence,
            device_type=self.device_type,
        )


class DetectionResponse(CamelModel):
    """Outcome of processing one detection."""

    success: bool
    event_id: str | None = Field(default=None, description="Audit record id")
    is_guest_entry: bool = False
    action: DetectionAction | None = Field(default=None, examples=["guest_created"])
    details: dict[str, Any] = Field(default_factory=dict)
    message: str
    error: ProcessingError | None = None
    duplicate: bool = False

    @classmethod
    def from_outcome(cls, outcome: DetectionOutcome) -> "DetectionResponse":
        return cls(
            success=outcome.success,
            event_id=outcome.event_id,
            is_guest_entry=outcome.is_guest_entry,
            action=outcome.action,
            details=outcome.details.to_dict(),
            message=outcome.message,
            error=outcome.error,
            duplicate=outcome.duplicate,
        )


class DetectionEventEntry(CamelModel):
    """Audit record of one detection."""

    id: str
    org_id: str
    external_event_id: str | None
    plate: str
    timestamp: datetime
    camera_id: str
    direction: Direction
    location_label: str | None
    confidence: float | None
    processed_action: DetectionAction | None
    is_guest_entry: bool
    customer_id: str | None
    session_id: str | None
    guest_id: str | None
    created_at: datetime


class DetectionEventListResponse(CamelModel):
    events: list[DetectionEventEntry]
    count: int


_ERROR_STATUS = {
    ProcessingError.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ProcessingError.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@router.post(
    "/datahub/entry",
    response_model=DetectionResponse,
    status_code=status.HTTP_200_OK,
    summary="Process a camera detection",
    description="Record a plate detection and apply its parking transition.",
    responses={
        200: {"description": "Detection processed"},
        401: {"description": "Invalid or missing API key"},
        422: {"description": "Malformed detection"},
        429: {"description": "Rate limit exceeded"},
        500: {"description": "Processing failed"},
    },
)
async def receive_detection(
    payload: DetectionRequest,
    response: Response,
    processor: Processor,
    _: ApiKeyAuth,
    __: RateLimited,
) -> DetectionResponse:
    """
    Camera webhook.

    Returns the outcome tag (``guest_created``, ``parking_session_created``
    and so on) with the ids of the records it touched.

    **Authentication**: Requires X-API-Key header.
    """
    outcome = await processor.process(payload.to_input())

    if outcome.error is not None:
        response.status_code = _ERROR_STATUS[outcome.error]
        logger.warning(
            "detection_request_failed",
            error=outcome.error.value,
            event_id=outcome.event_id,
        )

    return DetectionResponse.from_outcome(outcome)


@router.get(
    "/events",
    response_model=DetectionEventListResponse,
    summary="List detections",
    description="Recent detection audit records, newest first.",
)
async def list_events(
    db: Session,
    _: ApiKeyAuth,
    __: RateLimited,
    plate: str | None = None,
    camera_id: str | None = Query(default=None, alias="cameraId"),
    organization_id: str | None = Query(default=None, alias="organizationId"),
    limit: int = Query(default=50, ge=1, le=200),
) -> DetectionEventListResponse:
    """List recent detections with optional filtering."""
    events = await CameraEventRepository(db).list_recent(
        limit=limit,
        org_id=organization_id,
        plate=PlateNormalizer().normalize(plate) if plate else None,
        camera_id=camera_id,
    )
    entries = [
        DetectionEventEntry(
            id=e.id,
            org_id=e.org_id,
            external_event_id=e.external_event_id,
            plate=e.plate,
            timestamp=e.timestamp,
            camera_id=e.camera_id,
            direction=e.direction,
            location_label=e.location_label,
            confidence=e.confidence,
            processed_action=e.processed_action,
            is_guest_entry=e.is_guest_entry,
            customer_id=e.customer_id,
            session_id=e.session_id,
            guest_id=e.guest_id,
            created_at=e.created_at,
        )
        for e in events
    ]
    return DetectionEventListResponse(events=entries, count=len(entries))
