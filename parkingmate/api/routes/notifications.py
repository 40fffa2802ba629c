"""Notification outbox API routes."""

from fastapi import APIRouter, Query

from parkingmate.api.deps import ApiKeyAuth, Dispatcher, RateLimited
from parkingmate.api.schemas import CamelModel
from parkingmate.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


class DispatchResponse(CamelModel):
    sent: list[str]
    failed: list[str]
    skipped: list[str]
    attempted: int


@router.post(
    "/dispatch",
    response_model=DispatchResponse,
    summary="Retry queued notifications",
    description="Send pending and previously failed outbox messages.",
)
async def dispatch_notifications(
    dispatcher: Dispatcher,
    _: ApiKeyAuth,
    __: RateLimited,
    limit: int = Query(default=50, ge=1, le=500),
) -> DispatchResponse:
    """
    Retry the notification outbox, oldest first.

    **Authentication**: Requires X-API-Key header.
    """
    report = await dispatcher.dispatch_pending(limit=limit)
    logger.info(
        "outbox_dispatch_completed",
        sent=len(report.sent),
        failed=len(report.failed),
        skipped=len(report.skipped),
    )
    return DispatchResponse(
        sent=report.sent,
        failed=report.failed,
        skipped=report.skipped,
        attempted=report.attempted,
    )
