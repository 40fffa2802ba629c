"""
Parking session API routes.

Listing of parking sessions for operators, plus the manual expire and
penalty transitions.
"""

from datetime import datetime
from typing import Awaitable, Callable

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from parkingmate.api.deps import ApiKeyAuth, RateLimited, Session
from parkingmate.api.schemas import CamelModel
from parkingmate.application.session_ledger import SessionLedger, SessionNotFoundError
from parkingmate.core.logging import get_logger
from parkingmate.domain.models import ParkingSession, SessionStatus
from parkingmate.domain.services import InvalidTransitionError

logger = get_logger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


class ParkingSessionEntry(CamelModel):
    """Response model for a parking session."""

    id: str
    org_id: str
    vehicle_id: str | None
    customer_id: str | None
    entry_event_id: str | None
    exit_event_id: str | None
    entry_time: datetime
    exit_time: datetime | None
    status: SessionStatus
    penalty_amount: float | None

    @classmethod
    def from_domain(cls, ps: ParkingSession) -> "ParkingSessionEntry":
        return cls(
            id=ps.id,
            org_id=ps.org_id,
            vehicle_id=ps.vehicle_id,
            customer_id=ps.customer_id,
            entry_event_id=ps.entry_event_id,
            exit_event_id=ps.exit_event_id,
            entry_time=ps.entry_time,
            exit_time=ps.exit_time,
            status=ps.status,
            penalty_amount=ps.penalty_amount,
        )


class ParkingSessionListResponse(CamelModel):
    sessions: list[ParkingSessionEntry]
    count: int


@router.get(
    "",
    response_model=ParkingSessionListResponse,
    summary="List parking sessions",
    description="Parking sessions filtered by status, customer or vehicle.",
)
async def list_sessions(
    db: Session,
    _: ApiKeyAuth,
    __: RateLimited,
    status_filter: SessionStatus | None = Query(default=None, alias="status"),
    customer_id: str | None = Query(default=None, alias="customerId"),
    vehicle_id: str | None = Query(default=None, alias="vehicleId"),
    organization_id: str | None = Query(default=None, alias="organizationId"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> ParkingSessionListResponse:
    """List parking sessions, newest entry first."""
    sessions = await SessionLedger(db).list_sessions(
        org_id=organization_id,
        status=status_filter,
        customer_id=customer_id,
        vehicle_id=vehicle_id,
        limit=limit,
        offset=offset,
    )
    entries = [ParkingSessionEntry.from_domain(ps) for ps in sessions]
    return ParkingSessionListResponse(sessions=entries, count=len(entries))


class PenalizeRequest(CamelModel):
    amount: float | None = Field(
        default=None,
        ge=0,
        description="Penalty amount to record",
        examples=[25.0],
    )


async def _transition(
    db: AsyncSession,
    session_id: str,
    apply: Callable[[SessionLedger], Awaitable[ParkingSession]],
) -> ParkingSessionEntry:
    try:
        parking_session = await apply(SessionLedger(db))
        await db.commit()
    except SessionNotFoundError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Parking session not found",
        )
    except InvalidTransitionError as e:
        await db.rollback()
        logger.warning("parking_session_transition_rejected", session_id=session_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return ParkingSessionEntry.from_domain(parking_session)


@router.post(
    "/{session_id}/expire",
    response_model=ParkingSessionEntry,
    summary="Expire a parking session",
    responses={
        404: {"description": "Session not found"},
        409: {"description": "Session is not active"},
    },
)
async def expire_session(
    session_id: str,
    db: Session,
    _: ApiKeyAuth,
    __: RateLimited,
) -> ParkingSessionEntry:
    """Mark an active session expired."""
    return await _transition(db, session_id, lambda ledger: ledger.expire(session_id))


@router.post(
    "/{session_id}/penalize",
    response_model=ParkingSessionEntry,
    summary="Penalize a parking session",
    responses={
        404: {"description": "Session not found"},
        409: {"description": "Session is expired or already penalized"},
    },
)
async def penalize_session(
    session_id: str,
    payload: PenalizeRequest,
    db: Session,
    _: ApiKeyAuth,
    __: RateLimited,
) -> ParkingSessionEntry:
    """Flag an active or completed session for a penalty."""
    return await _transition(
        db,
        session_id,
        lambda ledger: ledger.penalize(session_id, payload.amount),
    )
