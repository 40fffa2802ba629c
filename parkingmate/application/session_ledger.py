"""
Parking session ledger.

Owns the lifecycle of parking sessions: open, fold a re-entry, complete,
expire, penalize. Sessions are state-transitioned, never deleted.
"""

import uuid
from datetime import datetime
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from parkingmate.core.logging import get_logger
from parkingmate.domain.models import ParkingSession, SessionStatus
from parkingmate.domain.services import InvalidTransitionError, SessionTransitionPolicy
from parkingmate.infrastructure.db.repository import ParkingSessionRepository

logger = get_logger(__name__)


class SessionNotFoundError(Exception):
    """Raised when a transition targets a session that does not exist."""

    pass


class SessionLedger:
    """
    Session ledger bound to one unit of work.

    The caller holds the plate lock and commits the session.
    """

    def __init__(
        self,
        session: AsyncSession,
        policy: SessionTransitionPolicy | None = None,
    ):
        """
        Initialize ledger.

        Args:
            session: Database session of the current transaction.
            policy: Optional custom transition policy.
        """
        self._repo = ParkingSessionRepository(session)
        self._policy = policy or SessionTransitionPolicy()

    async def find_active(self, vehicle_id: str) -> ParkingSession | None:
        return await self._repo.find_active_by_vehicle(vehicle_id)

    async def open(
        self,
        org_id: str,
        entry_event_id: str,
        entry_time: datetime,
        vehicle_id: str | None = None,
        customer_id: str | None = None,
    ) -> ParkingSession:
        """
        Open an active session.

        Args:
            org_id: Organization.
            entry_event_id: Detection that opened the session.
            entry_time: Detection time.
            vehicle_id: Vehicle (None for guest sessions).
            customer_id: Owner (None for guest sessions).

        Returns:
            ParkingSession: The new session.

        Raises:
            IntegrityError: If the vehicle already has an active session.
        """
        parking_session = await self._repo.create(
            ParkingSession(
                id=str(uuid.uuid4()),
                org_id=org_id,
                vehicle_id=vehicle_id,
                customer_id=customer_id,
                entry_event_id=entry_event_id,
                entry_time=entry_time,
                status=SessionStatus.ACTIVE,
            )
        )
        logger.info(
            "parking_session_created",
            session_id=parking_session.id,
            vehicle_id=vehicle_id,
            customer_id=customer_id,
        )
        return parking_session

    async def fold_reentry(
        self,
        parking_session: ParkingSession,
        entry_event_id: str,
        entry_time: datetime,
    ) -> ParkingSession:
        """
        Point an active session at a newer entry instead of opening another.

        Args:
            parking_session: The vehicle's active session.
            entry_event_id: The new entry detection.
            entry_time: Its timestamp.

        Returns:
            ParkingSession: The updated session.
        """
        if parking_session.status != SessionStatus.ACTIVE:
            raise ValueError("Only an active session can absorb a re-entry")
        if not await self._repo.update_entry(parking_session.id, entry_event_id, entry_time):
            raise SessionNotFoundError(parking_session.id)

        logger.info(
            "parking_session_updated",
            session_id=parking_session.id,
            previous_entry_time=parking_session.entry_time.isoformat(),
        )
        parking_session.entry_event_id = entry_event_id
        parking_session.entry_time = entry_time
        return parking_session

    async def complete(
        self,
        parking_session: ParkingSession,
        exit_event_id: str,
        exit_time: datetime,
    ) -> ParkingSession:
        """
        Close a session with its exit detection.

        Raises:
            InvalidTransitionError: If the session is not active.
        """
        self._policy.ensure(parking_session.status, SessionStatus.COMPLETED)
        if not await self._repo.complete(parking_session.id, exit_event_id, exit_time):
            raise SessionNotFoundError(parking_session.id)

        logger.info("parking_session_completed", session_id=parking_session.id)
        parking_session.status = SessionStatus.COMPLETED
        parking_session.exit_event_id = exit_event_id
        parking_session.exit_time = exit_time
        return parking_session

    async def expire(self, session_id: str) -> ParkingSession:
        """Mark a session expired (active sessions only)."""
        return await self._transition(session_id, SessionStatus.EXPIRED)

    async def penalize(self, session_id: str, amount: float | None = None) -> ParkingSession:
        """
        Flag a session for a penalty.

        Args:
            session_id: Session id.
            amount: Optional penalty amount to record.

        Raises:
            InvalidTransitionError: If the session is expired or already penalized.
        """
        return await self._transition(session_id, SessionStatus.PENALIZED, amount)

    async def list_sessions(self, **filters) -> Sequence[ParkingSession]:
        return await self._repo.list_sessions(**filters)

    async def _transition(
        self,
        session_id: str,
        target: SessionStatus,
        penalty_amount: float | None = None,
    ) -> ParkingSession:
        parking_session = await self._repo.get_by_id(session_id)
        if parking_session is None:
            raise SessionNotFoundError(session_id)

        self._policy.ensure(parking_session.status, target)
        if not await self._repo.set_status(
            session_id, parking_session.status, target, penalty_amount
        ):
            raise InvalidTransitionError(
                f"Parking session {session_id} changed status concurrently"
            )

        logger.info(
            "parking_session_transitioned",
            session_id=session_id,
            from_status=parking_session.status.value,
            to_status=target.value,
        )
        parking_session.status = target
        if penalty_amount is not None:
            parking_session.penalty_amount = penalty_amount
        return parking_session
