"""
Guest ledger.

Pending -> Confirmed -> Expired lifecycle for unregistered plates.
"""

import uuid
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from parkingmate.core.logging import get_logger
from parkingmate.domain.models import Guest, GuestStatus
from parkingmate.domain.services import GuestTransitionPolicy
from parkingmate.infrastructure.db.repository import GuestRepository

logger = get_logger(__name__)


class GuestLedger:
    """Guest ledger bound to one unit of work; the caller holds the plate lock."""

    def __init__(
        self,
        session: AsyncSession,
        policy: GuestTransitionPolicy | None = None,
    ):
        self._repo = GuestRepository(session)
        self._policy = policy or GuestTransitionPolicy()

    async def find_pending(self, plate: str, org_id: str, now: datetime) -> Guest | None:
        return await self._repo.find_pending(plate, org_id, now)

    async def find_latest_pending(self, plate: str, org_id: str) -> Guest | None:
        return await self._repo.find_latest_pending(plate, org_id)

    async def find_confirmed(self, plate: str, org_id: str, now: datetime) -> Guest | None:
        return await self._repo.find_confirmed(plate, org_id, now)

    async def ensure_pending(
        self,
        plate: str,
        org_id: str,
        now: datetime,
        confirmation_window: timedelta,
    ) -> tuple[Guest, bool]:
        """
        Return the plate's pending guest, creating one if needed.

        Pending guests whose window has lapsed are expired first, so the
        returned guest is always live.

        Args:
            plate: Normalized plate.
            org_id: Organization.
            now: Current time.
            confirmation_window: Lifetime of a new pending guest.

        Returns:
            tuple: (guest, created) where created is True for a new row.

        Raises:
            IntegrityError: If another writer created the pending guest first.
        """
        expired = await self._repo.expire_stale_pending(plate, org_id, now)
        if expired:
            logger.info("stale_guests_expired", count=expired)

        existing = await self._repo.find_pending(plate, org_id, now)
        if existing is not None:
            logger.info("guest_pending_reused", guest_id=existing.id)
            return existing, False

        guest = await self._repo.create(
            Guest(
                id=str(uuid.uuid4()),
                org_id=org_id,
                plate=plate,
                status=GuestStatus.PENDING_CONFIRMATION,
                expires_at=now + confirmation_window,
                created_at=now,
            )
        )
        logger.info("guest_created", guest_id=guest.id, expires_at=guest.expires_at.isoformat())
        return guest, True

    async def confirm(self, guest: Guest, now: datetime, parking_duration: timedelta) -> Guest:
        """
        Confirm a pending guest for ``parking_duration`` from now.

        Raises:
            InvalidTransitionError: If the guest is not pending.
        """
        self._policy.ensure(guest.status, GuestStatus.CONFIRMED)
        expires_at = now + parking_duration
        if not await self._repo.confirm(guest.id, now, expires_at):
            raise ValueError(f"Guest {guest.id} is no longer pending")

        logger.info("guest_confirmed", guest_id=guest.id, expires_at=expires_at.isoformat())
        guest.status = GuestStatus.CONFIRMED
        guest.confirmed_at = now
        guest.expires_at = expires_at
        return guest

    async def expire(self, guest: Guest) -> Guest:
        """
        Expire a pending or confirmed guest.

        Raises:
            InvalidTransitionError: If the guest is already expired.
        """
        self._policy.ensure(guest.status, GuestStatus.EXPIRED)
        await self._repo.expire(guest.id)
        logger.info("guest_expired", guest_id=guest.id, from_status=guest.status.value)
        guest.status = GuestStatus.EXPIRED
        return guest
