"""
Guest self-confirmation use case.

A driver of an unknown vehicle confirms guest parking by typing the plate.
The confirmation only succeeds while a pending guest exists and the entry
camera saw the plate inside the confirmation window.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from parkingmate.application.guest_ledger import GuestLedger
from parkingmate.application.locking import KeyedLockRegistry, get_lock_registry, plate_key
from parkingmate.application.session_ledger import SessionLedger
from parkingmate.core.config import Settings, get_settings
from parkingmate.core.logging import get_logger
from parkingmate.domain.models import Direction, Guest, ParkingSession, utcnow
from parkingmate.domain.services import PlateNormalizer, PlateValidator
from parkingmate.infrastructure.db.repository import CameraEventRepository, VehicleRepository

logger = get_logger(__name__)


class GuestValidationStatus(str, Enum):
    """
    Result of a guest confirmation attempt.

    CONFIRMED: Guest confirmed and guest session opened.
    INVALID_PLATE: Plate text is not a valid plate.
    REGISTERED_VEHICLE: Plate belongs to a registered vehicle.
    ALREADY_CONFIRMED: A confirmed guest allowance is still running.
    NO_ENTRY_DETECTED: No pending guest for the plate.
    CONFIRMATION_WINDOW_EXPIRED: The entry detection is too old.
    """

    CONFIRMED = "confirmed"
    INVALID_PLATE = "invalid_plate"
    REGISTERED_VEHICLE = "registered_vehicle"
    ALREADY_CONFIRMED = "already_confirmed"
    NO_ENTRY_DETECTED = "no_entry_detected"
    CONFIRMATION_WINDOW_EXPIRED = "confirmation_window_expired"


@dataclass(frozen=True)
class GuestValidationResult:
    status: GuestValidationStatus
    plate: str
    guest: Guest | None = None
    parking_session: ParkingSession | None = None


class GuestValidationService:
    """
    Confirms pending guests.

    Runs under the same plate lock as detection processing.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: KeyedLockRegistry | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._locks = locks or get_lock_registry()
        self._settings = settings or get_settings()
        self._clock = clock
        self._normalizer = PlateNormalizer()
        self._validator = PlateValidator()

    async def validate_plate(
        self,
        raw_plate: str,
        org_id: str | None = None,
    ) -> GuestValidationResult:
        """
        Confirm the pending guest for a plate.

        Args:
            raw_plate: Plate as typed by the driver.
            org_id: Organization; the default organization when omitted.

        Returns:
            GuestValidationResult: Status plus the confirmed guest and session.
        """
        plate = self._normalizer.normalize(raw_plate)
        if not self._validator.is_valid(plate):
            return GuestValidationResult(status=GuestValidationStatus.INVALID_PLATE, plate=plate)

        org_id = org_id or self._settings.default_org_id
        async with self._locks.hold(plate_key(org_id, plate)):
            result = await asyncio.wait_for(
                self._confirm(plate, org_id),
                timeout=self._settings.store_timeout_seconds,
            )

        logger.info("guest_validation", plate=plate, org_id=org_id, status=result.status.value)
        return result

    async def _confirm(self, plate: str, org_id: str) -> GuestValidationResult:
        now = self._clock()
        async with self._session_factory() as session:
            try:
                if await VehicleRepository(session).find_by_plate(plate, org_id) is not None:
                    return GuestValidationResult(
                        status=GuestValidationStatus.REGISTERED_VEHICLE,
                        plate=plate,
                    )

                guests = GuestLedger(session)
                confirmed = await guests.find_confirmed(plate, org_id, now)
                if confirmed is not None:
                    return GuestValidationResult(
                        status=GuestValidationStatus.ALREADY_CONFIRMED,
                        plate=plate,
                        guest=confirmed,
                    )

                pending = await guests.find_latest_pending(plate, org_id)
                if pending is None:
                    return GuestValidationResult(
                        status=GuestValidationStatus.NO_ENTRY_DETECTED,
                        plate=plate,
                    )

                entry = await CameraEventRepository(session).find_recent_by_plate_and_direction(
                    plate,
                    org_id,
                    Direction.ENTRY,
                    since=now - self._settings.confirmation_window,
                )
                if entry is None or pending.is_expired(now):
                    await guests.expire(pending)
                    await session.commit()
                    return GuestValidationResult(
                        status=GuestValidationStatus.CONFIRMATION_WINDOW_EXPIRED,
                        plate=plate,
                        guest=pending,
                    )

                guest = await guests.confirm(pending, now, self._settings.guest_parking_duration)
                parking_session = await SessionLedger(session).open(
                    org_id,
                    entry_event_id=entry.id,
                    entry_time=entry.timestamp,
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        return GuestValidationResult(
            status=GuestValidationStatus.CONFIRMED,
            plate=plate,
            guest=guest,
            parking_session=parking_session,
        )
