"""
Repository pattern implementations for data access.

Repositories abstract database operations and provide
a clean interface for the application layer. They never commit; the caller
owns the transaction.
"""

from datetime import datetime
from typing import Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from parkingmate.domain.models import (
    AccountStatus,
    Customer,
    DetectionAction,
    DetectionEvent,
    Direction,
    Guest,
    GuestStatus,
    MembershipStatus,
    OtpCode,
    OtpPurpose,
    OutboxKind,
    OutboxMessage,
    OutboxStatus,
    ParkingSession,
    RegistrationToken,
    SessionStatus,
    Vehicle,
)
from parkingmate.infrastructure.db.models import (
    CameraEventDB,
    CustomerDB,
    GuestDB,
    NotificationOutboxDB,
    OtpCodeDB,
    ParkingSessionDB,
    RegistrationTokenDB,
    VehicleDB,
)


def pending_guest_key(org_id: str, plate: str) -> str:
    """Sentinel value guarding a single pending guest per (org, plate)."""
    return f"{org_id}:{plate}"


class CameraEventRepository:
    """
    Repository for detection audit records.

    Provides methods for recording detections and attaching their outcome.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize repository with database session.

        Args:
            session: Async SQLAlchemy session.
        """
        self._session = session

    async def create(self, event: DetectionEvent) -> DetectionEvent:
        """
        Persist a detection.

        Args:
            event: Domain model to persist.

        Returns:
            DetectionEvent: The persisted event.

        Raises:
            IntegrityError: If (org_id, external event id) already exists.
        """
        db_event = CameraEventDB(
            id=event.id,
            org_id=event.org_id,
            event_id=event.external_event_id,
            license_plate=event.plate,
            timestamp=event.timestamp,
            camera_id=event.camera_id,
            location_name=event.location_label,
            direction=event.direction.value,
            image_base64=event.image_ref,
            confidence=event.confidence,
            device_type=event.device_type,
            created_at=event.created_at,
        )
        self._session.add(db_event)
        await self._session.flush()
        return self._to_domain(db_event)

    async def get_by_id(self, event_id: str) -> DetectionEvent | None:
        stmt = select(CameraEventDB).where(CameraEventDB.id == event_id)
        result = await self._session.execute(stmt)
        db_event = result.scalar_one_or_none()
        return self._to_domain(db_event) if db_event else None

    async def find_by_external_id(
        self,
        org_id: str,
        external_event_id: str,
    ) -> DetectionEvent | None:
        """
        Look up a detection by the camera's own event id.

        Args:
            org_id: Organization.
            external_event_id: Camera-side event id.

        Returns:
            DetectionEvent: Existing record, or None.
        """
        stmt = select(CameraEventDB).where(
            CameraEventDB.org_id == org_id,
            CameraEventDB.event_id == external_event_id,
        )
        result = await self._session.execute(stmt)
        db_event = result.scalar_one_or_none()
        return self._to_domain(db_event) if db_event else None

    async def record_outcome(
        self,
        event_id: str,
        action: DetectionAction,
        is_guest_entry: bool,
        customer_id: str | None = None,
        session_id: str | None = None,
        guest_id: str | None = None,
    ) -> None:
        """Attach the processing outcome to an audit record."""
        stmt = (
            update(CameraEventDB)
            .where(CameraEventDB.id == event_id)
            .values(
                processed_action=action.value,
                is_guest_entry=is_guest_entry,
                customer_id=customer_id,
                session_id=session_id,
                guest_id=guest_id,
            )
        )
        await self._session.execute(stmt)

    async def find_recent_by_plate_and_direction(
        self,
        plate: str,
        org_id: str,
        direction: Direction,
        since: datetime,
    ) -> DetectionEvent | None:
        """
        Latest detection of a plate in one direction at or after ``since``.

        Args:
            plate: Normalized plate.
            org_id: Organization.
            direction: Entry or exit.
            since: Lower bound on the detection timestamp.

        Returns:
            DetectionEvent: Most recent match, or None.
        """
        stmt = (
            select(CameraEventDB)
            .where(
                CameraEventDB.org_id == org_id,
                CameraEventDB.license_plate == plate,
                CameraEventDB.direction == direction.value,
                CameraEventDB.timestamp >= since,
            )
            .order_by(CameraEventDB.timestamp.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        db_event = result.scalar_one_or_none()
        return self._to_domain(db_event) if db_event else None

    async def list_recent(
        self,
        limit: int = 50,
        org_id: str | None = None,
        plate: str | None = None,
        camera_id: str | None = None,
    ) -> Sequence[DetectionEvent]:
        """
        List recent detections with optional filters.

        Args:
            limit: Maximum entries to return.
            org_id: Optional organization filter.
            plate: Optional normalized plate filter.
            camera_id: Optional camera filter.

        Returns:
            list: Detections ordered newest first.
        """
        stmt = select(CameraEventDB).order_by(CameraEventDB.timestamp.desc()).limit(limit)

        if org_id:
            stmt = stmt.where(CameraEventDB.org_id == org_id)
        if plate:
            stmt = stmt.where(CameraEventDB.license_plate == plate)
        if camera_id:
            stmt = stmt.where(CameraEventDB.camera_id == camera_id)

        result = await self._session.execute(stmt)
        return [self._to_domain(row) for row in result.scalars().all()]

    async def count_by_external_id(self, org_id: str, external_event_id: str) -> int:
        stmt = select(func.count()).select_from(CameraEventDB).where(
            CameraEventDB.org_id == org_id,
            CameraEventDB.event_id == external_event_id,
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    def _to_domain(self, db_event: CameraEventDB) -> DetectionEvent:
        """Convert database model to domain model."""
        return DetectionEvent(
            id=db_event.id,
            org_id=db_event.org_id,
            external_event_id=db_event.event_id,
            plate=db_event.license_plate,
            timestamp=db_event.timestamp,
            camera_id=db_event.camera_id,
            location_label=db_event.location_name,
            direction=Direction(db_event.direction),
            image_ref=db_event.image_base64,
            confidence=db_event.confidence,
            device_type=db_event.device_type,
            processed_action=(
                DetectionAction(db_event.processed_action)
                if db_event.processed_action
                else None
            ),
            is_guest_entry=db_event.is_guest_entry,
            customer_id=db_event.customer_id,
            session_id=db_event.session_id,
            guest_id=db_event.guest_id,
            created_at=db_event.created_at,
        )


class VehicleRepository:
    """Read access to vehicles (plus creation for seeding and admin tools)."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def find_by_plate(self, plate: str, org_id: str) -> Vehicle | None:
        """
        Resolve a vehicle by normalized plate within an organization.

        Args:
            plate: Normalized plate.
            org_id: Organization.

        Returns:
            Vehicle: Domain model if found, None otherwise.
        """
        stmt = select(VehicleDB).where(
            VehicleDB.org_id == org_id,
            VehicleDB.license_plate == plate,
        )
        result = await self._session.execute(stmt)
        db_vehicle = result.scalar_one_or_none()
        return self._to_domain(db_vehicle) if db_vehicle else None

    async def create(self, vehicle: Vehicle) -> Vehicle:
        db_vehicle = VehicleDB(
            id=vehicle.id,
            org_id=vehicle.org_id,
            license_plate=vehicle.plate,
            customer_id=vehicle.customer_id,
            label=vehicle.label,
            brand=vehicle.brand,
            model=vehicle.model,
        )
        self._session.add(db_vehicle)
        await self._session.flush()
        return self._to_domain(db_vehicle)

    def _to_domain(self, db_vehicle: VehicleDB) -> Vehicle:
        """Convert database model to domain model."""
        return Vehicle(
            id=db_vehicle.id,
            org_id=db_vehicle.org_id,
            plate=db_vehicle.license_plate,
            customer_id=db_vehicle.customer_id,
            label=db_vehicle.label,
            brand=db_vehicle.brand,
            model=db_vehicle.model,
        )


class CustomerRepository:
    """Repository for customer lookups and the registration flag."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def find_by_id(self, customer_id: str) -> Customer | None:
        stmt = select(CustomerDB).where(CustomerDB.id == customer_id)
        result = await self._session.execute(stmt)
        db_customer = result.scalar_one_or_none()
        return self._to_domain(db_customer) if db_customer else None

    async def find_by_email(self, email: str, org_id: str) -> Customer | None:
        """
        Find a customer by email (case-insensitive) within an organization.

        Args:
            email: Customer email.
            org_id: Organization.

        Returns:
            Customer: Domain model if found, None otherwise.
        """
        stmt = select(CustomerDB).where(
            CustomerDB.org_id == org_id,
            func.lower(CustomerDB.email) == email.strip().lower(),
        )
        result = await self._session.execute(stmt)
        db_customer = result.scalar_one_or_none()
        return self._to_domain(db_customer) if db_customer else None

    async def mark_registered(self, customer_id: str) -> bool:
        """
        Flip the customer's ``registered`` flag.

        Returns:
            bool: True if the customer existed and was not registered yet.
        """
        stmt = (
            update(CustomerDB)
            .where(CustomerDB.id == customer_id, CustomerDB.registered == False)
            .values(registered=True)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def create(self, customer: Customer) -> Customer:
        db_customer = CustomerDB(
            id=customer.id,
            org_id=customer.org_id,
            name=customer.name,
            email=customer.email,
            phone=customer.phone,
            registered=customer.registered,
            status=customer.status.value,
            membership_status=(
                customer.membership_status.value if customer.membership_status else None
            ),
            membership_expires_at=customer.membership_expires_at,
        )
        self._session.add(db_customer)
        await self._session.flush()
        return self._to_domain(db_customer)

    def _to_domain(self, db_customer: CustomerDB) -> Customer:
        """Convert database model to domain model."""
        return Customer(
            id=db_customer.id,
            org_id=db_customer.org_id,
            name=db_customer.name,
            email=db_customer.email,
            phone=db_customer.phone,
            registered=db_customer.registered,
            status=AccountStatus(db_customer.status),
            membership_status=(
                MembershipStatus(db_customer.membership_status)
                if db_customer.membership_status
                else None
            ),
            membership_expires_at=db_customer.membership_expires_at,
        )


class ParkingSessionRepository:
    """
    Repository for parking sessions.

    Sessions are never deleted; status changes keep ``active_vehicle_id`` in
    step with the status.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def find_active_by_vehicle(self, vehicle_id: str) -> ParkingSession | None:
        """
        Get the vehicle's active session.

        Args:
            vehicle_id: Vehicle id.

        Returns:
            ParkingSession: Active session, or None.
        """
        stmt = select(ParkingSessionDB).where(
            ParkingSessionDB.vehicle_id == vehicle_id,
            ParkingSessionDB.status == SessionStatus.ACTIVE.value,
        )
        result = await self._session.execute(stmt)
        db_session = result.scalars().first()
        return self._to_domain(db_session) if db_session else None

    async def get_by_id(self, session_id: str) -> ParkingSession | None:
        stmt = select(ParkingSessionDB).where(ParkingSessionDB.id == session_id)
        result = await self._session.execute(stmt)
        db_session = result.scalar_one_or_none()
        return self._to_domain(db_session) if db_session else None

    async def create(self, parking_session: ParkingSession) -> ParkingSession:
        """
        Insert a session.

        Raises:
            IntegrityError: If the vehicle already has an active session.
        """
        is_active = parking_session.status == SessionStatus.ACTIVE
        db_session = ParkingSessionDB(
            id=parking_session.id,
            org_id=parking_session.org_id,
            vehicle_id=parking_session.vehicle_id,
            customer_id=parking_session.customer_id,
            entry_event_id=parking_session.entry_event_id,
            entry_time=parking_session.entry_time,
            exit_event_id=parking_session.exit_event_id,
            exit_time=parking_session.exit_time,
            status=parking_session.status.value,
            penalty_amount=parking_session.penalty_amount,
            active_vehicle_id=parking_session.vehicle_id if is_active else None,
        )
        self._session.add(db_session)
        await self._session.flush()
        return self._to_domain(db_session)

    async def update_entry(
        self,
        session_id: str,
        entry_event_id: str,
        entry_time: datetime,
    ) -> bool:
        """Point an active session at a newer entry detection."""
        stmt = (
            update(ParkingSessionDB)
            .where(
                ParkingSessionDB.id == session_id,
                ParkingSessionDB.status == SessionStatus.ACTIVE.value,
            )
            .values(entry_event_id=entry_event_id, entry_time=entry_time)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def complete(
        self,
        session_id: str,
        exit_event_id: str,
        exit_time: datetime,
    ) -> bool:
        """Close an active session with its exit detection."""
        stmt = (
            update(ParkingSessionDB)
            .where(
                ParkingSessionDB.id == session_id,
                ParkingSessionDB.status == SessionStatus.ACTIVE.value,
            )
            .values(
                status=SessionStatus.COMPLETED.value,
                exit_event_id=exit_event_id,
                exit_time=exit_time,
                active_vehicle_id=None,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def set_status(
        self,
        session_id: str,
        expected: SessionStatus,
        status: SessionStatus,
        penalty_amount: float | None = None,
    ) -> bool:
        """
        Write a new status (the caller has checked the transition).

        Args:
            session_id: Session id.
            expected: Status the caller read; the write only applies if the
                session still has it.
            status: Target status.
            penalty_amount: Stored when given.

        Returns:
            bool: True if the session exists and still had ``expected``.
        """
        values: dict = {"status": status.value}
        if status != SessionStatus.ACTIVE:
            values["active_vehicle_id"] = None
        if penalty_amount is not None:
            values["penalty_amount"] = penalty_amount
        stmt = (
            update(ParkingSessionDB)
            .where(
                ParkingSessionDB.id == session_id,
                ParkingSessionDB.status == expected.value,
            )
            .values(**values)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def list_sessions(
        self,
        org_id: str | None = None,
        status: SessionStatus | None = None,
        customer_id: str | None = None,
        vehicle_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Sequence[ParkingSession]:
        """
        List sessions with optional filters, newest entry first.

        Args:
            org_id: Optional organization filter.
            status: Optional status filter.
            customer_id: Optional customer filter.
            vehicle_id: Optional vehicle filter.
            limit: Maximum entries to return.
            offset: Pagination offset.

        Returns:
            list: Matching sessions.
        """
        stmt = (
            select(ParkingSessionDB)
            .order_by(ParkingSessionDB.entry_time.desc())
            .limit(limit)
            .offset(offset)
        )
        if org_id:
            stmt = stmt.where(ParkingSessionDB.org_id == org_id)
        if status:
            stmt = stmt.where(ParkingSessionDB.status == status.value)
        if customer_id:
            stmt = stmt.where(ParkingSessionDB.customer_id == customer_id)
        if vehicle_id:
            stmt = stmt.where(ParkingSessionDB.vehicle_id == vehicle_id)

        result = await self._session.execute(stmt)
        return [self._to_domain(row) for row in result.scalars().all()]

    def _to_domain(self, db_session: ParkingSessionDB) -> ParkingSession:
        """Convert database model to domain model."""
        return ParkingSession(
            id=db_session.id,
            org_id=db_session.org_id,
            vehicle_id=db_session.vehicle_id,
            customer_id=db_session.customer_id,
            entry_event_id=db_session.entry_event_id,
            entry_time=db_session.entry_time,
            exit_event_id=db_session.exit_event_id,
            exit_time=db_session.exit_time,
            status=SessionStatus(db_session.status),
            penalty_amount=(
                float(db_session.penalty_amount)
                if db_session.penalty_amount is not None
                else None
            ),
        )


class GuestRepository:
    """Repository for guest authorizations."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, guest_id: str) -> Guest | None:
        stmt = select(GuestDB).where(GuestDB.id == guest_id)
        result = await self._session.execute(stmt)
        db_guest = result.scalar_one_or_none()
        return self._to_domain(db_guest) if db_guest else None

    async def find_pending(self, plate: str, org_id: str, now: datetime) -> Guest | None:
        """
        Find the non-expired pending guest for a plate.

        Args:
            plate: Normalized plate.
            org_id: Organization.
            now: Reference time for expiry.

        Returns:
            Guest: Pending guest, or None.
        """
        stmt = select(GuestDB).where(
            GuestDB.org_id == org_id,
            GuestDB.license_plate == plate,
            GuestDB.status == GuestStatus.PENDING_CONFIRMATION.value,
            GuestDB.expires_at > now,
        )
        result = await self._session.execute(stmt)
        db_guest = result.scalars().first()
        return self._to_domain(db_guest) if db_guest else None

    async def find_latest_pending(self, plate: str, org_id: str) -> Guest | None:
        """Most recent pending guest for a plate, expired or not."""
        stmt = (
            select(GuestDB)
            .where(
                GuestDB.org_id == org_id,
                GuestDB.license_plate == plate,
                GuestDB.status == GuestStatus.PENDING_CONFIRMATION.value,
            )
            .order_by(GuestDB.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        db_guest = result.scalar_one_or_none()
        return self._to_domain(db_guest) if db_guest else None

    async def find_confirmed(self, plate: str, org_id: str, now: datetime) -> Guest | None:
        """Find a confirmed guest whose allowance has not lapsed."""
        stmt = select(GuestDB).where(
            GuestDB.org_id == org_id,
            GuestDB.license_plate == plate,
            GuestDB.status == GuestStatus.CONFIRMED.value,
            GuestDB.expires_at > now,
        )
        result = await self._session.execute(stmt)
        db_guest = result.scalars().first()
        return self._to_domain(db_guest) if db_guest else None

    async def create(self, guest: Guest) -> Guest:
        """
        Insert a guest.

        Raises:
            IntegrityError: If a pending guest already exists for the plate.
        """
        is_pending = guest.status == GuestStatus.PENDING_CONFIRMATION
        db_guest = GuestDB(
            id=guest.id,
            org_id=guest.org_id,
            license_plate=guest.plate,
            status=guest.status.value,
            expires_at=guest.expires_at,
            confirmed_at=guest.confirmed_at,
            pending_key=pending_guest_key(guest.org_id, guest.plate) if is_pending else None,
            created_at=guest.created_at,
        )
        self._session.add(db_guest)
        await self._session.flush()
        return self._to_domain(db_guest)

    async def confirm(self, guest_id: str, confirmed_at: datetime, expires_at: datetime) -> bool:
        stmt = (
            update(GuestDB)
            .where(
                GuestDB.id == guest_id,
                GuestDB.status == GuestStatus.PENDING_CONFIRMATION.value,
            )
            .values(
                status=GuestStatus.CONFIRMED.value,
                confirmed_at=confirmed_at,
                expires_at=expires_at,
                pending_key=None,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def expire(self, guest_id: str) -> bool:
        stmt = (
            update(GuestDB)
            .where(
                GuestDB.id == guest_id,
                GuestDB.status != GuestStatus.EXPIRED.value,
            )
            .values(status=GuestStatus.EXPIRED.value, pending_key=None)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def expire_stale_pending(self, plate: str, org_id: str, now: datetime) -> int:
        """
        Expire pending guests of a plate whose confirmation window has passed.

        Returns:
            int: Number of guests expired.
        """
        stmt = (
            update(GuestDB)
            .where(
                GuestDB.org_id == org_id,
                GuestDB.license_plate == plate,
                GuestDB.status == GuestStatus.PENDING_CONFIRMATION.value,
                GuestDB.expires_at <= now,
            )
            .values(status=GuestStatus.EXPIRED.value, pending_key=None)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def list_by_plate(self, plate: str, org_id: str) -> Sequence[Guest]:
        stmt = (
            select(GuestDB)
            .where(GuestDB.org_id == org_id, GuestDB.license_plate == plate)
            .order_by(GuestDB.created_at)
        )
        result = await self._session.execute(stmt)
        return [self._to_domain(row) for row in result.scalars().all()]

    def _to_domain(self, db_guest: GuestDB) -> Guest:
        """Convert database model to domain model."""
        return Guest(
            id=db_guest.id,
            org_id=db_guest.org_id,
            plate=db_guest.license_plate,
            status=GuestStatus(db_guest.status),
            expires_at=db_guest.expires_at,
            confirmed_at=db_guest.confirmed_at,
            created_at=db_guest.created_at,
        )


class RegistrationTokenRepository:
    """Repository for registration tokens."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def find_unexpired_unused(
        self,
        customer_id: str,
        now: datetime,
    ) -> RegistrationToken | None:
        """
        Find the customer's outstanding token.

        Args:
            customer_id: Customer id.
            now: Reference time for expiry.

        Returns:
            RegistrationToken: Outstanding token, or None.
        """
        stmt = (
            select(RegistrationTokenDB)
            .where(
                RegistrationTokenDB.customer_id == customer_id,
                RegistrationTokenDB.used == False,
                RegistrationTokenDB.expires_at > now,
            )
            .order_by(RegistrationTokenDB.created_at.desc())
        )
        result = await self._session.execute(stmt)
        db_token = result.scalars().first()
        return self._to_domain(db_token) if db_token else None

    async def find_by_token(self, token: str) -> RegistrationToken | None:
        stmt = select(RegistrationTokenDB).where(RegistrationTokenDB.token == token)
        result = await self._session.execute(stmt)
        db_token = result.scalar_one_or_none()
        return self._to_domain(db_token) if db_token else None

    async def create(self, token: RegistrationToken) -> RegistrationToken:
        """
        Insert a token as the customer's outstanding one.

        Raises:
            IntegrityError: If the customer already has an outstanding token.
        """
        db_token = RegistrationTokenDB(
            id=token.id,
            customer_id=token.customer_id,
            token=token.token,
            expires_at=token.expires_at,
            used=token.used,
            outstanding_customer_id=None if token.used else token.customer_id,
            created_at=token.created_at,
        )
        self._session.add(db_token)
        await self._session.flush()
        return self._to_domain(db_token)

    async def mark_used_for_customer(self, customer_id: str) -> int:
        """
        Mark every unused token of one customer as used.

        Returns:
            int: Number of tokens updated.
        """
        stmt = (
            update(RegistrationTokenDB)
            .where(
                RegistrationTokenDB.customer_id == customer_id,
                RegistrationTokenDB.used == False,
            )
            .values(used=True, outstanding_customer_id=None)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def release_expired(self, customer_id: str, now: datetime) -> int:
        """
        Clear the outstanding sentinel of the customer's expired tokens.

        Returns:
            int: Number of tokens released.
        """
        stmt = (
            update(RegistrationTokenDB)
            .where(
                RegistrationTokenDB.customer_id == customer_id,
                RegistrationTokenDB.outstanding_customer_id.is_not(None),
                RegistrationTokenDB.expires_at <= now,
            )
            .values(outstanding_customer_id=None)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def list_for_customer(self, customer_id: str) -> Sequence[RegistrationToken]:
        stmt = (
            select(RegistrationTokenDB)
            .where(RegistrationTokenDB.customer_id == customer_id)
            .order_by(RegistrationTokenDB.created_at)
        )
        result = await self._session.execute(stmt)
        return [self._to_domain(row) for row in result.scalars().all()]

    def _to_domain(self, db_token: RegistrationTokenDB) -> RegistrationToken:
        """Convert database model to domain model."""
        return RegistrationToken(
            id=db_token.id,
            customer_id=db_token.customer_id,
            token=db_token.token,
            expires_at=db_token.expires_at,
            used=db_token.used,
            created_at=db_token.created_at,
        )


class OtpCodeRepository:
    """Repository for one-time codes."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, otp: OtpCode) -> OtpCode:
        db_otp = OtpCodeDB(
            id=otp.id,
            org_id=otp.org_id,
            email=otp.email,
            code=otp.code,
            purpose=otp.purpose.value,
            expires_at=otp.expires_at,
            used=otp.used,
            created_at=otp.created_at,
        )
        self._session.add(db_otp)
        await self._session.flush()
        return self._to_domain(db_otp)

    async def invalidate_for_email(self, email: str, org_id: str) -> int:
        """Mark every unused code of an email as used."""
        stmt = (
            update(OtpCodeDB)
            .where(
                OtpCodeDB.org_id == org_id,
                OtpCodeDB.email == email,
                OtpCodeDB.used == False,
            )
            .values(used=True)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def find_valid(
        self,
        email: str,
        code: str,
        org_id: str,
        now: datetime,
    ) -> OtpCode | None:
        """
        Find an unused, unexpired code.

        Args:
            email: Normalized email.
            code: Code typed by the user.
            org_id: Organization.
            now: Reference time for expiry.

        Returns:
            OtpCode: Matching code, or None.
        """
        stmt = (
            select(OtpCodeDB)
            .where(
                OtpCodeDB.org_id == org_id,
                OtpCodeDB.email == email,
                OtpCodeDB.code == code,
                OtpCodeDB.used == False,
                OtpCodeDB.expires_at > now,
            )
            .order_by(OtpCodeDB.created_at.desc())
        )
        result = await self._session.execute(stmt)
        db_otp = result.scalars().first()
        return self._to_domain(db_otp) if db_otp else None

    async def mark_used(self, otp_id: str) -> bool:
        """Consume a code; False if it was already used."""
        stmt = (
            update(OtpCodeDB)
            .where(OtpCodeDB.id == otp_id, OtpCodeDB.used == False)
            .values(used=True)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    def _to_domain(self, db_otp: OtpCodeDB) -> OtpCode:
        """Convert database model to domain model."""
        return OtpCode(
            id=db_otp.id,
            org_id=db_otp.org_id,
            email=db_otp.email,
            code=db_otp.code,
            purpose=OtpPurpose(db_otp.purpose),
            expires_at=db_otp.expires_at,
            used=db_otp.used,
            created_at=db_otp.created_at,
        )


class OutboxRepository:
    """
    Repository for the notification outbox.

    ``claim`` is the only way to move a message into SENDING, and it succeeds
    for exactly one caller.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def enqueue(self, message: OutboxMessage) -> OutboxMessage:
        db_message = NotificationOutboxDB(
            id=message.id,
            kind=message.kind.value,
            org_id=message.org_id,
            recipient_email=message.recipient_email,
            recipient_name=message.recipient_name,
            payload=message.payload,
            status=message.status.value,
            attempts=message.attempts,
            last_error=message.last_error,
            camera_event_id=message.camera_event_id,
            created_at=message.created_at,
        )
        self._session.add(db_message)
        await self._session.flush()
        return self._to_domain(db_message)

    async def get_by_id(self, message_id: str) -> OutboxMessage | None:
        stmt = select(NotificationOutboxDB).where(NotificationOutboxDB.id == message_id)
        result = await self._session.execute(stmt)
        db_message = result.scalar_one_or_none()
        return self._to_domain(db_message) if db_message else None

    async def claim(
        self,
        message_id: str,
        claimed_at: datetime,
        include_failed: bool = False,
        stale_before: datetime | None = None,
    ) -> bool:
        """
        Move a message to SENDING if it is still waiting.

        Args:
            message_id: Outbox message id.
            claimed_at: Time of the claim, starts the sending lease.
            include_failed: Also claim messages whose last attempt failed.
            stale_before: Also claim messages left in SENDING by a claim
                older than this.

        Returns:
            bool: True if this caller now owns the send.
        """
        stmt = (
            update(NotificationOutboxDB)
            .where(
                NotificationOutboxDB.id == message_id,
                self._waiting(include_failed, stale_before),
            )
            .values(
                status=OutboxStatus.SENDING.value,
                attempts=NotificationOutboxDB.attempts + 1,
                claimed_at=claimed_at,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def mark_sent(self, message_id: str, sent_at: datetime) -> None:
        stmt = (
            update(NotificationOutboxDB)
            .where(NotificationOutboxDB.id == message_id)
            .values(status=OutboxStatus.SENT.value, sent_at=sent_at, last_error=None)
        )
        await self._session.execute(stmt)

    async def mark_failed(self, message_id: str, error: str) -> None:
        stmt = (
            update(NotificationOutboxDB)
            .where(NotificationOutboxDB.id == message_id)
            .values(status=OutboxStatus.FAILED.value, last_error=error[:1000])
        )
        await self._session.execute(stmt)

    async def list_pending(
        self,
        limit: int = 50,
        include_failed: bool = True,
        stale_before: datetime | None = None,
    ) -> Sequence[OutboxMessage]:
        """
        Messages waiting to be sent, oldest first.

        Args:
            limit: Maximum messages to return.
            include_failed: Include messages whose last attempt failed.
            stale_before: Include messages whose sending lease started
                before this.
        """
        stmt = (
            select(NotificationOutboxDB)
            .where(self._waiting(include_failed, stale_before))
            .order_by(NotificationOutboxDB.created_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [self._to_domain(row) for row in result.scalars().all()]

    def _waiting(self, include_failed: bool, stale_before: datetime | None):
        conditions = [NotificationOutboxDB.status == OutboxStatus.PENDING.value]
        if include_failed:
            conditions.append(NotificationOutboxDB.status == OutboxStatus.FAILED.value)
        if stale_before is not None:
            conditions.append(
                and_(
                    NotificationOutboxDB.status == OutboxStatus.SENDING.value,
                    NotificationOutboxDB.claimed_at < stale_before,
                )
            )
        return or_(*conditions)

    async def list_all(
        self,
        kind: OutboxKind | None = None,
        recipient_email: str | None = None,
    ) -> Sequence[OutboxMessage]:
        stmt = select(NotificationOutboxDB).order_by(NotificationOutboxDB.created_at)
        if kind:
            stmt = stmt.where(NotificationOutboxDB.kind == kind.value)
        if recipient_email:
            stmt = stmt.where(NotificationOutboxDB.recipient_email == recipient_email)
        result = await self._session.execute(stmt)
        return [self._to_domain(row) for row in result.scalars().all()]

    def _to_domain(self, db_message: NotificationOutboxDB) -> OutboxMessage:
        """Convert database model to domain model."""
        return OutboxMessage(
            id=db_message.id,
            kind=OutboxKind(db_message.kind),
            org_id=db_message.org_id,
            recipient_email=db_message.recipient_email,
            recipient_name=db_message.recipient_name,
            payload=dict(db_message.payload or {}),
            status=OutboxStatus(db_message.status),
            attempts=db_message.attempts,
            last_error=db_message.last_error,
            camera_event_id=db_message.camera_event_id,
            created_at=db_message.created_at,
            claimed_at=db_message.claimed_at,
            sent_at=db_message.sent_at,
        )
