"""
Integration tests for detection processing.

Runs the processor against a real SQLite database and checks both the
returned outcome and the resulting ledger state.
"""

import asyncio
from datetime import timedelta, timezone

import pytest

from parkingmate.application.detection_processor import DetectionEventProcessor
from parkingmate.application.locking import customer_key
from parkingmate.domain.models import (
    DetectionAction,
    GuestStatus,
    OutboxKind,
    OutboxStatus,
    ProcessingError,
    SessionStatus,
    utcnow,
)
from parkingmate.infrastructure.db.repository import (
    CameraEventRepository,
    CustomerRepository,
    GuestRepository,
    OutboxRepository,
    ParkingSessionRepository,
    RegistrationTokenRepository,
)

ORG_ID = "00000000-0000-0000-0000-000000000000"


class TestGuestPath:
    """Detections of plates without a registered owner."""

    @pytest.mark.asyncio
    async def test_unknown_entry_creates_pending_guest(self, processor, make_detection, db_session):
        """Test an unknown plate on entry becomes a pending guest."""
        before = utcnow()
        outcome = await processor.process(make_detection(plate="AB-123"))

        assert outcome.success is True
        assert outcome.action == DetectionAction.GUEST_CREATED
        assert outcome.is_guest_entry is True
        assert outcome.details.guest_id is not None

        guests = await GuestRepository(db_session).list_by_plate("AB-123", ORG_ID)
        assert len(guests) == 1
        guest = guests[0]
        assert guest.id == outcome.details.guest_id
        assert guest.status == GuestStatus.PENDING_CONFIRMATION
        assert before + timedelta(minutes=30) <= guest.expires_at <= utcnow() + timedelta(minutes=30)

        sessions = await ParkingSessionRepository(db_session).list_sessions()
        assert sessions == []

    @pytest.mark.asyncio
    async def test_repeat_entry_reuses_pending_guest(self, processor, make_detection, db_session):
        """Test a second entry inside the window keeps a single pending guest."""
        first = await processor.process(make_detection(plate="AB-123"))
        second = await processor.process(make_detection(plate="ab 123"))

        assert second.action == DetectionAction.GUEST_CREATED
        assert second.details.guest_id == first.details.guest_id
        assert second.event_id != first.event_id
        guests = await GuestRepository(db_session).list_by_plate("AB123", ORG_ID)
        assert [g.id for g in guests] == [first.details.guest_id]

    @pytest.mark.asyncio
    async def test_entry_after_window_replaces_stale_guest(
        self, session_factory, dispatcher, locks, settings, make_detection, db_session
    ):
        """Test a lapsed pending guest is expired before a new one is created."""
        processor = DetectionEventProcessor(session_factory, dispatcher, locks, settings)
        first = await processor.process(make_detection(plate="AB-123"))

        later = DetectionEventProcessor(
            session_factory,
            dispatcher,
            locks,
            settings,
            clock=lambda: utcnow() + timedelta(minutes=45),
        )
        second = await later.process(make_detection(plate="AB-123"))

        assert second.details.guest_id != first.details.guest_id
        guests = {g.id: g for g in await GuestRepository(db_session).list_by_plate("AB-123", ORG_ID)}
        assert guests[first.details.guest_id].status == GuestStatus.EXPIRED
        assert guests[second.details.guest_id].status == GuestStatus.PENDING_CONFIRMATION

    @pytest.mark.asyncio
    async def test_unknown_exit_is_recorded_only(self, processor, make_detection, db_session):
        """Test an exit of an unknown plate changes nothing."""
        outcome = await processor.process(make_detection(plate="AB-123", direction="exit"))

        assert outcome.success is True
        assert outcome.action == DetectionAction.EXIT_PROCESSED
        assert outcome.is_guest_entry is False
        assert outcome.details.to_dict() == {}
        assert await GuestRepository(db_session).list_by_plate("AB-123", ORG_ID) == []

    @pytest.mark.asyncio
    async def test_vehicle_without_owner_follows_guest_path(self, processor, make_detection, seed):
        """Test a vehicle with no customer is treated as a guest."""
        await seed.vehicle("NO-OWNER")
        outcome = await processor.process(make_detection(plate="NO-OWNER"))

        assert outcome.action == DetectionAction.GUEST_CREATED
        assert outcome.is_guest_entry is True

    @pytest.mark.asyncio
    async def test_vehicle_with_missing_customer_follows_guest_path(
        self, processor, make_detection, seed
    ):
        """Test a dangling customer reference is treated as a guest."""
        await seed.vehicle("GHOST-1", customer_id="does-not-exist")
        outcome = await processor.process(make_detection(plate="GHOST-1"))

        assert outcome.success is True
        assert outcome.action == DetectionAction.GUEST_CREATED

    @pytest.mark.asyncio
    async def test_customer_of_other_org_follows_guest_path(self, processor, make_detection, seed):
        """Test an owner from another organization is not trusted."""
        outsider = await seed.customer(registered=True, org_id="other-org")
        await seed.vehicle("XORG-1", outsider)

        outcome = await processor.process(make_detection(plate="XORG-1"))

        assert outcome.action == DetectionAction.GUEST_CREATED


class TestRegisteredPath:
    """Detections of vehicles owned by registered customers."""

    @pytest.mark.asyncio
    async def test_entry_opens_session(self, processor, make_detection, seed, db_session):
        """Test the first entry opens an active session."""
        customer, vehicle = await seed.owned_vehicle("REG-1")
        outcome = await processor.process(make_detection(plate="reg-1"))

        assert outcome.success is True
        assert outcome.action == DetectionAction.PARKING_SESSION_CREATED
        assert outcome.is_guest_entry is False
        assert outcome.details.customer_id == customer.id

        active = await ParkingSessionRepository(db_session).find_active_by_vehicle(vehicle.id)
        assert active is not None
        assert active.id == outcome.details.session_id
        assert active.entry_event_id == outcome.event_id
        assert active.customer_id == customer.id

    @pytest.mark.asyncio
    async def test_reentry_folds_into_active_session(self, processor, make_detection, seed, db_session):
        """Test a second entry updates the active session instead of opening another."""
        _, vehicle = await seed.owned_vehicle("REG-1")
        first_time = utcnow() - timedelta(minutes=5)
        first = await processor.process(make_detection(plate="REG-1", timestamp=first_time))
        second = await processor.process(make_detection(plate="REG-1"))

        assert second.action == DetectionAction.PARKING_SESSION_UPDATED
        assert second.details.session_id == first.details.session_id

        sessions = await ParkingSessionRepository(db_session).list_sessions(vehicle_id=vehicle.id)
        assert len(sessions) == 1
        assert sessions[0].status == SessionStatus.ACTIVE
        assert sessions[0].entry_event_id == second.event_id
        assert sessions[0].entry_time > first_time

    @pytest.mark.asyncio
    async def test_exit_completes_session(self, processor, make_detection, seed, db_session):
        """Test an exit closes the active session at the detection time."""
        _, vehicle = await seed.owned_vehicle("REG-1")
        entry = await processor.process(make_detection(plate="REG-1"))
        exit_time = utcnow() + timedelta(hours=2)
        outcome = await processor.process(
            make_detection(plate="REG-1", direction="exit", timestamp=exit_time)
        )

        assert outcome.action == DetectionAction.EXIT_PROCESSED
        assert outcome.details.session_id == entry.details.session_id

        completed = await ParkingSessionRepository(db_session).get_by_id(entry.details.session_id)
        assert completed.status == SessionStatus.COMPLETED
        assert completed.exit_event_id == outcome.event_id
        assert completed.exit_time == exit_time
        assert await ParkingSessionRepository(db_session).find_active_by_vehicle(vehicle.id) is None

    @pytest.mark.asyncio
    async def test_unmatched_exit(self, processor, make_detection, seed, db_session):
        """Test an exit without an active session is not an error."""
        customer, _ = await seed.owned_vehicle("REG-1")
        outcome = await processor.process(make_detection(plate="REG-1", direction="exit"))

        assert outcome.success is True
        assert outcome.action == DetectionAction.EXIT_PROCESSED
        assert outcome.details.customer_id == customer.id
        assert outcome.details.session_id is None
        assert await ParkingSessionRepository(db_session).list_sessions() == []

    @pytest.mark.asyncio
    async def test_new_visit_after_exit(self, processor, make_detection, seed, db_session):
        """Test an entry after a completed visit opens a new session."""
        _, vehicle = await seed.owned_vehicle("REG-1")
        first = await processor.process(make_detection(plate="REG-1"))
        await processor.process(make_detection(plate="REG-1", direction="exit"))
        second = await processor.process(make_detection(plate="REG-1"))

        assert second.action == DetectionAction.PARKING_SESSION_CREATED
        assert second.details.session_id != first.details.session_id
        sessions = await ParkingSessionRepository(db_session).list_sessions(vehicle_id=vehicle.id)
        assert sorted(s.status for s in sessions) == [SessionStatus.ACTIVE, SessionStatus.COMPLETED]

    @pytest.mark.asyncio
    async def test_timezone_aware_timestamp_is_stored_as_utc(
        self, processor, make_detection, seed, db_session
    ):
        """Test offsets are converted to naive UTC."""
        _, vehicle = await seed.owned_vehicle("REG-1")
        local = utcnow().replace(microsecond=0, tzinfo=timezone.utc).astimezone(
            timezone(timedelta(hours=2))
        )
        await processor.process(make_detection(plate="REG-1", timestamp=local))

        active = await ParkingSessionRepository(db_session).find_active_by_vehicle(vehicle.id)
        assert active.entry_time == local.astimezone(timezone.utc).replace(tzinfo=None)


class TestRegistrationPath:
    """Detections of vehicles whose owner has not registered."""

    @pytest.mark.asyncio
    async def test_first_detection_sends_invite(self, processor, make_detection, seed, notifier, db_session):
        """Test the first detection issues a token and emails it."""
        customer, _ = await seed.owned_vehicle("NEW-1", registered=False, email="new@example.com")
        outcome = await processor.process(make_detection(plate="NEW-1"))

        assert outcome.success is True
        assert outcome.action == DetectionAction.REGISTRATION_EMAIL_SENT
        assert outcome.details.to_dict() == {
            "customerId": customer.id,
            "registrationEmailSent": True,
        }

        tokens = await RegistrationTokenRepository(db_session).list_for_customer(customer.id)
        assert len(tokens) == 1
        assert len(tokens[0].token) == 64

        assert len(notifier.sent) == 1
        assert notifier.sent[0].kind == "registration_invite"
        assert notifier.sent[0].email == "new@example.com"
        assert notifier.sent[0].data["token"] == tokens[0].token

        messages = await OutboxRepository(db_session).list_all(kind=OutboxKind.REGISTRATION_INVITE)
        assert [m.status for m in messages] == [OutboxStatus.SENT]
        assert messages[0].camera_event_id == outcome.event_id

    @pytest.mark.asyncio
    async def test_second_detection_does_not_resend(self, processor, make_detection, seed, notifier, db_session):
        """Test an outstanding token suppresses another invite."""
        customer, _ = await seed.owned_vehicle("NEW-1", registered=False)
        await processor.process(make_detection(plate="NEW-1"))
        outcome = await processor.process(make_detection(plate="NEW-1", direction="exit"))

        assert outcome.action == DetectionAction.CUSTOMER_DETECTED
        assert outcome.details.registration_email_sent is False
        assert len(await RegistrationTokenRepository(db_session).list_for_customer(customer.id)) == 1
        assert len(notifier.sent) == 1
        assert await ParkingSessionRepository(db_session).list_sessions() == []

    @pytest.mark.asyncio
    async def test_expired_token_is_replaced(
        self, session_factory, dispatcher, locks, settings, make_detection, seed, notifier, db_session
    ):
        """Test a new invite goes out once the previous token has expired."""
        customer, _ = await seed.owned_vehicle("NEW-1", registered=False)
        processor = DetectionEventProcessor(session_factory, dispatcher, locks, settings)
        await processor.process(make_detection(plate="NEW-1"))

        later = DetectionEventProcessor(
            session_factory,
            dispatcher,
            locks,
            settings,
            clock=lambda: utcnow() + timedelta(hours=49),
        )
        outcome = await later.process(make_detection(plate="NEW-1"))

        assert outcome.action == DetectionAction.REGISTRATION_EMAIL_SENT
        assert len(await RegistrationTokenRepository(db_session).list_for_customer(customer.id)) == 2
        assert len(notifier.sent) == 2

    @pytest.mark.asyncio
    async def test_failed_email_keeps_token(self, session_factory, locks, settings, make_detection, seed, db_session):
        """Test a provider failure does not undo the issued token."""
        from parkingmate.application.notification_outbox import OutboxDispatcher
        from parkingmate.infrastructure.email.notifier import LoggingNotifier

        failing = OutboxDispatcher(session_factory, LoggingNotifier(fail=True), timeout_seconds=2.0)
        processor = DetectionEventProcessor(session_factory, failing, locks, settings)
        customer, _ = await seed.owned_vehicle("NEW-1", registered=False)

        outcome = await processor.process(make_detection(plate="NEW-1"))

        assert outcome.success is True
        assert outcome.action == DetectionAction.REGISTRATION_EMAIL_SENT
        assert len(await RegistrationTokenRepository(db_session).list_for_customer(customer.id)) == 1
        messages = await OutboxRepository(db_session).list_all()
        assert [m.status for m in messages] == [OutboxStatus.FAILED]

    @pytest.mark.asyncio
    async def test_registration_completed_while_waiting_skips_invite(
        self, processor, locks, make_detection, seed, notifier, session_factory, db_session
    ):
        """Test a detection waiting on a running OTP verification sees its result."""
        customer, vehicle = await seed.owned_vehicle("NEW-1", registered=False)

        async with locks.hold(customer_key(ORG_ID, customer.id)):
            task = asyncio.create_task(processor.process(make_detection(plate="NEW-1")))
            await asyncio.sleep(0.2)
            assert not task.done()

            async with session_factory() as session:
                await CustomerRepository(session).mark_registered(customer.id)
                await session.commit()

        outcome = await task

        assert outcome.action == DetectionAction.PARKING_SESSION_CREATED
        assert outcome.details.registration_email_sent is None
        assert await RegistrationTokenRepository(db_session).list_for_customer(customer.id) == []
        assert notifier.sent == []
        active = await ParkingSessionRepository(db_session).find_active_by_vehicle(vehicle.id)
        assert active.id == outcome.details.session_id


class TestAuditTrail:
    """Detection audit records."""

    @pytest.mark.asyncio
    async def test_event_records_outcome(self, processor, make_detection, db_session):
        """Test the audit record carries the processing outcome."""
        outcome = await processor.process(
            make_detection(
                plate="AB-123",
                external_event_id="cam-evt-1",
                location_label="North gate",
                confidence=0.91,
                device_type="anpr",
            )
        )

        event = await CameraEventRepository(db_session).get_by_id(outcome.event_id)
        assert event.plate == "AB-123"
        assert event.external_event_id == "cam-evt-1"
        assert event.location_label == "North gate"
        assert event.confidence == pytest.approx(0.91)
        assert event.processed_action == DetectionAction.GUEST_CREATED
        assert event.is_guest_entry is True
        assert event.guest_id == outcome.details.guest_id

    @pytest.mark.asyncio
    async def test_validation_error_records_nothing(self, processor, make_detection, db_session):
        """Test malformed input is rejected before any write."""
        outcome = await processor.process(make_detection(plate="  ", direction="around"))

        assert outcome.success is False
        assert outcome.error == ProcessingError.VALIDATION_ERROR
        assert outcome.event_id is None
        assert "plate is required" in outcome.message
        assert await CameraEventRepository(db_session).list_recent() == []

    @pytest.mark.asyncio
    async def test_org_scoping(self, processor, make_detection, seed, db_session):
        """Test a registered plate in one organization is a guest in another."""
        await seed.owned_vehicle("REG-1")
        outcome = await processor.process(make_detection(plate="REG-1", org_id="org-b"))

        assert outcome.action == DetectionAction.GUEST_CREATED
        assert len(await GuestRepository(db_session).list_by_plate("REG-1", "org-b")) == 1
