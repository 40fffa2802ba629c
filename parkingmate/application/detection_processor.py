"""
Detection event processing use case.

Turns one camera detection into at most one business transition:
1. Input validation
2. Audit record (own transaction, committed first)
3. Vehicle and customer resolution
4. Guest path, registration path or session path
5. Outcome marker on the audit record (same transaction as step 4)
6. Post-commit dispatch of queued notifications

Every failure is converted into a DetectionOutcome; nothing raises out of
``process``.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from parkingmate.application.guest_ledger import GuestLedger
from parkingmate.application.locking import (
    KeyedLockRegistry,
    customer_key,
    get_lock_registry,
    plate_key,
)
from parkingmate.application.notification_outbox import OutboxDispatcher
from parkingmate.application.registration_flow import RegistrationFlow
from parkingmate.application.session_ledger import SessionLedger
from parkingmate.core.config import Settings, get_settings
from parkingmate.core.logging import detection_context, get_logger
from parkingmate.domain.models import (
    Customer,
    DetectionAction,
    DetectionEvent,
    DetectionInput,
    DetectionOutcome,
    Direction,
    OutcomeDetails,
    ProcessingError,
    Vehicle,
    to_naive_utc,
    utcnow,
)
from parkingmate.domain.services import DetectionInputValidator, PlateNormalizer
from parkingmate.infrastructure.db.repository import (
    CameraEventRepository,
    CustomerRepository,
    VehicleRepository,
)

logger = get_logger(__name__)

MAX_ATTEMPTS = 2


@dataclass
class _Decision:
    """Outcome of the business transaction plus the outbox ids it queued."""

    outcome: DetectionOutcome
    message_ids: list[str] = field(default_factory=list)


class DetectionEventProcessor:
    """
    Use case for processing a camera detection.

    Stateless between calls: every decision is re-derived from the ledgers,
    which is what makes replaying a detection safe.

    Example:
        processor = DetectionEventProcessor(session_factory)
        outcome = await processor.process(detection_input)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: OutboxDispatcher | None = None,
        locks: KeyedLockRegistry | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize processor.

        Args:
            session_factory: Factory for the audit and business transactions.
            dispatcher: Optional custom outbox dispatcher.
            locks: Optional lock registry (the process-wide one by default).
            settings: Optional settings override.
            clock: Source of "now" (naive UTC).
        """
        self._session_factory = session_factory
        self._dispatcher = dispatcher or OutboxDispatcher(session_factory)
        self._locks = locks or get_lock_registry()
        self._settings = settings or get_settings()
        self._clock = clock

        self._normalizer = PlateNormalizer()
        self._validator = DetectionInputValidator(normalizer=self._normalizer)

    async def process(self, data: DetectionInput) -> DetectionOutcome:
        """
        Process one detection.

        Args:
            data: Raw detection from a camera.

        Returns:
            DetectionOutcome: Outcome tag and references, or an error outcome.
        """
        errors = self._validator.errors(data)
        if errors:
            logger.warning("detection_rejected", camera_id=data.camera_id, errors=errors)
            return DetectionOutcome.failure(
                ProcessingError.VALIDATION_ERROR,
                "; ".join(errors),
            )

        org_id = data.org_id or self._settings.default_org_id
        plate = self._normalizer.normalize(data.plate)
        event_id: str | None = None

        with detection_context(org_id, plate, data.camera_id):
            try:
                event = await self._with_store_timeout(self._record_event(org_id, plate, data))
                event_id = event.id

                async with self._locks.hold(plate_key(org_id, plate)):
                    async with self._owner_lock(event):
                        decision = await self._decide_with_retry(event)

                await self._dispatcher.dispatch_after_commit(decision.message_ids)
                return decision.outcome

            except Exception as e:
                logger.exception(
                    "detection_processing_failed",
                    event_id=event_id,
                    error_type=type(e).__name__,
                )
                return DetectionOutcome.failure(
                    ProcessingError.INTERNAL_ERROR,
                    "Failed to process detection",
                    event_id=event_id,
                )

    async def _with_store_timeout(self, coro):
        return await asyncio.wait_for(coro, timeout=self._settings.store_timeout_seconds)

    async def _record_event(
        self,
        org_id: str,
        plate: str,
        data: DetectionInput,
    ) -> DetectionEvent:
        """
        Persist the audit record, reusing an existing one for a redelivery.

        Committed on its own so the detection survives a failed decision.
        """
        async with self._session_factory() as session:
            repo = CameraEventRepository(session)
            if data.external_event_id:
                existing = await repo.find_by_external_id(org_id, data.external_event_id)
                if existing is not None:
                    logger.info("detection_redelivered", event_id=existing.id)
                    return existing

            event = DetectionEvent(
                id=str(uuid.uuid4()),
                org_id=org_id,
                external_event_id=data.external_event_id,
                plate=plate,
                timestamp=to_naive_utc(data.timestamp),
                camera_id=data.camera_id.strip(),
                direction=Direction(data.direction),
                location_label=data.location_label,
                image_ref=data.image_ref,
                confidence=data.confidence,
                device_type=data.device_type,
                created_at=self._clock(),
            )
            try:
                event = await repo.create(event)
                await session.commit()
            except IntegrityError:
                # Concurrent redelivery recorded the same external id first
                await session.rollback()
                if not data.external_event_id:
                    raise
                existing = await repo.find_by_external_id(org_id, data.external_event_id)
                if existing is None:
                    raise
                logger.info("detection_redelivered", event_id=existing.id)
                return existing

        logger.info(
            "detection_recorded",
            event_id=event.id,
            direction=event.direction.value,
            external_event_id=event.external_event_id,
        )
        return event

    @asynccontextmanager
    async def _owner_lock(self, event: DetectionEvent):
        """
        Hold the owning customer's lock until the business transaction commits.

        The owner's registration state is read inside the transaction, so a
        concurrent OTP verification either finishes before it or waits for it.
        """
        owner_id = await self._with_store_timeout(self._find_owner_id(event))
        if owner_id is None:
            yield
            return
        async with self._locks.hold(customer_key(event.org_id, owner_id)):
            yield

    async def _find_owner_id(self, event: DetectionEvent) -> str | None:
        async with self._session_factory() as session:
            vehicle = await VehicleRepository(session).find_by_plate(event.plate, event.org_id)
        return vehicle.customer_id if vehicle else None

    async def _decide_with_retry(self, event: DetectionEvent) -> _Decision:
        """
        Run the business transaction, retrying once on a lost invariant race.

        A unique-sentinel violation means another writer got there first; the
        retry re-reads and takes the "already exists" branch.
        """
        attempt = 1
        while True:
            try:
                return await self._with_store_timeout(self._decide(event))
            except IntegrityError:
                if attempt >= MAX_ATTEMPTS:
                    raise
                logger.warning("detection_invariant_race", event_id=event.id, attempt=attempt)
                attempt += 1

    async def _decide(self, event: DetectionEvent) -> _Decision:
        async with self._session_factory() as session:
            try:
                events = CameraEventRepository(session)

                if self._settings.dedupe_redelivered_events and event.external_event_id:
                    recorded = await events.get_by_id(event.id)
                    if recorded is not None and recorded.processed_action is not None:
                        await session.rollback()
                        logger.info(
                            "detection_duplicate_skipped",
                            event_id=event.id,
                            action=recorded.processed_action.value,
                        )
                        return _Decision(self._outcome_from_record(recorded))

                decision = await self._evaluate(session, event)

                outcome = decision.outcome
                await events.record_outcome(
                    event.id,
                    outcome.action,
                    outcome.is_guest_entry,
                    customer_id=outcome.details.customer_id,
                    session_id=outcome.details.session_id,
                    guest_id=outcome.details.guest_id,
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.info(
            "detection_processed",
            event_id=event.id,
            action=decision.outcome.action.value,
            is_guest_entry=decision.outcome.is_guest_entry,
        )
        return decision

    async def _evaluate(self, session: AsyncSession, event: DetectionEvent) -> _Decision:
        vehicle = await VehicleRepository(session).find_by_plate(event.plate, event.org_id)
        customer = await self._resolve_customer(session, vehicle, event.org_id)

        if vehicle is None or customer is None:
            if vehicle is not None:
                logger.warning("vehicle_owner_missing", vehicle_id=vehicle.id)
            return await self._guest_path(session, event)

        if not customer.registered:
            return await self._registration_path(session, event, customer)

        if event.direction == Direction.ENTRY:
            return await self._registered_entry(session, event, vehicle, customer)
        return await self._registered_exit(session, event, vehicle, customer)

    async def _resolve_customer(
        self,
        session: AsyncSession,
        vehicle: Vehicle | None,
        org_id: str,
    ) -> Customer | None:
        if vehicle is None or vehicle.customer_id is None:
            return None
        customer = await CustomerRepository(session).find_by_id(vehicle.customer_id)
        if customer is None or customer.org_id != org_id:
            return None
        return customer

    async def _guest_path(self, session: AsyncSession, event: DetectionEvent) -> _Decision:
        if event.direction == Direction.EXIT:
            logger.info("guest_exit_ignored", event_id=event.id)
            return _Decision(
                self._success(
                    event,
                    DetectionAction.EXIT_PROCESSED,
                    "Exit recorded for unknown plate",
                )
            )

        guest, created = await GuestLedger(session).ensure_pending(
            event.plate,
            event.org_id,
            self._clock(),
            self._settings.confirmation_window,
        )
        return _Decision(
            self._success(
                event,
                DetectionAction.GUEST_CREATED,
                "Guest entry recorded, awaiting confirmation"
                if created
                else "Guest entry already pending confirmation",
                is_guest_entry=True,
                details=OutcomeDetails(guest_id=guest.id),
            )
        )

    async def _registration_path(
        self,
        session: AsyncSession,
        event: DetectionEvent,
        customer: Customer,
    ) -> _Decision:
        flow = RegistrationFlow(session, self._settings)

        issue = await flow.issue_if_absent(customer, self._clock())
        if not issue.newly_issued:
            return _Decision(
                self._success(
                    event,
                    DetectionAction.CUSTOMER_DETECTED,
                    "Customer detected, registration email already sent",
                    details=OutcomeDetails(
                        customer_id=customer.id,
                        registration_email_sent=False,
                    ),
                )
            )

        message = await flow.queue_invite(customer, issue.token, camera_event_id=event.id)

        return _Decision(
            self._success(
                event,
                DetectionAction.REGISTRATION_EMAIL_SENT,
                "Customer detected, registration email sent",
                details=OutcomeDetails(customer_id=customer.id, registration_email_sent=True),
            ),
            [message.id],
        )

    async def _registered_entry(
        self,
        session: AsyncSession,
        event: DetectionEvent,
        vehicle: Vehicle,
        customer: Customer,
    ) -> _Decision:
        ledger = SessionLedger(session)
        active = await ledger.find_active(vehicle.id)

        if active is None:
            parking_session = await ledger.open(
                event.org_id,
                entry_event_id=event.id,
                entry_time=event.timestamp,
                vehicle_id=vehicle.id,
                customer_id=customer.id,
            )
            action = DetectionAction.PARKING_SESSION_CREATED
            message = "Parking session started"
        else:
            parking_session = await ledger.fold_reentry(active, event.id, event.timestamp)
            action = DetectionAction.PARKING_SESSION_UPDATED
            message = "Parking session entry updated"

        return _Decision(
            self._success(
                event,
                action,
                message,
                details=OutcomeDetails(customer_id=customer.id, session_id=parking_session.id),
            )
        )

    async def _registered_exit(
        self,
        session: AsyncSession,
        event: DetectionEvent,
        vehicle: Vehicle,
        customer: Customer,
    ) -> _Decision:
        ledger = SessionLedger(session)
        active = await ledger.find_active(vehicle.id)

        if active is None:
            logger.info("exit_without_active_session", vehicle_id=vehicle.id)
            return _Decision(
                self._success(
                    event,
                    DetectionAction.EXIT_PROCESSED,
                    "Exit recorded, no active parking session",
                    details=OutcomeDetails(customer_id=customer.id),
                )
            )

        completed = await ledger.complete(active, event.id, event.timestamp)
        return _Decision(
            self._success(
                event,
                DetectionAction.EXIT_PROCESSED,
                "Parking session completed",
                details=OutcomeDetails(customer_id=customer.id, session_id=completed.id),
            )
        )

    def _success(
        self,
        event: DetectionEvent,
        action: DetectionAction,
        message: str,
        is_guest_entry: bool = False,
        details: OutcomeDetails | None = None,
    ) -> DetectionOutcome:
        return DetectionOutcome(
            success=True,
            message=message,
            event_id=event.id,
            is_guest_entry=is_guest_entry,
            action=action,
            details=details or OutcomeDetails(),
        )

    def _outcome_from_record(self, event: DetectionEvent) -> DetectionOutcome:
        """Rebuild the outcome of an already processed redelivery."""
        email_flag = None
        if event.processed_action == DetectionAction.REGISTRATION_EMAIL_SENT:
            email_flag = True
        elif event.processed_action == DetectionAction.CUSTOMER_DETECTED:
            email_flag = False
        return DetectionOutcome(
            success=True,
            message="Duplicate detection, returning recorded outcome",
            event_id=event.id,
            is_guest_entry=event.is_guest_entry,
            action=event.processed_action,
            details=OutcomeDetails(
                customer_id=event.customer_id,
                session_id=event.session_id,
                guest_id=event.guest_id,
                registration_email_sent=email_flag,
            ),
            duplicate=True,
        )
