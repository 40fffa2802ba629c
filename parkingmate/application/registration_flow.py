"""
Customer registration flow.

A detected vehicle whose owner has not registered yet gets exactly one
outstanding registration token and one invite email. The customer follows
the link, asks for a one-time code and verifies it, which flips the
``registered`` flag and retires the customer's tokens.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from parkingmate.application.locking import (
    KeyedLockRegistry,
    customer_key,
    get_lock_registry,
)
from parkingmate.application.notification_outbox import OutboxDispatcher
from parkingmate.core.config import Settings, get_settings
from parkingmate.core.logging import get_logger
from parkingmate.domain.models import (
    Customer,
    OtpCode,
    OtpPurpose,
    OutboxKind,
    OutboxMessage,
    RegistrationIssue,
    RegistrationToken,
    utcnow,
)
from parkingmate.domain.services import SecretGenerator
from parkingmate.infrastructure.db.repository import (
    CustomerRepository,
    OtpCodeRepository,
    OutboxRepository,
    RegistrationTokenRepository,
)

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class RegistrationFlow:
    """
    Token and OTP bookkeeping inside one unit of work.

    The caller holds the customer lock and commits. Notifications are only
    queued in the outbox here.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        generator: SecretGenerator | None = None,
    ):
        """
        Initialize flow.

        Args:
            session: Database session of the current transaction.
            settings: Optional settings override.
            generator: Optional secret generator.
        """
        self._settings = settings or get_settings()
        self._generator = generator or SecretGenerator()
        self._tokens = RegistrationTokenRepository(session)
        self._customers = CustomerRepository(session)
        self._otps = OtpCodeRepository(session)
        self._outbox = OutboxRepository(session)

    async def issue_if_absent(self, customer: Customer, now: datetime) -> RegistrationIssue:
        """
        Return the customer's outstanding token, minting one if there is none.

        Args:
            customer: Unregistered customer.
            now: Current time.

        Returns:
            RegistrationIssue: The token and whether this call minted it.

        Raises:
            IntegrityError: If another writer minted a token concurrently.
        """
        released = await self._tokens.release_expired(customer.id, now)
        if released:
            logger.info("registration_tokens_released", customer_id=customer.id, count=released)

        existing = await self._tokens.find_unexpired_unused(customer.id, now)
        if existing is not None:
            logger.info(
                "registration_token_outstanding",
                customer_id=customer.id,
                expires_at=existing.expires_at.isoformat(),
            )
            return RegistrationIssue(token=existing, newly_issued=False)

        token = await self._tokens.create(
            RegistrationToken(
                id=str(uuid.uuid4()),
                customer_id=customer.id,
                token=self._generator.registration_token(
                    self._settings.registration_token_length
                ),
                expires_at=now + self._settings.registration_token_lifetime,
                created_at=now,
            )
        )
        logger.info("registration_token_issued", customer_id=customer.id)
        return RegistrationIssue(token=token, newly_issued=True)

    async def queue_invite(
        self,
        customer: Customer,
        token: RegistrationToken,
        camera_event_id: str | None = None,
    ) -> OutboxMessage:
        """Queue the registration invite for a freshly minted token."""
        message = await self._outbox.enqueue(
            OutboxMessage(
                id=str(uuid.uuid4()),
                kind=OutboxKind.REGISTRATION_INVITE,
                org_id=customer.org_id,
                recipient_email=customer.email,
                recipient_name=customer.name,
                payload={
                    "token": token.token,
                    "expires_hours": self._settings.registration_token_expiry_hours,
                },
                camera_event_id=camera_event_id,
                created_at=utcnow(),
            )
        )
        logger.info("registration_invite_queued", customer_id=customer.id, outbox_id=message.id)
        return message

    async def mark_used_by_identity(self, email: str, org_id: str) -> int:
        """
        Retire every unused token of the customer identified by (email, org).

        Only that customer's tokens are touched.

        Args:
            email: Customer email.
            org_id: Organization.

        Returns:
            int: Number of tokens marked used (0 if the customer is unknown).
        """
        customer = await self._customers.find_by_email(normalize_email(email), org_id)
        if customer is None:
            logger.warning("registration_identity_unknown", org_id=org_id)
            return 0
        count = await self._tokens.mark_used_for_customer(customer.id)
        logger.info("registration_tokens_used", customer_id=customer.id, count=count)
        return count

    async def create_otp(
        self,
        email: str,
        name: str,
        org_id: str,
        now: datetime,
        purpose: OtpPurpose = OtpPurpose.REGISTRATION,
    ) -> tuple[OtpCode, OutboxMessage]:
        """
        Replace the email's codes with a fresh one and queue it.

        Args:
            email: Recipient email.
            name: Recipient display name.
            org_id: Organization.
            now: Current time.
            purpose: What the code authorizes.

        Returns:
            tuple: (otp, outbox message).
        """
        email = normalize_email(email)
        await self._otps.invalidate_for_email(email, org_id)
        otp = await self._otps.create(
            OtpCode(
                id=str(uuid.uuid4()),
                org_id=org_id,
                email=email,
                code=self._generator.otp_code(self._settings.otp_length),
                purpose=purpose,
                expires_at=now + self._settings.otp_lifetime,
                created_at=now,
            )
        )
        message = await self._outbox.enqueue(
            OutboxMessage(
                id=str(uuid.uuid4()),
                kind=OutboxKind.OTP_CODE,
                org_id=org_id,
                recipient_email=email,
                recipient_name=name,
                payload={
                    "code": otp.code,
                    "expires_minutes": self._settings.otp_expiry_minutes,
                },
                created_at=now,
            )
        )
        logger.info("otp_queued", purpose=purpose.value, outbox_id=message.id)
        return otp, message

    async def consume_otp(
        self,
        email: str,
        code: str,
        org_id: str,
        now: datetime,
    ) -> OtpCode | None:
        """Mark a valid code used; None if it is unknown, expired or spent."""
        otp = await self._otps.find_valid(normalize_email(email), code.strip(), org_id, now)
        if otp is None or not await self._otps.mark_used(otp.id):
            return None
        return otp


class RegistrationOtpStatus(str, Enum):
    """Result of requesting a registration or sign-in OTP."""

    OTP_SENT = "otp_sent"
    INVALID_TOKEN = "invalid_token"
    TOKEN_USED = "token_used"
    TOKEN_EXPIRED = "token_expired"
    CUSTOMER_NOT_FOUND = "customer_not_found"
    ALREADY_REGISTERED = "already_registered"
    NOT_REGISTERED = "not_registered"


class OtpVerificationStatus(str, Enum):
    """Result of verifying an OTP."""

    REGISTRATION_COMPLETED = "registration_completed"
    VERIFIED = "verified"
    INVALID_CODE = "invalid_code"


@dataclass(frozen=True)
class RegistrationOtpResult:
    status: RegistrationOtpStatus
    email: str | None = None
    expires_at: datetime | None = None
    email_sent: bool = False


@dataclass(frozen=True)
class OtpVerificationResult:
    status: OtpVerificationStatus
    customer_id: str | None = None
    tokens_retired: int = 0


class RegistrationService:
    """
    Registration use cases exposed to customers.

    Each call runs in its own transaction under the customer lock and
    dispatches queued emails after commit.

    Example:
        service = RegistrationService(session_factory, dispatcher)
        result = await service.request_registration_otp(token)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: OutboxDispatcher | None = None,
        locks: KeyedLockRegistry | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher or OutboxDispatcher(session_factory)
        self._locks = locks or get_lock_registry()
        self._settings = settings or get_settings()
        self._clock = clock

    async def request_registration_otp(self, token_value: str) -> RegistrationOtpResult:
        """
        Send a registration OTP to the owner of a registration token.

        Args:
            token_value: Token from the registration link.

        Returns:
            RegistrationOtpResult: OTP_SENT or the reason it was refused.
        """
        async with self._session_factory() as session:
            token = await RegistrationTokenRepository(session).find_by_token(token_value)
        if token is None:
            logger.warning("registration_token_unknown")
            return RegistrationOtpResult(status=RegistrationOtpStatus.INVALID_TOKEN)

        async with self._session_factory() as session:
            customer = await CustomerRepository(session).find_by_id(token.customer_id)
        if customer is None:
            return RegistrationOtpResult(status=RegistrationOtpStatus.CUSTOMER_NOT_FOUND)

        async with self._locks.hold(customer_key(customer.org_id, customer.id)):
            result, message_id = await asyncio.wait_for(
                self._issue_registration_otp(token_value, customer),
                timeout=self._settings.store_timeout_seconds,
            )

        if message_id is None:
            return result
        report = await self._dispatcher.dispatch_after_commit([message_id])
        return RegistrationOtpResult(
            status=result.status,
            email=result.email,
            expires_at=result.expires_at,
            email_sent=message_id in report.sent,
        )

    async def _issue_registration_otp(
        self,
        token_value: str,
        customer: Customer,
    ) -> tuple[RegistrationOtpResult, str | None]:
        now = self._clock()
        async with self._session_factory() as session:
            try:
                # Re-read under the lock; a verification may have retired it.
                token = await RegistrationTokenRepository(session).find_by_token(token_value)
                current = await CustomerRepository(session).find_by_id(customer.id)
                if token is None or current is None:
                    return RegistrationOtpResult(status=RegistrationOtpStatus.INVALID_TOKEN), None
                if current.registered:
                    return RegistrationOtpResult(status=RegistrationOtpStatus.ALREADY_REGISTERED), None
                if token.used:
                    return RegistrationOtpResult(status=RegistrationOtpStatus.TOKEN_USED), None
                if token.expires_at <= now:
                    return RegistrationOtpResult(status=RegistrationOtpStatus.TOKEN_EXPIRED), None

                flow = RegistrationFlow(session, self._settings)
                otp, message = await flow.create_otp(
                    current.email,
                    current.name,
                    current.org_id,
                    now,
                    purpose=OtpPurpose.REGISTRATION,
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.info("registration_otp_requested", customer_id=current.id)
        return (
            RegistrationOtpResult(
                status=RegistrationOtpStatus.OTP_SENT,
                email=otp.email,
                expires_at=otp.expires_at,
            ),
            message.id,
        )

    async def request_signin_otp(
        self,
        email: str,
        org_id: str | None = None,
    ) -> RegistrationOtpResult:
        """
        Send a sign-in OTP to a registered customer.

        Args:
            email: Customer email.
            org_id: Organization; the default organization when omitted.

        Returns:
            RegistrationOtpResult: OTP_SENT, CUSTOMER_NOT_FOUND or NOT_REGISTERED.
        """
        org_id = org_id or self._settings.default_org_id
        email = normalize_email(email)

        async with self._session_factory() as session:
            customer = await CustomerRepository(session).find_by_email(email, org_id)
        if customer is None:
            logger.warning("signin_customer_unknown", org_id=org_id)
            return RegistrationOtpResult(status=RegistrationOtpStatus.CUSTOMER_NOT_FOUND)
        if not customer.registered:
            return RegistrationOtpResult(status=RegistrationOtpStatus.NOT_REGISTERED)

        async with self._locks.hold(customer_key(org_id, customer.id)):
            otp, message_id = await asyncio.wait_for(
                self._issue_signin_otp(customer),
                timeout=self._settings.store_timeout_seconds,
            )

        report = await self._dispatcher.dispatch_after_commit([message_id])
        return RegistrationOtpResult(
            status=RegistrationOtpStatus.OTP_SENT,
            email=otp.email,
            expires_at=otp.expires_at,
            email_sent=message_id in report.sent,
        )

    async def _issue_signin_otp(self, customer: Customer) -> tuple[OtpCode, str]:
        async with self._session_factory() as session:
            try:
                otp, message = await RegistrationFlow(session, self._settings).create_otp(
                    customer.email,
                    customer.name,
                    customer.org_id,
                    self._clock(),
                    purpose=OtpPurpose.SIGNIN,
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.info("signin_otp_requested", customer_id=customer.id)
        return otp, message.id

    async def verify_otp(
        self,
        email: str,
        code: str,
        org_id: str | None = None,
    ) -> OtpVerificationResult:
        """
        Verify a one-time code.

        A registration code of an unregistered customer completes the
        registration: the customer is marked registered and their tokens are
        retired.

        Args:
            email: Email the code was sent to.
            code: The code.
            org_id: Organization; the default organization when omitted.

        Returns:
            OtpVerificationResult: Outcome of the verification.
        """
        org_id = org_id or self._settings.default_org_id
        email = normalize_email(email)

        async with self._session_factory() as session:
            customer = await CustomerRepository(session).find_by_email(email, org_id)

        if customer is None:
            return await asyncio.wait_for(
                self._consume_only(email, code, org_id),
                timeout=self._settings.store_timeout_seconds,
            )

        async with self._locks.hold(customer_key(org_id, customer.id)):
            return await asyncio.wait_for(
                self._verify_for_customer(email, code, org_id, customer.id),
                timeout=self._settings.store_timeout_seconds,
            )

    async def _consume_only(self, email: str, code: str, org_id: str) -> OtpVerificationResult:
        async with self._session_factory() as session:
            otp = await RegistrationFlow(session, self._settings).consume_otp(
                email, code, org_id, self._clock()
            )
            await session.commit()
        if otp is None:
            logger.warning("otp_invalid", org_id=org_id)
            return OtpVerificationResult(status=OtpVerificationStatus.INVALID_CODE)
        return OtpVerificationResult(status=OtpVerificationStatus.VERIFIED)

    async def _verify_for_customer(
        self,
        email: str,
        code: str,
        org_id: str,
        customer_id: str,
    ) -> OtpVerificationResult:
        async with self._session_factory() as session:
            try:
                flow = RegistrationFlow(session, self._settings)
                otp = await flow.consume_otp(email, code, org_id, self._clock())
                if otp is None:
                    await session.rollback()
                    logger.warning("otp_invalid", customer_id=customer_id)
                    return OtpVerificationResult(
                        status=OtpVerificationStatus.INVALID_CODE,
                        customer_id=customer_id,
                    )

                customers = CustomerRepository(session)
                customer = await customers.find_by_id(customer_id)
                if otp.purpose != OtpPurpose.REGISTRATION or customer is None or customer.registered:
                    await session.commit()
                    return OtpVerificationResult(
                        status=OtpVerificationStatus.VERIFIED,
                        customer_id=customer_id,
                    )

                await customers.mark_registered(customer_id)
                retired = await flow.mark_used_by_identity(email, org_id)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.info("registration_completed", customer_id=customer_id, tokens_retired=retired)
        return OtpVerificationResult(
            status=OtpVerificationStatus.REGISTRATION_COMPLETED,
            customer_id=customer_id,
            tokens_retired=retired,
        )
