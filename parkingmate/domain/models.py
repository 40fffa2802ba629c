"""
Domain models for the ParkingMate detection service.

These are pure domain objects with no infrastructure dependencies.
They represent the core business concepts and rules.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """
    Convert a datetime to naive UTC.

    Aware datetimes are shifted to UTC; naive datetimes are assumed to be UTC
    already.
    """
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Direction(str, Enum):
    """Travel direction reported by the camera."""

    ENTRY = "entry"
    EXIT = "exit"


class SessionStatus(str, Enum):
    """
    Parking session lifecycle.

    ACTIVE: Vehicle is inside the facility.
    COMPLETED: Exit recorded.
    EXPIRED: Session closed without an exit (e.g. guest allowance lapsed).
    PENALIZED: Session flagged for a penalty.
    """

    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    PENALIZED = "penalized"


class GuestStatus(str, Enum):
    """Guest authorization lifecycle. Transitions only move forward."""

    PENDING_CONFIRMATION = "PendingConfirmation"
    CONFIRMED = "Confirmed"
    EXPIRED = "Expired"


class DetectionAction(str, Enum):
    """Outcome tag the processor reports for one detection."""

    CUSTOMER_DETECTED = "customer_detected"
    REGISTRATION_EMAIL_SENT = "registration_email_sent"
    GUEST_CREATED = "guest_created"
    PARKING_SESSION_CREATED = "parking_session_created"
    PARKING_SESSION_UPDATED = "parking_session_updated"
    EXIT_PROCESSED = "exit_processed"


class ProcessingError(str, Enum):
    """Error category of a failed detection."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class MembershipStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class OtpPurpose(str, Enum):
    REGISTRATION = "registration"
    SIGNIN = "signin"


class OutboxKind(str, Enum):
    """Kind of notification waiting in the outbox."""

    REGISTRATION_INVITE = "registration_invite"
    OTP_CODE = "otp_code"


class OutboxStatus(str, Enum):
    """
    Delivery state of an outbox message.

    A message is claimed by moving it from PENDING (or FAILED on a retry) to
    SENDING, which guarantees a single sender.
    """

    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class DetectionInput:
    """
    Raw detection as delivered by a camera, before normalization.

    Every field is optional here; the processor validates and rejects
    malformed input before touching any state.

    Attributes:
        plate: Plate text as read by the camera.
        direction: "entry" or "exit".
        timestamp: When the camera saw the vehicle.
        camera_id: Reporting camera.
        org_id: Organization; the configured default is used when absent.
        external_event_id: Camera-side event id used as idempotency key.
        location_label: Human readable camera location.
        image_ref: Optional image payload (base64) or reference.
        confidence: Recognition confidence (0.0 to 1.0).
        device_type: Camera device type.
    """

    plate: str | None
    direction: str | None
    timestamp: datetime | None
    camera_id: str | None
    org_id: str | None = None
    external_event_id: str | None = None
    location_label: str | None = None
    image_ref: str | None = None
    confidence: float | None = None
    device_type: str | None = None


@dataclass
class DetectionEvent:
    """
    Audit record of one camera observation.

    The detection fields are immutable once recorded. The processor only
    attaches its outcome (action and references) so that a redelivery can be
    answered from the audit trail.
    """

    id: str
    org_id: str
    plate: str
    timestamp: datetime
    camera_id: str
    direction: Direction
    external_event_id: str | None = None
    location_label: str | None = None
    image_ref: str | None = None
    confidence: float | None = None
    device_type: str | None = None
    processed_action: DetectionAction | None = None
    is_guest_entry: bool = False
    customer_id: str | None = None
    session_id: str | None = None
    guest_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        """Validate confidence is in valid range."""
        if self.confidence is not None and not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be between 0 and 1, got {self.confidence}")


@dataclass
class Vehicle:
    """A vehicle known to the organization, owned by one customer."""

    id: str
    org_id: str
    plate: str
    customer_id: str | None
    label: str | None = None
    brand: str | None = None
    model: str | None = None


@dataclass
class Customer:
    """
    Customer account.

    Attributes:
        registered: True once the customer completed OTP verification.
        status: Account status.
        membership_status: Optional membership state.
        membership_expires_at: End of the current membership.
    """

    id: str
    org_id: str
    name: str
    email: str
    phone: str | None = None
    registered: bool = False
    status: AccountStatus = AccountStatus.ACTIVE
    membership_status: MembershipStatus | None = None
    membership_expires_at: datetime | None = None


@dataclass
class ParkingSession:
    """
    Continuous stay of one vehicle between an entry and an exit.

    Guest sessions carry neither vehicle nor customer.
    """

    id: str
    org_id: str
    entry_time: datetime
    vehicle_id: str | None = None
    customer_id: str | None = None
    entry_event_id: str | None = None
    exit_event_id: str | None = None
    exit_time: datetime | None = None
    status: SessionStatus = SessionStatus.ACTIVE
    penalty_amount: float | None = None


@dataclass
class Guest:
    """Provisional, time-boxed allowance for an unregistered plate."""

    id: str
    org_id: str
    plate: str
    expires_at: datetime
    status: GuestStatus = GuestStatus.PENDING_CONFIRMATION
    confirmed_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class RegistrationToken:
    """Single-use credential linking a detected customer to registration."""

    id: str
    customer_id: str
    token: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_outstanding(self, now: datetime) -> bool:
        return not self.used and self.expires_at > now


@dataclass
class OtpCode:
    """One-time numeric code sent by email."""

    id: str
    org_id: str
    email: str
    code: str
    expires_at: datetime
    purpose: OtpPurpose = OtpPurpose.REGISTRATION
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OutboxMessage:
    """Notification queued inside a business transaction."""

    id: str
    kind: OutboxKind
    org_id: str
    recipient_email: str
    recipient_name: str
    payload: dict[str, Any]
    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    camera_event_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    claimed_at: datetime | None = None
    sent_at: datetime | None = None


@dataclass(frozen=True)
class RegistrationIssue:
    """
    Result of asking for a registration token.

    Attributes:
        token: The outstanding token.
        newly_issued: True only when this call minted it; the caller sends
            the invite exactly in that case.
    """

    token: RegistrationToken
    newly_issued: bool


@dataclass(frozen=True)
class OutcomeDetails:
    """References attached to a detection outcome."""

    customer_id: str | None = None
    session_id: str | None = None
    guest_id: str | None = None
    registration_email_sent: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        """Camel-cased dict without unset references."""
        raw = {
            "customerId": self.customer_id,
            "sessionId": self.session_id,
            "guestId": self.guest_id,
            "registrationEmailSent": self.registration_email_sent,
        }
        return {key: value for key, value in raw.items() if value is not None}


@dataclass(frozen=True)
class DetectionOutcome:
    """
    Final result of processing one detection.

    This is the only thing that crosses the processor boundary; failures are
    reported through ``success``/``error`` rather than exceptions.

    Attributes:
        success: False for validation and internal errors.
        event_id: Audit record id (None when the event was never recorded).
        is_guest_entry: True when the plate took the guest path on entry.
        action: Outcome tag (None on failure).
        details: Customer/session/guest references.
        message: Human readable summary.
        error: Error category on failure.
        duplicate: True when answered from the audit record of a redelivery.
    """

    success: bool
    message: str
    event_id: str | None = None
    is_guest_entry: bool = False
    action: DetectionAction | None = None
    details: OutcomeDetails = field(default_factory=OutcomeDetails)
    error: ProcessingError | None = None
    duplicate: bool = False

    @classmethod
    def failure(
        cls,
        error: ProcessingError,
        message: str,
        event_id: str | None = None,
    ) -> "DetectionOutcome":
        return cls(success=False, message=message, event_id=event_id, error=error)
