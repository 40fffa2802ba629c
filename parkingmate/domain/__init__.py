"""Domain layer package - business rules and core models."""

from parkingmate.domain.models import (
    AccountStatus,
    Customer,
    DetectionAction,
    DetectionEvent,
    DetectionInput,
    DetectionOutcome,
    Direction,
    Guest,
    GuestStatus,
    MembershipStatus,
    OtpCode,
    OtpPurpose,
    OutboxKind,
    OutboxMessage,
    OutboxStatus,
    OutcomeDetails,
    ParkingSession,
    ProcessingError,
    RegistrationIssue,
    RegistrationToken,
    SessionStatus,
    Vehicle,
    to_naive_utc,
    utcnow,
)
from parkingmate.domain.services import (
    DetectionInputValidator,
    GuestTransitionPolicy,
    InvalidTransitionError,
    PlateNormalizer,
    PlateValidator,
    SecretGenerator,
    SessionTransitionPolicy,
)

__all__ = [
    # Models
    "AccountStatus",
    "Customer",
    "DetectionAction",
    "DetectionEvent",
    "DetectionInput",
    "DetectionOutcome",
    "Direction",
    "Guest",
    "GuestStatus",
    "MembershipStatus",
    "OtpCode",
    "OtpPurpose",
    "OutboxKind",
    "OutboxMessage",
    "OutboxStatus",
    "OutcomeDetails",
    "ParkingSession",
    "ProcessingError",
    "RegistrationIssue",
    "RegistrationToken",
    "SessionStatus",
    "Vehicle",
    "to_naive_utc",
    "utcnow",
    # Services
    "DetectionInputValidator",
    "GuestTransitionPolicy",
    "InvalidTransitionError",
    "PlateNormalizer",
    "PlateValidator",
    "SecretGenerator",
    "SessionTransitionPolicy",
]
