"""Application layer package - use cases and services."""

from parkingmate.application.detection_processor import DetectionEventProcessor
from parkingmate.application.guest_ledger import GuestLedger
from parkingmate.application.guest_validation import (
    GuestValidationResult,
    GuestValidationService,
    GuestValidationStatus,
)
from parkingmate.application.locking import KeyedLockRegistry, get_lock_registry
from parkingmate.application.notification_outbox import DispatchReport, OutboxDispatcher
from parkingmate.application.registration_flow import (
    OtpVerificationResult,
    OtpVerificationStatus,
    RegistrationFlow,
    RegistrationOtpResult,
    RegistrationOtpStatus,
    RegistrationService,
)
from parkingmate.application.session_ledger import SessionLedger, SessionNotFoundError

__all__ = [
    # Detection
    "DetectionEventProcessor",
    # Ledgers
    "GuestLedger",
    "SessionLedger",
    "SessionNotFoundError",
    # Guests
    "GuestValidationResult",
    "GuestValidationService",
    "GuestValidationStatus",
    # Registration
    "OtpVerificationResult",
    "OtpVerificationStatus",
    "RegistrationFlow",
    "RegistrationOtpResult",
    "RegistrationOtpStatus",
    "RegistrationService",
    # Infrastructure glue
    "DispatchReport",
    "KeyedLockRegistry",
    "OutboxDispatcher",
    "get_lock_registry",
]
