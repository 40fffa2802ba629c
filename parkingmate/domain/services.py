"""
Domain services for plate handling, input validation and status transitions.

These services contain pure business logic with no infrastructure
dependencies. They can be easily unit tested.
"""

import re
import secrets
import string
from dataclasses import dataclass, field
from typing import ClassVar

from parkingmate.domain.models import (
    DetectionInput,
    Direction,
    GuestStatus,
    SessionStatus,
)


class InvalidTransitionError(Exception):
    """Raised when a session or guest is moved to a status it cannot reach."""

    pass


@dataclass
class PlateNormalizer:
    """
    Canonicalizes plate text into the lookup key.

    Uppercases and strips every whitespace character. Total: never raises,
    and None or empty input yields "".

    Example:
        >>> normalizer = PlateNormalizer()
        >>> normalizer.normalize(" ab 1\\t23 ")
        'AB123'
    """

    WHITESPACE: ClassVar[re.Pattern[str]] = re.compile(r"\s+")

    def normalize(self, raw: str | None) -> str:
        """
        Normalize raw plate text.

        Args:
            raw: Plate text as read by a camera or typed by a user.

        Returns:
            str: Uppercased plate without whitespace.
        """
        if not raw:
            return ""
        return self.WHITESPACE.sub("", raw).upper()


@dataclass
class PlateValidator:
    """
    Validates normalized plates.

    Accepts uppercase letters, digits and hyphens, 2 to 20 characters.

    Example:
        >>> validator = PlateValidator()
        >>> validator.is_valid("AB-123")
        True
        >>> validator.is_valid("A")
        False
    """

    PATTERN: ClassVar[re.Pattern[str]] = re.compile(r"^[A-Z0-9-]+$")
    MIN_LENGTH: ClassVar[int] = 2
    MAX_LENGTH: ClassVar[int] = 20

    def is_valid(self, plate: str) -> bool:
        """
        Check a normalized plate.

        Args:
            plate: Output of PlateNormalizer.normalize.

        Returns:
            bool: True if the plate may be used as a key.
        """
        if not plate or not self.MIN_LENGTH <= len(plate) <= self.MAX_LENGTH:
            return False
        return bool(self.PATTERN.match(plate))


@dataclass
class DetectionInputValidator:
    """
    Collects validation errors for a raw detection.

    An empty list means the input may be processed.
    """

    normalizer: PlateNormalizer = field(default_factory=PlateNormalizer)
    plate_validator: PlateValidator = field(default_factory=PlateValidator)

    def errors(self, data: DetectionInput) -> list[str]:
        """
        Validate a detection input.

        Args:
            data: Raw detection.

        Returns:
            list[str]: Human readable problems, empty when valid.
        """
        problems: list[str] = []

        plate = self.normalizer.normalize(data.plate)
        if not plate:
            problems.append("plate is required")
        elif not self.plate_validator.is_valid(plate):
            problems.append(
                "plate must be 2-20 characters of letters, digits or hyphens"
            )

        if not data.direction:
            problems.append("direction is required")
        elif data.direction not in {d.value for d in Direction}:
            problems.append("direction must be 'entry' or 'exit'")

        if not data.camera_id or not data.camera_id.strip():
            problems.append("camera id is required")

        if data.timestamp is None:
            problems.append("timestamp is required")

        if data.confidence is not None and not 0.0 <= data.confidence <= 1.0:
            problems.append("confidence must be between 0 and 1")

        return problems


@dataclass
class SessionTransitionPolicy:
    """
    Allowed parking session status transitions.

    Example:
        >>> policy = SessionTransitionPolicy()
        >>> policy.can_transition(SessionStatus.ACTIVE, SessionStatus.COMPLETED)
        True
        >>> policy.can_transition(SessionStatus.COMPLETED, SessionStatus.ACTIVE)
        False
    """

    ALLOWED: ClassVar[dict[SessionStatus, frozenset[SessionStatus]]] = {
        SessionStatus.ACTIVE: frozenset(
            {SessionStatus.COMPLETED, SessionStatus.EXPIRED, SessionStatus.PENALIZED}
        ),
        SessionStatus.COMPLETED: frozenset({SessionStatus.PENALIZED}),
        SessionStatus.EXPIRED: frozenset(),
        SessionStatus.PENALIZED: frozenset(),
    }

    def can_transition(self, current: SessionStatus, target: SessionStatus) -> bool:
        return target in self.ALLOWED[current]

    def ensure(self, current: SessionStatus, target: SessionStatus) -> None:
        """
        Raise if ``current`` cannot move to ``target``.

        Raises:
            InvalidTransitionError: If the transition is not allowed.
        """
        if not self.can_transition(current, target):
            raise InvalidTransitionError(
                f"Parking session cannot move from {current.value} to {target.value}"
            )


@dataclass
class GuestTransitionPolicy:
    """Allowed guest status transitions; no way back to pending."""

    ALLOWED: ClassVar[dict[GuestStatus, frozenset[GuestStatus]]] = {
        GuestStatus.PENDING_CONFIRMATION: frozenset(
            {GuestStatus.CONFIRMED, GuestStatus.EXPIRED}
        ),
        GuestStatus.CONFIRMED: frozenset({GuestStatus.EXPIRED}),
        GuestStatus.EXPIRED: frozenset(),
    }

    def can_transition(self, current: GuestStatus, target: GuestStatus) -> bool:
        return target in self.ALLOWED[current]

    def ensure(self, current: GuestStatus, target: GuestStatus) -> None:
        """
        Raise if ``current`` cannot move to ``target``.

        Raises:
            InvalidTransitionError: If the transition is not allowed.
        """
        if not self.can_transition(current, target):
            raise InvalidTransitionError(
                f"Guest cannot move from {current.value} to {target.value}"
            )


@dataclass
class SecretGenerator:
    """Generates registration tokens and OTP codes from a CSPRNG."""

    TOKEN_ALPHABET: ClassVar[str] = string.ascii_letters + string.digits

    def registration_token(self, length: int = 64) -> str:
        return "".join(secrets.choice(self.TOKEN_ALPHABET) for _ in range(length))

    def otp_code(self, length: int = 6) -> str:
        return "".join(secrets.choice(string.digits) for _ in range(length))
