"""
Unit tests for status transition policies and outcome shaping.

Tests SessionTransitionPolicy, GuestTransitionPolicy and the outcome value objects.
"""

import pytest

from parkingmate.domain.models import (
    DetectionAction,
    DetectionOutcome,
    GuestStatus,
    OutcomeDetails,
    ProcessingError,
    SessionStatus,
)
from parkingmate.domain.services import (
    GuestTransitionPolicy,
    InvalidTransitionError,
    SecretGenerator,
    SessionTransitionPolicy,
)


class TestSessionTransitionPolicy:
    """Tests for SessionTransitionPolicy."""

    @pytest.fixture
    def policy(self) -> SessionTransitionPolicy:
        return SessionTransitionPolicy()

    @pytest.mark.parametrize(
        "target",
        [SessionStatus.COMPLETED, SessionStatus.EXPIRED, SessionStatus.PENALIZED],
    )
    def test_active_can_leave(self, policy: SessionTransitionPolicy, target: SessionStatus):
        """Test an active session may end in any terminal status."""
        assert policy.can_transition(SessionStatus.ACTIVE, target) is True

    def test_completed_can_be_penalized(self, policy: SessionTransitionPolicy):
        """Test a completed session may still be penalized."""
        assert policy.can_transition(SessionStatus.COMPLETED, SessionStatus.PENALIZED) is True

    @pytest.mark.parametrize(
        "current",
        [SessionStatus.COMPLETED, SessionStatus.EXPIRED, SessionStatus.PENALIZED],
    )
    def test_no_way_back_to_active(self, policy: SessionTransitionPolicy, current: SessionStatus):
        """Test sessions never become active again."""
        assert policy.can_transition(current, SessionStatus.ACTIVE) is False

    def test_ensure_raises(self, policy: SessionTransitionPolicy):
        """Test an illegal transition raises."""
        with pytest.raises(InvalidTransitionError):
            policy.ensure(SessionStatus.EXPIRED, SessionStatus.COMPLETED)


class TestGuestTransitionPolicy:
    """Tests for GuestTransitionPolicy."""

    @pytest.fixture
    def policy(self) -> GuestTransitionPolicy:
        return GuestTransitionPolicy()

    def test_pending_to_confirmed(self, policy: GuestTransitionPolicy):
        assert policy.can_transition(GuestStatus.PENDING_CONFIRMATION, GuestStatus.CONFIRMED)

    def test_confirmed_to_expired(self, policy: GuestTransitionPolicy):
        assert policy.can_transition(GuestStatus.CONFIRMED, GuestStatus.EXPIRED)

    def test_confirmed_cannot_return_to_pending(self, policy: GuestTransitionPolicy):
        """Test there is no way back to pending."""
        with pytest.raises(InvalidTransitionError):
            policy.ensure(GuestStatus.CONFIRMED, GuestStatus.PENDING_CONFIRMATION)

    def test_expired_is_terminal(self, policy: GuestTransitionPolicy):
        with pytest.raises(InvalidTransitionError):
            policy.ensure(GuestStatus.EXPIRED, GuestStatus.CONFIRMED)


class TestOutcome:
    """Tests for outcome value objects."""

    def test_details_drop_unset_references(self):
        """Test only present references are serialized, camel cased."""
        details = OutcomeDetails(customer_id="c1", registration_email_sent=False)
        assert details.to_dict() == {"customerId": "c1", "registrationEmailSent": False}

    def test_failure_outcome(self):
        """Test failure outcomes carry an error and no action."""
        outcome = DetectionOutcome.failure(ProcessingError.INTERNAL_ERROR, "boom", event_id="e1")
        assert outcome.success is False
        assert outcome.error == ProcessingError.INTERNAL_ERROR
        assert outcome.action is None
        assert outcome.event_id == "e1"
        assert outcome.details.to_dict() == {}

    def test_action_values(self):
        """Test outcome tags serialize to their wire names."""
        assert DetectionAction.GUEST_CREATED.value == "guest_created"
        assert DetectionAction.EXIT_PROCESSED.value == "exit_processed"


class TestSecretGenerator:
    """Tests for SecretGenerator."""

    def test_registration_token_shape(self):
        token = SecretGenerator().registration_token(64)
        assert len(token) == 64
        assert token.isalnum()

    def test_otp_is_numeric(self):
        code = SecretGenerator().otp_code(6)
        assert len(code) == 6
        assert code.isdigit()

    def test_tokens_differ(self):
        generator = SecretGenerator()
        assert generator.registration_token() != generator.registration_token()
