"""Unit tests for the engagement state machine."""

from datetime import timedelta

import pytest

from engagement.challenges.exceptions import (
    AlreadyActiveError,
    DuplicateSubmissionError,
    InvalidTransitionError,
    NoPendingReviewError,
    NotAcceptedError,
)
from engagement.challenges.state_machine import (
    can_transition,
    current_acceptance,
    derive_effective_status,
    ensure_can_accept,
    ensure_can_submit,
    ensure_pending_review,
    find_active,
    validate_transition,
)
from engagement.shared.schemas.base import (
    AcceptanceStatus,
    EffectiveStatus,
    ReviewStatus,
)
from tests.factories import AcceptanceFactory, ReviewFactory, SubmissionFactory

TERMINAL = [
    AcceptanceStatus.APPROVED,
    AcceptanceStatus.REJECTED,
    AcceptanceStatus.NEEDS_REWORK,
    AcceptanceStatus.WITHDRAWN,
]


class TestCanTransition:
    def test_accepted_to_submitted(self):
        assert can_transition(AcceptanceStatus.ACCEPTED, AcceptanceStatus.SUBMITTED) is True

    def test_accepted_to_withdrawn(self):
        assert can_transition(AcceptanceStatus.ACCEPTED, AcceptanceStatus.WITHDRAWN) is True

    def test_accepted_cannot_skip_review(self):
        assert can_transition(AcceptanceStatus.ACCEPTED, AcceptanceStatus.APPROVED) is False

    def test_submitted_to_review_outcomes(self):
        for target in TERMINAL:
            assert can_transition(AcceptanceStatus.SUBMITTED, target) is True

    def test_persisted_review_statuses_behave_like_submitted(self):
        for current in [AcceptanceStatus.PENDING_REVIEW, AcceptanceStatus.UNDER_REVIEW]:
            assert can_transition(current, AcceptanceStatus.APPROVED) is True
            assert can_transition(current, AcceptanceStatus.WITHDRAWN) is True

    def test_terminal_states_are_terminal(self):
        for current in TERMINAL:
            for target in AcceptanceStatus:
                assert can_transition(current, target) is False

    def test_no_backward_transitions(self):
        assert can_transition(AcceptanceStatus.SUBMITTED, AcceptanceStatus.ACCEPTED) is False


class TestValidateTransition:
    def test_valid_passes(self):
        validate_transition(AcceptanceFactory.create(), AcceptanceStatus.SUBMITTED)

    def test_invalid_raises(self):
        acceptance = AcceptanceFactory.create(status=AcceptanceStatus.APPROVED)
        with pytest.raises(InvalidTransitionError, match="Cannot transition") as exc_info:
            validate_transition(acceptance, AcceptanceStatus.WITHDRAWN)
        assert exc_info.value.details["code"] == "INVALID_TRANSITION"
        assert exc_info.value.details["current"] == "Approved"


class TestDeriveEffectiveStatus:
    def test_no_acceptance(self):
        assert derive_effective_status(None) == EffectiveStatus.NOT_ACCEPTED

    def test_accepted(self):
        assert derive_effective_status(AcceptanceFactory.create()) == EffectiveStatus.ACCEPTED

    def test_submitted_reported_as_pending_review(self):
        acceptance = AcceptanceFactory.create(status=AcceptanceStatus.SUBMITTED)
        review = ReviewFactory.create(acceptance)
        assert derive_effective_status(acceptance, review) == EffectiveStatus.PENDING_REVIEW

    def test_submitted_without_review_stub_is_pending_review(self):
        acceptance = AcceptanceFactory.create(status=AcceptanceStatus.SUBMITTED)
        assert derive_effective_status(acceptance) == EffectiveStatus.PENDING_REVIEW

    def test_started_review_is_under_review(self):
        acceptance = AcceptanceFactory.create(status=AcceptanceStatus.SUBMITTED)
        review = ReviewFactory.create(acceptance, review_started_by="manager")
        assert derive_effective_status(acceptance, review) == EffectiveStatus.UNDER_REVIEW

    def test_terminal_statuses_pass_through(self):
        for status in TERMINAL:
            acceptance = AcceptanceFactory.create(status=status)
            assert derive_effective_status(acceptance).value == status.value


class TestCurrentAcceptance:
    def test_most_recently_accepted_wins(self):
        older = AcceptanceFactory.create(status=AcceptanceStatus.WITHDRAWN)
        newer = AcceptanceFactory.create(accepted_at=older.accepted_at + timedelta(days=1))
        assert current_acceptance([newer, older], "u1", "c1") == newer

    def test_other_pairs_ignored(self):
        other = AcceptanceFactory.create(challenge_id="c2")
        assert current_acceptance([other], "u1", "c1") is None


class TestFindActive:
    def test_only_active_statuses(self):
        acceptances = [
            AcceptanceFactory.create(challenge_id="c1", status=AcceptanceStatus.APPROVED),
            AcceptanceFactory.create(challenge_id="c2", status=AcceptanceStatus.SUBMITTED),
            AcceptanceFactory.create(username="u2", challenge_id="c3"),
        ]
        active = find_active(acceptances, "u1")
        assert [a.challenge_id for a in active] == ["c2"]

    def test_sorted_most_recently_updated_first(self):
        first = AcceptanceFactory.create(challenge_id="c1")
        second = AcceptanceFactory.create(challenge_id="c2", updated_at=first.updated_at + timedelta(hours=1))
        assert find_active([first, second], "u1") == [second, first]


class TestGuards:
    def test_accept_blocked_by_active_engagement_on_other_challenge(self):
        acceptances = [AcceptanceFactory.create(challenge_id="c1")]
        with pytest.raises(AlreadyActiveError) as exc_info:
            ensure_can_accept(acceptances, "u1", "c2")
        assert exc_info.value.details["active_challenge_id"] == "c1"

    def test_accept_allowed_after_terminal_outcomes(self):
        acceptances = [AcceptanceFactory.create(status=status) for status in TERMINAL]
        ensure_can_accept(acceptances, "u1", "c1")

    def test_submit_requires_acceptance(self):
        with pytest.raises(NotAcceptedError):
            ensure_can_submit(None, None, "u1", "c1")

    def test_submit_requires_accepted_status(self):
        acceptance = AcceptanceFactory.create(status=AcceptanceStatus.WITHDRAWN)
        with pytest.raises(NotAcceptedError) as exc_info:
            ensure_can_submit(acceptance, None, "u1", "c1")
        assert exc_info.value.details["current_status"] == "Withdrawn"

    def test_second_submission_is_duplicate(self):
        acceptance = AcceptanceFactory.create(status=AcceptanceStatus.SUBMITTED)
        submission = SubmissionFactory.create(acceptance)
        with pytest.raises(DuplicateSubmissionError):
            ensure_can_submit(acceptance, submission, "u1", "c1")

    def test_submit_returns_acceptance(self):
        acceptance = AcceptanceFactory.create()
        assert ensure_can_submit(acceptance, None, "u1", "c1") is acceptance

    def test_review_requires_submission(self):
        acceptance = AcceptanceFactory.create(status=AcceptanceStatus.SUBMITTED)
        review = ReviewFactory.create(acceptance)
        with pytest.raises(NoPendingReviewError):
            ensure_pending_review(review, None, "u1", "c1")

    def test_finalized_review_cannot_be_reviewed_again(self):
        acceptance = AcceptanceFactory.create(status=AcceptanceStatus.APPROVED)
        submission = SubmissionFactory.create(acceptance)
        review = ReviewFactory.create(acceptance, status=ReviewStatus.APPROVED, points_awarded=500)
        with pytest.raises(NoPendingReviewError) as exc_info:
            ensure_pending_review(review, submission, "u1", "c1")
        assert exc_info.value.details["current_status"] == "Approved"
