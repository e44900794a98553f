"""Unit tests for the deterministic scoring engine."""

from datetime import date, datetime, timedelta, timezone

import pytest

from engagement.challenges.exceptions import InvalidPenaltyError
from engagement.challenges.scoring import (
    explain_score,
    is_on_time,
    overdue_penalty,
    penalty_points,
    score,
)
from engagement.shared.schemas.base import AcceptanceStatus, ReviewDecision
from tests.factories import AcceptanceFactory, ChallengeFactory, SubmissionFactory

ON_TIME = datetime(2024, 1, 9, 15, 30, tzinfo=timezone.utc)
SAME_DAY = datetime(2024, 1, 10, 23, 59, tzinfo=timezone.utc)
LATE = datetime(2024, 1, 12, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def challenge():
    return ChallengeFactory.create("c1", points=500, penalty_points=50)


@pytest.fixture
def acceptance():
    return AcceptanceFactory.create(committed_date=date(2024, 1, 10))


def _submission(acceptance, submitted_at):
    return SubmissionFactory.create(acceptance, submitted_at=submitted_at)


class TestIsOnTime:
    def test_before_committed_date(self):
        assert is_on_time(date(2024, 1, 10), ON_TIME) is True

    def test_on_committed_date(self):
        assert is_on_time(date(2024, 1, 10), SAME_DAY) is True

    def test_after_committed_date(self):
        assert is_on_time(date(2024, 1, 10), LATE) is False

    def test_missing_committed_date_counts_as_on_time(self):
        assert is_on_time(None, LATE) is True

    def test_compares_utc_calendar_dates(self):
        tz = timezone(timedelta(hours=-5))
        # 2024-01-10 22:00 at UTC-5 is 2024-01-11 in UTC
        assert is_on_time(date(2024, 1, 10), datetime(2024, 1, 10, 22, 0, tzinfo=tz)) is False


class TestScore:
    def test_approve_on_time_awards_full_points(self, challenge, acceptance):
        assert score(challenge, acceptance, _submission(acceptance, ON_TIME), ReviewDecision.APPROVE) == 500

    def test_approve_late_deducts_penalty(self, challenge, acceptance):
        assert score(challenge, acceptance, _submission(acceptance, LATE), ReviewDecision.APPROVE) == 450

    def test_approve_late_uses_default_penalty_when_missing(self, acceptance):
        challenge = ChallengeFactory.create("c2", points=300, penalty_points=None)
        points = score(
            challenge,
            acceptance,
            _submission(acceptance, LATE),
            ReviewDecision.APPROVE,
            default_penalty_points=75,
        )
        assert points == 225

    def test_approve_late_floored_at_zero(self, acceptance):
        challenge = ChallengeFactory.create("c3", points=80, penalty_points=100)
        assert score(challenge, acceptance, _submission(acceptance, LATE), ReviewDecision.APPROVE) == 0

    def test_rework_with_override(self, challenge, acceptance):
        points = score(
            challenge, acceptance, _submission(acceptance, ON_TIME), ReviewDecision.REQUEST_REWORK, 120
        )
        assert points == 380

    def test_rework_default_penalty(self, challenge, acceptance):
        points = score(challenge, acceptance, _submission(acceptance, ON_TIME), ReviewDecision.REQUEST_REWORK)
        assert points == 400

    def test_rework_zero_override_wins_over_default(self, challenge, acceptance):
        points = score(
            challenge, acceptance, _submission(acceptance, ON_TIME), ReviewDecision.REQUEST_REWORK, 0
        )
        assert points == 500

    def test_rework_floored_at_zero(self, challenge, acceptance):
        points = score(
            challenge, acceptance, _submission(acceptance, ON_TIME), ReviewDecision.REQUEST_REWORK, 900
        )
        assert points == 0

    def test_reject_awards_nothing(self, challenge, acceptance):
        assert score(challenge, acceptance, _submission(acceptance, ON_TIME), ReviewDecision.REJECT) == 0

    def test_negative_override_rejected(self, challenge, acceptance):
        with pytest.raises(InvalidPenaltyError):
            score(challenge, acceptance, _submission(acceptance, ON_TIME), ReviewDecision.REQUEST_REWORK, -1)

    def test_override_ignored_outside_rework(self, challenge, acceptance):
        submission = _submission(acceptance, LATE)
        assert score(challenge, acceptance, submission, ReviewDecision.APPROVE, -5) == 450
        assert score(challenge, acceptance, submission, ReviewDecision.REJECT, 900) == 0

    def test_deterministic(self, challenge, acceptance):
        submission = _submission(acceptance, LATE)
        results = {
            score(challenge, acceptance, submission, ReviewDecision.APPROVE) for _ in range(5)
        }
        assert results == {450}


class TestExplainScore:
    def test_approval_reason(self, challenge, acceptance):
        breakdown = explain_score(challenge, acceptance, _submission(acceptance, ON_TIME), ReviewDecision.APPROVE)
        assert breakdown.reason == "approval"
        assert breakdown.points == 500
        assert breakdown.on_time is True

    def test_late_submission_reason(self, challenge, acceptance):
        breakdown = explain_score(challenge, acceptance, _submission(acceptance, LATE), ReviewDecision.APPROVE)
        assert breakdown.reason == "late_submission"
        assert breakdown.points == 450
        assert "50 penalty" in breakdown.description

    def test_rework_reason(self, challenge, acceptance):
        breakdown = explain_score(
            challenge, acceptance, _submission(acceptance, ON_TIME), ReviewDecision.REQUEST_REWORK, 120
        )
        assert breakdown.reason == "rework"
        assert "120 penalty" in breakdown.description

    def test_rejection_reason(self, challenge, acceptance):
        breakdown = explain_score(challenge, acceptance, _submission(acceptance, ON_TIME), ReviewDecision.REJECT)
        assert breakdown.reason == "rejection"
        assert breakdown.points == 0


class TestOverduePenalty:
    def test_unsubmitted_past_committed_date(self, challenge, acceptance):
        assert overdue_penalty(challenge, acceptance, date(2024, 1, 11)) == -50

    def test_not_yet_due(self, challenge, acceptance):
        assert overdue_penalty(challenge, acceptance, date(2024, 1, 10)) == 0

    def test_submitted_engagement_not_penalized(self, challenge):
        acceptance = AcceptanceFactory.create(status=AcceptanceStatus.SUBMITTED)
        assert overdue_penalty(challenge, acceptance, date(2024, 2, 1)) == 0

    def test_default_penalty_when_challenge_has_none(self, acceptance):
        challenge = ChallengeFactory.create("c2", points=300, penalty_points=None)
        assert penalty_points(challenge) == 50
        assert overdue_penalty(challenge, acceptance, date(2024, 2, 1), default_penalty_points=20) == -20
