"""Deterministic points calculation applied at review time.

The awarded points are a pure function of the challenge's points and
penalty, the committed date, the submission time, the decision and the
reviewer's optional penalty override. Nothing else is consulted, so a
score can be recomputed at any time for audits or leaderboards.
"""

from datetime import date, datetime

from engagement.challenges.exceptions import InvalidPenaltyError
from engagement.challenges.schemas import (
    Acceptance,
    Challenge,
    PointsBreakdown,
    Submission,
)
from engagement.shared.schemas.base import AcceptanceStatus, ReviewDecision
from engagement.shared.utils.datetime_utils import to_date

DEFAULT_REWORK_PENALTY = 100
DEFAULT_PENALTY_POINTS = 50


def penalty_points(challenge: Challenge, default: int = DEFAULT_PENALTY_POINTS) -> int:
    """Late penalty of a challenge, falling back to the default."""
    if challenge.penalty_points is None:
        return default
    return challenge.penalty_points


def is_on_time(
    committed_date: date | datetime | None,
    submitted_at: date | datetime,
) -> bool:
    """Whether a submission landed on or before the committed date.

    Compared as UTC calendar dates. No committed date counts as on time.
    """
    if committed_date is None:
        return True
    return to_date(submitted_at) <= to_date(committed_date)


def score(
    challenge: Challenge,
    acceptance: Acceptance,
    submission: Submission,
    decision: ReviewDecision,
    penalty_override: int | None = None,
    *,
    default_rework_penalty: int = DEFAULT_REWORK_PENALTY,
    default_penalty_points: int = DEFAULT_PENALTY_POINTS,
) -> int:
    """Compute awarded points for a finalized review.

    Args:
        challenge: Challenge being reviewed
        acceptance: Engagement's acceptance (supplies committed date)
        submission: Engagement's submission (supplies submission time)
        decision: Reviewer decision
        penalty_override: Reviewer-supplied rework penalty; always wins on
            rework and is ignored for other decisions

    Returns:
        Points awarded, never negative

    Raises:
        InvalidPenaltyError: If a rework override is negative
    """
    if decision != ReviewDecision.REQUEST_REWORK:
        penalty_override = None
    elif penalty_override is not None and penalty_override < 0:
        raise InvalidPenaltyError(
            f"Penalty override must be non-negative (got {penalty_override})",
            username=acceptance.username,
            challenge_id=challenge.id,
            penalty_override=penalty_override,
        )

    if decision == ReviewDecision.REJECT:
        return 0

    if decision == ReviewDecision.REQUEST_REWORK:
        penalty = default_rework_penalty if penalty_override is None else penalty_override
        return max(0, challenge.points - penalty)

    if is_on_time(acceptance.committed_date, submission.submitted_at):
        return challenge.points
    return max(0, challenge.points - penalty_points(challenge, default_penalty_points))


def explain_score(
    challenge: Challenge,
    acceptance: Acceptance,
    submission: Submission,
    decision: ReviewDecision,
    penalty_override: int | None = None,
    *,
    default_rework_penalty: int = DEFAULT_REWORK_PENALTY,
    default_penalty_points: int = DEFAULT_PENALTY_POINTS,
) -> PointsBreakdown:
    """Score a review and describe how the points were reached."""
    points = score(
        challenge,
        acceptance,
        submission,
        decision,
        penalty_override,
        default_rework_penalty=default_rework_penalty,
        default_penalty_points=default_penalty_points,
    )
    on_time = is_on_time(acceptance.committed_date, submission.submitted_at)
    label = challenge.title or challenge.id

    if decision == ReviewDecision.REJECT:
        reason = "rejection"
        description = f'No points awarded - submission rejected for "{label}"'
    elif decision == ReviewDecision.REQUEST_REWORK:
        penalty = default_rework_penalty if penalty_override is None else penalty_override
        reason = "rework"
        description = f'Rework requested for "{label}" ({penalty} penalty applied)'
    elif on_time:
        reason = "approval"
        description = f'Full points awarded for on-time completion of "{label}"'
    else:
        reason = "late_submission"
        description = (
            f'Reduced points awarded for late submission of "{label}" '
            f"({penalty_points(challenge, default_penalty_points)} penalty applied)"
        )

    return PointsBreakdown(points=points, reason=reason, description=description, on_time=on_time)


def overdue_penalty(
    challenge: Challenge,
    acceptance: Acceptance,
    as_of: date | datetime,
    *,
    default_penalty_points: int = DEFAULT_PENALTY_POINTS,
) -> int:
    """Penalty for an acceptance never submitted by its committed date.

    Returns a non-positive number: ``-penalty_points`` when the acceptance is
    still Accepted and ``as_of`` is past the committed date, else 0.
    """
    if acceptance.status != AcceptanceStatus.ACCEPTED:
        return 0
    if to_date(as_of) <= to_date(acceptance.committed_date):
        return 0
    return -penalty_points(challenge, default_penalty_points)


__all__ = [
    "DEFAULT_PENALTY_POINTS",
    "DEFAULT_REWORK_PENALTY",
    "explain_score",
    "is_on_time",
    "overdue_penalty",
    "penalty_points",
    "score",
]
