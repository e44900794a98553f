"""Engagement lifecycle state machine.

States: Accepted → Submitted → {Approved | Rejected | Needs Rework}
Withdrawn is reachable from Accepted and Submitted. Every other state is
terminal; re-entering the machine means a brand-new Acceptance row.

Pending Review and Under Review may appear as persisted statuses in data
written by older clients and are treated like Submitted.
"""

from collections.abc import Iterable

from engagement.challenges.exceptions import (
    AlreadyActiveError,
    DuplicateSubmissionError,
    InvalidTransitionError,
    NoPendingReviewError,
    NotAcceptedError,
)
from engagement.challenges.schemas import Acceptance, Review, Submission
from engagement.shared.schemas.base import (
    ACTIVE_STATUSES,
    AcceptanceStatus,
    EffectiveStatus,
    ReviewStatus,
)

_REVIEW_OUTCOMES = [
    AcceptanceStatus.APPROVED,
    AcceptanceStatus.REJECTED,
    AcceptanceStatus.NEEDS_REWORK,
    AcceptanceStatus.WITHDRAWN,
]

VALID_TRANSITIONS: dict[AcceptanceStatus, list[AcceptanceStatus]] = {
    AcceptanceStatus.ACCEPTED: [AcceptanceStatus.SUBMITTED, AcceptanceStatus.WITHDRAWN],
    AcceptanceStatus.SUBMITTED: _REVIEW_OUTCOMES,
    AcceptanceStatus.PENDING_REVIEW: _REVIEW_OUTCOMES,
    AcceptanceStatus.UNDER_REVIEW: _REVIEW_OUTCOMES,
    AcceptanceStatus.APPROVED: [],      # terminal
    AcceptanceStatus.REJECTED: [],      # terminal
    AcceptanceStatus.NEEDS_REWORK: [],  # terminal
    AcceptanceStatus.WITHDRAWN: [],     # terminal
}


def can_transition(current: AcceptanceStatus, target: AcceptanceStatus) -> bool:
    """Check if an acceptance status transition is valid."""
    if current.is_terminal:
        return False
    return target in VALID_TRANSITIONS.get(current, [])


def validate_transition(acceptance: Acceptance, target: AcceptanceStatus) -> None:
    """Validate an acceptance transition, raising InvalidTransitionError if invalid."""
    if not can_transition(acceptance.status, target):
        allowed = [s.value for s in VALID_TRANSITIONS.get(acceptance.status, [])]
        raise InvalidTransitionError(
            f"Cannot transition acceptance from '{acceptance.status.value}' "
            f"to '{target.value}'. Allowed: {allowed}",
            username=acceptance.username,
            challenge_id=acceptance.challenge_id,
            current=acceptance.status.value,
            target=target.value,
        )


def is_active(status: AcceptanceStatus) -> bool:
    """Whether a status blocks the user from accepting another challenge."""
    return status in ACTIVE_STATUSES


def current_acceptance(
    acceptances: Iterable[Acceptance],
    username: str,
    challenge_id: str,
) -> Acceptance | None:
    """Most recently accepted Acceptance for a pair, or None."""
    matching = [
        a for a in acceptances
        if a.username == username and a.challenge_id == challenge_id
    ]
    if not matching:
        return None
    return max(matching, key=lambda a: (a.accepted_at, a.updated_at))


def find_active(acceptances: Iterable[Acceptance], username: str) -> list[Acceptance]:
    """All active acceptances of a user, most recently updated first."""
    active = [a for a in acceptances if a.username == username and is_active(a.status)]
    return sorted(active, key=lambda a: a.updated_at, reverse=True)


def derive_effective_status(
    acceptance: Acceptance | None,
    review: Review | None = None,
) -> EffectiveStatus:
    """Compute the caller-facing status of an engagement.

    Submitted is reported as Pending Review, or as Under Review while a
    reviewer has started but not finalized. Under Review is derived only.
    """
    if acceptance is None:
        return EffectiveStatus.NOT_ACCEPTED

    if acceptance.status == AcceptanceStatus.ACCEPTED:
        return EffectiveStatus.ACCEPTED

    if is_active(acceptance.status):
        if review is not None and review.is_in_progress:
            return EffectiveStatus.UNDER_REVIEW
        return EffectiveStatus.PENDING_REVIEW

    return EffectiveStatus(acceptance.status.value)


# ===========================================
# GUARDS
# ===========================================


def ensure_can_accept(
    acceptances: Iterable[Acceptance],
    username: str,
    challenge_id: str,
) -> None:
    """Enforce the single-active-engagement rule for a new acceptance."""
    active = find_active(acceptances, username)
    if active:
        raise AlreadyActiveError(
            f"User '{username}' already has an active challenge "
            f"'{active[0].challenge_id}'",
            username=username,
            challenge_id=challenge_id,
            active_challenge_id=active[0].challenge_id,
        )


def ensure_can_submit(
    acceptance: Acceptance | None,
    submission: Submission | None,
    username: str,
    challenge_id: str,
) -> Acceptance:
    """Gate a submission on an Accepted acceptance with no prior submission."""
    if submission is not None:
        raise DuplicateSubmissionError(
            f"User '{username}' already submitted challenge '{challenge_id}'",
            username=username,
            challenge_id=challenge_id,
        )
    if acceptance is None or acceptance.status != AcceptanceStatus.ACCEPTED:
        current = acceptance.status.value if acceptance else None
        raise NotAcceptedError(
            f"User '{username}' has not accepted challenge '{challenge_id}'",
            username=username,
            challenge_id=challenge_id,
            current_status=current,
        )
    return acceptance


def ensure_pending_review(
    review: Review | None,
    submission: Submission | None,
    username: str,
    challenge_id: str,
) -> Review:
    """Gate a review decision on an existing submission with a pending review."""
    if submission is None or review is None or review.status != ReviewStatus.PENDING_REVIEW:
        raise NoPendingReviewError(
            f"No pending review for user '{username}' on challenge '{challenge_id}'",
            username=username,
            challenge_id=challenge_id,
            current_status=review.status.value if review else None,
        )
    return review
