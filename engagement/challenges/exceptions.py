"""Engagement error taxonomy.

Validation errors are raised synchronously before anything is written and
are never retried. Transient store failures live in
``engagement.repositories.exceptions`` and are absorbed by reconciliation.
"""

from typing import Any

from engagement.shared.schemas.base import AcceptanceStatus, ViolationKind


class EngagementError(Exception):
    """Base exception for all engagement errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class EngagementValidationError(EngagementError):
    """A requested intent is not allowed in the current state."""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        username: str | None = None,
        challenge_id: str | None = None,
        **extra: Any,
    ) -> None:
        details: dict[str, Any] = {"code": self.code}
        if username:
            details["username"] = username
        if challenge_id:
            details["challenge_id"] = challenge_id
        details.update(extra)
        super().__init__(message, details)
        self.username = username
        self.challenge_id = challenge_id


class AlreadyActiveError(EngagementValidationError):
    """The user already has an active engagement."""

    code = "ALREADY_ACTIVE"


class NotAcceptedError(EngagementValidationError):
    """No acceptance in status Accepted exists for the pair."""

    code = "NOT_ACCEPTED"


class DuplicateSubmissionError(EngagementValidationError):
    """The engagement already has a submission."""

    code = "DUPLICATE_SUBMISSION"


class NoPendingReviewError(EngagementValidationError):
    """There is no pending review to act on."""

    code = "NO_PENDING_REVIEW"


class UnauthorizedError(EngagementValidationError):
    """The acting user may not perform this operation."""

    code = "UNAUTHORIZED"


class InvalidTransitionError(EngagementValidationError):
    """The acceptance cannot move to the requested status."""

    code = "INVALID_TRANSITION"


class ChallengeNotFoundError(EngagementValidationError):
    """The catalog has no challenge with this id."""

    code = "CHALLENGE_NOT_FOUND"


class InvalidPenaltyError(EngagementValidationError):
    """A reviewer supplied a negative penalty override."""

    code = "INVALID_PENALTY"


class ConsistencyViolation(EngagementError):
    """An invariant was found broken in loaded data.

    ``kept_acceptance_id`` applies to multiple active acceptances,
    ``mirrored_status`` to a review whose outcome the acceptance lost.
    """

    def __init__(
        self,
        username: str,
        acceptance_ids: list[str],
        kind: ViolationKind = ViolationKind.MULTIPLE_ACTIVE,
        kept_acceptance_id: str | None = None,
        mirrored_status: AcceptanceStatus | None = None,
        challenge_id: str | None = None,
    ) -> None:
        if kind == ViolationKind.MULTIPLE_ACTIVE:
            message = f"User '{username}' has {len(acceptance_ids)} active acceptances"
        elif kind == ViolationKind.REVIEW_MISMATCH:
            message = f"Acceptance status of user '{username}' disagrees with its review"
        else:
            message = f"User '{username}' has submission or review records without a live acceptance"
        details: dict[str, Any] = {
            "kind": kind.value,
            "username": username,
            "acceptance_ids": acceptance_ids,
        }
        if kept_acceptance_id:
            details["kept_acceptance_id"] = kept_acceptance_id
        if mirrored_status is not None:
            details["mirrored_status"] = mirrored_status.value
        if challenge_id:
            details["challenge_id"] = challenge_id
        super().__init__(message, details)
        self.username = username
        self.acceptance_ids = acceptance_ids
        self.kind = kind
        self.kept_acceptance_id = kept_acceptance_id
        self.mirrored_status = mirrored_status
        self.challenge_id = challenge_id

    def describe(self) -> str:
        """One-line summary for operators."""
        if self.kind == ViolationKind.MULTIPLE_ACTIVE:
            return (
                f"{self.username}: {len(self.acceptance_ids)} active engagements, "
                f"newest {self.kept_acceptance_id}"
            )
        if self.kind == ViolationKind.REVIEW_MISMATCH:
            return (
                f"{self.username}: {self.acceptance_ids[0]} on {self.challenge_id} "
                f"should be {self.mirrored_status.value}"
            )
        return f"{self.username}: orphaned records for {', '.join(self.acceptance_ids)}"


__all__ = [
    "AlreadyActiveError",
    "ChallengeNotFoundError",
    "ConsistencyViolation",
    "DuplicateSubmissionError",
    "EngagementError",
    "EngagementValidationError",
    "InvalidPenaltyError",
    "InvalidTransitionError",
    "NoPendingReviewError",
    "NotAcceptedError",
    "UnauthorizedError",
]
