"""Base schemas and common types used across the engagement package."""

from enum import Enum

from pydantic import BaseModel, ConfigDict


# ===========================================
# ENUMS
# ===========================================


class AcceptanceStatus(str, Enum):
    """Persisted status of an Acceptance record."""

    ACCEPTED = "Accepted"
    SUBMITTED = "Submitted"
    PENDING_REVIEW = "Pending Review"
    UNDER_REVIEW = "Under Review"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    NEEDS_REWORK = "Needs Rework"
    WITHDRAWN = "Withdrawn"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class ReviewStatus(str, Enum):
    """Status of a submission review."""

    PENDING_REVIEW = "Pending Review"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    NEEDS_REWORK = "Needs Rework"


class ReviewDecision(str, Enum):
    """Reviewer decision on a pending submission."""

    APPROVE = "Approve"
    REJECT = "Reject"
    REQUEST_REWORK = "RequestRework"

    @property
    def review_status(self) -> ReviewStatus:
        """Review status a decision finalizes to."""
        return _DECISION_TO_REVIEW_STATUS[self]

    @property
    def acceptance_status(self) -> "AcceptanceStatus":
        """Terminal acceptance status mirrored from the decision."""
        return AcceptanceStatus(self.review_status.value)


_DECISION_TO_REVIEW_STATUS: dict[ReviewDecision, ReviewStatus] = {
    ReviewDecision.APPROVE: ReviewStatus.APPROVED,
    ReviewDecision.REJECT: ReviewStatus.REJECTED,
    ReviewDecision.REQUEST_REWORK: ReviewStatus.NEEDS_REWORK,
}


class EffectiveStatus(str, Enum):
    """Status of a (user, challenge) pair as reported to callers."""

    NOT_ACCEPTED = "Not Accepted"
    ACCEPTED = "Accepted"
    PENDING_REVIEW = "Pending Review"
    UNDER_REVIEW = "Under Review"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    NEEDS_REWORK = "Needs Rework"
    WITHDRAWN = "Withdrawn"

    @property
    def is_active(self) -> bool:
        return self in {
            EffectiveStatus.ACCEPTED,
            EffectiveStatus.PENDING_REVIEW,
            EffectiveStatus.UNDER_REVIEW,
        }


class UserRole(str, Enum):
    """Roles known to the identity provider."""

    EMPLOYEE = "Employee"
    MANAGEMENT = "Management"


class MutationKind(str, Enum):
    """Kinds of mutations applied to the engagement store."""

    ACCEPT = "accept"
    SUBMIT = "submit"
    WITHDRAW = "withdraw"
    BEGIN_REVIEW = "begin_review"
    REVIEW = "review"
    REPAIR = "repair"


class ChangeKind(str, Enum):
    """Kinds of change notifications emitted to observers."""

    ACCEPTED = "accepted"
    SUBMITTED = "submitted"
    WITHDRAWN = "withdrawn"
    REVIEW_STARTED = "review_started"
    REVIEWED = "reviewed"
    REPAIRED = "repaired"
    RECONCILED = "reconciled"
    RELOADED = "reloaded"


MUTATION_CHANGE_KINDS: dict[MutationKind, ChangeKind] = {
    MutationKind.ACCEPT: ChangeKind.ACCEPTED,
    MutationKind.SUBMIT: ChangeKind.SUBMITTED,
    MutationKind.WITHDRAW: ChangeKind.WITHDRAWN,
    MutationKind.BEGIN_REVIEW: ChangeKind.REVIEW_STARTED,
    MutationKind.REVIEW: ChangeKind.REVIEWED,
    MutationKind.REPAIR: ChangeKind.REPAIRED,
}


class ViolationKind(str, Enum):
    """Kinds of broken invariants the consistency checker repairs."""

    MULTIPLE_ACTIVE = "multiple_active_acceptances"
    REVIEW_MISMATCH = "review_status_mismatch"
    ORPHANED_RECORDS = "orphaned_records"


class SyncState(str, Enum):
    """Remote synchronization state of a local mutation."""

    SYNCED = "synced"
    PENDING = "pending"


ACTIVE_STATUSES: frozenset[AcceptanceStatus] = frozenset(
    {
        AcceptanceStatus.ACCEPTED,
        AcceptanceStatus.SUBMITTED,
        AcceptanceStatus.PENDING_REVIEW,
        AcceptanceStatus.UNDER_REVIEW,
    }
)

TERMINAL_STATUSES: frozenset[AcceptanceStatus] = frozenset(
    {
        AcceptanceStatus.APPROVED,
        AcceptanceStatus.REJECTED,
        AcceptanceStatus.NEEDS_REWORK,
        AcceptanceStatus.WITHDRAWN,
    }
)


# ===========================================
# BASE MODELS
# ===========================================


class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )
