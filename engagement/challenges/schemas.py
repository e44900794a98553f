"""Pydantic v2 schemas for challenge engagement records."""

from datetime import date, datetime
from uuid import uuid4

from pydantic import Field

from engagement.shared.schemas.base import (
    AcceptanceStatus,
    BaseSchema,
    MutationKind,
    ReviewStatus,
    SyncState,
    UserRole,
)
from engagement.shared.utils.datetime_utils import utcnow


def make_submission_id(username: str, challenge_id: str) -> str:
    """Logical review key for a (user, challenge) pair."""
    return f"{username}-{challenge_id}"


def make_acceptance_id(username: str, challenge_id: str) -> str:
    """Generate a fresh acceptance row id."""
    return f"acc_{username}_{challenge_id}_{uuid4().hex[:8]}"


class Challenge(BaseSchema):
    """Challenge metadata supplied by the catalog (read-only here)."""

    id: str
    title: str = ""
    points: int = Field(ge=0)
    penalty_points: int | None = Field(default=None, ge=0)
    deadline: date | None = None


class Identity(BaseSchema):
    """The user an operation is performed as."""

    username: str
    role: UserRole = UserRole.EMPLOYEE

    @property
    def is_management(self) -> bool:
        return self.role == UserRole.MANAGEMENT


class Acceptance(BaseSchema):
    """A user's commitment to complete a challenge by a date."""

    id: str
    username: str
    challenge_id: str
    status: AcceptanceStatus = AcceptanceStatus.ACCEPTED
    committed_date: date
    accepted_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    withdrawn_at: datetime | None = None
    withdrawn_by: str | None = None


class SupportingDocument(BaseSchema):
    """Reference to an uploaded supporting file."""

    file_url: str
    file_name: str
    file_size: int = Field(default=0, ge=0)


class SubmissionPayload(BaseSchema):
    """Free-text solution fields supplied by the submitter.

    Files are opaque URLs; nothing here is uploaded or inspected.
    """

    short_description: str = ""
    technologies: str = ""
    source_code_url: str = ""
    hosted_app_url: str = ""
    file_url: str = ""
    file_name: str = ""
    file_size: int = Field(default=0, ge=0)
    supporting_docs: list[SupportingDocument] = Field(default_factory=list)


class Submission(SubmissionPayload):
    """A submitted solution for one engagement."""

    acceptance_id: str
    username: str
    challenge_id: str
    submitted: bool = True
    submitted_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def submission_id(self) -> str:
        return make_submission_id(self.username, self.challenge_id)


class Review(BaseSchema):
    """Review of a submission; finalized exactly once."""

    acceptance_id: str
    submission_id: str
    username: str
    challenge_id: str
    status: ReviewStatus = ReviewStatus.PENDING_REVIEW
    review_started_by: str | None = None
    review_started_at: datetime | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_comment: str | None = None
    points_awarded: int | None = None
    penalty_override: int | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_finalized(self) -> bool:
        return self.status != ReviewStatus.PENDING_REVIEW

    @property
    def is_in_progress(self) -> bool:
        return (
            self.status == ReviewStatus.PENDING_REVIEW
            and self.review_started_by is not None
            and self.points_awarded is None
        )


class PointsBreakdown(BaseSchema):
    """Explanation of an awarded score."""

    points: int
    reason: str
    description: str
    on_time: bool


class MutationResult(BaseSchema):
    """Outcome of a mutating engagement operation."""

    kind: MutationKind
    username: str
    challenge_id: str
    operation_id: str
    sync_state: SyncState
    acceptance: Acceptance | None = None
    submission: Submission | None = None
    review: Review | None = None

    @property
    def saved_locally_only(self) -> bool:
        """True when the change is committed locally but the remote write is pending."""
        return self.sync_state == SyncState.PENDING


class LeaderboardEntry(BaseSchema):
    """Single entry in the points leaderboard."""

    rank: int
    username: str
    total_points: int
    approved_count: int = 0
    rework_count: int = 0
    rejected_count: int = 0
    late_count: int = 0
    overdue_penalties: int = 0
