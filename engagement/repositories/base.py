"""Base engagement store interface.

Every store, local or authoritative, exposes the same contract: keyed
reads plus a single atomic, idempotent ``apply`` for mutations. Records are
never written one at a time from outside, so a review decision and the
acceptance status it mirrors land together or not at all.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from pydantic import Field

from engagement.challenges.schemas import Acceptance, Review, Submission
from engagement.repositories.exceptions import StaleWriteError
from engagement.shared.schemas.base import (
    AcceptanceStatus,
    BaseSchema,
    MutationKind,
    ReviewStatus,
)
from engagement.shared.utils.datetime_utils import utcnow


def make_operation_id(
    username: str,
    challenge_id: str,
    kind: MutationKind,
    scope: str,
) -> str:
    """Stable id for a mutation; retries of the same intent reuse it.

    ``scope`` narrows the intent, usually to one acceptance id.
    """
    return f"{username}:{challenge_id}:{kind.value}:{scope}"


class EngagementMutation(BaseSchema):
    """An atomic set of record changes produced by one intent.

    ``expected_statuses`` maps each acceptance id the intent was validated
    against to the status it had at the time, or None when the acceptance
    must not exist yet. Stores refuse the mutation when they disagree.
    """

    operation_id: str
    kind: MutationKind
    username: str
    challenge_id: str
    acceptances: list[Acceptance] = Field(default_factory=list)
    submissions: list[Submission] = Field(default_factory=list)
    reviews: list[Review] = Field(default_factory=list)
    deleted_submissions: list[str] = Field(default_factory=list)
    deleted_reviews: list[str] = Field(default_factory=list)
    audit: dict[str, Any] | None = None
    expected_statuses: dict[str, AcceptanceStatus | None] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def acceptance_ids(self) -> set[str]:
        """Acceptance ids whose records this mutation touches."""
        ids = {a.id for a in self.acceptances}
        ids.update(s.acceptance_id for s in self.submissions)
        ids.update(r.acceptance_id for r in self.reviews)
        ids.update(self.deleted_submissions)
        ids.update(self.deleted_reviews)
        return ids


class EngagementSnapshot(BaseSchema):
    """A set of records as held by a store."""

    acceptances: list[Acceptance] = Field(default_factory=list)
    submissions: list[Submission] = Field(default_factory=list)
    reviews: list[Review] = Field(default_factory=list)

    def for_acceptances(self, acceptance_ids: set[str]) -> "EngagementSnapshot":
        """Restrict the snapshot to records of the given acceptances."""
        return EngagementSnapshot(
            acceptances=[a for a in self.acceptances if a.id in acceptance_ids],
            submissions=[s for s in self.submissions if s.acceptance_id in acceptance_ids],
            reviews=[r for r in self.reviews if r.acceptance_id in acceptance_ids],
        )

    def for_user(self, username: str) -> "EngagementSnapshot":
        """Restrict the snapshot to one user's records."""
        return EngagementSnapshot(
            acceptances=[a for a in self.acceptances if a.username == username],
            submissions=[s for s in self.submissions if s.username == username],
            reviews=[r for r in self.reviews if r.username == username],
        )

    @property
    def is_empty(self) -> bool:
        return not (self.acceptances or self.submissions or self.reviews)

    def versions(self) -> dict[str, datetime]:
        """Newest ``updated_at`` per acceptance id across all its records."""
        result: dict[str, datetime] = {}
        records: list[Any] = [*self.submissions, *self.reviews]
        for acceptance in self.acceptances:
            _bump(result, acceptance.id, acceptance.updated_at)
        for record in records:
            _bump(result, record.acceptance_id, record.updated_at)
        return result


def _bump(versions: dict[str, datetime], acceptance_id: str, stamp: datetime) -> None:
    current = versions.get(acceptance_id)
    if current is None or stamp > current:
        versions[acceptance_id] = stamp


_IN_REVIEW = frozenset({
    AcceptanceStatus.SUBMITTED,
    AcceptanceStatus.PENDING_REVIEW,
    AcceptanceStatus.UNDER_REVIEW,
})


def _same_status(stored: AcceptanceStatus | None, expected: AcceptanceStatus | None) -> bool:
    if stored == expected:
        return True
    return stored in _IN_REVIEW and expected in _IN_REVIEW


def check_preconditions(
    mutation: EngagementMutation,
    stored: dict[str, Acceptance],
    user_acceptances: list[Acceptance],
) -> None:
    """Refuse a mutation validated against records that have since changed.

    Args:
        mutation: The mutation about to be written
        stored: The store's current acceptances, keyed by id
        user_acceptances: Every acceptance the store holds for the user

    Raises:
        StaleWriteError: If an expected status no longer holds, or an accept
            would give the user a second active engagement
    """
    stale = sorted(
        acceptance_id
        for acceptance_id, expected in mutation.expected_statuses.items()
        if not _same_status(
            stored[acceptance_id].status if acceptance_id in stored else None,
            expected,
        )
    )
    if stale:
        raise StaleWriteError(
            f"Records changed since operation '{mutation.operation_id}' was prepared",
            acceptance_ids=stale,
        )

    if mutation.kind != MutationKind.ACCEPT:
        return
    incoming = {a.id for a in mutation.acceptances}
    others = sorted(
        a.id for a in user_acceptances
        if a.status.is_active and a.id not in incoming
    )
    if others:
        raise StaleWriteError(
            f"User '{mutation.username}' already holds an active engagement",
            acceptance_ids=others,
        )


def filter_records(
    records: list[Any],
    username: str | None = None,
    challenge_id: str | None = None,
) -> list[Any]:
    """Filter records by username and challenge id when given."""
    result = records
    if username is not None:
        result = [r for r in result if r.username == username]
    if challenge_id is not None:
        result = [r for r in result if r.challenge_id == challenge_id]
    return result


class EngagementStore(ABC):
    """Abstract engagement store.

    Recommended indexes for persistent implementations:
        - acceptances: (username), (challenge_id), (username, challenge_id)
        - submissions / reviews: primary key acceptance_id, (username)
    """

    @abstractmethod
    async def get_acceptance(self, acceptance_id: str) -> Acceptance | None:
        """Get an acceptance by id."""

    @abstractmethod
    async def list_acceptances(
        self,
        username: str | None = None,
        challenge_id: str | None = None,
    ) -> list[Acceptance]:
        """List acceptances, optionally by user and/or challenge."""

    @abstractmethod
    async def get_submission(self, acceptance_id: str) -> Submission | None:
        """Get the submission of an engagement."""

    @abstractmethod
    async def list_submissions(
        self,
        username: str | None = None,
        challenge_id: str | None = None,
    ) -> list[Submission]:
        """List submissions, optionally by user and/or challenge."""

    @abstractmethod
    async def get_review(self, acceptance_id: str) -> Review | None:
        """Get the review of an engagement."""

    @abstractmethod
    async def list_reviews(
        self,
        username: str | None = None,
        challenge_id: str | None = None,
        status: ReviewStatus | None = None,
    ) -> list[Review]:
        """List reviews, optionally by user, challenge and status."""

    @abstractmethod
    async def apply(self, mutation: EngagementMutation) -> EngagementSnapshot:
        """Apply a mutation atomically.

        Re-applying an already applied ``operation_id`` is a no-op.

        Returns:
            The touched records as the store now holds them
        """

    @abstractmethod
    async def snapshot(self, username: str | None = None) -> EngagementSnapshot:
        """Return all records, or those of one user."""

    async def ping(self) -> bool:
        """Check that the store is reachable."""
        return True

    async def close(self) -> None:
        """Release any held resources."""
        return None


__all__ = [
    "EngagementMutation",
    "EngagementSnapshot",
    "EngagementStore",
    "check_preconditions",
    "filter_records",
    "make_operation_id",
]
