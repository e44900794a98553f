"""In-memory engagement store.

Serves as the local optimistic cache. Reads are synchronous dict lookups
so callers never wait on the network; the async interface delegates to
them. Also usable as a stand-in authority in tests.
"""

from datetime import datetime
from typing import Any

from engagement.challenges.schemas import Acceptance, Review, Submission
from engagement.repositories.base import (
    EngagementMutation,
    EngagementSnapshot,
    EngagementStore,
    check_preconditions,
    filter_records,
)
from engagement.shared.schemas.base import ReviewStatus
from engagement.shared.utils.datetime_utils import next_timestamp, utcnow
from engagement.shared.utils.logging import get_logger

logger = get_logger(__name__)


class InMemoryEngagementStore(EngagementStore):
    """Dict-backed store keyed by acceptance id."""

    def __init__(self, snapshot: EngagementSnapshot | None = None) -> None:
        self._acceptances: dict[str, Acceptance] = {}
        self._submissions: dict[str, Submission] = {}
        self._reviews: dict[str, Review] = {}
        self._applied_operations: set[str] = set()
        self._audit_log: list[dict[str, Any]] = []
        self._last_stamp: datetime | None = None
        if snapshot is not None:
            self.load(snapshot)

    # ===========================================
    # SYNCHRONOUS READS
    # ===========================================

    def find_acceptance(self, acceptance_id: str) -> Acceptance | None:
        return self._acceptances.get(acceptance_id)

    def find_acceptances(
        self,
        username: str | None = None,
        challenge_id: str | None = None,
    ) -> list[Acceptance]:
        return filter_records(list(self._acceptances.values()), username, challenge_id)

    def find_submission(self, acceptance_id: str) -> Submission | None:
        return self._submissions.get(acceptance_id)

    def find_submissions(
        self,
        username: str | None = None,
        challenge_id: str | None = None,
    ) -> list[Submission]:
        return filter_records(list(self._submissions.values()), username, challenge_id)

    def find_review(self, acceptance_id: str) -> Review | None:
        return self._reviews.get(acceptance_id)

    def find_reviews(
        self,
        username: str | None = None,
        challenge_id: str | None = None,
        status: ReviewStatus | None = None,
    ) -> list[Review]:
        reviews = filter_records(list(self._reviews.values()), username, challenge_id)
        if status is not None:
            reviews = [r for r in reviews if r.status == status]
        return reviews

    def snapshot_now(self, username: str | None = None) -> EngagementSnapshot:
        """Copy of the current records, optionally for one user."""
        snapshot = EngagementSnapshot(
            acceptances=list(self._acceptances.values()),
            submissions=list(self._submissions.values()),
            reviews=list(self._reviews.values()),
        )
        if username is not None:
            return snapshot.for_user(username)
        return snapshot

    def has_applied(self, operation_id: str) -> bool:
        return operation_id in self._applied_operations

    def known_usernames(self) -> list[str]:
        """Users with at least one cached record."""
        names = {a.username for a in self._acceptances.values()}
        names.update(s.username for s in self._submissions.values())
        names.update(r.username for r in self._reviews.values())
        return sorted(names)

    @property
    def audit_log(self) -> list[dict[str, Any]]:
        return list(self._audit_log)

    # ===========================================
    # SYNCHRONOUS WRITES
    # ===========================================

    def apply_now(self, mutation: EngagementMutation) -> EngagementSnapshot:
        """Apply a mutation without yielding to the event loop.

        All record changes are staged on copies and swapped in together.

        Raises:
            StaleWriteError: If the mutation's expected statuses no longer hold
        """
        touched = mutation.acceptance_ids

        if mutation.operation_id in self._applied_operations:
            logger.debug(
                "mutation_already_applied",
                operation_id=mutation.operation_id,
            )
            return self.snapshot_now().for_acceptances(touched)

        check_preconditions(
            mutation,
            self._acceptances,
            self.find_acceptances(username=mutation.username),
        )

        self._last_stamp = next_timestamp(self._last_stamp)
        stamp = {"updated_at": self._last_stamp}

        acceptances = dict(self._acceptances)
        submissions = dict(self._submissions)
        reviews = dict(self._reviews)

        for acceptance_id in mutation.deleted_submissions:
            submissions.pop(acceptance_id, None)
        for acceptance_id in mutation.deleted_reviews:
            reviews.pop(acceptance_id, None)
        for acceptance in mutation.acceptances:
            acceptances[acceptance.id] = acceptance.model_copy(update=stamp)
        for submission in mutation.submissions:
            submissions[submission.acceptance_id] = submission.model_copy(update=stamp)
        for review in mutation.reviews:
            reviews[review.acceptance_id] = review.model_copy(update=stamp)

        self._acceptances = acceptances
        self._submissions = submissions
        self._reviews = reviews
        self._applied_operations.add(mutation.operation_id)

        if mutation.audit is not None:
            self._audit_log.append({
                "operation_id": mutation.operation_id,
                "kind": mutation.kind.value,
                "username": mutation.username,
                "challenge_id": mutation.challenge_id,
                "recorded_at": utcnow().isoformat(),
                **mutation.audit,
            })

        return self.snapshot_now().for_acceptances(touched)

    def overwrite(self, acceptance_ids: set[str], snapshot: EngagementSnapshot) -> None:
        """Replace the records of the given acceptances with ``snapshot``'s.

        Records absent from the snapshot are removed.
        """
        scoped = snapshot.for_acceptances(acceptance_ids)
        acceptances = {k: v for k, v in self._acceptances.items() if k not in acceptance_ids}
        submissions = {k: v for k, v in self._submissions.items() if k not in acceptance_ids}
        reviews = {k: v for k, v in self._reviews.items() if k not in acceptance_ids}

        acceptances.update({a.id: a for a in scoped.acceptances})
        submissions.update({s.acceptance_id: s for s in scoped.submissions})
        reviews.update({r.acceptance_id: r for r in scoped.reviews})

        self._acceptances = acceptances
        self._submissions = submissions
        self._reviews = reviews
        self._track_stamps(scoped)

    def replace_user(
        self,
        username: str,
        snapshot: EngagementSnapshot,
        keep_acceptance_ids: set[str] | None = None,
    ) -> None:
        """Replace a user's records with ``snapshot``, keeping the given ids."""
        keep = keep_acceptance_ids or set()
        current = {a.id for a in self._acceptances.values() if a.username == username}
        current.update(s.acceptance_id for s in self._submissions.values() if s.username == username)
        current.update(r.acceptance_id for r in self._reviews.values() if r.username == username)

        remote = snapshot.for_user(username)
        incoming = {a.id for a in remote.acceptances}
        incoming.update(s.acceptance_id for s in remote.submissions)
        incoming.update(r.acceptance_id for r in remote.reviews)

        self.overwrite((current | incoming) - keep, remote)

    def load(self, snapshot: EngagementSnapshot) -> None:
        """Replace every record with the snapshot's."""
        self._acceptances = {a.id: a for a in snapshot.acceptances}
        self._submissions = {s.acceptance_id: s for s in snapshot.submissions}
        self._reviews = {r.acceptance_id: r for r in snapshot.reviews}
        self._track_stamps(snapshot)

    def _track_stamps(self, snapshot: EngagementSnapshot) -> None:
        stamps = [a.updated_at for a in snapshot.acceptances]
        stamps.extend(s.updated_at for s in snapshot.submissions)
        stamps.extend(r.updated_at for r in snapshot.reviews)
        if self._last_stamp is not None:
            stamps.append(self._last_stamp)
        if stamps:
            self._last_stamp = max(stamps)

    # ===========================================
    # ASYNC INTERFACE
    # ===========================================

    async def get_acceptance(self, acceptance_id: str) -> Acceptance | None:
        return self.find_acceptance(acceptance_id)

    async def list_acceptances(
        self,
        username: str | None = None,
        challenge_id: str | None = None,
    ) -> list[Acceptance]:
        return self.find_acceptances(username, challenge_id)

    async def get_submission(self, acceptance_id: str) -> Submission | None:
        return self.find_submission(acceptance_id)

    async def list_submissions(
        self,
        username: str | None = None,
        challenge_id: str | None = None,
    ) -> list[Submission]:
        return self.find_submissions(username, challenge_id)

    async def get_review(self, acceptance_id: str) -> Review | None:
        return self.find_review(acceptance_id)

    async def list_reviews(
        self,
        username: str | None = None,
        challenge_id: str | None = None,
        status: ReviewStatus | None = None,
    ) -> list[Review]:
        return self.find_reviews(username, challenge_id, status)

    async def apply(self, mutation: EngagementMutation) -> EngagementSnapshot:
        return self.apply_now(mutation)

    async def snapshot(self, username: str | None = None) -> EngagementSnapshot:
        return self.snapshot_now(username)


__all__ = ["InMemoryEngagementStore"]
