"""Engagement service: the validating entry points for every intent.

Each mutating call validates against the local cache and hands a single
mutation to the reconciler without yielding in between, so the
read-check-write of one user's records is never interleaved with another
intent on the same event loop. Reads are served from the local cache only.
"""

from datetime import date, datetime
from typing import Any

from engagement.challenges.catalog import ChallengeCatalog, IdentityProvider
from engagement.challenges.exceptions import (
    ChallengeNotFoundError,
    ConsistencyViolation,
    NotAcceptedError,
    UnauthorizedError,
)
from engagement.challenges.schemas import (
    Acceptance,
    Challenge,
    Identity,
    MutationResult,
    PointsBreakdown,
    Review,
    Submission,
    SubmissionPayload,
    make_acceptance_id,
    make_submission_id,
)
from engagement.challenges.scoring import explain_score, score
from engagement.challenges.state_machine import (
    current_acceptance,
    derive_effective_status,
    ensure_can_accept,
    ensure_can_submit,
    ensure_pending_review,
    find_active,
    validate_transition,
)
from engagement.config import EngagementSettings, get_settings
from engagement.reconciliation.consistency import ConsistencyChecker
from engagement.reconciliation.reconciler import Reconciler
from engagement.repositories.base import EngagementMutation, make_operation_id
from engagement.shared.schemas.base import (
    AcceptanceStatus,
    EffectiveStatus,
    MutationKind,
    ReviewDecision,
    ReviewStatus,
)
from engagement.shared.utils.datetime_utils import to_date, utcnow
from engagement.shared.utils.logging import bind_actor_context, clear_actor_context, get_logger

logger = get_logger(__name__)

_REVIEW_STATUS_TO_DECISION = {
    ReviewStatus.APPROVED: ReviewDecision.APPROVE,
    ReviewStatus.REJECTED: ReviewDecision.REJECT,
    ReviewStatus.NEEDS_REWORK: ReviewDecision.REQUEST_REWORK,
}


class EngagementService:
    """Accept, submit, withdraw and review challenges for users."""

    def __init__(
        self,
        catalog: ChallengeCatalog,
        reconciler: Reconciler,
        identity_provider: IdentityProvider | None = None,
        settings: EngagementSettings | None = None,
    ) -> None:
        self._catalog = catalog
        self._reconciler = reconciler
        self._identity_provider = identity_provider
        self._settings = settings or get_settings()
        reconciler.add_pull_hook(self._repair)

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    # ===========================================
    # AUTHORIZATION
    # ===========================================

    def _actor(self) -> Identity | None:
        """Signed-in identity, or None when no provider is configured."""
        if self._identity_provider is None:
            return None
        identity = self._identity_provider.current_user()
        if identity is None:
            clear_actor_context()
            raise UnauthorizedError("No signed-in user")
        bind_actor_context(identity.username, identity.role.value)
        return identity

    def _authorize_self(self, username: str, challenge_id: str, allow_management: bool = False) -> Identity | None:
        identity = self._actor()
        if identity is None or identity.username == username:
            return identity
        if allow_management and identity.is_management:
            return identity
        raise UnauthorizedError(
            f"User '{identity.username}' may not act on behalf of '{username}'",
            username=username,
            challenge_id=challenge_id,
            actor=identity.username,
        )

    def _authorize_reviewer(self, username: str, challenge_id: str) -> Identity | None:
        identity = self._actor()
        if identity is not None and not identity.is_management:
            raise UnauthorizedError(
                f"User '{identity.username}' is not allowed to review submissions",
                username=username,
                challenge_id=challenge_id,
                actor=identity.username,
            )
        return identity

    def _require_challenge(self, challenge_id: str, username: str | None = None) -> Challenge:
        challenge = self._catalog.get_challenge(challenge_id)
        if challenge is None:
            raise ChallengeNotFoundError(
                f"Challenge '{challenge_id}' not found",
                username=username,
                challenge_id=challenge_id,
            )
        return challenge

    def _current(self, username: str, challenge_id: str) -> Acceptance | None:
        local = self._reconciler.local
        return current_acceptance(local.find_acceptances(username, challenge_id), username, challenge_id)

    # ===========================================
    # INTENTS
    # ===========================================

    async def accept(
        self,
        username: str,
        challenge_id: str,
        committed_date: date | datetime | str,
    ) -> MutationResult:
        """Commit a user to a challenge by a date.

        Raises:
            AlreadyActiveError: If the user already has an active engagement
            ChallengeNotFoundError: If the catalog does not know the challenge
        """
        self._authorize_self(username, challenge_id)
        self._require_challenge(challenge_id, username)
        ensure_can_accept(self._reconciler.local.find_acceptances(username=username), username, challenge_id)

        acceptance = Acceptance(
            id=make_acceptance_id(username, challenge_id),
            username=username,
            challenge_id=challenge_id,
            committed_date=to_date(committed_date),
        )
        mutation = EngagementMutation(
            operation_id=make_operation_id(username, challenge_id, MutationKind.ACCEPT, acceptance.id),
            kind=MutationKind.ACCEPT,
            username=username,
            challenge_id=challenge_id,
            acceptances=[acceptance],
            expected_statuses={acceptance.id: None},
        )
        result = await self._commit(mutation, acceptance.id)
        logger.info(
            "challenge_accepted",
            username=username,
            challenge_id=challenge_id,
            committed_date=acceptance.committed_date.isoformat(),
            sync_state=result.sync_state.value,
        )
        return result

    async def submit(
        self,
        username: str,
        challenge_id: str,
        payload: SubmissionPayload | dict[str, Any] | None = None,
        submitted_at: datetime | None = None,
    ) -> MutationResult:
        """Submit a solution and open its review.

        Raises:
            NotAcceptedError: Unless the current acceptance is Accepted
            DuplicateSubmissionError: If the engagement already has a submission
        """
        self._authorize_self(username, challenge_id)
        acceptance = self._current(username, challenge_id)
        existing = self._reconciler.local.find_submission(acceptance.id) if acceptance else None
        acceptance = ensure_can_submit(acceptance, existing, username, challenge_id)
        validate_transition(acceptance, AcceptanceStatus.SUBMITTED)

        if payload is None:
            payload = SubmissionPayload()
        elif isinstance(payload, dict):
            payload = SubmissionPayload.model_validate(payload)

        submission = Submission(
            **payload.model_dump(),
            acceptance_id=acceptance.id,
            username=username,
            challenge_id=challenge_id,
            submitted_at=submitted_at or utcnow(),
        )
        review = Review(
            acceptance_id=acceptance.id,
            submission_id=make_submission_id(username, challenge_id),
            username=username,
            challenge_id=challenge_id,
        )
        mutation = EngagementMutation(
            operation_id=make_operation_id(username, challenge_id, MutationKind.SUBMIT, acceptance.id),
            kind=MutationKind.SUBMIT,
            username=username,
            challenge_id=challenge_id,
            acceptances=[acceptance.model_copy(update={"status": AcceptanceStatus.SUBMITTED})],
            submissions=[submission],
            reviews=[review],
            expected_statuses={acceptance.id: acceptance.status},
        )
        result = await self._commit(mutation, acceptance.id)
        logger.info(
            "challenge_submitted",
            username=username,
            challenge_id=challenge_id,
            sync_state=result.sync_state.value,
        )
        return result

    async def withdraw(self, username: str, challenge_id: str) -> MutationResult:
        """Withdraw an active engagement, discarding its submission and review.

        Raises:
            NotAcceptedError: If the user never accepted the challenge
            InvalidTransitionError: If the engagement is no longer active
        """
        identity = self._authorize_self(username, challenge_id, allow_management=True)
        acceptance = self._current(username, challenge_id)
        if acceptance is None:
            raise NotAcceptedError(
                f"User '{username}' has not accepted challenge '{challenge_id}'",
                username=username,
                challenge_id=challenge_id,
            )
        validate_transition(acceptance, AcceptanceStatus.WITHDRAWN)

        withdrawn = acceptance.model_copy(update={
            "status": AcceptanceStatus.WITHDRAWN,
            "withdrawn_at": utcnow(),
            "withdrawn_by": identity.username if identity else username,
        })
        mutation = EngagementMutation(
            operation_id=make_operation_id(username, challenge_id, MutationKind.WITHDRAW, acceptance.id),
            kind=MutationKind.WITHDRAW,
            username=username,
            challenge_id=challenge_id,
            acceptances=[withdrawn],
            deleted_submissions=[acceptance.id],
            deleted_reviews=[acceptance.id],
            expected_statuses={acceptance.id: acceptance.status},
        )
        result = await self._commit(mutation, acceptance.id)
        logger.info(
            "challenge_withdrawn",
            username=username,
            challenge_id=challenge_id,
            withdrawn_by=withdrawn.withdrawn_by,
            sync_state=result.sync_state.value,
        )
        return result

    async def begin_review(self, username: str, challenge_id: str, reviewer: str | None = None) -> MutationResult:
        """Mark a pending review as started; reported as Under Review.

        Raises:
            UnauthorizedError: If the signed-in user is not Management
            NoPendingReviewError: If there is nothing pending to review
        """
        identity = self._authorize_reviewer(username, challenge_id)
        reviewer = identity.username if identity else reviewer
        if reviewer is None:
            raise UnauthorizedError(
                "A reviewer is required to start a review",
                username=username,
                challenge_id=challenge_id,
            )

        acceptance = self._current(username, challenge_id)
        local = self._reconciler.local
        review = local.find_review(acceptance.id) if acceptance else None
        submission = local.find_submission(acceptance.id) if acceptance else None
        review = ensure_pending_review(review, submission, username, challenge_id)

        started = review.model_copy(update={
            "review_started_by": reviewer,
            "review_started_at": utcnow(),
        })
        mutation = EngagementMutation(
            operation_id=make_operation_id(
                username, challenge_id, MutationKind.BEGIN_REVIEW, f"{acceptance.id}:{reviewer}"
            ),
            kind=MutationKind.BEGIN_REVIEW,
            username=username,
            challenge_id=challenge_id,
            reviews=[started],
            expected_statuses={acceptance.id: acceptance.status},
        )
        result = await self._commit(mutation, acceptance.id)
        logger.info(
            "review_started",
            username=username,
            challenge_id=challenge_id,
            reviewer=reviewer,
        )
        return result

    async def review(
        self,
        username: str,
        challenge_id: str,
        decision: ReviewDecision | str,
        comment: str | None = None,
        penalty_override: int | None = None,
        reviewer: str | None = None,
    ) -> MutationResult:
        """Finalize a pending review and mirror the outcome onto the acceptance.

        The review and the acceptance status are written by one mutation.

        Raises:
            UnauthorizedError: If the signed-in user is not Management
            NoPendingReviewError: Unless the review is Pending Review
            InvalidPenaltyError: If a rework ``penalty_override`` is negative
        """
        identity = self._authorize_reviewer(username, challenge_id)
        reviewer = identity.username if identity else reviewer
        decision = ReviewDecision(decision)
        challenge = self._require_challenge(challenge_id, username)

        acceptance = self._current(username, challenge_id)
        local = self._reconciler.local
        review = local.find_review(acceptance.id) if acceptance else None
        submission = local.find_submission(acceptance.id) if acceptance else None
        review = ensure_pending_review(review, submission, username, challenge_id)
        validate_transition(acceptance, decision.acceptance_status)

        if decision != ReviewDecision.REQUEST_REWORK:
            penalty_override = None
        points = score(
            challenge,
            acceptance,
            submission,
            decision,
            penalty_override,
            default_rework_penalty=self._settings.default_rework_penalty,
            default_penalty_points=self._settings.default_penalty_points,
        )
        finalized = review.model_copy(update={
            "status": decision.review_status,
            "reviewed_by": reviewer,
            "reviewed_at": utcnow(),
            "review_comment": comment,
            "points_awarded": points,
            "penalty_override": penalty_override,
        })
        mutation = EngagementMutation(
            operation_id=make_operation_id(username, challenge_id, MutationKind.REVIEW, acceptance.id),
            kind=MutationKind.REVIEW,
            username=username,
            challenge_id=challenge_id,
            acceptances=[acceptance.model_copy(update={"status": decision.acceptance_status})],
            reviews=[finalized],
            expected_statuses={acceptance.id: acceptance.status},
        )
        result = await self._commit(mutation, acceptance.id)
        logger.info(
            "challenge_reviewed",
            username=username,
            challenge_id=challenge_id,
            decision=decision.value,
            points_awarded=points,
            reviewer=reviewer,
            sync_state=result.sync_state.value,
        )
        return result

    async def _commit(self, mutation: EngagementMutation, acceptance_id: str) -> MutationResult:
        sync_state = await self._reconciler.apply(mutation)
        local = self._reconciler.local
        return MutationResult(
            kind=mutation.kind,
            username=mutation.username,
            challenge_id=mutation.challenge_id,
            operation_id=mutation.operation_id,
            sync_state=sync_state,
            acceptance=local.find_acceptance(acceptance_id),
            submission=local.find_submission(acceptance_id),
            review=local.find_review(acceptance_id),
        )

    async def reload(self, username: str) -> list[ConsistencyViolation]:
        """Refresh a user's records from the authority, then repair them.

        Returns:
            The violations found and repaired after the load
        """
        await self._reconciler.reload(username)
        return await self._repair(username)

    async def _repair(self, username: str) -> list[ConsistencyViolation]:
        return await ConsistencyChecker(self._reconciler).check_and_repair(username)

    # ===========================================
    # READS (local cache only)
    # ===========================================

    def effective_status(self, username: str, challenge_id: str) -> EffectiveStatus:
        acceptance = self._current(username, challenge_id)
        review = self._reconciler.local.find_review(acceptance.id) if acceptance else None
        return derive_effective_status(acceptance, review)

    def can_accept_new(self, username: str) -> bool:
        return not find_active(self._reconciler.local.find_acceptances(username=username), username)

    def get_active_engagement(self, username: str) -> Acceptance | None:
        active = find_active(self._reconciler.local.find_acceptances(username=username), username)
        return active[0] if active else None

    def list_acceptances(self, username: str | None = None) -> list[Acceptance]:
        acceptances = self._reconciler.local.find_acceptances(username=username)
        return sorted(acceptances, key=lambda a: (a.accepted_at, a.id))

    def get_submission(self, username: str, challenge_id: str) -> Submission | None:
        acceptance = self._current(username, challenge_id)
        return self._reconciler.local.find_submission(acceptance.id) if acceptance else None

    def _latest_finalized_review(self, username: str, challenge_id: str) -> Review | None:
        finalized = [
            r for r in self._reconciler.local.find_reviews(username, challenge_id)
            if r.is_finalized
        ]
        if not finalized:
            return None
        return max(finalized, key=lambda r: (r.reviewed_at or r.updated_at, r.updated_at))

    def points_earned(self, username: str, challenge_id: str) -> int:
        """Points of the most recent finalized review for the pair, else 0."""
        review = self._latest_finalized_review(username, challenge_id)
        if review is None or review.points_awarded is None:
            return 0
        return review.points_awarded

    def explain_points(self, username: str, challenge_id: str) -> PointsBreakdown | None:
        """Recompute and describe the latest finalized score for the pair."""
        review = self._latest_finalized_review(username, challenge_id)
        if review is None:
            return None
        local = self._reconciler.local
        acceptance = local.find_acceptance(review.acceptance_id)
        submission = local.find_submission(review.acceptance_id)
        if acceptance is None or submission is None:
            return None
        return explain_score(
            self._require_challenge(challenge_id, username),
            acceptance,
            submission,
            _REVIEW_STATUS_TO_DECISION[review.status],
            review.penalty_override,
            default_rework_penalty=self._settings.default_rework_penalty,
            default_penalty_points=self._settings.default_penalty_points,
        )

    def list_pending_reviews(self) -> list[Review]:
        """Reviews awaiting a decision, oldest first."""
        pending = self._reconciler.local.find_reviews(status=ReviewStatus.PENDING_REVIEW)
        return sorted(pending, key=lambda r: r.updated_at)

    def list_reviews(
        self,
        username: str | None = None,
        challenge_id: str | None = None,
        status: ReviewStatus | None = None,
    ) -> list[Review]:
        reviews = self._reconciler.local.find_reviews(username, challenge_id, status)
        return sorted(reviews, key=lambda r: r.updated_at, reverse=True)


__all__ = ["EngagementService"]
