"""Detection and repair of broken engagement invariants.

Three kinds of damage are recognized in loaded data:

- an acceptance whose status disagrees with its finalized review; the
  review's outcome is mirrored back onto the acceptance
- submission or review records whose acceptance is missing or withdrawn;
  they are deleted
- a user holding more than one active acceptance; the most recently
  updated one is kept and the others are force-withdrawn

Broken data is never corrected silently: each violation is logged as an
error and repaired through a regular mutation that carries the decision
as an audit entry.
"""

from collections import defaultdict

from engagement.challenges.exceptions import ConsistencyViolation
from engagement.challenges.schemas import Acceptance
from engagement.challenges.state_machine import find_active
from engagement.reconciliation.reconciler import Reconciler
from engagement.repositories.base import (
    EngagementMutation,
    EngagementSnapshot,
    make_operation_id,
)
from engagement.repositories.exceptions import RemoteRejectedError
from engagement.shared.schemas.base import (
    AcceptanceStatus,
    MutationKind,
    SyncState,
    ViolationKind,
)
from engagement.shared.utils.datetime_utils import utcnow
from engagement.shared.utils.logging import get_logger

logger = get_logger(__name__)

REPAIR_ACTOR = "system"


def _mirror_violations(snapshot: EngagementSnapshot) -> list[ConsistencyViolation]:
    reviews = {r.acceptance_id: r for r in snapshot.reviews}
    violations = []
    for acceptance in sorted(snapshot.acceptances, key=lambda a: a.id):
        review = reviews.get(acceptance.id)
        if review is None or not review.is_finalized:
            continue
        if acceptance.status == AcceptanceStatus.WITHDRAWN:
            continue
        mirrored = AcceptanceStatus(review.status.value)
        if acceptance.status != mirrored:
            violations.append(ConsistencyViolation(
                username=acceptance.username,
                acceptance_ids=[acceptance.id],
                kind=ViolationKind.REVIEW_MISMATCH,
                mirrored_status=mirrored,
                challenge_id=acceptance.challenge_id,
            ))
    return violations


def _orphan_violations(snapshot: EngagementSnapshot) -> list[ConsistencyViolation]:
    live = {
        a.id for a in snapshot.acceptances
        if a.status != AcceptanceStatus.WITHDRAWN
    }
    orphans: dict[str, tuple[str, str]] = {}
    for record in [*snapshot.submissions, *snapshot.reviews]:
        if record.acceptance_id not in live:
            orphans[record.acceptance_id] = (record.username, record.challenge_id)
    return [
        ConsistencyViolation(
            username=username,
            acceptance_ids=[acceptance_id],
            kind=ViolationKind.ORPHANED_RECORDS,
            challenge_id=challenge_id,
        )
        for acceptance_id, (username, challenge_id) in sorted(orphans.items())
    ]


def find_violations(snapshot: EngagementSnapshot) -> list[ConsistencyViolation]:
    """Every broken invariant in ``snapshot``, in the order to repair them.

    Multiple active acceptances are judged on statuses as they will be once
    review mismatches are mirrored.
    """
    mismatches = _mirror_violations(snapshot)
    orphans = _orphan_violations(snapshot)

    mirrored = {v.acceptance_ids[0]: v.mirrored_status for v in mismatches}
    by_user: dict[str, list[Acceptance]] = defaultdict(list)
    for acceptance in snapshot.acceptances:
        if acceptance.id in mirrored:
            acceptance = acceptance.model_copy(update={"status": mirrored[acceptance.id]})
        by_user[acceptance.username].append(acceptance)

    multiple = []
    for username in sorted(by_user):
        active = find_active(by_user[username], username)
        if len(active) > 1:
            multiple.append(ConsistencyViolation(
                username=username,
                acceptance_ids=[a.id for a in active],
                kind=ViolationKind.MULTIPLE_ACTIVE,
                kept_acceptance_id=active[0].id,
                challenge_id=active[0].challenge_id,
            ))

    return mismatches + orphans + multiple


class ConsistencyChecker:
    """Finds and repairs broken engagement invariants."""

    def __init__(self, reconciler: Reconciler) -> None:
        self._reconciler = reconciler

    def check(self, username: str | None = None) -> list[ConsistencyViolation]:
        """Report violations in the local cache without changing anything."""
        return find_violations(self._reconciler.local.snapshot_now(username))

    async def check_and_repair(self, username: str | None = None) -> list[ConsistencyViolation]:
        """Repair every violation found in the local cache.

        A repair the authority refuses is logged and skipped; the refusal
        already refreshed the affected records.

        Returns:
            The violations that were repaired
        """
        repaired = []
        for violation in self.check(username):
            try:
                await self.repair(violation)
            except RemoteRejectedError as e:
                logger.error(
                    "consistency_repair_rejected",
                    username=violation.username,
                    kind=violation.kind.value,
                    acceptance_ids=violation.acceptance_ids,
                    status_code=e.status_code,
                )
                continue
            repaired.append(violation)
        return repaired

    async def repair(self, violation: ConsistencyViolation) -> SyncState:
        """Write the fix for one violation through the reconciler.

        Raises:
            RemoteRejectedError: If the authority refused the repair
        """
        logger.error(
            "consistency_violation",
            username=violation.username,
            kind=violation.kind.value,
            acceptance_ids=violation.acceptance_ids,
            kept_acceptance_id=violation.kept_acceptance_id,
        )

        if violation.kind == ViolationKind.REVIEW_MISMATCH:
            mutation = self._mirror_review(violation)
        elif violation.kind == ViolationKind.ORPHANED_RECORDS:
            mutation = self._drop_orphans(violation)
        else:
            mutation = self._withdraw_extras(violation)

        sync_state = await self._reconciler.apply(mutation)
        logger.info(
            "consistency_repaired",
            username=violation.username,
            kind=violation.kind.value,
            operation_id=mutation.operation_id,
            sync_state=sync_state.value,
        )
        return sync_state

    def _mirror_review(self, violation: ConsistencyViolation) -> EngagementMutation:
        acceptance = self._reconciler.local.find_acceptance(violation.acceptance_ids[0])
        status = violation.mirrored_status
        return EngagementMutation(
            operation_id=make_operation_id(
                violation.username,
                acceptance.challenge_id,
                MutationKind.REPAIR,
                f"mirror:{acceptance.id}:{status.value}",
            ),
            kind=MutationKind.REPAIR,
            username=violation.username,
            challenge_id=acceptance.challenge_id,
            acceptances=[acceptance.model_copy(update={"status": status})],
            expected_statuses={acceptance.id: acceptance.status},
            audit={
                "reason": ViolationKind.REVIEW_MISMATCH.value,
                "acceptance_id": acceptance.id,
                "previous_status": acceptance.status.value,
                "mirrored_status": status.value,
            },
        )

    def _drop_orphans(self, violation: ConsistencyViolation) -> EngagementMutation:
        local = self._reconciler.local
        acceptance_id = violation.acceptance_ids[0]
        acceptance = local.find_acceptance(acceptance_id)
        return EngagementMutation(
            operation_id=make_operation_id(
                violation.username,
                violation.challenge_id,
                MutationKind.REPAIR,
                f"orphans:{acceptance_id}",
            ),
            kind=MutationKind.REPAIR,
            username=violation.username,
            challenge_id=violation.challenge_id,
            deleted_submissions=[acceptance_id] if local.find_submission(acceptance_id) else [],
            deleted_reviews=[acceptance_id] if local.find_review(acceptance_id) else [],
            expected_statuses={acceptance_id: acceptance.status if acceptance else None},
            audit={
                "reason": ViolationKind.ORPHANED_RECORDS.value,
                "acceptance_id": acceptance_id,
                "acceptance_status": acceptance.status.value if acceptance else None,
            },
        )

    def _withdraw_extras(self, violation: ConsistencyViolation) -> EngagementMutation:
        local = self._reconciler.local
        extras = [
            local.find_acceptance(acceptance_id)
            for acceptance_id in violation.acceptance_ids
            if acceptance_id != violation.kept_acceptance_id
        ]
        extras = [a for a in extras if a is not None]
        withdrawn_ids = [a.id for a in extras]

        now = utcnow()
        withdrawn = [
            acceptance.model_copy(update={
                "status": AcceptanceStatus.WITHDRAWN,
                "withdrawn_at": now,
                "withdrawn_by": REPAIR_ACTOR,
            })
            for acceptance in extras
        ]
        return EngagementMutation(
            operation_id=make_operation_id(
                violation.username,
                violation.challenge_id,
                MutationKind.REPAIR,
                ",".join(sorted(withdrawn_ids)),
            ),
            kind=MutationKind.REPAIR,
            username=violation.username,
            challenge_id=violation.challenge_id,
            acceptances=withdrawn,
            deleted_submissions=withdrawn_ids,
            deleted_reviews=withdrawn_ids,
            expected_statuses={a.id: a.status for a in extras},
            audit={
                "reason": ViolationKind.MULTIPLE_ACTIVE.value,
                "kept_acceptance_id": violation.kept_acceptance_id,
                "withdrawn_acceptance_ids": withdrawn_ids,
                "withdrawn_challenge_ids": [a.challenge_id for a in extras],
            },
        )


__all__ = ["REPAIR_ACTOR", "ConsistencyChecker", "find_violations"]
