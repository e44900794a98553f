"""End-to-end engagement lifecycle over a local cache and a flaky authority.

Each scenario commits to 2024-01-10 on challenge c1 (500 points, 50 penalty).
"""

import random
from datetime import date, datetime, timezone

import pytest

from engagement.challenges.exceptions import AlreadyActiveError, EngagementError
from engagement.challenges.leaderboard import Leaderboard
from engagement.challenges.service import EngagementService
from engagement.infrastructure.events import ChangeNotifier
from engagement.reconciliation.consistency import ConsistencyChecker
from engagement.reconciliation.reconciler import Reconciler
from engagement.repositories.memory import InMemoryEngagementStore
from engagement.shared.schemas.base import (
    AcceptanceStatus,
    ChangeKind,
    EffectiveStatus,
    ReviewDecision,
    SyncState,
)

pytestmark = pytest.mark.integration

COMMITTED = date(2024, 1, 10)


def _at(day: int) -> datetime:
    return datetime(2024, 1, day, 12, 0, tzinfo=timezone.utc)


class TestScoringScenarios:
    @pytest.mark.asyncio
    async def test_on_time_approval(self, service):
        await service.accept("u1", "c1", COMMITTED)
        await service.submit("u1", "c1", {"short_description": "Done"}, submitted_at=_at(9))
        assert service.effective_status("u1", "c1") == EffectiveStatus.PENDING_REVIEW

        await service.review("u1", "c1", ReviewDecision.APPROVE, reviewer="boss")

        assert service.points_earned("u1", "c1") == 500
        assert service.effective_status("u1", "c1") == EffectiveStatus.APPROVED
        assert service.can_accept_new("u1") is True

    @pytest.mark.asyncio
    async def test_late_approval(self, service):
        await service.accept("u1", "c1", COMMITTED)
        await service.submit("u1", "c1", submitted_at=_at(12))
        await service.review("u1", "c1", ReviewDecision.APPROVE, reviewer="boss")

        assert service.points_earned("u1", "c1") == 450

    @pytest.mark.asyncio
    async def test_rework_with_override(self, service):
        await service.accept("u1", "c1", COMMITTED)
        await service.submit("u1", "c1", submitted_at=_at(9))
        await service.review(
            "u1", "c1", ReviewDecision.REQUEST_REWORK, "Add tests", penalty_override=120, reviewer="boss"
        )

        assert service.points_earned("u1", "c1") == 380
        assert service.effective_status("u1", "c1") == EffectiveStatus.NEEDS_REWORK
        assert service.can_accept_new("u1") is True

    @pytest.mark.asyncio
    async def test_second_active_engagement_refused(self, service):
        await service.accept("u1", "c1", COMMITTED)

        with pytest.raises(AlreadyActiveError):
            await service.accept("u1", "c2", COMMITTED)

        assert service.effective_status("u1", "c2") == EffectiveStatus.NOT_ACCEPTED


class TestRemoteOutage:
    @pytest.mark.asyncio
    async def test_submit_during_outage_survives_reload(self, service, reconciler, remote_store, events):
        await service.accept("u1", "c1", COMMITTED)
        remote_store.fail_next(3)

        result = await service.submit("u1", "c1", {"short_description": "Offline"}, submitted_at=_at(9))

        assert result.sync_state == SyncState.PENDING
        assert service.effective_status("u1", "c1") == EffectiveStatus.PENDING_REVIEW
        assert events[-1].kind == ChangeKind.SUBMITTED
        assert events[-1].sync_state == SyncState.PENDING
        acceptance_id = result.acceptance.id
        assert remote_store.find_acceptance(acceptance_id).status == AcceptanceStatus.ACCEPTED

        snapshot = await reconciler.reload("u1")

        assert len(reconciler.outbox) == 0
        remote_view = remote_store.snapshot_now("u1")
        assert remote_view.acceptances[0].status == AcceptanceStatus.SUBMITTED
        assert remote_store.find_submission(acceptance_id).short_description == "Offline"
        assert snapshot.acceptances == remote_view.acceptances
        assert snapshot.submissions == remote_view.submissions
        assert snapshot.reviews == remote_view.reviews
        assert service.effective_status("u1", "c1") == EffectiveStatus.PENDING_REVIEW

    @pytest.mark.asyncio
    async def test_review_after_outage_scores_offline_submission(self, service, reconciler, remote_store):
        await service.accept("u1", "c1", COMMITTED)
        remote_store.offline = True
        await service.submit("u1", "c1", submitted_at=_at(12))

        remote_store.offline = False
        result = await service.review("u1", "c1", ReviewDecision.APPROVE, reviewer="boss")

        assert result.sync_state == SyncState.SYNCED
        assert len(reconciler.outbox) == 0
        assert remote_store.find_review(result.acceptance.id).points_awarded == 450


class TestLeaderboardIntegration:
    @pytest.mark.asyncio
    async def test_leaderboard_tracks_mutations(self, service, reconciler, catalog):
        leaderboard = Leaderboard(reconciler.local, catalog)
        leaderboard.subscribe_to(reconciler.notifier)

        await service.accept("u1", "c1", COMMITTED)
        await service.submit("u1", "c1", submitted_at=_at(9))
        await service.review("u1", "c1", ReviewDecision.APPROVE, reviewer="boss")
        await service.accept("u2", "c2", COMMITTED)
        await service.submit("u2", "c2", submitted_at=_at(9))
        await service.review("u2", "c2", ReviewDecision.REJECT, reviewer="boss")

        standings = leaderboard.standings()

        assert [(e.username, e.total_points) for e in standings] == [("u1", 500), ("u2", 0)]
        assert leaderboard.version == 6


class TestSingleActiveEngagement:
    @pytest.mark.asyncio
    async def test_random_intent_sequences_never_break_invariant(self, service, reconciler, remote_store):
        rng = random.Random(20240110)
        users = ["u1", "u2", "u3"]
        challenges = ["c1", "c2", "c3"]
        decisions = list(ReviewDecision)

        for step in range(200):
            if step % 37 == 0:
                remote_store.offline = not remote_store.offline
            user = rng.choice(users)
            challenge_id = rng.choice(challenges)
            intent = rng.choice(["accept", "submit", "withdraw", "review"])
            try:
                if intent == "accept":
                    await service.accept(user, challenge_id, COMMITTED)
                elif intent == "submit":
                    await service.submit(user, challenge_id, submitted_at=_at(9))
                elif intent == "withdraw":
                    await service.withdraw(user, challenge_id)
                else:
                    await service.review(user, challenge_id, rng.choice(decisions), reviewer="boss")
            except EngagementError:
                pass

            for username in users:
                active = [a for a in reconciler.local.find_acceptances(username) if a.status.is_active]
                assert len(active) <= 1

        remote_store.offline = False
        assert await reconciler.check_connectivity() is True
        assert len(reconciler.outbox) == 0
        assert ConsistencyChecker(reconciler).check() == []
        remote_records = sorted(remote_store.find_acceptances(), key=lambda a: a.id)
        assert remote_records == sorted(reconciler.local.find_acceptances(), key=lambda a: a.id)


class TestTwoDevices:
    """Two caches for the same user sharing one authority."""

    @pytest.fixture
    def second_device(self, catalog, remote_store, retry_config, settings):
        reconciler = Reconciler(InMemoryEngagementStore(), remote_store, ChangeNotifier(), retry_config, timeout=1.0)
        return EngagementService(catalog, reconciler, settings=settings)

    @pytest.mark.asyncio
    async def test_parked_submit_cannot_resurrect_withdrawn(self, service, second_device, remote_store):
        accepted = await service.accept("u1", "c1", COMMITTED)
        acceptance_id = accepted.acceptance.id
        await second_device.reload("u1")

        remote_store.offline = True
        parked = await service.submit("u1", "c1", {"short_description": "Offline"}, submitted_at=_at(9))
        assert parked.sync_state == SyncState.PENDING
        remote_store.offline = False
        await second_device.withdraw("u1", "c1")

        assert await service.reconciler.flush_pending() == 0

        assert remote_store.find_acceptance(acceptance_id).status == AcceptanceStatus.WITHDRAWN
        assert remote_store.find_submission(acceptance_id) is None
        assert remote_store.find_review(acceptance_id) is None
        assert service.effective_status("u1", "c1") == EffectiveStatus.WITHDRAWN
        assert service.get_submission("u1", "c1") is None
        assert len(service.reconciler.outbox) == 0

    @pytest.mark.asyncio
    async def test_stale_accept_cannot_create_second_active(self, service, second_device, remote_store):
        remote_store.offline = True
        await service.accept("u1", "c1", COMMITTED)
        remote_store.offline = False
        await second_device.accept("u1", "c2", COMMITTED)

        await service.reconciler.flush_pending()

        active = [a for a in remote_store.find_acceptances("u1") if a.status.is_active]
        assert [a.challenge_id for a in active] == ["c2"]
        assert service.effective_status("u1", "c1") == EffectiveStatus.NOT_ACCEPTED

    @pytest.mark.asyncio
    async def test_background_sync_shows_review_from_elsewhere(self, service, second_device):
        await service.accept("u1", "c1", COMMITTED)
        await service.submit("u1", "c1", submitted_at=_at(9))
        await second_device.reload("u1")
        await second_device.review("u1", "c1", ReviewDecision.APPROVE, reviewer="boss")

        assert await service.reconciler.sync_once() is True

        assert service.effective_status("u1", "c1") == EffectiveStatus.APPROVED
        assert service.points_earned("u1", "c1") == 500
        assert service.can_accept_new("u1") is True
