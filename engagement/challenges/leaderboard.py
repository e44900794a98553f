"""Points leaderboard derived from the local cache.

Totals use the same rule as ``points_earned``: the most recent finalized
review per (user, challenge) pair counts, earlier attempts do not. The
cached standings are invalidated by change notifications.
"""

from collections import defaultdict
from collections.abc import Callable
from datetime import date, datetime

from engagement.challenges.catalog import ChallengeCatalog
from engagement.challenges.schemas import LeaderboardEntry, Review
from engagement.challenges.scoring import (
    DEFAULT_PENALTY_POINTS,
    is_on_time,
    overdue_penalty,
)
from engagement.infrastructure.events import ChangeNotifier, EngagementEvent
from engagement.repositories.memory import InMemoryEngagementStore
from engagement.shared.schemas.base import ReviewStatus
from engagement.shared.utils.logging import get_logger

logger = get_logger(__name__)


def latest_finalized_reviews(reviews: list[Review]) -> dict[tuple[str, str], Review]:
    """Most recent finalized review per (username, challenge_id)."""
    latest: dict[tuple[str, str], Review] = {}
    for review in reviews:
        if not review.is_finalized:
            continue
        key = (review.username, review.challenge_id)
        current = latest.get(key)
        stamp = (review.reviewed_at or review.updated_at, review.updated_at)
        if current is None or stamp > (current.reviewed_at or current.updated_at, current.updated_at):
            latest[key] = review
    return latest


class Leaderboard:
    """Ranks users by earned points."""

    def __init__(
        self,
        store: InMemoryEngagementStore,
        catalog: ChallengeCatalog | None = None,
        default_penalty_points: int = DEFAULT_PENALTY_POINTS,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._default_penalty_points = default_penalty_points
        self._cached: list[LeaderboardEntry] | None = None
        self._version = 0

    @property
    def version(self) -> int:
        """Incremented on every change notification received."""
        return self._version

    def subscribe_to(self, notifier: ChangeNotifier) -> Callable[[], None]:
        return notifier.subscribe(self._on_change)

    def _on_change(self, event: EngagementEvent) -> None:
        self._cached = None
        self._version += 1
        logger.debug(
            "leaderboard_invalidated",
            username=event.username,
            challenge_id=event.challenge_id,
            kind=event.kind.value,
        )

    def standings(self, as_of: date | datetime | None = None) -> list[LeaderboardEntry]:
        """Current ranking, points descending then username.

        Args:
            as_of: When given, acceptances never submitted by their
                committed date are charged an overdue penalty
        """
        if as_of is None and self._cached is not None:
            return list(self._cached)

        entries = self._compute(as_of)
        if as_of is None:
            self._cached = entries
        return list(entries)

    def entry_for(self, username: str, as_of: date | datetime | None = None) -> LeaderboardEntry | None:
        return next((e for e in self.standings(as_of) if e.username == username), None)

    def _compute(self, as_of: date | datetime | None) -> list[LeaderboardEntry]:
        totals: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))

        for username in {a.username for a in self._store.find_acceptances()}:
            totals[username]["total_points"] = 0

        for (username, _), review in latest_finalized_reviews(self._store.find_reviews()).items():
            stats = totals[username]
            stats["total_points"] += review.points_awarded or 0
            if review.status == ReviewStatus.APPROVED:
                stats["approved_count"] += 1
                acceptance = self._store.find_acceptance(review.acceptance_id)
                submission = self._store.find_submission(review.acceptance_id)
                if acceptance and submission and not is_on_time(
                    acceptance.committed_date, submission.submitted_at
                ):
                    stats["late_count"] += 1
            elif review.status == ReviewStatus.NEEDS_REWORK:
                stats["rework_count"] += 1
            elif review.status == ReviewStatus.REJECTED:
                stats["rejected_count"] += 1

        if as_of is not None and self._catalog is not None:
            for acceptance in self._store.find_acceptances():
                challenge = self._catalog.get_challenge(acceptance.challenge_id)
                if challenge is None:
                    continue
                penalty = overdue_penalty(
                    challenge,
                    acceptance,
                    as_of,
                    default_penalty_points=self._default_penalty_points,
                )
                if penalty:
                    totals[acceptance.username]["total_points"] += penalty
                    totals[acceptance.username]["overdue_penalties"] += penalty

        ordered = sorted(totals.items(), key=lambda item: (-item[1]["total_points"], item[0]))
        return [
            LeaderboardEntry(
                rank=rank,
                username=username,
                total_points=stats["total_points"],
                approved_count=stats["approved_count"],
                rework_count=stats["rework_count"],
                rejected_count=stats["rejected_count"],
                late_count=stats["late_count"],
                overdue_penalties=stats["overdue_penalties"],
            )
            for rank, (username, stats) in enumerate(ordered, start=1)
        ]


__all__ = ["Leaderboard", "latest_finalized_reviews"]
