"""Test data factories for the engagement package."""

from tests.factories.engagement_factory import (
    AcceptanceFactory,
    ChallengeFactory,
    FlakyEngagementStore,
    ReviewFactory,
    SubmissionFactory,
    snapshot_of,
)

__all__ = [
    "AcceptanceFactory",
    "ChallengeFactory",
    "FlakyEngagementStore",
    "ReviewFactory",
    "SubmissionFactory",
    "snapshot_of",
]
