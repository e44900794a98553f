"""Global pytest fixtures for the engagement package.

This module provides shared fixtures for testing including:
- Settings with zero retry delays
- Challenge catalog and identity provider
- Local cache, flaky authority and reconciler
- Engagement service wired to all of the above
"""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from engagement.challenges.catalog import InMemoryChallengeCatalog, StaticIdentityProvider
from engagement.challenges.service import EngagementService
from engagement.config import EngagementSettings
from engagement.infrastructure.events import ChangeNotifier, EngagementEvent
from engagement.reconciliation.reconciler import Reconciler
from engagement.repositories.memory import InMemoryEngagementStore
from engagement.repositories.resilience import RetryConfig
from tests.factories import ChallengeFactory, FlakyEngagementStore

# ===========================================
# CONFIGURATION FIXTURES
# ===========================================


@pytest.fixture
def settings() -> EngagementSettings:
    """Settings with retries that never sleep."""
    return EngagementSettings(
        retry_max_attempts=3,
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        remote_timeout_seconds=1.0,
        local_cache_path=None,
        log_json=False,
    )


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(max_attempts=3, base_delay=0.0, max_delay=0.0)


# ===========================================
# COLLABORATOR FIXTURES
# ===========================================


@pytest.fixture
def catalog() -> InMemoryChallengeCatalog:
    return InMemoryChallengeCatalog([
        ChallengeFactory.create("c1", points=500, penalty_points=50),
        ChallengeFactory.create("c2", points=300, penalty_points=None),
        ChallengeFactory.create("c3", points=80, penalty_points=100),
    ])


@pytest.fixture
def identity() -> StaticIdentityProvider:
    return StaticIdentityProvider()


# ===========================================
# STORE FIXTURES
# ===========================================


@pytest.fixture
def local_store() -> InMemoryEngagementStore:
    return InMemoryEngagementStore()


@pytest.fixture
def remote_store() -> FlakyEngagementStore:
    return FlakyEngagementStore()


@pytest.fixture
def notifier() -> ChangeNotifier:
    return ChangeNotifier()


@pytest.fixture
def events(notifier: ChangeNotifier) -> list[EngagementEvent]:
    """Every event published through ``notifier``."""
    received: list[EngagementEvent] = []
    notifier.subscribe(received.append)
    return received


@pytest_asyncio.fixture
async def reconciler(
    local_store: InMemoryEngagementStore,
    remote_store: FlakyEngagementStore,
    notifier: ChangeNotifier,
    retry_config: RetryConfig,
) -> AsyncGenerator[Reconciler, None]:
    reconciler = Reconciler(
        local=local_store,
        remote=remote_store,
        notifier=notifier,
        retry_config=retry_config,
        timeout=1.0,
    )
    yield reconciler
    await reconciler.stop()


@pytest.fixture
def service(
    catalog: InMemoryChallengeCatalog,
    reconciler: Reconciler,
    settings: EngagementSettings,
) -> EngagementService:
    """Service without an identity provider (trusted caller)."""
    return EngagementService(catalog, reconciler, settings=settings)


@pytest.fixture
def guarded_service(
    catalog: InMemoryChallengeCatalog,
    reconciler: Reconciler,
    identity: StaticIdentityProvider,
    settings: EngagementSettings,
) -> EngagementService:
    """Service that authorizes every call against ``identity``."""
    return EngagementService(catalog, reconciler, identity_provider=identity, settings=settings)
