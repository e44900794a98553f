"""Repository layer for engagement records.

Provides the store interface and its local, SQL and HTTP implementations.
"""

from engagement.repositories.base import (
    EngagementMutation,
    EngagementSnapshot,
    EngagementStore,
    make_operation_id,
)
from engagement.repositories.exceptions import (
    RemoteRejectedError,
    RepositoryError,
    StaleWriteError,
    StoreConnectionError,
    StoreTimeoutError,
    TransientStoreError,
)
from engagement.repositories.memory import InMemoryEngagementStore
from engagement.repositories.resilience import RetryConfig

__all__ = [
    "EngagementMutation",
    "EngagementSnapshot",
    "EngagementStore",
    "InMemoryEngagementStore",
    "RemoteRejectedError",
    "RepositoryError",
    "RetryConfig",
    "StaleWriteError",
    "StoreConnectionError",
    "StoreTimeoutError",
    "TransientStoreError",
    "make_operation_id",
]
