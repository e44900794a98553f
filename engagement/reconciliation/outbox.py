"""Outbox of mutations committed locally but not yet accepted remotely."""

from datetime import datetime

from pydantic import Field

from engagement.repositories.base import EngagementMutation
from engagement.shared.schemas.base import BaseSchema
from engagement.shared.utils.datetime_utils import utcnow


class PendingOperation(BaseSchema):
    """A parked mutation awaiting a successful remote write."""

    mutation: EngagementMutation
    attempts: int = 0
    last_error: str | None = None
    parked_at: datetime = Field(default_factory=utcnow)
    last_attempt_at: datetime | None = None

    @property
    def operation_id(self) -> str:
        return self.mutation.operation_id

    @property
    def username(self) -> str:
        return self.mutation.username


class Outbox:
    """Insertion-ordered set of pending operations keyed by operation id."""

    def __init__(self, operations: list[PendingOperation] | None = None) -> None:
        self._operations: dict[str, PendingOperation] = {}
        for operation in operations or []:
            self._operations[operation.operation_id] = operation

    def __len__(self) -> int:
        return len(self._operations)

    def __contains__(self, operation_id: object) -> bool:
        return operation_id in self._operations

    def park(
        self,
        mutation: EngagementMutation,
        attempts: int = 0,
        error: str | None = None,
    ) -> PendingOperation:
        """Add a mutation, or update its bookkeeping if already parked."""
        existing = self._operations.get(mutation.operation_id)
        if existing is not None:
            return self.record_attempt(mutation.operation_id, attempts, error)

        operation = PendingOperation(
            mutation=mutation,
            attempts=attempts,
            last_error=error,
            last_attempt_at=utcnow() if attempts else None,
        )
        self._operations[mutation.operation_id] = operation
        return operation

    def record_attempt(self, operation_id: str, attempts: int, error: str | None) -> PendingOperation:
        current = self._operations[operation_id]
        updated = current.model_copy(update={
            "attempts": current.attempts + attempts,
            "last_error": error,
            "last_attempt_at": utcnow(),
        })
        self._operations[operation_id] = updated
        return updated

    def remove(self, operation_id: str) -> PendingOperation | None:
        return self._operations.pop(operation_id, None)

    def pending(self, username: str | None = None) -> list[PendingOperation]:
        """Pending operations in the order they were parked."""
        operations = list(self._operations.values())
        if username is not None:
            operations = [o for o in operations if o.username == username]
        return operations

    def has_pending(self, username: str) -> bool:
        return any(o.username == username for o in self._operations.values())

    def unsynced_acceptance_ids(self, username: str | None = None) -> set[str]:
        """Acceptance ids touched by any pending operation."""
        ids: set[str] = set()
        for operation in self.pending(username):
            ids.update(operation.mutation.acceptance_ids)
        return ids

    def is_unsynced(self, acceptance_id: str) -> bool:
        return acceptance_id in self.unsynced_acceptance_ids()


__all__ = ["Outbox", "PendingOperation"]
