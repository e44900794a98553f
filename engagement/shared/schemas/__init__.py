from engagement.shared.schemas.base import (
    ACTIVE_STATUSES,
    MUTATION_CHANGE_KINDS,
    TERMINAL_STATUSES,
    AcceptanceStatus,
    BaseSchema,
    ChangeKind,
    EffectiveStatus,
    MutationKind,
    ReviewDecision,
    ReviewStatus,
    SyncState,
    UserRole,
)

__all__ = [
    "ACTIVE_STATUSES",
    "MUTATION_CHANGE_KINDS",
    "TERMINAL_STATUSES",
    "AcceptanceStatus",
    "BaseSchema",
    "ChangeKind",
    "EffectiveStatus",
    "MutationKind",
    "ReviewDecision",
    "ReviewStatus",
    "SyncState",
    "UserRole",
]
