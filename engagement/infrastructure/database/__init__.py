"""SQL persistence for the authoritative engagement store."""

from engagement.infrastructure.database.models import Base
from engagement.infrastructure.database.session import (
    create_engine,
    create_session_factory,
    create_tables,
    get_db_session,
)

__all__ = [
    "Base",
    "create_engine",
    "create_session_factory",
    "create_tables",
    "get_db_session",
]
