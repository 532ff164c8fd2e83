"""
Database utilities and session management.

FastAPI dependencies live in ``studyflow.db.deps`` (import it directly; it
depends on the job store, which depends on the models).
"""

from studyflow.db.base import Base, BaseModel, JSONType, utcnow
from studyflow.db.session import (
    check_db_health,
    close_db,
    create_engine,
    create_session_factory,
    init_db,
    worker_session_factory,
)

__all__ = [
    # Base classes
    "Base",
    "BaseModel",
    "JSONType",
    "utcnow",
    # Session management
    "create_engine",
    "create_session_factory",
    "worker_session_factory",
    "init_db",
    "close_db",
    "check_db_health",
]
