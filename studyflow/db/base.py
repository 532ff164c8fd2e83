"""
Database Base Classes and Common Utilities

Foundation for every table in the pipeline:

1. ``Base``: SQLAlchemy declarative base bound to a metadata object with a
   constraint naming convention (keeps Alembic diffs stable).
2. ``CommonTableAttributes``: id / created_at / updated_at shared by all rows.
3. Portable column types: the job store runs on PostgreSQL in production,
   but the same models must create cleanly on SQLite for the test suite, so
   JSON columns use JSONB only on PostgreSQL.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, MetaData, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, registry


# ================================
# Naming Convention for Constraints
# ================================
# ix_pipeline_jobs_status, fk_document_sections_content_unit_id_content_units, ...
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)

orm_registry = registry(metadata=metadata)


def utcnow() -> datetime:
    """Timezone-aware current time. All timestamps are stored in UTC."""
    return datetime.now(timezone.utc)


# ================================
# Base DeclarativeBase Class
# ================================
class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    Usage:
        class Job(Base):
            __tablename__ = "pipeline_jobs"
            id: Mapped[int] = mapped_column(primary_key=True)
    """

    registry = orm_registry
    metadata = metadata

    __tablename__: str


# ================================
# Common Table Attributes Mixin
# ================================
class CommonTableAttributes:
    """
    Mixin adding the columns every table carries.

    - id: auto-incrementing integer primary key
    - created_at: set once on insert (UTC)
    - updated_at: refreshed on every ORM update (UTC)

    Bulk ``update()`` statements bypass ``onupdate`` hooks, so the job store
    sets ``updated_at`` explicitly in every conditional update; the orphan
    sweep relies on it.
    """

    id: Mapped[int] = mapped_column(
        primary_key=True,
        autoincrement=True,
        comment="Auto-incrementing primary key"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        comment="Timestamp when record was created (UTC)"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
        comment="Timestamp when record was last updated (UTC)"
    )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self.id})"

    def dict(self) -> dict[str, Any]:
        """Column values as a plain dictionary (debugging and API responses)."""
        return {
            column.name: getattr(self, column.name)
            for column in self.__table__.columns
        }


# ================================
# Convenient Base Model
# ================================
class BaseModel(Base, CommonTableAttributes):
    """Abstract base: ``class Job(BaseModel): __tablename__ = ...``"""

    __abstract__ = True


# ================================
# Column Types
# ================================
# JSONB on PostgreSQL (indexable, binary), plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

String20 = String(20)  # status / enum values
String50 = String(50)
String100 = String(100)
String255 = String(255)  # titles, dedupe keys, worker ids
String1000 = String(1000)  # storage paths
