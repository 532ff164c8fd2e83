"""
Content Models

Tables holding what the pipeline ingests and derives:

1. ContentUnit      - one logical study item (lesson) and its aggregate status
2. SourceFile       - an uploaded document/audio/image registered for a unit
3. DocumentSection  - a chunk of extracted text with its embedding
4. StageOutput      - structured results of segment/analyze/quiz stages

Everything below ContentUnit is derived state: purging a unit deletes its
source files, sections, outputs and jobs but keeps the unit row.
"""

import enum
from typing import Any, Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from studyflow.core.config import settings
from studyflow.db.base import BaseModel, JSONType, String20, String50, String255, String1000


# ================================
# Enums
# ================================

class ContentUnitStatus(str, enum.Enum):
    """
    Aggregate status of a content unit.

    PENDING → PROCESSING → EMBEDDED → COMPLETED
                  ↘ FAILED (any stage exhausted or permanently failed)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    EMBEDDED = "embedded"
    COMPLETED = "completed"
    FAILED = "failed"


class PipelineStage(str, enum.Enum):
    """Fine-grained stage marker shown to users and operators."""

    QUEUED = "queued"
    EXTRACTING_TEXT = "extracting_text"
    EMBEDDING = "embedding"
    SEGMENTING_CONTENT = "segmenting_content"
    GENERATING_SUMMARY = "generating_summary"
    GENERATING_QUIZZES = "generating_quizzes"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    FAILED = "failed"


class SourceType(str, enum.Enum):
    """Modality a section was extracted from."""

    PDF = "pdf"
    AUDIO = "audio"
    IMAGE = "image"


class OutputKind(str, enum.Enum):
    """Kinds of structured stage output."""

    SEGMENTS = "segments"
    ANALYSIS = "analysis"
    QUIZ = "quiz"


# ================================
# ContentUnit
# ================================

class ContentUnit(BaseModel):
    """
    One logical study item with its own set of sources.

    ``status`` is what clients poll; ``pipeline_stage`` says which part of
    the pipeline is currently active. ``error_message`` is set when the unit
    fails, ``result`` holds the aggregated study pack once completed.
    """

    __tablename__ = "content_units"

    title: Mapped[str] = mapped_column(
        String255,
        nullable=False,
        comment="Display title of the study item"
    )

    status: Mapped[str] = mapped_column(
        String20,
        nullable=False,
        default=ContentUnitStatus.PENDING.value,
        index=True,
        comment="pending, processing, embedded, completed, failed"
    )

    pipeline_stage: Mapped[Optional[str]] = mapped_column(
        String50,
        nullable=True,
        comment="Current pipeline stage marker"
    )

    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Failure reason when status is failed"
    )

    result: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Aggregated study output (lectures, quizzes, overview)"
    )


# ================================
# SourceFile
# ================================

class SourceFile(BaseModel):
    """
    A file registered for extraction.

    ``content_hash`` is unique per unit so re-uploading the same file is
    reported as a duplicate instead of extracted twice.
    """

    __tablename__ = "source_files"

    content_unit_id: Mapped[int] = mapped_column(
        ForeignKey("content_units.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    file_path: Mapped[str] = mapped_column(
        String1000,
        nullable=False,
        comment="Object storage path"
    )

    file_name: Mapped[str] = mapped_column(String255, nullable=False)

    file_type: Mapped[str] = mapped_column(
        String20,
        nullable=False,
        comment="pdf, audio, image"
    )

    content_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="SHA-256 of the file identity"
    )

    extraction_method: Mapped[Optional[str]] = mapped_column(
        String50,
        nullable=True,
        comment="Method that produced the stored sections"
    )

    __table_args__ = (
        UniqueConstraint(
            "content_unit_id",
            "content_hash",
            name="uq_source_files_unit_content_hash",
        ),
    )


# ================================
# DocumentSection (Chunk)
# ================================

class DocumentSection(BaseModel):
    """
    A chunk of extracted text.

    Metadata (JSON):
    ----------------
    {
        "start_char": 0,          # offsets into the normalized source text
        "end_char": 2310,
        "word_count": 210,
        "token_count": 420,
        "content_hash": "...",
        "extraction_method": "vision"
    }

    Traversal order:
    ----------------
    ``prev_id`` / ``next_id`` link sections of the same source file in
    reading order regardless of how rows come back from storage.

    Embedding:
    ----------
    Write-once. The embedding generator only ever runs
    ``UPDATE ... SET embedding = :v WHERE id = :id AND embedding IS NULL``.
    """

    __tablename__ = "document_sections"

    content_unit_id: Mapped[int] = mapped_column(
        ForeignKey("content_units.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    source_type: Mapped[str] = mapped_column(
        String20,
        nullable=False,
        comment="pdf, audio, image"
    )

    source_file_id: Mapped[str] = mapped_column(
        String1000,
        nullable=False,
        comment="Storage path of the file this section came from"
    )

    chunk_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Order of this section within its source file (0-indexed)"
    )

    content: Mapped[str] = mapped_column(Text, nullable=False)

    section_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
    )

    embedding = mapped_column(
        Vector(settings.EMBEDDING_DIMENSION),
        nullable=True,
        comment="Embedding vector; NULL until the embed stage fills it"
    )

    prev_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    next_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "content_unit_id",
            "source_file_id",
            "chunk_index",
            name="uq_document_sections_unit_file_chunk",
        ),
        Index("ix_document_sections_unit_source", "content_unit_id", "source_type"),
    )

    def __repr__(self) -> str:
        return (
            f"DocumentSection(id={self.id}, unit={self.content_unit_id}, "
            f"source={self.source_type}, index={self.chunk_index})"
        )


# ================================
# StageOutput
# ================================

class StageOutput(BaseModel):
    """
    Structured output of a stage, keyed by (unit, kind, key).

    kind=segments: key "all", data {"segments": [{"key", "title", "start_section", "end_section"}]}
    kind=analysis: key = segment key, data {"title", "summary", "focus_points", ...}
    kind=quiz:     key = segment key, data {"quizzes": [...], "essay_questions": [...]}
    """

    __tablename__ = "stage_outputs"

    content_unit_id: Mapped[int] = mapped_column(
        ForeignKey("content_units.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    kind: Mapped[str] = mapped_column(String20, nullable=False)

    key: Mapped[str] = mapped_column(String255, nullable=False)

    data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "content_unit_id",
            "kind",
            "key",
            name="uq_stage_outputs_unit_kind_key",
        ),
    )
