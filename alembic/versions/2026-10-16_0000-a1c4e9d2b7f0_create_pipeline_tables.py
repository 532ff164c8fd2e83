"""create_pipeline_tables

Revision ID: a1c4e9d2b7f0
Revises:
Create Date: 2026-10-16 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'a1c4e9d2b7f0'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

EMBEDDING_DIMENSION = 768


def _common_columns() -> list:
    return [
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False, comment='Auto-incrementing primary key'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='Timestamp when record was created (UTC)'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='Timestamp when record was last updated (UTC)'),
    ]


def _unit_fk(table: str) -> sa.ForeignKeyConstraint:
    return sa.ForeignKeyConstraint(
        ['content_unit_id'], ['content_units.id'],
        name=op.f(f'fk_{table}_content_unit_id_content_units'),
        ondelete='CASCADE',
    )


def upgrade() -> None:
    """
    Create the pipeline schema.

    Tables:
    1. content_units - study items and their aggregate status
    2. source_files - uploaded files registered for extraction
    3. document_sections - extracted chunks with embeddings
    4. stage_outputs - segment/analysis/quiz results
    5. pipeline_jobs - the job store

    Indexes worth knowing about:
    - partial unique index on pipeline_jobs.dedupe_key for active jobs
    - claim index (status, next_retry_at, created_at)
    - HNSW cosine index on document_sections.embedding
    """

    # ================================
    # Enable pgvector extension if not already enabled
    # ================================
    op.execute('CREATE EXTENSION IF NOT EXISTS vector')

    # ================================
    # content_units
    # ================================
    op.create_table(
        'content_units',
        *_common_columns(),
        sa.Column('title', sa.String(length=255), nullable=False, comment='Display title of the study item'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='pending, processing, embedded, completed, failed'),
        sa.Column('pipeline_stage', sa.String(length=50), nullable=True, comment='Current pipeline stage marker'),
        sa.Column('error_message', sa.Text(), nullable=True, comment='Failure reason when status is failed'),
        sa.Column('result', postgresql.JSONB(astext_type=sa.Text()), nullable=True, comment='Aggregated study output (lectures, quizzes, overview)'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_content_units')),
    )
    op.create_index(op.f('ix_content_units_status'), 'content_units', ['status'])

    # ================================
    # source_files
    # ================================
    op.create_table(
        'source_files',
        *_common_columns(),
        sa.Column('content_unit_id', sa.Integer(), nullable=False),
        sa.Column('file_path', sa.String(length=1000), nullable=False, comment='Object storage path'),
        sa.Column('file_name', sa.String(length=255), nullable=False),
        sa.Column('file_type', sa.String(length=20), nullable=False, comment='pdf, audio, image'),
        sa.Column('content_hash', sa.String(length=64), nullable=False, comment='SHA-256 of the file identity'),
        sa.Column('extraction_method', sa.String(length=50), nullable=True, comment='Method that produced the stored sections'),
        _unit_fk('source_files'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_source_files')),
        sa.UniqueConstraint('content_unit_id', 'content_hash', name='uq_source_files_unit_content_hash'),
    )
    op.create_index(op.f('ix_source_files_content_unit_id'), 'source_files', ['content_unit_id'])

    # ================================
    # document_sections
    # ================================
    op.create_table(
        'document_sections',
        *_common_columns(),
        sa.Column('content_unit_id', sa.Integer(), nullable=False),
        sa.Column('source_type', sa.String(length=20), nullable=False, comment='pdf, audio, image'),
        sa.Column('source_file_id', sa.String(length=1000), nullable=False, comment='Storage path of the file this section came from'),
        sa.Column('chunk_index', sa.Integer(), nullable=False, comment='Order of this section within its source file (0-indexed)'),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('prev_id', sa.Integer(), nullable=True),
        sa.Column('next_id', sa.Integer(), nullable=True),
        _unit_fk('document_sections'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_document_sections')),
        sa.UniqueConstraint('content_unit_id', 'source_file_id', 'chunk_index', name='uq_document_sections_unit_file_chunk'),
    )
    op.execute(f'ALTER TABLE document_sections ADD COLUMN embedding vector({EMBEDDING_DIMENSION})')
    op.create_index(op.f('ix_document_sections_content_unit_id'), 'document_sections', ['content_unit_id'])
    op.create_index('ix_document_sections_unit_source', 'document_sections', ['content_unit_id', 'source_type'])

    # HNSW index for cosine similarity search (m=16, ef_construction=64)
    op.execute("""
        CREATE INDEX ix_document_sections_embedding_hnsw
        ON document_sections
        USING hnsw (embedding vector_cosine_ops)
        WITH (m = 16, ef_construction = 64)
    """)

    # ================================
    # stage_outputs
    # ================================
    op.create_table(
        'stage_outputs',
        *_common_columns(),
        sa.Column('content_unit_id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=20), nullable=False),
        sa.Column('key', sa.String(length=255), nullable=False),
        sa.Column('data', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        _unit_fk('stage_outputs'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_stage_outputs')),
        sa.UniqueConstraint('content_unit_id', 'kind', 'key', name='uq_stage_outputs_unit_kind_key'),
    )
    op.create_index(op.f('ix_stage_outputs_content_unit_id'), 'stage_outputs', ['content_unit_id'])

    # ================================
    # pipeline_jobs
    # ================================
    op.create_table(
        'pipeline_jobs',
        *_common_columns(),
        sa.Column('content_unit_id', sa.Integer(), nullable=False),
        sa.Column('job_type', sa.String(length=20), nullable=False, comment='extract, embed, segment, analyze, quiz, aggregate'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='pending, processing, completed, failed, dead'),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('attempt_count', sa.Integer(), nullable=False, comment='Failed attempts so far'),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('locked_by', sa.String(length=255), nullable=True, comment='Worker identity holding the lease'),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True, comment='Lease start; stale after JOB_LEASE_SECONDS'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True, comment='Not claimable before this time'),
        sa.Column('dedupe_key', sa.String(length=255), nullable=True, comment='Unique among pending/processing jobs'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('result', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        _unit_fk('pipeline_jobs'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_pipeline_jobs')),
    )
    op.create_index(op.f('ix_pipeline_jobs_content_unit_id'), 'pipeline_jobs', ['content_unit_id'])
    op.create_index('ix_pipeline_jobs_claim', 'pipeline_jobs', ['status', 'next_retry_at', 'created_at'])
    op.create_index('ix_pipeline_jobs_unit_type_status', 'pipeline_jobs', ['content_unit_id', 'job_type', 'status'])
    op.create_index(
        'uq_pipeline_jobs_active_dedupe_key',
        'pipeline_jobs',
        ['dedupe_key'],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'processing') AND dedupe_key IS NOT NULL"),
    )


def downgrade() -> None:
    """Drop the pipeline schema (the vector extension is left installed)."""
    op.drop_index('uq_pipeline_jobs_active_dedupe_key', table_name='pipeline_jobs')
    op.drop_index('ix_pipeline_jobs_unit_type_status', table_name='pipeline_jobs')
    op.drop_index('ix_pipeline_jobs_claim', table_name='pipeline_jobs')
    op.drop_index(op.f('ix_pipeline_jobs_content_unit_id'), table_name='pipeline_jobs')
    op.drop_table('pipeline_jobs')

    op.drop_index(op.f('ix_stage_outputs_content_unit_id'), table_name='stage_outputs')
    op.drop_table('stage_outputs')

    op.execute('DROP INDEX IF EXISTS ix_document_sections_embedding_hnsw')
    op.drop_index('ix_document_sections_unit_source', table_name='document_sections')
    op.drop_index(op.f('ix_document_sections_content_unit_id'), table_name='document_sections')
    op.drop_table('document_sections')

    op.drop_index(op.f('ix_source_files_content_unit_id'), table_name='source_files')
    op.drop_table('source_files')

    op.drop_index(op.f('ix_content_units_status'), table_name='content_units')
    op.drop_table('content_units')
