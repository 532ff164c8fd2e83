"""section_fulltext_index

Revision ID: 5e2b8c7d9a13
Revises: a1c4e9d2b7f0
Create Date: 2026-10-16 01:00:00.000000

"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '5e2b8c7d9a13'
down_revision: Union[str, None] = 'a1c4e9d2b7f0'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """
    GIN expression index for keyword search.

    The expression must match the one the retriever filters on,
    ``to_tsvector('simple', content)``, for the planner to use it.
    """
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_document_sections_content_fts
        ON document_sections
        USING gin (to_tsvector('simple', content))
    """)


def downgrade() -> None:
    op.execute('DROP INDEX IF EXISTS ix_document_sections_content_fts')
