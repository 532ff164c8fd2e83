"""
Tests for stage outputs and reading-order helpers.
"""

import pytest

from studyflow.models import DocumentSection, OutputKind
from studyflow.services.pipeline.outputs import (
    load_output,
    load_outputs,
    load_segments,
    load_study_sections,
    order_sections,
    save_output,
    sections_text,
)
from studyflow.services.processors.chunker import ContentChunker


def section(section_id, chunk_index=0, prev_id=None, next_id=None, file="units/1/a.pdf", content="", metadata=None):
    return DocumentSection(
        id=section_id,
        chunk_index=chunk_index,
        prev_id=prev_id,
        next_id=next_id,
        source_file_id=file,
        content=content,
        section_metadata=metadata or {},
    )


class TestOrderSections:

    def test_follows_chain(self):
        rows = [
            section(1, 0, None, 3),
            section(2, 2, 3, None),
            section(3, 1, 1, 2),
        ]
        assert [s.id for s in order_sections(rows)] == [1, 3, 2]

    def test_groups_files_and_appends_unlinked(self):
        rows = [
            section(5, 0, None, 6, file="units/1/b.pdf"),
            section(6, 1, 5, None, file="units/1/b.pdf"),
            section(1, 0, None, None, file="units/1/a.pdf"),
            section(9, 4, 99, None, file="units/1/a.pdf"),
        ]
        assert [s.id for s in order_sections(rows)] == [1, 9, 5, 6]


class TestSectionsText:

    def test_stitches_overlapping_chunks(self):
        text = " ".join(f"Sentence {i} describes the spindle apparatus." for i in range(40))
        chunks = ContentChunker(max_tokens=40, overlap_tokens=10, max_chars=400, safety_margin=0.0).chunk_text(text)
        assert len(chunks) > 1

        rows = [section(c.index + 1, c.index, content=c.content, metadata=c.metadata) for c in chunks]

        assert sections_text(rows) == text

    def test_files_are_separated(self):
        rows = [
            section(1, 0, file="units/1/a.pdf", content="First file."),
            section(2, 0, file="units/1/b.pdf", content="Second file."),
        ]
        assert sections_text(rows) == "First file.\n\nSecond file."


@pytest.mark.asyncio
class TestStageOutputs:

    async def test_save_replaces(self, db_session, unit):
        await save_output(db_session, unit.id, OutputKind.ANALYSIS, "lecture-1", {"summary": "v1"})
        await save_output(db_session, unit.id, OutputKind.ANALYSIS, "lecture-1", {"summary": "v2"})
        await save_output(db_session, unit.id, OutputKind.QUIZ, "lecture-1", {"quizzes": []})
        await db_session.commit()

        assert await load_output(db_session, unit.id, OutputKind.ANALYSIS, "lecture-1") == {"summary": "v2"}
        assert await load_outputs(db_session, unit.id, OutputKind.ANALYSIS) == {"lecture-1": {"summary": "v2"}}
        assert await load_output(db_session, unit.id, OutputKind.ANALYSIS, "lecture-9") is None

    async def test_segments_default_empty(self, db_session, unit):
        assert await load_segments(db_session, unit.id) == []

    async def test_study_sections_prefer_documents(self, session_factory, unit):
        async with session_factory() as session:
            session.add_all(
                [
                    DocumentSection(content_unit_id=unit.id, source_type="audio", source_file_id="units/1/a.mp3",
                                    chunk_index=0, content="narration", section_metadata={}),
                    DocumentSection(content_unit_id=unit.id, source_type="pdf", source_file_id="units/1/a.pdf",
                                    chunk_index=0, content="document", section_metadata={}),
                ]
            )
            await session.commit()

        async with session_factory() as session:
            sections = await load_study_sections(session, unit.id)
        assert [s.content for s in sections] == ["document"]

    async def test_study_sections_fall_back_to_audio(self, session_factory, unit):
        async with session_factory() as session:
            session.add(
                DocumentSection(content_unit_id=unit.id, source_type="audio", source_file_id="units/1/a.mp3",
                                chunk_index=0, content="narration", section_metadata={})
            )
            await session.commit()

        async with session_factory() as session:
            sections = await load_study_sections(session, unit.id)
        assert [s.content for s in sections] == ["narration"]
