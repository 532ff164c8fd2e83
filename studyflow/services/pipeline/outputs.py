"""
Reading and writing what the stages share: structured stage outputs and
the unit's sections in reading order.
"""

from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studyflow.models import DocumentSection, OutputKind, SourceType, StageOutput
from studyflow.services.processors.chunker import TextChunk, join_chunks

DOCUMENT_SOURCE_TYPES = (SourceType.PDF.value, SourceType.IMAGE.value)


async def save_output(
    session: AsyncSession,
    content_unit_id: int,
    kind: OutputKind,
    key: str,
    data: dict[str, Any],
) -> StageOutput:
    """Insert or replace one stage output. Does not commit."""
    result = await session.execute(
        select(StageOutput).where(
            StageOutput.content_unit_id == content_unit_id,
            StageOutput.kind == kind.value,
            StageOutput.key == key,
        )
    )
    output = result.scalar_one_or_none()
    if output is None:
        output = StageOutput(content_unit_id=content_unit_id, kind=kind.value, key=key, data=data)
        session.add(output)
    else:
        output.data = data
    await session.flush()
    return output


async def load_output(
    session: AsyncSession,
    content_unit_id: int,
    kind: OutputKind,
    key: str,
) -> Optional[dict[str, Any]]:
    return await session.scalar(
        select(StageOutput.data).where(
            StageOutput.content_unit_id == content_unit_id,
            StageOutput.kind == kind.value,
            StageOutput.key == key,
        )
    )


async def load_outputs(session: AsyncSession, content_unit_id: int, kind: OutputKind) -> dict[str, dict[str, Any]]:
    result = await session.execute(
        select(StageOutput.key, StageOutput.data).where(
            StageOutput.content_unit_id == content_unit_id,
            StageOutput.kind == kind.value,
        )
    )
    return {key: data for key, data in result.all()}


async def load_segments(session: AsyncSession, content_unit_id: int) -> list[dict[str, Any]]:
    data = await load_output(session, content_unit_id, OutputKind.SEGMENTS, "all")
    return list((data or {}).get("segments", []))


# ================================
# Sections in reading order
# ================================

def order_sections(sections: Iterable[DocumentSection]) -> list[DocumentSection]:
    """
    Reading order from the prev/next chain.

    Sections are grouped by source file; each file's chain is walked from
    its head (no ``prev_id``). Files keep the order of their first row id.
    Rows the chain does not reach (unlinked) follow in chunk_index order.
    """
    by_file: dict[str, list[DocumentSection]] = {}
    for section in sorted(sections, key=lambda s: s.id):
        by_file.setdefault(section.source_file_id, []).append(section)

    ordered: list[DocumentSection] = []
    for rows in by_file.values():
        by_id = {s.id: s for s in rows}
        visited: set[int] = set()
        for head in sorted((s for s in rows if s.prev_id is None), key=lambda s: s.chunk_index):
            current: Optional[DocumentSection] = head
            while current is not None and current.id not in visited:
                visited.add(current.id)
                ordered.append(current)
                current = by_id.get(current.next_id) if current.next_id is not None else None
        ordered.extend(sorted((s for s in rows if s.id not in visited), key=lambda s: s.chunk_index))
    return ordered


async def load_study_sections(session: AsyncSession, content_unit_id: int) -> list[DocumentSection]:
    """
    Sections the lesson structure is built from: document and image text,
    or the narration when the unit has nothing else.
    """
    result = await session.execute(
        select(DocumentSection).where(DocumentSection.content_unit_id == content_unit_id)
    )
    sections = list(result.scalars().all())
    documents = [s for s in sections if s.source_type in DOCUMENT_SOURCE_TYPES]
    return order_sections(documents or sections)


def sections_text(sections: Sequence[DocumentSection]) -> str:
    """
    Text of consecutive sections with chunk overlap removed.

    Sections of the same file are stitched with their char offsets; text
    from different files is separated by a blank line.
    """
    groups: list[list[DocumentSection]] = []
    for section in sections:
        if groups and groups[-1][0].source_file_id == section.source_file_id:
            groups[-1].append(section)
        else:
            groups.append([section])

    parts = []
    for group in groups:
        chunks = []
        for section in group:
            meta = section.section_metadata or {}
            if "start_char" not in meta or "end_char" not in meta:
                chunks = None
                break
            chunks.append(
                TextChunk(
                    index=section.chunk_index,
                    content=section.content,
                    start_char=meta["start_char"],
                    end_char=meta["end_char"],
                    word_count=meta.get("word_count", 0),
                    token_count=meta.get("token_count", 0),
                )
            )
        parts.append(join_chunks(chunks) if chunks else "\n\n".join(s.content for s in group))
    return "\n\n".join(p for p in parts if p)
