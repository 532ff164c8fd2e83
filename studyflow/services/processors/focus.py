"""
Focus Matcher

Finds the document passages a narrator emphasized. Every audio section's
embedding is used as a query against the document sections of the same
content unit; candidate scores from all queries form one distribution and
a self-calibrating cutoff keeps only the outliers:

    threshold = max(floor, mean + k * std)        (population std)

Passages are marked, never filtered out of the content: the result is a
ranked list of focused passages that the analysis prompt highlights.

Flow:
    1. Load document, audio and image sections
    2. No audio → every document section is focused (similarity 1.0)
    3. Compute missing audio embeddings (batch, then one by one)
    4. Search per audio section with bounded concurrency
    5. Dynamic threshold → fold by document section → sort → cap
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

import numpy as np
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studyflow.core.config import settings
from studyflow.core.logging import get_logger
from studyflow.models import DocumentSection, SourceType
from studyflow.services.processors.embedder import EmbeddingGenerator

logger = get_logger(__name__)

AUDIO_EXCERPT_CHARS = 500
IMAGE_CONTEXT_CHARS = 2000


@dataclass(frozen=True)
class FocusMatch:
    """One (document section, audio section) candidate pair."""

    document_section_id: int
    audio_section_id: int
    similarity: float


@dataclass
class FocusedSection:
    id: int
    content: str
    chunk_index: int
    max_similarity: float
    matched_audio_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "chunk_index": self.chunk_index,
            "max_similarity": self.max_similarity,
            "matched_audio_ids": list(self.matched_audio_ids),
        }


@dataclass
class FocusStats:
    total_audio_chunks: int
    total_pdf_chunks: int
    matched_pdf_chunks: int
    avg_similarity: float
    threshold: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalAudioChunks": self.total_audio_chunks,
            "totalPdfChunks": self.total_pdf_chunks,
            "matchedPdfChunks": self.matched_pdf_chunks,
            "avgSimilarity": self.avg_similarity,
            "threshold": self.threshold,
        }


@dataclass
class FocusResult:
    sections: list[FocusedSection]
    audio_excerpts: list[dict[str, Any]]
    image_context: Optional[str]
    stats: FocusStats


def compute_dynamic_threshold(scores: Sequence[float], floor: float, k: float) -> float:
    """
    ``max(floor, mean + k * std)`` over all candidate scores.

    >>> round(compute_dynamic_threshold([0.2, 0.3, 0.9, 0.92], 0.35, 1.0), 3)
    0.912
    """
    if len(scores) == 0:
        return floor
    values = np.asarray(scores, dtype=float)
    return max(floor, float(values.mean() + k * values.std()))


def fold_matches(
    matches: Iterable[FocusMatch],
    threshold: float,
    limit: int,
    sections: dict[int, DocumentSection],
) -> list[FocusedSection]:
    """
    Keep matches at or above ``threshold`` and fold them per document
    section: highest similarity wins, every contributing audio id is kept
    (first-seen order). Sorted by similarity, capped at ``limit``.
    """
    folded: dict[int, FocusedSection] = {}
    for match in matches:
        if match.similarity < threshold:
            continue
        existing = folded.get(match.document_section_id)
        if existing is None:
            section = sections.get(match.document_section_id)
            folded[match.document_section_id] = FocusedSection(
                id=match.document_section_id,
                content=section.content if section else "",
                chunk_index=section.chunk_index if section else 0,
                max_similarity=match.similarity,
                matched_audio_ids=[match.audio_section_id],
            )
            continue
        existing.max_similarity = max(existing.max_similarity, match.similarity)
        if match.audio_section_id not in existing.matched_audio_ids:
            existing.matched_audio_ids.append(match.audio_section_id)

    ranked = sorted(folded.values(), key=lambda s: s.max_similarity, reverse=True)
    return ranked[:limit]


async def search_similar_sections(
    session: AsyncSession,
    content_unit_id: int,
    embedding: Sequence[float],
    floor: float,
    limit: int,
    source_type: str = SourceType.PDF.value,
) -> list[tuple[int, float]]:
    """
    Nearest document sections by cosine similarity (pgvector).

    Returns (section_id, similarity) pairs with similarity >= ``floor``,
    best first.
    """
    distance = DocumentSection.embedding.cosine_distance(embedding)
    stmt = (
        select(DocumentSection.id, (1 - distance).label("similarity"))
        .where(
            DocumentSection.content_unit_id == content_unit_id,
            DocumentSection.source_type == source_type,
            DocumentSection.embedding.is_not(None),
            distance <= 1 - floor,
        )
        .order_by(distance)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return [(row.id, float(row.similarity)) for row in result]


class FocusMatcher:
    """
    Cross-modal focus matching for one content unit.

    Usage:
        matcher = FocusMatcher(session_factory, generator)
        focus = await matcher.match(content_unit_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        embedding_generator: EmbeddingGenerator,
        floor: Optional[float] = None,
        match_count: Optional[int] = None,
        threshold_floor: Optional[float] = None,
        k: Optional[float] = None,
        max_results: Optional[int] = None,
        concurrency: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.embedding_generator = embedding_generator
        self.floor = settings.FOCUS_MATCH_FLOOR if floor is None else floor
        self.match_count = match_count or settings.FOCUS_MATCH_COUNT
        self.threshold_floor = settings.FOCUS_THRESHOLD_FLOOR if threshold_floor is None else threshold_floor
        self.k = settings.FOCUS_THRESHOLD_K if k is None else k
        self.max_results = max_results or settings.FOCUS_MAX_RESULTS
        self.concurrency = concurrency or settings.FOCUS_SEARCH_CONCURRENCY

    async def _load_sections(self, content_unit_id: int) -> list[DocumentSection]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DocumentSection)
                .where(DocumentSection.content_unit_id == content_unit_id)
                .order_by(DocumentSection.chunk_index, DocumentSection.id)
            )
            return list(result.scalars().all())

    async def _audio_vectors(self, audio: list[DocumentSection]) -> dict[int, list[float]]:
        vectors = {s.id: [float(v) for v in s.embedding] for s in audio if s.embedding is not None}
        missing = [(s.id, s.content) for s in audio if s.embedding is None]
        if missing:
            logger.info("computing_missing_audio_embeddings", count=len(missing))
            vectors.update(await self.embedding_generator.embed_sections(missing))
        return vectors

    async def _search_all(self, content_unit_id: int, vectors: dict[int, list[float]]) -> list[FocusMatch]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def search(audio_id: int, vector: list[float]) -> list[FocusMatch]:
            async with semaphore:
                # One session per concurrent query
                async with self.session_factory() as session:
                    hits = await search_similar_sections(
                        session, content_unit_id, vector, self.floor, self.match_count
                    )
            return [FocusMatch(doc_id, audio_id, similarity) for doc_id, similarity in hits]

        outcomes = await asyncio.gather(
            *(search(audio_id, vector) for audio_id, vector in vectors.items()),
            return_exceptions=True,
        )

        matches: list[FocusMatch] = []
        for audio_id, outcome in zip(vectors, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("focus_search_failed", audio_section_id=audio_id, error=str(outcome))
                continue
            matches.extend(outcome)
        return matches

    async def match(self, content_unit_id: int) -> FocusResult:
        sections = await self._load_sections(content_unit_id)
        pdf = [s for s in sections if s.source_type == SourceType.PDF.value]
        audio = [s for s in sections if s.source_type == SourceType.AUDIO.value]
        image = [s for s in sections if s.source_type == SourceType.IMAGE.value]

        image_context = None
        if image:
            image_context = "\n".join(s.content for s in image)[:IMAGE_CONTEXT_CHARS]

        if not audio:
            logger.info("focus_no_audio_fallback", content_unit_id=content_unit_id, pdf_sections=len(pdf))
            focused = [
                FocusedSection(id=s.id, content=s.content, chunk_index=s.chunk_index, max_similarity=1.0)
                for s in pdf[:self.max_results]
            ]
            return FocusResult(
                sections=focused,
                audio_excerpts=[],
                image_context=image_context,
                stats=FocusStats(
                    total_audio_chunks=0,
                    total_pdf_chunks=len(pdf),
                    matched_pdf_chunks=len(focused),
                    avg_similarity=1.0,
                    threshold=0.0,
                ),
            )

        vectors = await self._audio_vectors(audio)
        matches = await self._search_all(content_unit_id, vectors)

        threshold = compute_dynamic_threshold([m.similarity for m in matches], self.threshold_floor, self.k)
        focused = fold_matches(matches, threshold, self.max_results, {s.id: s for s in pdf})

        used_audio = {audio_id for f in focused for audio_id in f.matched_audio_ids}
        excerpts = [
            {"id": s.id, "content": s.content[:AUDIO_EXCERPT_CHARS], "chunk_index": s.chunk_index}
            for s in audio
            if s.id in used_audio
        ]
        avg = sum(f.max_similarity for f in focused) / len(focused) if focused else 0.0

        logger.info(
            "focus_matching_finished",
            content_unit_id=content_unit_id,
            raw_matches=len(matches),
            threshold=round(threshold, 3),
            kept=len(focused),
        )
        return FocusResult(
            sections=focused,
            audio_excerpts=excerpts,
            image_context=image_context,
            stats=FocusStats(
                total_audio_chunks=len(audio),
                total_pdf_chunks=len(pdf),
                matched_pdf_chunks=len(focused),
                avg_similarity=avg,
                threshold=threshold,
            ),
        )
