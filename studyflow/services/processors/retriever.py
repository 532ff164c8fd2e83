"""
Hybrid Retriever

Searches the sections of one content unit by combining two rankings:

1. Semantic search (pgvector cosine distance on ``embedding``)
2. Keyword search (PostgreSQL full-text search, ``ts_rank_cd``)

The rankings are fused with Reciprocal Rank Fusion:

    score(section) = sum over rankings of 1 / (k + rank)

RRF only looks at ranks, so the two score scales (cosine similarity and
cover density) never have to be made comparable. A section found by one
ranking only still scores through that ranking. Each ranking fetches
``limit * candidate_multiplier`` candidates before fusion.

Usage:
------
retriever = HybridRetriever(session_factory, embedding_provider)
results = await retriever.search(content_unit_id, "oxidative phosphorylation", limit=5)
"""

from dataclasses import dataclass
from typing import Any, Optional, Sequence

from sqlalchemy import func, literal, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studyflow.core.config import settings
from studyflow.core.logging import get_logger
from studyflow.models import DocumentSection
from studyflow.services.processors.embedder import EmbeddingProvider

logger = get_logger(__name__)

# ts_rank_cd normalization 32: rank / (rank + 1), keeps scores in [0, 1)
RANK_NORMALIZATION = 32


@dataclass(frozen=True)
class RankedSection:
    """One section as ranked by a single search method (rank is 1-based)."""

    section_id: int
    rank: int
    score: float


@dataclass
class SearchResult:
    section_id: int
    content: str
    source_type: str
    chunk_index: int
    final_score: float
    semantic_rank: Optional[int] = None
    keyword_rank: Optional[int] = None
    semantic_score: float = 0.0
    keyword_score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "section_id": self.section_id,
            "content": self.content,
            "source_type": self.source_type,
            "chunk_index": self.chunk_index,
            "final_score": self.final_score,
            "semantic_rank": self.semantic_rank,
            "keyword_rank": self.keyword_rank,
            "semantic_score": self.semantic_score,
            "keyword_score": self.keyword_score,
        }


async def semantic_search(
    session: AsyncSession,
    content_unit_id: int,
    query_embedding: Sequence[float],
    limit: int,
) -> list[RankedSection]:
    """Nearest sections of the unit by cosine distance, best first."""
    distance = DocumentSection.embedding.cosine_distance(query_embedding)
    stmt = (
        select(DocumentSection.id, (1 - distance).label("similarity"))
        .where(
            DocumentSection.content_unit_id == content_unit_id,
            DocumentSection.embedding.is_not(None),
        )
        .order_by(distance)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return [
        RankedSection(section_id=row.id, rank=rank, score=float(row.similarity))
        for rank, row in enumerate(result, 1)
    ]


async def keyword_search(
    session: AsyncSession,
    content_unit_id: int,
    query_text: str,
    limit: int,
    text_config: Optional[str] = None,
) -> list[RankedSection]:
    """
    Full-text matches of the unit ranked by cover density, best first.

    The query is parsed with ``websearch_to_tsquery`` (quoted phrases,
    ``or``, ``-term``). A query that reduces to nothing matches nothing.
    """
    query_text = query_text.strip()
    if not query_text:
        return []

    # Inline config so the expression matches ix_document_sections_content_fts
    config = literal(text_config or settings.SEARCH_TEXT_CONFIG, literal_execute=True)
    document = func.to_tsvector(config, DocumentSection.content)
    query = func.websearch_to_tsquery(config, query_text)
    rank = func.ts_rank_cd(document, query, RANK_NORMALIZATION)

    stmt = (
        select(DocumentSection.id, rank.label("rank_score"))
        .where(
            DocumentSection.content_unit_id == content_unit_id,
            document.op("@@")(query),
        )
        .order_by(rank.desc(), DocumentSection.id)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return [
        RankedSection(section_id=row.id, rank=position, score=float(row.rank_score))
        for position, row in enumerate(result, 1)
    ]


def reciprocal_rank_fusion(
    semantic: Sequence[RankedSection],
    keyword: Sequence[RankedSection],
    k: int,
) -> list[tuple[int, float]]:
    """
    Fuse two rankings into (section_id, score) pairs, best first.

    Ties keep the order in which sections were first seen, semantic
    hits before keyword-only hits.

    >>> a = [RankedSection(1, 1, 0.9), RankedSection(2, 2, 0.8)]
    >>> b = [RankedSection(2, 1, 0.5)]
    >>> [sid for sid, _ in reciprocal_rank_fusion(a, b, 60)]
    [2, 1]
    """
    scores: dict[int, float] = {}
    for ranking in (semantic, keyword):
        for hit in ranking:
            scores[hit.section_id] = scores.get(hit.section_id, 0.0) + 1.0 / (k + hit.rank)
    return sorted(scores.items(), key=lambda item: item[1], reverse=True)


class HybridRetriever:
    """
    Hybrid semantic + keyword search over a content unit's sections.

    The query is embedded with the same provider the embed stage uses, so
    query and section vectors share one space.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        embedding_provider: EmbeddingProvider,
        rrf_k: Optional[int] = None,
        candidate_multiplier: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.embedding_provider = embedding_provider
        self.rrf_k = rrf_k or settings.SEARCH_RRF_K
        self.candidate_multiplier = candidate_multiplier or settings.SEARCH_CANDIDATE_MULTIPLIER

    async def search(self, content_unit_id: int, query_text: str, limit: int) -> list[SearchResult]:
        query_text = query_text.strip()
        if not query_text:
            return []

        candidates = limit * self.candidate_multiplier
        [query_embedding] = await self.embedding_provider.embed([query_text])

        async with self.session_factory() as session:
            semantic = await semantic_search(session, content_unit_id, query_embedding, candidates)
            keyword = await keyword_search(session, content_unit_id, query_text, candidates)

            fused = reciprocal_rank_fusion(semantic, keyword, self.rrf_k)[:limit]
            ids = [section_id for section_id, _ in fused]
            rows = await session.execute(select(DocumentSection).where(DocumentSection.id.in_(ids)))
            sections = {s.id: s for s in rows.scalars()}

        by_semantic = {hit.section_id: hit for hit in semantic}
        by_keyword = {hit.section_id: hit for hit in keyword}

        results = []
        for section_id, score in fused:
            section = sections.get(section_id)
            if section is None:
                continue
            semantic_hit = by_semantic.get(section_id)
            keyword_hit = by_keyword.get(section_id)
            results.append(
                SearchResult(
                    section_id=section_id,
                    content=section.content,
                    source_type=section.source_type,
                    chunk_index=section.chunk_index,
                    final_score=score,
                    semantic_rank=semantic_hit.rank if semantic_hit else None,
                    keyword_rank=keyword_hit.rank if keyword_hit else None,
                    semantic_score=semantic_hit.score if semantic_hit else 0.0,
                    keyword_score=keyword_hit.score if keyword_hit else 0.0,
                )
            )

        logger.info(
            "hybrid_search_finished",
            content_unit_id=content_unit_id,
            semantic_hits=len(semantic),
            keyword_hits=len(keyword),
            returned=len(results),
        )
        return results
