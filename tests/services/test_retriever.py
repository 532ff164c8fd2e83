"""
Tests for hybrid section search.

The two Postgres queries are checked by compiling them against the
PostgreSQL dialect; the retriever tests patch them out and let SQLite
hold the sections.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.dialects import postgresql

from studyflow.models import DocumentSection
from studyflow.services.processors.retriever import (
    HybridRetriever,
    RankedSection,
    keyword_search,
    reciprocal_rank_fusion,
    semantic_search,
)

from conftest import FakeEmbeddingProvider

MODULE = "studyflow.services.processors.retriever"


def ranking(*section_ids: int) -> list[RankedSection]:
    return [RankedSection(section_id=sid, rank=rank, score=1.0 / rank) for rank, sid in enumerate(section_ids, 1)]


def compiled(session: MagicMock, literal_binds: bool = True) -> str:
    stmt = session.execute.await_args.args[0]
    return str(stmt.compile(dialect=postgresql.dialect(), compile_kwargs={"literal_binds": literal_binds}))


class TestReciprocalRankFusion:

    def test_scores_sum_over_rankings(self):
        fused = dict(reciprocal_rank_fusion(ranking(1, 2), ranking(2, 3), k=60))

        assert fused[1] == pytest.approx(1 / 61)
        assert fused[2] == pytest.approx(1 / 62 + 1 / 61)
        assert fused[3] == pytest.approx(1 / 62)

    def test_found_by_both_ranks_first(self):
        fused = reciprocal_rank_fusion(ranking(1, 2, 3), ranking(3), k=60)
        assert [sid for sid, _ in fused] == [3, 1, 2]

    def test_single_ranking(self):
        assert [sid for sid, _ in reciprocal_rank_fusion([], ranking(5, 4), k=60)] == [5, 4]

    def test_small_k_favours_top_ranks(self):
        # rank 1 in one list beats ranks 2 and 3 in two lists only when k is small
        semantic, keyword = ranking(1, 2), ranking(3, 4, 2)
        assert reciprocal_rank_fusion(semantic, keyword, k=0)[0][0] == 1
        assert reciprocal_rank_fusion(semantic, keyword, k=60)[0][0] == 2

    def test_empty(self):
        assert reciprocal_rank_fusion([], [], k=60) == []


@pytest.mark.asyncio
class TestQueries:

    async def test_keyword_search_sql(self):
        session = MagicMock()
        session.execute = AsyncMock(return_value=[])

        assert await keyword_search(session, 7, "  krebs cycle ", 10) == []

        sql = compiled(session)
        assert "websearch_to_tsquery(" in sql
        assert "'krebs cycle'" in sql
        assert "'simple'" in sql
        assert "document_sections.content" in sql
        assert "ts_rank_cd(" in sql
        assert "@@" in sql
        assert "LIMIT 10" in sql

    async def test_blank_keyword_query_skips_database(self):
        session = MagicMock()
        session.execute = AsyncMock()

        assert await keyword_search(session, 7, "   ", 10) == []
        session.execute.assert_not_awaited()

    async def test_keyword_ranks_are_one_based(self):
        session = MagicMock()
        session.execute = AsyncMock(return_value=[MagicMock(id=4, rank_score=0.6), MagicMock(id=2, rank_score=0.3)])

        hits = await keyword_search(session, 7, "krebs", 10)

        assert hits == [RankedSection(4, 1, 0.6), RankedSection(2, 2, 0.3)]

    async def test_semantic_search_sql(self):
        session = MagicMock()
        session.execute = AsyncMock(return_value=[MagicMock(id=9, similarity=0.83)])

        hits = await semantic_search(session, 7, [0.0, 1.0, 0.0], 4)

        assert hits == [RankedSection(9, 1, 0.83)]
        sql = compiled(session, literal_binds=False)
        assert "<=>" in sql
        assert "document_sections.embedding IS NOT NULL" in sql
        assert "ORDER BY" in sql


async def _add_sections(session_factory, unit_id: int, contents: list[str]) -> list[int]:
    async with session_factory() as session:
        sections = [
            DocumentSection(
                content_unit_id=unit_id,
                source_type="pdf",
                source_file_id=f"units/{unit_id}/notes.pdf",
                chunk_index=index,
                content=content,
                section_metadata={},
            )
            for index, content in enumerate(contents)
        ]
        session.add_all(sections)
        await session.commit()
        return [s.id for s in sections]


@pytest.mark.asyncio
class TestHybridRetriever:

    async def test_fuses_both_rankings(self, session_factory, unit):
        glycolysis, krebs, etc = await _add_sections(
            session_factory,
            unit.id,
            ["Glycolysis splits glucose", "The Krebs cycle", "Electron transport chain"],
        )
        provider = FakeEmbeddingProvider()
        semantic = AsyncMock(return_value=[RankedSection(etc, 1, 0.9), RankedSection(krebs, 2, 0.7)])
        keyword = AsyncMock(return_value=[RankedSection(krebs, 1, 0.5), RankedSection(glycolysis, 2, 0.2)])

        with patch(f"{MODULE}.semantic_search", semantic), patch(f"{MODULE}.keyword_search", keyword):
            results = await HybridRetriever(session_factory, provider, rrf_k=60).search(unit.id, " krebs ", limit=2)

        assert provider.calls == [["krebs"]]
        assert semantic.await_args.args[1:] == (unit.id, (await provider.embed(["krebs"]))[0], 4)
        assert keyword.await_args.args[1:] == (unit.id, "krebs", 4)

        assert [r.section_id for r in results] == [krebs, etc]
        top = results[0]
        assert top.content == "The Krebs cycle"
        assert (top.semantic_rank, top.keyword_rank) == (2, 1)
        assert top.final_score == pytest.approx(1 / 62 + 1 / 61)
        assert results[1].keyword_rank is None
        assert results[1].keyword_score == 0.0

    async def test_searches_only_the_requested_unit(self, session_factory, unit):
        [own] = await _add_sections(session_factory, unit.id, ["Osmosis"])

        async def fake_semantic(session, content_unit_id, embedding, limit):
            assert content_unit_id == unit.id
            return [RankedSection(own, 1, 0.8)]

        with patch(f"{MODULE}.semantic_search", side_effect=fake_semantic), \
                patch(f"{MODULE}.keyword_search", AsyncMock(return_value=[])):
            results = await HybridRetriever(session_factory, FakeEmbeddingProvider()).search(unit.id, "osmosis", 5)

        assert [r.section_id for r in results] == [own]

    async def test_blank_query(self, session_factory, unit):
        provider = FakeEmbeddingProvider()

        assert await HybridRetriever(session_factory, provider).search(unit.id, "  ", 5) == []
        assert provider.calls == []
