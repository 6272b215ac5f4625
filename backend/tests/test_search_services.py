"""
Tests for chunking, keyword extraction, index replacement and hybrid search.

Embeddings come from a deterministic stand-in keyed on topic words, so
similarities are known exactly. Persistence runs on SQLite, which exercises
the in-Python scoring path of the search service.
"""

import math

import pytest
import pytest_asyncio

from konarae.core.database.models import Announcement, Attachment
from konarae.core.search.chunking_service import ChunkingService
from konarae.core.search.keyword_service import extract_keywords, keyword_score
from konarae.core.search.pg_index_service import PgIndexService
from konarae.core.search.pg_search_service import (
    PgSearchService,
    SearchHit,
    combine_scores,
    cosine_similarity,
    rank_results,
)

TOPICS = ("창업", "수출", "인력")


class TopicEmbeddings:
    """One dimension per topic word plus a small constant component."""

    def __init__(self):
        self.calls = 0

    def _vector(self, text):
        return [1.0 if topic in text else 0.0 for topic in TOPICS] + [0.1]

    async def get_embedding(self, text):
        self.calls += 1
        return self._vector(text)

    async def get_embeddings_batch(self, texts):
        self.calls += 1
        return [self._vector(t) for t in texts]


def _words(n):
    return " ".join(f"w{i}" for i in range(n))


# =============================================================================
# CHUNKING
# =============================================================================


class TestChunking:

    def setup_method(self):
        self.chunker = ChunkingService(chunk_size=4, overlap=1)

    def test_empty_text(self):
        assert self.chunker.chunk_text("") == []
        assert self.chunker.chunk_text("   \n\t ") == []
        assert self.chunker.chunk_text(None) == []

    def test_single_word(self):
        assert self.chunker.chunk_text("word") == ["word"]

    def test_text_shorter_than_window_is_one_chunk(self):
        assert self.chunker.chunk_text("청년 창업 지원") == ["청년 창업 지원"]

    @pytest.mark.parametrize(
        "n,size,overlap",
        [(4, 4, 1), (5, 4, 1), (10, 4, 1), (11, 4, 2), (100, 10, 3), (1000, 512, 50), (7, 3, 0)],
    )
    def test_chunk_count_and_first_chunk(self, n, size, overlap):
        chunks = self.chunker.chunk_text(_words(n), size, overlap)

        expected = 1 if n <= size else math.ceil((n - overlap) / (size - overlap))
        assert len(chunks) == expected
        assert chunks[0].split() == _words(min(n, size)).split()
        assert self.chunker.estimate_chunk_count(n, size, overlap) == expected

    def test_consecutive_chunks_share_overlap(self):
        chunks = self.chunker.chunk_text(_words(10))

        assert chunks == ["w0 w1 w2 w3", "w3 w4 w5 w6", "w6 w7 w8 w9"]

    def test_last_chunk_ends_at_last_word(self):
        chunks = self.chunker.chunk_text(_words(11), 4, 2)
        assert chunks[-1].split()[-1] == "w10"

    @pytest.mark.parametrize("size,overlap", [(0, 0), (4, 4), (4, 5), (4, -1)])
    def test_invalid_configuration(self, size, overlap):
        with pytest.raises(ValueError):
            self.chunker.chunk_text("a b c", size, overlap)


# =============================================================================
# KEYWORDS
# =============================================================================


class TestKeywords:

    def test_empty_text(self):
        assert extract_keywords("") == set()
        assert extract_keywords(None) == set()

    def test_stop_words_removed_regardless_of_case(self):
        keywords = extract_keywords("The Export voucher AND the THE startup fund")

        assert "the" not in keywords
        assert "and" not in keywords
        assert keywords == {"export", "voucher", "startup", "fund"}

    def test_korean_tokens_and_punctuation(self):
        keywords = extract_keywords("청년 창업, 자금 및 (멘토링) 지원 - 창업!")

        assert keywords == {"청년", "창업", "자금", "멘토링", "지원"}

    def test_limit(self):
        assert len(extract_keywords(_words(80), limit=10)) == 10

    def test_keyword_score(self):
        assert keyword_score({"청년", "창업"}, ["창업", "자금"]) == 0.5
        assert keyword_score(set(), ["창업"]) == 0.0


# =============================================================================
# SCORING
# =============================================================================


def _hit(source_id, combined):
    return SearchHit(
        id=source_id,
        source_type="announcement",
        source_id=source_id,
        content="",
        similarity=combined,
        keyword_score=combined,
        combined_score=combined,
    )


class TestScoring:

    def test_combine_scores(self):
        assert combine_scores(0.8, 0.5, 0.7) == pytest.approx(0.7 * 0.8 + 0.3 * 0.5)
        assert combine_scores(0.8, 0.5, 1.0) == pytest.approx(0.8)
        assert combine_scores(0.8, 0.5, 0.0) == pytest.approx(0.5)

    @pytest.mark.parametrize("weight", [-0.1, 1.01])
    def test_weight_out_of_range(self, weight):
        with pytest.raises(ValueError):
            combine_scores(0.5, 0.5, weight)

    def test_rank_results_threshold_sort_and_cap(self):
        hits = [_hit("a", 0.4), _hit("b", 0.9), _hit("c", 0.75), _hit("d", 0.8)]

        ranked = rank_results(hits, match_threshold=0.5, match_count=2)

        assert [h.source_id for h in ranked] == ["b", "d"]

    def test_cosine_similarity(self):
        assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
        assert cosine_similarity([0, 0], [1, 0]) == 0.0


# =============================================================================
# INDEX + SEARCH
# =============================================================================


@pytest.fixture
def embeddings():
    return TopicEmbeddings()


@pytest.fixture
def index_service(database, embeddings):
    return PgIndexService(
        chunker=ChunkingService(chunk_size=5, overlap=1),
        embeddings=embeddings,
        database=database,
    )


class TestIndexService:

    @pytest.mark.asyncio
    async def test_store_replaces_all_chunks(self, database, index_service):
        async with database.get_session() as session:
            first = await index_service.store_document_embeddings(
                session, "announcement", "p1", _words(13), {"name": "v1"}
            )
        async with database.get_session() as session:
            assert first == 3
            assert await index_service.get_embedding_count(session) == 3

        async with database.get_session() as session:
            second = await index_service.store_document_embeddings(
                session, "announcement", "p1", "청년 창업 자금 지원"
            )
        async with database.get_session() as session:
            chunks = await index_service.get_embeddings_for_source(session, "announcement", "p1")

        assert second == 1
        assert [c.chunk_index for c in chunks] == [0]
        assert chunks[0].content == "청년 창업 자금 지원"
        assert set(chunks[0].keywords) == {"청년", "창업", "자금", "지원"}

    @pytest.mark.asyncio
    async def test_other_sources_untouched(self, database, index_service):
        async with database.get_session() as session:
            await index_service.store_document_embeddings(session, "announcement", "p1", "창업 지원 사업")
            await index_service.store_document_embeddings(session, "announcement", "p2", "수출 지원 사업")
        async with database.get_session() as session:
            await index_service.store_document_embeddings(session, "announcement", "p1", "")
        async with database.get_session() as session:
            assert await index_service.get_embeddings_for_source(session, "announcement", "p1") == []
            assert len(await index_service.get_embeddings_for_source(session, "announcement", "p2")) == 1

    @pytest.mark.asyncio
    async def test_embedding_failure_keeps_previous_chunks(self, database, index_service, embeddings):
        async with database.get_session() as session:
            await index_service.store_document_embeddings(session, "announcement", "p1", "창업 지원 사업")

        async def broken(texts):
            raise RuntimeError("embedding API down")

        embeddings.get_embeddings_batch = broken
        with pytest.raises(RuntimeError):
            async with database.get_session() as session:
                await index_service.store_document_embeddings(session, "announcement", "p1", "새 내용")

        async with database.get_session() as session:
            chunks = await index_service.get_embeddings_for_source(session, "announcement", "p1")
        assert [c.content for c in chunks] == ["창업 지원 사업"]

    @pytest.mark.asyncio
    async def test_delete_embeddings(self, database, index_service):
        async with database.get_session() as session:
            await index_service.store_document_embeddings(session, "attachment", "a1", _words(9))
        async with database.get_session() as session:
            assert await index_service.delete_embeddings(session, "attachment", "a1") == 2
        async with database.get_session() as session:
            assert await index_service.get_embedding_count(session, "attachment") == 0


class TestPendingAnnouncements:

    @pytest.mark.asyncio
    async def test_flagged_announcements_indexed_once(self, database, index_service):
        async with database.get_session() as session:
            project = Announcement(
                source_id="k-startup",
                external_id="101",
                name="청년 창업 자금 지원",
                organization="창업진흥원",
                summary="예비 창업자 사업화 자금",
            )
            done = Announcement(source_id="k-startup", external_id="102", name="수출 지원", needs_embedding=False)
            session.add_all([project, done])
            await session.flush()
            session.add(
                Attachment(
                    project_id=project.id,
                    file_name="공고문.pdf",
                    source_url="https://www.k-startup.go.kr/f/1",
                    parsed_content="신청 자격 및 제출 서류",
                    parsing_priority=100,
                )
            )

        stats = await index_service.index_pending_announcements(limit=10)

        assert stats == {"indexed": 1, "chunks": 4, "failed": 0}
        async with database.get_session() as session:
            chunks = await index_service.get_embeddings_for_source(session, "announcement", project.id)
            refreshed = await session.get(Announcement, project.id)
        assert chunks[0].chunk_metadata["organization"] == "창업진흥원"
        assert "서류" in chunks[-1].content
        assert refreshed.needs_embedding is False

        assert await index_service.index_pending_announcements(limit=10) == {
            "indexed": 0,
            "chunks": 0,
            "failed": 0,
        }


class TestHybridSearch:

    @pytest_asyncio.fixture
    async def seeded(self, database, index_service):
        async with database.get_session() as session:
            await index_service.store_document_embeddings(
                session, "announcement", "startup", "청년 창업 자금 지원 사업"
            )
            await index_service.store_document_embeddings(
                session, "announcement", "export", "수출 바우처 해외 마케팅 지원"
            )
            await index_service.store_document_embeddings(
                session, "attachment", "startup-file", "창업 사업계획서 작성 안내"
            )
        return database

    @pytest.mark.asyncio
    async def test_threshold_discards_weak_matches(self, seeded, embeddings):
        service = PgSearchService(embeddings=embeddings)
        async with seeded.get_session() as session:
            hits = await service.hybrid_search(
                session, "청년 창업", source_type="announcement", match_threshold=0.5
            )

        assert [h.source_id for h in hits] == ["startup"]
        assert hits[0].similarity == pytest.approx(1.0)
        assert hits[0].keyword_score == pytest.approx(1.0)
        assert hits[0].combined_score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_results_sorted_and_capped(self, seeded, embeddings):
        service = PgSearchService(embeddings=embeddings)
        async with seeded.get_session() as session:
            hits = await service.hybrid_search(session, "청년 창업", match_threshold=0.0, match_count=2)

        assert len(hits) == 2
        assert hits[0].source_id == "startup"
        assert hits[0].combined_score >= hits[1].combined_score
        assert hits[1].source_id == "startup-file"

    @pytest.mark.asyncio
    async def test_semantic_weight_zero_is_keyword_only(self, seeded, embeddings):
        service = PgSearchService(embeddings=embeddings)
        async with seeded.get_session() as session:
            hits = await service.hybrid_search(
                session, "해외 마케팅", match_threshold=0.0, semantic_weight=0.0
            )

        assert hits[0].source_id == "export"
        assert hits[0].combined_score == pytest.approx(1.0)
        assert all(h.combined_score == pytest.approx(h.keyword_score) for h in hits)

    @pytest.mark.asyncio
    async def test_empty_query(self, seeded, embeddings):
        service = PgSearchService(embeddings=embeddings)
        async with seeded.get_session() as session:
            assert await service.hybrid_search(session, "   ") == []
        assert embeddings.calls == 3

    @pytest.mark.asyncio
    async def test_invalid_weight(self, seeded, embeddings):
        service = PgSearchService(embeddings=embeddings)
        async with seeded.get_session() as session:
            with pytest.raises(ValueError):
                await service.hybrid_search(session, "창업", semantic_weight=1.5)
