# ============================================================================
# backend/konarae/core/search/pg_search_service.py
# ============================================================================
"""
Hybrid Search Service - semantic similarity combined with keyword overlap.

Scoring:
    semantic  = cosine similarity between query and chunk embeddings
    keyword   = fraction of query keywords present in the chunk keywords
    combined  = semantic_weight × semantic + (1 − semantic_weight) × keyword

Results with ``combined < match_threshold`` are dropped; the rest are sorted
by ``combined`` descending and capped at ``match_count``.

On PostgreSQL the nearest ``match_count × search_candidate_multiplier``
chunks are fetched with pgvector (``<=>`` cosine distance) and re-scored; on
other databases every chunk in scope is scored in Python.

Usage:
    from konarae.core.search.pg_search_service import pg_search_service

    async with database_service.get_session() as session:
        hits = await pg_search_service.hybrid_search(
            session, "청년 창업 자금", source_type="announcement", match_count=5
        )
"""

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from konarae.config import settings
from konarae.core.database.models import DocumentEmbedding
from konarae.core.search.embedding_service import EmbeddingService, embedding_service
from konarae.core.search.keyword_service import extract_keywords, keyword_score

logger = logging.getLogger("konarae.pg_search_service")


@dataclass
class SearchHit:
    """A single ranked chunk."""

    id: str
    source_type: str
    source_id: str
    content: str
    similarity: float
    keyword_score: float
    combined_score: float
    chunk_metadata: Dict[str, Any] = field(default_factory=dict)


def combine_scores(similarity: float, keyword: float, semantic_weight: float) -> float:
    if not 0.0 <= semantic_weight <= 1.0:
        raise ValueError(f"semantic_weight must be within [0, 1], got {semantic_weight}")
    return semantic_weight * similarity + (1.0 - semantic_weight) * keyword


def rank_results(hits: Iterable[SearchHit], match_threshold: float, match_count: int) -> List[SearchHit]:
    """Drop hits below the threshold, sort by combined score, cap the count."""
    kept = [hit for hit in hits if hit.combined_score >= match_threshold]
    kept.sort(key=lambda hit: hit.combined_score, reverse=True)
    return kept[:match_count]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class PgSearchService:
    """Hybrid semantic + keyword search over ``document_embeddings``."""

    def __init__(self, embeddings: Optional[EmbeddingService] = None):
        self.embeddings = embeddings or embedding_service

    async def _vector_candidates(
        self,
        session: AsyncSession,
        query_embedding: List[float],
        source_type: Optional[str],
        limit: int,
    ) -> List[Dict[str, Any]]:
        filters = ""
        params: Dict[str, Any] = {
            "embedding": json.dumps(query_embedding),
            "limit": limit,
        }
        if source_type:
            filters = "WHERE de.source_type = :source_type"
            params["source_type"] = source_type

        sql = text(f"""
            SELECT
                de.id, de.source_type, de.source_id, de.content,
                de.keywords, de.chunk_metadata,
                1 - (de.embedding <=> CAST(:embedding AS vector)) as similarity
            FROM document_embeddings de
            {filters}
            ORDER BY de.embedding <=> CAST(:embedding AS vector)
            LIMIT :limit
        """)
        result = await session.execute(sql, params)
        return [dict(row._mapping) for row in result]

    async def _scan_candidates(
        self,
        session: AsyncSession,
        query_embedding: List[float],
        source_type: Optional[str],
    ) -> List[Dict[str, Any]]:
        query = select(DocumentEmbedding)
        if source_type:
            query = query.where(DocumentEmbedding.source_type == source_type)
        rows = (await session.execute(query)).scalars().all()
        return [
            {
                "id": row.id,
                "source_type": row.source_type,
                "source_id": row.source_id,
                "content": row.content,
                "keywords": row.keywords,
                "chunk_metadata": row.chunk_metadata,
                "similarity": cosine_similarity(query_embedding, row.embedding),
            }
            for row in rows
        ]

    async def hybrid_search(
        self,
        session: AsyncSession,
        query_text: str,
        source_type: Optional[str] = None,
        match_threshold: Optional[float] = None,
        match_count: Optional[int] = None,
        semantic_weight: Optional[float] = None,
    ) -> List[SearchHit]:
        """
        Rank chunks against ``query_text``.

        Args:
            session: Database session
            query_text: Free-text query
            source_type: Restrict to one source type (e.g. "announcement")
            match_threshold: Minimum combined score (default from settings)
            match_count: Maximum number of hits (default from settings)
            semantic_weight: Weight of the semantic score in [0, 1]

        Returns:
            Hits sorted by combined score, highest first
        """
        match_threshold = settings.search_match_threshold if match_threshold is None else match_threshold
        match_count = match_count or settings.search_match_count
        semantic_weight = settings.search_semantic_weight if semantic_weight is None else semantic_weight
        if not 0.0 <= semantic_weight <= 1.0:
            raise ValueError(f"semantic_weight must be within [0, 1], got {semantic_weight}")

        if not (query_text or "").strip():
            return []

        query_keywords = extract_keywords(query_text)
        query_embedding = await self.embeddings.get_embedding(query_text)

        if session.get_bind().dialect.name == "postgresql":
            candidates = await self._vector_candidates(
                session,
                query_embedding,
                source_type,
                match_count * settings.search_candidate_multiplier,
            )
        else:
            candidates = await self._scan_candidates(session, query_embedding, source_type)

        hits = []
        for row in candidates:
            similarity = float(row["similarity"] or 0.0)
            lexical = keyword_score(query_keywords, row["keywords"] or [])
            hits.append(
                SearchHit(
                    id=str(row["id"]),
                    source_type=row["source_type"],
                    source_id=row["source_id"],
                    content=row["content"],
                    similarity=similarity,
                    keyword_score=lexical,
                    combined_score=combine_scores(similarity, lexical, semantic_weight),
                    chunk_metadata=row["chunk_metadata"] or {},
                )
            )

        ranked = rank_results(hits, match_threshold, match_count)
        logger.debug(
            f"Hybrid search '{query_text[:40]}': {len(candidates)} candidates, {len(ranked)} hits"
        )
        return ranked


# Global service instance
pg_search_service = PgSearchService()
