# ============================================================================
# backend/konarae/core/search/pg_index_service.py
# ============================================================================
"""
Index Service - stores searchable chunks with embeddings and keywords.

The chunks of one ``(source_type, source_id)`` are always replaced as a
whole: existing rows are deleted and the new chunk set inserted in the same
session, so a source never mixes chunks from two versions of its text.

Usage:
    from konarae.core.search.pg_index_service import pg_index_service

    async with database_service.get_session() as session:
        count = await pg_index_service.store_document_embeddings(
            session, "announcement", str(project.id), text, {"name": project.name}
        )

    # Batch maintenance for announcements flagged needs_embedding
    stats = await pg_index_service.index_pending_announcements(limit=20)
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from konarae.core.database.models import Announcement, Attachment, DocumentEmbedding
from konarae.core.search.chunking_service import ChunkingService, chunking_service
from konarae.core.search.embedding_service import EmbeddingService, embedding_service
from konarae.core.search.keyword_service import extract_keywords
from konarae.core.shared.database_service import DatabaseService, database_service

logger = logging.getLogger("konarae.pg_index_service")

ANNOUNCEMENT_SOURCE_TYPE = "announcement"


def build_search_text(project: Announcement, attachments: List[Attachment]) -> str:
    """Text indexed for an announcement: core fields, then parsed attachments."""
    parts = [
        project.name,
        project.organization,
        project.summary,
        project.description,
        project.eligibility,
    ]
    for attachment in sorted(attachments, key=lambda a: -(a.parsing_priority or 0)):
        if attachment.parsed_content:
            parts.append(attachment.parsed_content)
    return "\n\n".join(p.strip() for p in parts if p and p.strip())


class PgIndexService:
    """Chunk, embed and store search documents."""

    def __init__(
        self,
        chunker: Optional[ChunkingService] = None,
        embeddings: Optional[EmbeddingService] = None,
        database: Optional[DatabaseService] = None,
    ):
        self.chunker = chunker or chunking_service
        self.embeddings = embeddings or embedding_service
        self.database = database or database_service

    async def delete_embeddings(self, session: AsyncSession, source_type: str, source_id: str) -> int:
        """Remove every chunk of a source. Returns the number of rows deleted."""
        result = await session.execute(
            delete(DocumentEmbedding).where(
                DocumentEmbedding.source_type == source_type,
                DocumentEmbedding.source_id == str(source_id),
            )
        )
        return result.rowcount or 0

    async def store_document_embeddings(
        self,
        session: AsyncSession,
        source_type: str,
        source_id: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Replace the chunks of a source with chunks of ``content``.

        Embeddings are computed before anything is deleted, so an embedding
        failure leaves the previous chunk set intact.

        Returns:
            Number of chunks stored (0 for empty content, which only clears)
        """
        source_id = str(source_id)
        chunks = self.chunker.chunk_text(content)
        vectors = await self.embeddings.get_embeddings_batch(chunks) if chunks else []

        removed = await self.delete_embeddings(session, source_type, source_id)
        for index, (chunk, vector) in enumerate(zip(chunks, vectors)):
            session.add(
                DocumentEmbedding(
                    source_type=source_type,
                    source_id=source_id,
                    chunk_index=index,
                    content=chunk,
                    keywords=sorted(extract_keywords(chunk)),
                    embedding=vector,
                    chunk_metadata={**(metadata or {}), "chunk_count": len(chunks)},
                )
            )
        await session.flush()

        logger.debug(
            f"Indexed {source_type}:{source_id}: {len(chunks)} chunks stored, {removed} replaced"
        )
        return len(chunks)

    async def get_embedding_count(self, session: AsyncSession, source_type: Optional[str] = None) -> int:
        query = select(func.count()).select_from(DocumentEmbedding)
        if source_type:
            query = query.where(DocumentEmbedding.source_type == source_type)
        return (await session.execute(query)).scalar_one()

    async def get_embeddings_for_source(
        self,
        session: AsyncSession,
        source_type: str,
        source_id: str,
    ) -> List[DocumentEmbedding]:
        result = await session.execute(
            select(DocumentEmbedding)
            .where(
                DocumentEmbedding.source_type == source_type,
                DocumentEmbedding.source_id == str(source_id),
            )
            .order_by(DocumentEmbedding.chunk_index.asc())
        )
        return list(result.scalars().all())

    async def index_announcement(self, session: AsyncSession, project: Announcement) -> int:
        result = await session.execute(select(Attachment).where(Attachment.project_id == project.id))
        attachments = list(result.scalars().all())
        count = await self.store_document_embeddings(
            session,
            ANNOUNCEMENT_SOURCE_TYPE,
            str(project.id),
            build_search_text(project, attachments),
            {
                "name": project.name,
                "organization": project.organization,
                "category": project.category,
                "region": project.region,
            },
        )
        project.needs_embedding = False
        return count

    async def index_pending_announcements(self, limit: int = 20) -> Dict[str, int]:
        """
        Index announcements flagged ``needs_embedding``.

        Each announcement is indexed in its own session; a failure leaves its
        flag set so the next run retries it.

        Returns:
            {"indexed": n, "chunks": n, "failed": n}
        """
        async with self.database.get_session() as session:
            result = await session.execute(
                select(Announcement.id)
                .where(Announcement.needs_embedding.is_(True), Announcement.deleted_at.is_(None))
                .order_by(Announcement.updated_at.asc())
                .limit(limit)
            )
            project_ids = [row[0] for row in result.all()]

        stats = {"indexed": 0, "chunks": 0, "failed": 0}
        for project_id in project_ids:
            try:
                async with self.database.get_session() as session:
                    project = await session.get(Announcement, project_id)
                    if project is None:
                        continue
                    stats["chunks"] += await self.index_announcement(session, project)
                stats["indexed"] += 1
            except Exception as e:
                stats["failed"] += 1
                logger.error(f"Failed to index announcement {project_id}: {e}")

        if project_ids:
            logger.info(
                f"Embedding batch: indexed={stats['indexed']}, chunks={stats['chunks']}, "
                f"failed={stats['failed']}"
            )
        return stats


# Global service instance
pg_index_service = PgIndexService()
