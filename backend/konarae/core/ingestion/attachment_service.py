# ============================================================================
# backend/konarae/core/ingestion/attachment_service.py
# ============================================================================
"""
Attachment bookkeeping for announcements.

An attachment is identified by ``(project_id, source_url)``. Re-crawling the
same detail page updates the existing row instead of adding another one, and
``cleanup_duplicate_attachments`` collapses rows left behind by earlier
crawls to the most recently created one.

Usage:
    from konarae.core.ingestion.attachment_service import attachment_service

    attachment, created = await attachment_service.upsert_attachment(session, project.id, link)
    removed = await attachment_service.cleanup_duplicate_attachments(session)
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from konarae.connectors.scrape.detail_resolver import AttachmentLink
from konarae.core.database.models import Attachment

logger = logging.getLogger("konarae.attachment_service")


class AttachmentService:
    """Create, update and deduplicate attachment rows."""

    async def find_by_source_url(
        self,
        session: AsyncSession,
        project_id: UUID,
        source_url: str,
    ) -> Optional[Attachment]:
        """Most recently created attachment for ``(project_id, source_url)``."""
        result = await session.execute(
            select(Attachment)
            .where(Attachment.project_id == project_id, Attachment.source_url == source_url)
            .order_by(Attachment.created_at.desc(), Attachment.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def upsert_attachment(
        self,
        session: AsyncSession,
        project_id: UUID,
        link: AttachmentLink,
    ) -> Tuple[Attachment, bool]:
        """
        Record an attachment observed on a detail page.

        Existing rows keep their storage path and analysis state; only the
        descriptive fields are refreshed.

        Returns:
            (attachment, created)
        """
        existing = await self.find_by_source_url(session, project_id, link.url)
        if existing is not None:
            existing.file_name = link.file_name
            existing.file_type = link.file_type
            existing.should_parse = link.should_parse
            existing.parsing_priority = link.parsing_priority
            if link.file_size is not None:
                existing.file_size = link.file_size
            existing.updated_at = datetime.utcnow()
            return existing, False

        attachment = Attachment(
            project_id=project_id,
            file_name=link.file_name,
            file_type=link.file_type,
            mime_type=link.mime_type,
            file_size=link.file_size,
            source_url=link.url,
            should_parse=link.should_parse,
            parsing_priority=link.parsing_priority,
        )
        session.add(attachment)
        await session.flush()
        return attachment, True

    async def list_for_project(self, session: AsyncSession, project_id: UUID) -> List[Attachment]:
        result = await session.execute(
            select(Attachment)
            .where(Attachment.project_id == project_id)
            .order_by(Attachment.parsing_priority.desc(), Attachment.created_at.asc())
        )
        return list(result.scalars().all())

    async def cleanup_duplicate_attachments(
        self,
        session: AsyncSession,
        project_id: Optional[UUID] = None,
    ) -> int:
        """
        Keep only the most recently created attachment per ``(project_id, source_url)``.

        Args:
            session: Database session
            project_id: Limit cleanup to one announcement (default: all)

        Returns:
            Number of rows deleted (0 when already clean)
        """
        query = select(
            Attachment.id, Attachment.project_id, Attachment.source_url, Attachment.created_at
        )
        if project_id is not None:
            query = query.where(Attachment.project_id == project_id)
        rows = (await session.execute(query)).all()

        newest: Dict[Tuple[UUID, str], Tuple[datetime, str, UUID]] = {}
        to_delete: List[UUID] = []
        for attachment_id, pid, source_url, created_at in rows:
            key = (pid, source_url)
            rank = (created_at, str(attachment_id), attachment_id)
            current = newest.get(key)
            if current is None:
                newest[key] = rank
            elif rank[:2] > current[:2]:
                to_delete.append(current[2])
                newest[key] = rank
            else:
                to_delete.append(attachment_id)

        if not to_delete:
            return 0

        await session.execute(delete(Attachment).where(Attachment.id.in_(to_delete)))
        logger.info(f"Removed {len(to_delete)} duplicate attachments")
        return len(to_delete)


# Global service instance
attachment_service = AttachmentService()
