# ============================================================================
# backend/konarae/core/dedup/deduplication_service.py
# ============================================================================
"""
Clusters announcements that describe the same real-world program.

Flow per batch (``group_batch``):
    1. Pick up to ``batch_size`` announcements whose fingerprint is not yet
       computed (``normalized_name IS NULL``; the crawler clears it whenever
       the name or organization changes)
    2. Compute the fingerprint (normalized name, normalized organization,
       program year)
    3. Join an existing group with the same fingerprint, or form a new group
       with other ungrouped announcements sharing it; otherwise the
       announcement stays a singleton (implicitly canonical)
    4. For every touched group: select the canonical member, raise the review
       flag on category/amount disagreement, merge supplementary fields

Matching is exact equality on the fingerprint, so a batch is deterministic
and re-running it on unchanged data changes nothing. Large backlogs are
drained by ``run_until_idle``, which calls ``group_batch`` until a call
processes zero rows.

Usage:
    from konarae.core.dedup.deduplication_service import deduplication_service

    async with database_service.get_session() as session:
        stats = await deduplication_service.group_batch(session, batch_size=50)
        # {"processed": 50, "groupsCreated": 3, "projectsGrouped": 8}
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from konarae.config import settings
from konarae.core.database.models import Announcement, ProjectGroup
from konarae.core.dedup.normalization import Fingerprint, normalize
from konarae.core.shared.database_service import DatabaseService, database_service

logger = logging.getLogger("konarae.deduplication")

SUPPLEMENTARY_FIELDS = (
    "description",
    "eligibility",
    "application_process",
    "evaluation_criteria",
    "contact_info",
    "detail_url",
)


def _fingerprint_of(project: Announcement) -> Fingerprint:
    return Fingerprint(
        normalized_name=project.normalized_name or "",
        normalized_org=project.normalized_org or "",
        project_year=project.project_year,
    )


def _fingerprint_of_group(group: ProjectGroup):
    return (group.normalized_name, group.normalized_org or "", group.project_year)


def _year_clause(column, year: Optional[int]):
    return column.is_(None) if year is None else column == year


def update_normalized_fields(batch: Iterable[Announcement]) -> int:
    """Compute and store the fingerprint fields of each announcement."""
    count = 0
    for project in batch:
        fingerprint = normalize(project.name, project.organization)
        project.normalized_name = fingerprint.normalized_name
        project.normalized_org = fingerprint.normalized_org
        project.project_year = fingerprint.project_year
        count += 1
    return count


def select_canonical(group: ProjectGroup, members: Sequence[Announcement]) -> Optional[Announcement]:
    """
    Mark exactly one member canonical.

    The member with the latest deadline wins, then the latest creation time;
    the id breaks remaining ties so the choice is stable across runs.
    """
    if not members:
        group.canonical_project_id = None
        return None

    def rank(project: Announcement):
        return (
            project.deadline or datetime.min,
            project.created_at or datetime.min,
            str(project.id),
        )

    canonical = max(members, key=rank)
    for project in members:
        is_canonical = project is canonical
        if project.is_canonical != is_canonical:
            project.is_canonical = is_canonical
    if group.canonical_project_id != canonical.id:
        group.canonical_project_id = canonical.id
    return canonical


def needs_review(members: Sequence[Announcement], amount_tolerance: float) -> bool:
    """Whether members disagree on category or on amount beyond the tolerance."""
    categories = {p.category for p in members if p.category}
    if len(categories) > 1:
        return True

    amounts = [p.amount_max for p in members if p.amount_max]
    if len(amounts) >= 2:
        highest, lowest = max(amounts), min(amounts)
        if (highest - lowest) / highest > amount_tolerance:
            return True
    return False


def merge_supplementary_data(
    canonical: Announcement,
    others: Sequence[Announcement],
) -> Dict[str, str]:
    """Values the canonical member lacks, taken from the other members."""
    merged: Dict[str, str] = {}
    for other in others:
        for field_name in SUPPLEMENTARY_FIELDS:
            if field_name in merged or getattr(canonical, field_name):
                continue
            value = getattr(other, field_name)
            if value:
                merged[field_name] = value
    return merged


class DeduplicationService:
    """Batch clustering of announcements into ProjectGroups."""

    def __init__(self, database: Optional[DatabaseService] = None, amount_tolerance: Optional[float] = None):
        self.database = database or database_service
        self.amount_tolerance = (
            amount_tolerance if amount_tolerance is not None else settings.dedup_amount_tolerance
        )

    # =========================================================================
    # Lookups
    # =========================================================================

    async def _find_group(self, session: AsyncSession, fingerprint: Fingerprint) -> Optional[ProjectGroup]:
        result = await session.execute(
            select(ProjectGroup)
            .where(
                ProjectGroup.normalized_name == fingerprint.normalized_name,
                ProjectGroup.normalized_org == fingerprint.normalized_org,
                _year_clause(ProjectGroup.project_year, fingerprint.project_year),
            )
            .order_by(ProjectGroup.created_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _find_ungrouped_peers(
        self,
        session: AsyncSession,
        project: Announcement,
        fingerprint: Fingerprint,
    ) -> List[Announcement]:
        result = await session.execute(
            select(Announcement).where(
                Announcement.id != project.id,
                Announcement.group_id.is_(None),
                Announcement.deleted_at.is_(None),
                Announcement.normalized_name == fingerprint.normalized_name,
                Announcement.normalized_org == fingerprint.normalized_org,
                _year_clause(Announcement.project_year, fingerprint.project_year),
            )
        )
        return list(result.scalars().all())

    async def _members(self, session: AsyncSession, group_id: UUID) -> List[Announcement]:
        result = await session.execute(
            select(Announcement).where(
                Announcement.group_id == group_id,
                Announcement.deleted_at.is_(None),
            )
        )
        return list(result.scalars().all())

    # =========================================================================
    # Group maintenance
    # =========================================================================

    async def refresh_group(self, session: AsyncSession, group: ProjectGroup) -> None:
        """Recompute canonical member, review flag, source count and merged data."""
        members = await self._members(session, group.id)
        canonical = select_canonical(group, members)

        if group.source_count != len(members):
            group.source_count = len(members)

        if group.review_status == "auto_grouped" and needs_review(members, self.amount_tolerance):
            group.review_status = "pending_review"
            logger.info(f"Group {group.id} flagged for review ({len(members)} members disagree)")

        if canonical is not None:
            merged = merge_supplementary_data(canonical, [m for m in members if m is not canonical])
            if merged != (group.merged_data or {}):
                group.merged_data = merged

    async def _detach_if_moved(
        self,
        session: AsyncSession,
        project: Announcement,
        fingerprint: Fingerprint,
        touched: Dict[UUID, ProjectGroup],
    ) -> None:
        """Leave the current group when the fingerprint no longer matches it."""
        if project.group_id is None:
            return
        group = await session.get(ProjectGroup, project.group_id)
        if group is not None and _fingerprint_of_group(group) == fingerprint.key:
            return
        project.group_id = None
        project.is_canonical = True
        if group is not None:
            touched[group.id] = group

    async def group_batch(self, session: AsyncSession, batch_size: Optional[int] = None) -> Dict[str, int]:
        """
        Fingerprint and cluster one batch of announcements.

        Returns:
            {"processed": n, "groupsCreated": n, "projectsGrouped": n}
        """
        batch_size = batch_size or settings.dedup_batch_size
        result = await session.execute(
            select(Announcement)
            .where(Announcement.normalized_name.is_(None), Announcement.deleted_at.is_(None))
            .order_by(Announcement.created_at.asc(), Announcement.id.asc())
            .limit(batch_size)
        )
        batch = list(result.scalars().all())
        stats = {"processed": len(batch), "groupsCreated": 0, "projectsGrouped": 0}
        if not batch:
            return stats

        update_normalized_fields(batch)
        await session.flush()

        touched: Dict[UUID, ProjectGroup] = {}
        for project in batch:
            fingerprint = _fingerprint_of(project)
            await self._detach_if_moved(session, project, fingerprint, touched)
            if project.group_id is not None:
                continue
            if not fingerprint.normalized_name:
                project.is_canonical = True
                continue

            group = await self._find_group(session, fingerprint)
            if group is not None:
                project.group_id = group.id
                stats["projectsGrouped"] += 1
                touched[group.id] = group
                continue

            peers = await self._find_ungrouped_peers(session, project, fingerprint)
            if not peers:
                project.is_canonical = True
                continue

            group = ProjectGroup(
                normalized_name=fingerprint.normalized_name,
                normalized_org=fingerprint.normalized_org,
                project_year=fingerprint.project_year,
                review_status="auto_grouped",
                merged_data={},
            )
            session.add(group)
            await session.flush()
            for member in [project, *peers]:
                member.group_id = group.id
            stats["groupsCreated"] += 1
            stats["projectsGrouped"] += 1 + len(peers)
            touched[group.id] = group

        await session.flush()
        for group in touched.values():
            await self.refresh_group(session, group)
        await session.flush()

        logger.info(
            f"Dedup batch: processed={stats['processed']}, "
            f"groups_created={stats['groupsCreated']}, grouped={stats['projectsGrouped']}"
        )
        return stats

    async def run_until_idle(
        self,
        batch_size: Optional[int] = None,
        max_batches: Optional[int] = None,
    ) -> Dict[str, int]:
        """Call ``group_batch`` in fresh sessions until a batch processes nothing."""
        totals = {"processed": 0, "groupsCreated": 0, "projectsGrouped": 0, "batches": 0}
        while max_batches is None or totals["batches"] < max_batches:
            async with self.database.get_session() as session:
                stats = await self.group_batch(session, batch_size)
            if stats["processed"] == 0:
                break
            totals["batches"] += 1
            for key in ("processed", "groupsCreated", "projectsGrouped"):
                totals[key] += stats[key]
        return totals


# Global service instance
deduplication_service = DeduplicationService()
