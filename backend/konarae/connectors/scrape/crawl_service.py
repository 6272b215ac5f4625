# ============================================================================
# backend/konarae/connectors/scrape/crawl_service.py
# ============================================================================
"""
Crawl Service - runs crawl jobs end to end.

One job crawls one Source:
    1. Fetch the listing page (plain HTTP, or the shared browser for WAF hosts
       and browser-type sources) and extract announcement stubs
    2. For each stub, one at a time with a polite delay: resolve the detail
       page, upsert the announcement by (source_id, external_id), record the
       attachments, store the parseable ones, then run analysis
    3. Mark the job completed with its counters and stamp the source

A failure inside one listing item is logged and counted in ``items_failed``;
the job continues with the next item. The job is marked failed only when the
listing page itself cannot be processed.

Usage:
    from konarae.connectors.scrape.crawl_service import crawl_service

    job_ids = await crawl_service.schedule_jobs()
    stats = await crawl_service.process_crawl_job(job_ids[0])
    # {"projectsFound": 12, "projectsNew": 3, "projectsUpdated": 9, "filesProcessed": 7}
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from konarae.config import settings
from konarae.connectors.adapters.browser_pool import BrowserPool, browser_pool
from konarae.connectors.adapters.fetch_adapter import FetchAdapter
from konarae.connectors.adapters.storage_adapter import StorageAdapter, storage_adapter
from konarae.connectors.scrape.detail_resolver import AttachmentLink, DetailResolver, DetailResult
from konarae.connectors.scrape.listing_extractor import (
    ListingCandidate,
    extract_listings,
    parse_date_window,
)
from konarae.connectors.scrape.validators import resolve_region, validate_category
from konarae.core.database.models import Announcement, Attachment, CrawlJob, Source
from konarae.core.ingestion.analysis_orchestrator import AnalysisOrchestrator, analysis_orchestrator
from konarae.core.ingestion.attachment_service import attachment_service
from konarae.core.shared.config_loader import config_loader
from konarae.core.shared.database_service import DatabaseService, database_service
from konarae.core.shared.errors import FetchError
from konarae.core.shared.retry import RetryPolicy, with_retry
from konarae.models.config_models import SourceConfig

logger = logging.getLogger("konarae.crawl_service")

DEFAULT_ORGANIZATION = "미분류"


@dataclass
class CrawlStats:
    """Counters of one job run."""

    projects_found: int = 0
    projects_new: int = 0
    projects_updated: int = 0
    files_processed: int = 0
    items_failed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "projectsFound": self.projects_found,
            "projectsNew": self.projects_new,
            "projectsUpdated": self.projects_updated,
            "filesProcessed": self.files_processed,
        }


def normalize_detail_link(link: str) -> str:
    """Detail link without fragment, lowercased scheme/host and trailing slash."""
    parts = urlsplit(link.strip())
    path = parts.path.rstrip("/") or "/"
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def compute_external_id(candidate: ListingCandidate) -> str:
    """Stable identity of a listing item within its source."""
    basis = normalize_detail_link(candidate.detail_link) if candidate.detail_link else candidate.title
    return hashlib.sha1(basis.encode("utf-8")).hexdigest()


class CrawlService:
    """Job runner for the crawl pipeline."""

    def __init__(
        self,
        fetch_adapter: Optional[FetchAdapter] = None,
        pool: Optional[BrowserPool] = None,
        storage: Optional[StorageAdapter] = None,
        orchestrator: Optional[AnalysisOrchestrator] = None,
        database: Optional[DatabaseService] = None,
        retry_policy: Optional[RetryPolicy] = None,
        request_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.browser_pool = pool or browser_pool
        self._fetch_adapter = fetch_adapter
        self.storage = storage or storage_adapter
        self.orchestrator = orchestrator or analysis_orchestrator
        self.database = database or database_service
        self.retry_policy = retry_policy
        self.request_delay = (
            settings.crawler_request_delay_seconds if request_delay is None else request_delay
        )
        self._sleep = sleep

    @property
    def fetch_adapter(self) -> FetchAdapter:
        if self._fetch_adapter is None:
            self._fetch_adapter = FetchAdapter(
                browser_pool=self.browser_pool,
                extra_waf_domains=config_loader.get_waf_domains(),
            )
        return self._fetch_adapter

    async def close(self) -> None:
        if self._fetch_adapter is not None:
            await self._fetch_adapter.close()

    async def _write(self, description: str, mutate):
        """Run ``mutate(session)`` in a fresh session under the retry policy."""
        async def _operation():
            async with self.database.get_session() as session:
                return await mutate(session)

        return await with_retry(_operation, policy=self.retry_policy, description=description)

    # =========================================================================
    # Sources and scheduling
    # =========================================================================

    async def sync_sources(
        self,
        session: AsyncSession,
        sources: Optional[List[SourceConfig]] = None,
    ) -> int:
        """
        Upsert configured sources into the catalog.

        Sources missing from the configuration are left untouched.

        Returns:
            Number of sources created or updated
        """
        sources = config_loader.get_sources() if sources is None else sources
        for config in sources:
            source = await session.get(Source, config.id)
            if source is None:
                source = Source(id=config.id)
                session.add(source)
            source.name = config.name
            source.url = config.url
            source.adapter_type = config.type
            source.is_active = config.is_active
            source.wait_for_selector = config.wait_for_selector
            source.region = config.region
        await session.flush()
        if sources:
            logger.info(f"Synchronized {len(sources)} crawl sources from configuration")
        return len(sources)

    async def schedule_jobs(self) -> List[UUID]:
        """Create one pending CrawlJob per active source."""
        async def _mutate(session: AsyncSession):
            await self.sync_sources(session)
            result = await session.execute(
                select(Source).where(Source.is_active.is_(True)).order_by(Source.id.asc())
            )
            jobs = [CrawlJob(source_id=source.id, status="pending") for source in result.scalars().all()]
            session.add_all(jobs)
            await session.flush()
            return [job.id for job in jobs]

        job_ids = await self._write("schedule crawl jobs", _mutate)
        logger.info(f"Scheduled {len(job_ids)} crawl jobs")
        return job_ids

    async def process_pending_jobs(self, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Run pending jobs oldest-first; one failing job does not stop the rest.

        The shared browser is released when the sweep ends.
        """
        limit = limit or settings.pending_jobs_batch
        async with self.database.get_session() as session:
            result = await session.execute(
                select(CrawlJob.id)
                .where(CrawlJob.status == "pending")
                .order_by(CrawlJob.created_at.asc())
                .limit(limit)
            )
            job_ids = list(result.scalars().all())

        logger.info(f"Processing {len(job_ids)} pending crawl jobs")
        summary = {"processed": 0, "failed": 0}
        async with self.browser_pool.batch():
            for job_id in job_ids:
                try:
                    await self.process_crawl_job(job_id)
                    summary["processed"] += 1
                except Exception as e:
                    summary["failed"] += 1
                    logger.error(f"Failed to process job {job_id}: {e}")
        return summary

    # =========================================================================
    # Job lifecycle
    # =========================================================================

    async def _start_job(self, job_id: UUID) -> Tuple[Optional[CrawlJob], Optional[Source]]:
        async def _mutate(session: AsyncSession):
            job = await session.get(CrawlJob, job_id)
            if job is None:
                raise LookupError(f"Crawl job not found: {job_id}")
            if job.is_terminal:
                return job, None
            source = await session.get(Source, job.source_id)
            if source is None:
                raise LookupError(f"Source not found for job {job_id}: {job.source_id}")
            job.status = "running"
            job.started_at = datetime.utcnow()
            return job, source

        return await self._write("start crawl job", _mutate)

    async def _complete_job(self, job_id: UUID, source_id: str, stats: CrawlStats) -> None:
        async def _mutate(session: AsyncSession):
            job = await session.get(CrawlJob, job_id)
            now = datetime.utcnow()
            job.status = "completed"
            job.projects_found = stats.projects_found
            job.projects_new = stats.projects_new
            job.projects_updated = stats.projects_updated
            job.files_processed = stats.files_processed
            job.items_failed = stats.items_failed
            job.completed_at = now
            source = await session.get(Source, source_id)
            if source is not None:
                source.last_crawled = now

        await self._write("complete crawl job", _mutate)

    async def _fail_job(self, job_id: UUID, error: Exception, stats: Optional[CrawlStats] = None) -> None:
        """Mark the job failed; a failure of this write is logged, not raised."""
        async def _mutate(session: AsyncSession):
            job = await session.get(CrawlJob, job_id)
            job.status = "failed"
            job.error_message = str(error)[:2000]
            job.completed_at = datetime.utcnow()
            if stats is not None:
                job.projects_found = stats.projects_found
                job.projects_new = stats.projects_new
                job.projects_updated = stats.projects_updated
                job.files_processed = stats.files_processed
                job.items_failed = stats.items_failed

        try:
            await self._write("fail crawl job", _mutate)
        except Exception as e:
            logger.error(f"Could not mark job {job_id} failed: {e}")

    async def process_crawl_job(self, job_id: UUID) -> Dict[str, int]:
        """
        Run one crawl job.

        Returns:
            {"projectsFound", "projectsNew", "projectsUpdated", "filesProcessed"}

        Raises:
            LookupError: Unknown job or source
            Exception: Whatever made the listing page unprocessable (job marked failed)
        """
        job, source = await self._start_job(job_id)
        if source is None:
            logger.info(f"Job {job_id} already {job.status}, skipping")
            return job.stats()

        logger.info(f"Job {job_id}: crawling source '{source.id}' ({source.url})")
        try:
            candidates = await self._fetch_listings(source)
        except Exception as e:
            logger.error(f"Job {job_id} failed before any item: {e}", exc_info=True)
            await self._fail_job(job_id, e)
            raise

        stats = CrawlStats(projects_found=len(candidates))
        resolver = DetailResolver(self.fetch_adapter)
        for index, candidate in enumerate(candidates):
            if index > 0 and self.request_delay > 0:
                await self._sleep(self.request_delay)
            try:
                created, files = await self._process_item(source, candidate, resolver)
            except Exception as e:
                stats.items_failed += 1
                logger.warning(f"Job {job_id}: item failed ({candidate.detail_link}): {e}")
                continue
            if created:
                stats.projects_new += 1
            else:
                stats.projects_updated += 1
            stats.files_processed += files

        try:
            await self._complete_job(job_id, source.id, stats)
        except Exception as e:
            logger.error(f"Job {job_id} could not be completed: {e}", exc_info=True)
            await self._fail_job(job_id, e, stats)
            raise
        logger.info(
            f"Job {job_id} completed: found={stats.projects_found}, new={stats.projects_new}, "
            f"updated={stats.projects_updated}, files={stats.files_processed}, "
            f"failed_items={stats.items_failed}"
        )
        return stats.as_dict()

    async def _fetch_listings(self, source: Source) -> List[ListingCandidate]:
        page = await self.fetch_adapter.fetch(
            source.url,
            wait_for_selector=source.wait_for_selector,
            force_browser=source.adapter_type == "browser",
        )
        return extract_listings(page.html, page.final_url)

    # =========================================================================
    # Per-item processing
    # =========================================================================

    async def _process_item(
        self,
        source: Source,
        candidate: ListingCandidate,
        resolver: DetailResolver,
    ) -> Tuple[bool, int]:
        """
        Resolve, upsert and enrich one listing item.

        Returns:
            (created, files_stored)
        """
        detail = await resolver.resolve(candidate.detail_link, wait_for_selector=source.wait_for_selector)
        project_id, created, to_store = await self._upsert_announcement(source, candidate, detail)

        files = 0
        for attachment_id, link in to_store:
            try:
                stored = await self._store_attachment(project_id, attachment_id, link, detail.url)
            except Exception as e:
                logger.error(f"Attachment {link.file_name} left remote-only: {e}")
                continue
            if stored:
                files += 1

        try:
            await self.orchestrator.process_announcement(project_id)
        except Exception as e:
            logger.error(f"Analysis failed for announcement {project_id}: {e}")

        return created, files

    async def _upsert_announcement(
        self,
        source: Source,
        candidate: ListingCandidate,
        detail: DetailResult,
    ) -> Tuple[UUID, bool, List[Tuple[UUID, AttachmentLink]]]:
        external_id = compute_external_id(candidate)
        name = candidate.title[:500]
        organization = (candidate.organization or DEFAULT_ORGANIZATION)[:255]
        start_date, end_date = parse_date_window(candidate.date)

        async def _mutate(session: AsyncSession):
            result = await session.execute(
                select(Announcement).where(
                    Announcement.source_id == source.id,
                    Announcement.external_id == external_id,
                )
            )
            project = result.scalar_one_or_none()
            created = project is None
            now = datetime.utcnow()

            if created:
                project = Announcement(
                    source_id=source.id,
                    external_id=external_id,
                    name=name,
                    organization=organization,
                    category=validate_category(name),
                    status="active",
                )
                session.add(project)
            elif project.name != name or project.organization != organization:
                # Fingerprint is recomputed by the next dedup batch
                project.normalized_name = None

            project.name = name
            project.organization = organization
            project.region = resolve_region(source.region, name, organization)
            if start_date:
                project.start_date = start_date
            if end_date:
                project.end_date = end_date
                project.deadline = end_date
            project.detail_text = detail.full_text or project.detail_text
            project.detail_url = detail.url
            project.source_url = candidate.detail_link
            project.crawled_at = now
            project.needs_embedding = True
            await session.flush()

            to_store = []
            for link in detail.attachments:
                attachment, _ = await attachment_service.upsert_attachment(session, project.id, link)
                if link.should_parse and not attachment.is_stored:
                    to_store.append((attachment.id, link))
            await attachment_service.cleanup_duplicate_attachments(session, project.id)
            return project.id, created, to_store

        return await self._write(f"upsert announcement {external_id[:12]}", _mutate)

    async def _store_attachment(
        self,
        project_id: UUID,
        attachment_id: UUID,
        link: AttachmentLink,
        referer: str,
    ) -> bool:
        """
        Download and store one parseable attachment.

        Failures leave the attachment as a remote-only reference.
        """
        try:
            data = await self.fetch_adapter.download(
                link.url, referer=referer, max_bytes=settings.attachment_max_parse_bytes
            )
        except FetchError as e:
            logger.warning(f"Attachment download failed ({link.file_name}): {e}")
            return False

        upload = await self.storage.upload_to_storage(data, str(project_id), link.file_name, link.file_type)
        if not upload.success:
            logger.warning(f"Attachment not stored ({link.file_name}): {upload.error}")
            return False

        async def _mutate(session: AsyncSession):
            attachment = await session.get(Attachment, attachment_id)
            if attachment is None:
                return False
            attachment.storage_path = upload.file_path
            attachment.file_size = len(data)
            attachment.mime_type = link.mime_type or attachment.mime_type
            attachment.analysis_status = "uploaded"
            return True

        return await self._write(f"record stored attachment {attachment_id}", _mutate)


# Global service instance
crawl_service = CrawlService()
