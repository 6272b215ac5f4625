"""
Crawl and deduplication Celery tasks.

Each task runs its coroutine with ``asyncio.run`` in a fresh event loop, so
the shared browser and the HTTP client are released before the task returns.
"""
import asyncio
import logging
from typing import Any, Dict, List
from uuid import UUID

from celery import shared_task

from konarae.celery_app import app as celery_app  # noqa: F401
from konarae.connectors.adapters.browser_pool import browser_pool
from konarae.connectors.scrape.crawl_service import crawl_service
from konarae.core.dedup.deduplication_service import deduplication_service

logger = logging.getLogger("konarae.tasks")


async def _run_job(job_id: UUID) -> Dict[str, int]:
    try:
        async with browser_pool.batch():
            return await crawl_service.process_crawl_job(job_id)
    finally:
        await crawl_service.close()


async def _run_pending(limit: int) -> Dict[str, int]:
    try:
        return await crawl_service.process_pending_jobs(limit)
    finally:
        await crawl_service.close()


@shared_task(name="konarae.tasks.crawl_all_sources_task")
def crawl_all_sources_task() -> List[str]:
    """
    Create one job per active source and dispatch each job as its own task.

    Returns:
        The created job ids
    """
    job_ids = asyncio.run(crawl_service.schedule_jobs())
    for job_id in job_ids:
        process_crawl_job_task.delay(str(job_id))
    logger.info(f"Dispatched {len(job_ids)} crawl jobs")
    return [str(job_id) for job_id in job_ids]


@shared_task(bind=True, name="konarae.tasks.process_crawl_job_task")
def process_crawl_job_task(self, job_id: str) -> Dict[str, int]:
    """Run one crawl job, then queue a deduplication sweep."""
    logger.info(f"Crawl job task started: {job_id}")
    try:
        stats = asyncio.run(_run_job(UUID(job_id)))
    except Exception as e:
        logger.error(f"Crawl job {job_id} failed: {e}")
        raise
    run_deduplication_task.delay()
    return stats


@shared_task(name="konarae.tasks.process_pending_jobs_task")
def process_pending_jobs_task(limit: int = 5) -> Dict[str, int]:
    summary = asyncio.run(_run_pending(limit))
    if summary.get("processed"):
        run_deduplication_task.delay()
    return summary


@shared_task(name="konarae.tasks.run_deduplication_task")
def run_deduplication_task(batch_size: int = 0) -> Dict[str, Any]:
    """Group announcements batch by batch until nothing is left to process."""
    totals = asyncio.run(deduplication_service.run_until_idle(batch_size or None))
    logger.info(
        f"Deduplication finished: processed={totals['processed']}, "
        f"groups_created={totals['groupsCreated']}, batches={totals['batches']}"
    )
    return totals
