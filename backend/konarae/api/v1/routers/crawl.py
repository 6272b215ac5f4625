# backend/konarae/api/v1/routers/crawl.py
"""
Crawl API Router.

Triggers crawl runs, reports job status, and runs deduplication batches.
Jobs themselves execute in Celery workers.
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from ....config import settings
from ....connectors.scrape.crawl_service import crawl_service
from ....core.database.models import CrawlJob
from ....core.dedup.deduplication_service import deduplication_service
from ....core.shared.database_service import database_service
from ....core.tasks.crawl import process_crawl_job_task

logger = logging.getLogger("konarae.api.crawl")

router = APIRouter(prefix="/crawl", tags=["crawl"])


# =========================================================================
# REQUEST/RESPONSE MODELS
# =========================================================================


class RunAllResponse(BaseModel):
    job_ids: List[str] = Field(..., description="Created crawl job ids")
    count: int = Field(..., description="Number of jobs created")


class CrawlJobResponse(BaseModel):
    """Status and counters of one crawl job."""

    id: str
    source_id: str
    status: str = Field(..., description="pending, running, completed or failed")
    projects_found: int = 0
    projects_new: int = 0
    projects_updated: int = 0
    files_processed: int = 0
    items_failed: int = 0
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime


class DedupBatchResponse(BaseModel):
    processed: int
    groupsCreated: int
    projectsGrouped: int


# =========================================================================
# ENDPOINTS
# =========================================================================


@router.post("/run-all", response_model=RunAllResponse, status_code=status.HTTP_202_ACCEPTED)
async def run_all_sources():
    """Create one job per active source and dispatch each to a worker."""
    job_ids = await crawl_service.schedule_jobs()
    for job_id in job_ids:
        process_crawl_job_task.delay(str(job_id))
    logger.info(f"Dispatched {len(job_ids)} crawl jobs via API")
    return RunAllResponse(job_ids=[str(j) for j in job_ids], count=len(job_ids))


@router.get("/jobs/{job_id}", response_model=CrawlJobResponse)
async def get_crawl_job(job_id: UUID):
    async with database_service.get_session() as session:
        job = await session.get(CrawlJob, job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Crawl job not found: {job_id}")
        return CrawlJobResponse(
            id=str(job.id),
            source_id=job.source_id,
            status=job.status,
            projects_found=job.projects_found or 0,
            projects_new=job.projects_new or 0,
            projects_updated=job.projects_updated or 0,
            files_processed=job.files_processed or 0,
            items_failed=job.items_failed or 0,
            error_message=job.error_message,
            started_at=job.started_at,
            completed_at=job.completed_at,
            created_at=job.created_at,
        )


@router.post("/dedup", response_model=DedupBatchResponse)
async def run_dedup_batch(
    batch_size: int = Query(settings.dedup_batch_size, ge=1, le=500),
):
    """
    Process one deduplication batch.

    Callers drain a backlog by repeating the call until ``processed`` is 0.
    """
    async with database_service.get_session() as session:
        stats = await deduplication_service.group_batch(session, batch_size)
    return DedupBatchResponse(**stats)
