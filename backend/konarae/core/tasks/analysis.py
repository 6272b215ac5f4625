"""
Attachment analysis Celery tasks.
"""
import asyncio
import logging
from typing import Any, Dict
from uuid import UUID

from celery import shared_task

from konarae.celery_app import app as celery_app  # noqa: F401
from konarae.connectors.adapters.browser_pool import browser_pool
from konarae.core.ingestion.analysis_orchestrator import analysis_orchestrator

logger = logging.getLogger("konarae.tasks")


async def _reanalyze(attachment_id: UUID):
    # Attachments without a stored copy are re-fetched, possibly through the browser
    async with browser_pool.batch():
        try:
            return await analysis_orchestrator.run_reanalysis(attachment_id)
        finally:
            await analysis_orchestrator.close()


@shared_task(bind=True, name="konarae.tasks.reanalyze_attachment_task")
def reanalyze_attachment_task(self, attachment_id: str) -> Dict[str, Any]:
    """
    Analyze an attachment already moved to ``analyzing`` by a reanalysis request.

    Returns:
        {"attachment_id", "success", "error"}
    """
    logger.info(f"Reanalysis task started for attachment {attachment_id}")
    result = asyncio.run(_reanalyze(UUID(attachment_id)))
    return {
        "attachment_id": attachment_id,
        "success": result.success,
        "error": result.error,
    }
