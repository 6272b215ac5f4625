"""
Search index maintenance Celery tasks.
"""
import asyncio
import logging
from typing import Dict

from celery import shared_task

from konarae.celery_app import app as celery_app  # noqa: F401
from konarae.core.search.pg_index_service import pg_index_service

logger = logging.getLogger("konarae.tasks")


@shared_task(name="konarae.tasks.index_pending_embeddings_task")
def index_pending_embeddings_task(limit: int = 50) -> Dict[str, int]:
    """Re-embed announcements flagged ``needs_embedding``."""
    stats = asyncio.run(pg_index_service.index_pending_announcements(limit))
    if stats["failed"]:
        logger.warning(f"{stats['failed']} announcements could not be indexed")
    return stats
