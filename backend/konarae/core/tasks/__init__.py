"""
Celery tasks package.

Re-exports all task functions. Celery discovers tasks via the include= list
in celery_app.py, which references each submodule directly.
"""

# Analysis tasks
from konarae.core.tasks.analysis import reanalyze_attachment_task

# Crawl and deduplication tasks
from konarae.core.tasks.crawl import (
    crawl_all_sources_task,
    process_crawl_job_task,
    process_pending_jobs_task,
    run_deduplication_task,
)

# Search index tasks
from konarae.core.tasks.embeddings import index_pending_embeddings_task

__all__ = [
    "crawl_all_sources_task",
    "index_pending_embeddings_task",
    "process_crawl_job_task",
    "process_pending_jobs_task",
    "reanalyze_attachment_task",
    "run_deduplication_task",
]
