"""
Celery application for the Konarae crawler.

Workers and the API share the broker/result backend configured in settings;
task modules live under konarae.core.tasks.

Queues:
- crawl: one long-running task per crawl job
- processing: attachment reanalysis and embedding upkeep
- maintenance: scheduled sweeps (job scheduling, deduplication)
"""
import logging
import os

from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from konarae.config import settings

logger = logging.getLogger("konarae.celery")


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


app = Celery(
    "konarae",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "konarae.core.tasks.crawl",
        "konarae.core.tasks.analysis",
        "konarae.core.tasks.embeddings",
    ],
)

app.conf.task_queues = tuple(Queue(name, routing_key=name) for name in ("crawl", "processing", "maintenance"))
app.conf.task_default_queue = "processing"
app.conf.task_routes = {
    "konarae.tasks.process_crawl_job_task": {"queue": "crawl"},
    "konarae.tasks.process_pending_jobs_task": {"queue": "crawl"},
    "konarae.tasks.crawl_all_sources_task": {"queue": "maintenance"},
    "konarae.tasks.run_deduplication_task": {"queue": "maintenance"},
}

# A crawl job can hold a browser page for a long time; keep one task per worker slot
app.conf.update(
    task_acks_late=_env_flag("CELERY_ACKS_LATE", True),
    worker_prefetch_multiplier=_env_int("CELERY_PREFETCH_MULTIPLIER", 1),
    worker_max_tasks_per_child=_env_int("CELERY_MAX_TASKS_PER_CHILD", 50),
    task_soft_time_limit=_env_int("CELERY_TASK_SOFT_TIME_LIMIT", 1800),
    task_time_limit=_env_int("CELERY_TASK_TIME_LIMIT", 2100),
    result_expires=_env_int("CELERY_RESULT_EXPIRES", 3 * 24 * 3600),
    timezone="Asia/Seoul",
)


def crontab_from_expression(expression: str) -> crontab:
    """Five-field cron string to a crontab; malformed input falls back to 02:00 daily."""
    fields = expression.split()
    if len(fields) != 5:
        logger.warning(f"Invalid crawl schedule '{expression}', falling back to 02:00 daily")
        return crontab(minute=0, hour=2)
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


def build_beat_schedule() -> dict:
    schedule = {
        "crawl-all-sources": {
            "task": "konarae.tasks.crawl_all_sources_task",
            "schedule": crontab_from_expression(settings.crawl_schedule_cron),
            "options": {"queue": "maintenance"},
        },
    }
    interval = _env_int("EMBEDDING_SWEEP_INTERVAL", 600)
    if interval > 0:
        schedule["index-pending-announcements"] = {
            "task": "konarae.tasks.index_pending_embeddings_task",
            "schedule": interval,
            "kwargs": {"limit": 50},
            "options": {"queue": "processing"},
        }
    return schedule


app.conf.beat_schedule = build_beat_schedule()
