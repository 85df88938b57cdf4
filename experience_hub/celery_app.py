"""
Experience Hub Celery Application Configuration

Configures Celery for background embedding work with Redis as broker.
Used for on-demand embedding generation and the periodic backfill sweep.

Usage:
    # Start worker
    celery -A experience_hub.celery_app.celery worker --loglevel=info

    # Start beat (for the backfill schedule)
    celery -A experience_hub.celery_app.celery beat --loglevel=info
"""

import logging

import structlog
from celery import Celery

from experience_hub.config import settings

celery = Celery(
    "experience_hub",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["experience_hub.search.tasks"],
)

celery.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task execution
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,

    # Result backend settings
    result_expires=86400,

    # Worker settings
    worker_prefetch_multiplier=1,

    # Task routing
    task_routes={
        "experience_hub.search.tasks.ensure_embedding_task": {"queue": "embeddings"},
        "experience_hub.search.tasks.backfill_embeddings_task": {"queue": "embeddings"},
    },
    task_default_queue="default",

    # A backfill batch sleeps between items, so allow it a generous window
    task_soft_time_limit=600,
    task_time_limit=900,

    # Beat schedule (periodic tasks)
    beat_schedule={
        "backfill-embeddings": {
            "task": "experience_hub.search.tasks.backfill_embeddings_task",
            "schedule": settings.EMBEDDING_BACKFILL_INTERVAL_SECONDS,
        },
    },
)


def configure_celery_logging():
    """Configure Celery to use structlog for consistent logging."""
    logging.getLogger("celery").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_celery_logging()
