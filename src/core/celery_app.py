"""
Celery Application Configuration

Configures Celery with:
- Late acknowledgement so a lost worker's run is redelivered
- One pipeline run per task, checkpointed step by step
- Result backend for task tracking
"""

from celery import Celery
from kombu import Queue

from src.core.config import settings

# Create Celery app
celery_app = Celery(
    "framing_pipeline",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
    include=[
        "src.pipeline.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task tracking
    task_track_started=True,
    task_time_limit=900,  # Upscale polling alone may take 6 minutes
    task_soft_time_limit=840,

    # Result expiration
    result_expires=86400,  # 24 hours

    # Worker settings
    worker_prefetch_multiplier=1,

    # Queue definitions
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("pipeline", routing_key="pipeline.#"),
    ),
    task_default_queue="default",

    # Task routing
    task_routes={
        "src.pipeline.tasks.process_image": {"queue": "pipeline"},
    },

    # Retry settings with exponential backoff
    task_default_retry_delay=settings.PIPELINE_RETRY_BASE_DELAY,

    # Late acknowledgment for reliability
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)
