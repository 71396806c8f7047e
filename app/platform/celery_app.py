from celery import Celery
from kombu import Queue

from app.platform.config import settings

SCAN_TASK_NAME = "app.features.scan.workers.tasks.process_scan_job"


def create_celery_app() -> Celery:
    """
    Create and configure the Celery application.

    Queue Structure:
    - SCAN_QUEUE_NAME ("sitemap-scan"): one job per scan, consumed by a
      worker pool of SCAN_WORKER_CONCURRENCY processes
    - default: anything not explicitly routed

    Retry policy lives on the task itself (attempts, exponential backoff,
    rate limit); acks are late so a lost worker requeues its job.
    """
    celery_app = Celery(
        "sitemap_checker",
        broker=settings.CELERY_BROKER_URL,
        backend=settings.CELERY_RESULT_BACKEND,
    )

    # Task serialization
    celery_app.conf.update(
        task_serializer=settings.CELERY_TASK_SERIALIZER,
        result_serializer=settings.CELERY_RESULT_SERIALIZER,
        accept_content=[settings.CELERY_ACCEPT_CONTENT],
        timezone="UTC",
        enable_utc=True,
        task_track_started=settings.CELERY_TASK_TRACK_STARTED,
        task_time_limit=settings.CELERY_TASK_TIME_LIMIT,

        # Result settings
        result_expires=settings.SCAN_JOB_RESULT_EXPIRES_SECONDS,

        # Task routing
        task_routes={
            SCAN_TASK_NAME: {"queue": settings.SCAN_QUEUE_NAME},
        },

        # Define queues
        task_queues=(
            Queue("default"),
            Queue(settings.SCAN_QUEUE_NAME),
        ),

        # Default queue
        task_default_queue="default",

        # Concurrency settings (can be overridden per worker)
        worker_concurrency=settings.SCAN_WORKER_CONCURRENCY,
        worker_prefetch_multiplier=1,  # Fair distribution

        # Retry settings
        task_acks_late=True,  # Acknowledge after task completes
        task_reject_on_worker_lost=True,  # Requeue if worker dies

        # Tests and local runs without a broker
        task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,
        task_eager_propagates=settings.CELERY_TASK_ALWAYS_EAGER,
    )

    # Auto-discover tasks in the workers module
    celery_app.autodiscover_tasks(["app.features.scan.workers"])

    return celery_app


# Global Celery app instance
celery_app = create_celery_app()
