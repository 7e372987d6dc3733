"""
Celery Worker Configuration
Sets up Celery with Redis as message broker and result backend, and
schedules the periodic housekeeping tasks.
"""

from celery import Celery

from app.core.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    'restaurant_worker',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['app.tasks']  # Module containing our tasks
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Worker settings
    worker_prefetch_multiplier=1,  # Process one task at a time
    worker_concurrency=4,

    # Result settings
    result_expires=3600,  # Results expire after 1 hour

    # Task execution settings
    task_acks_late=True,  # Acknowledge task after completion
    task_reject_on_worker_lost=True,  # Requeue task if worker dies

    broker_connection_retry_on_startup=True,

    # Periodic tasks (run with `celery -A app.celery_worker beat`)
    beat_schedule={
        'expire-stale-payments': {
            'task': 'app.tasks.expire_stale_payments',
            'schedule': 15 * 60.0,
        },
    },
)


if __name__ == '__main__':
    celery_app.start()
