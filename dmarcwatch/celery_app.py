"""
Celery application initialization and configuration.

Sync and bulk-match jobs are enqueued by external schedulers or API
collaborators; there is no beat schedule in this application.
"""

from celery import Celery
from dmarcwatch.config import get_settings

settings = get_settings()

# Result backend defaults to the application database through SQLAlchemy
result_backend = settings.celery_result_backend or (
    f"db+{settings.database_url}" if settings.database_url else ""
)

# Initialize Celery app
celery_app = Celery(
    "dmarcwatch",
    broker=settings.celery_broker_url,
    backend=result_backend,
    include=[
        "dmarcwatch.tasks.sync",
    ]
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.celery_task_time_limit,
    worker_prefetch_multiplier=1,
    result_expires=3600,  # Results expire after 1 hour
)


if __name__ == "__main__":
    celery_app.start()
