"""
Celery worker entrypoint.

Usage:
    celery -A celery_worker worker --loglevel=info --concurrency=4

Environment Variables:
    CELERY_BROKER_URL: Broker URL (default: redis://redis:6379/1)
    DATABASE_URL: Database connection string, also used as result backend
    EMAIL_HOST / EMAIL_USER / EMAIL_PASSWORD: Mailbox polled by sync tasks
"""

import logging

from dmarcwatch.celery_app import celery_app
from dmarcwatch.config import get_settings
from dmarcwatch.logging_config import setup_logging

settings = get_settings()

setup_logging(
    log_level=settings.log_level,
    log_dir=settings.log_dir,
    app_name="dmarcwatch-worker",
    enable_json=settings.log_json
)

logger = logging.getLogger(__name__)
logger.info("Celery worker starting...")

# Worker will be started by Celery CLI:
# celery -A celery_worker worker [options]

if __name__ == "__main__":
    celery_app.worker_main([
        'worker',
        '--loglevel=info',
        '--concurrency=4'
    ])
