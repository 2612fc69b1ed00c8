"""
Celery tasks for mailbox sync and bulk source matching.
"""

import logging
from celery import Task
from dmarcwatch.celery_app import celery_app
from dmarcwatch.database import SessionLocal
from dmarcwatch.models import SyncRun, SyncStatus
from dmarcwatch.services.ingestion import BatchSyncService, IMAPMailSource
from dmarcwatch.services.known_sender_matcher import KnownSenderMatcher
from dmarcwatch.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


class DatabaseTask(Task):
    """Base task that manages database session lifecycle"""

    _db = None

    def after_return(self, *args, **kwargs):
        """Close database session after task completes"""
        if self._db is not None:
            self._db.close()
            self._db = None


@celery_app.task(
    bind=True,
    base=DatabaseTask,
    soft_time_limit=1500,
    name="dmarcwatch.tasks.sync.sync_mailbox_task"
)
def sync_mailbox_task(self, organization_id: str, limit: int = None, run_id: str = None):
    """
    Sync the configured IMAP mailbox into an organization.

    `run_id` names a SyncRun created by the caller; a new one is started
    otherwise.

    Not retried automatically: unprocessed messages stay in the mailbox and
    the next externally triggered sync picks them up.

    Returns:
        dict: Sync run counters
    """
    logger.info(
        "Starting Celery task: sync_mailbox_task",
        extra={"organization_id": organization_id, "limit": limit, "run_id": run_id}
    )

    db = SessionLocal()
    self._db = db

    run = db.get(SyncRun, run_id) if run_id else None

    try:
        with IMAPMailSource() as mailbox:
            service = BatchSyncService(db, mailbox, organization_id)
            summary = service.run(limit=limit, run=run)
    except Exception as exc:
        # Connection failures happen before the run is picked up
        if run is not None and run.status == SyncStatus.SYNCING.value:
            db.rollback()
            run.status = SyncStatus.FAILED.value
            run.last_error = str(exc)
            run.finished_at = utcnow()
            db.commit()
        logger.error(
            "Mailbox sync failed",
            extra={"organization_id": organization_id, "run_id": run_id, "error": str(exc)},
            exc_info=True
        )
        raise

    return summary


@celery_app.task(
    bind=True,
    base=DatabaseTask,
    max_retries=3,
    default_retry_delay=60,
    name="dmarcwatch.tasks.sync.match_domain_sources_task"
)
def match_domain_sources_task(self, domain_id: str, organization_id: str):
    """
    Auto-match every unmatched source of a domain against known senders.

    Returns:
        dict: matched and total source counts
    """
    db = SessionLocal()
    self._db = db

    try:
        summary = KnownSenderMatcher(db).match_all_sources_for_domain(domain_id, organization_id)
    except Exception as exc:
        db.rollback()
        logger.error(
            "Bulk source match failed",
            extra={"domain_id": domain_id, "error": str(exc)},
            exc_info=True
        )
        raise self.retry(exc=exc)

    return summary.to_dict()
