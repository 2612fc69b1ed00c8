"""
Mailbox ingestion of DMARC aggregate reports.

IngestionService handles one message at a time: every attachment is
unwrapped, routed to a monitored domain of the organization, imported and
its new sources auto-matched. BatchSyncService drives a whole sync run in
small concurrent fetch groups with persisted progress and cooperative
cancellation.
"""
import asyncio
import email
import imaplib
import logging
import threading
from dataclasses import dataclass, field
from email.message import Message
from typing import Dict, List, Optional, Protocol, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dmarcwatch.config import get_settings
from dmarcwatch.error_handlers import NotFoundError
from dmarcwatch.metrics import record_message_synced
from dmarcwatch.models import Domain, IngestedMessage, SyncRun, SyncStatus
from dmarcwatch.parsers.dmarc_parser import (
    DmarcParseError,
    ExtractionError,
    extract_report_text,
    parse_xml,
)
from dmarcwatch.services.known_sender_matcher import KnownSenderMatcher
from dmarcwatch.services.report_importer import ReportImporter, belongs_to_domain
from dmarcwatch.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

Attachment = Tuple[str, bytes]


class MailSource(Protocol):
    """Mailbox collaborator used by ingestion"""

    def list_message_ids(self, limit: int) -> List[str]:
        ...

    def fetch_attachments(self, message_id: str) -> List[Attachment]:
        ...

    def mark_processed(self, message_id: str) -> None:
        ...


class IMAPMailSource:
    """IMAP mailbox holding DMARC report emails"""

    SEARCH_CRITERIA = '(OR SUBJECT "Report Domain" SUBJECT "DMARC")'

    def __init__(self, host: str = None, port: int = None, user: str = None, password: str = None):
        settings = get_settings()

        self.host = host or settings.email_host
        self.port = port or settings.email_port
        self.user = user or settings.email_user
        self.password = password or settings.email_password
        self.folder = settings.email_folder
        self.use_ssl = settings.email_use_ssl
        self.processed_folder = settings.email_processed_folder

        self.connection: Optional[imaplib.IMAP4] = None
        # imaplib connections are not thread-safe; fetches from executor threads share it
        self._lock = threading.Lock()

    def connect(self):
        """Connect to IMAP server"""
        if not self.host or not self.user or not self.password:
            raise ValueError("Email credentials not configured")

        try:
            if self.use_ssl:
                self.connection = imaplib.IMAP4_SSL(self.host, self.port)
            else:
                self.connection = imaplib.IMAP4(self.host, self.port)
            self.connection.login(self.user, self.password)
            self.connection.select(self.folder)
        except (imaplib.IMAP4.error, OSError) as e:
            raise ConnectionError(f"Failed to connect to email server: {str(e)}")

    def disconnect(self):
        """Disconnect from IMAP server"""
        if self.connection:
            try:
                self.connection.close()
                self.connection.logout()
            except (imaplib.IMAP4.error, OSError) as e:
                logger.debug("IMAP logout error: %s", e)
            self.connection = None

    def _require_connection(self) -> imaplib.IMAP4:
        if not self.connection:
            raise RuntimeError("Not connected to email server")
        return self.connection

    def list_message_ids(self, limit: int) -> List[str]:
        """UIDs of candidate report emails, oldest first, capped at limit"""
        with self._lock:
            status, messages = self._require_connection().uid('search', None, self.SEARCH_CRITERIA)
        if status != 'OK' or not messages or not messages[0]:
            return []
        uids = [uid.decode() for uid in messages[0].split()]
        return uids[:limit]

    def fetch_message(self, uid: str) -> Message:
        with self._lock:
            status, data = self._require_connection().uid('fetch', uid, '(RFC822)')
        if status != 'OK' or not data or not isinstance(data[0], tuple):
            raise RuntimeError(f"Failed to fetch email {uid}")
        return email.message_from_bytes(data[0][1])

    def fetch_attachments(self, message_id: str) -> List[Attachment]:
        return self.get_attachments(self.fetch_message(message_id))

    @staticmethod
    def get_attachments(msg: Message) -> List[Attachment]:
        """
        Extract attachments from email message

        Returns:
            List of tuples (filename, data)
        """
        attachments = []

        for part in msg.walk():
            if part.get_content_maintype() == 'multipart':
                continue
            if part.get_content_type() in ['text/plain', 'text/html']:
                continue

            filename = part.get_filename()
            if filename:
                data = part.get_payload(decode=True)
                if data:
                    attachments.append((filename, data))

        return attachments

    def mark_processed(self, message_id: str) -> None:
        """Flag as seen, or move to the processed folder when one is configured"""
        with self._lock:
            connection = self._require_connection()
            if self.processed_folder:
                status, _ = connection.uid('copy', message_id, self.processed_folder)
                if status != 'OK':
                    raise RuntimeError(f"Failed to move email {message_id} to {self.processed_folder}")
                connection.uid('store', message_id, '+FLAGS', '(\\Deleted)')
                connection.expunge()
            else:
                connection.uid('store', message_id, '+FLAGS', '(\\Seen)')

    def __enter__(self):
        """Context manager entry"""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit"""
        self.disconnect()


@dataclass
class AttachmentOutcome:
    attachment: str
    status: str  # imported, skipped, failed
    reason: Optional[str] = None
    retryable: bool = False
    report_id: Optional[str] = None
    matched_sources: int = 0


@dataclass
class MessageOutcome:
    message_id: str
    already_processed: bool = False
    attachments: List[AttachmentOutcome] = field(default_factory=list)

    @property
    def imported(self) -> int:
        return sum(1 for a in self.attachments if a.status == "imported")

    @property
    def skipped(self) -> int:
        return sum(1 for a in self.attachments if a.status == "skipped")

    @property
    def errors(self) -> int:
        return sum(1 for a in self.attachments if a.status == "failed")

    @property
    def needs_retry(self) -> bool:
        return any(a.retryable for a in self.attachments)


class IngestionService:
    """Service for ingesting DMARC report emails into an organization"""

    def __init__(
        self,
        db: Session,
        importer: Optional[ReportImporter] = None,
        matcher: Optional[KnownSenderMatcher] = None,
    ):
        self.db = db
        self.importer = importer or ReportImporter(db)
        self.matcher = matcher or KnownSenderMatcher(db)
        self._domains: Dict[str, List[Domain]] = {}

    def find_domain(self, organization_id: str, report_domain: str) -> Optional[Domain]:
        """Monitored domain a report belongs to; the most specific match wins"""
        if organization_id not in self._domains:
            self._domains[organization_id] = self.db.query(Domain).filter(
                Domain.organization_id == organization_id,
                Domain.is_active.is_(True),
            ).all()

        candidates = [
            d for d in self._domains[organization_id]
            if belongs_to_domain(report_domain, d.domain)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda d: len(d.domain))

    def process_attachment(
        self,
        filename: str,
        content: bytes,
        message_id: str,
        organization_id: str,
    ) -> AttachmentOutcome:
        """
        Import one attachment.

        Extraction and parse failures are final for the attachment; store
        failures are marked retryable so the message stays unprocessed.
        """
        try:
            xml_text = extract_report_text(content, filename)
        except ExtractionError as e:
            logger.warning(
                "Skipping unreadable attachment",
                extra={"attachment": filename, "message_id": message_id, "error": str(e)}
            )
            return AttachmentOutcome(attachment=filename, status="failed", reason=str(e))

        if xml_text is None:
            return AttachmentOutcome(attachment=filename, status="skipped", reason="no payload")

        try:
            parsed = parse_xml(xml_text)
        except DmarcParseError as e:
            logger.warning(
                "Skipping malformed report",
                extra={"attachment": filename, "message_id": message_id, "error": str(e)}
            )
            return AttachmentOutcome(attachment=filename, status="failed", reason=str(e))

        domain = self.find_domain(organization_id, parsed.policy_published.domain)
        if domain is None:
            logger.info(
                "Report for unmonitored domain",
                extra={"report_domain": parsed.policy_published.domain, "message_id": message_id}
            )
            return AttachmentOutcome(
                attachment=filename,
                status="skipped",
                reason=f"Unknown domain {parsed.policy_published.domain}",
            )

        result = self.importer.import_parsed(parsed, domain.id, message_id)
        if not result.success:
            return AttachmentOutcome(
                attachment=filename,
                status="failed",
                reason=result.error,
                retryable=result.retryable,
            )
        if result.skipped:
            return AttachmentOutcome(
                attachment=filename,
                status="skipped",
                reason=result.skip_reason,
                report_id=result.report_id,
            )

        matched = 0
        try:
            matched = self.matcher.match_sources(result.new_source_ids, organization_id)
        except SQLAlchemyError as e:
            # The report itself is committed; matching can be re-run in bulk
            self.db.rollback()
            logger.error(
                "Auto-matching new sources failed",
                extra={"report_id": result.report_id, "error": str(e)},
                exc_info=True
            )

        return AttachmentOutcome(
            attachment=filename,
            status="imported",
            report_id=result.report_id,
            matched_sources=matched,
        )

    def is_processed(self, message_id: str) -> bool:
        return self.db.query(IngestedMessage.id).filter(
            IngestedMessage.message_id == message_id,
            IngestedMessage.status == "completed",
        ).first() is not None

    def process_message(
        self,
        mail_source: MailSource,
        message_id: str,
        organization_id: str,
        attachments: Optional[List[Attachment]] = None,
    ) -> MessageOutcome:
        """
        Import every attachment of a message.

        The message is recorded as completed and marked processed on the
        mailbox only when no attachment hit a retryable failure.
        """
        outcome = MessageOutcome(message_id=message_id)
        if self.is_processed(message_id):
            outcome.already_processed = True
            record_message_synced("already_processed")
            return outcome

        if attachments is None:
            attachments = mail_source.fetch_attachments(message_id)

        for filename, content in attachments:
            outcome.attachments.append(
                self.process_attachment(filename, content, message_id, organization_id)
            )

        self._record_message(outcome)
        if outcome.needs_retry:
            record_message_synced("failed")
            logger.warning(
                "Message left unprocessed for retry",
                extra={"message_id": message_id, "errors": outcome.errors}
            )
        else:
            mail_source.mark_processed(message_id)
            record_message_synced("completed")

        return outcome

    def _record_message(self, outcome: MessageOutcome):
        entry = self.db.query(IngestedMessage).filter(
            IngestedMessage.message_id == outcome.message_id
        ).first()
        if entry is None:
            entry = IngestedMessage(message_id=outcome.message_id)
            self.db.add(entry)

        failures = [a.reason for a in outcome.attachments if a.status == "failed" and a.reason]
        entry.status = "failed" if outcome.needs_retry else "completed"
        entry.attachment_count = len(outcome.attachments)
        entry.report_count = outcome.imported
        entry.error = "; ".join(failures)[:2000] if failures else None
        entry.processed_at = utcnow()
        self.db.commit()


def cancel_sync(db: Session, run_id: str) -> SyncRun:
    """Request cancellation; the running sync stops before its next group"""
    run = db.get(SyncRun, run_id)
    if run is None:
        raise NotFoundError(f"Sync run {run_id} not found", resource_type="sync_run")
    if run.status == SyncStatus.SYNCING.value:
        run.status = SyncStatus.CANCELLED.value
        db.commit()
        logger.info("Sync cancellation requested", extra={"run_id": run_id})
    return run


class BatchSyncService:
    """
    Runs a mailbox sync in fixed-size groups.

    Within a group, mailbox fetches run concurrently on executor threads and
    imports run one after another on the session's thread. Progress is
    committed after each group, and the cancellation flag is re-read from the
    store between groups.
    """

    def __init__(
        self,
        db: Session,
        mail_source: MailSource,
        organization_id: str,
        ingestion: Optional[IngestionService] = None,
        batch_size: Optional[int] = None,
        max_messages: Optional[int] = None,
    ):
        settings = get_settings()
        self.db = db
        self.mail_source = mail_source
        self.organization_id = organization_id
        self.ingestion = ingestion or IngestionService(db)
        self.batch_size = batch_size or settings.sync_batch_size
        self.max_messages = max_messages or settings.sync_max_messages

    def start(self) -> SyncRun:
        run = SyncRun(organization_id=self.organization_id, status=SyncStatus.SYNCING.value)
        self.db.add(run)
        self.db.commit()
        return run

    def run(self, limit: Optional[int] = None, run: Optional[SyncRun] = None) -> dict:
        """
        Sync up to `limit` messages (capped at sync_max_messages).

        Returns:
            Aggregate counts for the run
        """
        run = run or self.start()
        try:
            return asyncio.run(self._run(run, limit))
        except Exception as e:
            self.db.rollback()
            run.status = SyncStatus.FAILED.value
            run.last_error = str(e)
            run.finished_at = utcnow()
            self.db.commit()
            logger.error(
                "Sync run failed",
                extra={"run_id": run.id, "error": str(e)},
                exc_info=True
            )
            raise

    def _is_cancelled(self, run: SyncRun) -> bool:
        self.db.refresh(run)
        return run.status == SyncStatus.CANCELLED.value

    async def _fetch_group(self, message_ids: List[str]) -> list:
        loop = asyncio.get_running_loop()
        tasks = [
            loop.run_in_executor(None, self.mail_source.fetch_attachments, message_id)
            for message_id in message_ids
        ]
        return await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, run: SyncRun, limit: Optional[int]) -> dict:
        limit = min(limit or self.max_messages, self.max_messages)
        message_ids = self.mail_source.list_message_ids(limit)
        cancelled = False

        logger.info(
            "Starting mailbox sync",
            extra={"run_id": run.id, "messages": len(message_ids), "batch_size": self.batch_size}
        )

        for start in range(0, len(message_ids), self.batch_size):
            if self._is_cancelled(run):
                cancelled = True
                break

            group = message_ids[start:start + self.batch_size]
            pending = [m for m in group if not self.ingestion.is_processed(m)]
            imported, skipped, errors = 0, len(group) - len(pending), 0

            fetched = await self._fetch_group(pending)
            for message_id, attachments in zip(pending, fetched):
                if isinstance(attachments, Exception):
                    errors += 1
                    logger.warning(
                        "Failed to fetch message",
                        extra={"message_id": message_id, "error": str(attachments)}
                    )
                    continue
                try:
                    outcome = self.ingestion.process_message(
                        self.mail_source, message_id, self.organization_id, attachments=attachments
                    )
                except Exception as e:
                    self.db.rollback()
                    errors += 1
                    logger.error(
                        "Error processing message",
                        extra={"message_id": message_id, "error": str(e)},
                        exc_info=True
                    )
                    continue
                imported += outcome.imported
                skipped += outcome.skipped
                errors += outcome.errors

            # Counters are applied after the group so per-report rollbacks cannot discard them
            run.imported += imported
            run.skipped += skipped
            run.errors += errors
            run.messages_processed += len(group)
            run.batches_processed += 1
            run.last_batch_at = utcnow()
            self.db.commit()

        # A cancel may land while the last group is running
        if cancelled or self._is_cancelled(run):
            cancelled = True
            run.finished_at = utcnow()
        else:
            run.status = SyncStatus.COMPLETED.value
            run.finished_at = utcnow()
        self.db.commit()

        summary = {
            "run_id": run.id,
            "messages_processed": run.messages_processed,
            "imported": run.imported,
            "skipped": run.skipped,
            "errors": run.errors,
            "batches_processed": run.batches_processed,
            "cancelled": cancelled,
        }
        logger.info("Mailbox sync finished", extra=summary)
        return summary
