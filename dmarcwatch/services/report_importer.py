"""
Report import: persists a parsed aggregate report and rolls its records up
into per-source and per-subdomain counters.

Everything for one report happens in a single transaction. Counter updates
are INSERT ... ON CONFLICT DO UPDATE statements that add to the stored values
in SQL, so concurrent imports naming the same source IP never lose updates.
"""
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import case, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from dmarcwatch.metrics import REPORT_IMPORT_DURATION, record_report_imported
from dmarcwatch.models import (
    Domain,
    DmarcReport as ReportModel,
    DmarcRecord as RecordModel,
    Source,
    SourceType,
    Subdomain,
)
from dmarcwatch.parsers.dmarc_parser import DmarcParseError, DmarcReport, parse_xml
from dmarcwatch.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


class TransactionError(Exception):
    """Raised when a report's writes could not be committed as a unit"""
    pass


@dataclass
class ImportResult:
    """Outcome of importing one report"""
    success: bool
    skipped: bool = False
    skip_reason: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    report_id: Optional[str] = None
    record_count: int = 0
    touched_source_ids: List[str] = field(default_factory=list)
    new_source_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
            "error": self.error,
            "retryable": self.retryable,
            "report_id": self.report_id,
            "record_count": self.record_count,
            "new_sources": len(self.new_source_ids),
        }


@dataclass
class _Rollup:
    total: int = 0
    passed: int = 0
    failed: int = 0

    def add(self, count: int, passed: bool):
        self.total += count
        if passed:
            self.passed += count
        else:
            self.failed += count


def belongs_to_domain(candidate: Optional[str], domain: str) -> bool:
    """True when candidate is the domain itself or one of its subdomains"""
    if not candidate:
        return False
    candidate = candidate.strip().rstrip(".").lower()
    domain = domain.strip().rstrip(".").lower()
    return candidate == domain or candidate.endswith("." + domain)


def extract_subdomain(header_from: Optional[str], domain: str) -> Optional[str]:
    """The header-from value when it is a strict subdomain of the tracked domain"""
    if not header_from:
        return None
    header_from = header_from.strip().rstrip(".").lower()
    domain = domain.strip().rstrip(".").lower()
    if header_from != domain and header_from.endswith("." + domain):
        return header_from
    return None


def upsert_insert(db: Session, table):
    """Dialect-specific INSERT supporting ON CONFLICT DO UPDATE"""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise TransactionError(f"Atomic upsert is not supported on {dialect}")


def _later_of(column, value):
    return case(
        (column.is_(None), value),
        (column < value, value),
        else_=column,
    )


class ReportImporter:
    """Imports parsed DMARC reports into a domain"""

    def __init__(self, db: Session):
        self.db = db

    def import_report(
        self,
        xml_text: str,
        domain_id: str,
        source_message_id: Optional[str] = None,
    ) -> ImportResult:
        """
        Parse and import a raw report document.

        Re-importing a report with the same (org_name, report_id, domain) is a
        no-op that returns skipped=True.
        """
        try:
            parsed = parse_xml(xml_text)
        except DmarcParseError as e:
            logger.warning(
                "Failed to parse report",
                extra={"domain_id": domain_id, "message_id": source_message_id, "error": str(e)}
            )
            record_report_imported("failed")
            return ImportResult(success=False, error=str(e))

        return self.import_parsed(parsed, domain_id, source_message_id)

    def import_parsed(
        self,
        parsed: DmarcReport,
        domain_id: str,
        source_message_id: Optional[str] = None,
    ) -> ImportResult:
        domain = self.db.get(Domain, domain_id)
        if domain is None:
            record_report_imported("failed")
            return ImportResult(success=False, error="Domain not found")

        if not belongs_to_domain(parsed.policy_published.domain, domain.domain):
            record_report_imported("failed")
            return ImportResult(
                success=False,
                error=(
                    f"Report domain mismatch: expected {domain.domain}, "
                    f"got {parsed.policy_published.domain}"
                ),
            )

        existing = self._find_existing(parsed, domain_id)
        if existing is not None:
            logger.info(
                "Report already imported",
                extra={
                    "report_id": parsed.metadata.report_id,
                    "org_name": parsed.metadata.org_name,
                    "domain_id": domain_id,
                }
            )
            record_report_imported("skipped")
            return ImportResult(
                success=True,
                skipped=True,
                skip_reason="Report already imported",
                report_id=existing.id,
            )

        start = time.perf_counter()
        try:
            try:
                result = self._write_report(parsed, domain, source_message_id)
            except IntegrityError:
                # A concurrent import of the same report may have won the unique key
                self.db.rollback()
                existing = self._find_existing(parsed, domain_id)
                if existing is None:
                    raise
                record_report_imported("skipped")
                return ImportResult(
                    success=True,
                    skipped=True,
                    skip_reason="Report already imported",
                    report_id=existing.id,
                )
        except (SQLAlchemyError, TransactionError) as e:
            self.db.rollback()
            error = TransactionError(f"Failed to store report {parsed.metadata.report_id}: {e}")
            logger.error(
                "Report import rolled back",
                extra={"report_id": parsed.metadata.report_id, "domain_id": domain_id, "error": str(e)},
                exc_info=True
            )
            record_report_imported("failed")
            return ImportResult(success=False, error=str(error), retryable=True)

        REPORT_IMPORT_DURATION.observe(time.perf_counter() - start)
        record_report_imported("imported", result.record_count)
        logger.info(
            "Imported report",
            extra={
                "report_id": parsed.metadata.report_id,
                "org_name": parsed.metadata.org_name,
                "domain_id": domain_id,
                "records": result.record_count,
                "new_sources": len(result.new_source_ids),
            }
        )
        return result

    def _find_existing(self, parsed: DmarcReport, domain_id: str) -> Optional[ReportModel]:
        return self.db.query(ReportModel).filter(
            ReportModel.org_name == parsed.metadata.org_name,
            ReportModel.report_id == parsed.metadata.report_id,
            ReportModel.domain_id == domain_id,
        ).first()

    def _write_report(
        self,
        parsed: DmarcReport,
        domain: Domain,
        source_message_id: Optional[str],
    ) -> ImportResult:
        meta = parsed.metadata
        policy = parsed.policy_published

        report = ReportModel(
            id=str(uuid.uuid4()),
            domain_id=domain.id,
            report_id=meta.report_id,
            org_name=meta.org_name,
            email=meta.email,
            extra_contact_info=meta.extra_contact_info,
            date_begin=meta.date_begin,
            date_end=meta.date_end,
            policy_domain=policy.domain,
            adkim=policy.adkim,
            aspf=policy.aspf,
            p=policy.p,
            sp=policy.sp,
            pct=policy.pct,
            source_message_id=source_message_id,
        )

        sources: Dict[str, _Rollup] = {}
        subdomains: Dict[str, _Rollup] = {}

        for rec in parsed.records:
            dkim = rec.primary_dkim
            spf = rec.primary_spf
            report.records.append(RecordModel(
                source_ip=rec.source_ip,
                count=rec.count,
                disposition=rec.policy_evaluated.disposition,
                dkim=rec.policy_evaluated.dkim,
                spf=rec.policy_evaluated.spf,
                policy_override_reason=(
                    [r.model_dump() for r in rec.policy_evaluated.reasons]
                    if rec.policy_evaluated.reasons else None
                ),
                header_from=rec.identifiers.header_from,
                envelope_from=rec.identifiers.envelope_from,
                envelope_to=rec.identifiers.envelope_to,
                dkim_domain=dkim.domain if dkim else None,
                dkim_result=dkim.result if dkim else None,
                dkim_selector=dkim.selector if dkim else None,
                spf_domain=spf.domain if spf else None,
                spf_result=spf.result if spf else None,
                spf_scope=spf.scope if spf else None,
            ))

            sources.setdefault(rec.source_ip, _Rollup()).add(rec.count, rec.passed)
            subdomain = extract_subdomain(rec.identifiers.header_from, domain.domain)
            if subdomain:
                subdomains.setdefault(subdomain, _Rollup()).add(rec.count, rec.passed)

        self.db.add(report)
        self.db.flush()

        known_ips = set()
        if sources:
            known_ips = set(self.db.scalars(
                select(Source.source_ip).where(
                    Source.domain_id == domain.id,
                    Source.source_ip.in_(list(sources)),
                )
            ))

        now = utcnow()
        for ip, rollup in sources.items():
            self._upsert_source(domain.id, ip, rollup, meta.date_begin, meta.date_end, now)
        for name, rollup in subdomains.items():
            self._upsert_subdomain(domain.id, name, rollup, meta.date_begin, meta.date_end)

        touched = []
        new = []
        if sources:
            rows = self.db.execute(
                select(Source.id, Source.source_ip).where(
                    Source.domain_id == domain.id,
                    Source.source_ip.in_(list(sources)),
                )
            ).all()
            for source_id, ip in rows:
                touched.append(source_id)
                if ip not in known_ips:
                    new.append(source_id)

        self.db.commit()

        return ImportResult(
            success=True,
            report_id=report.id,
            record_count=len(parsed.records),
            touched_source_ids=touched,
            new_source_ids=new,
        )

    def _upsert_source(self, domain_id, source_ip, rollup: _Rollup, first_seen, last_seen, now):
        table = Source.__table__
        stmt = upsert_insert(self.db, table).values(
            id=str(uuid.uuid4()),
            domain_id=domain_id,
            source_ip=source_ip,
            source_type=SourceType.UNKNOWN.value,
            total_messages=rollup.total,
            passed_messages=rollup.passed,
            failed_messages=rollup.failed,
            first_seen=first_seen,
            last_seen=last_seen,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.domain_id, table.c.source_ip],
            set_={
                "total_messages": table.c.total_messages + stmt.excluded.total_messages,
                "passed_messages": table.c.passed_messages + stmt.excluded.passed_messages,
                "failed_messages": table.c.failed_messages + stmt.excluded.failed_messages,
                "last_seen": _later_of(table.c.last_seen, stmt.excluded.last_seen),
                "updated_at": stmt.excluded.updated_at,
            },
        )
        self.db.execute(stmt)

    def _upsert_subdomain(self, domain_id, subdomain, rollup: _Rollup, first_seen, last_seen):
        table = Subdomain.__table__
        stmt = upsert_insert(self.db, table).values(
            id=str(uuid.uuid4()),
            domain_id=domain_id,
            subdomain=subdomain,
            message_count=rollup.total,
            pass_count=rollup.passed,
            fail_count=rollup.failed,
            first_seen=first_seen,
            last_seen=last_seen,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.domain_id, table.c.subdomain],
            set_={
                "message_count": table.c.message_count + stmt.excluded.message_count,
                "pass_count": table.c.pass_count + stmt.excluded.pass_count,
                "fail_count": table.c.fail_count + stmt.excluded.fail_count,
                "last_seen": _later_of(table.c.last_seen, stmt.excluded.last_seen),
            },
        )
        self.db.execute(stmt)
