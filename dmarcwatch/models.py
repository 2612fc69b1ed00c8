"""
SQLAlchemy models for DMARC Watch.

Reports and records are immutable once imported; sources, subdomains and the
AI usage counters are the only rows mutated by ingestion and generation, and
only through atomic SQL increments.
"""
import enum
import uuid

from sqlalchemy import (
    Column, String, Integer, BigInteger, DateTime, Date, Text, Boolean,
    ForeignKey, JSON, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship

from dmarcwatch.database import Base
from dmarcwatch.utils.time_utils import utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class SourceType(str, enum.Enum):
    """Classification of a sending source"""
    LEGITIMATE = "legitimate"
    SUSPICIOUS = "suspicious"
    FORWARDED = "forwarded"
    UNKNOWN = "unknown"


class ClassificationMethod(str, enum.Enum):
    """How a source's classification was set"""
    AUTO = "auto"
    MANUAL = "manual"


class SyncStatus(str, enum.Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


class Organization(Base):
    """Tenant owning domains, known senders and an AI integration"""
    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    domains = relationship("Domain", back_populates="organization")

    def __repr__(self):
        return f"<Organization(id={self.id}, slug={self.slug})>"


class Domain(Base):
    """Monitored domain with its cached DNS records"""
    __tablename__ = "domains"
    __table_args__ = (
        UniqueConstraint("organization_id", "domain", name="uq_domains_org_domain"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    domain = Column(String(255), nullable=False, index=True)

    # DNS records (cached from the last re-check)
    dmarc_record = Column(Text, nullable=True)
    spf_record = Column(Text, nullable=True)
    verified_at = Column(DateTime, nullable=True)
    last_dns_check = Column(DateTime, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    organization = relationship("Organization", back_populates="domains")
    reports = relationship("DmarcReport", back_populates="domain")

    def __repr__(self):
        return f"<Domain(id={self.id}, domain={self.domain})>"


class DmarcReport(Base):
    """Parsed DMARC aggregate report"""
    __tablename__ = "dmarc_reports"
    __table_args__ = (
        UniqueConstraint("org_name", "report_id", "domain_id", name="uq_dmarc_reports_identity"),
        Index("ix_dmarc_reports_domain_date", "domain_id", "date_begin"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    domain_id = Column(String(36), ForeignKey("domains.id"), nullable=False)

    # Report metadata
    report_id = Column(String(500), nullable=False, index=True)
    org_name = Column(String(255), nullable=False, index=True)
    email = Column(String(255), nullable=True)
    extra_contact_info = Column(String(500), nullable=True)

    # Date range
    date_begin = Column(DateTime, nullable=False)
    date_end = Column(DateTime, nullable=False)

    # Policy published
    policy_domain = Column(String(255), nullable=False)
    adkim = Column(String(20), nullable=True)  # DKIM alignment mode
    aspf = Column(String(20), nullable=True)   # SPF alignment mode
    p = Column(String(20), nullable=True)      # Policy for domain
    sp = Column(String(20), nullable=True)     # Policy for subdomains
    pct = Column(Integer, nullable=True)       # Percentage

    # Email the report arrived in, kept for traceability
    source_message_id = Column(String(500), nullable=True, index=True)
    imported_at = Column(DateTime, default=utcnow, nullable=False)

    domain = relationship("Domain", back_populates="reports")
    records = relationship("DmarcRecord", back_populates="report", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<DmarcReport(id={self.id}, report_id={self.report_id}, org_name={self.org_name})>"


class DmarcRecord(Base):
    """Individual row from a report"""
    __tablename__ = "dmarc_records"

    id = Column(String(36), primary_key=True, default=_uuid)
    report_id = Column(String(36), ForeignKey("dmarc_reports.id"), nullable=False, index=True)

    # Source information
    source_ip = Column(String(45), nullable=False, index=True)  # IPv4 or IPv6
    count = Column(Integer, nullable=False)

    # Policy evaluated
    disposition = Column(String(20), nullable=False)  # none, quarantine, reject
    dkim = Column(String(20), nullable=True)          # pass, fail
    spf = Column(String(20), nullable=True)           # pass, fail
    policy_override_reason = Column(JSON, nullable=True)  # [{"type": ..., "comment": ...}]

    # Identifiers
    header_from = Column(String(255), nullable=True)
    envelope_from = Column(String(255), nullable=True)
    envelope_to = Column(String(255), nullable=True)

    # First auth result of each kind; a passing DKIM signature is preferred
    dkim_domain = Column(String(255), nullable=True, index=True)
    dkim_result = Column(String(20), nullable=True)
    dkim_selector = Column(String(255), nullable=True)
    spf_domain = Column(String(255), nullable=True)
    spf_result = Column(String(20), nullable=True)
    spf_scope = Column(String(50), nullable=True)

    report = relationship("DmarcReport", back_populates="records")

    @property
    def is_passing(self) -> bool:
        return self.dkim == "pass" or self.spf == "pass"

    def __repr__(self):
        return f"<DmarcRecord(id={self.id}, source_ip={self.source_ip}, count={self.count})>"


class KnownSender(Base):
    """Registry entry describing a legitimate sending service"""
    __tablename__ = "known_senders"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text, nullable=True)
    category = Column(String(50), nullable=False, index=True)  # marketing, transactional, corporate, security
    website = Column(String(255), nullable=True)

    ip_ranges = Column(JSON, nullable=True)     # CIDR strings
    dkim_domains = Column(JSON, nullable=True)  # Signing domains
    spf_include = Column(String(255), nullable=True)  # e.g. "_spf.google.com", resolved on demand

    is_global = Column(Boolean, default=True, nullable=False)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<KnownSender(id={self.id}, name={self.name}, global={self.is_global})>"


class Source(Base):
    """Per-(domain, source IP) rollup of report records"""
    __tablename__ = "sources"
    __table_args__ = (
        UniqueConstraint("domain_id", "source_ip", name="uq_sources_domain_ip"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    domain_id = Column(String(36), ForeignKey("domains.id"), nullable=False, index=True)
    source_ip = Column(String(45), nullable=False)

    # Enrichment, filled by collaborators
    hostname = Column(String(255), nullable=True)
    organization = Column(String(255), nullable=True)
    asn = Column(String(20), nullable=True)
    asn_org = Column(String(255), nullable=True)
    country = Column(String(2), nullable=True)
    city = Column(String(100), nullable=True)

    # Classification
    source_type = Column(String(20), default=SourceType.UNKNOWN.value, nullable=False, index=True)
    classification_method = Column(String(10), nullable=True)  # ClassificationMethod value
    known_sender_id = Column(String(36), ForeignKey("known_senders.id"), nullable=True)
    classified_by = Column(String(255), nullable=True)
    classified_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    # Aggregated stats: total == passed + failed
    total_messages = Column(BigInteger, default=0, nullable=False)
    passed_messages = Column(BigInteger, default=0, nullable=False)
    failed_messages = Column(BigInteger, default=0, nullable=False)
    first_seen = Column(DateTime, nullable=True)
    last_seen = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    domain = relationship("Domain")
    known_sender = relationship("KnownSender")

    @property
    def is_manually_classified(self) -> bool:
        return self.classification_method == ClassificationMethod.MANUAL.value

    def __repr__(self):
        return f"<Source(id={self.id}, source_ip={self.source_ip}, type={self.source_type})>"


class Subdomain(Base):
    """Per-(domain, header-from subdomain) rollup"""
    __tablename__ = "subdomains"
    __table_args__ = (
        UniqueConstraint("domain_id", "subdomain", name="uq_subdomains_domain_sub"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    domain_id = Column(String(36), ForeignKey("domains.id"), nullable=False, index=True)
    subdomain = Column(String(255), nullable=False)
    message_count = Column(BigInteger, default=0, nullable=False)
    pass_count = Column(BigInteger, default=0, nullable=False)
    fail_count = Column(BigInteger, default=0, nullable=False)
    first_seen = Column(DateTime, nullable=True)
    last_seen = Column(DateTime, nullable=True)


class IngestedMessage(Base):
    """Email-layer ledger of processed report messages"""
    __tablename__ = "ingested_messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    message_id = Column(String(500), unique=True, nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)  # completed, failed
    attachment_count = Column(Integer, default=0, nullable=False)
    report_count = Column(Integer, default=0, nullable=False)
    error = Column(Text, nullable=True)
    processed_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<IngestedMessage(message_id={self.message_id}, status={self.status})>"


class SyncRun(Base):
    """Progress of one mailbox sync, persisted after every batch"""
    __tablename__ = "sync_runs"

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    status = Column(String(20), default=SyncStatus.IDLE.value, nullable=False)

    messages_processed = Column(Integer, default=0, nullable=False)
    imported = Column(Integer, default=0, nullable=False)
    skipped = Column(Integer, default=0, nullable=False)
    errors = Column(Integer, default=0, nullable=False)
    batches_processed = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    started_at = Column(DateTime, default=utcnow, nullable=False)
    last_batch_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)


class AiIntegration(Base):
    """Per-organization AI provider configuration and status"""
    __tablename__ = "ai_integrations"

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(36), ForeignKey("organizations.id"), unique=True, nullable=False)
    api_key = Column(Text, nullable=True)
    is_enabled = Column(Boolean, default=True, nullable=False)

    last_used_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    last_error_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class AiUsageCounter(Base):
    """Generations per organization per UTC day"""
    __tablename__ = "ai_usage_counters"
    __table_args__ = (
        UniqueConstraint("organization_id", "window_start", name="uq_ai_usage_org_window"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False)
    window_start = Column(Date, nullable=False)
    count = Column(Integer, default=0, nullable=False)


class AiDomainCooldown(Base):
    """Last successful generation per domain"""
    __tablename__ = "ai_domain_cooldowns"

    domain_id = Column(String(36), ForeignKey("domains.id"), primary_key=True)
    last_generated_at = Column(DateTime, nullable=False)


class AiRecommendationCache(Base):
    """Latest AI recommendation per domain, keyed by input hash"""
    __tablename__ = "ai_recommendations_cache"

    id = Column(String(36), primary_key=True, default=_uuid)
    domain_id = Column(String(36), ForeignKey("domains.id"), unique=True, nullable=False)
    recommendation = Column(JSON, nullable=False)
    input_hash = Column(String(64), nullable=False)  # SHA-256 of the input context
    generated_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
