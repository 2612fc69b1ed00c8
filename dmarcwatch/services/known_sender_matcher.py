"""
Known-sender matching for DMARC sources.

Senders visible to an organization are scanned in a fixed order:
organization-specific entries first, then global ones, each group by
(created_at, id). For each sender the matcher predicates run left to right
(IP range, SPF-derived range, DKIM domain) and the first sender with any
matching predicate wins.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.orm import Session

from dmarcwatch.error_handlers import NotFoundError
from dmarcwatch.metrics import record_sources_matched
from dmarcwatch.models import (
    ClassificationMethod,
    DmarcRecord,
    DmarcReport,
    KnownSender,
    Source,
    SourceType,
)
from dmarcwatch.services.spf_resolver import SpfResolver
from dmarcwatch.utils.ip_utils import IPNetwork, ip_in_networks, parse_ip_ranges
from dmarcwatch.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SourceEvidence:
    """What is known about a source when matching it"""
    source_ip: str
    dkim_domains: Set[str] = field(default_factory=set)


@dataclass
class MatchSummary:
    matched: int
    total: int

    def to_dict(self) -> dict:
        return {"matched": self.matched, "total": self.total}


class IpRangeMatcher:
    """Source IP inside one of the sender's stored CIDR ranges"""
    name = "ip_range"

    def __init__(self):
        self._networks: Dict[str, List[IPNetwork]] = {}

    def matches(self, sender: KnownSender, evidence: SourceEvidence) -> bool:
        if not sender.ip_ranges:
            return False
        networks = self._networks.get(sender.id)
        if networks is None:
            networks = parse_ip_ranges(sender.ip_ranges)
            self._networks[sender.id] = networks
        return ip_in_networks(evidence.source_ip, networks)


class SpfIncludeMatcher:
    """Source IP inside the ranges resolved from the sender's SPF include"""
    name = "spf_include"

    def __init__(self, resolver: Optional[SpfResolver] = None):
        self.resolver = resolver or SpfResolver()
        self._networks: Dict[str, List[IPNetwork]] = {}

    def networks_for(self, spf_include: str) -> List[IPNetwork]:
        key = spf_include.strip().lower()
        if key not in self._networks:
            resolution = self.resolver.resolve_include(key)
            if resolution.errors:
                logger.info(
                    "SPF include resolved with errors",
                    extra={"spf_include": key, "errors": resolution.errors}
                )
            self._networks[key] = parse_ip_ranges(resolution.ip_ranges)
        return self._networks[key]

    def matches(self, sender: KnownSender, evidence: SourceEvidence) -> bool:
        if not sender.spf_include:
            return False
        return ip_in_networks(evidence.source_ip, self.networks_for(sender.spf_include))


class DkimDomainMatcher:
    """An observed DKIM signing domain equals one of the sender's DKIM domains"""
    name = "dkim_domain"

    def matches(self, sender: KnownSender, evidence: SourceEvidence) -> bool:
        if not sender.dkim_domains or not evidence.dkim_domains:
            return False
        known = {d.strip().lower() for d in sender.dkim_domains if d}
        return not known.isdisjoint(evidence.dkim_domains)


def default_matchers(resolver: Optional[SpfResolver] = None) -> list:
    return [IpRangeMatcher(), SpfIncludeMatcher(resolver), DkimDomainMatcher()]


class KnownSenderMatcher:
    """
    Matches sources against the known-sender registry and persists
    auto-classifications.

    A matcher instance caches SPF resolutions and parsed ranges, so one
    instance should be used per request or per batch.
    """

    def __init__(self, db: Session, matchers: Optional[list] = None, resolver: Optional[SpfResolver] = None):
        self.db = db
        self.matchers = matchers if matchers is not None else default_matchers(resolver)
        self._senders: Dict[str, List[KnownSender]] = {}

    def visible_senders(self, organization_id: str) -> List[KnownSender]:
        """Organization-specific senders first, then global ones"""
        if organization_id in self._senders:
            return self._senders[organization_id]

        own = self.db.scalars(
            select(KnownSender)
            .where(KnownSender.organization_id == organization_id, KnownSender.is_global.is_(False))
            .order_by(KnownSender.created_at, KnownSender.id)
        ).all()
        shared = self.db.scalars(
            select(KnownSender)
            .where(KnownSender.is_global.is_(True))
            .order_by(KnownSender.created_at, KnownSender.id)
        ).all()

        senders = list(own) + list(shared)
        self._senders[organization_id] = senders
        return senders

    def evidence_for(self, source: Source) -> SourceEvidence:
        """Source IP plus the DKIM signing domains seen on its records"""
        rows = self.db.scalars(
            select(DmarcRecord.dkim_domain)
            .join(DmarcReport, DmarcRecord.report_id == DmarcReport.id)
            .where(
                DmarcReport.domain_id == source.domain_id,
                DmarcRecord.source_ip == source.source_ip,
                DmarcRecord.dkim_domain.is_not(None),
            )
            .distinct()
        ).all()
        return SourceEvidence(
            source_ip=source.source_ip,
            dkim_domains={d.strip().lower() for d in rows if d},
        )

    def match_evidence(self, evidence: SourceEvidence, organization_id: str) -> Optional[KnownSender]:
        for sender in self.visible_senders(organization_id):
            for matcher in self.matchers:
                if matcher.matches(sender, evidence):
                    logger.debug(
                        "Source matched known sender",
                        extra={
                            "source_ip": evidence.source_ip,
                            "known_sender": sender.name,
                            "matched_by": matcher.name,
                        }
                    )
                    return sender
        return None

    def match_source(self, source: Source, organization_id: str) -> Optional[KnownSender]:
        """Find the known sender for a source without changing it"""
        return self.match_evidence(self.evidence_for(source), organization_id)

    def _apply_match(self, source: Source, organization_id: str) -> Optional[KnownSender]:
        if source.is_manually_classified:
            return None
        sender = self.match_source(source, organization_id)
        if sender is None:
            return None
        source.known_sender_id = sender.id
        source.source_type = SourceType.LEGITIMATE.value
        source.classification_method = ClassificationMethod.AUTO.value
        source.classified_at = utcnow()
        return sender

    def auto_match_source(self, source_id: str, organization_id: str) -> Optional[str]:
        """
        Match one source and persist the link.

        Returns:
            The matched known sender id, or None. Manually classified
            sources are left untouched and return None.
        """
        source = self.db.get(Source, source_id)
        if source is None:
            raise NotFoundError(f"Source {source_id} not found", resource_type="source")

        sender = self._apply_match(source, organization_id)
        if sender is None:
            return None

        self.db.commit()
        record_sources_matched(1)
        logger.info(
            "Auto-matched source",
            extra={"source_id": source_id, "known_sender_id": sender.id}
        )
        return sender.id

    def match_sources(self, source_ids: Iterable[str], organization_id: str) -> int:
        """Match the given sources, typically the ones created by an import"""
        source_ids = list(source_ids)
        if not source_ids:
            return 0

        sources = self.db.scalars(
            select(Source).where(Source.id.in_(source_ids), Source.known_sender_id.is_(None))
        ).all()

        matched = 0
        for source in sources:
            if self._apply_match(source, organization_id) is not None:
                matched += 1

        if matched:
            self.db.commit()
            record_sources_matched(matched)
        return matched

    def match_all_sources_for_domain(self, domain_id: str, organization_id: str) -> MatchSummary:
        """
        Match every unmatched, non-manual source of a domain.

        `total` counts all sources of the domain, `matched` the ones linked
        by this call.
        """
        sources = self.db.scalars(
            select(Source).where(Source.domain_id == domain_id).order_by(Source.source_ip)
        ).all()

        matched = 0
        for source in sources:
            if source.known_sender_id or source.is_manually_classified:
                continue
            if self._apply_match(source, organization_id) is not None:
                matched += 1

        if matched:
            self.db.commit()
            record_sources_matched(matched)

        logger.info(
            "Bulk source match finished",
            extra={"domain_id": domain_id, "matched": matched, "total": len(sources)}
        )
        return MatchSummary(matched=matched, total=len(sources))

    def classify_source(
        self,
        source_id: str,
        source_type: str,
        classified_by: Optional[str] = None,
        notes: Optional[str] = None,
        known_sender_id: Optional[str] = None,
    ) -> Source:
        """Operator classification; it is never overwritten by auto-matching"""
        valid = {t.value for t in SourceType}
        if source_type not in valid:
            raise ValueError(f"Invalid source type {source_type!r}, expected one of {sorted(valid)}")

        source = self.db.get(Source, source_id)
        if source is None:
            raise NotFoundError(f"Source {source_id} not found", resource_type="source")

        if known_sender_id is not None and self.db.get(KnownSender, known_sender_id) is None:
            raise NotFoundError(f"Known sender {known_sender_id} not found", resource_type="known_sender")

        source.source_type = source_type
        source.classification_method = ClassificationMethod.MANUAL.value
        source.classified_by = classified_by
        source.classified_at = utcnow()
        if notes is not None:
            source.notes = notes
        if known_sender_id is not None:
            source.known_sender_id = known_sender_id

        self.db.commit()
        self.db.refresh(source)
        logger.info(
            "Source classified manually",
            extra={"source_id": source_id, "source_type": source_type, "classified_by": classified_by}
        )
        return source
