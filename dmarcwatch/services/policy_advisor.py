"""
DMARC Policy Advisor Service

Computes rule-based policy recommendations for a monitored domain:
- Pass rates over 7 days, 30 days and all time
- Confidence score from history, pass rate, consistency and source coverage
- Next step on the none → quarantine → reject ladder with blockers and
  achievements an operator can act on
"""

import logging
import math
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, case, func, or_
from sqlalchemy.orm import Session

from dmarcwatch.error_handlers import NotFoundError
from dmarcwatch.models import Domain, DmarcRecord, DmarcReport, Source, SourceType
from dmarcwatch.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

POLICY_LADDER = ["none", "quarantine", "reject"]

_POLICY_TAG = re.compile(r"(?:^|;)\s*p\s*=\s*([a-z]+)", re.IGNORECASE)


def parse_dmarc_policy(dmarc_record: Optional[str]) -> str:
    """Policy from the p= tag of a DMARC record; 'none' when absent or unknown"""
    if not dmarc_record:
        return "none"
    match = _POLICY_TAG.search(dmarc_record)
    if not match:
        return "none"
    policy = match.group(1).lower()
    return policy if policy in POLICY_LADDER else "none"


def _percent(passed: int, total: int) -> float:
    if not total:
        return 0.0
    return round(passed / total * 100, 1)


@dataclass(frozen=True)
class PolicyThresholds:
    """Conditions a domain must clear before moving up to a policy"""
    policy: str
    pass_rate_30_days: float
    pass_rate_7_days: float
    min_days: int
    min_messages: int
    max_unknown_sources: int
    min_confidence: int


@dataclass
class DomainStats:
    """Statistical snapshot of a domain's report data"""
    domain_id: str
    domain: str
    current_policy: str
    dmarc_record: Optional[str]
    spf_record: Optional[str]
    total_messages: int = 0
    passed_messages: int = 0
    messages_7_days: int = 0
    messages_30_days: int = 0
    pass_rate: float = 0.0
    pass_rate_7_days: float = 0.0
    pass_rate_30_days: float = 0.0
    report_count: int = 0
    days_monitored: int = 0
    unique_sources: int = 0
    known_sources: int = 0
    unknown_sources: int = 0
    legitimate_sources: int = 0
    suspicious_sources: int = 0
    forwarded_sources: int = 0


@dataclass
class PolicyRecommendation:
    """A rule-based policy recommendation"""
    current_policy: str
    recommended_policy: str
    confidence: int
    pass_rate: float
    pass_rate_7_days: float
    pass_rate_30_days: float
    total_messages: int
    unique_sources: int
    known_sources: int
    unknown_sources: int
    days_monitored: int
    ready_to_upgrade: bool
    blockers: List[str] = field(default_factory=list)
    achievements: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class PolicyAdvisor:
    """
    Analyzes stored report statistics and recommends the next DMARC policy.

    Results depend only on stored data and `now`; pass a fixed `now` for
    reproducible output.
    """

    QUARANTINE = PolicyThresholds(
        policy="quarantine",
        pass_rate_30_days=95.0,
        pass_rate_7_days=90.0,
        min_days=14,
        min_messages=100,
        max_unknown_sources=5,
        min_confidence=60,
    )
    REJECT = PolicyThresholds(
        policy="reject",
        pass_rate_30_days=98.0,
        pass_rate_7_days=95.0,
        min_days=30,
        min_messages=500,
        max_unknown_sources=0,
        min_confidence=80,
    )

    # Confidence weights, summing to 100
    HISTORY_WEIGHT = 25
    HISTORY_FULL_DAYS = 30
    PASS_RATE_WEIGHT = 35
    CONSISTENCY_WEIGHT = 15
    CONSISTENCY_TOLERANCE = 10.0  # percentage points of 7d/30d drift that zero the score
    COVERAGE_WEIGHT = 25

    def __init__(self, db: Session, now: Optional[datetime] = None):
        self.db = db
        self._now = now

    @property
    def now(self) -> datetime:
        return self._now or utcnow()

    def _get_domain(self, domain_id: str) -> Domain:
        domain = self.db.get(Domain, domain_id)
        if domain is None:
            raise NotFoundError(f"Domain {domain_id} not found", resource_type="domain")
        return domain

    def get_domain_stats(self, domain_id: str, now: Optional[datetime] = None) -> DomainStats:
        """
        Aggregate pass rates and source coverage for a domain.

        Raises:
            NotFoundError: Unknown domain
        """
        domain = self._get_domain(domain_id)
        now = now or self.now
        since_7 = now - timedelta(days=7)
        since_30 = now - timedelta(days=30)

        stats = DomainStats(
            domain_id=domain.id,
            domain=domain.domain,
            current_policy=parse_dmarc_policy(domain.dmarc_record),
            dmarc_record=domain.dmarc_record,
            spf_record=domain.spf_record,
        )

        report_info = self.db.query(
            func.count(DmarcReport.id).label('report_count'),
            func.min(DmarcReport.date_begin).label('oldest'),
        ).filter(DmarcReport.domain_id == domain_id).first()

        stats.report_count = report_info.report_count or 0
        if report_info.oldest is not None:
            stats.days_monitored = max(0, math.floor((now - report_info.oldest).total_seconds() / 86400))

        passing = or_(DmarcRecord.dkim == 'pass', DmarcRecord.spf == 'pass')
        in_7 = DmarcReport.date_begin >= since_7
        in_30 = DmarcReport.date_begin >= since_30

        totals = self.db.query(
            func.sum(DmarcRecord.count).label('total'),
            func.sum(case((passing, DmarcRecord.count), else_=0)).label('passed'),
            func.sum(case((in_30, DmarcRecord.count), else_=0)).label('total_30'),
            func.sum(case((and_(in_30, passing), DmarcRecord.count), else_=0)).label('passed_30'),
            func.sum(case((in_7, DmarcRecord.count), else_=0)).label('total_7'),
            func.sum(case((and_(in_7, passing), DmarcRecord.count), else_=0)).label('passed_7'),
        ).join(
            DmarcReport, DmarcRecord.report_id == DmarcReport.id
        ).filter(DmarcReport.domain_id == domain_id).first()

        stats.total_messages = int(totals.total or 0)
        stats.passed_messages = int(totals.passed or 0)
        stats.messages_30_days = int(totals.total_30 or 0)
        stats.messages_7_days = int(totals.total_7 or 0)
        stats.pass_rate = _percent(stats.passed_messages, stats.total_messages)
        stats.pass_rate_30_days = _percent(int(totals.passed_30 or 0), stats.messages_30_days)
        stats.pass_rate_7_days = _percent(int(totals.passed_7 or 0), stats.messages_7_days)

        sources = self.db.query(Source.source_type, Source.known_sender_id).filter(
            Source.domain_id == domain_id
        ).all()
        stats.unique_sources = len(sources)
        for source_type, known_sender_id in sources:
            if source_type == SourceType.LEGITIMATE.value or known_sender_id:
                stats.known_sources += 1
            if source_type == SourceType.UNKNOWN.value and not known_sender_id:
                stats.unknown_sources += 1
            if source_type == SourceType.LEGITIMATE.value:
                stats.legitimate_sources += 1
            elif source_type == SourceType.SUSPICIOUS.value:
                stats.suspicious_sources += 1
            elif source_type == SourceType.FORWARDED.value:
                stats.forwarded_sources += 1

        return stats

    def calculate_confidence(self, stats: DomainStats) -> int:
        """Confidence 0-100 in the domain's readiness for a stricter policy"""
        if stats.total_messages == 0:
            return 0

        history = min(stats.days_monitored, self.HISTORY_FULL_DAYS) / self.HISTORY_FULL_DAYS
        score = history * self.HISTORY_WEIGHT

        score += stats.pass_rate_30_days / 100 * self.PASS_RATE_WEIGHT

        if stats.messages_7_days and stats.messages_30_days:
            drift = abs(stats.pass_rate_7_days - stats.pass_rate_30_days)
            score += max(0.0, 1 - drift / self.CONSISTENCY_TOLERANCE) * self.CONSISTENCY_WEIGHT

        if stats.unique_sources:
            classified = stats.unique_sources - stats.unknown_sources
            score += classified / stats.unique_sources * self.COVERAGE_WEIGHT

        return max(0, min(100, int(round(score))))

    def _thresholds_for(self, current_policy: str) -> Optional[PolicyThresholds]:
        if current_policy == "none":
            return self.QUARANTINE
        if current_policy == "quarantine":
            return self.REJECT
        return None

    def _evaluate(self, t: PolicyThresholds, stats: DomainStats, confidence: int):
        """(passed, achievement, blocker) for every condition of a step"""
        unknown = stats.unknown_sources
        if t.max_unknown_sources == 0:
            unknown_ok = "All sources identified"
            unknown_blocker = f"{unknown} unknown source(s) must be classified before p={t.policy}"
        else:
            unknown_ok = f"Only {unknown} unknown source(s), within the limit of {t.max_unknown_sources}"
            unknown_blocker = (
                f"{unknown} unknown sources need investigation "
                f"(at most {t.max_unknown_sources} allowed for p={t.policy})"
            )

        return [
            (
                stats.pass_rate_30_days >= t.pass_rate_30_days,
                f"30-day pass rate {stats.pass_rate_30_days}% meets the {t.pass_rate_30_days:g}% target",
                f"30-day pass rate should be at least {t.pass_rate_30_days:g}% "
                f"(currently {stats.pass_rate_30_days}%)",
            ),
            (
                stats.pass_rate_7_days >= t.pass_rate_7_days,
                f"Consistent recent performance: {stats.pass_rate_7_days}% over 7 days",
                f"7-day pass rate should be at least {t.pass_rate_7_days:g}% "
                f"(currently {stats.pass_rate_7_days}%)",
            ),
            (
                stats.days_monitored >= t.min_days,
                f"{stats.days_monitored} days of monitoring data",
                f"Need at least {t.min_days} days of data (currently {stats.days_monitored})",
            ),
            (
                stats.total_messages >= t.min_messages,
                f"{stats.total_messages:,} messages analyzed",
                f"Need at least {t.min_messages:,} messages (currently {stats.total_messages:,})",
            ),
            (
                unknown <= t.max_unknown_sources,
                unknown_ok,
                unknown_blocker,
            ),
            (
                confidence >= t.min_confidence,
                f"Confidence {confidence} meets the {t.min_confidence} required for p={t.policy}",
                f"Confidence {confidence} is below the {t.min_confidence} required for p={t.policy}",
            ),
        ]

    def recommend(self, domain_id: str) -> PolicyRecommendation:
        """
        Recommend the next policy step for a domain.

        The recommendation moves at most one step up the ladder and never
        down; when any condition fails it equals the current policy.

        Raises:
            NotFoundError: Unknown domain
        """
        now = self.now
        stats = self.get_domain_stats(domain_id, now=now)
        current = stats.current_policy

        recommendation = PolicyRecommendation(
            current_policy=current,
            recommended_policy=current,
            confidence=0,
            pass_rate=stats.pass_rate,
            pass_rate_7_days=stats.pass_rate_7_days,
            pass_rate_30_days=stats.pass_rate_30_days,
            total_messages=stats.total_messages,
            unique_sources=stats.unique_sources,
            known_sources=stats.known_sources,
            unknown_sources=stats.unknown_sources,
            days_monitored=stats.days_monitored,
            ready_to_upgrade=False,
        )

        if stats.report_count == 0:
            recommendation.blockers.append("No DMARC reports received yet")
            return recommendation

        confidence = self.calculate_confidence(stats)
        recommendation.confidence = confidence

        thresholds = self._thresholds_for(current)
        if thresholds is None:
            recommendation.achievements.append("Already at the strictest policy (p=reject)")
            if stats.pass_rate_30_days < self.QUARANTINE.pass_rate_30_days:
                recommendation.blockers.append(
                    f"30-day pass rate dropped to {stats.pass_rate_30_days}% under p=reject; "
                    f"review failing sources"
                )
            return recommendation

        for passed, achievement, blocker in self._evaluate(thresholds, stats, confidence):
            if passed:
                recommendation.achievements.append(achievement)
            else:
                recommendation.blockers.append(blocker)

        if not recommendation.blockers:
            recommendation.recommended_policy = thresholds.policy
            recommendation.ready_to_upgrade = True

        logger.debug(
            "Policy recommendation computed",
            extra={
                "domain_id": domain_id,
                "current_policy": current,
                "recommended_policy": recommendation.recommended_policy,
                "confidence": confidence,
            }
        )
        return recommendation
