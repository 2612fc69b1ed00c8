"""
AI recommendation cache, daily quota and per-domain cooldown.

Cached entries are keyed by domain and a hash of the statistical context, so
a change in the underlying data is a cache miss without explicit
invalidation. Generation is gated by a per-domain cooldown and a
per-organization daily quota; both live in the relational store and are
updated with atomic upserts so several API workers can share them.
"""

import hashlib
import json
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from fastapi import status
from pydantic import BaseModel
from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from dmarcwatch.config import get_settings
from dmarcwatch.error_handlers import APIError, NotFoundError
from dmarcwatch.metrics import record_ai_generation
from dmarcwatch.models import (
    AiDomainCooldown,
    AiIntegration,
    AiRecommendationCache,
    AiUsageCounter,
    Domain,
)
from dmarcwatch.services.gemini_client import (
    AiProviderError,
    AiRecommendation,
    DmarcContext,
    GeminiClient,
    SourceCounts,
)
from dmarcwatch.services.policy_advisor import PolicyAdvisor
from dmarcwatch.services.report_importer import upsert_insert
from dmarcwatch.utils.time_utils import next_utc_midnight, utcnow

logger = logging.getLogger(__name__)


def _remaining_seconds(until: datetime, now: datetime) -> int:
    return max(1, math.ceil((until - now).total_seconds()))


class CooldownError(APIError):
    """A generation for this domain happened too recently"""

    def __init__(self, cooldown_ends_at: datetime, remaining_seconds: int):
        self.cooldown_ends_at = cooldown_ends_at
        self.remaining_seconds = remaining_seconds
        super().__init__(
            message=f"Cooldown active, retry in {remaining_seconds} seconds",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            error_code="COOLDOWN_ACTIVE",
            details={
                "cooldown_ends_at": cooldown_ends_at.isoformat(),
                "retry_after_seconds": remaining_seconds,
            }
        )


class RateLimitError(APIError):
    """The organization's daily generation quota is exhausted"""

    def __init__(self, reset_at: datetime, remaining_seconds: int):
        self.reset_at = reset_at
        self.remaining_seconds = remaining_seconds
        super().__init__(
            message="Daily AI recommendation limit reached",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            error_code="RATE_LIMITED",
            details={
                "rate_limit_reset_at": reset_at.isoformat(),
                "retry_after_seconds": remaining_seconds,
            }
        )


class AiUnavailableError(APIError):
    """AI is not configured or disabled for the organization"""

    def __init__(self, reason: str):
        self.reason = reason
        message = "AI not configured" if reason == "not_configured" else "AI is disabled"
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code="AI_UNAVAILABLE",
            details={"reason": reason}
        )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def hash_context(context: DmarcContext) -> str:
    """
    SHA-256 over the parts of the context that should invalidate the cache.

    Pass rate is rounded to a whole percent and volume floored to hundreds so
    small day-to-day drift keeps serving the cached entry.
    """
    normalized = json.dumps(
        {
            "domain": context.domain,
            "dmarc_record": context.dmarc_record,
            "spf_record": context.spf_record,
            "pass_rate_30_days": _round_half_up(context.pass_rate_30_days),
            "total_messages": (context.total_messages // 100) * 100,
            "sources": context.sources.model_dump(),
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class CachedRecommendation(BaseModel):
    recommendation: AiRecommendation
    generated_at: datetime
    expires_at: datetime
    cached: bool = True


class AiRecommendationStatus(BaseModel):
    """What a caller can show for a domain without generating"""
    available: bool
    reason: Optional[str] = None
    recommendation: Optional[CachedRecommendation] = None
    source: str = "none"  # cache, none
    can_generate: bool = False
    rate_limit_remaining: Optional[int] = None
    rate_limit_reset_at: Optional[datetime] = None
    cooldown_ends_at: Optional[datetime] = None


@dataclass
class CooldownStatus:
    in_cooldown: bool
    cooldown_ends_at: Optional[datetime] = None
    remaining_seconds: int = 0
    last_generated_at: Optional[datetime] = None


@dataclass
class RateLimitStatus:
    allowed: bool
    remaining: int
    reset_at: datetime
    used_today: int


ClientFactory = Callable[[str], object]


class AiRecommendationService:
    """
    Gated access to AI policy recommendations.

    `client_factory` builds a client with a `generate(context)` method from
    an API key; it defaults to GeminiClient.
    """

    def __init__(
        self,
        db: Session,
        client_factory: Optional[ClientFactory] = None,
        now: Optional[datetime] = None,
    ):
        settings = get_settings()
        self.db = db
        self.client_factory = client_factory or GeminiClient
        self._now = now
        self.daily_limit = settings.ai_daily_limit
        self.cache_ttl = timedelta(hours=settings.ai_cache_ttl_hours)
        self.cooldown = timedelta(minutes=settings.ai_cooldown_minutes)

    @property
    def now(self) -> datetime:
        return self._now or utcnow()

    def _get_domain(self, organization_id: str, domain_id: str) -> Domain:
        domain = self.db.get(Domain, domain_id)
        if domain is None or domain.organization_id != organization_id:
            raise NotFoundError(f"Domain {domain_id} not found", resource_type="domain")
        return domain

    def _get_integration(self, organization_id: str) -> Optional[AiIntegration]:
        return self.db.query(AiIntegration).filter(
            AiIntegration.organization_id == organization_id
        ).first()

    def _require_integration(self, organization_id: str) -> AiIntegration:
        integration = self._get_integration(organization_id)
        if integration is None or not integration.api_key:
            raise AiUnavailableError("not_configured")
        if not integration.is_enabled:
            raise AiUnavailableError("disabled")
        return integration

    def build_context(self, domain: Domain) -> DmarcContext:
        """Statistical snapshot of a domain, shared with the rule-based advisor"""
        stats = PolicyAdvisor(self.db, now=self.now).get_domain_stats(domain.id)
        return DmarcContext(
            domain=stats.domain,
            dmarc_record=stats.dmarc_record,
            spf_record=stats.spf_record,
            current_policy=stats.current_policy,
            pass_rate_7_days=stats.pass_rate_7_days,
            pass_rate_30_days=stats.pass_rate_30_days,
            pass_rate_all_time=stats.pass_rate,
            total_messages=stats.total_messages,
            days_monitored=stats.days_monitored,
            sources=SourceCounts(
                legitimate=stats.known_sources,
                unknown=stats.unknown_sources,
                suspicious=stats.suspicious_sources,
                forwarded=stats.forwarded_sources,
            ),
        )

    def get_cached(self, domain_id: str, context: DmarcContext) -> Optional[CachedRecommendation]:
        """Cached entry when its hash matches the context and it has not expired"""
        entry = self.db.query(AiRecommendationCache).filter(
            AiRecommendationCache.domain_id == domain_id
        ).first()
        if entry is None:
            return None
        if entry.expires_at <= self.now:
            return None
        if entry.input_hash != hash_context(context):
            return None
        return CachedRecommendation(
            recommendation=AiRecommendation.model_validate(entry.recommendation),
            generated_at=entry.generated_at,
            expires_at=entry.expires_at,
        )

    def check_cooldown(self, domain_id: str) -> CooldownStatus:
        now = self.now
        row = self.db.get(AiDomainCooldown, domain_id)
        if row is None:
            return CooldownStatus(in_cooldown=False)
        ends_at = row.last_generated_at + self.cooldown
        if now < ends_at:
            return CooldownStatus(
                in_cooldown=True,
                cooldown_ends_at=ends_at,
                remaining_seconds=_remaining_seconds(ends_at, now),
                last_generated_at=row.last_generated_at,
            )
        return CooldownStatus(in_cooldown=False, last_generated_at=row.last_generated_at)

    def check_rate_limit(self, organization_id: str) -> RateLimitStatus:
        """Usage in the current UTC day; the window resets at midnight UTC"""
        now = self.now
        counter = self.db.query(AiUsageCounter).filter(
            AiUsageCounter.organization_id == organization_id,
            AiUsageCounter.window_start == now.date(),
        ).first()
        used = counter.count if counter else 0
        remaining = max(0, self.daily_limit - used)
        return RateLimitStatus(
            allowed=remaining > 0,
            remaining=remaining,
            reset_at=next_utc_midnight(now),
            used_today=used,
        )

    def get_recommendation(self, organization_id: str, domain_id: str) -> AiRecommendationStatus:
        """Serve a cached recommendation, or report whether one can be generated"""
        domain = self._get_domain(organization_id, domain_id)

        try:
            self._require_integration(organization_id)
        except AiUnavailableError as e:
            return AiRecommendationStatus(available=False, reason=e.reason)

        context = self.build_context(domain)
        cached = self.get_cached(domain_id, context)
        if cached is not None:
            return AiRecommendationStatus(available=True, recommendation=cached, source="cache")

        rate_limit = self.check_rate_limit(organization_id)
        cooldown = self.check_cooldown(domain_id)
        return AiRecommendationStatus(
            available=True,
            source="none",
            can_generate=rate_limit.allowed and not cooldown.in_cooldown,
            rate_limit_remaining=rate_limit.remaining,
            rate_limit_reset_at=rate_limit.reset_at,
            cooldown_ends_at=cooldown.cooldown_ends_at,
        )

    def generate(self, organization_id: str, domain_id: str) -> CachedRecommendation:
        """
        Call the model for a fresh recommendation, bypassing the cache.

        The domain's cooldown slot and one unit of the organization's daily
        quota are reserved and committed before the model is called, so
        concurrent callers cannot both pass the gates. Both reservations are
        released when the call fails.

        Raises:
            AiUnavailableError: Integration missing or disabled
            CooldownError: Domain generated within the cooldown window
            RateLimitError: Organization quota exhausted for the UTC day
            AiProviderError: Model call failed; the error is stored on the
                integration and the cooldown is not engaged
        """
        domain = self._get_domain(organization_id, domain_id)
        integration = self._require_integration(organization_id)
        now = self.now

        cooldown = self.check_cooldown(domain_id)
        if cooldown.in_cooldown or not self._reserve_cooldown(domain_id, now):
            self.db.rollback()
            cooldown = self.check_cooldown(domain_id)
            ends_at = cooldown.cooldown_ends_at or now + self.cooldown
            record_ai_generation("cooldown")
            raise CooldownError(ends_at, _remaining_seconds(ends_at, now))
        previous = cooldown.last_generated_at

        if not self._reserve_usage(organization_id, now):
            self._release_cooldown(domain_id, now, previous)
            self.db.commit()
            reset_at = next_utc_midnight(now)
            record_ai_generation("rate_limited")
            raise RateLimitError(reset_at, _remaining_seconds(reset_at, now))
        self.db.commit()

        try:
            context = self.build_context(domain)
            recommendation = self.client_factory(integration.api_key).generate(context)
        except AiProviderError as e:
            self._release_reservation(organization_id, domain_id, now, previous)
            self._record_error(integration, e.message)
            record_ai_generation("error")
            raise
        except Exception:
            self._release_reservation(organization_id, domain_id, now, previous)
            self.db.commit()
            record_ai_generation("error")
            raise

        expires_at = now + self.cache_ttl
        self._store(domain_id, recommendation, hash_context(context), now, expires_at)
        integration.last_used_at = now
        integration.last_error = None
        integration.last_error_at = None
        self.db.commit()

        record_ai_generation("success")
        logger.info(
            "Generated AI recommendation",
            extra={
                "organization_id": organization_id,
                "domain_id": domain_id,
                "recommended_policy": recommendation.recommended_policy,
            }
        )
        return CachedRecommendation(
            recommendation=recommendation,
            generated_at=now,
            expires_at=expires_at,
            cached=False,
        )

    def _record_error(self, integration: AiIntegration, message: str):
        integration.last_error = message
        integration.last_error_at = self.now
        self.db.commit()
        logger.warning(
            "AI generation failed",
            extra={"organization_id": integration.organization_id, "error": message}
        )

    def _reserve_usage(self, organization_id: str, now: datetime) -> bool:
        """Take one unit of today's quota; False when it is already spent"""
        if self.daily_limit <= 0:
            return False
        table = AiUsageCounter.__table__
        stmt = upsert_insert(self.db, table).values(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            window_start=now.date(),
            count=1,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.organization_id, table.c.window_start],
            set_={"count": table.c.count + 1},
            where=table.c.count < self.daily_limit,
        )
        return self.db.execute(stmt).rowcount == 1

    def _release_usage(self, organization_id: str, now: datetime):
        self.db.execute(
            update(AiUsageCounter)
            .where(
                AiUsageCounter.organization_id == organization_id,
                AiUsageCounter.window_start == now.date(),
                AiUsageCounter.count > 0,
            )
            .values(count=AiUsageCounter.count - 1)
        )

    def _reserve_cooldown(self, domain_id: str, now: datetime) -> bool:
        """Claim the domain's generation slot unless another caller holds it"""
        table = AiDomainCooldown.__table__
        stmt = upsert_insert(self.db, table).values(domain_id=domain_id, last_generated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.domain_id],
            set_={"last_generated_at": stmt.excluded.last_generated_at},
            where=table.c.last_generated_at <= now - self.cooldown,
        )
        return self.db.execute(stmt).rowcount == 1

    def _release_cooldown(self, domain_id: str, now: datetime, previous: Optional[datetime]):
        """Restore the slot to its prior state if it still holds our claim"""
        claimed = (
            (AiDomainCooldown.domain_id == domain_id)
            & (AiDomainCooldown.last_generated_at == now)
        )
        if previous is None:
            self.db.execute(delete(AiDomainCooldown).where(claimed))
        else:
            self.db.execute(update(AiDomainCooldown).where(claimed).values(last_generated_at=previous))

    def _release_reservation(self, organization_id: str, domain_id: str, now: datetime,
                             previous: Optional[datetime]):
        self.db.rollback()
        self._release_usage(organization_id, now)
        self._release_cooldown(domain_id, now, previous)

    def _store(self, domain_id: str, recommendation: AiRecommendation, input_hash: str,
               generated_at: datetime, expires_at: datetime):
        table = AiRecommendationCache.__table__
        payload = recommendation.model_dump()
        stmt = upsert_insert(self.db, table).values(
            id=str(uuid.uuid4()),
            domain_id=domain_id,
            recommendation=payload,
            input_hash=input_hash,
            generated_at=generated_at,
            expires_at=expires_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.domain_id],
            set_={
                "recommendation": stmt.excluded.recommendation,
                "input_hash": stmt.excluded.input_hash,
                "generated_at": stmt.excluded.generated_at,
                "expires_at": stmt.excluded.expires_at,
            },
        )
        self.db.execute(stmt)
