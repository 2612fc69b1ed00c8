"""
API routes for report ingestion, source classification and policy advice.

Every route is scoped to the organization named in the X-Organization-Id
header; resources of other organizations are reported as not found.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.orm import Session

from dmarcwatch.database import get_db
from dmarcwatch.error_handlers import BadRequestError, NotFoundError
from dmarcwatch.models import Domain, Organization, Source, SyncRun, SyncStatus
from dmarcwatch.parsers.dmarc_parser import ExtractionError, extract_report_text
from dmarcwatch.schemas import (
    BulkMatchResponse,
    ImportResultResponse,
    PolicyRecommendationResponse,
    SourceClassificationRequest,
    SourceMatchResponse,
    SourceResponse,
    SpfPreviewRequest,
    SpfPreviewResponse,
    SyncRunResponse,
)
from dmarcwatch.services.ai_recommendations import (
    AiRecommendationService,
    AiRecommendationStatus,
    CachedRecommendation,
)
from dmarcwatch.services.ingestion import cancel_sync
from dmarcwatch.services.known_sender_matcher import KnownSenderMatcher
from dmarcwatch.services.policy_advisor import PolicyAdvisor
from dmarcwatch.services.report_importer import ReportImporter
from dmarcwatch.services.spf_resolver import preview_spf_include

router = APIRouter(prefix="/api")
logger = logging.getLogger(__name__)


def get_organization(
    x_organization_id: str = Header(..., alias="X-Organization-Id"),
    db: Session = Depends(get_db),
) -> Organization:
    organization = db.get(Organization, x_organization_id)
    if organization is None:
        raise NotFoundError(f"Organization {x_organization_id} not found", resource_type="organization")
    return organization


def _get_domain(db: Session, organization: Organization, domain_id: str) -> Domain:
    domain = db.get(Domain, domain_id)
    if domain is None or domain.organization_id != organization.id:
        raise NotFoundError(f"Domain {domain_id} not found", resource_type="domain")
    return domain


def _get_source(db: Session, organization: Organization, source_id: str) -> Source:
    source = db.get(Source, source_id)
    if source is None or source.domain.organization_id != organization.id:
        raise NotFoundError(f"Source {source_id} not found", resource_type="source")
    return source


# ==================== Reports ====================

@router.post("/domains/{domain_id}/reports", response_model=ImportResultResponse)
async def upload_report(
    domain_id: str,
    request: Request,
    filename: Optional[str] = Query(None, description="Original attachment name, used to detect compression"),
    db: Session = Depends(get_db),
    organization: Organization = Depends(get_organization),
):
    """
    Import one aggregate report posted as the request body.

    Plain XML, gzip and zip payloads are accepted. Sources first seen in the
    report are auto-matched against known senders.
    """
    _get_domain(db, organization, domain_id)

    body = await request.body()
    if not body:
        raise BadRequestError("Empty request body", error_code="EMPTY_REPORT")

    try:
        xml_text = extract_report_text(body, filename or "report.xml")
    except ExtractionError as e:
        raise BadRequestError(str(e), error_code="EXTRACTION_FAILED")
    if xml_text is None:
        raise BadRequestError("No report document found in payload", error_code="NO_REPORT")

    result = ReportImporter(db).import_report(xml_text, domain_id)

    matched = 0
    if result.success and result.new_source_ids:
        matched = KnownSenderMatcher(db).match_sources(result.new_source_ids, organization.id)

    return ImportResultResponse(**result.to_dict(), matched_sources=matched)


# ==================== Known senders ====================

@router.post("/known-senders/preview-spf", response_model=SpfPreviewResponse)
def preview_spf(
    payload: SpfPreviewRequest,
    organization: Organization = Depends(get_organization),
):
    """Expand an SPF include to the IP ranges it authorizes"""
    resolution = preview_spf_include(payload.spf_include)
    return SpfPreviewResponse(valid=bool(resolution.ip_ranges), **resolution.to_dict())


# ==================== Sources ====================

@router.post("/domains/{domain_id}/sources/match", response_model=BulkMatchResponse)
def match_domain_sources(
    domain_id: str,
    db: Session = Depends(get_db),
    organization: Organization = Depends(get_organization),
):
    _get_domain(db, organization, domain_id)
    summary = KnownSenderMatcher(db).match_all_sources_for_domain(domain_id, organization.id)
    return BulkMatchResponse(**summary.to_dict())


@router.post("/sources/{source_id}/match", response_model=SourceMatchResponse)
def match_source(
    source_id: str,
    db: Session = Depends(get_db),
    organization: Organization = Depends(get_organization),
):
    _get_source(db, organization, source_id)
    known_sender_id = KnownSenderMatcher(db).auto_match_source(source_id, organization.id)
    return SourceMatchResponse(
        source_id=source_id,
        matched=known_sender_id is not None,
        known_sender_id=known_sender_id,
    )


@router.patch("/sources/{source_id}", response_model=SourceResponse)
async def classify_source(
    source_id: str,
    payload: SourceClassificationRequest,
    db: Session = Depends(get_db),
    organization: Organization = Depends(get_organization),
):
    """Manual classification; auto-matching never overrides it"""
    _get_source(db, organization, source_id)
    try:
        source = KnownSenderMatcher(db).classify_source(
            source_id,
            payload.source_type,
            classified_by=payload.classified_by,
            notes=payload.notes,
            known_sender_id=payload.known_sender_id,
        )
    except ValueError as e:
        raise BadRequestError(str(e), error_code="INVALID_SOURCE_TYPE")
    return source


# ==================== Recommendations ====================

@router.get("/domains/{domain_id}/policy-recommendation", response_model=PolicyRecommendationResponse)
async def get_policy_recommendation(
    domain_id: str,
    db: Session = Depends(get_db),
    organization: Organization = Depends(get_organization),
):
    _get_domain(db, organization, domain_id)
    recommendation = PolicyAdvisor(db).recommend(domain_id)
    return PolicyRecommendationResponse(**recommendation.to_dict())


@router.get("/domains/{domain_id}/ai-recommendation", response_model=AiRecommendationStatus)
async def get_ai_recommendation(
    domain_id: str,
    db: Session = Depends(get_db),
    organization: Organization = Depends(get_organization),
):
    """Cached AI recommendation, or whether a new one can be generated"""
    return AiRecommendationService(db).get_recommendation(organization.id, domain_id)


@router.post("/domains/{domain_id}/ai-recommendation", response_model=CachedRecommendation)
def generate_ai_recommendation(
    domain_id: str,
    db: Session = Depends(get_db),
    organization: Organization = Depends(get_organization),
):
    """
    Generate a fresh AI recommendation.

    Returns 429 with Retry-After while the domain is cooling down or the
    organization's daily quota is spent.
    """
    return AiRecommendationService(db).generate(organization.id, domain_id)


# ==================== Sync runs ====================

@router.post("/sync-runs", response_model=SyncRunResponse, status_code=202)
def start_sync_run(
    limit: Optional[int] = Query(None, ge=1, description="Maximum messages to process"),
    db: Session = Depends(get_db),
    organization: Organization = Depends(get_organization),
):
    """Queue a mailbox sync on the worker"""
    from dmarcwatch.tasks.sync import sync_mailbox_task

    run = SyncRun(organization_id=organization.id, status=SyncStatus.SYNCING.value)
    db.add(run)
    db.commit()
    db.refresh(run)

    sync_mailbox_task.delay(organization.id, limit=limit, run_id=run.id)
    logger.info("Queued mailbox sync", extra={"run_id": run.id, "organization_id": organization.id})
    return run


@router.get("/sync-runs/{run_id}", response_model=SyncRunResponse)
async def get_sync_run(
    run_id: str,
    db: Session = Depends(get_db),
    organization: Organization = Depends(get_organization),
):
    run = db.get(SyncRun, run_id)
    if run is None or run.organization_id != organization.id:
        raise NotFoundError(f"Sync run {run_id} not found", resource_type="sync_run")
    return run


@router.post("/sync-runs/{run_id}/cancel", response_model=SyncRunResponse)
async def cancel_sync_run(
    run_id: str,
    db: Session = Depends(get_db),
    organization: Organization = Depends(get_organization),
):
    run = db.get(SyncRun, run_id)
    if run is None or run.organization_id != organization.id:
        raise NotFoundError(f"Sync run {run_id} not found", resource_type="sync_run")
    return cancel_sync(db, run_id)
