from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import List, Optional


class ImportResultResponse(BaseModel):
    success: bool
    skipped: bool = False
    skip_reason: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    report_id: Optional[str] = None
    record_count: int = 0
    new_sources: int = 0
    matched_sources: int = 0


class SpfPreviewRequest(BaseModel):
    spf_include: str = Field(..., min_length=1, max_length=255)


class SpfPreviewResponse(BaseModel):
    domain: str
    valid: bool
    ip_ranges: List[str]
    includes: List[str]
    errors: List[str]
    lookups: int


class SourceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    domain_id: str
    source_ip: str
    hostname: Optional[str] = None
    organization: Optional[str] = None
    country: Optional[str] = None
    source_type: str
    classification_method: Optional[str] = None
    known_sender_id: Optional[str] = None
    classified_by: Optional[str] = None
    classified_at: Optional[datetime] = None
    notes: Optional[str] = None
    total_messages: int
    passed_messages: int
    failed_messages: int
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None


class SourceClassificationRequest(BaseModel):
    source_type: str
    classified_by: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=2000)
    known_sender_id: Optional[str] = None


class SourceMatchResponse(BaseModel):
    source_id: str
    matched: bool
    known_sender_id: Optional[str] = None


class BulkMatchResponse(BaseModel):
    matched: int
    total: int


class PolicyRecommendationResponse(BaseModel):
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
    blockers: List[str]
    achievements: List[str]


class SyncRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    status: str
    messages_processed: int
    imported: int
    skipped: int
    errors: int
    batches_processed: int
    last_error: Optional[str] = None
    started_at: datetime
    last_batch_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
