"""
Scan Schemas

Value types flowing through the scan pipeline (sitemap resolution, W3C
validation, queue bookkeeping) and the request/response models of the scan
API endpoints.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from app.features.scan.models.queue_job import QueueJobState
from app.features.scan.models.scan import ScanStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Sitemap resolution
# ============================================================================

class SitemapResolution(BaseModel):
    """Validated page URLs extracted from a sitemap, plus advisories."""
    urls: List[str]
    warnings: List[str] = []
    metadata: Dict[str, Any] = {}

    @property
    def url_count(self) -> int:
        return len(self.urls)


class SitemapProbe(BaseModel):
    """Result of the cheap reachability check done before queueing."""
    accessible: bool
    status_code: Optional[int] = None
    content_type: Optional[str] = None
    content_length: Optional[str] = None
    last_modified: Optional[str] = None
    server: Optional[str] = None
    error: Optional[str] = None


# ============================================================================
# W3C validation
# ============================================================================

Severity = Literal["critical", "high", "medium", "low"]


class ValidationMessage(BaseModel):
    type: str = "unknown"
    message: str = "No message provided"
    line: Optional[int] = None
    column: Optional[int] = None
    extract: Optional[str] = None
    severity: Severity = "medium"


class ValidationResult(BaseModel):
    url: str
    errors: List[ValidationMessage] = []
    warnings: List[ValidationMessage] = []
    checked_at: datetime = Field(default_factory=_utcnow)

    @computed_field
    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def warning_count(self) -> int:
        return len(self.warnings)


class BatchProgress(BaseModel):
    """Emitted by the batch validator once per URL, in processing order."""
    completed: int
    total: int
    current_url: str
    result: ValidationResult
    error: Optional[str] = None


class SeverityBreakdown(BaseModel):
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0


class ValidationSummary(BaseModel):
    total: int = 0
    valid: int = 0
    invalid: int = 0
    total_errors: int = 0
    total_warnings: int = 0
    error_types: Dict[str, int] = {}
    warning_types: Dict[str, int] = {}
    severity_breakdown: SeverityBreakdown = Field(default_factory=SeverityBreakdown)
    valid_percentage: int = 0


# ============================================================================
# Queue
# ============================================================================

class ScanJobPayload(BaseModel):
    scan_id: str
    user_id: str
    sitemap_url: str


class JobHandle(BaseModel):
    id: str
    state: QueueJobState = QueueJobState.waiting
    progress: int = 0


class JobStatus(BaseModel):
    id: str
    name: str
    payload: Dict[str, Any]
    state: QueueJobState
    progress: int
    priority: int = 0
    attempts_made: int
    max_attempts: int
    failed_reason: Optional[str] = None
    processed_on: Optional[datetime] = None
    finished_on: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0


# ============================================================================
# API models
# ============================================================================

class ScanCreateRequest(BaseModel):
    """Request to start a sitemap scan."""
    sitemap_url: str = Field(..., min_length=1, max_length=2000)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "sitemap_url": "https://example.com/sitemap.xml",
            }
        }
    )


class ScanOut(BaseModel):
    id: str
    user_id: str
    sitemap_url: str
    status: ScanStatus
    total_urls: int
    error_message: Optional[str] = None
    warnings: Optional[List[str]] = None
    job_id: Optional[str] = None
    credits_charged: int = 0
    credits_refunded: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ScanResultOut(BaseModel):
    id: str
    url: str
    errors: List[ValidationMessage]
    warnings: List[ValidationMessage]
    is_valid: bool
    checked_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ScanCreateResponse(BaseModel):
    scan: ScanOut
    job: JobHandle


class ScanStatusResponse(BaseModel):
    scan_id: str
    status: ScanStatus
    progress: int
    total_urls: int
    error_message: Optional[str] = None
    job: Optional[JobStatus] = None


ResultFilter = Literal["all", "errors", "valid", "warnings"]
