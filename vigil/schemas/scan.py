"""Scan status values and request/response schemas for the scan endpoints."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ScanStatus(str, Enum):
    """Persisted scan status values."""

    PENDING = "pending"
    UPLOADED = "uploaded"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class CreateScanRequest(BaseModel):
    """Body for POST /scans."""

    repository_id: int = Field(..., ge=1, description="Repository to scan.")
    branch: str | None = Field(default=None, max_length=255)
    provider_code: str | None = Field(
        default=None,
        max_length=64,
        description="Scanning provider; the configured default is used when omitted.",
    )
    requested_by: str | None = Field(default=None, max_length=255)


class ScanFileItem(BaseModel):
    """One uploaded file in a scan summary."""

    id: int
    name: str
    path: str
    size: int | None = None
    status: str


class ScanDetail(BaseModel):
    """Scan fields exposed by the summary endpoint."""

    id: int
    status: str
    provider_code: str | None = None
    branch: str | None = None
    vulnerability_count: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ScanSummaryResponse(BaseModel):
    """Response for GET /scans/{id} and POST /scans."""

    repository_id: int
    scan: ScanDetail
    files: list[ScanFileItem] = Field(default_factory=list)


class UploadFilesResponse(BaseModel):
    """Response after storing uploaded dependency files."""

    scan_id: int
    status: str = Field(..., description="Scan status after the upload was handled.")
    files: list[ScanFileItem] = Field(default_factory=list)
