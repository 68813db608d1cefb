"""Canonical shapes exchanged between the orchestration core and provider adapters."""

from typing import Any, Literal

from pydantic import BaseModel, Field

from vigil.schemas.findings import SeverityLevel


class UploadResult(BaseModel):
    """Outcome of uploading a scan's files and starting the remote scan."""

    remote_upload_id: str = Field(..., min_length=1)
    remote_file_ids: list[str] = Field(default_factory=list)
    raw: dict[str, Any] | None = None


class PollStatus(BaseModel):
    """One status poll of a remote scan. scan_completed is true exactly when progress == 100."""

    progress: int = Field(..., ge=0, le=100)
    scan_completed: bool
    vulnerabilities_found: int = Field(default=0, ge=0)
    details_url: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class VulnerabilityRecord(BaseModel):
    """Provider-agnostic vulnerability extracted from a completed result."""

    title: str
    cve: str | None = None
    severity: SeverityLevel = "info"
    score: float | None = None
    package_name: str | None = None
    package_version: str | None = None
    ecosystem: str | None = None
    references: dict[str, Any] = Field(default_factory=dict)
    package_metadata: dict[str, Any] = Field(default_factory=dict)


class NormalizedScanResult(BaseModel):
    """Canonical form of one provider's raw scan result."""

    status: Literal["completed", "running"]
    vulnerabilities: list[VulnerabilityRecord] = Field(default_factory=list)
    vulnerability_count: int = Field(default=0, ge=0)
