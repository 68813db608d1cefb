"""Pydantic request/response and message schemas."""

from vigil.schemas.findings import SEVERITY_VALUES, SeverityLevel
from vigil.schemas.health import HealthResponse
from vigil.schemas.messages import (
    PollProviderScanMessage,
    QueueMessage,
    ScanStatusChangedMessage,
    StartProviderScanMessage,
    decode_message,
)
from vigil.schemas.notification import ScanNotification
from vigil.schemas.provider import (
    NormalizedScanResult,
    PollStatus,
    UploadResult,
    VulnerabilityRecord,
)
from vigil.schemas.scan import (
    CreateScanRequest,
    ScanStatus,
    ScanSummaryResponse,
    UploadFilesResponse,
)

__all__ = [
    "CreateScanRequest",
    "HealthResponse",
    "NormalizedScanResult",
    "PollProviderScanMessage",
    "PollStatus",
    "QueueMessage",
    "SEVERITY_VALUES",
    "ScanNotification",
    "ScanStatus",
    "ScanStatusChangedMessage",
    "ScanSummaryResponse",
    "SeverityLevel",
    "StartProviderScanMessage",
    "UploadFilesResponse",
    "UploadResult",
    "VulnerabilityRecord",
    "decode_message",
]
