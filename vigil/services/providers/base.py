"""Contract every external scanning provider implements."""

from abc import ABC, abstractmethod
from typing import Any

from vigil.models import Scan
from vigil.schemas.provider import NormalizedScanResult, PollStatus, UploadResult


class ProviderError(Exception):
    """Network, protocol or authentication failure talking to a provider."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ProviderAdapter(ABC):
    """Gateway to one external scanner."""

    @abstractmethod
    def provider_code(self) -> str:
        """Stable identifier; also the namespace for this provider's mappings."""

    @abstractmethod
    def upload_and_create_scan(
        self,
        scan: Scan,
        local_paths: list[str],
        options: dict[str, Any] | None = None,
    ) -> UploadResult:
        """
        Upload every file, persist file and ci_upload mappings, and start the remote scan.

        Raises ProviderError on any failure; nothing is reported as partially successful.
        """

    @abstractmethod
    def poll_scan_status(self, remote_upload_id: str) -> PollStatus:
        """Ask the provider how far the remote scan has got. Raises ProviderError."""

    @abstractmethod
    def normalize_scan_result(self, raw: dict[str, Any]) -> NormalizedScanResult:
        """Pure transform of a raw provider result into the canonical shape."""
