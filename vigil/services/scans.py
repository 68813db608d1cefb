"""Scan creation, file upload handling and scan summaries."""

import logging
import os
from dataclasses import dataclass

from sqlalchemy.orm import Session

from vigil.core.config import Settings
from vigil.models import FileInScan, Repository, Scan
from vigil.schemas.messages import StartProviderScanMessage
from vigil.schemas.scan import ScanDetail, ScanFileItem, ScanStatus, ScanSummaryResponse
from vigil.services.event_channel import EventChannel
from vigil.services.state_machine import ScanStateMachine
from vigil.services.storage import LocalFileStorage, safe_file_name

logger = logging.getLogger(__name__)


class ScanNotFoundError(Exception):
    def __init__(self, scan_id: int) -> None:
        self.scan_id = scan_id
        self.message = f"Scan {scan_id} not found"
        super().__init__(self.message)


class RepositoryNotFoundError(Exception):
    def __init__(self, repository_id: int) -> None:
        self.repository_id = repository_id
        self.message = f"Repository {repository_id} not found"
        super().__init__(self.message)


class UploadValidationError(Exception):
    """Rejected create or upload request (bad provider, file count, extension or size)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


@dataclass(frozen=True)
class IncomingFile:
    """One uploaded file as received from the client."""

    filename: str
    content: bytes


def to_file_item(f: FileInScan) -> ScanFileItem:
    return ScanFileItem(id=f.id, name=f.file_name, path=f.file_path, size=f.size, status=f.status)


class ScanService:
    def __init__(
        self,
        session: Session,
        state_machine: ScanStateMachine,
        channel: EventChannel,
        storage: LocalFileStorage,
        settings: Settings,
        provider_codes: list[str] | None = None,
    ) -> None:
        self._session = session
        self._state_machine = state_machine
        self._channel = channel
        self._storage = storage
        self._settings = settings
        self._provider_codes = provider_codes

    def _get_scan(self, scan_id: int) -> Scan:
        scan = self._session.get(Scan, scan_id)
        if scan is None:
            raise ScanNotFoundError(scan_id)
        return scan

    def create_scan(
        self,
        repository_id: int,
        branch: str | None = None,
        provider_code: str | None = None,
        requested_by: str | None = None,
    ) -> Scan:
        """Create a pending scan. Raises RepositoryNotFoundError or UploadValidationError (unknown provider)."""
        if self._session.get(Repository, repository_id) is None:
            raise RepositoryNotFoundError(repository_id)
        code = (provider_code or "").strip().lower() or None
        if code is not None and self._provider_codes is not None and code not in self._provider_codes:
            raise UploadValidationError(f"Provider '{code}' not found")

        scan = Scan(
            repository_id=repository_id,
            branch=branch,
            provider_code=code,
            requested_by=requested_by,
            status=ScanStatus.PENDING.value,
            vulnerability_count=0,
        )
        self._session.add(scan)
        self._session.commit()
        logger.info("Scan created", extra={"scan_id": scan.id, "repository_id": repository_id})
        return scan

    def _validate(self, files: list[IncomingFile]) -> None:
        s = self._settings
        if not files:
            raise UploadValidationError("No files provided")
        if len(files) > s.MAX_FILES_PER_REQUEST:
            raise UploadValidationError(
                f"Too many files in request (at most {s.MAX_FILES_PER_REQUEST})"
            )
        allowed = s.allowed_upload_extensions
        for f in files:
            ext = os.path.splitext(f.filename or "")[1].lower().lstrip(".")
            if ext not in allowed:
                raise UploadValidationError(f"Extension .{ext} not allowed")
            if not f.content:
                raise UploadValidationError(f"File {f.filename} cannot be empty")
            if len(f.content) > s.MAX_UPLOAD_FILE_BYTES:
                raise UploadValidationError(f"File {f.filename} exceeds max size")

    def handle_uploaded_files(
        self,
        scan_id: int,
        files: list[IncomingFile],
        upload_complete: bool = False,
    ) -> list[FileInScan]:
        """
        Validate and store files for a scan.

        The whole request is validated before anything is written. When
        upload_complete is set the scan moves to uploaded and a start message is queued.
        """
        scan = self._get_scan(scan_id)
        if scan.status != ScanStatus.PENDING.value:
            raise UploadValidationError(
                f"Scan {scan.id} is not accepting files (status '{scan.status}')"
            )
        self._validate(files)

        stored: list[FileInScan] = []
        for f in files:
            relative = f"uploads/{scan.id}/{safe_file_name(f.filename)}"
            self._storage.write(relative, f.content)
            row = FileInScan(
                scan_id=scan.id,
                file_name=f.filename,
                file_path=relative,
                size=len(f.content),
                status="uploaded",
            )
            self._session.add(row)
            stored.append(row)
        self._session.commit()
        logger.info("Files stored for scan", extra={"scan_id": scan.id, "count": len(stored)})

        if upload_complete:
            self._state_machine.transition(scan, ScanStatus.UPLOADED, "All files uploaded")
            self._channel.publish(StartProviderScanMessage(scan_id=scan.id))
        return stored

    def get_scan_summary(self, scan_id: int) -> ScanSummaryResponse:
        scan = self._get_scan(scan_id)
        files = (
            self._session.query(FileInScan)
            .filter(FileInScan.scan_id == scan.id)
            .order_by(FileInScan.id)
            .all()
        )
        return ScanSummaryResponse(
            repository_id=scan.repository_id,
            scan=ScanDetail(
                id=scan.id,
                status=scan.status,
                provider_code=scan.provider_code,
                branch=scan.branch,
                vulnerability_count=scan.vulnerability_count or 0,
                started_at=scan.started_at,
                completed_at=scan.completed_at,
            ),
            files=[to_file_item(f) for f in files],
        )
