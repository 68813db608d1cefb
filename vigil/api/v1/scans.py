"""Scan endpoints: create a scan, upload its dependency files, read its summary."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile
from sqlalchemy.orm import Session

from vigil.core.config import get_settings
from vigil.core.database import get_db
from vigil.schemas.scan import CreateScanRequest, ScanSummaryResponse, UploadFilesResponse
from vigil.services.event_channel import DatabaseEventChannel
from vigil.services.providers.manager import BUILTIN_PROVIDER_CODES
from vigil.services.scans import (
    IncomingFile,
    RepositoryNotFoundError,
    ScanNotFoundError,
    ScanService,
    UploadValidationError,
    to_file_item,
)
from vigil.services.state_machine import InvalidTransitionError, ScanStateMachine
from vigil.services.storage import LocalFileStorage

logger = logging.getLogger(__name__)

router = APIRouter()

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


def get_scan_service(db: Annotated[Session, Depends(get_db)]) -> ScanService:
    settings = get_settings()
    channel = DatabaseEventChannel(db)
    return ScanService(
        db,
        ScanStateMachine(db, channel),
        channel,
        LocalFileStorage(settings.UPLOAD_DIR),
        settings,
        provider_codes=list(BUILTIN_PROVIDER_CODES),
    )


def _is_upload_file(obj: object) -> bool:
    """True if obj is an uploaded file (UploadFile or file-like with filename and read)."""
    if isinstance(obj, UploadFile):
        return True
    return (
        hasattr(obj, "read")
        and callable(getattr(obj, "read", None))
        and hasattr(obj, "filename")
    )


@router.post("", response_model=ScanSummaryResponse, status_code=201)
def create_scan(
    body: CreateScanRequest,
    service: Annotated[ScanService, Depends(get_scan_service)],
) -> ScanSummaryResponse:
    """Create a pending scan for a repository. Files are uploaded separately."""
    try:
        scan = service.create_scan(
            body.repository_id,
            branch=body.branch,
            provider_code=body.provider_code,
            requested_by=body.requested_by,
        )
    except RepositoryNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message) from e
    except UploadValidationError as e:
        raise HTTPException(status_code=422, detail=e.message) from e
    return service.get_scan_summary(scan.id)


@router.post("/{scan_id}/files", response_model=UploadFilesResponse, status_code=201)
async def upload_scan_files(
    scan_id: int,
    request: Request,
    service: Annotated[ScanService, Depends(get_scan_service)],
) -> UploadFilesResponse:
    """
    Store dependency files for a scan (multipart/form-data).

    Every file part is accepted whatever its field name. Send `upload_complete=true`
    with the last batch to queue the provider scan.
    """
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type != "multipart/form-data":
        raise HTTPException(status_code=415, detail="Content-Type must be multipart/form-data.")
    form = await request.form()
    upload_complete = str(form.get("upload_complete") or "").strip().lower() in _TRUE_VALUES
    files: list[IncomingFile] = []
    for _, value in form.multi_items():
        if _is_upload_file(value):
            files.append(IncomingFile(filename=value.filename or "", content=await value.read()))

    try:
        stored = service.handle_uploaded_files(scan_id, files, upload_complete=upload_complete)
    except ScanNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message) from e
    except UploadValidationError as e:
        raise HTTPException(status_code=422, detail=e.message) from e
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=e.message) from e

    summary = service.get_scan_summary(scan_id)
    logger.info(
        "Scan files uploaded",
        extra={"scan_id": scan_id, "count": len(stored), "upload_complete": upload_complete},
    )
    return UploadFilesResponse(
        scan_id=scan_id,
        status=summary.scan.status,
        files=[to_file_item(f) for f in stored],
    )


@router.get("/{scan_id}", response_model=ScanSummaryResponse)
def get_scan(
    scan_id: int,
    service: Annotated[ScanService, Depends(get_scan_service)],
) -> ScanSummaryResponse:
    try:
        return service.get_scan_summary(scan_id)
    except ScanNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message) from e
