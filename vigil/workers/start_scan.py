"""Start handler: upload a scan's files to its provider and begin polling."""

import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from vigil.models import FileInScan, Scan
from vigil.schemas.messages import PollProviderScanMessage, StartProviderScanMessage
from vigil.schemas.scan import ScanStatus
from vigil.services.event_channel import EventChannel
from vigil.services.providers.manager import ProviderManager
from vigil.services.state_machine import (
    ConcurrentTransitionError,
    InvalidTransitionError,
    ScanStateMachine,
)
from vigil.services.storage import LocalFileStorage
from vigil.workers.poller import POLL_DELAY_SECONDS

logger = logging.getLogger(__name__)


class StartProviderScanHandler:
    def __init__(
        self,
        session: Session,
        providers: ProviderManager,
        channel: EventChannel,
        state_machine: ScanStateMachine,
        storage: LocalFileStorage,
        poll_delay: timedelta = timedelta(seconds=POLL_DELAY_SECONDS),
    ) -> None:
        self._session = session
        self._providers = providers
        self._channel = channel
        self._state_machine = state_machine
        self._storage = storage
        self._poll_delay = poll_delay

    def __call__(self, message: StartProviderScanMessage) -> None:
        try:
            self._handle(message)
        except ConcurrentTransitionError:
            logger.warning(
                "Scan changed by another worker; start discarded",
                extra={"scan_id": message.scan_id},
            )
        except InvalidTransitionError as e:
            self._session.rollback()
            logger.error("Start produced an invalid transition", extra={"scan_id": message.scan_id, "error": e.message})
        except Exception:
            self._session.rollback()
            logger.exception("Unexpected error starting provider scan", extra={"scan_id": message.scan_id})

    def _handle(self, message: StartProviderScanMessage) -> None:
        scan = self._session.get(Scan, message.scan_id)
        if scan is None:
            logger.warning("Scan not found", extra={"scan_id": message.scan_id})
            return
        if scan.status != ScanStatus.UPLOADED.value:
            logger.warning(
                "Scan is not awaiting start; message discarded",
                extra={"scan_id": scan.id, "status": scan.status},
            )
            return

        adapter = self._providers.get_adapter(scan.provider_code)
        if adapter is None:
            logger.error(
                "No provider adapter found",
                extra={"scan_id": scan.id, "provider": self._providers.resolve_code(scan.provider_code)},
            )
            self._state_machine.transition(scan, ScanStatus.FAILED, "No provider adapter found")
            return

        files = (
            self._session.query(FileInScan)
            .filter(FileInScan.scan_id == scan.id)
            .order_by(FileInScan.id)
            .all()
        )
        local_paths = [self._storage.absolute_path(f.file_path) for f in files]
        repository = scan.repository
        options = {
            "repository_name": repository.name if repository is not None else str(scan.repository_id),
            "repository_url": repository.url if repository is not None else None,
            "branch_name": scan.branch,
            "author": scan.requested_by,
            "commit_name": str(scan.id),
            "file_names": {p: f.file_name for p, f in zip(local_paths, files)},
            "file_ids": {p: f.id for p, f in zip(local_paths, files)},
        }

        try:
            result = adapter.upload_and_create_scan(scan, local_paths, options)
        except Exception as e:
            self._session.rollback()
            logger.error(
                "Provider upload failed",
                extra={
                    "scan_id": scan.id,
                    "provider": adapter.provider_code(),
                    "error": getattr(e, "message", str(e)),
                },
            )
            self._state_machine.transition(scan, ScanStatus.FAILED, "Provider upload failed")
            return

        scan.provider_code = adapter.provider_code()
        self._state_machine.transition(scan, ScanStatus.RUNNING, "Provider scan started")
        logger.info(
            "Provider scan started",
            extra={"scan_id": scan.id, "provider": scan.provider_code, "remote_upload_id": result.remote_upload_id},
        )
        self._channel.publish(
            PollProviderScanMessage(scan_id=scan.id, attempt_number=1),
            delay=self._poll_delay,
        )
