"""
Provider poller: one poll of a remote scan per message.

The attempt number carried in the message is the only retry counter. The handler
classifies every failure itself (requeue or terminal status) and never raises.
"""

import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from vigil.models import FileInScan, Scan
from vigil.schemas.messages import PollProviderScanMessage
from vigil.schemas.scan import ScanStatus
from vigil.services.event_channel import EventChannel
from vigil.services.ingestion import stage_scan_results
from vigil.services.mapping import ENTITY_SCAN, MAPPING_CI_UPLOAD, ExternalMappingService
from vigil.services.providers.manager import ProviderManager
from vigil.services.state_machine import (
    ConcurrentTransitionError,
    InvalidTransitionError,
    ScanStateMachine,
    is_terminal,
)

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 30
POLL_DELAY_SECONDS = 30


class PollProviderScanHandler:
    def __init__(
        self,
        session: Session,
        providers: ProviderManager,
        mapping: ExternalMappingService,
        channel: EventChannel,
        state_machine: ScanStateMachine,
        max_attempts: int = MAX_ATTEMPTS,
        poll_delay: timedelta = timedelta(seconds=POLL_DELAY_SECONDS),
    ) -> None:
        self._session = session
        self._providers = providers
        self._mapping = mapping
        self._channel = channel
        self._state_machine = state_machine
        self._max_attempts = max_attempts
        self._poll_delay = poll_delay

    def __call__(self, message: PollProviderScanMessage) -> None:
        try:
            self._handle(message)
        except ConcurrentTransitionError as e:
            logger.warning(
                "Scan changed by another worker; poll result discarded",
                extra={"scan_id": message.scan_id, "attempt": message.attempt_number, "to_status": e.to_status},
            )
        except InvalidTransitionError as e:
            self._session.rollback()
            logger.error(
                "Poll produced an invalid transition",
                extra={"scan_id": message.scan_id, "attempt": message.attempt_number, "error": e.message},
            )
            self._retry_or_fail(message)
        except Exception:
            self._session.rollback()
            logger.exception(
                "Unexpected error while polling",
                extra={"scan_id": message.scan_id, "attempt": message.attempt_number},
            )
            self._retry_or_fail(message)

    def _retry_or_fail(self, message: PollProviderScanMessage) -> None:
        """
        After a rolled-back failure: requeue while attempts remain, else fail the scan.

        The scan is re-read because the rollback discarded any in-memory change.
        """
        try:
            scan = self._session.get(Scan, message.scan_id)
            if scan is None or is_terminal(scan.status):
                return
            if message.attempt_number < self._max_attempts:
                self._requeue(message)
            else:
                self._state_machine.transition(
                    scan, ScanStatus.FAILED, "Max poll attempts reached after error"
                )
        except ConcurrentTransitionError:
            logger.warning(
                "Scan changed by another worker during poll recovery",
                extra={"scan_id": message.scan_id, "attempt": message.attempt_number},
            )
        except Exception:
            self._session.rollback()
            logger.exception(
                "Could not recover from poll failure; message discarded",
                extra={"scan_id": message.scan_id, "attempt": message.attempt_number},
            )

    def _handle(self, message: PollProviderScanMessage) -> None:
        scan = self._session.get(Scan, message.scan_id)
        if scan is None:
            logger.warning("Scan not found for polling", extra={"scan_id": message.scan_id})
            return
        if is_terminal(scan.status):
            logger.info(
                "Scan already in final state; skipping poll",
                extra={"scan_id": scan.id, "status": scan.status},
            )
            return

        provider_code = self._providers.resolve_code(scan.provider_code)
        mapping = self._mapping.find_by_linked_entity(
            provider_code, MAPPING_CI_UPLOAD, ENTITY_SCAN, scan.id
        )
        if mapping is None:
            logger.error(
                "No provider mapping found for scan",
                extra={"scan_id": scan.id, "provider": provider_code},
            )
            self._state_machine.transition(scan, ScanStatus.FAILED, "No provider mapping found")
            return

        adapter = self._providers.get_adapter(provider_code)
        if adapter is None:
            logger.error("No provider adapter found", extra={"scan_id": scan.id, "provider": provider_code})
            self._state_machine.transition(scan, ScanStatus.FAILED, "No provider adapter found")
            return

        try:
            poll = adapter.poll_scan_status(mapping.external_id)
        except Exception as e:
            logger.error(
                "Error polling scan status",
                extra={
                    "scan_id": scan.id,
                    "attempt": message.attempt_number,
                    "provider": provider_code,
                    "error": getattr(e, "message", str(e)),
                },
            )
            if message.attempt_number < self._max_attempts:
                self._requeue(message)
            else:
                self._state_machine.transition(
                    scan, ScanStatus.FAILED, "Max poll attempts reached after error"
                )
            return

        logger.info(
            "Polled scan status",
            extra={
                "scan_id": scan.id,
                "attempt": message.attempt_number,
                "progress": poll.progress,
                "completed": poll.scan_completed,
            },
        )

        if poll.scan_completed:
            normalized = adapter.normalize_scan_result(poll.raw)
            files = (
                self._session.query(FileInScan)
                .filter(FileInScan.scan_id == scan.id)
                .order_by(FileInScan.id)
                .all()
            )
            stage_scan_results(
                self._session,
                scan,
                files,
                poll,
                normalized.vulnerabilities,
                provider_code,
                mapping.external_id,
            )
            # Commits the staged results together with the status change.
            self._state_machine.transition(
                scan, ScanStatus.COMPLETED, "Provider scan completed successfully"
            )
            logger.info(
                "Scan completed",
                extra={
                    "scan_id": scan.id,
                    "vulnerabilities": poll.vulnerabilities_found,
                    "details_url": poll.details_url,
                },
            )
            return

        if message.attempt_number >= self._max_attempts:
            logger.warning(
                "Max poll attempts reached",
                extra={"scan_id": scan.id, "attempts": message.attempt_number},
            )
            self._state_machine.transition(scan, ScanStatus.TIMEOUT, "Max poll attempts reached")
            return

        self._requeue(message)

    def _requeue(self, message: PollProviderScanMessage) -> None:
        next_message = PollProviderScanMessage(
            scan_id=message.scan_id,
            attempt_number=message.attempt_number + 1,
        )
        logger.info(
            "Re-queuing poll message",
            extra={
                "scan_id": message.scan_id,
                "next_attempt": next_message.attempt_number,
                "delay_seconds": self._poll_delay.total_seconds(),
            },
        )
        self._channel.publish(next_message, delay=self._poll_delay)
