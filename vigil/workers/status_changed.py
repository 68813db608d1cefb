"""Status-changed handler: run the rule engine for the scan's current state."""

import logging

from sqlalchemy.orm import Session

from vigil.models import Scan
from vigil.schemas.messages import ScanStatusChangedMessage
from vigil.services.rules import RuleEngine

logger = logging.getLogger(__name__)


class ScanStatusChangedHandler:
    """
    Evaluates rules once per delivered status change.

    The scan is re-read and the event is dropped if its status has moved on, so
    reordered or duplicate deliveries never fire rules for a stale state.
    """

    def __init__(self, session: Session, engine: RuleEngine) -> None:
        self._session = session
        self._engine = engine

    def __call__(self, message: ScanStatusChangedMessage) -> None:
        try:
            self._handle(message)
        except Exception:
            self._session.rollback()
            logger.exception(
                "Rule evaluation failed",
                extra={"scan_id": message.scan_id, "to_status": message.new_status},
            )

    def _handle(self, message: ScanStatusChangedMessage) -> None:
        scan = self._session.get(Scan, message.scan_id)
        if scan is None:
            logger.warning("Scan not found for status change", extra={"scan_id": message.scan_id})
            return
        if scan.status != message.new_status:
            logger.info(
                "Stale status change event; discarded",
                extra={
                    "scan_id": scan.id,
                    "event_status": message.new_status,
                    "current_status": scan.status,
                },
            )
            return
        executions = self._engine.evaluate_and_notify(scan)
        logger.info(
            "Rules evaluated for status change",
            extra={
                "scan_id": scan.id,
                "from_status": message.old_status,
                "to_status": message.new_status,
                "actions_executed": len(executions),
            },
        )
