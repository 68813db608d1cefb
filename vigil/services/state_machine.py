"""Finite state machine for scan status.

Every status change goes through ScanStateMachine.transition, which validates it
against a fixed adjacency map, persists it, and then publishes exactly one
ScanStatusChangedMessage.
"""

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from types import MappingProxyType

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from vigil.models import Scan
from vigil.schemas.messages import ScanStatusChangedMessage
from vigil.schemas.scan import ScanStatus
from vigil.services.event_channel import EventChannel

logger = logging.getLogger(__name__)

# current status -> statuses it may move to. queued has no entry: it is a valid
# persisted value that the table never reaches.
VALID_TRANSITIONS: Mapping[ScanStatus, frozenset[ScanStatus]] = MappingProxyType(
    {
        ScanStatus.PENDING: frozenset({ScanStatus.UPLOADED, ScanStatus.FAILED}),
        ScanStatus.UPLOADED: frozenset({ScanStatus.RUNNING, ScanStatus.FAILED}),
        ScanStatus.RUNNING: frozenset(
            {ScanStatus.COMPLETED, ScanStatus.FAILED, ScanStatus.TIMEOUT}
        ),
        ScanStatus.COMPLETED: frozenset(),
        ScanStatus.FAILED: frozenset(),
        ScanStatus.TIMEOUT: frozenset(),
    }
)

TERMINAL_STATUSES: frozenset[ScanStatus] = frozenset(
    {ScanStatus.COMPLETED, ScanStatus.FAILED, ScanStatus.TIMEOUT}
)

# Canonical order for listing allowed transitions in messages and logs.
_STATUS_ORDER: tuple[ScanStatus, ...] = tuple(ScanStatus)


def _coerce(status: str | ScanStatus) -> ScanStatus | None:
    try:
        return ScanStatus(status)
    except ValueError:
        return None


def can_transition(from_status: str | ScanStatus, to_status: str | ScanStatus) -> bool:
    """True if the table allows moving from from_status to to_status."""
    src = _coerce(from_status)
    dst = _coerce(to_status)
    if src is None or dst is None:
        return False
    return dst in VALID_TRANSITIONS.get(src, frozenset())


def available_transitions(status: str | ScanStatus) -> list[str]:
    """Statuses reachable in one step from status, in canonical order."""
    src = _coerce(status)
    allowed = VALID_TRANSITIONS.get(src, frozenset()) if src is not None else frozenset()
    return [s.value for s in _STATUS_ORDER if s in allowed]


def is_terminal(status: str | ScanStatus) -> bool:
    """True for completed, failed and timeout."""
    src = _coerce(status)
    return src is not None and src in TERMINAL_STATUSES


class InvalidTransitionError(Exception):
    """Raised when a caller requests a status change the table does not allow."""

    def __init__(
        self,
        scan_id: int | None,
        from_status: str,
        to_status: str,
        allowed: list[str],
    ) -> None:
        self.scan_id = scan_id
        self.from_status = from_status
        self.to_status = to_status
        self.allowed = allowed
        allowed_text = ", ".join(allowed) if allowed else "none (terminal state)"
        self.message = (
            f"Invalid state transition from '{from_status}' to '{to_status}'. "
            f"Allowed transitions: [{allowed_text}]"
        )
        super().__init__(self.message)


class ConcurrentTransitionError(Exception):
    """Raised when another worker changed the scan between our read and our write."""

    def __init__(self, scan_id: int | None, to_status: str) -> None:
        self.scan_id = scan_id
        self.to_status = to_status
        self.message = (
            f"Scan {scan_id} was modified concurrently; transition to '{to_status}' was not applied"
        )
        super().__init__(self.message)


class ScanStateMachine:
    """Validates, persists and publishes scan status transitions."""

    def __init__(self, session: Session, channel: EventChannel) -> None:
        self._session = session
        self._channel = channel

    def transition(
        self,
        scan: Scan,
        new_status: str | ScanStatus,
        reason: str | None = None,
    ) -> None:
        """
        Move scan to new_status.

        - Same status: logged no-op (no commit, no event).
        - Not allowed by the table: InvalidTransitionError, scan left unchanged.
        - Otherwise: status (and started_at/completed_at where relevant) is
          committed together with any pending changes in the session, then a
          ScanStatusChangedMessage is published.

        Raises ConcurrentTransitionError if the optimistic version check fails.
        """
        old_status = scan.status
        target = _coerce(new_status)
        target_value = target.value if target is not None else str(new_status)

        if old_status == target_value:
            logger.debug(
                "Scan already in target status",
                extra={"scan_id": scan.id, "status": target_value},
            )
            return

        if target is None or not can_transition(old_status, target):
            allowed = available_transitions(old_status)
            logger.error(
                "Invalid state transition attempted",
                extra={
                    "scan_id": scan.id,
                    "from_status": old_status,
                    "to_status": target_value,
                    "reason": reason,
                },
            )
            raise InvalidTransitionError(scan.id, old_status, target_value, allowed)

        now = datetime.now(UTC)
        scan.status = target.value
        if target is ScanStatus.RUNNING and scan.started_at is None:
            scan.started_at = now
        if target in TERMINAL_STATUSES and scan.completed_at is None:
            scan.completed_at = now

        try:
            self._session.commit()
        except StaleDataError as e:
            self._session.rollback()
            logger.warning(
                "Concurrent scan update detected; transition dropped",
                extra={"scan_id": scan.id, "from_status": old_status, "to_status": target.value},
            )
            raise ConcurrentTransitionError(scan.id, target.value) from e

        logger.info(
            "Scan status transition",
            extra={
                "scan_id": scan.id,
                "from_status": old_status,
                "to_status": target.value,
                "reason": reason,
            },
        )

        self._channel.publish(
            ScanStatusChangedMessage(
                scan_id=scan.id,
                old_status=old_status,
                new_status=target.value,
            )
        )
