"""Claims due rows from the queued_messages table and runs the handler for each kind."""

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from pydantic import ValidationError
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from vigil.core.config import Settings
from vigil.models import QueuedMessage
from vigil.schemas.messages import (
    PollProviderScanMessage,
    QueueMessage,
    ScanStatusChangedMessage,
    StartProviderScanMessage,
    UnknownMessageKindError,
    decode_message,
)
from vigil.services.event_channel import DatabaseEventChannel
from vigil.services.mapping import ExternalMappingService
from vigil.services.notifications import Notifier
from vigil.services.providers.debricked import DebrickedAuthService
from vigil.services.providers.manager import build_provider_manager
from vigil.services.rules import RuleEngine, RuleRepository
from vigil.services.state_machine import ScanStateMachine
from vigil.services.storage import LocalFileStorage
from vigil.workers.poller import PollProviderScanHandler
from vigil.workers.start_scan import StartProviderScanHandler
from vigil.workers.status_changed import ScanStatusChangedHandler

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_DONE = "done"
STATUS_FAILED = "failed"

# Processing rows older than this belong to a worker that died mid-batch
DEFAULT_CLAIM_TIMEOUT_SECONDS = 300

Handler = Callable[[QueueMessage], None]
HandlerFactory = Callable[[Session], Mapping[str, Handler]]


@dataclass(frozen=True)
class ClaimedMessage:
    id: int
    kind: str
    payload: dict[str, Any]


def build_handlers(
    session: Session,
    settings: Settings,
    http_client: httpx.Client | None = None,
    debricked_auth: DebrickedAuthService | None = None,
) -> dict[str, Handler]:
    """Every message handler, wired to one session."""
    channel = DatabaseEventChannel(session)
    state_machine = ScanStateMachine(session, channel)
    providers = build_provider_manager(session, settings, http_client, debricked_auth)
    poll_delay = timedelta(seconds=settings.POLL_DELAY_SECONDS)
    engine = RuleEngine(session, RuleRepository(session), Notifier(settings, http_client), settings)
    return {
        StartProviderScanMessage.kind: StartProviderScanHandler(
            session,
            providers,
            channel,
            state_machine,
            LocalFileStorage(settings.UPLOAD_DIR),
            poll_delay=poll_delay,
        ),
        PollProviderScanMessage.kind: PollProviderScanHandler(
            session,
            providers,
            ExternalMappingService(session),
            channel,
            state_machine,
            max_attempts=settings.POLL_MAX_ATTEMPTS,
            poll_delay=poll_delay,
        ),
        ScanStatusChangedMessage.kind: ScanStatusChangedHandler(session, engine),
    }


class MessageDispatcher:
    """
    A finished row (done or failed) is never handed out again. A row left in
    processing past claim_timeout is reclaimed, so a crashed worker loses nothing.
    Poll retries are new rows published by the poller itself.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        handler_factory: HandlerFactory,
        batch_size: int = 20,
        claim_timeout: timedelta = timedelta(seconds=DEFAULT_CLAIM_TIMEOUT_SECONDS),
    ) -> None:
        self._session_factory = session_factory
        self._handler_factory = handler_factory
        self._batch_size = batch_size
        self._claim_timeout = claim_timeout

    def claim(self, session: Session, limit: int) -> list[ClaimedMessage]:
        """
        Lock due rows (skipping rows locked by other workers) and mark them processing.

        Due rows are pending rows whose available_at has passed, plus processing rows
        claimed longer than claim_timeout ago: their worker died before marking them.
        """
        now = datetime.now(UTC)
        stale_before = now - self._claim_timeout
        rows = (
            session.query(QueuedMessage)
            .filter(
                or_(
                    and_(
                        QueuedMessage.status == STATUS_PENDING,
                        QueuedMessage.available_at <= now,
                    ),
                    and_(
                        QueuedMessage.status == STATUS_PROCESSING,
                        QueuedMessage.claimed_at <= stale_before,
                    ),
                )
            )
            .order_by(QueuedMessage.available_at, QueuedMessage.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .all()
        )
        claimed = [ClaimedMessage(id=r.id, kind=r.kind, payload=dict(r.payload or {})) for r in rows]
        for r in rows:
            if r.status == STATUS_PROCESSING:
                logger.warning(
                    "Reclaiming message abandoned by a previous worker",
                    extra={"message_id": r.id, "kind": r.kind, "claimed_at": r.claimed_at.isoformat()},
                )
            r.status = STATUS_PROCESSING
            r.claimed_at = now
        session.commit()
        return claimed

    def _mark(self, session: Session, message_id: int, status: str, error: str | None = None) -> None:
        session.query(QueuedMessage).filter(QueuedMessage.id == message_id).update(
            {
                QueuedMessage.status: status,
                QueuedMessage.processed_at: datetime.now(UTC),
                QueuedMessage.error: error,
            },
            synchronize_session=False,
        )
        session.commit()

    def _process(self, claimed: ClaimedMessage) -> tuple[str, str | None]:
        try:
            message = decode_message(claimed.kind, claimed.payload)
        except UnknownMessageKindError as e:
            return STATUS_FAILED, e.message
        except ValidationError as e:
            return STATUS_FAILED, f"Invalid payload: {str(e)[:500]}"

        session = self._session_factory()
        try:
            handler = self._handler_factory(session).get(claimed.kind)
            if handler is None:
                return STATUS_FAILED, f"No handler registered for kind {claimed.kind!r}"
            handler(message)
            return STATUS_DONE, None
        except Exception as e:
            session.rollback()
            logger.exception(
                "Message handler raised",
                extra={"message_id": claimed.id, "kind": claimed.kind},
            )
            return STATUS_FAILED, str(e)[:2000]
        finally:
            session.close()

    def run_once(self, batch_size: int | None = None) -> int:
        """Process one batch of due messages. Returns how many were claimed."""
        control = self._session_factory()
        try:
            claimed = self.claim(control, batch_size or self._batch_size)
            for item in claimed:
                status, error = self._process(item)
                if status == STATUS_FAILED:
                    logger.error(
                        "Message failed",
                        extra={"message_id": item.id, "kind": item.kind, "error": error},
                    )
                else:
                    logger.debug("Message processed", extra={"message_id": item.id, "kind": item.kind})
                self._mark(control, item.id, status, error)
            return len(claimed)
        finally:
            control.close()
