"""Event channel: publish queue messages, optionally delayed, onto the durable queue table."""

import logging
from datetime import UTC, datetime, timedelta
from typing import Protocol

from sqlalchemy.orm import Session

from vigil.models import QueuedMessage
from vigil.schemas.messages import QueueMessage

logger = logging.getLogger(__name__)


class EventChannel(Protocol):
    """Anything that can enqueue a message for a worker."""

    def publish(self, message: QueueMessage, delay: timedelta | None = None) -> None: ...


class DatabaseEventChannel:
    """
    Event channel backed by the queued_messages table.

    The row is committed immediately; delay is enforced by available_at, so
    publishers never sleep.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def publish(self, message: QueueMessage, delay: timedelta | None = None) -> None:
        now = datetime.now(UTC)
        available_at = now + delay if delay else now
        row = QueuedMessage(
            kind=message.kind,
            payload=message.model_dump(mode="json"),
            status="pending",
            available_at=available_at,
        )
        self._session.add(row)
        self._session.commit()
        logger.debug(
            "Message published",
            extra={
                "kind": message.kind,
                "delay_seconds": delay.total_seconds() if delay else 0,
            },
        )
