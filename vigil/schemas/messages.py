"""Messages carried by the event channel, keyed by a stable kind string."""

from typing import Any, ClassVar

from pydantic import BaseModel, Field


class QueueMessage(BaseModel):
    """Base for queued messages; subclasses set kind."""

    kind: ClassVar[str]


class StartProviderScanMessage(QueueMessage):
    """Upload a scan's files to its provider and start the remote scan."""

    kind: ClassVar[str] = "start_provider_scan"

    scan_id: int


class PollProviderScanMessage(QueueMessage):
    """Ask the provider whether a scan finished. attempt_number starts at 1."""

    kind: ClassVar[str] = "poll_provider_scan"

    scan_id: int
    attempt_number: int = Field(default=1, ge=1)


class ScanStatusChangedMessage(QueueMessage):
    """Published by the state machine after every persisted transition."""

    kind: ClassVar[str] = "scan_status_changed"

    scan_id: int
    old_status: str
    new_status: str


MESSAGE_TYPES: dict[str, type[QueueMessage]] = {
    cls.kind: cls
    for cls in (StartProviderScanMessage, PollProviderScanMessage, ScanStatusChangedMessage)
}


class UnknownMessageKindError(Exception):
    """Raised when a queued row names a kind no message type is registered for."""

    def __init__(self, kind: str) -> None:
        self.message = f"Unknown message kind {kind!r}"
        super().__init__(self.message)


def decode_message(kind: str, payload: dict[str, Any]) -> QueueMessage:
    """Rebuild a message from its kind and JSON payload. Raises ValidationError on bad payloads."""
    message_cls = MESSAGE_TYPES.get(kind)
    if message_cls is None:
        raise UnknownMessageKindError(kind)
    return message_cls.model_validate(payload)
