"""Notification objects built from a scan's state and handed to the transport."""

from typing import Literal

from pydantic import BaseModel, Field

NotificationKind = Literal[
    "scan_failed",
    "high_vulnerability",
    "scan_completed",
    "upload_in_progress",
]
Importance = Literal["urgent", "high", "medium", "low"]


class ScanNotification(BaseModel):
    """Rendered notification for one scan state; channel-neutral."""

    kind: NotificationKind
    scan_id: int
    subject: str = Field(..., min_length=1)
    chat_text: str = Field(..., description="Slack mrkdwn body.")
    email_body: str = Field(..., description="Plain-text email body.")
    importance: Importance = "medium"
