"""Build scan notifications and deliver them by email (SMTP) or chat (Slack webhook)."""

import logging
import smtplib
from datetime import datetime
from email.message import EmailMessage

import httpx

from vigil.core.config import Settings
from vigil.models import Scan
from vigil.schemas.notification import ScanNotification
from vigil.schemas.scan import ScanStatus

logger = logging.getLogger(__name__)

DEFAULT_VULNERABILITY_THRESHOLD = 10

_FAILED_STATUSES = frozenset({ScanStatus.FAILED.value, ScanStatus.TIMEOUT.value})
_IN_PROGRESS_STATUSES = frozenset(
    {ScanStatus.UPLOADED.value, ScanStatus.QUEUED.value, ScanStatus.RUNNING.value}
)

# Slack attachment colour per notification kind
_KIND_COLORS = {
    "scan_failed": "#ef4444",
    "high_vulnerability": "#f97316",
    "scan_completed": "#22c55e",
    "upload_in_progress": "#3b82f6",
}

_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class NotificationDeliveryError(Exception):
    """Raised when a notification cannot be delivered (missing config or transport failure)."""

    def __init__(self, message: str, channel: str) -> None:
        self.message = message
        self.channel = channel
        super().__init__(message)


def format_duration(started_at: datetime | None, completed_at: datetime | None) -> str:
    """Human duration between two timestamps: "1h 2m 3s", "2m 5s", "7s"; "Unknown" if either is missing."""
    if started_at is None or completed_at is None:
        return "Unknown"
    total = max(0, int((completed_at - started_at).total_seconds()))
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def _fmt(ts: datetime | None, fallback: str) -> str:
    return ts.strftime(_TIMESTAMP_FORMAT) if ts is not None else fallback


def _details(pairs: list[tuple[str, object]], chat: bool) -> str:
    if chat:
        return "\n".join(f"*{label}:* {value}" for label, value in pairs)
    return "\n".join(f"{label}: {value}" for label, value in pairs)


def build_scan_notification(
    scan: Scan,
    repository_name: str,
    threshold: int = DEFAULT_VULNERABILITY_THRESHOLD,
) -> ScanNotification | None:
    """
    Pick and render the notification for the scan's current status.

    failed/timeout -> scan_failed; completed with count > threshold -> high_vulnerability;
    other completed -> scan_completed; uploaded/queued/running -> upload_in_progress;
    anything else -> None.
    """
    status = scan.status
    count = scan.vulnerability_count or 0
    branch = scan.branch or "main"
    provider = scan.provider_code or "unknown"
    started = _fmt(scan.started_at, "Unknown")

    if status in _FAILED_STATUSES:
        reason = "Scan timed out" if status == ScanStatus.TIMEOUT.value else "Scan failed"
        pairs = [
            ("Repository", repository_name),
            ("Branch", branch),
            ("Status", status),
            ("Provider", provider),
            ("Scan ID", scan.id),
            ("Started", started),
            ("Reason", reason),
        ]
        return ScanNotification(
            kind="scan_failed",
            scan_id=scan.id,
            subject="Scan Failed",
            chat_text=f"*Scan Failed*\n\n{_details(pairs, chat=True)}",
            email_body=f"The scan for {repository_name} did not finish.\n\n{_details(pairs, chat=False)}\n",
            importance="high",
        )

    if status == ScanStatus.COMPLETED.value:
        duration = format_duration(scan.started_at, scan.completed_at)
        pairs = [
            ("Repository", repository_name),
            ("Branch", branch),
            ("Vulnerabilities Found", count),
            ("Provider", provider),
            ("Scan ID", scan.id),
            ("Started", started),
            ("Completed", _fmt(scan.completed_at, "Just now")),
            ("Duration", duration),
        ]
        if count > threshold:
            subject = f"High Vulnerability Alert: {count} vulnerabilities found"
            pairs.insert(3, ("Threshold", threshold))
            return ScanNotification(
                kind="high_vulnerability",
                scan_id=scan.id,
                subject=subject,
                chat_text=(
                    f"*High Vulnerability Alert*\n\n{_details(pairs, chat=True)}\n\n"
                    "_Immediate review recommended._"
                ),
                email_body=(
                    f"The scan for {repository_name} found {count} vulnerabilities, "
                    f"above the threshold of {threshold}.\n\n{_details(pairs, chat=False)}\n"
                ),
                importance="urgent",
            )
        subject = (
            "Congratulations! No Vulnerabilities Found"
            if count == 0
            else "Scan Completed Successfully"
        )
        footer = (
            "_No vulnerabilities detected!_"
            if count == 0
            else "_Review the scan results for details._"
        )
        return ScanNotification(
            kind="scan_completed",
            scan_id=scan.id,
            subject=subject,
            chat_text=f"*Scan Completed Successfully*\n\n{_details(pairs, chat=True)}\n\n{footer}",
            email_body=f"The scan for {repository_name} completed.\n\n{_details(pairs, chat=False)}\n",
            importance="medium",
        )

    if status in _IN_PROGRESS_STATUSES:
        pairs = [
            ("Repository", repository_name),
            ("Branch", branch),
            ("Status", status),
            ("Provider", provider),
            ("Scan ID", scan.id),
            ("Started", started),
        ]
        return ScanNotification(
            kind="upload_in_progress",
            scan_id=scan.id,
            subject="Upload In Progress",
            chat_text=f"*Upload In Progress*\n\n{_details(pairs, chat=True)}",
            email_body=f"The scan for {repository_name} is in progress.\n\n{_details(pairs, chat=False)}\n",
            importance="low",
        )

    return None


def build_slack_payload(notification: ScanNotification) -> dict:
    """Slack incoming-webhook body: one colour-coded attachment with mrkdwn blocks."""
    return {
        "text": notification.subject,
        "attachments": [
            {
                "color": _KIND_COLORS.get(notification.kind, "#94a3b8"),
                "blocks": [
                    {
                        "type": "section",
                        "text": {"type": "mrkdwn", "text": notification.chat_text[:3000]},
                    },
                    {
                        "type": "context",
                        "elements": [
                            {
                                "type": "mrkdwn",
                                "text": (
                                    f"Event: `{notification.kind}` | "
                                    f"Importance: `{notification.importance}`"
                                ),
                            },
                        ],
                    },
                ],
            }
        ],
    }


class Notifier:
    """Transport boundary for notifications. Delivery failures raise NotificationDeliveryError."""

    def __init__(self, settings: Settings, http_client: httpx.Client | None = None) -> None:
        self._settings = settings
        self._http = http_client

    def send_email(self, to: str, subject: str, body: str) -> None:
        s = self._settings
        if not s.SMTP_HOST:
            raise NotificationDeliveryError("SMTP_HOST is not configured", "email")
        msg = EmailMessage()
        msg["From"] = s.EMAIL_FROM
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)
        try:
            with smtplib.SMTP(s.SMTP_HOST, s.SMTP_PORT, timeout=s.NOTIFY_REQUEST_TIMEOUT_SEC) as smtp:
                if s.SMTP_USE_TLS:
                    smtp.starttls()
                if s.SMTP_USERNAME and s.SMTP_PASSWORD is not None:
                    smtp.login(s.SMTP_USERNAME, s.SMTP_PASSWORD.get_secret_value())
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationDeliveryError(f"Email to {to} failed: {str(e)[:200]}", "email") from e
        logger.info("Email sent", extra={"to": to, "subject": subject})

    def send_chat_notification(self, notification: ScanNotification) -> None:
        if self._settings.SLACK_WEBHOOK_URL is None:
            raise NotificationDeliveryError("SLACK_WEBHOOK_URL is not configured", "chat")
        url = self._settings.SLACK_WEBHOOK_URL.get_secret_value()
        payload = build_slack_payload(notification)
        try:
            if self._http is not None:
                resp = self._http.post(url, json=payload, timeout=self._settings.NOTIFY_REQUEST_TIMEOUT_SEC)
            else:
                resp = httpx.post(url, json=payload, timeout=self._settings.NOTIFY_REQUEST_TIMEOUT_SEC)
        except httpx.HTTPError as e:
            raise NotificationDeliveryError(f"Slack request failed: {str(e)[:200]}", "chat") from e
        if resp.status_code != 200:
            raise NotificationDeliveryError(
                f"Slack returned {resp.status_code}: {resp.text[:200]}", "chat"
            )
        logger.info(
            "Chat notification sent",
            extra={"scan_id": notification.scan_id, "kind": notification.kind},
        )
