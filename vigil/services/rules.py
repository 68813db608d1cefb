"""
Rule engine: resolve the rules that apply to a scan, evaluate their triggers,
and run the actions of every rule that matches.

Repository rules (scope "repository:<id>") replace global rules entirely when any
exist, even if none of them match the scan's current state.
"""

import logging
from collections.abc import Callable, Mapping
from enum import Enum
from types import MappingProxyType
from typing import Any

from sqlalchemy.orm import Session

from vigil.core.config import Settings
from vigil.models import ActionExecution, NotificationSetting, Rule, RuleAction, Scan
from vigil.schemas.scan import ScanStatus
from vigil.services.notifications import (
    DEFAULT_VULNERABILITY_THRESHOLD,
    NotificationDeliveryError,
    Notifier,
    build_scan_notification,
)

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"

EXECUTION_SUCCEEDED = "succeeded"
EXECUTION_FAILED = "failed"
EXECUTION_SKIPPED = "skipped"


class TriggerType(str, Enum):
    SCAN_COMPLETED = "scan_completed"
    VULNERABILITY_THRESHOLD = "vulnerability_threshold"
    UPLOAD_IN_PROGRESS = "upload_in_progress"
    UPLOAD_FAILED = "upload_failed"


class ActionType(str, Enum):
    EMAIL = "email"
    CHAT = "chat"
    WEBHOOK = "webhook"


# Stored action types that name a concrete chat service
ACTION_TYPE_ALIASES: Mapping[str, ActionType] = MappingProxyType({"slack": ActionType.CHAT})

DEFAULT_IN_PROGRESS_STATUSES = (
    ScanStatus.UPLOADED.value,
    ScanStatus.QUEUED.value,
    ScanStatus.RUNNING.value,
)
DEFAULT_FAILED_STATUSES = (ScanStatus.FAILED.value, ScanStatus.TIMEOUT.value)


class ActionExecutionError(Exception):
    """A single rule action failed; isolated to that action."""

    def __init__(self, message: str, result: dict[str, Any] | None = None) -> None:
        self.message = message
        self.result = result or {}
        super().__init__(message)


def repository_scope(repository_id: int) -> str:
    return f"repository:{repository_id}"


def parse_trigger_type(value: str | None) -> TriggerType | None:
    try:
        return TriggerType((value or "").strip().lower())
    except ValueError:
        return None


def parse_action_type(value: str | None) -> ActionType | None:
    key = (value or "").strip().lower()
    if key in ACTION_TYPE_ALIASES:
        return ACTION_TYPE_ALIASES[key]
    try:
        return ActionType(key)
    except ValueError:
        return None


def _int_param(payload: dict[str, Any], key: str, default: int) -> int:
    value = payload.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Non-integer rule parameter; using default", extra={"key": key, "value": value})
        return default


def _statuses_param(payload: dict[str, Any], default: tuple[str, ...]) -> list[str]:
    value = payload.get("statuses")
    if not isinstance(value, list):
        return list(default)
    return [str(s) for s in value]


def _scan_completed(scan: Scan, payload: dict[str, Any]) -> bool:
    return scan.status == ScanStatus.COMPLETED.value


def _vulnerability_threshold(scan: Scan, payload: dict[str, Any]) -> bool:
    threshold = _int_param(payload, "threshold", 0)
    count = scan.vulnerability_count or 0
    matches = scan.status == ScanStatus.COMPLETED.value and count > threshold
    if matches:
        logger.info(
            "Vulnerability threshold exceeded",
            extra={"scan_id": scan.id, "count": count, "threshold": threshold},
        )
    return matches


def _upload_in_progress(scan: Scan, payload: dict[str, Any]) -> bool:
    return scan.status in _statuses_param(payload, DEFAULT_IN_PROGRESS_STATUSES)


def _upload_failed(scan: Scan, payload: dict[str, Any]) -> bool:
    return scan.status in _statuses_param(payload, DEFAULT_FAILED_STATUSES)


TriggerEvaluator = Callable[[Scan, dict[str, Any]], bool]

TRIGGER_EVALUATORS: Mapping[TriggerType, TriggerEvaluator] = MappingProxyType(
    {
        TriggerType.SCAN_COMPLETED: _scan_completed,
        TriggerType.VULNERABILITY_THRESHOLD: _vulnerability_threshold,
        TriggerType.UPLOAD_IN_PROGRESS: _upload_in_progress,
        TriggerType.UPLOAD_FAILED: _upload_failed,
    }
)


def evaluate_trigger(rule: Rule, scan: Scan) -> bool:
    """True if the rule's trigger matches the scan's current state. Unknown trigger types never match."""
    trigger = parse_trigger_type(rule.trigger_type)
    if trigger is None:
        logger.warning(
            "Unmatched trigger type; rule skipped",
            extra={"rule_id": rule.id, "trigger_type": rule.trigger_type},
        )
        return False
    return TRIGGER_EVALUATORS[trigger](scan, rule.trigger_payload or {})


class RuleRepository:
    """Read access to rules and per-repository notification recipients."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def find_active_for_scope(self, scope: str) -> list[Rule]:
        return (
            self._session.query(Rule)
            .filter(Rule.enabled.is_(True), Rule.scope == scope)
            .order_by(Rule.id)
            .all()
        )

    def find_active_global(self) -> list[Rule]:
        return self.find_active_for_scope(GLOBAL_SCOPE)

    def _settings_for(self, repository_id: int) -> list[NotificationSetting]:
        return (
            self._session.query(NotificationSetting)
            .filter(
                NotificationSetting.repository_id == repository_id,
                NotificationSetting.enabled.is_(True),
            )
            .order_by(NotificationSetting.id)
            .all()
        )

    def notification_emails(self, repository_id: int) -> list[str]:
        """Union of configured emails across the repository's settings, first occurrence order."""
        return _union(s.emails for s in self._settings_for(repository_id))

    def slack_channels(self, repository_id: int) -> list[str]:
        return _union(s.slack_channels for s in self._settings_for(repository_id))


def _union(lists: Any) -> list[str]:
    seen: dict[str, None] = {}
    for values in lists:
        if not isinstance(values, list):
            continue
        for v in values:
            if isinstance(v, str) and v.strip():
                seen.setdefault(v.strip(), None)
    return list(seen)


class RuleEngine:
    """Evaluates rules for a scan and executes matched actions, recording each execution."""

    def __init__(
        self,
        session: Session,
        rules: RuleRepository,
        notifier: Notifier,
        settings: Settings,
    ) -> None:
        self._session = session
        self._rules = rules
        self._notifier = notifier
        self._settings = settings
        self._executors: Mapping[ActionType, Callable[[Scan, RuleAction], dict[str, Any]]] = (
            MappingProxyType(
                {
                    ActionType.EMAIL: self._execute_email,
                    ActionType.CHAT: self._execute_chat,
                    ActionType.WEBHOOK: self._execute_webhook,
                }
            )
        )

    def resolve_rules(self, repository_id: int) -> list[Rule]:
        """Enabled repository rules if any exist, otherwise enabled global rules."""
        repo_rules = self._rules.find_active_for_scope(repository_scope(repository_id))
        if repo_rules:
            logger.debug(
                "Using repository-specific rules",
                extra={"repository_id": repository_id, "rule_count": len(repo_rules)},
            )
            return repo_rules
        logger.debug("No repository-specific rules; using global rules", extra={"repository_id": repository_id})
        return self._rules.find_active_global()

    def evaluate_and_notify(self, scan: Scan) -> list[ActionExecution]:
        """
        Run every action of every matching rule for the scan's current state.

        Action failures are logged and recorded; they never stop sibling actions or
        other rules. Returns the ActionExecution rows written.
        """
        logger.info(
            "Evaluating rules for scan",
            extra={
                "scan_id": scan.id,
                "repository_id": scan.repository_id,
                "status": scan.status,
                "vulnerability_count": scan.vulnerability_count,
            },
        )
        rules = self.resolve_rules(scan.repository_id)
        if not rules:
            logger.warning(
                "No rules found (neither repository nor global)",
                extra={"repository_id": scan.repository_id},
            )
            return []

        executions: list[ActionExecution] = []
        for rule in rules:
            if not evaluate_trigger(rule, scan):
                continue
            if not rule.actions:
                logger.warning("Rule has no actions defined", extra={"rule_id": rule.id})
                continue
            logger.info(
                "Rule matched; executing actions",
                extra={"rule_id": rule.id, "rule_name": rule.name, "action_count": len(rule.actions)},
            )
            for action in rule.actions:
                executions.append(self._run_action(rule, action, scan))

        if executions:
            self._session.add_all(executions)
            self._session.commit()
        return executions

    def _run_action(self, rule: Rule, action: RuleAction, scan: Scan) -> ActionExecution:
        action_type = parse_action_type(action.action_type)
        log_extra = {
            "rule_id": rule.id,
            "action_id": action.id,
            "action_type": action.action_type,
            "scan_id": scan.id,
        }
        if action_type is None:
            logger.warning("Unknown action type; action skipped", extra=log_extra)
            status, result = EXECUTION_SKIPPED, {"reason": "unknown action type"}
        else:
            try:
                result = self._executors[action_type](scan, action)
                status = result.pop("status", EXECUTION_SUCCEEDED)
                logger.info("Action executed", extra={**log_extra, "status": status})
            except ActionExecutionError as e:
                logger.error("Action execution failed", extra={**log_extra, "error": e.message})
                status, result = EXECUTION_FAILED, {"error": e.message, **e.result}
            except Exception as e:
                logger.exception("Action execution failed unexpectedly", extra=log_extra)
                status, result = EXECUTION_FAILED, {"error": str(e)[:500]}

        return ActionExecution(
            rule_id=rule.id,
            rule_action_id=action.id,
            scan_id=scan.id,
            status=status,
            result_payload=result,
        )

    def _notification_for(self, scan: Scan, action: RuleAction):
        payload = action.action_payload or {}
        threshold = _int_param(payload, "threshold", DEFAULT_VULNERABILITY_THRESHOLD)
        repository_name = scan.repository.name if scan.repository is not None else str(scan.repository_id)
        return build_scan_notification(scan, repository_name, threshold)

    def _execute_email(self, scan: Scan, action: RuleAction) -> dict[str, Any]:
        notification = self._notification_for(scan, action)
        if notification is None:
            return {"status": EXECUTION_SKIPPED, "reason": f"no notification for status {scan.status}"}

        recipients = self._rules.notification_emails(scan.repository_id)
        fallback = not recipients
        if fallback:
            recipients = self._settings.default_admin_emails

        sent: list[str] = []
        failed: dict[str, str] = {}
        for to in recipients:
            try:
                self._notifier.send_email(to, notification.subject, notification.email_body)
                sent.append(to)
            except NotificationDeliveryError as e:
                failed[to] = e.message
        result = {
            "kind": notification.kind,
            "subject": notification.subject,
            "sent": sent,
            "admin_fallback": fallback,
        }
        if failed:
            raise ActionExecutionError(
                f"Email delivery failed for {len(failed)} of {len(recipients)} recipients",
                {**result, "failed": failed},
            )
        return result

    def _execute_chat(self, scan: Scan, action: RuleAction) -> dict[str, Any]:
        notification = self._notification_for(scan, action)
        if notification is None:
            return {"status": EXECUTION_SKIPPED, "reason": f"no notification for status {scan.status}"}
        channels = self._rules.slack_channels(scan.repository_id)
        try:
            self._notifier.send_chat_notification(notification)
        except NotificationDeliveryError as e:
            raise ActionExecutionError(e.message, {"kind": notification.kind}) from e
        # The webhook posts to its own channel; configured channels are recorded only.
        return {"kind": notification.kind, "subject": notification.subject, "channels": channels}

    def _execute_webhook(self, scan: Scan, action: RuleAction) -> dict[str, Any]:
        payload = action.action_payload or {}
        logger.info(
            "Webhook action not implemented; logging intent only",
            extra={"scan_id": scan.id, "url": payload.get("url"), "status": scan.status},
        )
        return {"status": EXECUTION_SKIPPED, "reason": "webhook delivery not implemented"}
