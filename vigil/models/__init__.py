"""SQLAlchemy ORM models."""

from vigil.models.base import Base
from vigil.models.mapping import ExternalMapping
from vigil.models.queue import QueuedMessage
from vigil.models.repository import NotificationSetting, Repository
from vigil.models.rule import ActionExecution, Rule, RuleAction
from vigil.models.scan import FileInScan, FileScanResult, Scan, ScanResult, Vulnerability

__all__ = [
    "ActionExecution",
    "Base",
    "ExternalMapping",
    "FileInScan",
    "FileScanResult",
    "NotificationSetting",
    "QueuedMessage",
    "Repository",
    "Rule",
    "RuleAction",
    "Scan",
    "ScanResult",
    "Vulnerability",
]
