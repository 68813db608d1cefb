"""Severity levels shared by vulnerability records and notifications."""

from typing import Literal

# Reusable severity levels for validation and type safety across schemas.
SeverityLevel = Literal["critical", "high", "medium", "low", "info"]

SEVERITY_VALUES: frozenset[str] = frozenset({"critical", "high", "medium", "low", "info"})
