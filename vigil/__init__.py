"""Vigil: dependency-vulnerability scan orchestration."""

__version__ = "0.1.0"
