"""Scan orchestration services."""
