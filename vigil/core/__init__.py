"""Core app configuration and database."""

from vigil.core.config import get_settings, settings
from vigil.core.database import get_db

__all__ = ["get_settings", "settings", "get_db"]
