"""Scanning provider adapters."""

from vigil.services.providers.base import ProviderAdapter, ProviderError
from vigil.services.providers.manager import ProviderManager, build_provider_manager

__all__ = ["ProviderAdapter", "ProviderError", "ProviderManager", "build_provider_manager"]
