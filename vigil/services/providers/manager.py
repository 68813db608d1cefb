"""Registry of provider adapters keyed by provider code."""

import logging

import httpx
from sqlalchemy.orm import Session

from vigil.core.config import Settings
from vigil.services.mapping import ExternalMappingService
from vigil.services.providers.base import ProviderAdapter
from vigil.services.providers.debricked import (
    PROVIDER_CODE as DEBRICKED_CODE,
    DebrickedAuthService,
    DebrickedProviderAdapter,
)

logger = logging.getLogger(__name__)

# Codes of the adapters build_provider_manager registers
BUILTIN_PROVIDER_CODES: tuple[str, ...] = (DEBRICKED_CODE,)


class ProviderManager:
    def __init__(self, default_code: str, adapters: list[ProviderAdapter] | None = None) -> None:
        self._default_code = default_code
        self._adapters: dict[str, ProviderAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    @property
    def default_code(self) -> str:
        return self._default_code

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.provider_code()] = adapter

    def resolve_code(self, provider_code: str | None) -> str:
        """Normalized provider code; None or blank resolves to the default."""
        code = (provider_code or "").strip().lower()
        return code or self._default_code

    def get_adapter(self, provider_code: str | None) -> ProviderAdapter | None:
        code = self.resolve_code(provider_code)
        adapter = self._adapters.get(code)
        if adapter is None:
            logger.warning("No provider adapter registered", extra={"provider": code})
        return adapter

    def codes(self) -> list[str]:
        return sorted(self._adapters)


def build_provider_manager(
    session: Session,
    settings: Settings,
    http_client: httpx.Client | None = None,
    debricked_auth: DebrickedAuthService | None = None,
) -> ProviderManager:
    """
    ProviderManager with every built-in adapter, wired to this session's mapping store.

    Long-running workers pass a shared client and auth service so the bearer token
    survives across messages.
    """
    client = http_client or httpx.Client(timeout=settings.DEBRICKED_REQUEST_TIMEOUT_SEC)
    auth = debricked_auth or DebrickedAuthService(settings, client)
    debricked = DebrickedProviderAdapter(
        settings=settings,
        mapping=ExternalMappingService(session),
        auth=auth,
        client=client,
    )
    return ProviderManager(settings.DEFAULT_PROVIDER_CODE, [debricked])
