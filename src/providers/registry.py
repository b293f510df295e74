"""Maps resource kinds to provider adapters."""

import logging
from typing import Iterable, Optional

from config import AdapterSettings, ProviderSettings
from providers.base import ProviderAdapter, ProviderContext
from providers.command import CommandProvider
from providers.http import HttpProvider
from reconciler.errors import ConfigurationError

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Adapter lookup by resource kind, plus the shared ProviderContext."""

    def __init__(self, context: Optional[ProviderContext] = None,
                 adapters: Optional[dict[str, ProviderAdapter]] = None):
        self.context = context or ProviderContext()
        self._adapters: dict[str, ProviderAdapter] = dict(adapters or {})

    def register(self, kind: str, adapter: ProviderAdapter) -> None:
        self._adapters[kind] = adapter

    def get(self, kind: str) -> ProviderAdapter:
        """Get the adapter for a kind.

        Raises:
            ConfigurationError: If no adapter serves the kind
        """
        try:
            return self._adapters[kind]
        except KeyError:
            raise ConfigurationError(
                f"No provider adapter configured for kind '{kind}'. "
                f"Configured: {', '.join(sorted(self._adapters)) or 'none'}"
            ) from None

    @property
    def kinds(self) -> list[str]:
        return sorted(self._adapters)

    def missing_kinds(self, kinds: Iterable[str]) -> list[str]:
        """Kinds (deduplicated, in first-seen order) without an adapter."""
        return [k for k in dict.fromkeys(kinds) if k not in self._adapters]

    @classmethod
    def from_settings(cls, settings: ProviderSettings) -> 'ProviderRegistry':
        """Build adapters declared in reconciler.yaml."""
        context = ProviderContext(
            account=settings.account,
            region=settings.region,
            profile=settings.profile,
            extra=dict(settings.extra),
        )
        registry = cls(context=context)
        for kind, adapter_settings in settings.adapters.items():
            registry.register(kind, _build_adapter(adapter_settings))
            logger.debug(f"Registered {adapter_settings.type} adapter for kind '{kind}'")
        return registry


def _build_adapter(settings: AdapterSettings) -> ProviderAdapter:
    if settings.type == 'command':
        return CommandProvider(
            kind=settings.kind,
            command=settings.command,
            timeout=settings.timeout,
            env=settings.env,
        )
    return HttpProvider(
        kind=settings.kind,
        base_url=settings.base_url,
        timeout=settings.timeout,
        headers=settings.headers,
    )
