"""Provider adapters."""

from providers.base import NotFoundError, ProviderAdapter, ProviderContext, ProviderError
from providers.command import CommandProvider
from providers.http import HttpProvider
from providers.registry import ProviderRegistry

__all__ = [
    'NotFoundError',
    'ProviderAdapter',
    'ProviderContext',
    'ProviderError',
    'CommandProvider',
    'HttpProvider',
    'ProviderRegistry',
]
