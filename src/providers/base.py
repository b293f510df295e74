"""Provider adapter interface.

An adapter performs create/read/update/delete for one resource kind. The
ambient account/region configuration travels in an explicit
ProviderContext passed to every call.
"""

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


class ProviderError(Exception):
    """Provider operation failed.

    Attributes:
        transient: True for timeouts, throttling and rate limits (retried);
                   False for validation and other permanent errors
    """

    def __init__(self, message: str, transient: bool = False):
        self.message = message
        self.transient = transient
        self.attempts = 1
        super().__init__(message)


class NotFoundError(ProviderError):
    """Resource does not exist at the provider."""

    def __init__(self, message: str):
        super().__init__(message, transient=False)


@dataclass(frozen=True)
class ProviderContext:
    """Account/region context handed to every adapter call."""
    account: str = ''
    region: str = ''
    profile: str = ''
    extra: dict = field(default_factory=dict, hash=False)

    def to_dict(self) -> dict:
        d = {'account': self.account, 'region': self.region, 'profile': self.profile}
        d.update(self.extra)
        return d


@runtime_checkable
class ProviderAdapter(Protocol):
    """CRUD operations for one resource kind."""

    def create(self, context: ProviderContext, attributes: dict) -> tuple[dict, str]:
        """Create the resource; return (observed attributes, provider id)."""

    def read(self, context: ProviderContext, provider_id: str) -> dict:
        """Return observed attributes; raise NotFoundError if absent."""

    def update(self, context: ProviderContext, provider_id: str, attributes: dict) -> dict:
        """Update the resource; return observed attributes."""

    def delete(self, context: ProviderContext, provider_id: str) -> None:
        """Delete the resource."""
