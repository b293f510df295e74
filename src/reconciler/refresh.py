"""Refresh a state snapshot against the providers.

Reads each recorded resource through its adapter. Resources the provider
no longer knows are marked 'missing' in the returned copy so the planner
re-creates them; observed attributes replace the recorded outputs. The
state store itself is never written here.
"""

import logging
from dataclasses import replace

from providers.base import NotFoundError, ProviderError
from providers.registry import ProviderRegistry
from reconciler.state import STATUS_MISSING, StateRecord

logger = logging.getLogger(__name__)


def refresh_snapshot(snapshot: dict[str, StateRecord], registry: ProviderRegistry) -> dict[str, StateRecord]:
    """Return a refreshed copy of snapshot.

    Records whose kind has no adapter, or whose read fails with a provider
    error, are kept unchanged (the error is logged).
    """
    refreshed: dict[str, StateRecord] = {}
    for node_id, record in snapshot.items():
        if record.provider_id is None or record.kind not in registry.kinds:
            refreshed[node_id] = record
            continue
        adapter = registry.get(record.kind)
        try:
            observed = adapter.read(registry.context, record.provider_id)
        except NotFoundError:
            logger.warning(f"Resource '{node_id}' ({record.provider_id}) no longer exists at provider")
            refreshed[node_id] = replace(record, status=STATUS_MISSING)
            continue
        except ProviderError as e:
            logger.warning(f"Refresh of '{node_id}' failed, keeping recorded state: {e.message}")
            refreshed[node_id] = record
            continue
        refreshed[node_id] = replace(record, outputs=dict(observed))
    return refreshed
