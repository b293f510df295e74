"""Error taxonomy for the reconciliation engine.

Configuration and internal errors abort a run. Drift and provider errors
are confined to the node they occur on (and its dependents).
"""

from typing import Optional


class EngineError(Exception):
    """Base class for engine errors."""


class ConfigurationError(EngineError):
    """Manifest or workspace is invalid; raised before any provider call."""


class CycleError(ConfigurationError):
    """Dependency graph contains a cycle.

    Attributes:
        cycle: Node ids along the cycle, first id repeated at the end
    """

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


class UnresolvedReferenceError(ConfigurationError):
    """A reference or depends_on entry names a node that is not declared."""

    def __init__(self, node_id: str, missing_id: str):
        self.node_id = node_id
        self.missing_id = missing_id
        super().__init__(
            f"Resource '{node_id}' references undeclared resource '{missing_id}'"
        )


class PlanError(ConfigurationError):
    """Plan cannot be computed (dangling dependency on a skipped node)."""


class DriftError(EngineError):
    """Stored version changed since the planner's snapshot."""

    def __init__(self, node_id: str, expected_version: int, actual_version: Optional[int]):
        self.node_id = node_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"State drift for '{node_id}': expected version {expected_version}, "
            f"found {actual_version if actual_version is not None else 'none'}"
        )


class InternalError(EngineError):
    """Engine invariant violated. Signals a defect, not bad input."""
