"""Planner for manifest-based reconciliation.

Diffs the dependency graph against a state snapshot and produces an
ordered plan:
- Delete actions first, dependents before their dependencies
- Create/Update/NoOp/Skip actions next, in stable topological order

References are resolved for comparison the way the executor will see
them: recorded outputs for an unchanged producer, declared attributes for
one about to change. A value that only exists after the producer is
applied is UNKNOWN and never compares equal.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from manifest import Reference, substitute_references
from reconciler.errors import CycleError, PlanError
from reconciler.graph import DependencyGraph, NodeStatus, stable_topological_sort
from reconciler.state import StateRecord

logger = logging.getLogger(__name__)


class _Unknown:
    """Placeholder for values known only after apply."""

    def __eq__(self, other):
        return False

    def __ne__(self, other):
        return True

    __hash__ = object.__hash__

    def __repr__(self) -> str:
        return '(known after apply)'


UNKNOWN = _Unknown()


class ActionType(str, Enum):
    CREATE = 'create'
    UPDATE = 'update'
    DELETE = 'delete'
    NOOP = 'noop'
    SKIP = 'skip'


@dataclass
class ResourceAction:
    """One planned step.

    Attributes:
        node_id: Resource id
        action: What to do with it
        resource_kind: Resource kind (selects the provider adapter)
        expected_version: State version seen when planning (0 = no record)
        depends_on: Node ids whose actions must finish first
        reason: Short human-readable explanation
        changes: Attribute names that differ (updates only)
    """
    node_id: str
    action: ActionType
    resource_kind: str
    expected_version: int = 0
    depends_on: list[str] = field(default_factory=list)
    reason: str = ''
    changes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'id': self.node_id,
            'action': self.action.value,
            'kind': self.resource_kind,
        }
        if self.reason:
            d['reason'] = self.reason
        if self.changes:
            d['changes'] = list(self.changes)
        return d

    def __str__(self) -> str:
        return f"{self.action.value.capitalize()} {self.node_id}"


@dataclass
class Plan:
    """Ordered actions plus the graph and snapshot they were computed from."""
    actions: list[ResourceAction]
    graph: Optional[DependencyGraph] = None
    snapshot: dict[str, StateRecord] = field(default_factory=dict)

    def get(self, node_id: str) -> ResourceAction:
        """Raises KeyError if the node has no action."""
        for action in self.actions:
            if action.node_id == node_id:
                return action
        raise KeyError(node_id)

    def summary(self) -> dict[str, int]:
        counts = {t.value: 0 for t in ActionType}
        for action in self.actions:
            counts[action.action.value] += 1
        return counts

    @property
    def has_changes(self) -> bool:
        return any(a.action in (ActionType.CREATE, ActionType.UPDATE, ActionType.DELETE)
                   for a in self.actions)

    def to_dict(self) -> dict:
        return {
            'actions': [a.to_dict() for a in self.actions],
            'summary': self.summary(),
        }


def _changed_keys(desired: dict, recorded: dict) -> list[str]:
    keys = list(dict.fromkeys(list(desired) + list(recorded)))
    return [k for k in keys if k not in desired or k not in recorded or desired[k] != recorded[k]]


class Planner:
    """Computes plans from a graph and a state snapshot."""

    def __init__(self, graph: Optional[DependencyGraph], snapshot: dict[str, StateRecord]):
        self.graph = graph
        self.snapshot = dict(snapshot)
        self._planned: dict[str, ActionType] = {}

    def _existing(self, node_id: str) -> Optional[StateRecord]:
        """Record for a resource that currently exists (missing ones excluded)."""
        record = self.snapshot.get(node_id)
        if record is None or record.is_missing:
            return None
        return record

    def _version(self, node_id: str) -> int:
        record = self.snapshot.get(node_id)
        return record.version if record else 0

    def _resolve_for_plan(self, ref: Reference) -> Any:
        """Value a reference will take when the consumer is applied.

        An unchanged producer serves its recorded outputs; a producer about
        to be created or updated serves its declared attribute, or UNKNOWN
        for values only the provider can compute.
        """
        producer = self.graph.get_node(ref.node_id)
        if self._planned.get(ref.node_id) == ActionType.NOOP:
            record = self._existing(ref.node_id)
            try:
                return record.output(ref.output_key)
            except KeyError:
                return UNKNOWN
        if ref.output_key in producer.resource.attributes:
            value = producer.resource.attributes[ref.output_key]
            return substitute_references(value, self._resolve_for_plan)
        return UNKNOWN

    def resolved_attributes(self, node_id: str) -> dict:
        """Desired attributes with references resolved as far as planning allows."""
        node = self.graph.get_node(node_id)
        return substitute_references(node.resource.attributes, self._resolve_for_plan)

    def _delete_actions(self, delete_ids: list[str], reason: dict[str, str]) -> list[ResourceAction]:
        """Delete actions, dependents before dependencies.

        Order is the reverse of a stable topological sort over the recorded
        dependencies, restricted to the resources being removed.
        """
        dependencies = {i: list(self.snapshot[i].dependencies) for i in delete_ids}
        try:
            create_order = stable_topological_sort(delete_ids, dependencies)
        except CycleError as e:
            raise PlanError(f"Recorded state has a dependency cycle: {' -> '.join(e.cycle)}")

        delete_set = set(delete_ids)
        # A resource may be deleted once everything that depended on it is gone
        dependents: dict[str, list[str]] = {i: [] for i in delete_ids}
        for node_id in create_order:
            for dep in dependencies[node_id]:
                if dep in delete_set:
                    dependents[dep].append(node_id)

        actions = []
        for node_id in reversed(create_order):
            record = self.snapshot[node_id]
            actions.append(ResourceAction(
                node_id=node_id,
                action=ActionType.DELETE,
                resource_kind=record.kind,
                expected_version=record.version,
                depends_on=dependents[node_id],
                reason=reason[node_id],
            ))
        return actions

    def plan(self) -> Plan:
        """Diff the graph against the snapshot.

        Raises:
            PlanError: If an active resource depends on a skipped one
        """
        graph = self.graph
        if graph is None:
            raise PlanError("plan() requires a dependency graph")

        dangling = graph.dangling_dependencies()
        if dangling:
            details = ', '.join(f"'{n}' -> '{d}'" for n, d in dangling)
            raise PlanError(f"Active resources depend on skipped resources: {details}")

        # Deletions: recorded ids gone from the manifest, or whose node is skipped
        delete_reason: dict[str, str] = {}
        for node_id in self.snapshot:
            if node_id not in graph:
                delete_reason[node_id] = 'removed from manifest'
            elif graph.get_node(node_id).is_skipped:
                delete_reason[node_id] = 'condition is false'
        actions = self._delete_actions(list(delete_reason), delete_reason)

        for node_id in graph.topological_order():
            node = graph.get_node(node_id)
            record = self._existing(node_id)

            if node.is_skipped:
                # Recorded skipped nodes already have a delete action
                if node_id not in self.snapshot:
                    actions.append(ResourceAction(
                        node_id=node_id,
                        action=ActionType.SKIP,
                        resource_kind=node.kind,
                        reason=f'skipped ({node.skip_reason})',
                    ))
                continue

            node.status = NodeStatus.PLANNED
            action = ResourceAction(
                node_id=node_id,
                action=ActionType.NOOP,
                resource_kind=node.kind,
                expected_version=self._version(node_id),
                depends_on=list(node.dependencies),
            )
            if record is None:
                action.action = ActionType.CREATE
                action.reason = 'not recorded' if node_id not in self.snapshot else 'missing at provider'
            else:
                changes = _changed_keys(self.resolved_attributes(node_id), record.last_attributes)
                if changes:
                    action.action = ActionType.UPDATE
                    action.changes = changes
                    action.reason = f"changed: {', '.join(changes)}"
            self._planned[node_id] = action.action
            actions.append(action)

        plan = Plan(actions=actions, graph=graph, snapshot=self.snapshot)
        logger.info("Plan: %s", ', '.join(f"{v} {k}" for k, v in plan.summary().items() if v))
        return plan

    def destroy_plan(self) -> Plan:
        """Delete every recorded resource, dependents first."""
        delete_ids = list(self.snapshot)
        actions = self._delete_actions(delete_ids, {i: 'destroy' for i in delete_ids})
        return Plan(actions=actions, graph=self.graph, snapshot=self.snapshot)
