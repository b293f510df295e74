"""Graph module for manifest-based reconciliation.

Builds a dependency graph from Manifest.resources. Edges come from
references inside attributes (producer -> consumer) and from explicit
depends_on hints. Conditions are evaluated once here; resources whose
condition is false, or whose every dependency is skipped, are SKIPPED.
"""

import heapq
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from manifest import Manifest, ResourceNode, evaluate_condition, iter_references
from reconciler.errors import CycleError, UnresolvedReferenceError

logger = logging.getLogger(__name__)


class NodeStatus(str, Enum):
    """Lifecycle status of a node within one run."""
    PENDING = 'pending'
    PLANNED = 'planned'
    APPLYING = 'applying'
    APPLIED = 'applied'
    SKIPPED = 'skipped'
    FAILED = 'failed'
    BLOCKED = 'blocked'

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.APPLIED, NodeStatus.SKIPPED,
                        NodeStatus.FAILED, NodeStatus.BLOCKED)


@dataclass(frozen=True)
class OutputBinding:
    """Wiring of a producer's output into a consumer attribute.

    Attributes:
        producer_id: Node whose output is consumed
        output_key: Output name on the producer
        consumer_id: Node whose attribute receives the value
        path: Location of the reference inside the consumer's attributes
    """
    producer_id: str
    output_key: str
    consumer_id: str
    path: tuple


@dataclass
class GraphNode:
    """A node in the dependency graph.

    Wraps a ResourceNode and adds edges, binding and status information.

    Attributes:
        resource: The underlying ResourceNode definition
        index: Declaration position (tie-breaker for stable ordering)
        dependencies: Ids this node depends on (references first, then depends_on)
        dependents: Ids that depend on this node
        bindings: Output bindings this node consumes
        enabled: Result of evaluating the condition
        status: Current status
        skip_reason: 'condition' or 'dependency' when SKIPPED
    """
    resource: ResourceNode
    index: int
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)
    bindings: list[OutputBinding] = field(default_factory=list)
    enabled: bool = True
    status: NodeStatus = NodeStatus.PENDING
    skip_reason: Optional[str] = None

    @property
    def id(self) -> str:
        return self.resource.id

    @property
    def kind(self) -> str:
        return self.resource.kind

    @property
    def is_skipped(self) -> bool:
        return self.status == NodeStatus.SKIPPED

    def __repr__(self) -> str:
        return f"GraphNode({self.id}, kind={self.kind}, status={self.status.value})"


def find_cycle(ids: list[str], dependencies: dict[str, list[str]]) -> Optional[list[str]]:
    """Return the first dependency cycle found, or None.

    The cycle lists node ids in dependency direction with the first id
    repeated at the end, e.g. ['a', 'b', 'a'] when a depends on b and b on a.
    """
    visited: set[str] = set()
    stack: list[str] = []
    on_stack: set[str] = set()

    def _visit(node_id: str) -> Optional[list[str]]:
        visited.add(node_id)
        stack.append(node_id)
        on_stack.add(node_id)
        for dep in dependencies.get(node_id, []):
            if dep in on_stack:
                return stack[stack.index(dep):] + [dep]
            if dep not in visited:
                cycle = _visit(dep)
                if cycle:
                    return cycle
        stack.pop()
        on_stack.discard(node_id)
        return None

    for node_id in ids:
        if node_id not in visited:
            cycle = _visit(node_id)
            if cycle:
                return cycle
    return None


def stable_topological_sort(ids: list[str], dependencies: dict[str, list[str]]) -> list[str]:
    """Kahn's algorithm, ties broken by position in ids.

    Dependencies outside ids are ignored, so the sort can be restricted to a
    subgraph.

    Raises:
        CycleError: If the restricted graph is cyclic
    """
    position = {node_id: i for i, node_id in enumerate(ids)}
    in_degree = {node_id: 0 for node_id in ids}
    dependents: dict[str, list[str]] = {node_id: [] for node_id in ids}
    for node_id in ids:
        for dep in dict.fromkeys(dependencies.get(node_id, [])):
            if dep in position:
                in_degree[node_id] += 1
                dependents[dep].append(node_id)

    ready = [(position[n], n) for n in ids if in_degree[n] == 0]
    heapq.heapify(ready)
    ordered: list[str] = []
    while ready:
        _, node_id = heapq.heappop(ready)
        ordered.append(node_id)
        for dependent in dependents[node_id]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, (position[dependent], dependent))

    if len(ordered) != len(ids):
        remaining = [n for n in ids if n not in set(ordered)]
        restricted = {n: [d for d in dependencies.get(n, []) if d in position] for n in remaining}
        raise CycleError(find_cycle(remaining, restricted) or remaining)
    return ordered


class DependencyGraph:
    """Dependency graph built from a Manifest's resources.

    Provides:
    - topological_order(): dependencies before dependents, declaration
      order among independent nodes
    - dependency/dependent queries used by the planner and executor
    """

    def __init__(self, manifest: Manifest):
        """Build the graph from a manifest.

        Args:
            manifest: Manifest whose variables already include overrides

        Raises:
            UnresolvedReferenceError: If a reference or depends_on names an
                undeclared resource
            CycleError: If the dependencies form a cycle
            ConfigError: If a condition refers to an undefined variable
        """
        self.manifest = manifest
        self._nodes: dict[str, GraphNode] = {}
        self._build_graph(manifest.resources)

    def _build_graph(self, resources: list[ResourceNode]) -> None:
        for i, resource in enumerate(resources):
            self._nodes[resource.id] = GraphNode(resource=resource, index=i)

        # Wire edges: references first, then explicit depends_on
        for node in self._nodes.values():
            deps: list[str] = []
            for path, ref in iter_references(node.resource.attributes):
                if ref.node_id not in self._nodes:
                    raise UnresolvedReferenceError(node.id, ref.node_id)
                node.bindings.append(OutputBinding(
                    producer_id=ref.node_id,
                    output_key=ref.output_key,
                    consumer_id=node.id,
                    path=path,
                ))
                deps.append(ref.node_id)
            for dep in node.resource.depends_on:
                if dep not in self._nodes:
                    raise UnresolvedReferenceError(node.id, dep)
                deps.append(dep)
            node.dependencies = list(dict.fromkeys(deps))

        for node in self._nodes.values():
            for dep in node.dependencies:
                self._nodes[dep].dependents.append(node.id)

        cycle = find_cycle(self.ids, self._dependency_map())
        if cycle:
            raise CycleError(cycle)

        self._evaluate_conditions()

    def _evaluate_conditions(self) -> None:
        """Evaluate conditions once and propagate skips in dependency order."""
        variables = self.manifest.variables
        for node in self._nodes.values():
            node.enabled = evaluate_condition(node.resource.condition, variables)

        for node_id in self.topological_order():
            node = self._nodes[node_id]
            if not node.enabled:
                node.status = NodeStatus.SKIPPED
                node.skip_reason = 'condition'
            elif node.dependencies and all(self._nodes[d].is_skipped for d in node.dependencies):
                node.status = NodeStatus.SKIPPED
                node.skip_reason = 'dependency'
            if node.is_skipped:
                logger.debug(f"Resource '{node_id}' skipped ({node.skip_reason})")

    def _dependency_map(self) -> dict[str, list[str]]:
        return {node_id: node.dependencies for node_id, node in self._nodes.items()}

    @property
    def ids(self) -> list[str]:
        """Node ids in declaration order."""
        return list(self._nodes)

    @property
    def nodes(self) -> list[GraphNode]:
        """Nodes in declaration order."""
        return list(self._nodes.values())

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get_node(self, node_id: str) -> GraphNode:
        """Get a GraphNode by id.

        Raises:
            KeyError: If node id not found
        """
        return self._nodes[node_id]

    def dependencies(self, node_id: str) -> list[str]:
        return list(self._nodes[node_id].dependencies)

    def dependents(self, node_id: str) -> list[str]:
        return list(self._nodes[node_id].dependents)

    def bindings_for(self, node_id: str) -> list[OutputBinding]:
        """Output bindings consumed by node_id."""
        return list(self._nodes[node_id].bindings)

    def transitive_dependents(self, node_id: str) -> list[str]:
        """All nodes with a dependency path to node_id, in topological order."""
        found: set[str] = set()
        pending = list(self._nodes[node_id].dependents)
        while pending:
            current = pending.pop()
            if current not in found:
                found.add(current)
                pending.extend(self._nodes[current].dependents)
        return [n for n in self.topological_order() if n in found]

    def topological_order(self) -> list[str]:
        """Node ids with dependencies first; declaration order breaks ties."""
        return stable_topological_sort(self.ids, self._dependency_map())

    def skipped(self) -> list[str]:
        return [n.id for n in self._nodes.values() if n.is_skipped]

    def dangling_dependencies(self) -> list[tuple[str, str]]:
        """(node, dependency) pairs where an active node depends on a skipped one."""
        dangling = []
        for node in self._nodes.values():
            if node.is_skipped:
                continue
            for dep in node.dependencies:
                if self._nodes[dep].is_skipped:
                    dangling.append((node.id, dep))
        return dangling
