"""Manifest loading and validation for infrastructure reconciliation.

A manifest declares the desired resources of a stack:

    name: platform
    variables:
      enable_addon: false
    resources:
      network:
        kind: network
        attributes: {cidr: 10.0.0.0/16}
      cluster:
        kind: cluster
        attributes:
          network_id: {ref: network.id}
      addon:
        kind: release
        condition: {var: enable_addon}
        depends_on: [cluster]

Attribute values may embed references ({ref: <id>.<output>}) at any depth.
Conditions are boolean literals or the structured forms {var: name},
{not: cond}, {all: [cond, ...]} and {any: [cond, ...]}.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Union

import yaml

from config import ConfigError, get_workspace_dir

logger = logging.getLogger(__name__)

REF_KEY = 'ref'

CONDITION_OPERATORS = {'var', 'not', 'all', 'any'}

Condition = Union[bool, dict]


@dataclass(frozen=True)
class Reference:
    """A reference to another resource's output (<node_id>.<output_key>)."""
    node_id: str
    output_key: str

    @classmethod
    def parse(cls, text: str) -> 'Reference':
        """Parse '<node_id>.<output_key>'.

        Raises:
            ConfigError: If text is not of that form
        """
        if not isinstance(text, str) or text.count('.') != 1:
            raise ConfigError(f"Invalid reference '{text}': expected <resource>.<output>")
        node_id, output_key = text.split('.')
        if not node_id or not output_key:
            raise ConfigError(f"Invalid reference '{text}': expected <resource>.<output>")
        return cls(node_id=node_id, output_key=output_key)

    def __str__(self) -> str:
        return f'{self.node_id}.{self.output_key}'


def parse_attribute(value: Any) -> Any:
    """Convert {ref: ...} mappings into Reference objects, recursively."""
    if isinstance(value, dict):
        if REF_KEY in value:
            if len(value) != 1:
                raise ConfigError(f"Reference mapping must only contain '{REF_KEY}': {value}")
            return Reference.parse(value[REF_KEY])
        return {k: parse_attribute(v) for k, v in value.items()}
    if isinstance(value, list):
        return [parse_attribute(v) for v in value]
    return value


def serialize_attribute(value: Any) -> Any:
    """Inverse of parse_attribute."""
    if isinstance(value, Reference):
        return {REF_KEY: str(value)}
    if isinstance(value, dict):
        return {k: serialize_attribute(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize_attribute(v) for v in value]
    return value


def iter_references(value: Any, path: tuple = ()) -> Iterator[tuple[tuple, Reference]]:
    """Yield (path, Reference) for every reference inside an attribute value.

    Path elements are mapping keys or list indices, relative to value.
    """
    if isinstance(value, Reference):
        yield path, value
    elif isinstance(value, dict):
        for k, v in value.items():
            yield from iter_references(v, path + (k,))
    elif isinstance(value, list):
        for i, v in enumerate(value):
            yield from iter_references(v, path + (i,))


def substitute_references(value: Any, resolve: Callable[[Reference], Any]) -> Any:
    """Return a copy of value with each Reference replaced by resolve(ref)."""
    if isinstance(value, Reference):
        return resolve(value)
    if isinstance(value, dict):
        return {k: substitute_references(v, resolve) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_references(v, resolve) for v in value]
    return value


def validate_condition(condition: Any, where: str) -> None:
    """Check the structure of a condition expression.

    Raises:
        ConfigError: If the expression is not well formed
    """
    if isinstance(condition, bool):
        return
    if not isinstance(condition, dict) or len(condition) != 1:
        raise ConfigError(f"{where}: condition must be a boolean or a single-key mapping")
    op, arg = next(iter(condition.items()))
    if op not in CONDITION_OPERATORS:
        raise ConfigError(
            f"{where}: unknown condition operator '{op}'. "
            f"Supported: {', '.join(sorted(CONDITION_OPERATORS))}"
        )
    if op == 'var':
        if not isinstance(arg, str) or not arg:
            raise ConfigError(f"{where}: 'var' expects a variable name")
    elif op == 'not':
        validate_condition(arg, where)
    else:
        if not isinstance(arg, list):
            raise ConfigError(f"{where}: '{op}' expects a list of conditions")
        for item in arg:
            validate_condition(item, where)


def evaluate_condition(condition: Condition, variables: dict) -> bool:
    """Evaluate a validated condition against manifest variables.

    Raises:
        ConfigError: If a referenced variable is undefined or not boolean
    """
    if isinstance(condition, bool):
        return condition
    op, arg = next(iter(condition.items()))
    if op == 'var':
        if arg not in variables:
            raise ConfigError(f"Undefined variable '{arg}' in condition")
        value = variables[arg]
        if not isinstance(value, bool):
            raise ConfigError(f"Variable '{arg}' used in condition must be boolean, got {value!r}")
        return value
    if op == 'not':
        return not evaluate_condition(arg, variables)
    if op == 'all':
        return all(evaluate_condition(c, variables) for c in arg)
    return any(evaluate_condition(c, variables) for c in arg)


@dataclass
class ResourceNode:
    """A declared resource.

    Attributes:
        id: Identifier, unique within the manifest
        kind: Resource type tag (network, cluster, node-pool, role, release, ...)
        attributes: Desired attributes; values may contain References
        depends_on: Explicit ordering hints (ids of other resources)
        condition: Boolean expression; when false the resource is not materialized
    """
    id: str
    kind: str
    attributes: dict = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    condition: Condition = True

    @classmethod
    def from_dict(cls, node_id: str, data: dict) -> 'ResourceNode':
        """Create ResourceNode from its manifest entry."""
        if not isinstance(data, dict):
            raise ConfigError(f"Resource '{node_id}' must be a mapping")
        if 'kind' not in data:
            raise ConfigError(f"Resource '{node_id}' missing required field: kind")

        attributes = data.get('attributes') or {}
        if not isinstance(attributes, dict):
            raise ConfigError(f"Resource '{node_id}' attributes must be a mapping")

        depends_on = data.get('depends_on') or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        # De-duplicate while keeping declaration order
        depends_on = list(dict.fromkeys(str(d) for d in depends_on))

        condition = data.get('condition', True)
        validate_condition(condition, f"Resource '{node_id}'")

        return cls(
            id=node_id,
            kind=str(data['kind']),
            attributes=parse_attribute(attributes),
            depends_on=depends_on,
            condition=condition,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        d: dict[str, Any] = {'kind': self.kind}
        if self.attributes:
            d['attributes'] = serialize_attribute(self.attributes)
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        if self.condition is not True:
            d['condition'] = self.condition
        return d


@dataclass
class Manifest:
    """Desired state of one stack.

    Attributes:
        name: Human-readable manifest name
        resources: Declared resources, in declaration order
        variables: Values available to conditions
        description: Optional description
        source_path: Path where manifest was loaded from (for debugging)
    """
    name: str
    resources: list[ResourceNode]
    variables: dict = field(default_factory=dict)
    description: str = ''
    source_path: Optional[Path] = None

    def get(self, node_id: str) -> ResourceNode:
        """Get a resource by id.

        Raises:
            KeyError: If not declared
        """
        for node in self.resources:
            if node.id == node_id:
                return node
        raise KeyError(node_id)

    @property
    def ids(self) -> list[str]:
        return [n.id for n in self.resources]

    def with_variables(self, overrides: dict) -> 'Manifest':
        """Return a copy with variables overridden (e.g. from --var)."""
        variables = dict(self.variables)
        variables.update(overrides)
        return Manifest(
            name=self.name,
            resources=self.resources,
            variables=variables,
            description=self.description,
            source_path=self.source_path,
        )

    def to_dict(self) -> dict:
        """Convert manifest to dictionary (for JSON serialization)."""
        return {
            'name': self.name,
            'description': self.description,
            'variables': dict(self.variables),
            'resources': {n.id: n.to_dict() for n in self.resources},
        }

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Manifest':
        """Create Manifest from dictionary.

        Raises:
            ConfigError: If manifest is invalid
        """
        if 'name' not in data:
            raise ConfigError("Manifest missing required field: name")
        resources_data = data.get('resources')
        if not resources_data:
            raise ConfigError("Manifest must declare at least one resource")
        if not isinstance(resources_data, dict):
            raise ConfigError("Manifest 'resources' must be a mapping of id to resource")

        variables = data.get('variables') or {}
        if not isinstance(variables, dict):
            raise ConfigError("Manifest 'variables' must be a mapping")

        resources = [
            ResourceNode.from_dict(str(node_id), node_data)
            for node_id, node_data in resources_data.items()
        ]

        return cls(
            name=str(data['name']),
            resources=resources,
            variables=dict(variables),
            description=data.get('description', ''),
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'Manifest':
        """Create Manifest from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid manifest JSON: {e}")
        if not isinstance(data, dict):
            raise ConfigError("Manifest JSON must be an object")
        return cls.from_dict(data)


class ManifestLoader:
    """Loads manifests from the workspace's manifests/ directory."""

    def __init__(self, workspace_dir: Optional[Path] = None):
        """Initialize loader with workspace path.

        Args:
            workspace_dir: Workspace directory. If None, uses auto-discovery
                           ($RECONCILER_WORKSPACE, then cwd).
        """
        self.workspace_dir = Path(workspace_dir) if workspace_dir else get_workspace_dir()
        self.manifests_dir = self.workspace_dir / 'manifests'

    def list_manifests(self) -> list[str]:
        """List available manifest names."""
        if not self.manifests_dir.exists():
            return []
        return sorted([
            f.stem for f in self.manifests_dir.glob('*.yaml')
            if f.is_file()
        ])

    def load(self, name: str) -> Manifest:
        """Load manifest by name.

        Raises:
            ConfigError: If manifest not found or invalid
        """
        path = self.manifests_dir / f'{name}.yaml'
        if not path.exists():
            available = self.list_manifests()
            raise ConfigError(
                f"Manifest '{name}' not found at {path}. "
                f"Available: {', '.join(available) if available else 'none'}"
            )
        return self.load_file(path)

    def load_file(self, path: Path) -> Manifest:
        """Load manifest from a YAML (or JSON) file.

        Raises:
            ConfigError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigError(f"Manifest file not found: {path}")

        try:
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in manifest {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Manifest {path} must be a YAML object (dict)")

        logger.debug(f"Loaded manifest from {path}")
        return Manifest.from_dict(data, source_path=path)


def load_manifest(
    name: Optional[str] = None,
    file_path: Optional[str] = None,
    json_str: Optional[str] = None,
    workspace_dir: Optional[Path] = None,
) -> Manifest:
    """Load manifest from one of several sources.

    Priority:
    1. json_str - Inline JSON
    2. file_path - Specific file path
    3. name - Named manifest from <workspace>/manifests/

    Raises:
        ConfigError: If no source given, or manifest not found or invalid
    """
    if json_str:
        return Manifest.from_json(json_str)
    if file_path:
        return ManifestLoader(workspace_dir).load_file(Path(file_path))
    if name:
        return ManifestLoader(workspace_dir).load(name)
    raise ConfigError("No manifest specified")
