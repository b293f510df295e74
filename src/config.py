"""Workspace configuration management.

Configuration is loaded from the workspace's reconciler.yaml:
- engine: Executor tuning (concurrency, retry/backoff, deadline)
- provider: Ambient provider context (account, region, profile)
- adapters: Per-kind provider adapter declarations
- stack: Name under which state is recorded (default: workspace dir name)

Resolution order for the workspace directory:
1. $RECONCILER_WORKSPACE environment variable
2. Current working directory
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from reconciler.errors import ConfigurationError

CONFIG_FILENAME = 'reconciler.yaml'

ADAPTER_TYPES = {'command', 'http'}


class ConfigError(ConfigurationError):
    """Configuration error."""


def _number(data: dict, key: str, default, convert, label: str):
    """Read a numeric setting, raising ConfigError that names the key."""
    value = data.get(key, default)
    if value is None and default is None:
        return None
    # YAML booleans would otherwise pass int() silently
    if isinstance(value, bool):
        raise ConfigError(f"{label}.{key} must be a number, got {value!r}")
    try:
        return convert(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{label}.{key} must be a number, got {value!r}")


@dataclass
class EngineSettings:
    """Executor tuning.

    Attributes:
        concurrency: Maximum provider calls in flight
        max_attempts: Attempts per node for transient provider errors
        backoff_base: First retry delay in seconds (doubles each attempt)
        backoff_max: Upper bound for a single retry delay
        deadline: Seconds after which no new node is dispatched (None = no limit)
    """
    concurrency: int = 4
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    deadline: Optional[float] = None

    def __post_init__(self):
        if self.concurrency < 1:
            raise ConfigError(f"engine.concurrency must be >= 1, got {self.concurrency}")
        if self.max_attempts < 1:
            raise ConfigError(f"engine.max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ConfigError("engine backoff values must not be negative")
        if self.deadline is not None and self.deadline < 0:
            raise ConfigError(f"engine.deadline must not be negative, got {self.deadline}")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'EngineSettings':
        if not data:
            return cls()
        return cls(
            concurrency=_number(data, 'concurrency', 4, int, 'engine'),
            max_attempts=_number(data, 'max_attempts', 5, int, 'engine'),
            backoff_base=_number(data, 'backoff_base', 1.0, float, 'engine'),
            backoff_max=_number(data, 'backoff_max', 30.0, float, 'engine'),
            deadline=_number(data, 'deadline', None, float, 'engine'),
        )


@dataclass
class AdapterSettings:
    """Declaration of the adapter serving one resource kind."""
    kind: str
    type: str
    command: list[str] = field(default_factory=list)
    base_url: str = ''
    timeout: int = 600
    headers: dict = field(default_factory=dict)
    env: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, kind: str, data: dict) -> 'AdapterSettings':
        adapter_type = data.get('type')
        if adapter_type not in ADAPTER_TYPES:
            raise ConfigError(
                f"Adapter for kind '{kind}' has unknown type '{adapter_type}'. "
                f"Supported: {', '.join(sorted(ADAPTER_TYPES))}"
            )
        command = data.get('command', [])
        if isinstance(command, str):
            command = command.split()
        if adapter_type == 'command' and not command:
            raise ConfigError(f"Adapter for kind '{kind}' requires 'command'")
        if adapter_type == 'http' and not data.get('base_url'):
            raise ConfigError(f"Adapter for kind '{kind}' requires 'base_url'")
        env = data.get('env') or {}
        if not isinstance(env, dict):
            raise ConfigError(f"adapters.{kind}.env must be a mapping")
        return cls(
            kind=kind,
            type=adapter_type,
            command=list(command),
            base_url=data.get('base_url', ''),
            timeout=_number(data, 'timeout', 600, int, f"adapters.{kind}"),
            headers=dict(data.get('headers') or {}),
            env={str(k): str(v) for k, v in env.items()},
        )


@dataclass
class ProviderSettings:
    """Ambient provider context plus per-kind adapter declarations."""
    account: str = ''
    region: str = ''
    profile: str = ''
    extra: dict = field(default_factory=dict)
    adapters: dict[str, AdapterSettings] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, provider: Optional[dict], adapters: Optional[dict]) -> 'ProviderSettings':
        provider = provider or {}
        known = {'account', 'region', 'profile'}
        return cls(
            account=str(provider.get('account', '')),
            region=str(provider.get('region', '')),
            profile=str(provider.get('profile', '')),
            extra={k: v for k, v in provider.items() if k not in known},
            adapters={
                kind: AdapterSettings.from_dict(kind, declared or {})
                for kind, declared in (adapters or {}).items()
            },
        )


@dataclass
class WorkspaceConfig:
    """Configuration for one workspace (a directory holding manifests and state)."""
    workspace_dir: Path
    stack: str = ''
    engine: EngineSettings = field(default_factory=EngineSettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)

    def __post_init__(self):
        if isinstance(self.workspace_dir, str):
            self.workspace_dir = Path(self.workspace_dir)
        if not self.stack:
            self.stack = self.workspace_dir.resolve().name or 'default'

    @property
    def state_dir(self) -> Path:
        return self.workspace_dir / '.states' / self.stack


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data: Any = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def get_workspace_dir() -> Path:
    """Discover the workspace directory.

    Resolution order:
    1. $RECONCILER_WORKSPACE environment variable
    2. Current working directory
    """
    if env_path := os.environ.get('RECONCILER_WORKSPACE'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"RECONCILER_WORKSPACE={env_path} does not exist")
    return Path.cwd()


def load_workspace_config(workspace_dir: Optional[Path] = None) -> WorkspaceConfig:
    """Load reconciler.yaml from the workspace.

    A missing file yields defaults, so a bare directory of manifests is a
    usable workspace for `plan`.
    """
    if workspace_dir is None:
        workspace_dir = get_workspace_dir()
    workspace_dir = Path(workspace_dir)

    config_file = workspace_dir / CONFIG_FILENAME
    data = _parse_yaml(config_file) if config_file.exists() else {}

    return WorkspaceConfig(
        workspace_dir=workspace_dir,
        stack=str(data.get('stack', '')),
        engine=EngineSettings.from_dict(data.get('engine')),
        provider=ProviderSettings.from_dict(data.get('provider'), data.get('adapters')),
    )
