"""Engine configuration management.

Configuration is loaded from the workspace directory:
- engine.yaml: Engine settings (state backend, provider, parallelism)
- manifests/*.yaml: Resource graph declarations
- .states/: Local state backend storage (default)
- .cloud/: Local simulated provider storage (default)

Resolution order for the workspace:
1. $IAC_ENGINE_HOME environment variable
2. Current working directory

The merge order is: built-in defaults → engine.yaml → CLI flags.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

# Supported values for enumerated settings
STATE_BACKENDS = {'local', 'http'}
ON_ERROR_MODES = {'continue', 'stop'}


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class StateSettings:
    """State backend settings.

    Attributes:
        backend: Backend name ('local' or 'http')
        path: State file path for the local backend (relative to workspace)
        address: State URL for the http backend
        lock_address: Lock URL for the http backend (default: address)
        unlock_address: Unlock URL for the http backend (default: address)
        username: Optional basic-auth user for the http backend
        password: Optional basic-auth password for the http backend
    """
    backend: str = 'local'
    path: Optional[str] = None
    address: str = ''
    lock_address: str = ''
    unlock_address: str = ''
    username: str = ''
    password: str = ''

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'StateSettings':
        """Create StateSettings from dictionary."""
        if not data:
            return cls()
        backend = data.get('backend', 'local')
        if backend not in STATE_BACKENDS:
            raise ConfigError(
                f"Unknown state backend '{backend}'. "
                f"Supported: {', '.join(sorted(STATE_BACKENDS))}"
            )
        settings = cls(
            backend=backend,
            path=data.get('path'),
            address=data.get('address', ''),
            lock_address=data.get('lock_address', ''),
            unlock_address=data.get('unlock_address', ''),
            username=data.get('username', ''),
            password=data.get('password', ''),
        )
        if settings.backend == 'http' and not settings.address:
            raise ConfigError("State backend 'http' requires 'address'")
        return settings


@dataclass
class EngineConfig:
    """Configuration for one engine workspace.

    Reads engine.yaml from the workspace directory if it exists; every
    setting has a usable default so an empty workspace works out of the box.
    """
    workspace: Path
    state: StateSettings = field(default_factory=StateSettings)
    provider: str = 'local'
    provider_path: Optional[str] = None
    parallelism: int = 4
    retries: int = 3
    retry_backoff: float = 0.5
    ready_timeout: int = 300
    ready_interval: float = 2.0
    on_error: str = 'continue'

    def __post_init__(self):
        if isinstance(self.workspace, str):
            self.workspace = Path(self.workspace)

        config_file = self.workspace / 'engine.yaml'
        if config_file.exists():
            self._load_from_yaml(config_file)

    def _load_from_yaml(self, path: Path):
        """Apply values from engine.yaml over the defaults."""
        data = _parse_yaml(path)

        self.state = StateSettings.from_dict(data.get('state'))

        provider = data.get('provider') or {}
        if isinstance(provider, str):
            provider = {'name': provider}
        self.provider = provider.get('name', self.provider)
        self.provider_path = provider.get('path', self.provider_path)

        self.parallelism = _number(data, 'parallelism', self.parallelism, int, path)
        if self.parallelism < 1:
            raise ConfigError(f"parallelism must be >= 1, got {self.parallelism}")

        self.retries = _number(data, 'retries', self.retries, int, path)
        self.retry_backoff = _number(data, 'retry_backoff', self.retry_backoff, float, path)
        self.ready_timeout = _number(data, 'ready_timeout', self.ready_timeout, int, path)
        self.ready_interval = _number(data, 'ready_interval', self.ready_interval, float, path)

        on_error = data.get('on_error', self.on_error)
        if on_error not in ON_ERROR_MODES:
            raise ConfigError(
                f"Invalid on_error '{on_error}' in {path}. "
                f"Expected one of: {', '.join(sorted(ON_ERROR_MODES))}"
            )
        self.on_error = on_error

    @property
    def manifests_dir(self) -> Path:
        return self.workspace / 'manifests'

    def state_path(self, manifest_name: str) -> Path:
        """Local state file for a manifest."""
        if self.state.path:
            path = Path(self.state.path)
            return path if path.is_absolute() else self.workspace / path
        return self.workspace / '.states' / manifest_name / 'state.json'

    def cloud_path(self) -> Path:
        """Storage file for the local simulated provider."""
        if self.provider_path:
            path = Path(self.provider_path)
            return path if path.is_absolute() else self.workspace / path
        return self.workspace / '.cloud' / 'resources.json'


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def _number(data: dict, key: str, default, convert, path: Path):
    """Read a numeric setting, converting with int or float."""
    value = data.get(key, default)
    try:
        return convert(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid value for '{key}' in {path}: {value!r} is not a number")


def get_workspace_dir() -> Path:
    """Discover the workspace directory.

    Resolution order:
    1. $IAC_ENGINE_HOME environment variable
    2. Current working directory
    """
    if env_path := os.environ.get('IAC_ENGINE_HOME'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"IAC_ENGINE_HOME={env_path} does not exist")

    return Path.cwd()


def load_engine_config(workspace: Optional[str] = None) -> EngineConfig:
    """Load engine configuration for a workspace (default: discovered)."""
    path = Path(workspace) if workspace else get_workspace_dir()
    if not path.is_dir():
        raise ConfigError(f"Workspace not found: {path}")
    return EngineConfig(workspace=path)
