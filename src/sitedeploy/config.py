"""Deployment configuration loaded from YAML.

Example sitedeploy.yaml:

    workflow: Build and Deploy
    branches: [main]
    repository: https://github.com/example/site.git
    target: deploy@example.org:/usr/share/nginx/html/example.org/
    builder:
      command: [hugo, --minify]
      required_version: "0.117.0"
    serializer:
      database: .sitedeploy/runs.sqlite

Every key is optional except repository and target; defaults mirror a
Hugo site deployed with rsync over ssh.
"""
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from sitedeploy.core.protocols import ConfigLoader

DEFAULT_CONFIG_PATH = 'sitedeploy.yaml'
LEASE_MARGIN_SECONDS = 300
SNAPSHOT_GIT_CALLS = 7
UNBOUNDED_LEASE_SECONDS = 6 * 3600


@dataclass
class CredentialsConfig:
    key_env: str = 'SSH_KEY'
    known_hosts_env: str = 'KNOWN_HOSTS'
    key_file: Optional[str] = None
    known_hosts_file: Optional[str] = None


@dataclass
class SnapshotConfig:
    full_history: bool = True
    submodules: bool = True
    timeout_seconds: Optional[float] = 600


@dataclass
class BuilderConfig:
    command: List[str] = field(default_factory=lambda: ['hugo', '--minify'])
    output_dir: str = 'public'
    timeout_seconds: Optional[float] = 900
    required_version: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class SyncConfig:
    timeout_seconds: Optional[float] = 900
    compress: bool = True


@dataclass
class SerializerConfig:
    database: str = '.sitedeploy/runs.sqlite'
    poll_interval_seconds: float = 5.0
    queue_timeout_seconds: Optional[float] = None
    busy_timeout_seconds: float = 30.0


@dataclass
class DeployConfig:
    repository: str
    target: str
    workflow: str = 'Build and Deploy'
    branches: List[str] = field(default_factory=lambda: ['main'])
    ssh_port: int = 22
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    builder: BuilderConfig = field(default_factory=BuilderConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    serializer: SerializerConfig = field(default_factory=SerializerConfig)

    @property
    def lease_seconds(self) -> float:
        """Admission lease covering the longest stage; the holder renews it between stages."""
        budgets = [self.snapshot.timeout_seconds, self.builder.timeout_seconds, self.sync.timeout_seconds]
        if any(b is None for b in budgets):
            return UNBOUNDED_LEASE_SECONDS
        # snapshot budget applies per git call; a full fetch makes up to seven
        return SNAPSHOT_GIT_CALLS * budgets[0] + budgets[1] + budgets[2] + LEASE_MARGIN_SECONDS


_SECTIONS = {
    'credentials': CredentialsConfig,
    'snapshot': SnapshotConfig,
    'builder': BuilderConfig,
    'sync': SyncConfig,
    'serializer': SerializerConfig,
}


def _build_section(name: str, cls, data: Any):
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown key(s) in '{name}': {', '.join(sorted(unknown))}")
    return cls(**data)


def config_from_dict(data: Dict[str, Any], overrides: Optional[Dict[str, Any]] = None) -> DeployConfig:
    """Build and validate a DeployConfig from parsed YAML plus CLI overrides.

    Raises:
        ValueError: Unknown keys, missing required keys or invalid values
    """
    data = dict(data or {})
    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value

    known = {f.name for f in fields(DeployConfig)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown config key(s): {', '.join(sorted(unknown))}")

    for required in ('repository', 'target'):
        if not data.get(required):
            raise ValueError(f"Missing required config key '{required}'")

    sections = {name: _build_section(name, cls, data.pop(name, None)) for name, cls in _SECTIONS.items()}
    config = DeployConfig(**data, **sections)

    if isinstance(config.branches, str):
        config.branches = [config.branches]
    if isinstance(config.builder.command, str):
        config.builder.command = config.builder.command.split()
    if not config.builder.command:
        raise ValueError("builder.command must not be empty")
    if not isinstance(config.ssh_port, int) or not 0 < config.ssh_port < 65536:
        raise ValueError(f"ssh_port must be an integer in 1-65535, got {config.ssh_port!r}")
    if config.serializer.poll_interval_seconds <= 0:
        raise ValueError("serializer.poll_interval_seconds must be positive")
    config.serializer.database = os.path.expanduser(config.serializer.database)
    return config


def load_config(
    loader: ConfigLoader,
    path: str = DEFAULT_CONFIG_PATH,
    overrides: Optional[Dict[str, Any]] = None,
    missing_ok: bool = False
) -> DeployConfig:
    """Load YAML config from path and apply overrides.

    With missing_ok, an absent file counts as empty, so flags alone can
    supply repository and target.
    """
    try:
        data = loader.load_yaml(path)
    except FileNotFoundError:
        if not missing_ok:
            raise
        data = {}
    return config_from_dict(data, overrides)
