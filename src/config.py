"""Engine configuration management.

Configuration is loaded from a single YAML file:

    state_file: .converge/state.json
    max_workers: 4
    run_timeout: null
    retry:
      attempts: 5
      base_delay: 1.0
      max_delay: 30.0
    provider:
      endpoint: https://provisioner.example.com/api
      token_env: CONVERGE_PROVIDER_TOKEN
      verify_tls: true
      request_timeout: 30

Resolution order for the config file:
1. Explicit path (--config)
2. $CONVERGE_CONFIG environment variable
3. ./converge.yaml
4. Built-in defaults
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_CONFIG_NAME = 'converge.yaml'
DEFAULT_STATE_FILE = Path('.converge') / 'state.json'


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class RetrySettings:
    """Backoff settings for transient provider errors."""
    attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0


@dataclass
class ProviderSettings:
    """Connection settings for the provisioning API."""
    endpoint: str = ''
    token_env: str = 'CONVERGE_PROVIDER_TOKEN'
    verify_tls: bool = True
    request_timeout: float = 30.0

    def get_token(self) -> str:
        """Resolve the API token from the configured environment variable."""
        return os.environ.get(self.token_env, '')


@dataclass
class EngineConfig:
    """Configuration for plan/apply/destroy runs.

    Attributes:
        state_file: Path of the JSON state file
        max_workers: Concurrent actions per dependency level
        run_timeout: Cancel the run after this many seconds (None = no limit)
        retry: Transient error backoff
        provider: Provisioning API connection
        config_file: File the configuration was read from, if any
    """
    state_file: Path = DEFAULT_STATE_FILE
    max_workers: int = 4
    run_timeout: Optional[float] = None
    retry: RetrySettings = field(default_factory=RetrySettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    config_file: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.state_file, str):
            self.state_file = Path(self.state_file)
        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.run_timeout is not None and self.run_timeout <= 0:
            raise ConfigError(f"run_timeout must be positive, got {self.run_timeout}")
        if self.retry.attempts < 1:
            raise ConfigError(f"retry.attempts must be >= 1, got {self.retry.attempts}")
        if self.retry.base_delay < 0 or self.retry.max_delay < 0:
            raise ConfigError("retry delays must not be negative")

    @classmethod
    def from_dict(cls, data: dict, config_file: Optional[Path] = None) -> 'EngineConfig':
        """Create EngineConfig from a parsed YAML mapping.

        Relative state_file paths resolve against the config file directory.

        Raises:
            ConfigError: On unknown keys or values of the wrong type
        """
        known = {'state_file', 'max_workers', 'run_timeout', 'retry', 'provider'}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown config key(s): {', '.join(sorted(unknown))}")

        retry = data.get('retry') or {}
        provider = data.get('provider') or {}
        if not isinstance(retry, dict) or not isinstance(provider, dict):
            raise ConfigError("'retry' and 'provider' must be mappings")

        try:
            state_file = Path(data.get('state_file') or DEFAULT_STATE_FILE)
            if config_file and not state_file.is_absolute():
                state_file = config_file.parent / state_file
            run_timeout = data.get('run_timeout')
            return cls(
                state_file=state_file,
                max_workers=int(data.get('max_workers', 4)),
                run_timeout=float(run_timeout) if run_timeout is not None else None,
                retry=RetrySettings(
                    attempts=int(retry.get('attempts', 5)),
                    base_delay=float(retry.get('base_delay', 1.0)),
                    max_delay=float(retry.get('max_delay', 30.0)),
                ),
                provider=ProviderSettings(
                    endpoint=str(provider.get('endpoint', '')),
                    token_env=str(provider.get('token_env', 'CONVERGE_PROVIDER_TOKEN')),
                    verify_tls=bool(provider.get('verify_tls', True)),
                    request_timeout=float(provider.get('request_timeout', 30)),
                ),
                config_file=config_file,
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid config value: {e}") from e


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a YAML object (dict)")
    return data


def find_config_file(explicit: Optional[str] = None) -> Optional[Path]:
    """Discover the config file.

    Resolution order:
    1. Explicit path (must exist)
    2. $CONVERGE_CONFIG environment variable (must exist)
    3. ./converge.yaml
    """
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        return path

    if env_path := os.environ.get('CONVERGE_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"CONVERGE_CONFIG={env_path} does not exist")

    local = Path.cwd() / DEFAULT_CONFIG_NAME
    if local.exists():
        return local
    return None


def load_config(path: Optional[str] = None) -> EngineConfig:
    """Load engine configuration, falling back to defaults if no file exists."""
    config_file = find_config_file(path)
    if config_file is None:
        return EngineConfig()
    return EngineConfig.from_dict(_parse_yaml(config_file), config_file=config_file)
