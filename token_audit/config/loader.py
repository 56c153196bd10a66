"""
Configuration management and loading.

Handles collector settings from a YAML file and environment variables.
Precedence: explicit overrides > environment > YAML file > defaults.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from token_audit.core.sources import DEFAULT_LOG_DIRS, DEFAULT_SESSIONS_DIR

TOKEN_PLACEHOLDER = "__OPENCLAW_TOKEN__"

ENV_GATEWAY_URL = "OPENCLAW_GATEWAY_URL"
ENV_TOKEN = "OPENCLAW_TOKEN"
ENV_GATEWAY_TOKEN = "OPENCLAW_GATEWAY_TOKEN"
ENV_DATA_DIR = "TOKEN_AUDIT_DATA_DIR"
ENV_SESSIONS_DIR = "TOKEN_AUDIT_SESSIONS_DIR"


@dataclass(frozen=True)
class GatewayConfig:
    """Inference gateway connection settings."""
    url: str = "http://localhost:18789"
    endpoint: str = "/api/usage"
    token: Optional[str] = None
    timeout_seconds: float = 10.0

    def __post_init__(self):
        """Validate gateway values."""
        if not self.url or not self.url.startswith(("http://", "https://")):
            raise ValueError("gateway url must start with http:// or https://")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class RateLimitConfig:
    """Token budget for gateway requests."""
    capacity: int = 30000
    window_seconds: float = 60.0
    expected_tokens: int = 100

    def __post_init__(self):
        """Validate rate limit values are positive."""
        if self.capacity <= 0:
            raise ValueError("capacity must be > 0")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if self.expected_tokens < 0:
            raise ValueError("expected_tokens cannot be negative")


@dataclass(frozen=True)
class CollectionConfig:
    """Collection cycle behaviour."""
    request_delay_seconds: float = 5.0
    max_attempts: int = 3
    backoff_base: float = 2.0
    allow_synthetic: bool = False
    max_sessions: Optional[int] = None

    def __post_init__(self):
        """Validate collection values."""
        if self.request_delay_seconds < 0:
            raise ValueError("request_delay_seconds cannot be negative")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_base <= 0:
            raise ValueError("backoff_base must be > 0")
        if self.max_sessions is not None and self.max_sessions < 1:
            raise ValueError("max_sessions must be >= 1 when set")


@dataclass(frozen=True)
class PathsConfig:
    """Filesystem locations."""
    data_dir: Path = Path("data")
    sessions_dir: Path = Path(DEFAULT_SESSIONS_DIR).expanduser()
    log_dirs: Tuple[str, ...] = DEFAULT_LOG_DIRS

    @property
    def archive_dir(self) -> Path:
        return self.data_dir / "archives"

    @property
    def log_file(self) -> Path:
        return self.data_dir / "collection.log"


@dataclass(frozen=True)
class CollectorConfig:
    """Complete collector configuration."""
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    collection: CollectionConfig = field(default_factory=CollectionConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)


_SECTION_KEYS = {
    'gateway': {'url', 'endpoint', 'token', 'timeout_seconds'},
    'rate_limit': {'capacity', 'window_seconds', 'expected_tokens'},
    'collection': {'request_delay_seconds', 'max_attempts', 'backoff_base',
                   'allow_synthetic', 'max_sessions'},
    'paths': {'data_dir', 'sessions_dir', 'log_dirs'},
}


def load_collector_config(
    path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Dict[str, Any]] = None
) -> CollectorConfig:
    """Load and validate collector configuration.

    Strict validation rejects unknown keys so typos do not silently fall
    back to defaults.

    Args:
        path: Optional path to a YAML configuration file
        env: Environment mapping (defaults to ``os.environ``)
        overrides: Explicit values such as CLI flags; keys are
            ``gateway_url``, ``token`` and ``data_dir``

    Returns:
        Validated CollectorConfig object

    Raises:
        FileNotFoundError: If an explicit config path doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    raw_config: Dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Collector config file not found: {path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

        if not isinstance(raw_config, dict):
            raise ValueError("Configuration file must contain a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    config = CollectorConfig(
        gateway=_parse_gateway(sections['gateway']),
        rate_limit=_parse_rate_limit(sections['rate_limit']),
        collection=_parse_collection(sections['collection']),
        paths=_parse_paths(sections['paths']),
    )
    config = _apply_env(config, os.environ if env is None else env)
    if overrides:
        config = _apply_overrides(config, overrides)
    return config


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return a validated config section (empty if absent)."""
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _number(data: Dict[str, Any], key: str, path: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return value


def _integer(data: Dict[str, Any], key: str, path: str, default: Optional[int]) -> Optional[int]:
    value = data.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _clean_token(token: Any) -> Optional[str]:
    if token is None:
        return None
    if not isinstance(token, str):
        raise ValueError("'token' in gateway must be a string")
    token = token.strip()
    if not token or token == TOKEN_PLACEHOLDER:
        return None
    return token


def _parse_gateway(data: Dict[str, Any]) -> GatewayConfig:
    defaults = GatewayConfig()
    for key in ('url', 'endpoint'):
        if key in data and not isinstance(data[key], str):
            raise ValueError(f"'{key}' in gateway must be a string")
    return GatewayConfig(
        url=data.get('url', defaults.url),
        endpoint=data.get('endpoint', defaults.endpoint),
        token=_clean_token(data.get('token')),
        timeout_seconds=float(_number(data, 'timeout_seconds', 'gateway', defaults.timeout_seconds)),
    )


def _parse_rate_limit(data: Dict[str, Any]) -> RateLimitConfig:
    defaults = RateLimitConfig()
    return RateLimitConfig(
        capacity=_integer(data, 'capacity', 'rate_limit', defaults.capacity),
        window_seconds=float(_number(data, 'window_seconds', 'rate_limit', defaults.window_seconds)),
        expected_tokens=_integer(data, 'expected_tokens', 'rate_limit', defaults.expected_tokens),
    )


def _parse_collection(data: Dict[str, Any]) -> CollectionConfig:
    defaults = CollectionConfig()
    allow_synthetic = data.get('allow_synthetic', defaults.allow_synthetic)
    if not isinstance(allow_synthetic, bool):
        raise ValueError("'allow_synthetic' in collection must be a boolean")
    return CollectionConfig(
        request_delay_seconds=float(_number(
            data, 'request_delay_seconds', 'collection', defaults.request_delay_seconds
        )),
        max_attempts=_integer(data, 'max_attempts', 'collection', defaults.max_attempts),
        backoff_base=float(_number(data, 'backoff_base', 'collection', defaults.backoff_base)),
        allow_synthetic=allow_synthetic,
        max_sessions=_integer(data, 'max_sessions', 'collection', defaults.max_sessions),
    )


def _parse_paths(data: Dict[str, Any]) -> PathsConfig:
    defaults = PathsConfig()
    log_dirs = data.get('log_dirs', list(defaults.log_dirs))
    if not isinstance(log_dirs, list) or not all(isinstance(p, str) for p in log_dirs):
        raise ValueError("'log_dirs' in paths must be a list of strings")
    for key in ('data_dir', 'sessions_dir'):
        if key in data and not isinstance(data[key], str):
            raise ValueError(f"'{key}' in paths must be a string")
    return PathsConfig(
        data_dir=Path(data['data_dir']).expanduser() if 'data_dir' in data else defaults.data_dir,
        sessions_dir=(
            Path(data['sessions_dir']).expanduser() if 'sessions_dir' in data
            else defaults.sessions_dir
        ),
        log_dirs=tuple(log_dirs),
    )


def _apply_env(config: CollectorConfig, env: Mapping[str, str]) -> CollectorConfig:
    """Apply environment variable overrides."""
    gateway = config.gateway
    if env.get(ENV_GATEWAY_URL):
        gateway = replace(gateway, url=env[ENV_GATEWAY_URL])
    token = env.get(ENV_TOKEN) or env.get(ENV_GATEWAY_TOKEN)
    if token:
        gateway = replace(gateway, token=_clean_token(token))

    paths = config.paths
    if env.get(ENV_DATA_DIR):
        paths = replace(paths, data_dir=Path(env[ENV_DATA_DIR]).expanduser())
    if env.get(ENV_SESSIONS_DIR):
        paths = replace(paths, sessions_dir=Path(env[ENV_SESSIONS_DIR]).expanduser())

    return replace(config, gateway=gateway, paths=paths)


def _apply_overrides(config: CollectorConfig, overrides: Dict[str, Any]) -> CollectorConfig:
    """Apply explicit overrides, ignoring None values."""
    allowed = {'gateway_url', 'token', 'data_dir'}
    unknown = set(overrides) - allowed
    if unknown:
        raise ValueError(f"Unknown overrides: {unknown}")

    gateway = config.gateway
    if overrides.get('gateway_url') is not None:
        gateway = replace(gateway, url=overrides['gateway_url'])
    if overrides.get('token') is not None:
        gateway = replace(gateway, token=_clean_token(overrides['token']))

    paths = config.paths
    if overrides.get('data_dir') is not None:
        paths = replace(paths, data_dir=Path(overrides['data_dir']).expanduser())

    return replace(config, gateway=gateway, paths=paths)
