"""
Configuration management and loading.

Handles connection settings, metric wait strategies and environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from ..core.consistency import WaitStrategy, build_strategy
from ..sdk.http_client import DEFAULT_BASE_URL
from ..storage.db import DEFAULT_LEDGER_PATH

DEFAULT_TOKEN_ENV = "USAGE_BILLING_API_TOKEN"
DEFAULT_BASE_URL_ENV = "USAGE_BILLING_BASE_URL"


@dataclass(frozen=True)
class ClientConfig:
    """Connection settings for the billing API."""
    base_url: str = DEFAULT_BASE_URL
    api_token: str = ""
    request_timeout: float = 30.0

    def __post_init__(self):
        """Validate connection values."""
        if not self.base_url or not self.base_url.startswith(("http://", "https://")):
            raise ValueError("base_url must be an http(s) URL")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")


@dataclass(frozen=True)
class ConsistencyConfig:
    """Wait strategy applied before a metrics query is trusted."""
    strategy: str = "fixed"
    delay: float = 0.0
    interval: Optional[float] = None
    timeout: Optional[float] = None

    def __post_init__(self):
        """Validate by building the strategy once."""
        self.to_strategy()

    def to_strategy(self) -> WaitStrategy:
        return build_strategy(self.strategy, self.delay, self.interval, self.timeout)


@dataclass(frozen=True)
class AppConfig:
    """Complete runtime configuration."""
    client: ClientConfig = field(default_factory=ClientConfig)
    usage: ConsistencyConfig = field(
        default_factory=lambda: ConsistencyConfig(strategy="fixed", delay=60.0)
    )
    revenue: ConsistencyConfig = field(
        default_factory=lambda: ConsistencyConfig(
            strategy="poll", delay=60.0, interval=30.0, timeout=600.0
        )
    )
    ledger_path: str = DEFAULT_LEDGER_PATH


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Load and validate configuration from a YAML file and the environment.

    The API token is never read from the file; the file only names the
    environment variable holding it.

    Args:
        path: Optional path to YAML configuration file
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    env = os.environ if environ is None else environ
    raw_config: Dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")
        if not raw_config:
            raise ValueError("Configuration file is empty")
        if not isinstance(raw_config, dict):
            raise ValueError("Configuration file must contain a mapping")

    allowed_top_keys = {'client', 'consistency', 'ledger_path'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    client = _parse_client(_section(raw_config, 'client'), env)

    consistency_data = _section(raw_config, 'consistency')
    unknown_consistency = set(consistency_data.keys()) - {'usage', 'revenue'}
    if unknown_consistency:
        raise ValueError(f"Unknown consistency keys: {unknown_consistency}")

    defaults = AppConfig(client=client)
    usage = defaults.usage
    revenue = defaults.revenue
    if 'usage' in consistency_data:
        usage = _parse_consistency(consistency_data['usage'], "consistency.usage")
    if 'revenue' in consistency_data:
        revenue = _parse_consistency(consistency_data['revenue'], "consistency.revenue")

    ledger_path = raw_config.get('ledger_path', DEFAULT_LEDGER_PATH)
    if not isinstance(ledger_path, str) or not ledger_path.strip():
        raise ValueError("'ledger_path' must be a non-empty string")

    return AppConfig(client=client, usage=usage, revenue=revenue, ledger_path=ledger_path)


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _parse_client(data: Dict[str, Any], env: Mapping[str, str]) -> ClientConfig:
    """Parse and validate the client section.

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_keys = {'base_url', 'token_env', 'request_timeout'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in client: {unknown_keys}")

    token_env = data.get('token_env', DEFAULT_TOKEN_ENV)
    if not isinstance(token_env, str) or not token_env.strip():
        raise ValueError("'token_env' in client must be a non-empty string")

    base_url = env.get(DEFAULT_BASE_URL_ENV) or data.get('base_url', DEFAULT_BASE_URL)
    if not isinstance(base_url, str):
        raise ValueError("'base_url' in client must be a string")

    timeout = data.get('request_timeout', 30.0)
    if not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ValueError("'request_timeout' in client must be > 0")

    return ClientConfig(
        base_url=base_url,
        api_token=env.get(token_env, ""),
        request_timeout=float(timeout),
    )


def _parse_consistency(data: Any, path: str) -> ConsistencyConfig:
    """Parse and validate one wait-strategy section.

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    allowed_keys = {'strategy', 'delay', 'interval', 'timeout'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    if 'strategy' not in data:
        raise ValueError(f"Missing required 'strategy' in {path}")

    values = {}
    for key in ('delay', 'interval', 'timeout'):
        if key in data:
            value = data[key]
            if not isinstance(value, (int, float)) or value < 0:
                raise ValueError(f"'{key}' in {path} must be a number >= 0")
            values[key] = float(value)

    strategy = str(data['strategy']).lower()
    try:
        return ConsistencyConfig(strategy=strategy, **values)
    except ValueError as e:
        raise ValueError(f"Invalid {path}: {e}")
