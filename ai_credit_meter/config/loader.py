"""
Configuration management and loading.

Handles metering settings loaded from a YAML file.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..core.pricing import DEFAULT_COST_PER_TOKEN
from ..core.settlement import (
    DEFAULT_STREAM_BUFFER_SIZE,
    DEFAULT_STREAM_MAX_SECONDS,
    DEFAULT_UPSTREAM_TIMEOUT,
)
from ..storage.db import DEFAULT_DB_PATH


class LedgerBackend(Enum):
    """Available ledger implementations."""
    MEMORY = "memory"
    SQLITE = "sqlite"


@dataclass(frozen=True)
class PricingConfig:
    """Default rate and rates seeded at startup."""
    default_cost_per_token: Decimal = DEFAULT_COST_PER_TOKEN
    models: Dict[str, Decimal] = field(default_factory=dict)

    def __post_init__(self):
        """Validate rates are non-negative."""
        if self.default_cost_per_token < 0:
            raise ValueError("default_cost_per_token must be >= 0")
        for model, rate in self.models.items():
            if rate < 0:
                raise ValueError(f"cost per token for {model} must be >= 0")


@dataclass(frozen=True)
class LedgerConfig:
    """Ledger backend selection."""
    backend: LedgerBackend = LedgerBackend.SQLITE
    db_path: str = DEFAULT_DB_PATH
    starting_grant: int = 1000

    def __post_init__(self):
        if self.starting_grant < 0:
            raise ValueError("starting_grant must be >= 0")


@dataclass(frozen=True)
class UpstreamConfig:
    """Upstream completion service settings."""
    base_url: Optional[str] = None
    timeout_seconds: float = DEFAULT_UPSTREAM_TIMEOUT
    stream_buffer_size: int = DEFAULT_STREAM_BUFFER_SIZE
    stream_max_seconds: float = DEFAULT_STREAM_MAX_SECONDS

    def __post_init__(self):
        """Validate timeouts and buffer size are positive."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.stream_buffer_size <= 0:
            raise ValueError("stream_buffer_size must be > 0")
        if self.stream_max_seconds <= 0:
            raise ValueError("stream_max_seconds must be > 0")


@dataclass(frozen=True)
class MeterConfig:
    """Complete metering configuration."""
    pricing: PricingConfig = field(default_factory=PricingConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)


def default_config() -> MeterConfig:
    return MeterConfig()


def load_meter_config(path: str) -> MeterConfig:
    """Load and validate metering configuration from YAML file.

    Strict validation ensures no silent misconfiguration of rates or
    of the ledger backend. Omitted sections take their defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeterConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Meter config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'pricing', 'ledger', 'upstream'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    return MeterConfig(
        pricing=_parse_pricing(_section(raw_config, 'pricing', {'default_cost_per_token', 'models'})),
        ledger=_parse_ledger(_section(raw_config, 'ledger', {'backend', 'db_path', 'starting_grant'})),
        upstream=_parse_upstream(_section(
            raw_config, 'upstream',
            {'base_url', 'timeout_seconds', 'stream_buffer_size', 'stream_max_seconds'}
        ))
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _parse_rate(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        rate = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if not rate.is_finite() or rate < 0:
        raise ValueError(f"'{path}' must be >= 0")
    return rate


def _parse_pricing(data: Dict[str, Any]) -> PricingConfig:
    default_rate = DEFAULT_COST_PER_TOKEN
    if 'default_cost_per_token' in data:
        default_rate = _parse_rate(data['default_cost_per_token'], "pricing.default_cost_per_token")

    models_data = data.get('models') or {}
    if not isinstance(models_data, dict):
        raise ValueError("'pricing.models' must be a dictionary")
    models = {
        str(model): _parse_rate(rate, f"pricing.models.{model}")
        for model, rate in models_data.items()
    }
    return PricingConfig(default_cost_per_token=default_rate, models=models)


def _parse_ledger(data: Dict[str, Any]) -> LedgerConfig:
    backend_str = data.get('backend', LedgerBackend.SQLITE.value)
    if not isinstance(backend_str, str):
        raise ValueError("'ledger.backend' must be a string")
    try:
        backend = LedgerBackend(backend_str.lower())
    except ValueError:
        valid_backends = [backend.value for backend in LedgerBackend]
        raise ValueError(f"'ledger.backend' must be one of: {valid_backends}")

    db_path = data.get('db_path', DEFAULT_DB_PATH)
    if not isinstance(db_path, str) or not db_path.strip():
        raise ValueError("'ledger.db_path' must be a non-empty string")

    starting_grant = data.get('starting_grant', 1000)
    if isinstance(starting_grant, bool) or not isinstance(starting_grant, int) or starting_grant < 0:
        raise ValueError("'ledger.starting_grant' must be an integer >= 0")

    return LedgerConfig(backend=backend, db_path=db_path, starting_grant=starting_grant)


def _parse_upstream(data: Dict[str, Any]) -> UpstreamConfig:
    base_url = data.get('base_url')
    if base_url is not None and not isinstance(base_url, str):
        raise ValueError("'upstream.base_url' must be a string")

    timeout = data.get('timeout_seconds', DEFAULT_UPSTREAM_TIMEOUT)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ValueError("'upstream.timeout_seconds' must be > 0")

    buffer_size = data.get('stream_buffer_size', DEFAULT_STREAM_BUFFER_SIZE)
    if isinstance(buffer_size, bool) or not isinstance(buffer_size, int) or buffer_size <= 0:
        raise ValueError("'upstream.stream_buffer_size' must be an integer > 0")

    max_seconds = data.get('stream_max_seconds', DEFAULT_STREAM_MAX_SECONDS)
    if isinstance(max_seconds, bool) or not isinstance(max_seconds, (int, float)) or max_seconds <= 0:
        raise ValueError("'upstream.stream_max_seconds' must be > 0")

    return UpstreamConfig(
        base_url=base_url,
        timeout_seconds=float(timeout),
        stream_buffer_size=buffer_size,
        stream_max_seconds=float(max_seconds)
    )
