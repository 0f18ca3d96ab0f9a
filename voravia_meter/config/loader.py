"""
Configuration management and loading.

Handles database, rollup, query, logging and pricing settings.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from voravia_meter.core.pricing import DEFAULT_RATE_CARD, RateCard, TokenRate
from voravia_meter.storage.db import DEFAULT_DB_PATH
from voravia_meter.storage.repository import DEFAULT_MAX_QUERY_LIMIT

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class DatabaseConfig:
    path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class QueryConfig:
    """Limits applied to read-side queries."""
    max_event_limit: int = DEFAULT_MAX_QUERY_LIMIT

    def __post_init__(self):
        if self.max_event_limit <= 0:
            raise ValueError("max_event_limit must be > 0")


@dataclass(frozen=True)
class RollupConfig:
    interval_minutes: int = 60

    def __post_init__(self):
        if self.interval_minutes <= 0:
            raise ValueError("interval_minutes must be > 0")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = DEFAULT_LOG_FORMAT

    def __post_init__(self):
        if not isinstance(logging.getLevelName(self.level.upper()), int):
            raise ValueError(f"Unknown log level: {self.level}")


@dataclass(frozen=True)
class MeterConfig:
    """Complete metering configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    query: QueryConfig = field(default_factory=QueryConfig)
    rollup: RollupConfig = field(default_factory=RollupConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    pricing: RateCard = DEFAULT_RATE_CARD

    @classmethod
    def default(cls) -> "MeterConfig":
        return cls()


def configure_logging(config: LoggingConfig, level: Optional[str] = None) -> None:
    """Apply the logging section to the root logger."""
    logging.basicConfig(
        level=(level or config.level).upper(),
        format=config.format,
        force=True,
    )


def load_meter_config(path: Optional[str] = None) -> MeterConfig:
    """Load and validate metering configuration from a YAML file.

    Strict validation ensures no silent misconfigurations: a mistyped key
    or rate would otherwise under-report costs without any signal.

    Args:
        path: Path to YAML configuration file; None returns the defaults

    Returns:
        Validated MeterConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return MeterConfig.default()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Meter config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        return MeterConfig.default()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'database', 'query', 'rollup', 'logging', 'pricing'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    database = _section(raw_config, 'database', {'path'})
    query = _section(raw_config, 'query', {'max_event_limit'})
    rollup = _section(raw_config, 'rollup', {'interval_minutes'})
    logging_data = _section(raw_config, 'logging', {'level', 'format'})

    return MeterConfig(
        database=DatabaseConfig(path=str(database.get('path', DEFAULT_DB_PATH))),
        query=QueryConfig(
            max_event_limit=_positive_int(query, 'max_event_limit', DEFAULT_MAX_QUERY_LIMIT, 'query')
        ),
        rollup=RollupConfig(
            interval_minutes=_positive_int(rollup, 'interval_minutes', 60, 'rollup')
        ),
        logging=LoggingConfig(
            level=str(logging_data.get('level', 'INFO')),
            format=str(logging_data.get('format', DEFAULT_LOG_FORMAT)),
        ),
        pricing=_parse_rate_card(raw_config['pricing']) if 'pricing' in raw_config else DEFAULT_RATE_CARD,
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _positive_int(data: Dict, key: str, default: int, path: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"'{key}' in {path} must be a positive integer")
    return value


def _rate(value: Any, path: str) -> Decimal:
    """Parse a non-negative USD amount without going through float."""
    if isinstance(value, bool):
        raise ValueError(f"{path} must be a number")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{path} must be a number")
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"{path} must be >= 0")
    return amount


def _parse_rate_card(data: Dict) -> RateCard:
    """Parse and validate the pricing section.

    Args:
        data: Pricing configuration data

    Returns:
        Validated RateCard

    Raises:
        ValueError: If pricing configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError("'pricing' must be a dictionary")

    allowed_keys = {'version', 'token_rates', 'flat_rates'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown pricing keys: {unknown_keys}")

    if 'version' not in data:
        raise ValueError("Missing required 'version' in pricing")

    token_rates: Dict[str, Dict[str, TokenRate]] = {}
    for provider, services in _providers(data, 'token_rates').items():
        token_rates[provider] = {}
        for service, rate in services.items():
            path = f"pricing.token_rates.{provider}.{service}"
            if not isinstance(rate, dict):
                raise ValueError(f"{path} must be a dictionary")
            unknown = set(rate.keys()) - {'input_per_million', 'output_per_million'}
            if unknown:
                raise ValueError(f"Unknown keys in {path}: {unknown}")
            for key in ('input_per_million', 'output_per_million'):
                if key not in rate:
                    raise ValueError(f"Missing required '{key}' in {path}")
            token_rates[provider][service] = TokenRate(
                input_per_million=_rate(rate['input_per_million'], f"{path}.input_per_million"),
                output_per_million=_rate(rate['output_per_million'], f"{path}.output_per_million"),
            )

    flat_rates: Dict[str, Dict[str, Decimal]] = {}
    for provider, services in _providers(data, 'flat_rates').items():
        flat_rates[provider] = {
            service: _rate(price, f"pricing.flat_rates.{provider}.{service}")
            for service, price in services.items()
        }

    return RateCard(version=str(data['version']), token_rates=token_rates, flat_rates=flat_rates)


def _providers(data: Dict, key: str) -> Dict[str, Dict]:
    providers = data.get(key) or {}
    if not isinstance(providers, dict):
        raise ValueError(f"'pricing.{key}' must be a dictionary")
    for provider, services in providers.items():
        if not isinstance(services, dict):
            raise ValueError(f"'pricing.{key}.{provider}' must be a dictionary")
    return providers
