"""
Configuration management and loading.

Handles ledger, streaming tracker and cleanup settings plus pricing
overrides, loaded from a YAML file with strict key validation.
"""

from dataclasses import dataclass, field, fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml

from ai_credit_guard.core.pricing import CREDIT_UNIT_USD, ModelPricing


@dataclass(frozen=True)
class LedgerConfig:
    """Reservation sizing and limits."""
    buffer_multiplier: float = 1.2
    max_reservation_credits: int = 1000
    reservation_expiry_minutes: int = 15
    credit_unit_usd: Decimal = CREDIT_UNIT_USD
    # Count Anthropic and Google prompts with their APIs when keys are set
    official_token_counts: bool = False

    def __post_init__(self):
        """Validate ledger values."""
        if self.buffer_multiplier < 1:
            raise ValueError("buffer_multiplier must be >= 1")
        if self.max_reservation_credits < 1:
            raise ValueError("max_reservation_credits must be >= 1")
        if self.reservation_expiry_minutes <= 0:
            raise ValueError("reservation_expiry_minutes must be > 0")
        if self.credit_unit_usd <= 0:
            raise ValueError("credit_unit_usd must be > 0")


@dataclass(frozen=True)
class TrackerConfig:
    """Streaming tracker thresholds and grace periods."""
    max_active_trackers: int = 1000
    warning_threshold: float = 0.8
    extend_threshold: float = 0.9
    completed_grace_seconds: float = 30
    cancelled_grace_seconds: float = 5
    stale_max_age_minutes: int = 30

    def __post_init__(self):
        """Validate tracker values."""
        if self.max_active_trackers < 1:
            raise ValueError("max_active_trackers must be >= 1")
        if not 0 < self.warning_threshold <= 1:
            raise ValueError("warning_threshold must be in (0, 1]")
        if not 0 < self.extend_threshold <= 1:
            raise ValueError("extend_threshold must be in (0, 1]")
        if self.completed_grace_seconds < 0 or self.cancelled_grace_seconds < 0:
            raise ValueError("grace periods cannot be negative")
        if self.stale_max_age_minutes <= 0:
            raise ValueError("stale_max_age_minutes must be > 0")


@dataclass(frozen=True)
class CleanupConfig:
    """Background cleanup schedule."""
    interval_minutes: float = 5
    expire_batch_size: int = 100

    def __post_init__(self):
        """Validate cleanup values."""
        if self.interval_minutes <= 0:
            raise ValueError("interval_minutes must be > 0")
        if self.expire_batch_size < 1:
            raise ValueError("expire_batch_size must be >= 1")


@dataclass(frozen=True)
class CreditConfig:
    """Complete credit guard configuration."""
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    pricing: Tuple[ModelPricing, ...] = ()

    @classmethod
    def default(cls) -> "CreditConfig":
        return cls()


def load_credit_config(path: str) -> CreditConfig:
    """Load and validate credit configuration from YAML file.

    Every section is optional and falls back to defaults, but unknown keys
    are rejected so a typo never silently changes reservation limits.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated CreditConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Credit config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'ledger', 'tracker', 'cleanup', 'pricing'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    ledger_data = _section(raw_config, 'ledger')
    if 'credit_unit_usd' in ledger_data:
        ledger_data['credit_unit_usd'] = _parse_decimal(ledger_data['credit_unit_usd'], 'ledger.credit_unit_usd')

    return CreditConfig(
        ledger=_build(LedgerConfig, ledger_data, 'ledger'),
        tracker=_build(TrackerConfig, _section(raw_config, 'tracker'), 'tracker'),
        cleanup=_build(CleanupConfig, _section(raw_config, 'cleanup'), 'cleanup'),
        pricing=tuple(_parse_pricing(raw_config.get('pricing') or [])),
    )


def _section(raw_config: Dict, name: str) -> Dict[str, Any]:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return dict(data)


def _build(cls, data: Dict[str, Any], path: str):
    """Instantiate a config dataclass, rejecting unknown and mistyped keys."""
    field_types = {f.name: f.type for f in fields(cls)}
    unknown_keys = set(data.keys()) - set(field_types)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for key, value in data.items():
        if field_types[key] is bool:
            if not isinstance(value, bool):
                raise ValueError(f"'{key}' in {path} must be true or false")
        elif isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
            raise ValueError(f"'{key}' in {path} must be a number")
    return cls(**data)


def _parse_decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"'{path}' must be a number")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")


def _parse_pricing(data: Any) -> List[ModelPricing]:
    """Parse and validate pricing overrides.

    Args:
        data: List of pricing entries

    Returns:
        Validated ModelPricing rows

    Raises:
        ValueError: If an entry is invalid
    """
    if not isinstance(data, list):
        raise ValueError("'pricing' must be a list")

    required_keys = {'provider', 'model', 'input_price_per_1k', 'output_price_per_1k'}
    rows = []
    for index, entry in enumerate(data):
        path = f"pricing[{index}]"
        if not isinstance(entry, dict):
            raise ValueError(f"{path} must be a dictionary")

        unknown_keys = set(entry.keys()) - required_keys
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
        missing_keys = required_keys - set(entry.keys())
        if missing_keys:
            raise ValueError(f"Missing required keys in {path}: {missing_keys}")

        for key in ('provider', 'model'):
            if not isinstance(entry[key], str) or not entry[key]:
                raise ValueError(f"'{key}' in {path} must be a non-empty string")

        rows.append(ModelPricing(
            provider=entry['provider'],
            model=entry['model'],
            input_price_per_1k=_parse_decimal(entry['input_price_per_1k'], f"{path}.input_price_per_1k"),
            output_price_per_1k=_parse_decimal(entry['output_price_per_1k'], f"{path}.output_price_per_1k"),
        ))
    return rows
