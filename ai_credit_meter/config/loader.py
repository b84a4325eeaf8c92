"""
Configuration management and loading.

Handles metering settings from YAML files and environment variables.
"""

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from ai_credit_meter.core.pricing import (
    DEFAULT_PRICING,
    LINEAR_KINDS,
    LinearPricing,
    OperationKind,
    PricingConfig,
)
from ai_credit_meter.core.rate_limit import RATE_LIMITS, RateLimitConfig
from ai_credit_meter.core.retry import RetryPolicy

# Environment variables overriding route limits
RATE_LIMIT_ENV = {
    "ai": "RATE_LIMIT_AI_REQUESTS",
    "api": "RATE_LIMIT_API_REQUESTS",
}


@dataclass(frozen=True)
class MeteringConfig:
    """Complete metering configuration."""
    rate_limits: Dict[str, RateLimitConfig] = field(default_factory=lambda: dict(RATE_LIMITS))
    pricing: PricingConfig = DEFAULT_PRICING
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def get_rate_limit(self, route: str) -> RateLimitConfig:
        """Get the quota for a route preset, falling back to the 'api' preset."""
        return self.rate_limits.get(route, self.rate_limits["api"])


def default_config() -> MeteringConfig:
    """Built-in configuration with environment overrides applied."""
    return apply_env_overrides(MeteringConfig())


def apply_env_overrides(config: MeteringConfig, environ: Optional[Mapping[str, str]] = None) -> MeteringConfig:
    """Apply RATE_LIMIT_*_REQUESTS overrides to the route limits.

    Raises:
        ValueError: If an override is not a positive integer
    """
    environ = os.environ if environ is None else environ
    limits = dict(config.rate_limits)
    for route, variable in RATE_LIMIT_ENV.items():
        raw = environ.get(variable)
        if raw is None or raw == "":
            continue
        try:
            limit = int(raw)
        except ValueError:
            raise ValueError(f"{variable} must be an integer, got {raw!r}")
        base = limits.get(route, RATE_LIMITS[route])
        limits[route] = replace(base, limit=limit)
    return replace(config, rate_limits=limits)


def load_metering_config(path: str, environ: Optional[Mapping[str, str]] = None) -> MeteringConfig:
    """Load and validate metering configuration from YAML file.

    Sections are optional; anything omitted keeps its built-in default.
    Validation is strict so a typo never silently falls back to a default.

    Args:
        path: Path to YAML configuration file
        environ: Environment for overrides (defaults to os.environ)

    Returns:
        Validated MeteringConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Metering config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'rate_limits', 'pricing', 'executor'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    config = MeteringConfig()

    if 'rate_limits' in raw_config:
        config = replace(config, rate_limits=_parse_rate_limits(raw_config['rate_limits']))
    if 'pricing' in raw_config:
        config = replace(config, pricing=_parse_pricing(raw_config['pricing']))
    if 'executor' in raw_config:
        config = replace(config, retry=_parse_executor(raw_config['executor']))

    return apply_env_overrides(config, environ)


def _require_dict(data: Any, path: str) -> Dict:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _positive_int(data: Dict, key: str, path: str, allow_zero: bool = False) -> int:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"'{key}' in {path} must be {'>= 0' if allow_zero else '> 0'}")
    return value


def _parse_rate_limits(data: Any) -> Dict[str, RateLimitConfig]:
    """Parse route quotas, merged over the built-in presets."""
    data = _require_dict(data, 'rate_limits')
    limits = dict(RATE_LIMITS)
    for route, route_data in data.items():
        path = f"rate_limits.{route}"
        route_data = _require_dict(route_data, path)
        _check_keys(route_data, {'window_ms', 'limit'}, path)
        base = limits.get(route, RateLimitConfig())
        limits[route] = RateLimitConfig(
            window_ms=_positive_int(route_data, 'window_ms', path) if 'window_ms' in route_data else base.window_ms,
            limit=_positive_int(route_data, 'limit', path) if 'limit' in route_data else base.limit,
        )
    return limits


def _parse_decimal(value: Any, key: str, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{key}' in {path} must be a number")
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{key}' in {path} must be a number")
    if number < 0:
        raise ValueError(f"'{key}' in {path} must be >= 0")
    return number


def _parse_pricing(data: Any) -> PricingConfig:
    """Parse fee and per-kind linear pricing, merged over the defaults."""
    data = _require_dict(data, 'pricing')
    _check_keys(data, {'fee_percent', 'kinds'}, 'pricing')

    fee_percent = DEFAULT_PRICING.fee_percent
    if 'fee_percent' in data:
        fee_percent = _parse_decimal(data['fee_percent'], 'fee_percent', 'pricing')

    linear = dict(DEFAULT_PRICING.linear)
    kinds_data = _require_dict(data.get('kinds', {}), 'pricing.kinds')
    linear_names = {kind.value: kind for kind in LINEAR_KINDS}
    for name, kind_data in kinds_data.items():
        path = f"pricing.kinds.{name}"
        if name not in linear_names:
            raise ValueError(f"Unknown linear kind in pricing.kinds: {name} (expected one of: {sorted(linear_names)})")
        kind_data = _require_dict(kind_data, path)
        _check_keys(kind_data, {'min_credits', 'base_rate'}, path)
        kind: OperationKind = linear_names[name]
        current = linear[kind]
        linear[kind] = LinearPricing(
            base_rate=_parse_decimal(kind_data['base_rate'], 'base_rate', path) if 'base_rate' in kind_data else current.base_rate,
            min_credits=_positive_int(kind_data, 'min_credits', path, allow_zero=True) if 'min_credits' in kind_data else current.min_credits,
            normalization_unit=current.normalization_unit,
        )

    return PricingConfig(fee_percent=fee_percent, linear=linear)


def _parse_executor(data: Any) -> RetryPolicy:
    """Parse retry settings for provider calls."""
    data = _require_dict(data, 'executor')
    _check_keys(data, {'max_retries', 'base_delay_ms', 'timeout_seconds'}, 'executor')
    defaults = RetryPolicy()

    timeout = defaults.timeout_seconds
    if 'timeout_seconds' in data:
        value = data['timeout_seconds']
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ValueError("'timeout_seconds' in executor must be > 0")
        timeout = float(value)

    return RetryPolicy(
        max_retries=_positive_int(data, 'max_retries', 'executor') if 'max_retries' in data else defaults.max_retries,
        base_delay_ms=_positive_int(data, 'base_delay_ms', 'executor', allow_zero=True) if 'base_delay_ms' in data else defaults.base_delay_ms,
        timeout_seconds=timeout,
    )
