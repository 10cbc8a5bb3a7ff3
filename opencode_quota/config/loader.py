"""
Configuration management and loading.

Handles store locations, the pricing snapshot and local quota limits.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from opencode_quota.core.local_quota import (
    DEFAULT_DAY_LIMIT,
    DEFAULT_MAX_RECENT,
    DEFAULT_RPM_LIMIT,
    DEFAULT_WINDOW_MS,
)
from opencode_quota.storage.paths import get_local_quota_path


@dataclass(frozen=True)
class StoreConfig:
    """Message store location; empty paths means platform defaults."""
    paths: Tuple[Path, ...] = ()


@dataclass(frozen=True)
class PricingConfig:
    """Pricing snapshot location; None means every model is unpriced."""
    path: Optional[Path] = None


@dataclass(frozen=True)
class LocalQuotaConfig:
    """Local quota counter settings."""
    path: Path = field(default_factory=get_local_quota_path)
    day_limit: int = DEFAULT_DAY_LIMIT
    rpm_limit: int = DEFAULT_RPM_LIMIT
    window_ms: int = DEFAULT_WINDOW_MS
    max_recent: int = DEFAULT_MAX_RECENT

    def __post_init__(self):
        """Validate limits and window sizes."""
        if self.day_limit < 0:
            raise ValueError("day_limit must be >= 0")
        if self.rpm_limit < 0:
            raise ValueError("rpm_limit must be >= 0")
        if self.window_ms <= 0:
            raise ValueError("window_ms must be > 0")
        if self.max_recent <= 0:
            raise ValueError("max_recent must be > 0")


@dataclass(frozen=True)
class QuotaConfig:
    """Complete configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    local_quota: LocalQuotaConfig = field(default_factory=LocalQuotaConfig)


def load_config(path: Optional[str] = None) -> QuotaConfig:
    """Load and validate configuration from a YAML file.

    Unknown keys are rejected so typos don't silently fall back to defaults.

    Args:
        path: Path to YAML configuration file; None returns the defaults

    Returns:
        Validated QuotaConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return QuotaConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return QuotaConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'store', 'pricing', 'local_quota'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    base_dir = config_path.parent

    store_data = _section(raw_config, 'store', {'paths'})
    paths = store_data.get('paths', [])
    if not isinstance(paths, list) or not all(isinstance(p, str) and p for p in paths):
        raise ValueError("'store.paths' must be a list of non-empty strings")
    store = StoreConfig(paths=tuple(_resolve(base_dir, p) for p in paths))

    pricing_data = _section(raw_config, 'pricing', {'path'})
    pricing_path = pricing_data.get('path')
    if pricing_path is not None and (not isinstance(pricing_path, str) or not pricing_path):
        raise ValueError("'pricing.path' must be a non-empty string")
    pricing = PricingConfig(path=_resolve(base_dir, pricing_path) if pricing_path else None)

    quota_data = _section(
        raw_config, 'local_quota', {'path', 'day_limit', 'rpm_limit', 'window_ms', 'max_recent'}
    )
    quota_path = quota_data.get('path')
    if quota_path is not None and (not isinstance(quota_path, str) or not quota_path):
        raise ValueError("'local_quota.path' must be a non-empty string")
    local_quota = LocalQuotaConfig(
        path=_resolve(base_dir, quota_path) if quota_path else get_local_quota_path(),
        day_limit=_int_option(quota_data, 'day_limit', DEFAULT_DAY_LIMIT, 'local_quota'),
        rpm_limit=_int_option(quota_data, 'rpm_limit', DEFAULT_RPM_LIMIT, 'local_quota'),
        window_ms=_int_option(quota_data, 'window_ms', DEFAULT_WINDOW_MS, 'local_quota'),
        max_recent=_int_option(quota_data, 'max_recent', DEFAULT_MAX_RECENT, 'local_quota'),
    )

    return QuotaConfig(store=store, pricing=pricing, local_quota=local_quota)


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    """Get an optional section and reject unknown keys in it."""
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _int_option(data: Dict, key: str, default: int, section: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {section} must be an integer")
    return value


def _resolve(base_dir: Path, value: str) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else base_dir / path
