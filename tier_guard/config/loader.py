"""
Configuration management and loading.

Handles proxy settings from YAML and secrets from environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

import yaml

OPENAI_API_KEY_ENV = "OPENAI_API_KEY"
OPENAI_ADMIN_KEY_ENV = "OPENAI_ADMIN_KEY"

DEFAULT_DATABASE_PATH = "tier_guard.db"
DEFAULT_UPSTREAM_URL = "https://api.openai.com"
DEFAULT_UPSTREAM_TIMEOUT = 600.0

DEFAULT_PREMIUM_PREFIXES = (
    "gpt-5",
    "gpt-5-codex",
    "gpt-5-chat-latest",
    "gpt-4.1",
    "gpt-4o",
    "o1",
    "o3",
)

DEFAULT_MINI_PREFIXES = (
    "gpt-5-mini",
    "gpt-5-nano",
    "gpt-4.1-mini",
    "gpt-4.1-nano",
    "gpt-4o-mini",
    "o1-mini",
    "o3-mini",
    "o4-mini",
    "codex-mini-latest",
)

TIER_NAMES = ("premium", "mini")


@dataclass(frozen=True)
class TierConfig:
    """Daily budget and model prefixes for a single quota tier."""
    daily_limit: int
    prefixes: Tuple[str, ...]

    def __post_init__(self):
        """Validate the tier budget is positive."""
        if self.daily_limit <= 0:
            raise ValueError("daily_limit must be > 0")


@dataclass(frozen=True)
class UpstreamConfig:
    """Where requests are forwarded to."""
    base_url: str = DEFAULT_UPSTREAM_URL
    timeout: float = DEFAULT_UPSTREAM_TIMEOUT

    def __post_init__(self):
        """Validate upstream settings."""
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError("upstream base_url must be an http(s) URL")
        if self.timeout <= 0:
            raise ValueError("upstream timeout must be > 0")


def _default_tiers() -> Dict[str, TierConfig]:
    return {
        "premium": TierConfig(daily_limit=1_000_000, prefixes=DEFAULT_PREMIUM_PREFIXES),
        "mini": TierConfig(daily_limit=10_000_000, prefixes=DEFAULT_MINI_PREFIXES),
    }


@dataclass(frozen=True)
class TierGuardConfig:
    """Complete proxy configuration."""
    database_path: str = DEFAULT_DATABASE_PATH
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    tiers: Dict[str, TierConfig] = field(default_factory=_default_tiers)

    def get_tier_config(self, tier: str) -> TierConfig:
        """Get configuration for a tier by name."""
        return self.tiers[tier]

    @property
    def limits(self) -> Dict[str, int]:
        """Daily limits keyed by tier name."""
        return {name: tier.daily_limit for name, tier in self.tiers.items()}


def default_config() -> TierGuardConfig:
    """Configuration used when no file is given."""
    return TierGuardConfig()


def get_api_key() -> Optional[str]:
    """Key used when forwarding ordinary requests."""
    return os.environ.get(OPENAI_API_KEY_ENV) or None


def get_admin_key() -> Optional[str]:
    """Admin key used only for the organization usage report."""
    return os.environ.get(OPENAI_ADMIN_KEY_ENV) or None


def load_config(path: Optional[str] = None) -> TierGuardConfig:
    """Load and validate proxy configuration from a YAML file.

    Every section is optional; missing values fall back to the defaults.
    Unknown keys are rejected so a typo cannot silently change a limit.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated TierGuardConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return default_config()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return default_config()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration file must contain a mapping")

    allowed_top_keys = {'database_path', 'upstream', 'tiers'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    database_path = raw_config.get('database_path', DEFAULT_DATABASE_PATH)
    if not isinstance(database_path, str) or not database_path.strip():
        raise ValueError("'database_path' must be a non-empty string")

    upstream = _parse_upstream_config(raw_config.get('upstream') or {})

    tiers = _default_tiers()
    tiers_data = raw_config.get('tiers') or {}
    if not isinstance(tiers_data, dict):
        raise ValueError("'tiers' must be a dictionary")

    unknown_tiers = set(tiers_data.keys()) - set(TIER_NAMES)
    if unknown_tiers:
        raise ValueError(f"Unknown tiers: {unknown_tiers}")

    for tier_name, tier_data in tiers_data.items():
        if not isinstance(tier_data, dict):
            raise ValueError(f"Tier '{tier_name}' must be a dictionary")
        tiers[tier_name] = _parse_tier_config(tier_data, tiers[tier_name], f"tiers.{tier_name}")

    return TierGuardConfig(
        database_path=database_path,
        upstream=upstream,
        tiers=tiers
    )


def _parse_upstream_config(data: Dict) -> UpstreamConfig:
    """Parse and validate the upstream section."""
    if not isinstance(data, dict):
        raise ValueError("'upstream' must be a dictionary")

    allowed_keys = {'base_url', 'timeout'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in upstream: {unknown_keys}")

    base_url = data.get('base_url', DEFAULT_UPSTREAM_URL)
    if not isinstance(base_url, str):
        raise ValueError("'base_url' in upstream must be a string")

    timeout = data.get('timeout', DEFAULT_UPSTREAM_TIMEOUT)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
        raise ValueError("'timeout' in upstream must be a number")

    return UpstreamConfig(base_url=base_url.rstrip('/'), timeout=float(timeout))


def _parse_tier_config(data: Dict, defaults: TierConfig, path: str) -> TierConfig:
    """Parse and validate a tier section.

    Args:
        data: Tier configuration data
        defaults: Values used for keys that are not given
        path: Path for error messages

    Returns:
        Validated TierConfig

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_keys = {'daily_limit', 'prefixes'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    daily_limit = data.get('daily_limit', defaults.daily_limit)
    if isinstance(daily_limit, bool) or not isinstance(daily_limit, int) or daily_limit <= 0:
        raise ValueError(f"'daily_limit' in {path} must be a positive integer")

    prefixes = data.get('prefixes', list(defaults.prefixes))
    if not isinstance(prefixes, list) or not prefixes:
        raise ValueError(f"'prefixes' in {path} must be a non-empty list")
    for prefix in prefixes:
        if not isinstance(prefix, str) or not prefix.strip():
            raise ValueError(f"'prefixes' in {path} must contain non-empty strings")

    return TierConfig(
        daily_limit=daily_limit,
        prefixes=tuple(prefix.strip().lower() for prefix in prefixes)
    )
