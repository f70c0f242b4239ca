"""
costscan - Configuration Management

Supports loading configuration from:
1. YAML config file (--config)
2. Environment variables (COSTSCAN_*)
3. Command-line arguments (highest priority)

Config file example:
```yaml
output: "./costscan-output"

aws:
  discover_accounts: true
  assume_role_name: OrganizationAccountAccessRole
  external_id: ${COSTSCAN_EXTERNAL_ID}  # env var substitution
  regions:
    - us-east-1
    - eu-west-1

pricing:
  refresh_interval_minutes: 60
  rate_limit_per_second: 5
```
"""
import logging
import os
import re
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .constants import (
    DEFAULT_ASSUME_ROLE_NAME,
    DEFAULT_MAX_WORKERS,
    DEFAULT_RATE_LIMIT_PER_SECOND,
    DEFAULT_REFRESH_INTERVAL_MINUTES,
    RESOURCE_FAMILIES,
)

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Invalid configuration value or unreadable config file."""


# Default config file locations (checked in order)
DEFAULT_CONFIG_PATHS = [
    './costscan.yaml',
    './costscan.yml',
    '~/.costscan/config.yaml',
    '~/.costscan/config.yml',
]


# Mapping from config keys to env vars
ENV_VAR_MAPPING = {
    'output': 'COSTSCAN_OUTPUT',
    'log_level': 'COSTSCAN_LOG_LEVEL',
    'aws.profile': 'COSTSCAN_AWS_PROFILE',
    'aws.regions': 'COSTSCAN_REGIONS',
    'aws.discover_regions': 'COSTSCAN_DISCOVER_REGIONS',
    'aws.discover_accounts': 'COSTSCAN_DISCOVER_ACCOUNTS',
    'aws.assume_role_name': 'COSTSCAN_ASSUME_ROLE_NAME',
    'aws.external_id': 'COSTSCAN_EXTERNAL_ID',
    'pricing.refresh_interval_minutes': 'COSTSCAN_PRICING_REFRESH_MINUTES',
    'pricing.rate_limit_per_second': 'COSTSCAN_PRICING_RATE_LIMIT',
    'discovery.max_workers': 'COSTSCAN_MAX_WORKERS',
    'discovery.timeout_seconds': 'COSTSCAN_TIMEOUT_SECONDS',
}

LIST_KEYS = ('aws.regions',)
BOOL_KEYS = ('aws.discover_regions', 'aws.discover_accounts')


def _substitute_env_vars(value: Any) -> Any:
    """Substitute ${ENV_VAR} patterns in string values."""
    if isinstance(value, str):
        # Pattern: ${VAR_NAME} or ${VAR_NAME:-default}
        pattern = r'\$\{([^}:]+)(?::-([^}]*))?\}'

        def replace(match):
            var_name = match.group(1)
            default = match.group(2) or ''
            return os.environ.get(var_name, default)

        return re.sub(pattern, replace, value)
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _get_nested(data: Dict, key_path: str, default: Any = None) -> Any:
    """Get a nested value from a dict using dot notation."""
    value = data
    for key in key_path.split('.'):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def _set_nested(data: Dict, key_path: str, value: Any) -> None:
    """Set a nested value in a dict using dot notation."""
    keys = key_path.split('.')
    for key in keys[:-1]:
        data = data.setdefault(key, {})
    data[keys[-1]] = value


def _split_list(value: str) -> List[str]:
    return [v.strip() for v in value.split(',') if v.strip()]


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('true', '1', 'yes')


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    # Config may carry an external ID
    if path.stat().st_mode & (stat.S_IRWXG | stat.S_IRWXO):
        logger.warning(f"Config file {config_path} has loose permissions. "
                       f"Consider: chmod 600 {config_path}")

    logger.info(f"Loading config from {path}")

    try:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(config, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    return _substitute_env_vars(config)


def find_default_config() -> Optional[str]:
    """Find a config file in default locations."""
    for path in DEFAULT_CONFIG_PATHS:
        expanded = Path(path).expanduser()
        if expanded.exists():
            return str(expanded)
    return None


def load_env_config() -> Dict[str, Any]:
    """Load configuration from environment variables."""
    config: Dict[str, Any] = {}

    for config_key, env_var in ENV_VAR_MAPPING.items():
        value = os.environ.get(env_var)
        if value is None:
            continue
        if config_key in LIST_KEYS:
            _set_nested(config, config_key, _split_list(value))
        elif config_key in BOOL_KEYS:
            _set_nested(config, config_key, _parse_bool(value))
        else:
            # Numbers are converted during validation
            _set_nested(config, config_key, value)

    return config


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Merge multiple config dicts. Later configs override earlier ones."""
    result: Dict[str, Any] = {}

    for config in configs:
        for key, value in config.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = merge_configs(result[key], value)
            elif value is not None:
                result[key] = value

    return result


def args_to_config(args) -> Dict[str, Any]:
    """Convert argparse args to config dict format."""
    config: Dict[str, Any] = {}

    # Map argparse attributes to config structure
    arg_mapping = {
        'output': 'output',
        'log_level': 'log_level',
        'profile': 'aws.profile',
        'regions': 'aws.regions',
        'discover_regions': 'aws.discover_regions',
        'discover_accounts': 'aws.discover_accounts',
        'assume_role_name': 'aws.assume_role_name',
        'external_id': 'aws.external_id',
        'role_arns': 'aws.role_arns',
        'accounts': 'filters.accounts',
        'resources': 'filters.resources',
        'refresh_interval': 'pricing.refresh_interval_minutes',
        'rate_limit': 'pricing.rate_limit_per_second',
        'max_workers': 'discovery.max_workers',
        'timeout': 'discovery.timeout_seconds',
    }

    for arg_name, config_key in arg_mapping.items():
        value = getattr(args, arg_name, None)
        if value is None:
            continue
        # store_true flags only override when set
        if value is False and arg_name in ('discover_regions', 'discover_accounts'):
            continue
        if arg_name in ('regions', 'role_arns', 'accounts', 'resources') and isinstance(value, str):
            value = _split_list(value)
        _set_nested(config, config_key, value)

    return config


# =============================================================================
# Validated Settings
# =============================================================================

@dataclass
class Settings:
    """Validated, typed view of the merged config dict."""
    output: str = "."
    log_level: str = "INFO"
    profile: Optional[str] = None
    regions: List[str] = field(default_factory=list)
    discover_regions: bool = False
    discover_accounts: bool = False
    assume_role_name: str = DEFAULT_ASSUME_ROLE_NAME
    external_id: Optional[str] = None
    accounts: List[Dict[str, Any]] = field(default_factory=list)
    role_arns: List[str] = field(default_factory=list)
    account_filter: List[str] = field(default_factory=list)
    resource_filter: List[str] = field(default_factory=list)
    refresh_interval_minutes: int = DEFAULT_REFRESH_INTERVAL_MINUTES
    rate_limit_per_second: float = DEFAULT_RATE_LIMIT_PER_SECOND
    max_workers: int = DEFAULT_MAX_WORKERS
    timeout_seconds: Optional[float] = None


def _number(config: Dict[str, Any], key: str, default: Any, cast):
    value = _get_nested(config, key, default)
    if value is None or value == '':
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number, got {value!r}") from None


def settings_from_config(config: Dict[str, Any]) -> Settings:
    """
    Build Settings from a merged config dict.

    Raises:
        ConfigError: on out-of-range numbers, malformed accounts or unknown
            resource types
    """
    settings = Settings(
        output=config.get('output') or '.',
        log_level=str(config.get('log_level') or 'INFO').upper(),
        profile=_get_nested(config, 'aws.profile') or None,
        regions=list(_get_nested(config, 'aws.regions') or []),
        discover_regions=_parse_bool(_get_nested(config, 'aws.discover_regions', False)),
        discover_accounts=_parse_bool(_get_nested(config, 'aws.discover_accounts', False)),
        assume_role_name=_get_nested(config, 'aws.assume_role_name') or DEFAULT_ASSUME_ROLE_NAME,
        external_id=_get_nested(config, 'aws.external_id') or None,
        accounts=list(_get_nested(config, 'aws.accounts') or []),
        role_arns=list(_get_nested(config, 'aws.role_arns') or []),
        account_filter=[str(a) for a in _get_nested(config, 'filters.accounts') or []],
        resource_filter=list(_get_nested(config, 'filters.resources') or []),
        refresh_interval_minutes=_number(
            config, 'pricing.refresh_interval_minutes', DEFAULT_REFRESH_INTERVAL_MINUTES, int
        ),
        rate_limit_per_second=_number(config, 'pricing.rate_limit_per_second', DEFAULT_RATE_LIMIT_PER_SECOND, float),
        max_workers=_number(config, 'discovery.max_workers', DEFAULT_MAX_WORKERS, int),
        timeout_seconds=_number(config, 'discovery.timeout_seconds', None, float),
    )

    if settings.refresh_interval_minutes < 1:
        raise ConfigError("pricing.refresh_interval_minutes must be at least 1")
    if settings.rate_limit_per_second < 0:
        raise ConfigError("pricing.rate_limit_per_second must be >= 0 (0 disables limiting)")
    if settings.max_workers < 1:
        raise ConfigError("discovery.max_workers must be at least 1")
    if settings.timeout_seconds is not None and settings.timeout_seconds <= 0:
        raise ConfigError("discovery.timeout_seconds must be positive")
    if settings.log_level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR'):
        raise ConfigError(f"log_level must be DEBUG, INFO, WARNING or ERROR, got {settings.log_level}")

    for entry in settings.accounts:
        if not isinstance(entry, dict):
            raise ConfigError(f"aws.accounts entries must be mappings, got {entry!r}")
        if not (entry.get('id') or entry.get('name') or entry.get('role_arn')):
            raise ConfigError("aws.accounts entries need at least one of id, name, role_arn")

    unknown = [r for r in settings.resource_filter if r not in RESOURCE_FAMILIES]
    if unknown:
        raise ConfigError(
            f"Unknown resource type(s): {', '.join(unknown)}. Valid: {', '.join(RESOURCE_FAMILIES)}"
        )

    return settings


def load_config(args) -> Settings:
    """
    Load configuration from all sources and merge them.

    Priority (highest to lowest):
    1. CLI arguments
    2. Config file (--config or default location)
    3. Environment variables
    """
    configs = []

    # 1. Environment variables (lowest priority)
    env_config = load_env_config()
    if env_config:
        logger.debug("Loaded config from environment variables")
        configs.append(env_config)

    # 2. Config file
    config_path = getattr(args, 'config', None)
    if config_path:
        configs.append(load_config_file(config_path))
    else:
        default_config = find_default_config()
        if default_config:
            logger.info(f"Found default config file: {default_config}")
            configs.append(load_config_file(default_config))

    # 3. CLI arguments (highest priority)
    configs.append(args_to_config(args))

    return settings_from_config(merge_configs(*configs))


def generate_sample_config() -> str:
    """Generate a sample config file content."""
    return '''# costscan configuration
#
# Environment variable substitution supported:
#   ${VAR_NAME}           - required env var
#   ${VAR_NAME:-default}  - env var with default value

# Output directory (or s3://bucket/prefix/) for JSON and CSV results
output: "./costscan-output"

# Logging level: DEBUG, INFO, WARNING, ERROR
log_level: INFO

aws:
  # AWS CLI profile (optional, uses the default credential chain if not set)
  # profile: my-profile

  # Regions to scan (default: us-east-1)
  # regions:
  #   - us-east-1
  #   - eu-west-1

  # Scan every enabled region instead (ec2:DescribeRegions)
  discover_regions: false

  # Enumerate accounts through AWS Organizations
  discover_accounts: false

  # Role assumed in member accounts when discover_accounts is on
  assume_role_name: OrganizationAccountAccessRole

  # External ID for role assumption
  # external_id: ${COSTSCAN_EXTERNAL_ID}

  # Static account list (used when discover_accounts is off)
  # accounts:
  #   - name: production
  #     role_arn: arn:aws:iam::111111111111:role/CostScanReadOnly
  #   - name: staging
  #     role_arn: arn:aws:iam::222222222222:role/CostScanReadOnly

pricing:
  # Cached prices are dropped after this many minutes
  refresh_interval_minutes: 60

  # Max Price List API calls per second (0 = unlimited)
  rate_limit_per_second: 5

discovery:
  # Concurrent account/region units
  max_workers: 8

  # Return partial results after this many seconds
  # timeout_seconds: 300
'''
