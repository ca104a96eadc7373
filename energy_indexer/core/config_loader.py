"""Configuration loading utilities."""

import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv


ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Environment variable -> (section, key)
ENV_OVERRIDES = {
    'ENERGY_INDEXER_RPC_URL': ('chain', 'rpc_url'),
    'ENERGY_INDEXER_MARKETPLACE_ADDRESS': ('chain', 'marketplace_address'),
    'ENERGY_INDEXER_DATABASE_URL': ('database', 'url'),
}


def load_config(path: str = "config.yaml") -> dict:
    """
    Load YAML configuration file from specified path and return as dictionary.

    Args:
        path: Configuration file path (default: config.yaml)

    Returns:
        Validated configuration dictionary with defaults filled in

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        ValueError: If configuration file is empty or invalid
    """
    # core -> energy_indexer -> project_root
    root_dir = Path(__file__).parent.parent.parent
    env_path = root_dir / '.env'
    if env_path.exists():
        load_dotenv(env_path)

    config_path = Path(path)

    # If path is not absolute, try to find from project root
    if not config_path.is_absolute():
        config_path = root_dir / path

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file does not exist: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)

    if not config or not isinstance(config, dict):
        raise ValueError(f"Configuration file is empty or has invalid format: {path}")

    return validate_config(config)


def validate_config(config: dict) -> dict:
    """
    Apply environment overrides, validate every section and fill defaults.

    Args:
        config: Raw configuration dictionary

    Returns:
        The same dictionary, validated

    Raises:
        ValueError: Configuration validation failed
    """
    for env_var, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            config.setdefault(section, {})[key] = value

    config['chain'] = _validate_chain(config.get('chain'))
    config['indexer'] = _validate_indexer(config.get('indexer') or {})
    config['database'] = _validate_database(config.get('database'))
    config['pricing'] = _validate_pricing(config.get('pricing') or {})
    config['grid_zones'] = _validate_grid_zones(config.get('grid_zones') or [])
    config.setdefault('logging', {})

    return config


def _validate_chain(chain) -> dict:
    if not isinstance(chain, dict):
        raise ValueError("Missing 'chain' configuration section")

    if not chain.get('rpc_url'):
        raise ValueError("chain.rpc_url is required")

    address = chain.get('marketplace_address')
    if not address or not ADDRESS_PATTERN.match(str(address)):
        raise ValueError(
            f"chain.marketplace_address must be a 0x-prefixed 20-byte hex address, current value: {address}"
        )

    chain.setdefault('timeout', 30.0)
    chain.setdefault('max_retries', 3)
    chain.setdefault('retry_backoff_seconds', 1.0)
    chain.setdefault('proxy', None)
    chain.setdefault('verify_ssl', True)

    if float(chain['timeout']) <= 0:
        raise ValueError("chain.timeout must be greater than 0")
    if int(chain['max_retries']) < 0:
        raise ValueError("chain.max_retries must not be negative")

    return chain


def _validate_indexer(indexer: dict) -> dict:
    indexer.setdefault('enabled', True)
    indexer.setdefault('start_block', 0)
    indexer.setdefault('poll_interval_seconds', 5)
    indexer.setdefault('max_block_range', 2000)
    indexer.setdefault('max_backoff_seconds', 60)
    indexer.setdefault('event_retry_limit', 3)
    indexer.setdefault('deferred_attempt_limit', 100)
    indexer.setdefault('listing_ttl_seconds', 24 * 60 * 60)

    if int(indexer['start_block']) < 0:
        raise ValueError("indexer.start_block must not be negative")

    for key in ('max_block_range', 'event_retry_limit', 'deferred_attempt_limit', 'listing_ttl_seconds'):
        if int(indexer[key]) <= 0:
            raise ValueError(f"indexer.{key} must be greater than 0, current value: {indexer[key]}")

    # Intervals are seconds and may be fractional
    for key in ('poll_interval_seconds', 'max_backoff_seconds'):
        if float(indexer[key]) <= 0:
            raise ValueError(f"indexer.{key} must be greater than 0, current value: {indexer[key]}")

    if float(indexer['max_backoff_seconds']) < float(indexer['poll_interval_seconds']):
        raise ValueError("indexer.max_backoff_seconds must be >= indexer.poll_interval_seconds")

    return indexer


def _validate_database(database) -> dict:
    if not isinstance(database, dict) or not database.get('url'):
        raise ValueError("database.url is required")

    url = database['url']
    if not (url.startswith('sqlite:///') or url.startswith('postgresql://')
            or url.startswith('postgres://')):
        raise ValueError(
            f"Unsupported database URL format: {url}. Supported: sqlite:/// or postgresql://"
        )

    return database


def _validate_pricing(pricing: dict) -> dict:
    pricing.setdefault('display_currency', 'INR')
    pricing.setdefault('display_rate', '285000')
    pricing.setdefault('native_decimals', 18)
    pricing.setdefault('energy_unit_scale', 1)
    pricing.setdefault('display_precision', 2)
    pricing.setdefault('platform_fee_bps', 0)

    # Rates stay strings; a float here would already have lost precision
    if isinstance(pricing['display_rate'], float):
        raise ValueError("pricing.display_rate must be quoted as a string, e.g. \"285000.50\"")
    pricing['display_rate'] = str(pricing['display_rate'])

    if int(pricing['native_decimals']) < 0:
        raise ValueError("pricing.native_decimals must not be negative")
    if int(pricing['energy_unit_scale']) <= 0:
        raise ValueError("pricing.energy_unit_scale must be greater than 0")
    if int(pricing['display_precision']) < 0:
        raise ValueError("pricing.display_precision must not be negative")

    fee_bps = int(pricing['platform_fee_bps'])
    if not 0 <= fee_bps <= 10_000:
        raise ValueError(f"pricing.platform_fee_bps must be between 0 and 10000, current value: {fee_bps}")

    return pricing


def _validate_grid_zones(zones: list) -> list:
    """
    Validate static grid zone reference data.

    Args:
        zones: Grid zone configuration list

    Returns:
        Validated zone list

    Raises:
        ValueError: Configuration validation failed
    """
    validated = []
    seen = set()

    for idx, zone in enumerate(zones):
        if not isinstance(zone, dict):
            raise ValueError(f"Grid zone config #{idx} must be a dictionary")

        for field in ('zone_id', 'name'):
            if field not in zone:
                raise ValueError(f"Grid zone config #{idx} missing required field: {field}")

        zone_id = int(zone['zone_id'])
        if zone_id <= 0:
            raise ValueError(f"Grid zone '{zone['name']}' zone_id must be a positive integer")
        if zone_id in seen:
            raise ValueError(f"Duplicate grid zone id: {zone_id}")
        seen.add(zone_id)

        zone['zone_id'] = zone_id
        zone.setdefault('city', None)
        zone.setdefault('state', None)
        zone.setdefault('center_lat', None)
        zone.setdefault('center_lng', None)
        zone['base_price_display'] = str(zone.get('base_price_display', '0'))
        zone['demand_multiplier'] = str(zone.get('demand_multiplier', '1'))

        validated.append(zone)

    return validated
