"""
costscan - AWS hourly cost discovery engine.
"""
# Import constants module for easy access
from . import constants
from .accounts import SessionProvider, discover_org_accounts, filter_accounts, select_regions
from .collectors import COLLECTORS
from .config import ConfigError, Settings, generate_sample_config, load_config
from .constants import HOURS_PER_MONTH, RESOURCE_FAMILIES
from .discovery import Discovery, build_summaries
from .models import (
    Account,
    AccountSummary,
    AppliedFilters,
    CollectionFailure,
    CostResponse,
    PriceKey,
    RegionSummary,
)
from .pricing import (
    NoPriceFoundError,
    PriceCache,
    PriceListSource,
    PricingError,
    PricingService,
    PricingSourceError,
    UnknownRegionError,
)
from .utils import get_timestamp, setup_logging, write_csv, write_json

__version__ = "0.1.0"

__all__ = [
    # Constants
    'constants',
    'HOURS_PER_MONTH',
    'RESOURCE_FAMILIES',
    # Models
    'Account',
    'AccountSummary',
    'AppliedFilters',
    'CollectionFailure',
    'CostResponse',
    'PriceKey',
    'RegionSummary',
    # Discovery
    'COLLECTORS',
    'Discovery',
    'SessionProvider',
    'build_summaries',
    'discover_org_accounts',
    'filter_accounts',
    'select_regions',
    # Pricing
    'PriceCache',
    'PriceListSource',
    'PricingService',
    'PricingError',
    'UnknownRegionError',
    'NoPriceFoundError',
    'PricingSourceError',
    # Config
    'ConfigError',
    'Settings',
    'generate_sample_config',
    'load_config',
    # Utils
    'get_timestamp',
    'setup_logging',
    'write_json',
    'write_csv',
]
