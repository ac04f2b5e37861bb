"""
Configuration module for the staking ledger.

Provides configuration loading from config.yaml, validated by pydantic.
"""

from stakeledger.config.loader import (
    CONFIG_ENV_VAR,
    expand_value,
    find_config_file,
    get_config,
    load_config,
    reset_config,
)
from stakeledger.config.schema import (
    ApiConfig,
    AppConfig,
    LoggingConfig,
    StakingConfig,
    TokenConfig,
    StoreConfig,
)

__all__ = [
    "CONFIG_ENV_VAR",
    "expand_value",
    "find_config_file",
    "get_config",
    "load_config",
    "reset_config",
    "ApiConfig",
    "AppConfig",
    "LoggingConfig",
    "StakingConfig",
    "TokenConfig",
    "StoreConfig",
]
