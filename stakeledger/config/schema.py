"""
Configuration validation with Pydantic.

Provides the structured models every config source is validated against.
Amounts are token base units, rates are reward units per day, penalties
are basis points.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class StakingConfig(BaseModel):
    """Staking engine policy."""
    min_stake: int = Field(ge=1, default=100)
    max_stake: int = Field(ge=1, default=1_000_000)
    reward_rate: int = Field(ge=0, default=1000)
    emergency_penalty_bps: int = Field(ge=0, le=10_000, default=5000)
    seed_default_tiers: bool = True
    custody_account: str = Field(min_length=1, default="staking-engine")
    admin: str = Field(min_length=1, default="admin")

    @model_validator(mode="after")
    def max_not_below_min(self) -> "StakingConfig":
        if self.max_stake < self.min_stake:
            raise ValueError("max_stake must be >= min_stake")
        return self


class TokenConfig(BaseModel):
    """In-process token ledger the API server runs against."""
    symbol: str = Field(min_length=1, default="STAKE")
    # Minted once, on a fresh store (or on every start without one).
    genesis_balances: Dict[str, int] = Field(default_factory=dict)

    @field_validator("genesis_balances")
    @classmethod
    def balances_not_negative(cls, v: Dict[str, int]) -> Dict[str, int]:
        negative = [account for account, amount in v.items() if amount < 0]
        if negative:
            raise ValueError(f"genesis balances must be >= 0: {negative}")
        return v


class StoreConfig(BaseModel):
    """SQLite persistence of ledger state."""
    enabled: bool = False
    db_path: str = "data/stakeledger.db"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    format: str = Field(default="json", pattern="^(json|structured)$")
    log_dir: Optional[str] = "logs"
    log_file: str = "stakeledger.log"
    console: bool = True
    max_file_size_mb: int = Field(ge=1, le=1000, default=100)
    backup_count: int = Field(ge=0, le=100, default=5)


class ApiConfig(BaseModel):
    """HTTP surface configuration."""
    host: str = "0.0.0.0"
    port: int = Field(ge=1, le=65535, default=8766)
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])


class AppConfig(BaseModel):
    """Main application configuration."""
    model_config = ConfigDict(extra="allow")

    environment: str = Field(default="development", pattern="^(development|staging|production|test)$")
    debug: bool = False
    staking: StakingConfig = Field(default_factory=StakingConfig)
    token: TokenConfig = Field(default_factory=TokenConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
