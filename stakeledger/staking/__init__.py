"""
Staking ledger core.

Components:
- TierRegistry: lock-duration / multiplier catalog
- StakePositionLedger: per-participant positions and total_staked
- RewardAccumulator: reward-per-unit accrual and checkpoints
- StakingEngine: orchestrates the above with token custody and access control
- LedgerStore: SQLite persistence of ledger state
"""

from stakeledger.staking.access import AdminAccess
from stakeledger.staking.accumulator import RewardAccumulator
from stakeledger.staking.clock import ManualClock, SystemClock
from stakeledger.staking.engine import StakingEngine
from stakeledger.staking.models import (
    BPS_DENOMINATOR,
    DEFAULT_TIERS,
    MULTIPLIER_DENOMINATOR,
    SCALE,
    SECONDS_PER_DAY,
    GlobalAccrualState,
    LedgerState,
    ParticipantRewardState,
    StakePosition,
    Tier,
)
from stakeledger.staking.positions import StakePositionLedger
from stakeledger.staking.store import LedgerStore
from stakeledger.staking.tiers import TierRegistry
from stakeledger.staking.token import ILedgerToken, InMemoryToken, TokenAccount

__all__ = [
    "AdminAccess",
    "RewardAccumulator",
    "ManualClock",
    "SystemClock",
    "StakingEngine",
    "BPS_DENOMINATOR",
    "DEFAULT_TIERS",
    "MULTIPLIER_DENOMINATOR",
    "SCALE",
    "SECONDS_PER_DAY",
    "GlobalAccrualState",
    "LedgerState",
    "ParticipantRewardState",
    "StakePosition",
    "Tier",
    "StakePositionLedger",
    "LedgerStore",
    "TierRegistry",
    "ILedgerToken",
    "InMemoryToken",
    "TokenAccount",
]
