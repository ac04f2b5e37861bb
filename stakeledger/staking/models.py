"""
Staking Ledger Data Models.

Integer-only accounting: amounts are token base units, timestamps are Unix
seconds, accumulator values are fixed point scaled by SCALE.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# =============================================================================
# Constants
# =============================================================================

SCALE = 10**18                  # Fixed-point scaling of reward-per-unit values
SECONDS_PER_DAY = 86_400
MULTIPLIER_DENOMINATOR = 10_000  # 10000 = 1.0x
BPS_DENOMINATOR = 10_000

# (lock days, multiplier) seeded into a fresh registry
DEFAULT_TIERS = [
    (30, 10_000),
    (90, 15_000),
    (180, 20_000),
    (365, 30_000),
]


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class Tier:
    """A lock-duration / multiplier policy."""
    id: int
    duration: int  # seconds
    multiplier: int  # over MULTIPLIER_DENOMINATOR
    active: bool = True

    @property
    def duration_days(self) -> float:
        return self.duration / SECONDS_PER_DAY

    @property
    def multiplier_ratio(self) -> float:
        return self.multiplier / MULTIPLIER_DENOMINATOR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "duration": self.duration,
            "duration_days": self.duration_days,
            "multiplier": self.multiplier,
            "multiplier_ratio": self.multiplier_ratio,
            "active": self.active,
        }


@dataclass
class StakePosition:
    """A single stake deposit."""
    id: int
    participant: str
    amount: int
    tier_id: int
    start_time: int
    last_claim_time: int
    active: bool = True
    closed_time: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "participant": self.participant,
            "amount": self.amount,
            "tier_id": self.tier_id,
            "start_time": self.start_time,
            "last_claim_time": self.last_claim_time,
            "active": self.active,
            "closed_time": self.closed_time,
        }


@dataclass
class GlobalAccrualState:
    """Single shared accrual record."""
    total_staked: int = 0
    reward_rate: int = 0  # reward units per day across all stake
    reward_per_unit_stored: int = 0  # scaled by SCALE
    last_update_time: int = 0
    total_rewards_distributed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_staked": self.total_staked,
            "reward_rate": self.reward_rate,
            "reward_per_unit_stored": self.reward_per_unit_stored,
            "last_update_time": self.last_update_time,
            "total_rewards_distributed": self.total_rewards_distributed,
        }


@dataclass
class ParticipantRewardState:
    """Checkpoint of the accumulator last seen by a participant."""
    reward_per_unit_paid: int = 0
    pending_reward: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reward_per_unit_paid": self.reward_per_unit_paid,
            "pending_reward": self.pending_reward,
        }


@dataclass
class LedgerState:
    """Full persisted ledger image, used to restore an engine."""
    tiers: list = field(default_factory=list)
    positions: Dict[str, list] = field(default_factory=dict)
    rewards: Dict[str, ParticipantRewardState] = field(default_factory=dict)
    accrual: GlobalAccrualState = field(default_factory=GlobalAccrualState)
    admin: str = ""
    paused: bool = False
    penalty_reserve: int = 0
