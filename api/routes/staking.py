"""
Staking API Routes.

FastAPI endpoints over the StakingEngine:
- Tier catalog
- Positions and unlock status per participant
- Pool totals and earned rewards
- Stake / unstake / claim
- Admin operations (tiers, reward rate, pause, emergency unstake, funds)

Ledger errors propagate to the application's StakingLedgerError handler,
which renders them with their own code and HTTP status. Handlers are plain
functions: the engine and its store block, so FastAPI runs them in its
threadpool.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.dependencies import get_bus, get_staking_engine
from stakeledger.events import EventBus
from stakeledger.staking import StakingEngine, StakePosition, Tier

router = APIRouter(prefix="/api/staking", tags=["Staking"])


# =============================================================================
# Request/Response Models
# =============================================================================


class StakeRequest(BaseModel):
    """Request to open a stake position."""
    participant: str = Field(..., min_length=1, description="Staking participant")
    amount: int = Field(..., description="Amount to stake in base units")
    tier_id: int = Field(..., ge=0, description="Tier to lock into")


class UnstakeRequest(BaseModel):
    """Request to close an unlocked position."""
    participant: str = Field(..., min_length=1)
    position_id: int = Field(..., ge=0)


class ClaimRequest(BaseModel):
    """Request to claim accrued rewards."""
    participant: str = Field(..., min_length=1)


class AdminRequest(BaseModel):
    """Admin call with no arguments."""
    caller: str = Field(..., min_length=1, description="Admin principal")


class AddTierRequest(AdminRequest):
    duration: int = Field(..., description="Lock duration in seconds")
    multiplier: int = Field(..., description="Multiplier over 10000 (10000 = 1.0x)")


class TierActiveRequest(AdminRequest):
    active: bool


class RewardRateRequest(AdminRequest):
    reward_rate: int = Field(..., description="Reward units per day across all stake")


class EmergencyUnstakeRequest(AdminRequest):
    participant: str = Field(..., min_length=1)
    position_id: int = Field(..., ge=0)


class DepositRequest(AdminRequest):
    amount: int


class SweepRequest(AdminRequest):
    recipient: str = Field(..., min_length=1)


class TransferAdminRequest(AdminRequest):
    new_admin: str = Field(..., min_length=1)


class TierResponse(BaseModel):
    """A lock tier."""
    id: int
    duration: int
    duration_days: float
    multiplier: int
    multiplier_ratio: float
    active: bool


class PositionResponse(BaseModel):
    """A stake position with its unlock status."""
    id: int
    participant: str
    amount: int
    tier_id: int
    start_time: int
    last_claim_time: int
    active: bool
    closed_time: Optional[int] = None
    unlock_time: int
    can_unstake: bool


class ParticipantPositionsResponse(BaseModel):
    participant: str
    stake_count: int
    total_staked: int
    earned: int
    positions: List[PositionResponse] = Field(default_factory=list)


class PoolStatsResponse(BaseModel):
    """Pool totals."""
    total_staked: int = Field(default=0, description="Sum of active positions")
    staker_count: int = Field(default=0, description="Participants with an active position")
    reward_rate: int = Field(default=0, description="Reward units per day")
    reward_per_unit_stored: int = 0
    reward_per_unit_current: int = 0
    last_update_time: int = 0
    total_rewards_distributed: int = 0
    available_reward_funds: int = 0
    penalty_reserve: int = 0
    min_stake: int = 0
    max_stake: int = 0
    tier_count: int = 0
    emergency_penalty_bps: int = 0
    paused: bool = False
    admin: str = ""
    timestamp: int = 0


class EarnedResponse(BaseModel):
    participant: str
    earned: int
    timestamp: int


class OperationResponse(BaseModel):
    """Result of a committed write operation."""
    success: bool = True
    operation: str
    amount: Optional[int] = None
    position_id: Optional[int] = None
    tier_id: Optional[int] = None
    message: str = ""


class EventResponse(BaseModel):
    id: str
    type: str
    data: Dict[str, Any]
    participant: Optional[str] = None
    correlation_id: Optional[str] = None
    timestamp: str


def _tier_response(tier: Tier) -> TierResponse:
    return TierResponse(**tier.to_dict())


def _position_response(engine: StakingEngine, position: StakePosition) -> PositionResponse:
    return PositionResponse(
        **position.to_dict(),
        unlock_time=engine.unlock_time(position.participant, position.id),
        can_unstake=engine.can_unstake(position.participant, position.id),
    )


# =============================================================================
# Read Endpoints
# =============================================================================


@router.get("/tiers", response_model=List[TierResponse])
def list_tiers(engine: StakingEngine = Depends(get_staking_engine)):
    """List every tier, active or not."""
    return [_tier_response(t) for t in engine.list_tiers()]


@router.get("/tiers/{tier_id}", response_model=TierResponse)
def get_tier(tier_id: int, engine: StakingEngine = Depends(get_staking_engine)):
    return _tier_response(engine.get_tier(tier_id))


@router.get("/positions/{participant}", response_model=ParticipantPositionsResponse)
def get_positions(participant: str, engine: StakingEngine = Depends(get_staking_engine)):
    """All positions of a participant, open and closed."""
    return ParticipantPositionsResponse(
        participant=participant,
        stake_count=engine.get_stake_count(participant),
        total_staked=engine.get_total_staked(participant),
        earned=engine.earned(participant),
        positions=[_position_response(engine, p) for p in engine.get_positions(participant)],
    )


@router.get("/positions/{participant}/{position_id}", response_model=PositionResponse)
def get_position(
    participant: str,
    position_id: int,
    engine: StakingEngine = Depends(get_staking_engine),
):
    return _position_response(engine, engine.get_position(participant, position_id))


@router.get("/pool", response_model=PoolStatsResponse)
def get_pool_stats(engine: StakingEngine = Depends(get_staking_engine)):
    """Pool totals and accrual state as of now."""
    return PoolStatsResponse(**engine.get_global_state())


@router.get("/earned/{participant}", response_model=EarnedResponse)
def get_earned(participant: str, engine: StakingEngine = Depends(get_staking_engine)):
    return EarnedResponse(
        participant=participant,
        earned=engine.earned(participant),
        timestamp=engine.clock.now(),
    )


@router.get("/events", response_model=List[EventResponse])
def get_events(
    participant: Optional[str] = None,
    event_type: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    bus: EventBus = Depends(get_bus),
):
    """Recent ledger events, newest last."""
    events = bus.get_history(
        event_types=[event_type] if event_type else None,
        participant=participant,
        limit=limit,
    )
    return [EventResponse(**e.to_dict()) for e in events]


@router.get("/events/stats")
def get_event_stats(bus: EventBus = Depends(get_bus)) -> Dict[str, Any]:
    """Subscribed handlers and event counts over the retained history."""
    return bus.get_stats()


# =============================================================================
# Participant Endpoints
# =============================================================================


@router.post("/stake", response_model=OperationResponse)
def stake(request: StakeRequest, engine: StakingEngine = Depends(get_staking_engine)):
    """Open a position. The participant must have approved the custody account."""
    position_id = engine.stake(request.participant, request.amount, request.tier_id)
    return OperationResponse(
        operation="stake",
        amount=request.amount,
        position_id=position_id,
        tier_id=request.tier_id,
        message=f"Staked {request.amount} in tier {request.tier_id}",
    )


@router.post("/unstake", response_model=OperationResponse)
def unstake(request: UnstakeRequest, engine: StakingEngine = Depends(get_staking_engine)):
    amount = engine.unstake(request.participant, request.position_id)
    return OperationResponse(
        operation="unstake",
        amount=amount,
        position_id=request.position_id,
        message=f"Returned {amount}",
    )


@router.post("/rewards/claim", response_model=OperationResponse)
def claim_rewards(request: ClaimRequest, engine: StakingEngine = Depends(get_staking_engine)):
    amount = engine.claim_rewards(request.participant)
    return OperationResponse(operation="claim_rewards", amount=amount, message=f"Claimed {amount}")


# =============================================================================
# Admin Endpoints
# =============================================================================


@router.post("/admin/tiers", response_model=TierResponse)
def add_tier(request: AddTierRequest, engine: StakingEngine = Depends(get_staking_engine)):
    tier_id = engine.add_tier(request.caller, request.duration, request.multiplier)
    return _tier_response(engine.get_tier(tier_id))


@router.post("/admin/tiers/{tier_id}/active", response_model=TierResponse)
def set_tier_active(
    tier_id: int,
    request: TierActiveRequest,
    engine: StakingEngine = Depends(get_staking_engine),
):
    return _tier_response(engine.set_tier_active(request.caller, tier_id, request.active))


@router.post("/admin/reward-rate", response_model=OperationResponse)
def set_reward_rate(request: RewardRateRequest, engine: StakingEngine = Depends(get_staking_engine)):
    old_rate = engine.set_reward_rate(request.caller, request.reward_rate)
    return OperationResponse(
        operation="set_reward_rate",
        message=f"Reward rate {old_rate} -> {request.reward_rate}",
    )


@router.post("/admin/emergency-unstake", response_model=OperationResponse)
def emergency_unstake(
    request: EmergencyUnstakeRequest,
    engine: StakingEngine = Depends(get_staking_engine),
):
    returned = engine.emergency_unstake(request.caller, request.participant, request.position_id)
    return OperationResponse(
        operation="emergency_unstake",
        amount=returned,
        position_id=request.position_id,
        message=f"Returned {returned} to {request.participant}",
    )


@router.post("/admin/deposit", response_model=OperationResponse)
def deposit_reward_funds(request: DepositRequest, engine: StakingEngine = Depends(get_staking_engine)):
    amount = engine.deposit_reward_funds(request.caller, request.amount)
    return OperationResponse(operation="deposit_reward_funds", amount=amount)


@router.post("/admin/sweep-penalties", response_model=OperationResponse)
def sweep_penalties(request: SweepRequest, engine: StakingEngine = Depends(get_staking_engine)):
    amount = engine.sweep_penalties(request.caller, request.recipient)
    return OperationResponse(
        operation="sweep_penalties",
        amount=amount,
        message=f"Swept {amount} to {request.recipient}",
    )


@router.post("/admin/pause", response_model=OperationResponse)
def pause(request: AdminRequest, engine: StakingEngine = Depends(get_staking_engine)):
    engine.pause(request.caller)
    return OperationResponse(operation="pause", message="Staking paused")


@router.post("/admin/unpause", response_model=OperationResponse)
def unpause(request: AdminRequest, engine: StakingEngine = Depends(get_staking_engine)):
    engine.unpause(request.caller)
    return OperationResponse(operation="unpause", message="Staking unpaused")


@router.post("/admin/transfer", response_model=OperationResponse)
def transfer_admin(request: TransferAdminRequest, engine: StakingEngine = Depends(get_staking_engine)):
    engine.transfer_admin(request.caller, request.new_admin)
    return OperationResponse(operation="transfer_admin", message=f"Admin is now {request.new_admin}")
