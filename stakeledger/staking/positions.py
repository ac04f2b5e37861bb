"""
Stake Position Ledger.

Per-participant, append-only position arrays. A position id is its index in
the participant's array, so ids handed out stay valid after other positions
close. Positions are never removed, only deactivated.
"""

import logging
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from stakeledger.errors import (
    AlreadyClosedError,
    NotFoundError,
    StillLockedError,
    ValidationError,
)
from stakeledger.staking.models import BPS_DENOMINATOR, GlobalAccrualState, StakePosition
from stakeledger.staking.tiers import TierRegistry

logger = logging.getLogger("stakeledger.positions")


class StakePositionLedger:
    """
    Owns every StakePosition and keeps ``total_staked`` in the shared
    GlobalAccrualState equal to the sum of active amounts.
    """

    def __init__(
        self,
        tiers: TierRegistry,
        state: GlobalAccrualState,
        min_stake: int,
        max_stake: int,
        positions: Optional[Dict[str, List[StakePosition]]] = None,
    ):
        if max_stake < min_stake:
            raise ValidationError("max_stake must be >= min_stake")
        self.tiers = tiers
        self.state = state
        self.min_stake = min_stake
        self.max_stake = max_stake
        self._positions: Dict[str, List[StakePosition]] = {
            p: list(items) for p, items in (positions or {}).items()
        }

    # =========================================================================
    # Validation (no mutation)
    # =========================================================================

    def validate_open(self, amount: int, tier_id: int) -> None:
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise ValidationError("Stake amount must be an integer", {"amount": amount})
        if amount < self.min_stake:
            raise ValidationError(
                f"Stake amount below minimum: {amount} < {self.min_stake}",
                {"amount": amount, "min_stake": self.min_stake},
            )
        if amount > self.max_stake:
            raise ValidationError(
                f"Stake amount above maximum: {amount} > {self.max_stake}",
                {"amount": amount, "max_stake": self.max_stake},
            )
        self.tiers.require_active(tier_id)

    def validate_close(self, participant: str, position_id: int, now: int, check_lock: bool = True) -> StakePosition:
        position = self.get(participant, position_id)
        if not position.active:
            raise AlreadyClosedError(
                f"Position {position_id} of {participant} is already closed",
                {"participant": participant, "position_id": position_id},
            )
        if check_lock:
            unlock_time = self.unlock_time(position)
            if now < unlock_time:
                raise StillLockedError(
                    f"Position {position_id} is locked until {unlock_time}",
                    unlock_time=unlock_time,
                    now=now,
                )
        return position

    # =========================================================================
    # Mutations
    # =========================================================================

    def open(self, participant: str, amount: int, tier_id: int, now: int) -> int:
        """Append an active position and return its participant-local id."""
        self.validate_open(amount, tier_id)

        positions = self._positions.setdefault(participant, [])
        position_id = len(positions)
        positions.append(StakePosition(
            id=position_id,
            participant=participant,
            amount=amount,
            tier_id=tier_id,
            start_time=now,
            last_claim_time=now,
        ))
        self.state.total_staked += amount
        return position_id

    def close(self, participant: str, position_id: int, now: int) -> int:
        """Close an unlocked position. Returns the amount to pay back."""
        position = self.validate_close(participant, position_id, now)
        self._deactivate(position, now)
        return position.amount

    def close_early(self, participant: str, position_id: int, now: int, penalty_bps: int) -> Tuple[int, int]:
        """
        Close a position regardless of its lock.

        Returns (amount_returned, penalty). The full amount leaves
        ``total_staked``.
        """
        if not 0 <= penalty_bps <= BPS_DENOMINATOR:
            raise ValidationError("Penalty must be within [0, 10000] bps", {"penalty_bps": penalty_bps})
        position = self.validate_close(participant, position_id, now, check_lock=False)
        self._deactivate(position, now)
        penalty = position.amount * penalty_bps // BPS_DENOMINATOR
        return position.amount - penalty, penalty

    def mark_claimed(self, participant: str, now: int) -> None:
        for position in self._positions.get(participant, []):
            if position.active:
                position.last_claim_time = now

    def _deactivate(self, position: StakePosition, now: int) -> None:
        position.active = False
        position.closed_time = now
        self.state.total_staked -= position.amount

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, participant: str, position_id: int) -> StakePosition:
        positions = self._positions.get(participant, [])
        if (
            not isinstance(position_id, int)
            or isinstance(position_id, bool)
            or position_id < 0
            or position_id >= len(positions)
        ):
            raise NotFoundError(
                f"Position {position_id} not found for {participant}",
                {"participant": participant, "position_id": position_id},
            )
        return positions[position_id]

    def positions(self, participant: str) -> List[StakePosition]:
        return list(self._positions.get(participant, []))

    def position_count(self, participant: str) -> int:
        return len(self._positions.get(participant, []))

    def participants(self) -> List[str]:
        return list(self._positions)

    def total_active_stake(self, participant: str) -> int:
        return sum(p.amount for p in self._positions.get(participant, []) if p.active)

    def unlock_time(self, position: StakePosition) -> int:
        return position.start_time + self.tiers.get(position.tier_id).duration

    def can_close(self, participant: str, position_id: int, now: int) -> bool:
        position = self.get(participant, position_id)
        return position.active and now >= self.unlock_time(position)

    def sum_active(self) -> int:
        """Recompute the active total from positions (audit check)."""
        return sum(
            p.amount
            for items in self._positions.values()
            for p in items
            if p.active
        )

    # =========================================================================
    # Transaction support
    # =========================================================================

    def checkpoint(self, participant: Optional[str] = None) -> Tuple:
        if participant is None:
            return (None, None)
        saved = self._positions.get(participant)
        return (participant, [replace(p) for p in saved] if saved is not None else None)

    def restore(self, checkpoint: Tuple) -> None:
        participant, saved = checkpoint
        if participant is None:
            return
        if saved is None:
            self._positions.pop(participant, None)
        else:
            self._positions[participant] = saved
