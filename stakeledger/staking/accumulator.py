"""
Reward Accumulator.

Global reward-per-unit accumulator with per-participant checkpoints, the
standard O(1) distribution scheme:

    reward_per_unit(now) = stored + elapsed * rate * SCALE // (total_staked * SECONDS_PER_DAY)
    earned(p)            = stake(p) * (reward_per_unit - paid(p)) // SCALE + pending(p)

``settle`` must run before anything changes ``total_staked`` or a
participant's stake, so that every interval is accrued at the stake that was
actually in place during it.

Accrual is flat per staked unit. Tier multipliers do not enter the formula.
"""

import logging
from dataclasses import replace
from typing import Callable, Dict, Optional, Tuple

from stakeledger.errors import ValidationError
from stakeledger.staking.models import (
    SCALE,
    SECONDS_PER_DAY,
    GlobalAccrualState,
    ParticipantRewardState,
)

logger = logging.getLogger("stakeledger.accumulator")


class RewardAccumulator:
    """Owns GlobalAccrualState and every ParticipantRewardState."""

    def __init__(
        self,
        state: GlobalAccrualState,
        stake_of: Callable[[str], int],
        rewards: Optional[Dict[str, ParticipantRewardState]] = None,
    ):
        self.state = state
        self._stake_of = stake_of
        self._rewards: Dict[str, ParticipantRewardState] = dict(rewards or {})

    def reward_per_unit(self, now: int) -> int:
        """Accumulator value as of ``now``, without storing it."""
        state = self.state
        if state.total_staked == 0:
            return state.reward_per_unit_stored

        elapsed = max(0, now - state.last_update_time)
        return state.reward_per_unit_stored + (
            elapsed * state.reward_rate * SCALE // (state.total_staked * SECONDS_PER_DAY)
        )

    def settle(self, now: int, participant: Optional[str] = None) -> int:
        """
        Roll the global accumulator forward to ``now`` and, if given, move the
        participant's accrual since their checkpoint into ``pending_reward``.

        Returns the participant's pending reward (0 when no participant).
        """
        state = self.state
        state.reward_per_unit_stored = self.reward_per_unit(now)
        state.last_update_time = max(state.last_update_time, now)

        if participant is None:
            return 0

        reward = self.reward_state(participant)
        reward.pending_reward = self._accrued(participant, reward, state.reward_per_unit_stored)
        reward.reward_per_unit_paid = state.reward_per_unit_stored
        return reward.pending_reward

    def earned(self, participant: str, now: int) -> int:
        """Read-only projection of what ``settle`` would leave pending."""
        reward = self._rewards.get(participant)
        if reward is None:
            return 0
        return self._accrued(participant, reward, self.reward_per_unit(now))

    def pending(self, participant: str) -> int:
        reward = self._rewards.get(participant)
        return reward.pending_reward if reward else 0

    def take_pending(self, participant: str) -> int:
        """Zero the participant's pending reward and book it as distributed."""
        reward = self.reward_state(participant)
        amount = reward.pending_reward
        reward.pending_reward = 0
        self.state.total_rewards_distributed += amount
        return amount

    def set_reward_rate(self, rate: int, now: int) -> int:
        """Settle globally at the old rate, then switch. Returns the old rate."""
        if not isinstance(rate, int) or isinstance(rate, bool) or rate < 0:
            raise ValidationError("Reward rate must be a non-negative integer", {"reward_rate": rate})
        self.settle(now)
        old_rate = self.state.reward_rate
        self.state.reward_rate = rate
        return old_rate

    def reward_state(self, participant: str) -> ParticipantRewardState:
        """Get or create the participant's checkpoint."""
        reward = self._rewards.get(participant)
        if reward is None:
            # A participant with no checkpoint has no stake, so starting at the
            # current accumulator value loses nothing.
            reward = ParticipantRewardState(reward_per_unit_paid=self.state.reward_per_unit_stored)
            self._rewards[participant] = reward
        return reward

    def reward_states(self) -> Dict[str, ParticipantRewardState]:
        return dict(self._rewards)

    def _accrued(self, participant: str, reward: ParticipantRewardState, per_unit: int) -> int:
        stake = self._stake_of(participant)
        return stake * (per_unit - reward.reward_per_unit_paid) // SCALE + reward.pending_reward

    def checkpoint(self, participant: Optional[str] = None) -> Tuple:
        saved = self._rewards.get(participant) if participant is not None else None
        return (
            replace(self.state),
            participant,
            replace(saved) if saved is not None else None,
        )

    def restore(self, checkpoint: Tuple) -> None:
        state, participant, saved = checkpoint
        # Mutate in place: the position ledger shares this object.
        vars(self.state).update(vars(state))
        if participant is None:
            return
        if saved is None:
            self._rewards.pop(participant, None)
        else:
            self._rewards[participant] = saved
