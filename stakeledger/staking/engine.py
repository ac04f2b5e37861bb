"""
Staking Engine - Orchestrates tiers, positions, accrual and token custody.

Every state-changing operation:
1. validates its preconditions in order (pause, authorization, amounts, ids)
2. settles accrual up to "now" and mutates the position ledger
3. stages the touched state in the store (when there is one)
4. moves tokens through the ILedgerToken collaborator
5. commits the store, then publishes its events

Token transfers are queued on the transaction while the ledger mutates and
run only once the store write is staged, so a failing write never leaves
tokens moved. The touched in-memory state is checkpointed on entry and
restored if any step before the transfers complete raises, including a
failed token transfer. A single re-entrant lock serializes operations and
event delivery; reads take the same lock so they never observe a
half-applied operation.

Usage:
    token = InMemoryToken("SUPER")
    engine = StakingEngine(staking_token=token.connect("staking-engine"), admin="owner")

    token.approve("alice", "staking-engine", 1_000)
    position_id = engine.stake("alice", 1_000, tier_id=0)
    engine.earned("alice")
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from stakeledger.config.schema import StakingConfig
from stakeledger.errors import (
    CollaboratorError,
    InsufficientRewardFundsError,
    NoRewardsError,
    PausedError,
    PersistenceError,
    StakingLedgerError,
    StateError,
    ValidationError,
)
from stakeledger.events import Event, EventBus, EventType, get_event_bus
from stakeledger.logging_config import CorrelationContext, get_correlation_id, get_logger
from stakeledger.staking.access import AdminAccess
from stakeledger.staking.accumulator import RewardAccumulator
from stakeledger.staking.clock import SystemClock
from stakeledger.staking.models import (
    GlobalAccrualState,
    LedgerState,
    StakePosition,
    Tier,
)
from stakeledger.staking.positions import StakePositionLedger
from stakeledger.staking.tiers import TierRegistry
from stakeledger.staking.token import ILedgerToken

logger = get_logger("stakeledger.engine")


@dataclass
class _Transaction:
    """Work an operation hands to ``_transaction`` for after its mutations."""
    operation: str
    events: List[Event] = field(default_factory=list)
    transfers: List[Callable[[], None]] = field(default_factory=list)
    after_commit: List[Callable[[], None]] = field(default_factory=list)
    moved: bool = False
    store_error: Optional[PersistenceError] = None


class StakingEngine:
    """Staking rewards ledger."""

    def __init__(
        self,
        staking_token: ILedgerToken,
        reward_token: Optional[ILedgerToken] = None,
        admin: str = "admin",
        min_stake: int = 100,
        max_stake: int = 1_000_000,
        reward_rate: int = 1000,
        emergency_penalty_bps: int = 5000,
        seed_default_tiers: bool = True,
        clock=None,
        event_bus: Optional[EventBus] = None,
        store=None,
    ):
        self.staking_token = staking_token
        self.reward_token = reward_token or staking_token
        self.custody = staking_token.account
        if self.reward_token.account != self.custody:
            raise ValidationError(
                "Staking and reward tokens must share the custody account",
                {"staking": self.custody, "reward": self.reward_token.account},
            )
        self.emergency_penalty_bps = emergency_penalty_bps
        self.clock = clock or SystemClock()
        self.event_bus = event_bus or get_event_bus()
        self.store = store

        self._lock = threading.RLock()
        self._penalty_reserve = 0
        self._store_stale = False

        self.access = AdminAccess(admin)
        self.tiers = TierRegistry.with_defaults() if seed_default_tiers else TierRegistry()
        self._accrual = GlobalAccrualState(reward_rate=reward_rate, last_update_time=self.clock.now())
        self.ledger = StakePositionLedger(self.tiers, self._accrual, min_stake, max_stake)
        self.accumulator = RewardAccumulator(self._accrual, self.ledger.total_active_stake)

        if store is not None:
            saved = store.load()
            if saved is not None:
                self.load_state(saved)
                logger.info("Restored ledger from store", participants=len(saved.positions))
            else:
                store.save(self.export_state(), full=True)

    @classmethod
    def from_config(
        cls,
        config: StakingConfig,
        staking_token: ILedgerToken,
        reward_token: Optional[ILedgerToken] = None,
        clock=None,
        event_bus: Optional[EventBus] = None,
        store=None,
    ) -> "StakingEngine":
        return cls(
            staking_token=staking_token,
            reward_token=reward_token,
            admin=config.admin,
            min_stake=config.min_stake,
            max_stake=config.max_stake,
            reward_rate=config.reward_rate,
            emergency_penalty_bps=config.emergency_penalty_bps,
            seed_default_tiers=config.seed_default_tiers,
            clock=clock,
            event_bus=event_bus,
            store=store,
        )

    # =========================================================================
    # Participant Operations
    # =========================================================================

    def stake(self, caller: str, amount: int, tier_id: int) -> int:
        """Lock ``amount`` into a new position. Returns the position id."""
        with self._transaction("stake", caller) as tx:
            self.access.require_not_paused()
            self.ledger.validate_open(amount, tier_id)

            now = self.clock.now()
            self.accumulator.settle(now, caller)
            position_id = self.ledger.open(caller, amount, tier_id, now)
            tx.transfers.append(partial(self._pull, self.staking_token, caller, amount, "stake"))

            tx.events.append(EventBus.build(
                EventType.STAKED,
                {"participant": caller, "amount": amount, "tier_id": tier_id, "position_id": position_id},
                participant=caller,
            ))
            tx.after_commit.append(partial(
                logger.info, f"Staked {amount} into tier {tier_id}", position_id=position_id
            ))

        return position_id

    def unstake(self, caller: str, position_id: int) -> int:
        """Close an unlocked position and return its full amount."""
        with self._transaction("unstake", caller, position_id) as tx:
            self.access.require_not_paused()
            now = self.clock.now()
            self.ledger.validate_close(caller, position_id, now)

            self.accumulator.settle(now, caller)
            amount = self.ledger.close(caller, position_id, now)
            tx.transfers.append(partial(self._push, self.staking_token, caller, amount, "unstake"))

            tx.events.append(EventBus.build(
                EventType.UNSTAKED,
                {"participant": caller, "amount": amount, "position_id": position_id},
                participant=caller,
            ))
            tx.after_commit.append(partial(logger.info, f"Unstaked {amount}"))

        return amount

    def claim_rewards(self, caller: str) -> int:
        """Pay out everything accrued to ``caller``. Returns the amount paid."""
        with self._transaction("claim_rewards", caller) as tx:
            self.access.require_not_paused()
            now = self.clock.now()

            pending = self.accumulator.settle(now, caller)
            if pending <= 0:
                raise NoRewardsError(f"No rewards to claim for {caller}", {"participant": caller})

            available = self._available_reward_funds()
            if available < pending:
                raise InsufficientRewardFundsError(
                    f"Reward funds cannot cover claim: {available} < {pending}",
                    required=pending,
                    available=available,
                )

            amount = self.accumulator.take_pending(caller)
            self.ledger.mark_claimed(caller, now)
            tx.transfers.append(partial(self._push, self.reward_token, caller, amount, "claim_rewards"))

            tx.events.append(EventBus.build(
                EventType.REWARD_CLAIMED,
                {"participant": caller, "amount": amount},
                participant=caller,
            ))
            tx.after_commit.append(partial(logger.info, f"Claimed {amount} rewards"))

        return amount

    # =========================================================================
    # Admin Operations
    # =========================================================================

    def emergency_unstake(self, caller: str, participant: str, position_id: int) -> int:
        """
        Close a position before its lock expires, keeping the penalty.

        Admin only, allowed while paused. The whole amount leaves
        ``total_staked``; the participant receives ``amount - penalty``
        and the penalty stays in custody as the penalty reserve.
        """
        with self._transaction("emergency_unstake", participant, position_id) as tx:
            self.access.require_admin(caller)
            now = self.clock.now()
            self.ledger.validate_close(participant, position_id, now, check_lock=False)

            self.accumulator.settle(now, participant)
            returned, penalty = self.ledger.close_early(
                participant, position_id, now, self.emergency_penalty_bps
            )
            self._penalty_reserve += penalty
            if returned > 0:
                tx.transfers.append(
                    partial(self._push, self.staking_token, participant, returned, "emergency_unstake")
                )

            tx.events.append(EventBus.build(
                EventType.EMERGENCY_WITHDRAW,
                {
                    "participant": participant,
                    "amount_returned": returned,
                    "position_id": position_id,
                    "penalty": penalty,
                },
                participant=participant,
            ))
            tx.after_commit.append(partial(
                logger.warning, f"Emergency unstake returned {returned}, penalty {penalty}"
            ))

        return returned

    def add_tier(self, caller: str, duration: int, multiplier: int) -> int:
        with self._transaction("add_tier") as tx:
            self.access.require_admin(caller)
            self.accumulator.settle(self.clock.now())
            tier_id = self.tiers.add_tier(duration, multiplier)
            tx.events.append(EventBus.build(
                EventType.TIER_ADDED,
                {"id": tier_id, "duration": duration, "multiplier": multiplier},
            ))
            tx.after_commit.append(partial(
                logger.info, f"Added tier {tier_id}", duration=duration, multiplier=multiplier
            ))

        return tier_id

    def set_tier_active(self, caller: str, tier_id: int, active: bool) -> Tier:
        with self._transaction("set_tier_active") as tx:
            self.access.require_admin(caller)
            self.accumulator.settle(self.clock.now())
            tier = self.tiers.set_tier_active(tier_id, active)
            tx.events.append(EventBus.build(EventType.TIER_UPDATED, {"id": tier_id, "active": tier.active}))
            tx.after_commit.append(partial(logger.info, f"Tier {tier_id} active={tier.active}"))

        return replace(tier)

    def set_reward_rate(self, caller: str, rate: int) -> int:
        """Change the daily emission. Accrual up to now uses the old rate."""
        with self._transaction("set_reward_rate") as tx:
            self.access.require_admin(caller)
            old_rate = self.accumulator.set_reward_rate(rate, self.clock.now())
            tx.events.append(EventBus.build(
                EventType.REWARD_RATE_UPDATED,
                {"new_rate": rate, "old_rate": old_rate},
            ))
            tx.after_commit.append(partial(logger.info, f"Reward rate {old_rate} -> {rate}"))

        return old_rate

    def deposit_reward_funds(self, caller: str, amount: int) -> int:
        """Pull reward tokens from the admin into custody."""
        with self._transaction("deposit_reward_funds") as tx:
            self.access.require_admin(caller)
            if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
                raise ValidationError("Deposit amount must be a positive integer", {"amount": amount})

            tx.transfers.append(partial(self._pull, self.reward_token, caller, amount, "deposit_reward_funds"))
            tx.events.append(EventBus.build(
                EventType.REWARD_FUNDS_DEPOSITED,
                {"from": caller, "amount": amount},
            ))
            tx.after_commit.append(lambda: logger.info(
                f"Deposited {amount} reward funds", available=self._available_reward_funds()
            ))

        return amount

    def sweep_penalties(self, caller: str, recipient: str) -> int:
        """Move the retained emergency penalties out of custody."""
        with self._transaction("sweep_penalties") as tx:
            self.access.require_admin(caller)
            amount = self._penalty_reserve
            if amount == 0:
                raise StateError("No penalties to sweep")

            self._penalty_reserve = 0
            tx.transfers.append(partial(self._push, self.staking_token, recipient, amount, "sweep_penalties"))
            tx.events.append(EventBus.build(
                EventType.PENALTIES_SWEPT,
                {"recipient": recipient, "amount": amount},
            ))
            tx.after_commit.append(partial(logger.info, f"Swept {amount} penalties to {recipient}"))

        return amount

    def pause(self, caller: str) -> None:
        with self._transaction("pause") as tx:
            self.access.require_admin(caller)
            if self.access.paused:
                raise PausedError("Staking is already paused")
            self.accumulator.settle(self.clock.now())
            self.access.paused = True
            tx.events.append(EventBus.build(EventType.PAUSED, {"by": caller}))
            tx.after_commit.append(partial(logger.warning, "Staking paused"))

    def unpause(self, caller: str) -> None:
        with self._transaction("unpause") as tx:
            self.access.require_admin(caller)
            if not self.access.paused:
                raise StateError("Staking is not paused")
            self.accumulator.settle(self.clock.now())
            self.access.paused = False
            tx.events.append(EventBus.build(EventType.UNPAUSED, {"by": caller}))
            tx.after_commit.append(partial(logger.info, "Staking unpaused"))

    def transfer_admin(self, caller: str, new_admin: str) -> None:
        with self._transaction("transfer_admin") as tx:
            previous = self.access.transfer(caller, new_admin)
            tx.events.append(EventBus.build(
                EventType.ADMIN_TRANSFERRED,
                {"previous": previous, "new": new_admin},
            ))
            tx.after_commit.append(partial(logger.warning, f"Admin transferred from {previous} to {new_admin}"))

    # =========================================================================
    # Queries
    # =========================================================================

    def earned(self, participant: str) -> int:
        """Rewards claimable by ``participant`` as of now."""
        with self._lock:
            return self.accumulator.earned(participant, self.clock.now())

    def can_unstake(self, participant: str, position_id: int) -> bool:
        with self._lock:
            return self.ledger.can_close(participant, position_id, self.clock.now())

    def unlock_time(self, participant: str, position_id: int) -> int:
        with self._lock:
            return self.ledger.unlock_time(self.ledger.get(participant, position_id))

    def get_position(self, participant: str, position_id: int) -> StakePosition:
        with self._lock:
            return replace(self.ledger.get(participant, position_id))

    def get_positions(self, participant: str) -> List[StakePosition]:
        with self._lock:
            return [replace(p) for p in self.ledger.positions(participant)]

    def get_stake_count(self, participant: str) -> int:
        with self._lock:
            return self.ledger.position_count(participant)

    def get_total_staked(self, participant: Optional[str] = None) -> int:
        """Active stake of one participant, or of everyone."""
        with self._lock:
            if participant is None:
                return self._accrual.total_staked
            return self.ledger.total_active_stake(participant)

    def get_tier(self, tier_id: int) -> Tier:
        with self._lock:
            return replace(self.tiers.get(tier_id))

    def list_tiers(self) -> List[Tier]:
        with self._lock:
            return [replace(t) for t in self.tiers.list_tiers()]

    def available_reward_funds(self) -> int:
        with self._lock:
            return self._available_reward_funds()

    def get_global_state(self) -> Dict[str, Any]:
        with self._lock:
            now = self.clock.now()
            state = self._accrual.to_dict()
            state.update({
                "reward_per_unit_current": self.accumulator.reward_per_unit(now),
                "min_stake": self.ledger.min_stake,
                "max_stake": self.ledger.max_stake,
                "tier_count": self.tiers.tier_count,
                "staker_count": sum(1 for p in self.ledger.participants() if self.ledger.total_active_stake(p) > 0),
                "paused": self.access.paused,
                "admin": self.access.admin,
                "penalty_reserve": self._penalty_reserve,
                "available_reward_funds": self._available_reward_funds(),
                "emergency_penalty_bps": self.emergency_penalty_bps,
                "timestamp": now,
            })
            return state

    @property
    def min_stake(self) -> int:
        return self.ledger.min_stake

    @property
    def max_stake(self) -> int:
        return self.ledger.max_stake

    @property
    def reward_rate(self) -> int:
        return self._accrual.reward_rate

    @property
    def total_staked(self) -> int:
        return self._accrual.total_staked

    @property
    def total_rewards_distributed(self) -> int:
        return self._accrual.total_rewards_distributed

    @property
    def reward_per_unit_stored(self) -> int:
        return self._accrual.reward_per_unit_stored

    @property
    def penalty_reserve(self) -> int:
        return self._penalty_reserve

    @property
    def paused(self) -> bool:
        return self.access.paused

    @property
    def admin(self) -> str:
        return self.access.admin

    # =========================================================================
    # State export / restore
    # =========================================================================

    def export_state(self, participant: Optional[str] = None) -> LedgerState:
        """
        Snapshot of the ledger. With ``participant`` only that participant's
        positions and checkpoint are included.
        """
        with self._lock:
            if participant is None:
                names = self.ledger.participants()
                rewards = self.accumulator.reward_states()
            else:
                names = [participant]
                rewards = {
                    k: v for k, v in self.accumulator.reward_states().items() if k == participant
                }
            return LedgerState(
                tiers=[replace(t) for t in self.tiers.list_tiers()],
                positions={name: [replace(p) for p in self.ledger.positions(name)] for name in names},
                rewards={k: replace(v) for k, v in rewards.items()},
                accrual=replace(self._accrual),
                admin=self.access.admin,
                paused=self.access.paused,
                penalty_reserve=self._penalty_reserve,
            )

    def load_state(self, state: LedgerState) -> None:
        """Replace the in-memory ledger with ``state``."""
        with self._lock:
            vars(self._accrual).update(vars(replace(state.accrual)))
            self.tiers.restore([replace(t) for t in state.tiers])
            self.ledger = StakePositionLedger(
                self.tiers,
                self._accrual,
                self.ledger.min_stake,
                self.ledger.max_stake,
                positions={k: [replace(p) for p in v] for k, v in state.positions.items()},
            )
            self.accumulator = RewardAccumulator(
                self._accrual,
                self.ledger.total_active_stake,
                rewards={k: replace(v) for k, v in state.rewards.items()},
            )
            self.access.admin = state.admin or self.access.admin
            self.access.paused = state.paused
            self._penalty_reserve = state.penalty_reserve

            if self.ledger.sum_active() != self._accrual.total_staked:
                raise StateError(
                    "Loaded ledger violates conservation",
                    {"total_staked": self._accrual.total_staked, "sum_active": self.ledger.sum_active()},
                )

    # =========================================================================
    # Internals
    # =========================================================================

    @contextmanager
    def _transaction(
        self,
        operation: str,
        participant: Optional[str] = None,
        position_id: Optional[int] = None,
    ):
        tx = _Transaction(operation)
        with CorrelationContext(
            correlation_id=get_correlation_id(),
            participant=participant,
            position_id=position_id,
        ) as ctx, self._lock:
            checkpoint = (
                self.tiers.checkpoint(),
                self.ledger.checkpoint(participant),
                self.accumulator.checkpoint(participant),
                self.access.admin,
                self.access.paused,
                self._penalty_reserve,
            )
            try:
                yield tx
                self._commit(tx, participant)
            except (CollaboratorError, PersistenceError) as e:
                self._restore(checkpoint)
                logger.error(f"{operation} rolled back: {e.message}", code=e.code)
                raise
            except StakingLedgerError as e:
                self._restore(checkpoint)
                logger.warning(f"{operation} rejected: {e.message}", code=e.code)
                raise
            except Exception:
                self._restore(checkpoint)
                logger.exception(f"{operation} failed, rolled back")
                raise

            for log in tx.after_commit:
                log()
            # Delivered under the lock so subscribers see events in commit order.
            for event in tx.events:
                event.correlation_id = ctx.correlation_id
                self.event_bus.publish(event)

        if tx.store_error is not None:
            raise tx.store_error

    def _commit(self, tx: _Transaction, participant: Optional[str]) -> None:
        """
        Stage the touched state, run the queued transfers, then commit.

        A store failure before any token moved rolls the operation back.
        Once tokens have moved the in-memory ledger keeps the operation, the
        store is marked stale for a full rewrite, and the caller gets a
        PersistenceError with ``committed=True`` after events are published.
        """
        if self.store is None:
            self._run_transfers(tx)
            return

        full = self._store_stale
        state = self.export_state(None if full else participant)
        try:
            with self.store.staged(state, full=full):
                self._run_transfers(tx)
        except CollaboratorError:
            raise
        except Exception as e:
            if not tx.moved:
                raise PersistenceError(f"Ledger store write failed: {e}", tx.operation) from e
            self._store_stale = True
            tx.store_error = PersistenceError(
                f"Tokens moved but the ledger store did not commit: {e}",
                tx.operation,
                committed=True,
            )
            logger.critical(f"{tx.operation} committed in memory only: {e}", exc_info=True)
            return
        self._store_stale = False

    def _run_transfers(self, tx: _Transaction) -> None:
        for transfer in tx.transfers:
            transfer()
        tx.moved = bool(tx.transfers)

    def _restore(self, checkpoint) -> None:
        tiers, positions, accrual, admin, paused, penalty_reserve = checkpoint
        self.tiers.restore(tiers)
        self.ledger.restore(positions)
        self.accumulator.restore(accrual)
        self.access.admin = admin
        self.access.paused = paused
        self._penalty_reserve = penalty_reserve

    def _available_reward_funds(self) -> int:
        balance = self.reward_token.balance_of(self.custody)
        if self._shares_token():
            # Principal and retained penalties are not reward funds.
            balance -= self._accrual.total_staked + self._penalty_reserve
        return max(0, balance)

    def _shares_token(self) -> bool:
        if self.reward_token is self.staking_token:
            return True
        same_ledger = getattr(self.staking_token, "same_ledger", None)
        return bool(same_ledger and same_ledger(self.reward_token))

    def _pull(self, token: ILedgerToken, sender: str, amount: int, operation: str) -> None:
        try:
            ok = token.transfer_from(sender, self.custody, amount)
        except StakingLedgerError:
            raise
        except Exception as e:
            raise CollaboratorError(f"transfer_from {sender} failed: {e}", operation) from e
        if not ok:
            raise CollaboratorError(
                f"transfer_from {sender} of {amount} was rejected (allowance or balance)",
                operation,
            )

    def _push(self, token: ILedgerToken, to: str, amount: int, operation: str) -> None:
        try:
            ok = token.transfer(to, amount)
        except StakingLedgerError:
            raise
        except Exception as e:
            raise CollaboratorError(f"transfer to {to} failed: {e}", operation) from e
        if not ok:
            raise CollaboratorError(f"transfer of {amount} to {to} was rejected", operation)
