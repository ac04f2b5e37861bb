#!/usr/bin/env python3
"""
Stake Ledger walkthrough on a simulated clock.

Runs the canonical lifecycle: fund the pool, two participants stake,
time passes, rewards are claimed, one position unlocks and one is closed
early by the admin.

Usage:
    python scripts/staking_demo.py [--days 31] [--json-logs]
"""

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from stakeledger.events import get_event_bus
from stakeledger.logging_config import setup_logging
from stakeledger.staking import InMemoryToken, ManualClock, StakingEngine

logger = logging.getLogger("stakeledger.demo")

CUSTODY = "staking-engine"
ADMIN = "owner"


def main() -> int:
    parser = argparse.ArgumentParser(description="Stake Ledger walkthrough")
    parser.add_argument("--days", type=int, default=31, help="Days to advance before unstaking")
    parser.add_argument("--json-logs", action="store_true", help="Write JSON logs to ./logs")
    args = parser.parse_args()

    setup_logging(log_dir="logs" if args.json_logs else None, level="INFO")

    token = InMemoryToken("STAKE")
    for account, amount in ((ADMIN, 1_000_000), ("alice", 10_000), ("bob", 10_000)):
        token.mint(account, amount)
        token.approve(account, CUSTODY, amount)

    clock = ManualClock()
    engine = StakingEngine(staking_token=token.connect(CUSTODY), admin=ADMIN, clock=clock)

    bus = get_event_bus()
    bus.add_handler(lambda e: logger.info(f"event {e.type} {e.data}"), "*", name="demo_audit")

    engine.deposit_reward_funds(ADMIN, 100_000)
    engine.stake("alice", 1000, tier_id=0)
    engine.stake("bob", 1000, tier_id=3)

    clock.advance(days=1)
    print(f"After 1 day: alice earned {engine.earned('alice')}, bob earned {engine.earned('bob')}")

    clock.advance(days=args.days - 1)
    claimed = engine.claim_rewards("alice")
    returned = engine.unstake("alice", 0) if engine.can_unstake("alice", 0) else 0
    early = engine.emergency_unstake(ADMIN, "bob", 0)
    print(f"Alice claimed {claimed} and unstaked {returned}; bob got {early} back early")

    state = engine.get_global_state()
    print(
        f"Pool: staked={state['total_staked']} distributed={state['total_rewards_distributed']} "
        f"penalties={state['penalty_reserve']} funds={state['available_reward_funds']}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
