"""
Ledger Store - SQLite persistence of staking ledger state.

Tables:
- ledger_meta: global accrual values, admin, pause flag, penalty reserve
- tiers: tier catalog
- positions: every position ever opened, keyed by (participant, position_id)
- reward_checkpoints: per-participant accumulator checkpoint
- token_balances / token_allowances: an attached in-process token, if any

Integers are stored as TEXT: fixed-point accumulator values exceed SQLite's
64-bit INTEGER range.

The engine writes through ``staged``: the ledger rows are written and the
transaction stays open while the engine moves tokens, so nothing commits
unless every transfer succeeded.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Optional

from stakeledger.staking.models import (
    GlobalAccrualState,
    LedgerState,
    ParticipantRewardState,
    StakePosition,
    Tier,
)

logger = logging.getLogger("stakeledger.store")

SCHEMA = """
CREATE TABLE IF NOT EXISTS ledger_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tiers (
    id INTEGER PRIMARY KEY,
    duration TEXT NOT NULL,
    multiplier TEXT NOT NULL,
    active INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS positions (
    participant TEXT NOT NULL,
    position_id INTEGER NOT NULL,
    amount TEXT NOT NULL,
    tier_id INTEGER NOT NULL,
    start_time TEXT NOT NULL,
    last_claim_time TEXT NOT NULL,
    active INTEGER NOT NULL,
    closed_time TEXT,
    PRIMARY KEY (participant, position_id),
    FOREIGN KEY (tier_id) REFERENCES tiers(id)
);

CREATE INDEX IF NOT EXISTS idx_positions_active ON positions(active);

CREATE TABLE IF NOT EXISTS reward_checkpoints (
    participant TEXT PRIMARY KEY,
    reward_per_unit_paid TEXT NOT NULL,
    pending_reward TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS token_balances (
    account TEXT PRIMARY KEY,
    amount TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS token_allowances (
    owner TEXT NOT NULL,
    spender TEXT NOT NULL,
    amount TEXT NOT NULL,
    PRIMARY KEY (owner, spender)
);
"""

_ACCRUAL_KEYS = (
    "total_staked",
    "reward_rate",
    "reward_per_unit_stored",
    "last_update_time",
    "total_rewards_distributed",
)


class LedgerStore:
    """
    Persists LedgerState snapshots.

    Usage:
        store = LedgerStore("data/stakeledger.db")
        engine = StakingEngine(staking_token=..., store=store)  # loads or initializes
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # A ":memory:" database only lives as long as its connection.
        self._memory_conn = sqlite3.connect(":memory:", check_same_thread=False) if db_path == ":memory:" else None
        self._lock = threading.RLock()
        self._token = None
        self._init_db()
        logger.info(f"Ledger store initialized: {db_path}")

    @contextmanager
    def _get_db(self):
        conn = self._memory_conn or sqlite3.connect(self.db_path)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            if conn is not self._memory_conn:
                conn.close()

    def _init_db(self) -> None:
        with self._get_db() as conn:
            conn.executescript(SCHEMA)

    def save(self, state: LedgerState, full: bool = False) -> None:
        """
        Upsert the rows present in ``state`` in one transaction.

        With ``full`` the tables are cleared first, so ``state`` becomes the
        complete stored ledger.
        """
        with self.staged(state, full=full):
            pass

    @contextmanager
    def staged(self, state: LedgerState, full: bool = False):
        """
        Write ``state`` and keep the transaction open for the ``with`` block.

        On a clean exit the attached token is written too and everything
        commits together; an exception inside the block rolls the write back.
        """
        with self._lock, self._get_db() as conn:
            self._write_state(conn, state, full)
            yield
            self._write_token(conn)

        logger.debug(
            f"Saved ledger state: {len(state.tiers)} tiers, {len(state.positions)} participants"
        )

    def attach_token(self, token) -> bool:
        """
        Persist ``token`` (an InMemoryToken) with every ledger commit.

        Saved balances, if any, are loaded into the token. Returns True when
        that happened, False when the store had no token rows yet.
        """
        with self._lock:
            self._token = token
            with self._get_db() as conn:
                balances = {
                    row[0]: int(row[1])
                    for row in conn.execute("SELECT account, amount FROM token_balances")
                }
                allowances = {
                    (row[0], row[1]): int(row[2])
                    for row in conn.execute("SELECT owner, spender, amount FROM token_allowances")
                }
        if not balances and not allowances:
            return False
        token.restore(balances, allowances)
        logger.info(f"Loaded {len(balances)} token balances from store")
        return True

    def save_token(self) -> None:
        """Write the attached token outside a ledger commit (mint, approve)."""
        with self._lock, self._get_db() as conn:
            self._write_token(conn)

    def _write_token(self, conn) -> None:
        if self._token is None:
            return
        balances, allowances = self._token.snapshot()
        conn.execute("DELETE FROM token_balances")
        conn.execute("DELETE FROM token_allowances")
        conn.executemany(
            "INSERT INTO token_balances (account, amount) VALUES (?, ?)",
            [(account, str(amount)) for account, amount in balances.items()],
        )
        conn.executemany(
            "INSERT INTO token_allowances (owner, spender, amount) VALUES (?, ?, ?)",
            [(owner, spender, str(amount)) for (owner, spender), amount in allowances.items()],
        )

    def _write_state(self, conn, state: LedgerState, full: bool) -> None:
        if full:
            for table in ("ledger_meta", "tiers", "positions", "reward_checkpoints"):
                conn.execute(f"DELETE FROM {table}")

        meta = {key: str(getattr(state.accrual, key)) for key in _ACCRUAL_KEYS}
        meta.update({
            "admin": state.admin,
            "paused": "1" if state.paused else "0",
            "penalty_reserve": str(state.penalty_reserve),
        })
        conn.executemany(
            "INSERT OR REPLACE INTO ledger_meta (key, value) VALUES (?, ?)",
            list(meta.items()),
        )

        conn.executemany(
            "INSERT OR REPLACE INTO tiers (id, duration, multiplier, active) VALUES (?, ?, ?, ?)",
            [(t.id, str(t.duration), str(t.multiplier), int(t.active)) for t in state.tiers],
        )

        conn.executemany(
            """
            INSERT OR REPLACE INTO positions
            (participant, position_id, amount, tier_id, start_time, last_claim_time, active, closed_time)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    p.participant,
                    p.id,
                    str(p.amount),
                    p.tier_id,
                    str(p.start_time),
                    str(p.last_claim_time),
                    int(p.active),
                    str(p.closed_time) if p.closed_time is not None else None,
                )
                for items in state.positions.values()
                for p in items
            ],
        )

        conn.executemany(
            """
            INSERT OR REPLACE INTO reward_checkpoints
            (participant, reward_per_unit_paid, pending_reward)
            VALUES (?, ?, ?)
            """,
            [
                (name, str(r.reward_per_unit_paid), str(r.pending_reward))
                for name, r in state.rewards.items()
            ],
        )

    def load(self) -> Optional[LedgerState]:
        """Load the stored ledger, or None if nothing was ever saved."""
        with self._lock, self._get_db() as conn:
            meta: Dict[str, str] = dict(conn.execute("SELECT key, value FROM ledger_meta").fetchall())
            if not meta:
                return None

            tiers = [
                Tier(id=row[0], duration=int(row[1]), multiplier=int(row[2]), active=bool(row[3]))
                for row in conn.execute("SELECT id, duration, multiplier, active FROM tiers ORDER BY id")
            ]

            positions: Dict[str, list] = {}
            for row in conn.execute(
                """
                SELECT participant, position_id, amount, tier_id, start_time, last_claim_time, active, closed_time
                FROM positions ORDER BY participant, position_id
                """
            ):
                positions.setdefault(row[0], []).append(StakePosition(
                    id=row[1],
                    participant=row[0],
                    amount=int(row[2]),
                    tier_id=row[3],
                    start_time=int(row[4]),
                    last_claim_time=int(row[5]),
                    active=bool(row[6]),
                    closed_time=int(row[7]) if row[7] is not None else None,
                ))

            rewards = {
                row[0]: ParticipantRewardState(
                    reward_per_unit_paid=int(row[1]),
                    pending_reward=int(row[2]),
                )
                for row in conn.execute(
                    "SELECT participant, reward_per_unit_paid, pending_reward FROM reward_checkpoints"
                )
            }

        accrual = GlobalAccrualState(**{key: int(meta[key]) for key in _ACCRUAL_KEYS})
        return LedgerState(
            tiers=tiers,
            positions=positions,
            rewards=rewards,
            accrual=accrual,
            admin=meta.get("admin", ""),
            paused=meta.get("paused") == "1",
            penalty_reserve=int(meta.get("penalty_reserve", "0")),
        )

    def close(self) -> None:
        if self._memory_conn is not None:
            self._memory_conn.close()
            self._memory_conn = None
