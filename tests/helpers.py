"""Shared constants and test doubles."""

import sqlite3

from stakeledger.staking import LedgerStore, TokenAccount

CUSTODY = "staking-engine"
ADMIN = "owner"
START = 1_700_000_000


class FlakyAccount(TokenAccount):
    """Custody handle whose outgoing transfers can be made to fail."""

    def __init__(self, token, account):
        super().__init__(token, account)
        self.fail_transfer = False
        self.raise_error = False

    def transfer(self, to, amount):
        if self.raise_error:
            raise RuntimeError("ledger unavailable")
        if self.fail_transfer:
            return False
        return super().transfer(to, amount)


class FailingStore(LedgerStore):
    """
    Store whose writes can fail.

    ``fail_write`` fails while staging the ledger rows, before the engine
    moves any token; ``fail_commit`` fails after the transfers ran.
    """

    def __init__(self, db_path=":memory:"):
        super().__init__(db_path)
        self.fail_write = False
        self.fail_commit = False

    def _write_state(self, conn, state, full):
        if self.fail_write:
            raise sqlite3.OperationalError("disk I/O error")
        super()._write_state(conn, state, full)

    def _write_token(self, conn):
        if self.fail_commit:
            raise sqlite3.OperationalError("database is locked")
        super()._write_token(conn)
