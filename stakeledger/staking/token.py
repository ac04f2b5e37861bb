"""
Ledger Token collaborator.

The staking engine moves value only through ILedgerToken, seen from its own
custody account:

    balance_of(account)                 -> int
    transfer(to, amount)                -> bool   (custody -> to)
    transfer_from(sender, to, amount)   -> bool   (needs allowance sender -> custody)

A False result is a failed transfer. InMemoryToken is a complete fungible
token used by tests, the demo script and single-process deployments;
``token.connect(account)`` returns the ILedgerToken view of one account.

Usage:
    token = InMemoryToken("SUPER")
    token.mint("alice", 10_000)
    token.approve("alice", "staking-engine", 1_000)
    custody = token.connect("staking-engine")
    custody.transfer_from("alice", "staking-engine", 1_000)
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Tuple

logger = logging.getLogger("stakeledger.token")


class ILedgerToken(ABC):
    """Token operations the staking engine depends on."""

    @property
    @abstractmethod
    def account(self) -> str:
        """Account this handle transfers from."""
        pass

    @abstractmethod
    def balance_of(self, account: str) -> int:
        pass

    @abstractmethod
    def transfer(self, to: str, amount: int) -> bool:
        pass

    @abstractmethod
    def transfer_from(self, sender: str, to: str, amount: int) -> bool:
        pass


class InMemoryToken:
    """Fungible token with balances and allowances."""

    def __init__(self, symbol: str = "TOKEN", decimals: int = 18):
        self.symbol = symbol
        self.decimals = decimals
        self.total_supply = 0
        self._balances: Dict[str, int] = {}
        self._allowances: Dict[Tuple[str, str], int] = {}
        self._lock = threading.Lock()

    def connect(self, account: str) -> "TokenAccount":
        return TokenAccount(self, account)

    def mint(self, to: str, amount: int) -> None:
        _check_amount(amount)
        with self._lock:
            self._balances[to] = self._balances.get(to, 0) + amount
            self.total_supply += amount

    def balance_of(self, account: str) -> int:
        return self._balances.get(account, 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self._allowances.get((owner, spender), 0)

    def approve(self, owner: str, spender: str, amount: int) -> bool:
        _check_amount(amount)
        with self._lock:
            self._allowances[(owner, spender)] = amount
        return True

    def transfer(self, sender: str, to: str, amount: int) -> bool:
        _check_amount(amount)
        with self._lock:
            return self._move(sender, to, amount)

    def transfer_from(self, spender: str, sender: str, to: str, amount: int) -> bool:
        _check_amount(amount)
        with self._lock:
            allowed = self._allowances.get((sender, spender), 0)
            if allowed < amount:
                logger.debug(f"{self.symbol}: allowance {sender}->{spender} {allowed} < {amount}")
                return False
            if not self._move(sender, to, amount):
                return False
            self._allowances[(sender, spender)] = allowed - amount
            return True

    def snapshot(self) -> Tuple[Dict[str, int], Dict[Tuple[str, str], int]]:
        """Copies of (balances, allowances) taken under the token lock."""
        with self._lock:
            return dict(self._balances), dict(self._allowances)

    def restore(self, balances: Dict[str, int], allowances: Dict[Tuple[str, str], int]) -> None:
        with self._lock:
            self._balances = dict(balances)
            self._allowances = dict(allowances)
            self.total_supply = sum(self._balances.values())

    def _move(self, sender: str, to: str, amount: int) -> bool:
        balance = self._balances.get(sender, 0)
        if balance < amount:
            logger.debug(f"{self.symbol}: balance of {sender} {balance} < {amount}")
            return False
        self._balances[sender] = balance - amount
        self._balances[to] = self._balances.get(to, 0) + amount
        return True


class TokenAccount(ILedgerToken):
    """ILedgerToken view of an InMemoryToken bound to one account."""

    def __init__(self, token: InMemoryToken, account: str):
        self.token = token
        self._account = account

    @property
    def account(self) -> str:
        return self._account

    @property
    def symbol(self) -> str:
        return self.token.symbol

    def balance_of(self, account: str) -> int:
        return self.token.balance_of(account)

    def transfer(self, to: str, amount: int) -> bool:
        return self.token.transfer(self._account, to, amount)

    def transfer_from(self, sender: str, to: str, amount: int) -> bool:
        return self.token.transfer_from(self._account, sender, to, amount)

    def same_ledger(self, other: ILedgerToken) -> bool:
        return isinstance(other, TokenAccount) and other.token is self.token


def _check_amount(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
        raise ValueError(f"Token amount must be a non-negative integer: {amount!r}")
