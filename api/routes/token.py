"""
Token API Routes.

Endpoints over the server's in-process token ledger:
- Token supply and per-account balances
- Approve the staking custody account as spender (needed before /stake)
- Admin mint, e.g. to fund reward deposits

Changes are written to the ledger store when it is enabled.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.dependencies import get_ledger_store, get_staking_engine, get_token
from stakeledger.staking import InMemoryToken, LedgerStore, StakingEngine

router = APIRouter(prefix="/api/token", tags=["Token"])


class ApproveRequest(BaseModel):
    """Allow the custody account to pull up to ``amount`` from ``owner``."""
    owner: str = Field(..., min_length=1)
    amount: int = Field(..., ge=0)


class MintRequest(BaseModel):
    caller: str = Field(..., min_length=1, description="Admin principal")
    to: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0)


class TokenInfoResponse(BaseModel):
    symbol: str
    decimals: int
    total_supply: int
    custody_account: str


class BalanceResponse(BaseModel):
    account: str
    balance: int
    custody_allowance: int


def _balance(token: InMemoryToken, engine: StakingEngine, account: str) -> BalanceResponse:
    return BalanceResponse(
        account=account,
        balance=token.balance_of(account),
        custody_allowance=token.allowance(account, engine.custody),
    )


@router.get("", response_model=TokenInfoResponse)
def get_token_info(
    token: InMemoryToken = Depends(get_token),
    engine: StakingEngine = Depends(get_staking_engine),
):
    return TokenInfoResponse(
        symbol=token.symbol,
        decimals=token.decimals,
        total_supply=token.total_supply,
        custody_account=engine.custody,
    )


@router.get("/balances/{account}", response_model=BalanceResponse)
def get_balance(
    account: str,
    token: InMemoryToken = Depends(get_token),
    engine: StakingEngine = Depends(get_staking_engine),
):
    return _balance(token, engine, account)


@router.post("/approve", response_model=BalanceResponse)
def approve(
    request: ApproveRequest,
    token: InMemoryToken = Depends(get_token),
    engine: StakingEngine = Depends(get_staking_engine),
    store: Optional[LedgerStore] = Depends(get_ledger_store),
):
    token.approve(request.owner, engine.custody, request.amount)
    if store is not None:
        store.save_token()
    return _balance(token, engine, request.owner)


@router.post("/mint", response_model=BalanceResponse)
def mint(
    request: MintRequest,
    token: InMemoryToken = Depends(get_token),
    engine: StakingEngine = Depends(get_staking_engine),
    store: Optional[LedgerStore] = Depends(get_ledger_store),
):
    """Admin only."""
    engine.access.require_admin(request.caller)
    token.mint(request.to, request.amount)
    if store is not None:
        store.save_token()
    return _balance(token, engine, request.to)
