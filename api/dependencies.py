"""
FastAPI dependencies shared by the routers.

The server runs the engine against an in-process token ledger funded from
``config.token.genesis_balances``. With the store enabled, token balances
are persisted in the same SQLite database and commit together with the
ledger, so a restart sees custody and positions agree.

Hosts holding a real token collaborator override ``get_staking_engine``
(and ``get_token``) instead.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request

from stakeledger.config import AppConfig
from stakeledger.events import EventBus, get_event_bus
from stakeledger.staking import InMemoryToken, LedgerStore, StakingEngine

logger = logging.getLogger("stakeledger.api.dependencies")

_build_lock = threading.Lock()


@dataclass
class LedgerServices:
    engine: StakingEngine
    token: InMemoryToken
    store: Optional[LedgerStore] = None


def build_ledger_services(config: AppConfig) -> LedgerServices:
    """Token, store and engine for one server process."""
    token = InMemoryToken(config.token.symbol)
    store = None
    restored = False
    if config.store.enabled:
        store = LedgerStore(config.store.db_path)
        restored = store.attach_token(token)

    if not restored:
        for account, amount in config.token.genesis_balances.items():
            if amount:
                token.mint(account, amount)
        if store is not None:
            store.save_token()
        logger.info(f"Minted genesis balances for {len(config.token.genesis_balances)} accounts")

    engine = StakingEngine.from_config(
        config.staking,
        staking_token=token.connect(config.staking.custody_account),
        store=store,
    )
    logger.info(f"Staking engine created (custody={config.staking.custody_account})")
    return LedgerServices(engine=engine, token=token, store=store)


def get_ledger(request: Request) -> LedgerServices:
    """Build the app's ledger services on first use."""
    state = request.app.state
    services = getattr(state, "ledger", None)
    if services is None:
        with _build_lock:
            services = getattr(state, "ledger", None)
            if services is None:
                services = build_ledger_services(state.config)
                state.ledger = services
    return services


def get_staking_engine(ledger: LedgerServices = Depends(get_ledger)) -> StakingEngine:
    return ledger.engine


def get_token(ledger: LedgerServices = Depends(get_ledger)) -> InMemoryToken:
    return ledger.token


def get_ledger_store(ledger: LedgerServices = Depends(get_ledger)) -> Optional[LedgerStore]:
    return ledger.store


def get_bus() -> EventBus:
    return get_event_bus()
