"""
Stake Ledger Test Configuration

Central pytest configuration and shared fixtures for all tests.
"""

import os
import sys

# Add project root to path FIRST
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import tempfile
from pathlib import Path

import pytest

from stakeledger.config import AppConfig, reset_config
from stakeledger.events import EventBus, reset_event_bus
from stakeledger.staking import InMemoryToken, ManualClock, StakingEngine

from tests.helpers import ADMIN, CUSTODY, START


# Temporary directory for test data
@pytest.fixture
def temp_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def reset_singletons():
    """Keep global config / event bus state from leaking between tests."""
    reset_config()
    reset_event_bus()
    yield
    reset_config()
    reset_event_bus()


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def token():
    """Token with funded participants and an admin holding reward funds."""
    token = InMemoryToken("STAKE")
    for name in ("alice", "bob", "carol"):
        token.mint(name, 1_000_000)
        token.approve(name, CUSTODY, 1_000_000)
    token.mint(ADMIN, 10_000_000)
    token.approve(ADMIN, CUSTODY, 10_000_000)
    return token


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def engine(token, clock, bus):
    """Engine with default tiers, rate 1000/day and 1M reward funds deposited."""
    engine = StakingEngine(
        staking_token=token.connect(CUSTODY),
        admin=ADMIN,
        clock=clock,
        event_bus=bus,
    )
    engine.deposit_reward_funds(ADMIN, 1_000_000)
    bus.clear_history()
    return engine


@pytest.fixture
def app_config():
    return AppConfig(
        environment="test",
        staking={"admin": ADMIN, "custody_account": CUSTODY},
        logging={"log_dir": None, "console": False},
    )


# Test client for FastAPI
@pytest.fixture
def client(engine, token, bus, app_config):
    from fastapi.testclient import TestClient
    from api.fastapi_app import create_app
    from api.dependencies import get_bus, get_ledger_store, get_staking_engine, get_token

    app = create_app(app_config)
    app.dependency_overrides[get_staking_engine] = lambda: engine
    app.dependency_overrides[get_bus] = lambda: bus
    app.dependency_overrides[get_token] = lambda: token
    app.dependency_overrides[get_ledger_store] = lambda: None
    return TestClient(app)
