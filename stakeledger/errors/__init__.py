"""
Error handling and exception classes.

NOTE: There are two error layers in this codebase:
1. stakeledger.errors (this module) - ledger errors with StakingLedgerError as root
2. api.errors - HTTP response helpers that render these errors as JSON

Every ledger error carries a stable ``code`` and the HTTP ``status_code`` the
API layer should answer with.

Example usage:
    from stakeledger.errors import StillLockedError

    try:
        engine.unstake("alice", 0)
    except StillLockedError as e:
        print(e.details["unlock_time"])
"""

from stakeledger.errors.exceptions import (
    StakingLedgerError, ValidationError, NotFoundError, StateError,
    StillLockedError, AlreadyClosedError, TierInactiveError, NoRewardsError,
    InsufficientRewardFundsError, CollaboratorError, AuthorizationError,
    PausedError, ConfigurationError, PersistenceError,
)

__all__ = [
    "StakingLedgerError", "ValidationError", "NotFoundError", "StateError",
    "StillLockedError", "AlreadyClosedError", "TierInactiveError", "NoRewardsError",
    "InsufficientRewardFundsError", "CollaboratorError", "AuthorizationError",
    "PausedError", "ConfigurationError", "PersistenceError",
]
