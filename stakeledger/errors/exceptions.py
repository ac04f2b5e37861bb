"""Custom exception hierarchy."""
from typing import Optional, Dict, Any


class StakingLedgerError(Exception):
    """Base exception for all staking ledger errors."""
    code: str = "SYS_001"
    status_code: int = 500

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(StakingLedgerError):
    """Request rejected before any mutation (bad amount, tier or position id)."""
    code = "VAL_001"
    status_code = 400


class NotFoundError(ValidationError):
    """Referenced tier or position does not exist."""
    code = "VAL_404"
    status_code = 404


class StateError(StakingLedgerError):
    """Request conflicts with the current ledger state."""
    code = "STATE_001"
    status_code = 409


class StillLockedError(StateError):
    """Position lock period has not elapsed."""
    code = "STATE_002"

    def __init__(self, message: str, unlock_time: int = None, now: int = None):
        super().__init__(message, {"unlock_time": unlock_time, "now": now})
        self.unlock_time = unlock_time


class AlreadyClosedError(StateError):
    """Position was already unstaked or emergency-closed."""
    code = "STATE_003"


class TierInactiveError(ValidationError, StateError):
    """Tier no longer accepts new stakes."""
    code = "STATE_004"
    status_code = 400


class NoRewardsError(StateError):
    """Participant has nothing to claim."""
    code = "STATE_005"


class InsufficientRewardFundsError(StateError):
    """Reward custody cannot cover the claim."""
    code = "STATE_006"

    def __init__(self, message: str, required: int = 0, available: int = 0):
        super().__init__(message, {"required": required, "available": available})
        self.required = required
        self.available = available


class CollaboratorError(StakingLedgerError):
    """Ledger token transfer or allowance failed."""
    code = "EXT_001"
    status_code = 502

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message, {"operation": operation})
        self.operation = operation


class AuthorizationError(StakingLedgerError):
    """Caller is not the admin principal."""
    code = "AUTHZ_001"
    status_code = 403


class PausedError(StakingLedgerError):
    """Engine is paused."""
    code = "STATE_010"
    status_code = 423


class ConfigurationError(StakingLedgerError):
    """Configuration error."""
    code = "CFG_001"
    status_code = 500


class PersistenceError(StakingLedgerError):
    """
    Ledger store write failed.

    ``committed`` is False when the operation was rolled back with it, and
    True when tokens had already moved: the in-memory ledger then keeps the
    operation and the store is rewritten in full on the next commit.
    """
    code = "SYS_004"
    status_code = 503

    def __init__(self, message: str, operation: Optional[str] = None, committed: bool = False):
        super().__init__(message, {"operation": operation, "committed": committed})
        self.operation = operation
        self.committed = committed
