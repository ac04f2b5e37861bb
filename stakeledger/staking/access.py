"""Single-principal admin capability with a pause switch."""

import logging

from stakeledger.errors import AuthorizationError, PausedError, ValidationError

logger = logging.getLogger("stakeledger.access")


class AdminAccess:
    """Checked at the engine boundary, before any state is touched."""

    def __init__(self, admin: str, paused: bool = False):
        if not admin:
            raise ValidationError("Admin principal must be set")
        self.admin = admin
        self.paused = paused

    def is_admin(self, caller: str) -> bool:
        return caller == self.admin

    def require_admin(self, caller: str) -> None:
        if not self.is_admin(caller):
            raise AuthorizationError(
                f"{caller} is not authorized for this operation",
                {"caller": caller},
            )

    def require_not_paused(self) -> None:
        if self.paused:
            raise PausedError("Staking is paused")

    def transfer(self, caller: str, new_admin: str) -> str:
        self.require_admin(caller)
        if not new_admin:
            raise ValidationError("New admin must be set")
        previous, self.admin = self.admin, new_admin
        return previous
