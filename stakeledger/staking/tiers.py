"""Catalog of lock-duration / multiplier tiers."""

import logging
from dataclasses import replace
from typing import List, Optional

from stakeledger.errors import NotFoundError, TierInactiveError, ValidationError
from stakeledger.staking.models import DEFAULT_TIERS, SECONDS_PER_DAY, Tier

logger = logging.getLogger("stakeledger.tiers")


class TierRegistry:
    """
    Append-only tier catalog.

    Ids are sequential from 0 and never reused. Duration and multiplier are
    fixed at creation; only the ``active`` flag changes, and it only gates new
    stakes.
    """

    def __init__(self, tiers: Optional[List[Tier]] = None):
        self._tiers: List[Tier] = list(tiers or [])

    @classmethod
    def with_defaults(cls) -> "TierRegistry":
        registry = cls()
        for days, multiplier in DEFAULT_TIERS:
            registry.add_tier(days * SECONDS_PER_DAY, multiplier)
        return registry

    @property
    def tier_count(self) -> int:
        return len(self._tiers)

    def add_tier(self, duration: int, multiplier: int) -> int:
        """Append an active tier and return its id."""
        if not _is_int(duration) or duration <= 0:
            raise ValidationError("Tier duration must be a positive integer", {"duration": duration})
        if not _is_int(multiplier) or multiplier <= 0:
            raise ValidationError("Tier multiplier must be a positive integer", {"multiplier": multiplier})

        tier_id = len(self._tiers)
        self._tiers.append(Tier(id=tier_id, duration=duration, multiplier=multiplier))
        logger.debug(f"Added tier {tier_id}: {duration}s @ {multiplier}")
        return tier_id

    def get(self, tier_id: int) -> Tier:
        if not _is_int(tier_id) or tier_id < 0 or tier_id >= len(self._tiers):
            raise NotFoundError(f"Tier not found: {tier_id}", {"tier_id": tier_id})
        return self._tiers[tier_id]

    def set_tier_active(self, tier_id: int, active: bool) -> Tier:
        tier = self.get(tier_id)
        tier.active = bool(active)
        return tier

    def require_active(self, tier_id: int) -> Tier:
        """Return the tier if it accepts new stakes."""
        tier = self.get(tier_id)
        if not tier.active:
            raise TierInactiveError(f"Tier {tier_id} is not accepting stakes", {"tier_id": tier_id})
        return tier

    def list_tiers(self) -> List[Tier]:
        return list(self._tiers)

    def checkpoint(self) -> List[Tier]:
        return [replace(t) for t in self._tiers]

    def restore(self, checkpoint: List[Tier]) -> None:
        self._tiers = checkpoint


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
