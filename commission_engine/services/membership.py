"""
Membership discount resolution.

Maps a vendor's membership tier to the percentage points subtracted from
the resolved base rate. Unknown tiers are not a fault: they get no
discount and the caller reports a data-quality warning.
"""

import asyncio
import logging
import time
from decimal import Decimal
from typing import Dict, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.exceptions import InvalidRateBounds
from commission_engine.models.audit import AuditAction
from commission_engine.models.membership import MembershipDiscount
from commission_engine.utils.audit import log_action

logger = logging.getLogger(__name__)

NO_DISCOUNT = Decimal("0")


def normalize_tier(tier: Optional[str]) -> Optional[str]:
    if tier is None:
        return None
    tier = tier.strip().lower()
    return tier or None


class MembershipDiscountTable:
    """Immutable tier -> discount lookup."""

    def __init__(self, discounts: Optional[Mapping[str, Decimal]] = None):
        self._discounts: Dict[str, Decimal] = {
            normalize_tier(tier): Decimal(value).quantize(Decimal("0.0001"))
            for tier, value in (discounts or {}).items()
        }

    def knows(self, tier: Optional[str]) -> bool:
        return normalize_tier(tier) in self._discounts

    def discount_for(self, tier: Optional[str]) -> Decimal:
        """Discount percentage for a tier; 0 for no or unknown tier."""
        key = normalize_tier(tier)
        if key is None:
            return NO_DISCOUNT
        return self._discounts.get(key, NO_DISCOUNT)


class MembershipDiscountResolver:
    """
    Loads the discount table from the database and keeps it for a short,
    bounded TTL. A TTL of 0 reloads on every call.
    """

    def __init__(self, ttl_seconds: float = 30.0):
        self.ttl_seconds = ttl_seconds
        self._table: Optional[MembershipDiscountTable] = None
        self._loaded_at: float = 0.0
        self._lock = asyncio.Lock()

    def invalidate(self) -> None:
        self._table = None

    def _fresh(self) -> bool:
        return (
            self._table is not None
            and time.monotonic() - self._loaded_at < self.ttl_seconds
        )

    async def load(self, db: AsyncSession) -> MembershipDiscountTable:
        if self._fresh():
            return self._table

        async with self._lock:
            if self._fresh():
                return self._table
            result = await db.execute(select(MembershipDiscount))
            rows = result.scalars().all()
            self._table = MembershipDiscountTable(
                {row.tier: row.discount_percentage for row in rows}
            )
            self._loaded_at = time.monotonic()
            logger.debug(f"Loaded {len(rows)} membership discount tiers")
            return self._table


async def set_discount(
    db: AsyncSession,
    tier: str,
    discount_percentage: Decimal,
    actor_id: int,
    note: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> MembershipDiscount:
    """
    Create or update the discount for a membership tier.

    Raises:
        InvalidRateBounds: discount outside [0, 100]
    """
    key = normalize_tier(tier)
    if key is None:
        raise InvalidRateBounds("Membership tier name must not be empty")

    discount_percentage = Decimal(discount_percentage)
    if discount_percentage < 0 or discount_percentage > 100:
        raise InvalidRateBounds(
            f"Membership discount {discount_percentage}% is outside [0, 100]",
            details={"tier": key, "discount_percentage": str(discount_percentage)},
        )

    row = await db.get(MembershipDiscount, key)
    previous = str(row.discount_percentage) if row else None
    if row:
        row.discount_percentage = discount_percentage
        row.note = note
        row.updated_by = actor_id
    else:
        row = MembershipDiscount(
            tier=key,
            discount_percentage=discount_percentage,
            note=note,
            updated_by=actor_id,
        )
        db.add(row)

    await log_action(
        db=db,
        actor_id=actor_id,
        action=AuditAction.SET_MEMBERSHIP_DISCOUNT,
        target_type="membership",
        target_id=key,
        action_metadata={"previous": previous, "new": str(discount_percentage)},
        ip_address=ip_address,
    )
    await db.flush()

    logger.info(f"Membership tier '{key}' discount set to {discount_percentage}% by actor {actor_id}")
    return row


async def list_discounts(db: AsyncSession) -> list[MembershipDiscount]:
    result = await db.execute(select(MembershipDiscount).order_by(MembershipDiscount.tier))
    return list(result.scalars().all())
