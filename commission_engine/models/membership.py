"""
MembershipDiscount model: commission discount per vendor membership tier.
"""

from decimal import Decimal
from typing import Optional

from sqlalchemy import Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from commission_engine.models.base import Base, TimestampMixin


class MembershipDiscount(Base, TimestampMixin):
    """
    Percentage points subtracted from the resolved base rate for vendors
    on a membership tier (bronze, silver, gold, platinum, ...).

    Tiers are stored lower-cased.
    """

    __tablename__ = "membership_discounts"

    tier: Mapped[str] = mapped_column(
        String(50),
        primary_key=True,
    )
    discount_percentage: Mapped[Decimal] = mapped_column(
        Numeric(7, 4),
        nullable=False,
    )
    note: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    updated_by: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<MembershipDiscount(tier='{self.tier}', discount={self.discount_percentage})>"
