"""
CommissionOverride model: administrator-defined commission percentages.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.orm import Mapped, mapped_column

from commission_engine.models.base import BaseModel
from commission_engine.utils.timeutils import as_utc


class OverrideVariant(str, Enum):
    """Scope an override applies to, in resolution priority order."""
    PRODUCT = "product"
    VENDOR = "vendor"
    CATEGORY = "category"
    GLOBAL = "global"


class CommissionOverride(BaseModel):
    """
    Commission percentage override for a product, vendor, category or the
    whole platform.

    Active on the half-open window [valid_from, valid_to); a missing bound
    is unbounded on that side. Windows of the same variant and scope never
    intersect (enforced by the override store).
    """

    __tablename__ = "commission_overrides"
    __table_args__ = (
        Index("ix_commission_overrides_scope", "variant", "scope_id", "valid_from"),
    )

    variant: Mapped[OverrideVariant] = mapped_column(
        SQLAlchemyEnum(
            OverrideVariant,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    scope_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="Product/vendor/category id; NULL for global",
    )
    percentage: Mapped[Decimal] = mapped_column(
        Numeric(7, 4),
        nullable=False,
    )
    valid_from: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    valid_to: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    note: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Justification for the override",
    )
    created_by: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Actor id of the administrator who created it",
    )
    updated_by: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )

    def is_active_at(self, at: datetime) -> bool:
        at = as_utc(at)
        if self.valid_from is not None and at < as_utc(self.valid_from):
            return False
        if self.valid_to is not None and at >= as_utc(self.valid_to):
            return False
        return True

    def __repr__(self) -> str:
        return (
            f"<CommissionOverride(id={self.id}, variant={self.variant}, "
            f"scope_id={self.scope_id}, percentage={self.percentage})>"
        )
