"""
CommissionAuditRecord model: immutable, checksummed copy of a resolution.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from commission_engine.exceptions import AppendOnlyViolation
from commission_engine.models.base import Base


class CommissionAuditRecord(Base):
    """
    One row per commission decision, retained indefinitely.

    Rows are append-only: the ORM refuses updates and deletes (see the
    listeners below) and production databases carry a trigger doing the same.
    Corrections are new rows with revision > 0 pointing at the original
    through corrects_record_id.
    """

    __tablename__ = "commission_audit_records"
    __table_args__ = (
        UniqueConstraint(
            "line_item_ref", "evaluated_at", "revision",
            name="uq_commission_audit_line_item_revision",
        ),
        Index("ix_commission_audit_vendor_evaluated", "vendor_id", "evaluated_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    line_item_ref: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        index=True,
    )
    revision: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="0 for the original decision, n for the nth correction",
    )
    corrects_record_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("commission_audit_records.id"),
        nullable=True,
    )

    # Inputs
    product_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    category_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    vendor_tier: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    evaluated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(24, 6), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Decision
    selected_tier: Mapped[str] = mapped_column(String(20), nullable=False)
    used_system_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    override_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Override that supplied the base rate (no FK: overrides may be deleted)",
    )
    base_rate: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    discount_applied: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    final_rate: Mapped[Decimal] = mapped_column(Numeric(9, 4), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Numeric(24, 6), nullable=False)
    trail: Mapped[list] = mapped_column(JSON, nullable=False)
    warnings: Mapped[list] = mapped_column(JSON, nullable=False)

    # Provenance
    actor: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
        comment="Who triggered the resolution (service name or admin:<id>)",
    )
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<CommissionAuditRecord(id={self.id}, line_item_ref='{self.line_item_ref}', "
            f"revision={self.revision}, final_rate={self.final_rate})>"
        )


@event.listens_for(CommissionAuditRecord, "before_update")
def _reject_update(mapper, connection, target):
    raise AppendOnlyViolation(
        f"Commission audit record #{target.id} is immutable; issue a correction instead"
    )


@event.listens_for(CommissionAuditRecord, "before_delete")
def _reject_delete(mapper, connection, target):
    raise AppendOnlyViolation(
        f"Commission audit record #{target.id} cannot be deleted"
    )
