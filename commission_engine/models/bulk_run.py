"""
BulkRun model for catalog-wide commission recomputations.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.orm import Mapped, mapped_column

from commission_engine.models.base import Base, BaseModel
from commission_engine.utils.timeutils import utcnow


class BulkRunStatus(str, Enum):
    """Lifecycle of a bulk recomputation."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class BulkRun(BaseModel):
    """
    One admin-triggered recomputation over a filter of historical line items.

    checkpoint_token is persisted every few hundred items so a crashed or
    cancelled run can be resumed from where it stopped.
    """

    __tablename__ = "bulk_runs"

    status: Mapped[BulkRunStatus] = mapped_column(
        SQLAlchemyEnum(
            BulkRunStatus,
            values_callable=lambda x: [e.value for e in x],
        ),
        default=BulkRunStatus.PENDING,
        nullable=False,
        index=True,
    )
    filters: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        comment="Selection of line items to recompute",
    )
    requested_by: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    processed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    succeeded_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deduplicated_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    corrected_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    checkpoint_token: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        comment="Set by an administrator; the runner stops at its next checkpoint",
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<BulkRun(id={self.id}, status={self.status}, processed={self.processed_count})>"


class BulkItemFailure(Base):
    """A line item a bulk run could not resolve, kept with its input."""

    __tablename__ = "bulk_item_failures"
    __table_args__ = (
        UniqueConstraint("run_id", "position", name="uq_bulk_item_failures_run_position"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[int] = mapped_column(
        ForeignKey("bulk_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Zero-based index of the item in the run's input",
    )
    line_item_ref: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
    )
    payload: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )
    error_code: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<BulkItemFailure(run_id={self.run_id}, position={self.position})>"
