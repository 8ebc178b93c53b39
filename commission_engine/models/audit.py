"""
AuditLog model for tracking administrative actions.

Distinct from commission audit records: this log answers "who changed the
rule", not "who triggered a sale".
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Integer, JSON, String
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.orm import Mapped, mapped_column

from commission_engine.models.base import Base
from commission_engine.utils.timeutils import utcnow


class ActorType(str, Enum):
    """Kind of principal performing an action."""
    ADMIN = "admin"
    SERVICE = "service"
    SYSTEM = "system"


class AuditAction(str, Enum):
    """Types of auditable actions."""
    CREATE_OVERRIDE = "create_override"
    UPDATE_OVERRIDE = "update_override"
    EXPIRE_OVERRIDE = "expire_override"
    DELETE_OVERRIDE = "delete_override"
    SET_MEMBERSHIP_DISCOUNT = "set_membership_discount"
    TRIGGER_BULK_RECOMPUTE = "trigger_bulk_recompute"
    CANCEL_BULK_RECOMPUTE = "cancel_bulk_recompute"


class AuditLog(Base):
    """
    Audit log for administrative actions on commission rules.

    Every override or membership change and every bulk recomputation
    request is logged here for compliance review.
    """

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    actor_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        index=True,
    )
    actor_type: Mapped[ActorType] = mapped_column(
        SQLAlchemyEnum(
            ActorType,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=ActorType.ADMIN,
    )
    action: Mapped[AuditAction] = mapped_column(
        SQLAlchemyEnum(
            AuditAction,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        index=True,
    )
    target_type: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment="Type of entity affected (override, membership, bulk_run)",
    )
    target_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="ID of the affected entity",
    )
    action_metadata: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
        comment="Additional context about the action (old/new values)",
    )
    ip_address: Mapped[Optional[str]] = mapped_column(
        String(45),
        nullable=True,
        comment="IPv4 or IPv6 address",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, actor_id={self.actor_id}, action={self.action})>"
