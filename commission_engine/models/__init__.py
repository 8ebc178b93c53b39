"""
Database models for the commission engine.

All models are exported here for convenient imports:
    from commission_engine.models import CommissionOverride, AuditLog, etc.
"""

from commission_engine.models.audit import ActorType, AuditAction, AuditLog
from commission_engine.models.base import Base, BaseModel, TimestampMixin
from commission_engine.models.bulk_run import BulkItemFailure, BulkRun, BulkRunStatus
from commission_engine.models.commission_audit import CommissionAuditRecord
from commission_engine.models.membership import MembershipDiscount
from commission_engine.models.override import CommissionOverride, OverrideVariant

__all__ = [
    # Base
    "Base",
    "BaseModel",
    "TimestampMixin",
    # Overrides
    "CommissionOverride",
    "OverrideVariant",
    # Membership
    "MembershipDiscount",
    # Commission audit
    "CommissionAuditRecord",
    # Bulk runs
    "BulkRun",
    "BulkRunStatus",
    "BulkItemFailure",
    # Admin audit
    "AuditLog",
    "AuditAction",
    "ActorType",
]
