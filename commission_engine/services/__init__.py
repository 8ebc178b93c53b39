"""Commission engine services."""

from commission_engine.services.audit_recorder import AuditRecorder, RecordStatus, verify
from commission_engine.services.bulk import BulkOptions, BulkResolutionCoordinator
from commission_engine.services.engine import AuditedResolution, CommissionEngine, get_engine
from commission_engine.services.membership import MembershipDiscountResolver
from commission_engine.services.overrides import OverridePayload, OverrideStore
from commission_engine.services.resolution import LineItem, ResolutionPolicy, resolve

__all__ = [
    "AuditRecorder",
    "AuditedResolution",
    "BulkOptions",
    "BulkResolutionCoordinator",
    "CommissionEngine",
    "LineItem",
    "MembershipDiscountResolver",
    "OverridePayload",
    "OverrideStore",
    "RecordStatus",
    "ResolutionPolicy",
    "get_engine",
    "resolve",
    "verify",
]
