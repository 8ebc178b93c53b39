"""Pydantic schemas for request/response validation."""

from commission_engine.schemas.audit import (
    AuditLogListResponse,
    AuditLogResponse,
    AuditRecordListResponse,
    AuditRecordResponse,
    AuditRecordVerifyResponse,
)
from commission_engine.schemas.bulk import (
    BulkFailureListResponse,
    BulkFailureResponse,
    BulkRunCreate,
    BulkRunResponse,
)
from commission_engine.schemas.membership import (
    MembershipListResponse,
    MembershipResponse,
    MembershipUpdate,
)
from commission_engine.schemas.override import (
    OverrideCreate,
    OverrideExpire,
    OverrideListResponse,
    OverrideResponse,
    OverrideUpdate,
)
from commission_engine.schemas.resolution import LineItemRequest, ResolutionResponse

__all__ = [
    # Overrides
    "OverrideCreate",
    "OverrideUpdate",
    "OverrideExpire",
    "OverrideResponse",
    "OverrideListResponse",
    # Memberships
    "MembershipUpdate",
    "MembershipResponse",
    "MembershipListResponse",
    # Resolution
    "LineItemRequest",
    "ResolutionResponse",
    # Bulk
    "BulkRunCreate",
    "BulkRunResponse",
    "BulkFailureResponse",
    "BulkFailureListResponse",
    # Audit
    "AuditRecordResponse",
    "AuditRecordListResponse",
    "AuditRecordVerifyResponse",
    "AuditLogResponse",
    "AuditLogListResponse",
]
