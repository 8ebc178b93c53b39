"""Audit schemas: commission audit records and the administrative log."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class AuditRecordResponse(BaseModel):
    """Commission audit record for compliance review."""

    id: int
    line_item_ref: str
    revision: int
    corrects_record_id: Optional[int]
    product_id: str
    vendor_id: str
    category_id: str
    vendor_tier: Optional[str]
    evaluated_at: datetime
    selected_tier: str
    used_system_default: bool
    override_id: Optional[int]
    base_rate: Decimal
    discount_applied: Decimal
    final_rate: Decimal
    amount: Decimal
    currency: str
    commission_amount: Decimal
    trail: List[Dict[str, Any]]
    warnings: List[Dict[str, Any]]
    actor: str
    recorded_at: datetime
    checksum: str

    model_config = {"from_attributes": True}


class AuditRecordListResponse(BaseModel):
    """Paginated audit records."""

    items: List[AuditRecordResponse]
    total: int
    page: int
    per_page: int
    pages: int


class AuditRecordVerifyResponse(BaseModel):
    id: int
    valid: bool
    checksum: str


class AuditLogResponse(BaseModel):
    """Administrative log entry."""

    id: int
    actor_id: int
    actor_type: str
    action: str
    target_type: Optional[str]
    target_id: Optional[str]
    metadata: Optional[dict]
    ip_address: Optional[str]
    created_at: datetime


class AuditLogListResponse(BaseModel):
    """Paginated audit log."""

    items: List[AuditLogResponse]
    total: int
    page: int
    per_page: int
    pages: int
