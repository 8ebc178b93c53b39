"""Line item resolution schemas (Order component facing)."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from commission_engine.services.engine import AuditedResolution
from commission_engine.services.resolution import LineItem


class LineItemRequest(BaseModel):
    """Facts about one sold line item."""

    line_item_ref: str = Field(..., min_length=1, max_length=128)
    product_id: str = Field(..., min_length=1, max_length=64)
    vendor_id: str = Field(..., min_length=1, max_length=64)
    category_id: Optional[str] = Field(None, max_length=64)
    amount: Decimal
    currency: str = Field(..., min_length=3, max_length=3)
    at: datetime
    vendor_tier: Optional[str] = Field(None, max_length=50)

    def to_line_item(self) -> LineItem:
        return LineItem(
            line_item_ref=self.line_item_ref,
            product_id=self.product_id,
            vendor_id=self.vendor_id,
            category_id=self.category_id,
            amount=self.amount,
            currency=self.currency.upper(),
            at=self.at,
            vendor_tier=self.vendor_tier,
        )


class ResolutionResponse(BaseModel):
    """Resolved commission with the audit record that backs it."""

    line_item_ref: str
    selected_tier: str
    used_system_default: bool
    override_id: Optional[int]
    base_rate: Decimal
    discount_applied: Decimal
    final_rate: Decimal
    amount: Decimal
    currency: str
    commission_amount: Decimal
    evaluated_at: datetime
    trail: List[Dict[str, Any]]
    warnings: List[Dict[str, str]]

    # Audit
    record_id: int
    record_status: str
    checksum: str

    @classmethod
    def from_audited(cls, audited: AuditedResolution) -> "ResolutionResponse":
        resolution = audited.resolution
        return cls(
            line_item_ref=resolution.line_item_ref,
            selected_tier=resolution.selected_tier.value,
            used_system_default=resolution.used_system_default,
            override_id=resolution.override_id,
            base_rate=resolution.base_rate,
            discount_applied=resolution.discount_applied,
            final_rate=resolution.final_rate,
            amount=resolution.amount,
            currency=resolution.currency,
            commission_amount=resolution.commission_amount,
            evaluated_at=resolution.evaluated_at,
            trail=[step.to_dict() for step in resolution.trail],
            warnings=[warning.to_dict() for warning in resolution.warnings],
            record_id=audited.record_id,
            record_status=audited.status.value,
            checksum=audited.checksum,
        )
