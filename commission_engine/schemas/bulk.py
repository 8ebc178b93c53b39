"""Bulk recomputation schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from commission_engine.models.bulk_run import BulkRunStatus


class BulkRunCreate(BaseModel):
    """Selection of historical line items to recompute."""

    product_id: Optional[str] = Field(None, max_length=64)
    vendor_id: Optional[str] = Field(None, max_length=64)
    category_id: Optional[str] = Field(None, max_length=64)
    evaluated_from: Optional[datetime] = None
    evaluated_to: Optional[datetime] = None

    @model_validator(mode="after")
    def check_range(self) -> "BulkRunCreate":
        if self.evaluated_from and self.evaluated_to and self.evaluated_from >= self.evaluated_to:
            raise ValueError("evaluated_from must be before evaluated_to")
        return self


class BulkRunResponse(BaseModel):
    id: int
    status: BulkRunStatus
    filters: Dict[str, Any]
    requested_by: int
    processed_count: int
    succeeded_count: int
    deduplicated_count: int
    corrected_count: int
    failed_count: int
    checkpoint_token: Optional[str]
    cancel_requested: bool
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    error_message: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class BulkFailureResponse(BaseModel):
    """A line item the run could not resolve."""

    position: int
    line_item_ref: Optional[str]
    payload: Dict[str, Any]
    error_code: str
    message: str
    created_at: datetime

    model_config = {"from_attributes": True}


class BulkFailureListResponse(BaseModel):
    items: List[BulkFailureResponse]
    page: int
    per_page: int
