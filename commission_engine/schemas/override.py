"""Commission override schemas."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from commission_engine.models.override import OverrideVariant


class OverrideCreate(BaseModel):
    """Create a commission override."""

    variant: OverrideVariant
    scope_id: Optional[str] = Field(None, max_length=64)
    percentage: Decimal
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    note: Optional[str] = Field(None, max_length=2000)


class OverrideUpdate(BaseModel):
    """Replace the values of an override. Variant and scope cannot change."""

    percentage: Decimal
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    note: Optional[str] = Field(None, max_length=2000)


class OverrideExpire(BaseModel):
    """End an override early; defaults to now."""

    at: Optional[datetime] = None


class OverrideResponse(BaseModel):
    """Override as shown to administrators."""

    id: int
    variant: OverrideVariant
    scope_id: Optional[str]
    percentage: Decimal
    valid_from: Optional[datetime]
    valid_to: Optional[datetime]
    note: Optional[str]
    created_by: int
    updated_by: Optional[int]
    created_at: datetime
    updated_at: Optional[datetime]

    model_config = {"from_attributes": True}


class OverrideListResponse(BaseModel):
    items: List[OverrideResponse]
    total: int
