"""Membership discount schemas."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class MembershipUpdate(BaseModel):
    """Set the discount of a membership tier."""

    discount_percentage: Decimal
    note: Optional[str] = Field(None, max_length=2000)


class MembershipResponse(BaseModel):
    tier: str
    discount_percentage: Decimal
    note: Optional[str]
    updated_by: Optional[int]
    created_at: datetime
    updated_at: Optional[datetime]

    model_config = {"from_attributes": True}


class MembershipListResponse(BaseModel):
    items: List[MembershipResponse]
