"""Admin membership discount endpoints."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.auth.dependencies import Actor, require_admin
from commission_engine.db import get_db
from commission_engine.schemas.membership import (
    MembershipListResponse,
    MembershipResponse,
    MembershipUpdate,
)
from commission_engine.services.engine import CommissionEngine, get_engine
from commission_engine.services.membership import list_discounts, set_discount
from commission_engine.utils.audit import get_client_ip

router = APIRouter(prefix="/memberships")


@router.get("", response_model=MembershipListResponse)
async def get_memberships(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    """Discount per membership tier."""
    rows = await list_discounts(db)
    return MembershipListResponse(
        items=[MembershipResponse.model_validate(row) for row in rows]
    )


@router.put("/{tier}", response_model=MembershipResponse)
async def update_membership(
    request: Request,
    tier: str,
    data: MembershipUpdate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    engine: CommissionEngine = Depends(get_engine),
):
    row = await set_discount(
        db,
        tier,
        data.discount_percentage,
        actor_id=actor.id,
        note=data.note,
        ip_address=get_client_ip(request),
    )
    await db.commit()
    await db.refresh(row)

    # Make the new discount visible to this process right away
    engine.memberships.invalidate()

    return MembershipResponse.model_validate(row)
