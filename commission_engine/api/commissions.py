"""
Commission resolution endpoint used by the Order component at order
finalization.
"""

import logging

from fastapi import APIRouter, Depends

from commission_engine.auth.dependencies import Actor, require_service
from commission_engine.schemas.resolution import LineItemRequest, ResolutionResponse
from commission_engine.services.engine import CommissionEngine, get_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/commissions", tags=["Commissions"])


@router.post("/resolve", response_model=ResolutionResponse)
async def resolve_line_item(
    data: LineItemRequest,
    actor: Actor = Depends(require_service),
    engine: CommissionEngine = Depends(get_engine),
):
    """
    Resolve the commission of one line item.

    The response is only returned once its audit record is committed;
    AUDIT_WRITE_FAILURE (503) means the caller must retry.
    """
    audited = await engine.resolve(data.to_line_item(), actor=actor.label)
    return ResolutionResponse.from_audited(audited)
