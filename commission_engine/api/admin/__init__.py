"""Admin API router aggregation."""

from fastapi import APIRouter

from commission_engine.api.admin.audit import router as audit_router
from commission_engine.api.admin.bulk import router as bulk_router
from commission_engine.api.admin.memberships import router as memberships_router
from commission_engine.api.admin.overrides import router as overrides_router
from commission_engine.api.admin.records import router as records_router

admin_router = APIRouter(prefix="/admin", tags=["Admin"])

# Commission rule management and compliance queries
commissions_router = APIRouter(prefix="/commissions")
commissions_router.include_router(overrides_router)
commissions_router.include_router(memberships_router)
commissions_router.include_router(bulk_router)
commissions_router.include_router(records_router)

admin_router.include_router(commissions_router)
admin_router.include_router(audit_router)

__all__ = ["admin_router"]
