"""
Commission engine: the single entry point the Order and Payout components use.

A resolution is only complete once its audit record is committed; resolve()
returns both together as an AuditedResolution, and raises AuditWriteFailure
instead of returning an unaudited result.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commission_engine.config import settings
from commission_engine.exceptions import AuditWriteFailure
from commission_engine.models.commission_audit import CommissionAuditRecord
from commission_engine.services.audit_recorder import AuditRecorder, RecordStatus
from commission_engine.services.membership import MembershipDiscountResolver
from commission_engine.services.overrides import OverrideStore
from commission_engine.services.resolution import (
    CommissionResolution,
    LineItem,
    ResolutionPolicy,
    WarningCode,
    resolve,
    validate_line_item,
)

logger = logging.getLogger(__name__)

DEFAULT_ACTOR = "order-service"


@dataclass(frozen=True)
class AuditedResolution:
    """A resolution together with the audit record that makes it valid."""

    resolution: CommissionResolution
    record: CommissionAuditRecord
    status: RecordStatus

    @property
    def record_id(self) -> int:
        return self.record.id

    @property
    def checksum(self) -> str:
        return self.record.checksum


class CommissionEngine:
    """
    Resolve line items against a point-in-time override snapshot and record
    each decision in the audit trail.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: Optional[OverrideStore] = None,
        memberships: Optional[MembershipDiscountResolver] = None,
        recorder: Optional[AuditRecorder] = None,
        policy: Optional[ResolutionPolicy] = None,
    ):
        self.session_factory = session_factory
        self.store = store or OverrideStore()
        self.memberships = memberships or MembershipDiscountResolver(
            ttl_seconds=settings.membership_cache_ttl_seconds
        )
        self.recorder = recorder or AuditRecorder()
        self.policy = policy or ResolutionPolicy.from_settings(settings)

    async def resolve(self, item: LineItem, actor: str = DEFAULT_ACTOR) -> AuditedResolution:
        """
        Resolve one line item and commit its audit record.

        Raises:
            UnresolvableLineItem: the item lacks facts needed to resolve it
            AuditWriteFailure: the decision could not be recorded
        """
        validate_line_item(item, self.policy)

        async with self.session_factory() as db:
            snapshot = await self.store.load_snapshot(
                db, item.product_id, item.vendor_id, item.category_id, item.at,
            )
            discounts = await self.memberships.load(db)

            resolution = resolve(item, snapshot, discounts, self.policy)
            self._report_warnings(resolution)

            outcome = await self.recorder.record(db, resolution, actor)
            try:
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(f"Audit commit failed for line item {item.line_item_ref}: {e}")
                raise AuditWriteFailure(
                    f"Could not commit audit record for line item {item.line_item_ref}",
                    details={"line_item_ref": item.line_item_ref, "error": str(e)},
                ) from e

        logger.debug(
            f"Line item {item.line_item_ref}: tier={resolution.tier_label} "
            f"rate={resolution.final_rate}% commission={resolution.commission_amount} "
            f"{resolution.currency} ({outcome.status.value} #{outcome.record.id})"
        )
        return AuditedResolution(
            resolution=resolution,
            record=outcome.record,
            status=outcome.status,
        )

    @staticmethod
    def _report_warnings(resolution: CommissionResolution) -> None:
        for warning in resolution.warnings:
            if warning.code == WarningCode.UNKNOWN_MEMBERSHIP_TIER:
                logger.warning(
                    f"Data quality: line item {resolution.line_item_ref} "
                    f"vendor {resolution.vendor_id}: {warning.message}"
                )
            else:
                logger.warning(
                    f"Line item {resolution.line_item_ref}: {warning.code.value}: {warning.message}"
                )


_engine: Optional[CommissionEngine] = None


def get_engine() -> CommissionEngine:
    """Process-wide engine bound to the application session factory."""
    global _engine
    if _engine is None:
        from commission_engine.db import AsyncSessionLocal

        _engine = CommissionEngine(AsyncSessionLocal)
    return _engine
