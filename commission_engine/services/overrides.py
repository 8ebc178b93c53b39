"""
Override store: lifecycle and point-in-time lookup of commission overrides.

Overrides of the same variant and scope must never have intersecting
validity windows. Writes check for intersection and commit while holding a
per-scope lock (plus an advisory transaction lock on PostgreSQL), so two
concurrent upserts cannot both pass the check.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import and_, or_, select, text, true
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.config import settings
from commission_engine.exceptions import (
    InvalidOverrideScope,
    InvalidRateBounds,
    InvalidValidityWindow,
    OverrideNotFound,
    RejectedOverlap,
)
from commission_engine.models.audit import AuditAction
from commission_engine.models.override import CommissionOverride, OverrideVariant
from commission_engine.services.resolution import (
    RATE_QUANTUM,
    OverrideCandidate,
    OverrideMatch,
    OverrideSnapshot,
)
from commission_engine.utils.audit import log_action
from commission_engine.utils.locks import KeyedLock
from commission_engine.utils.timeutils import as_utc, format_window, utcnow

logger = logging.getLogger(__name__)

# Variants held to the narrower business policy band
POLICY_BAND_VARIANTS = (OverrideVariant.PRODUCT, OverrideVariant.CATEGORY)

_scope_locks = KeyedLock()


@dataclass
class OverridePayload:
    """Admin-supplied values for creating or replacing an override."""

    percentage: Decimal
    scope_id: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    note: Optional[str] = None


def describe_override(row: CommissionOverride) -> Dict[str, Any]:
    """Serializable view of an override for admin audit metadata."""
    return {
        "variant": row.variant.value,
        "scope_id": row.scope_id,
        "percentage": str(row.percentage),
        "valid_from": as_utc(row.valid_from).isoformat() if row.valid_from else None,
        "valid_to": as_utc(row.valid_to).isoformat() if row.valid_to else None,
        "note": row.note,
    }


def _scope_clause(variant: OverrideVariant, scope_id: Optional[str]):
    if variant == OverrideVariant.GLOBAL:
        return and_(CommissionOverride.variant == variant, CommissionOverride.scope_id.is_(None))
    return and_(CommissionOverride.variant == variant, CommissionOverride.scope_id == scope_id)


def _active_at_clause(at: datetime):
    return and_(
        or_(CommissionOverride.valid_from.is_(None), CommissionOverride.valid_from <= at),
        or_(CommissionOverride.valid_to.is_(None), CommissionOverride.valid_to > at),
    )


def _intersects_clause(valid_from: Optional[datetime], valid_to: Optional[datetime]):
    """Half-open windows [a, b) and [c, d) intersect iff a < d and c < b."""
    conditions = []
    if valid_to is not None:
        conditions.append(
            or_(CommissionOverride.valid_from.is_(None), CommissionOverride.valid_from < valid_to)
        )
    if valid_from is not None:
        conditions.append(
            or_(CommissionOverride.valid_to.is_(None), CommissionOverride.valid_to > valid_from)
        )
    return and_(*conditions) if conditions else true()


class OverrideStore:
    """Four override collections (product, vendor, category, global) in one table."""

    def __init__(
        self,
        min_rate: Optional[Decimal] = None,
        max_rate: Optional[Decimal] = None,
    ):
        self.min_rate = Decimal(settings.override_min_rate if min_rate is None else min_rate)
        self.max_rate = Decimal(settings.override_max_rate if max_rate is None else max_rate)

    # ── validation ───────────────────────────────────────────

    def validate_percentage(self, variant: OverrideVariant, percentage: Decimal) -> Decimal:
        percentage = Decimal(percentage)
        if not percentage.is_finite() or percentage < 0 or percentage > 100:
            raise InvalidRateBounds(
                f"Commission percentage {percentage}% is outside [0, 100]",
                details={"variant": variant.value, "percentage": str(percentage)},
            )
        if variant in POLICY_BAND_VARIANTS and not (self.min_rate <= percentage <= self.max_rate):
            raise InvalidRateBounds(
                f"{variant.value.capitalize()} commission {percentage}% is outside the "
                f"policy band [{self.min_rate}, {self.max_rate}]",
                details={
                    "variant": variant.value,
                    "percentage": str(percentage),
                    "min": str(self.min_rate),
                    "max": str(self.max_rate),
                },
            )
        return percentage.quantize(RATE_QUANTUM)

    @staticmethod
    def validate_scope(variant: OverrideVariant, scope_id: Optional[str]) -> Optional[str]:
        if variant == OverrideVariant.GLOBAL:
            return None
        if not scope_id:
            raise InvalidOverrideScope(
                f"A {variant.value} override needs a scope id",
                details={"variant": variant.value},
            )
        return str(scope_id)

    @staticmethod
    def validate_window(
        valid_from: Optional[datetime],
        valid_to: Optional[datetime],
    ) -> tuple[Optional[datetime], Optional[datetime]]:
        valid_from, valid_to = as_utc(valid_from), as_utc(valid_to)
        if valid_from is not None and valid_to is not None and valid_from >= valid_to:
            raise InvalidValidityWindow(
                f"valid_from must be before valid_to (got {format_window(valid_from, valid_to)})",
                details={
                    "valid_from": valid_from.isoformat(),
                    "valid_to": valid_to.isoformat(),
                },
            )
        return valid_from, valid_to

    # ── locking ──────────────────────────────────────────────

    @staticmethod
    async def _lock_scope_in_db(db: AsyncSession, key: str) -> None:
        if db.get_bind().dialect.name == "postgresql":
            await db.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                {"key": key},
            )

    async def _find_conflict(
        self,
        db: AsyncSession,
        variant: OverrideVariant,
        scope_id: Optional[str],
        valid_from: Optional[datetime],
        valid_to: Optional[datetime],
        exclude_id: Optional[int] = None,
    ) -> Optional[CommissionOverride]:
        query = (
            select(CommissionOverride)
            .where(
                _scope_clause(variant, scope_id),
                _intersects_clause(valid_from, valid_to),
            )
            .order_by(CommissionOverride.valid_from)
            .with_for_update()
        )
        if exclude_id is not None:
            query = query.where(CommissionOverride.id != exclude_id)
        result = await db.execute(query.limit(1))
        return result.scalar_one_or_none()

    @staticmethod
    def _overlap_error(
        variant: OverrideVariant,
        scope_id: Optional[str],
        conflict: CommissionOverride,
    ) -> RejectedOverlap:
        window = format_window(conflict.valid_from, conflict.valid_to)
        return RejectedOverlap(
            f"{variant.value.capitalize()} override for {scope_id or 'all'} overlaps "
            f"existing override #{conflict.id} valid {window}; narrow or delete it first",
            details={
                "conflicting_override_id": conflict.id,
                "conflicting_window": {
                    "valid_from": as_utc(conflict.valid_from).isoformat() if conflict.valid_from else None,
                    "valid_to": as_utc(conflict.valid_to).isoformat() if conflict.valid_to else None,
                },
            },
        )

    # ── writes ───────────────────────────────────────────────

    async def upsert_override(
        self,
        db: AsyncSession,
        variant: OverrideVariant,
        payload: OverridePayload,
        actor_id: int,
        override_id: Optional[int] = None,
        ip_address: Optional[str] = None,
    ) -> CommissionOverride:
        """
        Create an override, or replace the values of an existing one.

        The check for intersecting windows and the write are committed
        together while the scope is locked.

        Raises:
            RejectedOverlap: window intersects another override of the same scope
            InvalidRateBounds: percentage outside [0, 100] or the policy band
            InvalidValidityWindow: valid_from >= valid_to
            OverrideNotFound: override_id does not exist
        """
        scope_id = self.validate_scope(variant, payload.scope_id)
        percentage = self.validate_percentage(variant, payload.percentage)
        valid_from, valid_to = self.validate_window(payload.valid_from, payload.valid_to)

        lock_key = f"override:{variant.value}:{scope_id or '*'}"
        async with _scope_locks.hold(lock_key):
            await self._lock_scope_in_db(db, lock_key)

            existing = None
            if override_id is not None:
                existing = await db.get(CommissionOverride, override_id, with_for_update=True)
                if existing is None or existing.variant != variant or existing.scope_id != scope_id:
                    raise OverrideNotFound(override_id)

            conflict = await self._find_conflict(
                db, variant, scope_id, valid_from, valid_to, exclude_id=override_id,
            )
            if conflict is not None:
                error = self._overlap_error(variant, scope_id, conflict)
                await db.rollback()
                logger.info(f"Rejected {variant.value} override for {scope_id or 'all'}: {error.message}")
                raise error

            if existing is None:
                row = CommissionOverride(
                    variant=variant,
                    scope_id=scope_id,
                    percentage=percentage,
                    valid_from=valid_from,
                    valid_to=valid_to,
                    note=payload.note,
                    created_by=actor_id,
                )
                db.add(row)
                await db.flush()
                action, previous = AuditAction.CREATE_OVERRIDE, None
            else:
                previous = describe_override(existing)
                row = existing
                row.percentage = percentage
                row.valid_from = valid_from
                row.valid_to = valid_to
                row.note = payload.note
                row.updated_by = actor_id
                row.updated_at = utcnow()
                await db.flush()
                action = AuditAction.UPDATE_OVERRIDE

            await log_action(
                db=db,
                actor_id=actor_id,
                action=action,
                target_type="override",
                target_id=row.id,
                action_metadata={"previous": previous, "new": describe_override(row)},
                ip_address=ip_address,
            )
            await db.commit()

        logger.info(
            f"{action.value}: {variant.value} override #{row.id} for {scope_id or 'all'} "
            f"= {percentage}% ({format_window(valid_from, valid_to)}) by actor {actor_id}"
        )
        return row

    async def expire_override(
        self,
        db: AsyncSession,
        override_id: int,
        actor_id: int,
        at: Optional[datetime] = None,
        ip_address: Optional[str] = None,
    ) -> CommissionOverride:
        """End an override's window at `at` (default: now). Shrinking cannot overlap."""
        at = as_utc(at) or utcnow()
        row = await db.get(CommissionOverride, override_id)
        if row is None:
            raise OverrideNotFound(override_id)

        lock_key = f"override:{row.variant.value}:{row.scope_id or '*'}"
        async with _scope_locks.hold(lock_key):
            await self._lock_scope_in_db(db, lock_key)
            await db.refresh(row, with_for_update=True)

            if row.valid_to is not None and as_utc(row.valid_to) <= at:
                raise InvalidValidityWindow(
                    f"Override #{row.id} ends at {as_utc(row.valid_to).isoformat()}; expiring it "
                    f"at {at.isoformat()} cannot extend the window by expiring",
                    details={"override_id": row.id, "valid_to": as_utc(row.valid_to).isoformat()},
                )
            if row.valid_from is not None and as_utc(row.valid_from) >= at:
                raise InvalidValidityWindow(
                    f"Override #{row.id} starts at {as_utc(row.valid_from).isoformat()}; "
                    f"delete it instead of expiring it",
                    details={"override_id": row.id},
                )

            previous = describe_override(row)
            row.valid_to = at
            row.updated_by = actor_id
            row.updated_at = utcnow()
            await log_action(
                db=db,
                actor_id=actor_id,
                action=AuditAction.EXPIRE_OVERRIDE,
                target_type="override",
                target_id=row.id,
                action_metadata={"previous": previous, "new": describe_override(row)},
                ip_address=ip_address,
            )
            await db.commit()

        logger.info(f"Override #{row.id} expired at {at.isoformat()} by actor {actor_id}")
        return row

    async def delete_override(
        self,
        db: AsyncSession,
        override_id: int,
        actor_id: int,
        ip_address: Optional[str] = None,
    ) -> None:
        row = await db.get(CommissionOverride, override_id)
        if row is None:
            raise OverrideNotFound(override_id)

        lock_key = f"override:{row.variant.value}:{row.scope_id or '*'}"
        async with _scope_locks.hold(lock_key):
            await self._lock_scope_in_db(db, lock_key)
            previous = describe_override(row)
            await db.delete(row)
            await log_action(
                db=db,
                actor_id=actor_id,
                action=AuditAction.DELETE_OVERRIDE,
                target_type="override",
                target_id=override_id,
                action_metadata={"previous": previous},
                ip_address=ip_address,
            )
            await db.commit()

        logger.info(f"Override #{override_id} deleted by actor {actor_id}")

    # ── reads ────────────────────────────────────────────────

    async def get(self, db: AsyncSession, override_id: int) -> CommissionOverride:
        row = await db.get(CommissionOverride, override_id)
        if row is None:
            raise OverrideNotFound(override_id)
        return row

    async def find_active(
        self,
        db: AsyncSession,
        variant: OverrideVariant,
        scope_id: Optional[str],
        at: datetime,
    ) -> Optional[OverrideMatch]:
        """The override of this variant/scope active at `at`, if any."""
        at = as_utc(at)
        result = await db.execute(
            select(CommissionOverride).where(
                _scope_clause(variant, scope_id),
                _active_at_clause(at),
            )
        )
        candidates = tuple(OverrideCandidate.from_model(r) for r in result.scalars().all())
        snapshot = OverrideSnapshot(at=at, candidates=candidates)
        return snapshot.match(variant, None if variant == OverrideVariant.GLOBAL else scope_id)

    async def list_active(
        self,
        db: AsyncSession,
        variant: OverrideVariant,
        scope_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[CommissionOverride]:
        """Overrides of a scope that have not ended yet (current and scheduled)."""
        now = as_utc(now) or utcnow()
        result = await db.execute(
            select(CommissionOverride)
            .where(
                _scope_clause(variant, scope_id),
                or_(CommissionOverride.valid_to.is_(None), CommissionOverride.valid_to > now),
            )
            .order_by(CommissionOverride.valid_from.is_not(None), CommissionOverride.valid_from)
        )
        return list(result.scalars().all())

    async def load_snapshot(
        self,
        db: AsyncSession,
        product_id: str,
        vendor_id: str,
        category_id: Optional[str],
        at: datetime,
    ) -> OverrideSnapshot:
        """
        Read every tier's candidates for one line item in a single statement,
        so all four tiers see the same data at the same `at`.
        """
        at = as_utc(at)
        scopes = [
            _scope_clause(OverrideVariant.PRODUCT, product_id),
            _scope_clause(OverrideVariant.VENDOR, vendor_id),
            _scope_clause(OverrideVariant.GLOBAL, None),
        ]
        if category_id:
            scopes.append(_scope_clause(OverrideVariant.CATEGORY, category_id))

        result = await db.execute(
            select(CommissionOverride).where(or_(*scopes), _active_at_clause(at))
        )
        candidates = tuple(OverrideCandidate.from_model(r) for r in result.scalars().all())
        return OverrideSnapshot(at=at, candidates=candidates)
