"""
Commission audit recorder.

Every resolution is written here exactly once before it is returned to the
caller. Records are append-only and carry a SHA-256 checksum over a canonical
serialization of all their fields, so any later edit is detectable.

Writing the same resolution again (same line item, same evaluation instant,
same outcome) returns the existing record. A different outcome for an
already recorded line item is appended as a compensating record that points
at the original.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.exceptions import AuditWriteFailure
from commission_engine.models.commission_audit import CommissionAuditRecord
from commission_engine.services.resolution import CommissionResolution
from commission_engine.utils.locks import KeyedLock
from commission_engine.utils.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

# Fields copied from a CommissionResolution onto the record
RESOLUTION_FIELDS: Tuple[str, ...] = (
    "line_item_ref",
    "product_id",
    "vendor_id",
    "category_id",
    "vendor_tier",
    "evaluated_at",
    "selected_tier",
    "used_system_default",
    "override_id",
    "base_rate",
    "discount_applied",
    "final_rate",
    "amount",
    "currency",
    "commission_amount",
    "trail",
    "warnings",
)

# Record-only fields, also covered by the checksum
PROVENANCE_FIELDS: Tuple[str, ...] = (
    "revision",
    "corrects_record_id",
    "actor",
    "recorded_at",
)


class RecordStatus(str, Enum):
    WRITTEN = "written"
    DEDUPLICATED = "deduplicated"
    CORRECTED = "corrected"


@dataclass(frozen=True)
class RecordOutcome:
    record: CommissionAuditRecord
    status: RecordStatus


@dataclass
class RecordFilter:
    """Selection of audit records for compliance queries."""

    actor: Optional[str] = None
    line_item_ref: Optional[str] = None
    product_id: Optional[str] = None
    vendor_id: Optional[str] = None
    category_id: Optional[str] = None
    selected_tier: Optional[str] = None
    evaluated_from: Optional[datetime] = None
    evaluated_to: Optional[datetime] = None
    recorded_from: Optional[datetime] = None
    recorded_to: Optional[datetime] = None
    originals_only: bool = False


def _canonical(value: Any) -> Any:
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, Decimal):
        if value == 0:
            return "0"
        return format(value.normalize(), "f")
    if isinstance(value, datetime):
        return as_utc(value).isoformat(timespec="microseconds")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    return value


def canonical_json(payload: Dict[str, Any]) -> str:
    """Field-order independent serialization used for checksums."""
    return json.dumps(
        _canonical(payload),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def digest(payload: Dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def record_payload(record: CommissionAuditRecord) -> Dict[str, Any]:
    """Every stored field of a record except id and checksum."""
    return {name: getattr(record, name) for name in RESOLUTION_FIELDS + PROVENANCE_FIELDS}


def resolution_payload(record: CommissionAuditRecord) -> Dict[str, Any]:
    return {name: getattr(record, name) for name in RESOLUTION_FIELDS}


def compute_checksum(record: CommissionAuditRecord) -> str:
    return digest(record_payload(record))


def verify(record: CommissionAuditRecord) -> bool:
    """Recompute the checksum and compare with the stored one."""
    if not record.checksum:
        return False
    return hmac.compare_digest(compute_checksum(record), record.checksum)


class AuditRecorder:
    """
    Append-only writer for commission audit records.

    Writes for the same line item are serialized in-process by a per-ref
    lock; across processes the unique (line_item_ref, evaluated_at, revision)
    constraint decides, and the loser re-reads and deduplicates.
    """

    def __init__(self):
        self._ref_locks = KeyedLock()

    async def record(
        self,
        db: AsyncSession,
        resolution: CommissionResolution,
        actor: str,
    ) -> RecordOutcome:
        """
        Persist a resolution (flushes; the caller commits).

        Raises:
            AuditWriteFailure: the record could not be written
        """
        async with self._ref_locks.hold(resolution.line_item_ref):
            try:
                try:
                    return await self._write(db, resolution, actor)
                except IntegrityError:
                    # Another writer won the race for this revision
                    await db.rollback()
                    return await self._write(db, resolution, actor)
            except SQLAlchemyError as e:
                logger.error(
                    f"Audit write failed for line item {resolution.line_item_ref}: {e}"
                )
                raise AuditWriteFailure(
                    f"Could not persist audit record for line item {resolution.line_item_ref}",
                    details={"line_item_ref": resolution.line_item_ref, "error": str(e)},
                ) from e

    async def _write(
        self,
        db: AsyncSession,
        resolution: CommissionResolution,
        actor: str,
    ) -> RecordOutcome:
        payload = resolution.to_payload()
        latest = await self.latest_revision(db, resolution.line_item_ref, resolution.evaluated_at)

        if latest is None:
            revision, corrects, status = 0, None, RecordStatus.WRITTEN
        elif digest(resolution_payload(latest)) == digest(payload):
            logger.debug(
                f"Line item {resolution.line_item_ref} already recorded as #{latest.id}"
            )
            return RecordOutcome(record=latest, status=RecordStatus.DEDUPLICATED)
        else:
            revision = latest.revision + 1
            corrects = latest.corrects_record_id or latest.id
            status = RecordStatus.CORRECTED

        record = CommissionAuditRecord(
            **payload,
            revision=revision,
            corrects_record_id=corrects,
            actor=actor,
            recorded_at=utcnow(),
        )
        record.checksum = compute_checksum(record)
        db.add(record)
        await db.flush()

        if status == RecordStatus.CORRECTED:
            logger.info(
                f"Line item {resolution.line_item_ref}: correction #{record.id} "
                f"(revision {revision}) of record #{corrects}"
            )
        return RecordOutcome(record=record, status=status)

    # ── reads ────────────────────────────────────────────────

    @staticmethod
    async def latest_revision(
        db: AsyncSession,
        line_item_ref: str,
        evaluated_at: datetime,
    ) -> Optional[CommissionAuditRecord]:
        result = await db.execute(
            select(CommissionAuditRecord)
            .where(
                CommissionAuditRecord.line_item_ref == line_item_ref,
                CommissionAuditRecord.evaluated_at == as_utc(evaluated_at),
            )
            .order_by(CommissionAuditRecord.revision.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get(db: AsyncSession, record_id: int) -> Optional[CommissionAuditRecord]:
        return await db.get(CommissionAuditRecord, record_id)

    @staticmethod
    async def history(db: AsyncSession, line_item_ref: str) -> list[CommissionAuditRecord]:
        """All records for a line item, originals and corrections, oldest first."""
        result = await db.execute(
            select(CommissionAuditRecord)
            .where(CommissionAuditRecord.line_item_ref == line_item_ref)
            .order_by(CommissionAuditRecord.evaluated_at, CommissionAuditRecord.revision)
        )
        return list(result.scalars().all())

    @staticmethod
    def _apply_filter(query, filters: RecordFilter):
        Record = CommissionAuditRecord
        if filters.actor:
            query = query.where(Record.actor == filters.actor)
        if filters.line_item_ref:
            query = query.where(Record.line_item_ref == filters.line_item_ref)
        if filters.product_id:
            query = query.where(Record.product_id == filters.product_id)
        if filters.vendor_id:
            query = query.where(Record.vendor_id == filters.vendor_id)
        if filters.category_id:
            query = query.where(Record.category_id == filters.category_id)
        if filters.selected_tier:
            query = query.where(Record.selected_tier == filters.selected_tier)
        if filters.evaluated_from:
            query = query.where(Record.evaluated_at >= as_utc(filters.evaluated_from))
        if filters.evaluated_to:
            query = query.where(Record.evaluated_at < as_utc(filters.evaluated_to))
        if filters.recorded_from:
            query = query.where(Record.recorded_at >= as_utc(filters.recorded_from))
        if filters.recorded_to:
            query = query.where(Record.recorded_at < as_utc(filters.recorded_to))
        if filters.originals_only:
            query = query.where(Record.revision == 0)
        return query

    async def query_records(
        self,
        db: AsyncSession,
        filters: RecordFilter,
        page: int = 1,
        per_page: int = 50,
    ) -> tuple[list[CommissionAuditRecord], int]:
        """Paginated records matching the filter, newest first, with the total count."""
        query = self._apply_filter(select(CommissionAuditRecord), filters)

        count_query = select(func.count()).select_from(query.subquery())
        total = await db.scalar(count_query)

        query = query.order_by(CommissionAuditRecord.recorded_at.desc(), CommissionAuditRecord.id.desc())
        query = query.offset((page - 1) * per_page).limit(per_page)
        result = await db.execute(query)
        return list(result.scalars().all()), total or 0

    async def iter_originals(
        self,
        session_factory,
        filters: RecordFilter,
        page_size: int = 1000,
        after_id: int = 0,
    ):
        """
        Stream original records matching the filter by keyset pagination,
        one short-lived session per page.
        """
        filters.originals_only = True
        last_id = after_id
        while True:
            async with session_factory() as db:
                query = self._apply_filter(select(CommissionAuditRecord), filters)
                query = (
                    query.where(CommissionAuditRecord.id > last_id)
                    .order_by(CommissionAuditRecord.id)
                    .limit(page_size)
                )
                result = await db.execute(query)
                page = list(result.scalars().all())
            if not page:
                return
            for record in page:
                yield record
            last_id = page[-1].id

    async def verify_recent(self, db: AsyncSession, limit: int = 500) -> list[int]:
        """Verify the most recently written records; returns ids that fail."""
        result = await db.execute(
            select(CommissionAuditRecord)
            .order_by(CommissionAuditRecord.id.desc())
            .limit(limit)
        )
        return [record.id for record in result.scalars().all() if not verify(record)]
