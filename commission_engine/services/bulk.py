"""
Bulk resolution coordinator.

Drives the commission engine over very large streams of line items (full
catalog recomputation) with bounded memory: at most `concurrency` items are
pulled from the input and resolved at a time, and results are yielded as
soon as their window completes.

A failing item never aborts the batch; it is recorded in the batch summary
with its input. Progress is exposed as a checkpoint token (the number of
inputs fully handled) that can be passed back to resume; items re-run after
a resume are deduplicated by the audit recorder.
"""

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
    Union,
)

from commission_engine.config import settings
from commission_engine.exceptions import CommissionEngineError, InvalidCheckpoint
from commission_engine.services.audit_recorder import RecordStatus
from commission_engine.services.engine import AuditedResolution
from commission_engine.services.resolution import LineItem

logger = logging.getLogger(__name__)

LineItemSource = Union[Iterable[LineItem], AsyncIterable[LineItem]]


@dataclass(frozen=True)
class BatchItemFailure:
    """One line item of a batch that could not be resolved."""

    position: int
    line_item_ref: Optional[str]
    payload: Dict[str, Any]
    error_code: str
    message: str


@dataclass
class BatchSummary:
    start_position: int = 0
    position: int = 0
    processed: int = 0
    succeeded: int = 0
    deduplicated: int = 0
    corrected: int = 0
    failed: int = 0
    failures: List[BatchItemFailure] = field(default_factory=list)
    failures_truncated: bool = False
    cancelled: bool = False


CheckpointSink = Callable[[str, BatchSummary], Awaitable[None]]
FailureSink = Callable[[BatchItemFailure], Awaitable[None]]


@dataclass
class BulkOptions:
    concurrency: int = field(default_factory=lambda: settings.bulk_concurrency)
    checkpoint_every: int = field(default_factory=lambda: settings.bulk_checkpoint_every)
    max_failures_in_summary: int = field(
        default_factory=lambda: settings.bulk_max_failures_in_summary
    )
    actor: str = "bulk-resolution"
    on_checkpoint: Optional[CheckpointSink] = None
    on_failure: Optional[FailureSink] = None


def encode_checkpoint(position: int) -> str:
    raw = json.dumps({"position": position}, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_checkpoint(token: Optional[str]) -> int:
    """Position encoded in a checkpoint token; 0 for no token."""
    if not token:
        return 0
    try:
        data = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
        position = int(data["position"])
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError):
        raise InvalidCheckpoint(token) from None
    if position < 0:
        raise InvalidCheckpoint(token)
    return position


async def _as_async_iterator(items: LineItemSource) -> AsyncIterator[LineItem]:
    if hasattr(items, "__aiter__"):
        async for item in items:
            yield item
    else:
        for item in items:
            yield item


def _describe_input(item: Any) -> Dict[str, Any]:
    if hasattr(item, "to_payload"):
        return item.to_payload()
    return {"value": repr(item)}


class BatchRun:
    """
    Async iterator over the resolutions of one batch.

    Usage:
        run = coordinator.resolve_batch(items, BulkOptions(concurrency=8))
        async for audited in run:
            ...
        run.summary, run.checkpoint
    """

    def __init__(
        self,
        engine,
        items: LineItemSource,
        options: BulkOptions,
        start_position: int = 0,
    ):
        self.engine = engine
        self.items = items
        self.options = options
        self.summary = BatchSummary(start_position=start_position, position=start_position)
        self._cancelled = False
        self._started = False

    @property
    def checkpoint(self) -> str:
        return encode_checkpoint(self.summary.position)

    def cancel(self) -> None:
        """Stop pulling new input; in-flight items finish first."""
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __aiter__(self) -> AsyncIterator[AuditedResolution]:
        if self._started:
            raise RuntimeError("A BatchRun can only be iterated once")
        self._started = True
        return self._run()

    async def _take(self, iterator: AsyncIterator[LineItem], count: int) -> List[Tuple[int, Any]]:
        chunk = []
        while len(chunk) < count:
            try:
                item = await iterator.__anext__()
            except StopAsyncIteration:
                break
            chunk.append((self.summary.position + len(chunk), item))
        return chunk

    async def _skip(self, iterator: AsyncIterator[LineItem], count: int) -> int:
        skipped = 0
        while skipped < count:
            try:
                await iterator.__anext__()
            except StopAsyncIteration:
                break
            skipped += 1
        return skipped

    async def _resolve_one(self, position: int, item: Any) -> Union[AuditedResolution, BatchItemFailure]:
        ref = getattr(item, "line_item_ref", None)
        try:
            if not isinstance(item, LineItem):
                raise TypeError(f"expected LineItem, got {type(item).__name__}")
            return await self.engine.resolve(item, actor=self.options.actor)
        except CommissionEngineError as e:
            error_code, message = e.error_code, e.message
        except Exception as e:
            error_code, message = "UNEXPECTED_ERROR", f"{type(e).__name__}: {e}"

        logger.warning(f"Bulk item {position} ({ref}) failed: {error_code}: {message}")
        return BatchItemFailure(
            position=position,
            line_item_ref=ref,
            payload=_describe_input(item),
            error_code=error_code,
            message=message,
        )

    async def _record_failure(self, failure: BatchItemFailure) -> None:
        summary = self.summary
        summary.failed += 1
        if len(summary.failures) < self.options.max_failures_in_summary:
            summary.failures.append(failure)
        else:
            summary.failures_truncated = True
        if self.options.on_failure is not None:
            await self.options.on_failure(failure)

    def _count_success(self, audited: AuditedResolution) -> None:
        self.summary.succeeded += 1
        if audited.status == RecordStatus.DEDUPLICATED:
            self.summary.deduplicated += 1
        elif audited.status == RecordStatus.CORRECTED:
            self.summary.corrected += 1

    async def _emit_checkpoint(self) -> None:
        if self.options.on_checkpoint is not None:
            await self.options.on_checkpoint(self.checkpoint, self.summary)

    async def _run(self) -> AsyncIterator[AuditedResolution]:
        concurrency = max(1, self.options.concurrency)
        summary = self.summary
        iterator = _as_async_iterator(self.items)

        if summary.start_position:
            skipped = await self._skip(iterator, summary.start_position)
            logger.info(f"Resuming batch at position {summary.start_position} (skipped {skipped})")

        last_checkpoint = summary.position
        try:
            while not self._cancelled:
                chunk = await self._take(iterator, concurrency)
                if not chunk:
                    break

                outcomes = await asyncio.gather(
                    *(self._resolve_one(position, item) for position, item in chunk)
                )

                summary.processed += len(chunk)
                summary.position += len(chunk)
                ready = []
                for outcome in outcomes:
                    if isinstance(outcome, BatchItemFailure):
                        await self._record_failure(outcome)
                    else:
                        self._count_success(outcome)
                        ready.append(outcome)

                if summary.position - last_checkpoint >= self.options.checkpoint_every:
                    last_checkpoint = summary.position
                    logger.info(
                        f"Batch progress: position={summary.position} "
                        f"succeeded={summary.succeeded} failed={summary.failed}"
                    )
                    await self._emit_checkpoint()

                for audited in ready:
                    yield audited

            summary.cancelled = self._cancelled
            await self._emit_checkpoint()
        finally:
            await iterator.aclose()

        logger.info(
            f"Batch {'cancelled' if summary.cancelled else 'finished'}: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"deduplicated={summary.deduplicated} corrected={summary.corrected} "
            f"failed={summary.failed}"
        )


class BulkResolutionCoordinator:
    """Applies the commission engine across large batches of line items."""

    def __init__(self, engine):
        self.engine = engine

    def resolve_batch(
        self,
        line_items: LineItemSource,
        options: Optional[BulkOptions] = None,
        checkpoint: Optional[str] = None,
    ) -> BatchRun:
        """
        Prepare a lazy, restartable run over `line_items`.

        Args:
            line_items: Sync or async iterable; consumed incrementally
            options: Concurrency, checkpoint cadence and sinks
            checkpoint: Token from a previous run of the same input to resume from

        Raises:
            InvalidCheckpoint: the token cannot be decoded
        """
        return BatchRun(
            self.engine,
            line_items,
            options or BulkOptions(),
            start_position=decode_checkpoint(checkpoint),
        )
