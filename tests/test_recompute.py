"""
Tests for admin-triggered bulk recomputation.

Covers:
- Replaying historical line items (unchanged outcomes deduplicate)
- Compensating records after a rule change
- Persisted progress, cancellation, reopening and failure
"""

from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from commission_engine.exceptions import BulkRunNotCancellable
from sqlalchemy import select, update

from commission_engine.models import AuditAction, AuditLog, BulkRun, BulkRunStatus, OverrideVariant
from commission_engine.services import recompute
from commission_engine.services.bulk import decode_checkpoint
from commission_engine.services.overrides import OverridePayload
from commission_engine.services.recompute import (
    BulkRunRegistry,
    RecomputeRunner,
    line_item_from_record,
    record_filter_from,
    serialize_filters,
)

from conftest import AT, make_item

ADMIN_ID = 3


async def _seed(engine):
    for i in range(1, 6):
        await engine.resolve(make_item(line_item_ref=f"li-{i}", at=AT + timedelta(hours=i), vendor_tier="gold"))
    for i in range(6, 8):
        await engine.resolve(make_item(line_item_ref=f"li-{i}", vendor_id="v-2", at=AT + timedelta(hours=i)))


def _runner(engine, session_factory, registry=None):
    return RecomputeRunner(
        engine,
        session_factory,
        registry=registry or BulkRunRegistry(),
        concurrency=1,
        checkpoint_every=2,
        page_size=2,
    )


async def _reload(session_factory, run_id):
    async with session_factory() as db:
        return await recompute.get_run(db, run_id)


class TestFilters:
    def test_serialize_and_parse(self):
        filters = serialize_filters({
            "vendor_id": "v-1",
            "evaluated_from": AT,
            "product_id": None,
            "unknown": "ignored",
        })
        assert filters == {"vendor_id": "v-1", "evaluated_from": AT.isoformat()}

        record_filter = record_filter_from(filters)
        assert record_filter.vendor_id == "v-1"
        assert record_filter.evaluated_from == AT
        assert record_filter.originals_only

    @pytest.mark.asyncio
    async def test_line_item_from_record(self, engine, db_session):
        audited = await engine.resolve(make_item(amount=Decimal("12.5"), vendor_tier="gold"))
        item = line_item_from_record(audited.record)

        assert item.line_item_ref == "li-1"
        assert item.amount == Decimal("12.5")
        assert item.at == AT
        assert item.vendor_tier == "gold"


class TestRecompute:
    @pytest.mark.asyncio
    async def test_unchanged_rules_deduplicate(self, engine, session_factory, db_session):
        await _seed(engine)
        run = await recompute.create_run(db_session, {"vendor_id": "v-1"}, actor_id=ADMIN_ID)
        assert run.status == BulkRunStatus.PENDING

        summary = await _runner(engine, session_factory).execute(run.id)

        assert summary.processed == 5
        assert summary.deduplicated == 5
        assert summary.corrected == 0

        stored = await _reload(session_factory, run.id)
        assert stored.status == BulkRunStatus.COMPLETED
        assert stored.processed_count == 5
        assert stored.deduplicated_count == 5
        assert decode_checkpoint(stored.checkpoint_token) == 5
        assert stored.finished_at is not None

        result = await db_session.execute(select(AuditLog))
        log = result.scalar_one()
        assert log.action == AuditAction.TRIGGER_BULK_RECOMPUTE
        assert log.action_metadata == {"filters": {"vendor_id": "v-1"}}

    @pytest.mark.asyncio
    async def test_rule_change_appends_corrections(self, engine, session_factory, db_session):
        await _seed(engine)
        await engine.store.upsert_override(
            db_session,
            OverrideVariant.VENDOR,
            OverridePayload(percentage=Decimal("8.0"), scope_id="v-1", valid_from=AT),
            actor_id=ADMIN_ID,
        )
        run = await recompute.create_run(db_session, {"vendor_id": "v-1"}, actor_id=ADMIN_ID)
        run_id = run.id

        summary = await _runner(engine, session_factory).execute(run_id)
        assert summary.corrected == 5
        assert summary.failed == 0

        async with session_factory() as db:
            history = await engine.recorder.history(db, "li-3")
            assert [r.revision for r in history] == [0, 1]
            assert history[1].final_rate == Decimal("8.0")
            assert history[1].actor == f"bulk:{run_id}"
            assert history[1].corrects_record_id == history[0].id

            untouched = await engine.recorder.history(db, "li-6")
            assert [r.revision for r in untouched] == [0]

        # A second pass over the same history changes nothing
        again = await recompute.create_run(db_session, {"vendor_id": "v-1"}, actor_id=ADMIN_ID)
        summary = await _runner(engine, session_factory).execute(again.id)
        assert summary.deduplicated == 5

    @pytest.mark.asyncio
    async def test_evaluated_range_filter(self, engine, session_factory, db_session):
        await _seed(engine)
        run = await recompute.create_run(
            db_session,
            {"evaluated_from": AT + timedelta(hours=2), "evaluated_to": AT + timedelta(hours=4)},
            actor_id=ADMIN_ID,
        )
        summary = await _runner(engine, session_factory).execute(run.id)
        assert summary.processed == 2


class TestRunLifecycle:
    @pytest.mark.asyncio
    async def test_cancel_pending_run(self, engine, session_factory, db_session):
        registry = BulkRunRegistry()
        run = await recompute.create_run(db_session, {}, actor_id=ADMIN_ID)

        cancelled = await recompute.cancel_run(db_session, run.id, actor_id=ADMIN_ID, registry=registry)
        assert cancelled.status == BulkRunStatus.CANCELLED

        summary = await _runner(engine, session_factory, registry).execute(run.id)
        assert summary.processed == 0

    @pytest.mark.asyncio
    async def test_cancel_in_flight_run_signals_the_batch(self, db_session):
        registry = BulkRunRegistry()
        run = await recompute.create_run(db_session, {}, actor_id=ADMIN_ID)
        calls = []
        registry.register(run.id, SimpleNamespace(cancel=lambda: calls.append(run.id)))

        await recompute.cancel_run(db_session, run.id, actor_id=ADMIN_ID, registry=registry)
        assert calls == [run.id]
        assert run.cancel_requested

    @pytest.mark.asyncio
    async def test_reopen_resumes(self, engine, session_factory, db_session):
        await _seed(engine)
        registry = BulkRunRegistry()
        run = await recompute.create_run(db_session, {"vendor_id": "v-2"}, actor_id=ADMIN_ID)
        await recompute.cancel_run(db_session, run.id, actor_id=ADMIN_ID, registry=registry)

        reopened = await recompute.reopen_run(db_session, run.id, actor_id=ADMIN_ID)
        assert reopened.status == BulkRunStatus.PENDING

        summary = await _runner(engine, session_factory, registry).execute(run.id)
        assert summary.processed == 2
        assert (await _reload(session_factory, run.id)).status == BulkRunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_run_is_marked(self, engine, session_factory, db_session):
        run = BulkRun(status=BulkRunStatus.PENDING, filters={"evaluated_from": "not-a-date"}, requested_by=ADMIN_ID)
        db_session.add(run)
        await db_session.commit()

        with pytest.raises(ValueError):
            await _runner(engine, session_factory).execute(run.id)

        stored = await _reload(session_factory, run.id)
        assert stored.status == BulkRunStatus.FAILED
        assert stored.error_message

    @pytest.mark.asyncio
    async def test_interrupted_runs(self, engine, session_factory, db_session):
        pending = await recompute.create_run(db_session, {}, actor_id=ADMIN_ID)
        done = await recompute.create_run(db_session, {}, actor_id=ADMIN_ID)
        await recompute.cancel_run(db_session, done.id, actor_id=ADMIN_ID, registry=BulkRunRegistry())

        assert await _runner(engine, session_factory).interrupted_run_ids() == [pending.id]

    @pytest.mark.asyncio
    async def test_failures_are_listed(self, engine, session_factory, db_session):
        run = await recompute.create_run(db_session, {}, actor_id=ADMIN_ID)
        runner = _runner(engine, session_factory)
        failure = SimpleNamespace(
            position=4,
            line_item_ref="li-5",
            payload={"line_item_ref": "li-5"},
            error_code="UNRESOLVABLE_LINE_ITEM",
            message="no category",
        )
        await runner._save_failure(run.id, failure)

        failures = await recompute.list_failures(db_session, run.id)
        assert [(f.position, f.line_item_ref) for f in failures] == [(4, "li-5")]


class CancelAfterFirstItem:
    """Engine wrapper that requests cancellation the way another worker would."""

    def __init__(self, engine, request_cancel):
        self.engine = engine
        self.recorder = engine.recorder
        self.request_cancel = request_cancel
        self.calls = 0

    async def resolve(self, item, actor):
        audited = await self.engine.resolve(item, actor=actor)
        self.calls += 1
        if self.calls == 1:
            await self.request_cancel()
        return audited


class TestCancellationAcrossProcesses:
    @pytest.mark.asyncio
    async def test_running_elsewhere_stops_at_next_checkpoint(self, engine, session_factory, db_session):
        await _seed(engine)
        run = await recompute.create_run(db_session, {"vendor_id": "v-1"}, actor_id=ADMIN_ID)
        run_id = run.id

        async def request_cancel():
            # This process has no handle on the batch
            async with session_factory() as db:
                await recompute.cancel_run(db, run_id, actor_id=ADMIN_ID, registry=BulkRunRegistry())

        wrapped = CancelAfterFirstItem(engine, request_cancel)
        summary = await _runner(wrapped, session_factory).execute(run_id)

        assert summary.cancelled
        assert summary.processed == 2
        stored = await _reload(session_factory, run_id)
        assert stored.status == BulkRunStatus.CANCELLED
        assert stored.processed_count == 2
        assert decode_checkpoint(stored.checkpoint_token) == 2

    @pytest.mark.asyncio
    async def test_cancel_requested_before_resume(self, engine, session_factory, db_session):
        run = await recompute.create_run(db_session, {}, actor_id=ADMIN_ID)
        await db_session.execute(
            update(BulkRun).where(BulkRun.id == run.id).values(status=BulkRunStatus.RUNNING)
        )
        await db_session.commit()

        async with session_factory() as db:
            requested = await recompute.cancel_run(db, run.id, actor_id=ADMIN_ID, registry=BulkRunRegistry())
            assert requested.status == BulkRunStatus.RUNNING
            assert requested.cancel_requested

        summary = await _runner(engine, session_factory).execute(run.id)
        assert summary.processed == 0
        assert (await _reload(session_factory, run.id)).status == BulkRunStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_finished_run_cannot_be_cancelled(self, engine, session_factory, db_session):
        run = await recompute.create_run(db_session, {}, actor_id=ADMIN_ID)
        await _runner(engine, session_factory).execute(run.id)

        async with session_factory() as db:
            with pytest.raises(BulkRunNotCancellable):
                await recompute.cancel_run(db, run.id, actor_id=ADMIN_ID, registry=BulkRunRegistry())

    @pytest.mark.asyncio
    async def test_reopen_clears_cancel_request(self, db_session):
        run = await recompute.create_run(db_session, {}, actor_id=ADMIN_ID)
        run.status = BulkRunStatus.CANCELLED
        run.cancel_requested = True
        await db_session.commit()

        reopened = await recompute.reopen_run(db_session, run.id, actor_id=ADMIN_ID)
        assert reopened.status == BulkRunStatus.PENDING
        assert not reopened.cancel_requested


class TestResumedFailures:
    @pytest.mark.asyncio
    async def test_replayed_failure_is_stored_once(self, engine, session_factory, db_session):
        await engine.resolve(make_item())
        # Replays now fail: the currency is no longer configured
        engine.policy.currency_minor_units.pop("SYP")

        run = await recompute.create_run(db_session, {}, actor_id=ADMIN_ID)
        run_id = run.id
        runner = _runner(engine, session_factory)
        await runner.execute(run_id)

        # Crash before the first checkpoint was persisted
        await db_session.execute(
            update(BulkRun)
            .where(BulkRun.id == run_id)
            .values(
                status=BulkRunStatus.RUNNING,
                checkpoint_token=None,
                processed_count=0,
                failed_count=0,
                finished_at=None,
            )
        )
        await db_session.commit()
        await runner.execute(run_id)

        async with session_factory() as db:
            failures = await recompute.list_failures(db, run_id)
        stored = await _reload(session_factory, run_id)
        assert [(f.position, f.error_code) for f in failures] == [(0, "UNRESOLVABLE_LINE_ITEM")]
        assert stored.failed_count == len(failures) == 1


class TestScheduling:
    @pytest.mark.asyncio
    async def test_interrupted_runs_are_rescheduled(self, engine, session_factory, db_session, monkeypatch):
        from commission_engine.scheduler import jobs

        run = await recompute.create_run(db_session, {}, actor_id=ADMIN_ID)
        monkeypatch.setattr(recompute, "_runner", _runner(engine, session_factory))

        assert await jobs.resume_interrupted_runs() == 1
        job = jobs.scheduler.get_job(f"bulk_run_{run.id}")
        assert job is not None
        assert job.args == (run.id,)
        jobs.scheduler.remove_job(job.id)

    @pytest.mark.asyncio
    async def test_bulk_job_executes_run(self, engine, session_factory, db_session, monkeypatch):
        from commission_engine.scheduler import jobs

        await _seed(engine)
        run = await recompute.create_run(db_session, {"vendor_id": "v-2"}, actor_id=ADMIN_ID)
        monkeypatch.setattr(recompute, "_runner", _runner(engine, session_factory))

        await jobs.bulk_recompute_job(run.id)

        stored = await _reload(session_factory, run.id)
        assert stored.status == BulkRunStatus.COMPLETED
        assert stored.processed_count == 2
