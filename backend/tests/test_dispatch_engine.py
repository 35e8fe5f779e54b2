"""
test_dispatch_engine.py — Auto-dispatch scoring and production-queue operations.

Tests cover:
  - score_machine / pick_best: weights, strict-max with first-wins ties, down machines
  - auto_dispatch against SQLite: capability filter, load balancing, queue tail position,
    locked machines, one active queue item per task
  - dispatch_task / move_queue_item / list_queues
  - start_queue_item: machine runs, busy and down machines
"""

from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from rebarflow.models.orm_models import Event, Machine, MachineQueueItem, MachineRun, ProductionTask
from rebarflow.services import dispatch_engine
from rebarflow.services.dispatch_engine import (
    ALREADY_QUEUED, NO_CAPABILITY, NO_MACHINE, auto_dispatch, dispatch_task,
    list_queues, machine_process, move_queue_item, next_position, pick_best, score_machine,
    start_queue_item,
)
from rebarflow.services.errors import (
    CapabilityMismatch, InvalidTransition, MachineNotFound, MachineUnavailable, PipelineError,
    TaskNotFound,
)


def fake_machine(name, status="idle", current_run_id=None):
    return SimpleNamespace(name=name, status=status, current_run_id=current_run_id)


# ===========================================================================
# Pure scoring
# ===========================================================================

class TestScoring:

    @pytest.mark.parametrize("status,run_id,depth,expected", [
        ("idle", None, 0, 50),
        ("idle", "run-1", 0, 0),
        ("running", "run-1", 2, -10),
        ("blocked", None, 0, -30),
        ("down", None, 0, -100),
        ("idle", None, 3, 20),
    ])
    def test_score_weights(self, status, run_id, depth, expected):
        assert score_machine(status, run_id, depth) == expected

    def test_idle_empty_beats_busy_running(self):
        busy = fake_machine("A", "running", "run-9")
        idle = fake_machine("B")
        best, score = pick_best([(busy, 2), (idle, 0)])
        assert best is idle
        assert score == 50

    def test_tie_keeps_first_candidate(self):
        first, second = fake_machine("A"), fake_machine("B")
        best, _ = pick_best([(first, 1), (second, 1)])
        assert best is first

    def test_down_machine_never_eligible(self):
        best, score = pick_best([(fake_machine("A", "down"), 0)])
        assert best is None and score is None

    def test_blocked_machine_still_eligible_as_last_resort(self):
        blocked = fake_machine("A", "blocked")
        best, score = pick_best([(blocked, 0), (fake_machine("B", "down"), 0)])
        assert best is blocked
        assert score == -30

    @pytest.mark.parametrize("task_type,process", [
        ("cut", "cut"), ("bend", "bend"), ("spiral", "bend"), ("load", "load"), ("weld", "other"),
    ])
    def test_process_mapping(self, task_type, process):
        assert machine_process(task_type) == process


# ===========================================================================
# Auto-dispatch against the database
# ===========================================================================

class TestAutoDispatch:

    @pytest.mark.asyncio
    async def test_scenario_idle_machine_wins_over_loaded_one(self, db, seed, tenant):
        """Running machine with 2 queued items scores -10; the idle empty one scores 50."""
        busy = await seed.machine(tenant.id, "Cutter A", status="running", current_run_id="run-1")
        idle = await seed.machine(tenant.id, "Cutter B")
        await seed.queue_item(tenant.id, busy.id, 0)
        await seed.queue_item(tenant.id, busy.id, 1)
        task = await seed.task(tenant.id)

        outcome = await auto_dispatch(db, tenant.id, task)
        await db.commit()

        assert outcome.dispatched is True
        assert outcome.machine_id == idle.id
        assert outcome.score == 50
        assert outcome.position == 0
        assert task.status == "queued"

    @pytest.mark.asyncio
    async def test_no_capability_leaves_task_pending(self, db, seed, tenant):
        await seed.machine(tenant.id, "Cutter A", capabilities=[("cut", "10M")])
        task = await seed.task(tenant.id, bar_code="25M")

        outcome = await auto_dispatch(db, tenant.id, task)

        assert outcome.dispatched is False
        assert outcome.reason == NO_CAPABILITY
        assert task.status == "pending"

    @pytest.mark.asyncio
    async def test_capability_must_match_process(self, db, seed, tenant):
        await seed.machine(tenant.id, "Bender", capabilities=[("bend", "15M")])
        task = await seed.task(tenant.id, task_type="cut")

        outcome = await auto_dispatch(db, tenant.id, task)
        assert outcome.reason == NO_CAPABILITY

    @pytest.mark.asyncio
    async def test_spiral_tasks_go_to_benders(self, db, seed, tenant):
        bender = await seed.machine(tenant.id, "Bender", capabilities=[("bend", "15M")])
        task = await seed.task(tenant.id, task_type="spiral")

        outcome = await auto_dispatch(db, tenant.id, task)
        assert outcome.machine_id == bender.id

    @pytest.mark.asyncio
    async def test_down_machine_never_receives_work(self, db, seed, tenant):
        await seed.machine(tenant.id, "Cutter A", status="down")
        task = await seed.task(tenant.id)

        outcome = await auto_dispatch(db, tenant.id, task)

        assert outcome.dispatched is False
        assert outcome.reason == NO_MACHINE
        count = await db.scalar(select(func.count(MachineQueueItem.id)).where(MachineQueueItem.task_id == task.id))
        assert count == 0

    @pytest.mark.asyncio
    async def test_other_tenants_machines_are_ignored(self, db, seed, tenant):
        other = await seed.tenant("Other Shop")
        await seed.machine(other.id, "Foreign Cutter")
        task = await seed.task(tenant.id)

        outcome = await auto_dispatch(db, tenant.id, task)
        assert outcome.dispatched is False

    @pytest.mark.asyncio
    async def test_tie_is_broken_by_machine_name(self, db, seed, tenant):
        await seed.machine(tenant.id, "Cutter Z")
        first = await seed.machine(tenant.id, "Cutter A")
        task = await seed.task(tenant.id)

        outcome = await auto_dispatch(db, tenant.id, task)
        assert outcome.machine_id == first.id

    @pytest.mark.asyncio
    async def test_position_is_one_past_active_max(self, db, seed, tenant):
        machine = await seed.machine(tenant.id, "Cutter A")
        await seed.queue_item(tenant.id, machine.id, 0, status="running")
        await seed.queue_item(tenant.id, machine.id, 1)
        await seed.queue_item(tenant.id, machine.id, 7, status="done")

        assert await next_position(db, machine.id) == 2

    @pytest.mark.asyncio
    async def test_empty_queue_starts_at_zero(self, db, seed, tenant):
        machine = await seed.machine(tenant.id, "Cutter A")
        assert await next_position(db, machine.id) == 0

    @pytest.mark.asyncio
    async def test_consecutive_dispatches_append(self, db, seed, tenant):
        await seed.machine(tenant.id, "Cutter A")
        positions = []
        for _ in range(3):
            task = await seed.task(tenant.id)
            outcome = await auto_dispatch(db, tenant.id, task)
            positions.append(outcome.position)
        await db.commit()
        assert positions == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_locked_task_skips_scoring(self, db, seed, tenant):
        await seed.machine(tenant.id, "Cutter A")
        locked = await seed.machine(tenant.id, "Cutter B", status="running", current_run_id="run-3")
        await seed.queue_item(tenant.id, locked.id, 0)
        task = await seed.task(tenant.id, locked_to_machine_id=locked.id)

        outcome = await auto_dispatch(db, tenant.id, task)

        assert outcome.machine_id == locked.id
        assert outcome.score is None
        assert outcome.position == 1

    @pytest.mark.asyncio
    async def test_locked_to_down_machine_stays_pending(self, db, seed, tenant):
        down = await seed.machine(tenant.id, "Cutter A", status="down")
        task = await seed.task(tenant.id, locked_to_machine_id=down.id)

        outcome = await auto_dispatch(db, tenant.id, task)
        assert outcome.reason == NO_MACHINE

    @pytest.mark.asyncio
    async def test_dispatch_writes_audit_event(self, db, seed, tenant):
        machine = await seed.machine(tenant.id, "Cutter A")
        task = await seed.task(tenant.id)

        await auto_dispatch(db, tenant.id, task)
        await db.commit()

        event = (await db.execute(
            select(Event).where(Event.entity_id == task.id, Event.event_type == "task_dispatched")
        )).scalar_one()
        assert event.metadata_json["machine_id"] == machine.id
        assert event.actor_type == "system"


# ===========================================================================
# Manual queue operations
# ===========================================================================

class TestQueueOperations:

    @pytest.mark.asyncio
    async def test_dispatch_task_retries_pending_task(self, db, seed, tenant):
        task = await seed.task(tenant.id)
        first = await dispatch_task(db, tenant.id, task.id)
        assert first.reason == NO_CAPABILITY

        machine = await seed.machine(tenant.id, "Cutter A")
        second = await dispatch_task(db, tenant.id, task.id)
        assert second.dispatched is True
        assert second.machine_id == machine.id

    @pytest.mark.asyncio
    async def test_task_is_never_queued_twice(self, db, seed, tenant):
        await seed.machine(tenant.id, "Cutter A")
        task = await seed.task(tenant.id)
        await dispatch_task(db, tenant.id, task.id)

        again = await dispatch_task(db, tenant.id, task.id)

        assert again.dispatched is False
        assert again.reason == ALREADY_QUEUED
        count = await db.scalar(select(func.count(MachineQueueItem.id)).where(MachineQueueItem.task_id == task.id))
        assert count == 1

    @pytest.mark.asyncio
    async def test_running_task_cannot_be_redispatched(self, db, seed, tenant):
        task = await seed.task(tenant.id, status="running")
        with pytest.raises(InvalidTransition):
            await dispatch_task(db, tenant.id, task.id)

    @pytest.mark.asyncio
    async def test_unknown_task(self, db, tenant):
        with pytest.raises(TaskNotFound):
            await dispatch_task(db, tenant.id, "missing")

    @pytest.mark.asyncio
    async def test_move_to_capable_machine_appends_at_tail(self, db, seed, tenant):
        a = await seed.machine(tenant.id, "Cutter A")
        b = await seed.machine(tenant.id, "Cutter B")
        await seed.queue_item(tenant.id, b.id, 0)
        item = await seed.queue_item(tenant.id, a.id, 0)

        result = await move_queue_item(db, tenant.id, item.id, target_machine_id=b.id)

        assert result == {"queue_item_id": item.id, "machine_id": b.id, "position": 1, "moved": True}
        rerouted = await db.scalar(
            select(func.count(Event.id)).where(Event.entity_id == item.task_id, Event.event_type == "task_rerouted")
        )
        assert rerouted == 1

    @pytest.mark.asyncio
    async def test_move_to_incapable_machine_is_refused(self, db, seed, tenant):
        a = await seed.machine(tenant.id, "Cutter A")
        bender = await seed.machine(tenant.id, "Bender", capabilities=[("bend", "15M")])
        item = await seed.queue_item(tenant.id, a.id, 0)

        with pytest.raises(CapabilityMismatch):
            await move_queue_item(db, tenant.id, item.id, target_machine_id=bender.id)

        still = (await db.execute(
            select(MachineQueueItem.machine_id).where(MachineQueueItem.id == item.id)
        )).scalar_one()
        assert still == a.id

    @pytest.mark.asyncio
    async def test_only_queued_items_move(self, db, seed, tenant):
        a = await seed.machine(tenant.id, "Cutter A")
        item = await seed.queue_item(tenant.id, a.id, 0, status="running")
        with pytest.raises(PipelineError):
            await move_queue_item(db, tenant.id, item.id, target_position=3)

    @pytest.mark.asyncio
    async def test_reorder_within_machine(self, db, seed, tenant):
        a = await seed.machine(tenant.id, "Cutter A")
        item = await seed.queue_item(tenant.id, a.id, 0)
        result = await move_queue_item(db, tenant.id, item.id, target_position=4)
        assert result["position"] == 4
        assert result["machine_id"] == a.id

    @pytest.mark.asyncio
    async def test_move_to_other_tenants_machine_is_not_found(self, db, seed, tenant):
        a = await seed.machine(tenant.id, "Cutter A")
        other = await seed.tenant("Other Shop")
        foreign = await seed.machine(other.id, "Their Cutter")
        item = await seed.queue_item(tenant.id, a.id, 0)

        with pytest.raises(MachineNotFound):
            await move_queue_item(db, tenant.id, item.id, target_machine_id=foreign.id)

        still = await db.scalar(select(MachineQueueItem.machine_id).where(MachineQueueItem.id == item.id))
        assert still == a.id
        rerouted = await db.scalar(
            select(func.count(Event.id)).where(Event.entity_id == item.task_id, Event.event_type == "task_rerouted")
        )
        assert rerouted == 0

    @pytest.mark.asyncio
    async def test_move_to_down_machine_is_refused(self, db, seed, tenant):
        a = await seed.machine(tenant.id, "Cutter A")
        broken = await seed.machine(tenant.id, "Cutter B", status="down")
        item = await seed.queue_item(tenant.id, a.id, 0)

        with pytest.raises(MachineUnavailable):
            await move_queue_item(db, tenant.id, item.id, target_machine_id=broken.id)

        still = await db.scalar(select(MachineQueueItem.machine_id).where(MachineQueueItem.id == item.id))
        assert still == a.id

    @pytest.mark.asyncio
    async def test_reorder_inserts_and_shifts_followers(self, db, seed, tenant):
        a = await seed.machine(tenant.id, "Cutter A")
        first = await seed.queue_item(tenant.id, a.id, 0)
        second = await seed.queue_item(tenant.id, a.id, 1)
        last = await seed.queue_item(tenant.id, a.id, 2)

        await move_queue_item(db, tenant.id, last.id, target_position=0)

        rows = (await db.execute(
            select(MachineQueueItem.id, MachineQueueItem.position)
            .where(MachineQueueItem.machine_id == a.id)
            .order_by(MachineQueueItem.position)
        )).all()
        assert [r.id for r in rows] == [last.id, first.id, second.id]
        assert len({r.position for r in rows}) == 3

    @pytest.mark.asyncio
    async def test_move_with_position_shifts_target_queue(self, db, seed, tenant):
        a = await seed.machine(tenant.id, "Cutter A")
        b = await seed.machine(tenant.id, "Cutter B")
        waiting = await seed.queue_item(tenant.id, b.id, 0)
        item = await seed.queue_item(tenant.id, a.id, 0)

        result = await move_queue_item(db, tenant.id, item.id, target_machine_id=b.id, target_position=0)

        assert result["position"] == 0
        shifted = await db.scalar(select(MachineQueueItem.position).where(MachineQueueItem.id == waiting.id))
        assert shifted == 1

    @pytest.mark.asyncio
    async def test_negative_position_is_refused(self, db, seed, tenant):
        a = await seed.machine(tenant.id, "Cutter A")
        item = await seed.queue_item(tenant.id, a.id, 0)
        with pytest.raises(PipelineError):
            await move_queue_item(db, tenant.id, item.id, target_position=-1)
        position = await db.scalar(select(MachineQueueItem.position).where(MachineQueueItem.id == item.id))
        assert position == 0

    @pytest.mark.asyncio
    async def test_list_queues_returns_active_items_in_order(self, db, seed, tenant):
        a = await seed.machine(tenant.id, "Cutter A")
        await seed.queue_item(tenant.id, a.id, 1)
        await seed.queue_item(tenant.id, a.id, 0, status="running")
        await seed.queue_item(tenant.id, a.id, 2, status="done")

        items = await list_queues(db, tenant.id)

        assert [i["position"] for i in items] == [0, 1]
        assert items[0]["task"]["bar_code"] == "15M"

    @pytest.mark.asyncio
    async def test_dispatch_outcomes_feed_metrics(self, db, seed, tenant):
        from rebarflow.services.perf_monitor import tracker

        task = await seed.task(tenant.id, bar_code="55M")
        await dispatch_engine.dispatch_isolated(db, tenant.id, task)
        assert tracker.get_metrics()["tasks_undispatched_by_reason"] == {NO_CAPABILITY: 1}
        pending = await db.scalar(select(ProductionTask.status).where(ProductionTask.id == task.id))
        assert pending == "pending"


class TestStartQueueItem:

    @pytest.mark.asyncio
    async def test_start_opens_machine_run(self, db, seed, tenant):
        a = await seed.machine(tenant.id, "Cutter A")
        item = await seed.queue_item(tenant.id, a.id, 0)

        result = await start_queue_item(db, tenant.id, item.id, actor_id="user-1")

        assert result["status"] == "running"
        run = await db.get(MachineRun, result["machine_run_id"])
        assert run.machine_id == a.id
        assert run.process == "cut"
        assert run.input_qty == 4
        assert run.created_by == "user-1"

        machine = await db.get(Machine, a.id)
        assert machine.status == "running"
        assert machine.current_run_id == run.id
        assert machine.last_event_at is not None
        assert await db.scalar(select(ProductionTask.status).where(ProductionTask.id == item.task_id)) == "running"
        assert await db.scalar(select(MachineQueueItem.status).where(MachineQueueItem.id == item.id)) == "running"

        events = [tuple(r) for r in (await db.execute(select(Event.event_type, Event.entity_id))).all()]
        assert ("task_started", item.task_id) in events
        assert ("machine_status_changed", a.id) in events

    @pytest.mark.asyncio
    async def test_busy_machine_is_refused(self, db, seed, tenant):
        a = await seed.machine(tenant.id, "Cutter A", status="running", current_run_id="run-1")
        item = await seed.queue_item(tenant.id, a.id, 1)

        with pytest.raises(MachineUnavailable):
            await start_queue_item(db, tenant.id, item.id)

        assert await db.scalar(select(MachineQueueItem.status).where(MachineQueueItem.id == item.id)) == "queued"
        assert await db.scalar(select(func.count(MachineRun.id))) == 0

    @pytest.mark.asyncio
    async def test_only_queued_items_start(self, db, seed, tenant):
        a = await seed.machine(tenant.id, "Cutter A")
        item = await seed.queue_item(tenant.id, a.id, 0, status="running")
        with pytest.raises(PipelineError, match="already running"):
            await start_queue_item(db, tenant.id, item.id)

    @pytest.mark.asyncio
    async def test_started_machine_scores_as_running(self, db, seed, tenant):
        a = await seed.machine(tenant.id, "Cutter A")
        b = await seed.machine(tenant.id, "Cutter B")
        item = await seed.queue_item(tenant.id, a.id, 0)
        await start_queue_item(db, tenant.id, item.id)

        task = await seed.task(tenant.id)
        outcome = await dispatch_task(db, tenant.id, task.id)

        assert outcome.machine_id == b.id
        assert outcome.score == 50
        machine = await db.get(Machine, a.id)
        assert score_machine(machine.status, machine.current_run_id, 1) == 0
