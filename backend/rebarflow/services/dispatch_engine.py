"""
Auto-Dispatch Scheduler — assigns production tasks to shop-floor machines.

For one task at a time:
  1. task_type → machine process (cut / bend / load / other)
  2. candidate machines = capability rows for (bar_code, process) ∩ tenant machines
  3. score = +50 idle with no active run, +10 running, −30 blocked, −100 down,
             −10 per active (queued/running) queue item
  4. strictly-highest score wins; ties keep the first candidate (machines are
     read in name order, so the outcome is deterministic)
  5. append at the tail of the winner's queue (max active position + 1)

Greedy and single-pass: already queued work is never reshuffled and the
batch being dispatched together is not looked at as a whole. Absence of a
capable machine is a normal outcome (task stays `pending` for manual routing),
not an error.
"""
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from rebarflow.models.orm_models import (
    Machine, MachineCapability, MachineQueueItem, MachineRun, ProductionTask,
)
from rebarflow.services.audit import record_event
from rebarflow.services.errors import (
    CapabilityMismatch, InvalidTransition, MachineNotFound, MachineUnavailable, PipelineError,
    QueueItemNotFound, TaskNotFound,
)
from rebarflow.services.perf_monitor import tracker

logger = logging.getLogger("rebarflow-dispatch")

PROCESS_MAP = {"cut": "cut", "bend": "bend", "spiral": "bend", "load": "load", "other": "other"}
ACTIVE_QUEUE_STATUSES = ("queued", "running")

SCORE_IDLE = 50
SCORE_RUNNING = 10
PENALTY_BLOCKED = -30
PENALTY_DOWN = -100
PENALTY_PER_QUEUED = -10

# Reasons a task can stay undispatched
NO_CAPABILITY = "no_capability"
NO_MACHINE = "no_machine"
ALREADY_QUEUED = "already_queued"
INSERT_FAILED = "insert_failed"


def machine_process(task_type: str) -> str:
    return PROCESS_MAP.get(task_type, "other")


def score_machine(status: str, current_run_id: Optional[str], queue_depth: int) -> int:
    score = 0
    if status == "idle" and not current_run_id:
        score += SCORE_IDLE
    elif status == "running":
        score += SCORE_RUNNING
    if status == "blocked":
        score += PENALTY_BLOCKED
    if status == "down":
        score += PENALTY_DOWN
    score += PENALTY_PER_QUEUED * queue_depth
    return score


def pick_best(candidates: Sequence[Tuple[Any, int]]) -> Tuple[Optional[Any], Optional[int]]:
    """
    candidates: (machine, queue_depth) in a fixed order.
    Machines that are `down` are never eligible, whatever their score.
    """
    best, best_score = None, None
    for machine, depth in candidates:
        if machine.status == "down":
            continue
        score = score_machine(machine.status, machine.current_run_id, depth)
        if best_score is None or score > best_score:
            best, best_score = machine, score
    return best, best_score


@dataclass
class DispatchOutcome:
    task_id: str
    dispatched: bool
    machine_id: Optional[str] = None
    machine_name: Optional[str] = None
    position: Optional[int] = None
    score: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def _queue_depths(db: AsyncSession, machine_ids: List[str]) -> Dict[str, int]:
    result = await db.execute(
        select(MachineQueueItem.machine_id, func.count(MachineQueueItem.id))
        .where(
            MachineQueueItem.machine_id.in_(machine_ids),
            MachineQueueItem.status.in_(ACTIVE_QUEUE_STATUSES),
        )
        .group_by(MachineQueueItem.machine_id)
    )
    return {machine_id: count for machine_id, count in result.all()}


async def next_position(db: AsyncSession, machine_id: str) -> int:
    """One past the highest active position on the machine, 0 for an empty queue."""
    result = await db.execute(
        select(func.max(MachineQueueItem.position)).where(
            MachineQueueItem.machine_id == machine_id,
            MachineQueueItem.status.in_(ACTIVE_QUEUE_STATUSES),
        )
    )
    current_max = result.scalar_one_or_none()
    return 0 if current_max is None else current_max + 1


async def _lock_machine(db: AsyncSession, machine_id: str) -> Optional[Machine]:
    # Row lock serializes position read + insert per machine (no-op on SQLite)
    result = await db.execute(select(Machine).where(Machine.id == machine_id).with_for_update())
    return result.scalar_one_or_none()


async def _has_active_queue_item(db: AsyncSession, task_id: str) -> bool:
    result = await db.execute(
        select(MachineQueueItem.id).where(
            MachineQueueItem.task_id == task_id,
            MachineQueueItem.status.in_(ACTIVE_QUEUE_STATUSES),
        ).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def _enqueue(
    db: AsyncSession,
    tenant_id: str,
    task: ProductionTask,
    machine: Machine,
    score: Optional[int],
    actor_id: Optional[str],
    locked: bool = False,
) -> DispatchOutcome:
    await _lock_machine(db, machine.id)
    position = await next_position(db, machine.id)
    db.add(MachineQueueItem(
        tenant_id=tenant_id,
        task_id=task.id,
        machine_id=machine.id,
        project_id=task.project_id,
        work_order_id=task.work_order_id,
        position=position,
        status="queued",
    ))
    await db.flush()
    task.status = "queued"

    if locked:
        description = f"Task dispatched to locked machine {machine.name} (position {position})"
    else:
        description = (
            f"Smart dispatch: {task.bar_code} {task.task_type} → {machine.name} "
            f"(score {score}, pos {position})"
        )
    await record_event(
        db,
        tenant_id=tenant_id,
        entity_type="production_task",
        entity_id=task.id,
        event_type="task_dispatched",
        actor_id=actor_id,
        actor_type="user" if actor_id else "system",
        description=description,
        metadata={
            "task_id": task.id,
            "machine_id": machine.id,
            "machine_name": machine.name,
            "score": score,
            "position": position,
            "setup_key": task.setup_key,
            "locked": locked,
        },
        suffix=f"{machine.id}:{position}",
    )
    await db.flush()
    return DispatchOutcome(
        task_id=task.id,
        dispatched=True,
        machine_id=machine.id,
        machine_name=machine.name,
        position=position,
        score=score,
    )


async def auto_dispatch(
    db: AsyncSession,
    tenant_id: str,
    task: ProductionTask,
    actor_id: Optional[str] = None,
) -> DispatchOutcome:
    """
    Choose one machine for `task` and append it to that machine's queue.
    Does not commit. Raises only on persistence errors.
    """
    if await _has_active_queue_item(db, task.id):
        return DispatchOutcome(task_id=task.id, dispatched=False, reason=ALREADY_QUEUED)

    if task.locked_to_machine_id:
        result = await db.execute(
            select(Machine).where(Machine.id == task.locked_to_machine_id, Machine.tenant_id == tenant_id)
        )
        machine = result.scalar_one_or_none()
        if machine is None or machine.status == "down":
            return DispatchOutcome(task_id=task.id, dispatched=False, reason=NO_MACHINE)
        return await _enqueue(db, tenant_id, task, machine, None, actor_id, locked=True)

    process = machine_process(task.task_type)
    cap_result = await db.execute(
        select(MachineCapability.machine_id).where(
            MachineCapability.tenant_id == tenant_id,
            MachineCapability.bar_code == task.bar_code,
            MachineCapability.process == process,
        )
    )
    capable_ids = list(dict.fromkeys(cap_result.scalars().all()))
    if not capable_ids:
        logger.info(f"No machine capable of {process} {task.bar_code} — task {task.id} left pending")
        return DispatchOutcome(task_id=task.id, dispatched=False, reason=NO_CAPABILITY)

    machines_result = await db.execute(
        select(Machine)
        .where(Machine.id.in_(capable_ids), Machine.tenant_id == tenant_id)
        .order_by(Machine.name, Machine.id)
    )
    machines = machines_result.scalars().all()
    depths = await _queue_depths(db, [m.id for m in machines]) if machines else {}
    best, best_score = pick_best([(m, depths.get(m.id, 0)) for m in machines])
    if best is None:
        logger.info(f"No available machine for {process} {task.bar_code} — task {task.id} left pending")
        return DispatchOutcome(task_id=task.id, dispatched=False, reason=NO_MACHINE)

    return await _enqueue(db, tenant_id, task, best, best_score, actor_id)


async def dispatch_isolated(
    db: AsyncSession,
    tenant_id: str,
    task: ProductionTask,
    actor_id: Optional[str] = None,
) -> DispatchOutcome:
    """
    auto_dispatch inside a SAVEPOINT. A failure rolls back only this task's
    queue insert; the task stays `pending` and the caller carries on.
    """
    task_id = task.id
    try:
        async with db.begin_nested():
            outcome = await auto_dispatch(db, tenant_id, task, actor_id)
    except Exception as e:
        logger.warning(
            f"Dispatch failed for task {task_id}: {type(e).__name__}: {e}",
            extra={"task_id": task_id},
        )
        await db.refresh(task)
        outcome = DispatchOutcome(task_id=task_id, dispatched=False, reason=INSERT_FAILED)
    tracker.record_dispatch(outcome.dispatched, outcome.reason)
    return outcome


# ─── Manual queue operations ─────────────────────────────────────────────────

async def _get_task(db: AsyncSession, tenant_id: str, task_id: str) -> ProductionTask:
    result = await db.execute(
        select(ProductionTask).where(ProductionTask.id == task_id, ProductionTask.tenant_id == tenant_id)
    )
    task = result.scalar_one_or_none()
    if not task:
        raise TaskNotFound(task_id)
    return task


async def dispatch_task(
    db: AsyncSession,
    tenant_id: str,
    task_id: str,
    actor_id: Optional[str] = None,
) -> DispatchOutcome:
    """Re-dispatch a task left pending (no capable machine at approval time, or a failed insert)."""
    task = await _get_task(db, tenant_id, task_id)
    if task.status in ("running", "done"):
        raise InvalidTransition(task.status, "queued", f"Task already {task.status}")
    try:
        outcome = await auto_dispatch(db, tenant_id, task, actor_id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    tracker.record_dispatch(outcome.dispatched, outcome.reason)
    return outcome


async def _get_machine(db: AsyncSession, tenant_id: str, machine_id: str, lock: bool = False) -> Machine:
    stmt = select(Machine).where(Machine.id == machine_id, Machine.tenant_id == tenant_id)
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    machine = result.scalar_one_or_none()
    if not machine:
        raise MachineNotFound(machine_id)
    return machine


async def _open_slot(db: AsyncSession, machine_id: str, position: int, exclude_id: str) -> None:
    """Push every active item at or after `position` one step back."""
    await db.execute(
        update(MachineQueueItem)
        .where(
            MachineQueueItem.machine_id == machine_id,
            MachineQueueItem.status.in_(ACTIVE_QUEUE_STATUSES),
            MachineQueueItem.position >= position,
            MachineQueueItem.id != exclude_id,
        )
        .values(position=MachineQueueItem.position + 1)
        .execution_options(synchronize_session="fetch")
    )


async def move_queue_item(
    db: AsyncSession,
    tenant_id: str,
    item_id: str,
    target_machine_id: Optional[str] = None,
    target_position: Optional[int] = None,
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Reroute a queued item to another machine and/or slot. An explicit
    position is an insert: items already at or after it move back by one.
    """
    if target_position is not None and target_position < 0:
        raise PipelineError("Queue position must be zero or greater", {"target_position": target_position})

    result = await db.execute(
        select(MachineQueueItem).where(MachineQueueItem.id == item_id, MachineQueueItem.tenant_id == tenant_id)
    )
    item = result.scalar_one_or_none()
    if not item:
        raise QueueItemNotFound(item_id)
    if item.status != "queued":
        raise PipelineError("Can only move queued items", {"queue_item_id": item_id, "status": item.status})

    from_machine = item.machine_id
    changed = False
    try:
        if target_machine_id and target_machine_id != item.machine_id:
            machine = await _get_machine(db, tenant_id, target_machine_id, lock=True)
            if machine.status == "down":
                raise MachineUnavailable(
                    f"Machine {machine.name} is down",
                    {"machine_id": machine.id, "status": machine.status},
                )
            task = await _get_task(db, tenant_id, item.task_id)
            cap = await db.execute(
                select(MachineCapability.id).where(
                    MachineCapability.tenant_id == tenant_id,
                    MachineCapability.machine_id == machine.id,
                    MachineCapability.bar_code == task.bar_code,
                    MachineCapability.process == machine_process(task.task_type),
                ).limit(1)
            )
            if cap.scalar_one_or_none() is None:
                raise CapabilityMismatch(
                    "Target machine lacks capability for this task",
                    {"machine_id": machine.id, "bar_code": task.bar_code},
                )
            if target_position is None:
                item.position = await next_position(db, machine.id)
            else:
                await _open_slot(db, machine.id, target_position, item.id)
                item.position = target_position
            item.machine_id = machine.id
            changed = True
        elif target_position is not None and target_position != item.position:
            await _lock_machine(db, item.machine_id)
            await _open_slot(db, item.machine_id, target_position, item.id)
            item.position = target_position
            changed = True

        if changed:
            await record_event(
                db,
                tenant_id=tenant_id,
                entity_type="production_task",
                entity_id=item.task_id,
                event_type="task_rerouted",
                actor_id=actor_id,
                description=f"Task moved to machine {item.machine_id} position {item.position}",
                metadata={
                    "queue_item_id": item.id,
                    "task_id": item.task_id,
                    "from_machine": from_machine,
                    "to_machine": item.machine_id,
                    "position": item.position,
                },
                suffix=f"{item.machine_id}:{item.position}",
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    return {
        "queue_item_id": item_id,
        "machine_id": item.machine_id,
        "position": item.position,
        "moved": changed,
    }


async def start_queue_item(
    db: AsyncSession,
    tenant_id: str,
    item_id: str,
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Put a queued item on its machine: task and item go to `running`, a
    machine run is opened and becomes the machine's current run.
    """
    result = await db.execute(
        select(MachineQueueItem).where(MachineQueueItem.id == item_id, MachineQueueItem.tenant_id == tenant_id)
    )
    item = result.scalar_one_or_none()
    if not item:
        raise QueueItemNotFound(item_id)
    if item.status != "queued":
        raise PipelineError(f"Queue item already {item.status}", {"queue_item_id": item_id, "status": item.status})

    task = await _get_task(db, tenant_id, item.task_id)
    if task.status in ("running", "done"):
        raise InvalidTransition(task.status, "running", f"Task already {task.status}")

    try:
        machine = await _get_machine(db, tenant_id, item.machine_id, lock=True)
        if machine.current_run_id:
            raise MachineUnavailable(
                "Machine already has an active run",
                {"machine_id": machine.id, "current_run_id": machine.current_run_id},
            )
        if machine.status == "down":
            raise MachineUnavailable(
                f"Machine {machine.name} is down",
                {"machine_id": machine.id, "status": machine.status},
            )

        now = datetime.now(timezone.utc)
        run = MachineRun(
            tenant_id=tenant_id,
            machine_id=machine.id,
            task_id=task.id,
            queue_item_id=item.id,
            process=machine_process(task.task_type),
            status="running",
            started_at=now,
            input_qty=task.qty_required or 0,
            notes=f"Task: {task.mark_number or task.id} | {task.bar_code} | {task.task_type}",
            created_by=actor_id,
        )
        db.add(run)
        await db.flush()

        old_status = machine.status
        task.status = "running"
        item.status = "running"
        machine.status = "running"
        machine.current_run_id = run.id
        machine.last_event_at = now

        await record_event(
            db,
            tenant_id=tenant_id,
            entity_type="production_task",
            entity_id=task.id,
            event_type="task_started",
            actor_id=actor_id,
            description=f"Task started on {machine.name}",
            metadata={
                "task_id": task.id,
                "machine_id": machine.id,
                "machine_run_id": run.id,
                "queue_item_id": item.id,
            },
            suffix=run.id,
        )
        await record_event(
            db,
            tenant_id=tenant_id,
            entity_type="machine",
            entity_id=machine.id,
            event_type="machine_status_changed",
            actor_id=actor_id,
            description=f"Machine {machine.name}: {old_status} → running",
            metadata={"old_status": old_status, "new_status": "running", "machine_run_id": run.id},
            suffix=run.id,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Task {task.id} started on {machine.name} (run {run.id})", extra={"task_id": task.id})
    return {
        "queue_item_id": item.id,
        "task_id": task.id,
        "machine_id": machine.id,
        "machine_run_id": run.id,
        "status": "running",
    }


async def list_queues(db: AsyncSession, tenant_id: str) -> List[Dict[str, Any]]:
    """Active queue items for the tenant in queue order, each with its task."""
    result = await db.execute(
        select(MachineQueueItem, ProductionTask)
        .join(ProductionTask, ProductionTask.id == MachineQueueItem.task_id)
        .where(
            MachineQueueItem.tenant_id == tenant_id,
            MachineQueueItem.status.in_(ACTIVE_QUEUE_STATUSES),
        )
        .order_by(MachineQueueItem.machine_id, MachineQueueItem.position)
    )
    return [
        {
            "id": qi.id,
            "task_id": qi.task_id,
            "machine_id": qi.machine_id,
            "project_id": qi.project_id,
            "work_order_id": qi.work_order_id,
            "position": qi.position,
            "status": qi.status,
            "task": {
                "id": task.id,
                "task_type": task.task_type,
                "bar_code": task.bar_code,
                "grade": task.grade,
                "setup_key": task.setup_key,
                "priority": task.priority,
                "status": task.status,
                "mark_number": task.mark_number,
                "drawing_ref": task.drawing_ref,
                "cut_length_mm": task.cut_length_mm,
                "asa_shape_code": task.asa_shape_code,
                "qty_required": task.qty_required,
                "qty_completed": task.qty_completed,
            },
        }
        for qi, task in result.all()
    ]
