"""
Approval Cascade — turns a validated extraction session into production work.

On approval, in ONE database transaction:
  1. resolve/create Project            (reuse the linked barlist's project)
  2. resolve/create Barlist            (back-referenced to the session, approved)
  3. BarlistItem per row
  4. resolve/create Customer           (case-insensitive name match, else placeholder)
  5. Order                             (system-generated, notes the session)
  6. WorkOrder                         (human-readable WO number)
  7. CutPlan + CutPlanItem per row     (bend vs straight from the mapped shape)
  8. ProductionTask per item, each auto-dispatched in its own SAVEPOINT
  9. barlist → in_production, session + rows → approved, audit summary

The session is claimed with `UPDATE … WHERE status = 'validated'` before any
write, so a concurrent retry finds zero rows and fails with InvalidTransition
instead of building a second production graph. Any failure after the claim
rolls everything back (the session stays `validated`) and surfaces as
CascadeWriteFailure with the identifiers generated so far.
"""
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from rebarflow.models.orm_models import (
    Barlist, BarlistItem, Customer, CutPlan, CutPlanItem, ExtractedRow,
    ExtractionSession, Order, ProductionTask, Project, ValidationIssue, WorkOrder,
)
from rebarflow.services import state_machine as sm
from rebarflow.services.audit import record_event
from rebarflow.services.dispatch_engine import dispatch_isolated, DispatchOutcome
from rebarflow.services.errors import (
    CascadeWriteFailure, EmptySession, InvalidTransition, PipelineError,
    SessionNotFound, ValidationBlocked,
)
from rebarflow.services.normalizer import DEFAULT_GRADE
from rebarflow.services.perf_monitor import track_stage
from rebarflow.services.validation_engine import BLOCKER

logger = logging.getLogger("rebarflow-cascade")

FALLBACK_BAR_CODE = "10M"

# Row column → ASA dimension letter
DIMENSION_FIELDS = [
    ("dim_a", "A"), ("dim_b", "B"), ("dim_c", "C"), ("dim_d", "D"),
    ("dim_e", "E"), ("dim_f", "F"), ("dim_g", "G"), ("dim_h", "H"),
    ("dim_j", "J"), ("dim_k", "K"), ("dim_o", "O"), ("dim_r", "R"),
]

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _base36(n: int) -> str:
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = _BASE36[r] + out
    return out or "0"


def generate_number(prefix: str) -> str:
    """e.g. WO-M2K9Q1XA7F: millisecond timestamp in base 36 plus a random byte."""
    return f"{prefix}-{_base36(int(time.time() * 1000))}{secrets.token_hex(1).upper()}"


def build_dimensions(row: Any) -> Optional[Dict[str, float]]:
    """Named bend dimensions with absent and zero values omitted; None when empty."""
    dims: Dict[str, float] = {}
    for column, label in DIMENSION_FIELDS:
        value = getattr(row, column, None)
        if value is not None and value != 0:
            dims[label] = float(value)
    return dims or None


def bend_type_for(row: Any) -> str:
    return "bend" if getattr(row, "shape_code_mapped", None) else "straight"


def setup_key_for(bar_code: str, bend_type: str) -> str:
    return f"{bar_code}_{bend_type}"


async def _load_session(db: AsyncSession, tenant_id: str, session_id: str) -> ExtractionSession:
    result = await db.execute(
        select(ExtractionSession).where(
            ExtractionSession.id == session_id, ExtractionSession.tenant_id == tenant_id
        )
    )
    session = result.scalar_one_or_none()
    if not session:
        raise SessionNotFound(session_id)
    return session


async def _count_blockers(db: AsyncSession, session_id: str) -> int:
    result = await db.execute(
        select(func.count(ValidationIssue.id)).where(
            ValidationIssue.session_id == session_id, ValidationIssue.severity == BLOCKER
        )
    )
    return result.scalar_one()


async def _claim_session(db: AsyncSession, session: ExtractionSession, actor_id: Optional[str]) -> None:
    result = await db.execute(
        update(ExtractionSession)
        .where(ExtractionSession.id == session.id, ExtractionSession.status == sm.VALIDATED)
        .values(
            status=sm.APPROVED,
            approved_by=actor_id,
            approved_at=datetime.now(timezone.utc),
        )
    )
    if result.rowcount != 1:
        raise InvalidTransition(
            sm.VALIDATED, sm.APPROVED, "Session is no longer awaiting approval (concurrent approval?)"
        )


async def _resolve_project(
    db: AsyncSession, session: ExtractionSession, actor_id: Optional[str]
) -> tuple[Project, Optional[Barlist], bool]:
    barlist = None
    if session.barlist_id:
        barlist = await db.get(Barlist, session.barlist_id)
        if barlist and barlist.project_id:
            project = await db.get(Project, barlist.project_id)
            if project:
                return project, barlist, False

    project = Project(
        tenant_id=session.tenant_id,
        name=session.name or session.customer or "Untitled",
        site_address=session.site_address,
        source_session_id=session.id,
        created_by=actor_id,
    )
    db.add(project)
    await db.flush()
    await record_event(
        db,
        tenant_id=session.tenant_id,
        entity_type="project",
        entity_id=project.id,
        event_type="project_created",
        actor_id=actor_id,
        description=f"Project '{project.name}' created from extract session {session.name}",
        metadata={"session_id": session.id},
    )
    return project, barlist, True


async def _resolve_customer(
    db: AsyncSession, session: ExtractionSession, rows: List[ExtractedRow]
) -> Customer:
    name = (session.customer or (rows[0].customer if rows else None) or "").strip()
    if name:
        result = await db.execute(
            select(Customer)
            .where(Customer.tenant_id == session.tenant_id, func.lower(Customer.name) == name.lower())
            .order_by(Customer.created_at)
            .limit(1)
        )
        existing = result.scalar_one_or_none()
        if existing:
            return existing
    customer = Customer(tenant_id=session.tenant_id, name=name or session.name or "Unknown")
    db.add(customer)
    await db.flush()
    return customer


@track_stage("approve")
async def approve_session(
    db: AsyncSession,
    tenant_id: str,
    session_id: str,
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    session = await _load_session(db, tenant_id, session_id)
    if session.status in sm.TERMINAL_STATES:
        sm.assert_transition(session.status, sm.APPROVED)

    blockers = await _count_blockers(db, session.id)
    if blockers:
        raise ValidationBlocked(blockers)

    rows_result = await db.execute(
        select(ExtractedRow).where(ExtractedRow.session_id == session.id).order_by(ExtractedRow.row_index)
    )
    rows = list(rows_result.scalars().all())
    if not rows:
        raise EmptySession(session.id, "approve")

    sm.assert_transition(session.status, sm.APPROVED)

    created: Dict[str, Any] = {}
    step = "claim"
    try:
        await _claim_session(db, session, actor_id)

        step = "project"
        project, barlist, project_created = await _resolve_project(db, session, actor_id)
        created["project_id"] = project.id

        step = "barlist"
        if barlist is None:
            barlist = Barlist(
                tenant_id=tenant_id,
                project_id=project.id,
                session_id=session.id,
                name=session.name,
            )
            db.add(barlist)
        elif not barlist.project_id:
            barlist.project_id = project.id
        barlist.status = "approved"
        await db.flush()
        session.barlist_id = barlist.id
        created["barlist_id"] = barlist.id

        step = "barlist_items"
        for row in rows:
            db.add(BarlistItem(
                barlist_id=barlist.id,
                mark=row.mark,
                quantity=row.quantity or 0,
                bar_size=row.bar_size_mapped or row.bar_size,
                grade=row.grade_mapped or row.grade,
                shape_code=row.shape_code_mapped,
                cut_length_mm=row.total_length_mm,
                dimensions=build_dimensions(row),
                source_row_id=row.id,
            ))
        await db.flush()

        step = "customer"
        customer = await _resolve_customer(db, session, rows)
        if not project.customer_id:
            project.customer_id = customer.id
        created["customer_id"] = customer.id

        step = "order"
        order = Order(
            tenant_id=tenant_id,
            order_number=generate_number("ORD"),
            customer_id=customer.id,
            source_session_id=session.id,
            notes=f"Auto-created from extract session: {session.name}",
            status="pending",
        )
        db.add(order)
        await db.flush()
        created["order_id"] = order.id

        step = "work_order"
        work_order = WorkOrder(
            tenant_id=tenant_id,
            work_order_number=generate_number("WO"),
            order_id=order.id,
            barlist_id=barlist.id,
            project_id=project.id,
            status="pending",
            notes=f"Extract session: {session.name} · {len(rows)} items",
        )
        db.add(work_order)
        await db.flush()
        created["work_order_id"] = work_order.id
        created["work_order_number"] = work_order.work_order_number

        step = "cut_plan"
        cut_plan = CutPlan(
            tenant_id=tenant_id,
            project_id=project.id,
            work_order_id=work_order.id,
            name=session.name,
            created_by=actor_id,
            status="draft",
        )
        db.add(cut_plan)
        await db.flush()
        created["cut_plan_id"] = cut_plan.id

        cut_items: List[tuple[CutPlanItem, ExtractedRow]] = []
        for row in rows:
            item = CutPlanItem(
                cut_plan_id=cut_plan.id,
                work_order_id=work_order.id,
                bar_code=row.bar_size_mapped or row.bar_size or FALLBACK_BAR_CODE,
                qty_bars=row.quantity or 1,
                total_pieces=row.quantity or 1,
                cut_length_mm=row.total_length_mm or 0,
                mark_number=row.mark,
                drawing_ref=row.dwg,
                bend_type=bend_type_for(row),
                asa_shape_code=row.shape_code_mapped,
                bend_dimensions=build_dimensions(row),
            )
            db.add(item)
            cut_items.append((item, row))
        await db.flush()

        step = "production_tasks"
        tasks: List[ProductionTask] = []
        for item, row in cut_items:
            task = ProductionTask(
                tenant_id=tenant_id,
                project_id=project.id,
                work_order_id=work_order.id,
                barlist_id=barlist.id,
                cut_plan_item_id=item.id,
                task_type="bend" if item.bend_type == "bend" else "cut",
                bar_code=item.bar_code,
                grade=row.grade_mapped or DEFAULT_GRADE,
                setup_key=setup_key_for(item.bar_code, item.bend_type),
                qty_required=item.total_pieces,
                mark_number=item.mark_number,
                drawing_ref=item.drawing_ref,
                cut_length_mm=item.cut_length_mm,
                asa_shape_code=item.asa_shape_code,
                bend_dimensions=item.bend_dimensions,
                status="pending",
            )
            db.add(task)
            tasks.append(task)
        await db.flush()

        step = "dispatch"
        outcomes: List[DispatchOutcome] = []
        for task in tasks:
            outcomes.append(await dispatch_isolated(db, tenant_id, task, actor_id))
        dispatched = sum(1 for o in outcomes if o.dispatched)

        step = "finalize"
        barlist.status = "in_production"
        await db.execute(
            update(ExtractedRow)
            .where(ExtractedRow.session_id == session.id)
            .values(status=sm.ROW_STATUS_FOR[sm.APPROVED])
        )
        await record_event(
            db,
            tenant_id=tenant_id,
            entity_type="extract_session",
            entity_id=session.id,
            event_type="approved",
            actor_id=actor_id,
            description=(
                f"Approved {len(rows)} items → WO {work_order.work_order_number} "
                f"({dispatched}/{len(tasks)} tasks dispatched)"
            ),
            metadata={
                **created,
                "item_count": len(rows),
                "tasks_created": len(tasks),
                "tasks_dispatched": dispatched,
                "tasks_pending": [o.task_id for o in outcomes if not o.dispatched],
                "project_created": project_created,
            },
        )
        await db.commit()
    except PipelineError:
        await db.rollback()
        raise
    except Exception as e:
        await db.rollback()
        logger.error(
            f"Approval cascade failed for session {session_id} at step '{step}': {e}",
            extra={"session_id": session_id},
        )
        raise CascadeWriteFailure(step, created, e) from e

    logger.info(
        f"Session {session_id} approved: WO {created['work_order_number']}, "
        f"{len(tasks)} tasks, {dispatched} dispatched",
        extra={"session_id": session_id},
    )
    return {
        "order_id": created["order_id"],
        "work_order_id": created["work_order_id"],
        "cut_plan_id": created["cut_plan_id"],
        "barlist_id": created["barlist_id"],
        "project_id": created["project_id"],
        "work_order_number": created["work_order_number"],
        "items_approved": len(rows),
        "tasks_created": len(tasks),
        "tasks_dispatched": dispatched,
        "undispatched_tasks": [o.to_dict() for o in outcomes if not o.dispatched],
    }
