"""Production queue routes: inspect machine queues, re-dispatch, reroute and start tasks."""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from rebarflow.db import get_db
from rebarflow.api.deps import get_tenant_id, require_role
from rebarflow.models.orm_models import User
from rebarflow.models.pipeline_schemas import DispatchOutcomeOut, QueueMoveRequest, QueueStartOut
from rebarflow.services import dispatch_engine

router = APIRouter(prefix="/api/v1/dispatch", tags=["Production Dispatch"])
logger = logging.getLogger("rebarflow-api.dispatch")


@router.get("/queues")
async def list_queues(
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Active (queued / running) items for every machine, in queue order."""
    items = await dispatch_engine.list_queues(db, tenant_id)
    return {"total": len(items), "items": items}


@router.post("/tasks/{task_id}/dispatch", response_model=DispatchOutcomeOut)
async def dispatch_task(
    task_id: str,
    user: User = Depends(require_role("Supervisor")),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Retry auto-dispatch for a task left pending."""
    outcome = await dispatch_engine.dispatch_task(db, tenant_id, task_id, user.id)
    return outcome.to_dict()


@router.post("/queue-items/{item_id}/move")
async def move_queue_item(
    item_id: str,
    req: QueueMoveRequest,
    user: User = Depends(require_role("Supervisor")),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    result = await dispatch_engine.move_queue_item(
        db, tenant_id, item_id,
        target_machine_id=req.target_machine_id,
        target_position=req.target_position,
        actor_id=user.id,
    )
    logger.info(f"Queue item {item_id} moved by user {user.id}: {result}")
    return result


@router.post("/queue-items/{item_id}/start", response_model=QueueStartOut)
async def start_queue_item(
    item_id: str,
    user: User = Depends(require_role("Supervisor")),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Open a machine run for a queued item."""
    return await dispatch_engine.start_queue_item(db, tenant_id, item_id, actor_id=user.id)
