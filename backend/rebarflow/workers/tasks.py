"""
Celery Tasks — extraction runs off the FastAPI event loop.

A failed run leaves the session in `extracting` with an `extraction_failed`
audit event; the task itself does not retry (a reviewer re-triggers or rejects).
"""
import logging
import asyncio
from typing import Optional
from rebarflow.workers.celery_app import celery_app

logger = logging.getLogger("rebarflow-celery")


def _run_async(coro):
    """Run an async coroutine in a sync Celery task context (new event loop)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@celery_app.task(bind=True, name="tasks.run_extraction")
def run_extraction(self, tenant_id: str, session_id: str, file_id: str, actor_id: Optional[str] = None):
    """Extract bar-list rows from an uploaded file and record them on the session."""
    from rebarflow.db import AsyncSessionLocal, engine
    from rebarflow.services import extract_pipeline
    from rebarflow.services.errors import PipelineError

    self.update_state(state="PROGRESS", meta={"step": "Extracting bar list", "session_id": session_id})

    async def _run():
        try:
            async with AsyncSessionLocal() as db:
                return await extract_pipeline.run_extraction(db, tenant_id, session_id, file_id, actor_id)
        finally:
            # Pooled connections are bound to this task's event loop
            await engine.dispose()

    try:
        result = _run_async(_run())
    except PipelineError as e:
        logger.error(f"Extraction failed for session {session_id}: {e}", extra={"session_id": session_id})
        return {"status": "failed", "session_id": session_id, "error": e.to_dict()}

    logger.info(
        f"Extraction complete for session {session_id}: {result['rows_recorded']} rows",
        extra={"session_id": session_id},
    )
    return {"status": "success", **result}
