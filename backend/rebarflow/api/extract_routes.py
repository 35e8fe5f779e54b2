"""
Extraction session routes — drive one drawing submission from upload to
approval. Pipeline errors propagate to the app-level PipelineError handler;
this module only raises HTTPException for request-shape problems.
"""
import os
import shutil
import uuid
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from rebarflow.db import get_db
from rebarflow.api.deps import get_current_user, get_tenant_id, require_role
from rebarflow.models.orm_models import User
from rebarflow.models.pipeline_schemas import (
    ApprovalResult, ExtractedRowOut, MappingResult, RecordExtractionRequest,
    RejectRequest, SessionCreate, SessionOut, ValidationIssueOut, ValidationResult,
)
from rebarflow.services import extract_pipeline as pipeline
from rebarflow.services import state_machine as sm
from rebarflow.services.approval_cascade import approve_session
from rebarflow.services.extraction_client import fetch_file

router = APIRouter(prefix="/api/v1/extract", tags=["Extraction Pipeline"])
logger = logging.getLogger("rebarflow-api.extract")

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
MAX_UPLOAD_BYTES = 50 * 1024 * 1024


class ExtractRequest(BaseModel):
    file_id: str
    background: bool = True


class FileUrlRequest(BaseModel):
    file_url: str
    file_name: Optional[str] = None


def _session_dir(session_id: str) -> str:
    path = os.path.join(UPLOAD_DIR, session_id)
    os.makedirs(path, exist_ok=True)
    return path


def _save_upload(file: UploadFile, dest_dir: str) -> str:
    """Save an uploaded file and return its path."""
    ext = os.path.splitext(file.filename or "")[-1].lower()
    path = os.path.join(dest_dir, f"{uuid.uuid4().hex}{ext}")
    with open(path, "wb") as fh:
        shutil.copyfileobj(file.file, fh)
    return path


async def _register_or_discard(
    db: AsyncSession, tenant_id: str, session_id: str, file_name: str, path: str, size: int,
):
    """Register a stored file; the stored copy is removed if registration fails."""
    try:
        return await pipeline.register_upload(
            db, tenant_id, session_id,
            file_name=file_name, storage_path=path, file_size_bytes=size,
        )
    except Exception:
        os.remove(path)
        raise


# ─── Sessions ────────────────────────────────────────────────────────────────

@router.post("/sessions", response_model=SessionOut, status_code=201)
async def create_session(
    req: SessionCreate,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await pipeline.create_session(
        db, tenant_id,
        name=req.name,
        customer=req.customer,
        site_address=req.site_address,
        manifest_type=req.manifest_type,
        target_eta=req.target_eta,
        actor_id=user.id,
    )


@router.get("/sessions", response_model=List[SessionOut])
async def list_sessions(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Sessions for the current tenant, newest first."""
    return await pipeline.list_sessions(db, tenant_id, status=status, limit=limit, offset=offset)


@router.get("/sessions/{session_id}", response_model=SessionOut)
async def get_session(
    session_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await pipeline.get_session(db, tenant_id, session_id)


@router.get("/sessions/{session_id}/rows", response_model=List[ExtractedRowOut])
async def list_rows(
    session_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await pipeline.list_rows(db, tenant_id, session_id)


@router.get("/sessions/{session_id}/issues", response_model=List[ValidationIssueOut])
async def list_issues(
    session_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await pipeline.list_issues(db, tenant_id, session_id)


# ─── Files & extraction ──────────────────────────────────────────────────────

@router.post("/sessions/{session_id}/files", status_code=201)
async def upload_file(
    session_id: str,
    file: UploadFile = File(...),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Store a drawing / schedule under UPLOAD_DIR/<session_id>/."""
    if not file.filename:
        raise HTTPException(400, "A named file is required.")
    await pipeline.ensure_accepts_uploads(db, tenant_id, session_id)

    path = _save_upload(file, _session_dir(session_id))
    size = os.path.getsize(path)
    if size > MAX_UPLOAD_BYTES:
        os.remove(path)
        raise HTTPException(413, "File exceeds the 50 MB upload limit.")

    raw_file = await _register_or_discard(db, tenant_id, session_id, file.filename, path, size)
    logger.info(f"[{session_id}] File saved: {path}", extra={"session_id": session_id})
    return {"file_id": raw_file.id, "file_name": raw_file.file_name, "file_size_bytes": size}


@router.post("/sessions/{session_id}/files/from-url", status_code=201)
async def upload_file_from_url(
    session_id: str,
    req: FileUrlRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Fetch a file already held in object storage and register it on the session."""
    await pipeline.ensure_accepts_uploads(db, tenant_id, session_id)
    file_name = req.file_name or req.file_url.rstrip("/").rsplit("/", 1)[-1].split("?", 1)[0] or "document"

    content = await fetch_file(req.file_url)
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(413, "File exceeds the 50 MB upload limit.")
    ext = os.path.splitext(file_name)[-1].lower()
    path = os.path.join(_session_dir(session_id), f"{uuid.uuid4().hex}{ext}")
    with open(path, "wb") as fh:
        fh.write(content)

    raw_file = await _register_or_discard(db, tenant_id, session_id, file_name, path, len(content))
    return {"file_id": raw_file.id, "file_name": raw_file.file_name, "file_size_bytes": len(content)}


@router.post("/sessions/{session_id}/extract")
async def extract(
    session_id: str,
    req: ExtractRequest,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Run the extraction collaborator over an uploaded file.
    With `background` (default) the run is handed to the Celery worker and the
    session is left `extracting`; poll GET /sessions/{id} for progress.
    """
    session = await pipeline.get_session(db, tenant_id, session_id)
    await pipeline.get_raw_file(db, tenant_id, req.file_id, session_id=session.id)

    if req.background:
        # A retry of a failed run finds the session already extracting
        if session.status != sm.EXTRACTING:
            await pipeline.begin_extraction(db, tenant_id, session_id, user.id)
        try:
            from rebarflow.workers.tasks import run_extraction
            run_extraction.delay(tenant_id, session_id, req.file_id, user.id)
            logger.info(f"[{session_id}] Extraction task dispatched.", extra={"session_id": session_id})
            return {"session_id": session_id, "status": "extracting", "worker": "queued"}
        except Exception as exc:
            logger.warning(f"[{session_id}] Celery not available ({exc}). Extraction will not run automatically.")
            return {"session_id": session_id, "status": "extracting", "worker": "queued_no_worker"}

    return await pipeline.run_extraction(db, tenant_id, session_id, req.file_id, user.id)


@router.post("/sessions/{session_id}/rows")
async def record_extraction(
    session_id: str,
    req: RecordExtractionRequest,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Entry point for an external extraction collaborator that already has structured rows."""
    return await pipeline.record_extraction(
        db, tenant_id, session_id,
        [row.model_dump(exclude_none=True) for row in req.rows],
        file_id=req.file_id,
        summary=req.summary,
        actor_id=user.id,
    )


# ─── Pipeline stages ─────────────────────────────────────────────────────────

@router.post("/sessions/{session_id}/mapping", response_model=MappingResult)
async def apply_mapping(
    session_id: str,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await pipeline.apply_mapping(db, tenant_id, session_id, user.id)


@router.post("/sessions/{session_id}/validate", response_model=ValidationResult)
async def validate(
    session_id: str,
    user: User = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await pipeline.validate(db, tenant_id, session_id, user.id)


@router.post("/sessions/{session_id}/approve", response_model=ApprovalResult)
async def approve(
    session_id: str,
    user: User = Depends(require_role("Supervisor")),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Materialize the production graph and auto-dispatch every task."""
    return await approve_session(db, tenant_id, session_id, user.id)


@router.post("/sessions/{session_id}/reject")
async def reject(
    session_id: str,
    req: Optional[RejectRequest] = None,
    user: User = Depends(require_role("Supervisor")),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await pipeline.reject(db, tenant_id, session_id, user.id, req.reason if req else None)
