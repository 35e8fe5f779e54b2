"""
Extraction session pipeline — every state-changing operation on a session.

    create_session      → uploaded
    begin_extraction    → extracting
    record_extraction   → extracted      (rows from the extraction collaborator)
    apply_mapping       → mapping        (normalizer + self-learned rules)
    validate            → validated      (issues replaced wholesale)
    approve             → approved       (see approval_cascade)
    reject              → rejected

Each operation is one unit of work: it commits on success and rolls back on
any exception before re-raising. Mapping rules, sessions and rows are always
filtered by the caller's tenant.
"""
import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from rebarflow.models.orm_models import (
    ExtractedRow, ExtractionSession, ExtractRawFile, MappingRule, ValidationIssue,
)
from rebarflow.services import state_machine as sm
from rebarflow.services.audit import record_event
from rebarflow.services.errors import EmptySession, NotFound, PipelineError, SessionNotFound
from rebarflow.services.normalizer import MAPPED_FIELDS, BarNormalizer, normalize_key
from rebarflow.services.perf_monitor import track_stage
from rebarflow.services.validation_engine import validate_rows

logger = logging.getLogger("rebarflow-pipeline")

ROW_COLUMNS = {c.key for c in ExtractedRow.__table__.columns} - {"id", "session_id", "status", "created_at"}


async def _get_session(db: AsyncSession, tenant_id: str, session_id: str) -> ExtractionSession:
    result = await db.execute(
        select(ExtractionSession).where(
            ExtractionSession.id == session_id, ExtractionSession.tenant_id == tenant_id
        )
    )
    session = result.scalar_one_or_none()
    if not session:
        raise SessionNotFound(session_id)
    return session


async def _session_rows(db: AsyncSession, session_id: str) -> List[ExtractedRow]:
    result = await db.execute(
        select(ExtractedRow).where(ExtractedRow.session_id == session_id).order_by(ExtractedRow.row_index)
    )
    return list(result.scalars().all())


# ─── Session lifecycle ───────────────────────────────────────────────────────

@track_stage("create_session")
async def create_session(
    db: AsyncSession,
    tenant_id: str,
    *,
    name: str,
    customer: Optional[str] = None,
    site_address: Optional[str] = None,
    manifest_type: str = "delivery",
    target_eta: Optional[date] = None,
    actor_id: Optional[str] = None,
) -> ExtractionSession:
    session = ExtractionSession(
        tenant_id=tenant_id,
        created_by=actor_id,
        name=name or "Untitled",
        customer=customer,
        site_address=site_address,
        manifest_type=manifest_type,
        target_eta=target_eta,
        status=sm.UPLOADED,
    )
    try:
        db.add(session)
        await db.flush()
        await record_event(
            db,
            tenant_id=tenant_id,
            entity_type="extract_session",
            entity_id=session.id,
            event_type="session_created",
            actor_id=actor_id,
            description=f"Extract session '{session.name}' created",
            metadata={"manifest_type": manifest_type, "customer": customer},
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    # Load server-generated timestamps
    await db.refresh(session)
    logger.info(f"Session {session.id} created", extra={"session_id": session.id})
    return session


async def ensure_accepts_uploads(db: AsyncSession, tenant_id: str, session_id: str) -> ExtractionSession:
    """Raise InvalidTransition for an approved or rejected session."""
    session = await _get_session(db, tenant_id, session_id)
    if session.status in sm.TERMINAL_STATES:
        sm.assert_transition(session.status, sm.EXTRACTING)
    return session


async def register_upload(
    db: AsyncSession,
    tenant_id: str,
    session_id: str,
    *,
    file_name: str,
    storage_path: str,
    file_size_bytes: Optional[int] = None,
) -> ExtractRawFile:
    session = await ensure_accepts_uploads(db, tenant_id, session_id)
    ext = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else "bin"
    raw_file = ExtractRawFile(
        session_id=session.id,
        tenant_id=tenant_id,
        file_name=file_name,
        file_type=ext,
        file_size_bytes=file_size_bytes,
        storage_path=storage_path,
        status="pending",
    )
    try:
        db.add(raw_file)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return raw_file


async def get_raw_file(
    db: AsyncSession,
    tenant_id: str,
    file_id: str,
    session_id: Optional[str] = None,
) -> ExtractRawFile:
    """A file of the tenant; with `session_id`, only one registered on that session."""
    stmt = select(ExtractRawFile).where(ExtractRawFile.id == file_id, ExtractRawFile.tenant_id == tenant_id)
    if session_id is not None:
        stmt = stmt.where(ExtractRawFile.session_id == session_id)
    result = await db.execute(stmt)
    raw_file = result.scalar_one_or_none()
    if not raw_file:
        raise NotFound(f"File {file_id} not found", {"file_id": file_id})
    return raw_file


@track_stage("begin_extraction")
async def begin_extraction(
    db: AsyncSession,
    tenant_id: str,
    session_id: str,
    actor_id: Optional[str] = None,
) -> ExtractionSession:
    session = await _get_session(db, tenant_id, session_id)
    sm.assert_transition(session.status, sm.EXTRACTING)
    try:
        session.status = sm.EXTRACTING
        await record_event(
            db,
            tenant_id=tenant_id,
            entity_type="extract_session",
            entity_id=session.id,
            event_type="extraction_started",
            actor_id=actor_id,
            description=f"Extraction started for '{session.name}'",
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return session


@track_stage("record_extraction")
async def record_extraction(
    db: AsyncSession,
    tenant_id: str,
    session_id: str,
    rows: Iterable[Dict[str, Any]],
    *,
    file_id: Optional[str] = None,
    summary: Optional[Dict[str, Any]] = None,
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Persist raw rows from the extraction collaborator and move the session to `extracted`."""
    session = await _get_session(db, tenant_id, session_id)
    sm.assert_transition(session.status, sm.EXTRACTED)
    rows = list(rows)

    try:
        for index, data in enumerate(rows, start=1):
            values = {k: v for k, v in data.items() if k in ROW_COLUMNS}
            values.setdefault("row_index", index)
            if values.get("quantity") is None:
                values["quantity"] = 0
            db.add(ExtractedRow(
                session_id=session.id,
                file_id=file_id,
                status=sm.ROW_STATUS_FOR[sm.EXTRACTED],
                **values,
            ))
        if file_id:
            await db.execute(
                update(ExtractRawFile)
                .where(ExtractRawFile.id == file_id, ExtractRawFile.session_id == session.id)
                .values(status="extracted")
            )
        session.status = sm.EXTRACTED
        await record_event(
            db,
            tenant_id=tenant_id,
            entity_type="extract_session",
            entity_id=session.id,
            event_type="extraction_recorded",
            actor_id=actor_id,
            actor_type="user" if actor_id else "system",
            description=f"{len(rows)} rows extracted",
            metadata={"row_count": len(rows), "file_id": file_id, "summary": summary or {}},
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Session {session_id}: {len(rows)} rows recorded", extra={"session_id": session_id})
    return {"session_id": session_id, "status": session.status, "rows_recorded": len(rows)}


async def mark_extraction_failed(
    db: AsyncSession,
    tenant_id: str,
    session_id: str,
    error: str,
    *,
    file_id: Optional[str] = None,
) -> None:
    """The session stays `extracting`; a human can retry or reject it."""
    try:
        if file_id:
            await db.execute(
                update(ExtractRawFile)
                .where(ExtractRawFile.id == file_id, ExtractRawFile.tenant_id == tenant_id)
                .values(status="failed")
            )
        await record_event(
            db,
            tenant_id=tenant_id,
            entity_type="extract_session",
            entity_id=session_id,
            event_type="extraction_failed",
            actor_type="system",
            description=f"Extraction failed: {error}",
            metadata={"error": error, "file_id": file_id},
            suffix=file_id,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.warning(f"Extraction failed for session {session_id}: {error}", extra={"session_id": session_id})


async def run_extraction(
    db: AsyncSession,
    tenant_id: str,
    session_id: str,
    file_id: str,
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Read a stored upload, call the extraction collaborator and record its rows."""
    from rebarflow.services import extraction_client

    session = await _get_session(db, tenant_id, session_id)
    raw_file = await get_raw_file(db, tenant_id, file_id, session_id=session.id)
    if session.status == sm.UPLOADED:
        session = await begin_extraction(db, tenant_id, session_id, actor_id)

    context = {
        "name": session.name,
        "customer": session.customer,
        "site_address": session.site_address,
        "manifest_type": session.manifest_type,
    }
    try:
        with open(raw_file.storage_path, "rb") as fh:
            file_bytes = fh.read()
        result = await extraction_client.extract_bar_list(file_bytes, raw_file.file_name, context)
    except Exception as e:
        await mark_extraction_failed(db, tenant_id, session_id, str(e), file_id=file_id)
        raise

    recorded = await record_extraction(
        db, tenant_id, session_id, result["rows"],
        file_id=file_id, summary=result["summary"], actor_id=actor_id,
    )
    return {**recorded, "summary": result["summary"], "truncated": result["truncated"]}


# ─── Mapping ─────────────────────────────────────────────────────────────────

async def load_rules(db: AsyncSession, tenant_id: str) -> List[MappingRule]:
    result = await db.execute(
        select(MappingRule)
        .where(MappingRule.tenant_id == tenant_id)
        .order_by(MappingRule.source_field, MappingRule.source_value)
    )
    return list(result.scalars().all())


async def _upsert_rule(
    db: AsyncSession,
    tenant_id: str,
    source_field: str,
    source_value: str,
    mapped_value: str,
    is_auto: bool,
) -> tuple[MappingRule, bool]:
    """Insert or overwrite the rule for (tenant, field, value). Returns (rule, created)."""
    key = normalize_key(source_value)
    result = await db.execute(
        select(MappingRule).where(
            MappingRule.tenant_id == tenant_id,
            MappingRule.source_field == source_field,
            MappingRule.source_value == key,
        )
    )
    rule = result.scalar_one_or_none()
    if rule:
        rule.mapped_value = mapped_value
        rule.is_auto = is_auto
        return rule, False
    rule = MappingRule(
        tenant_id=tenant_id,
        source_field=source_field,
        source_value=key,
        mapped_value=mapped_value,
        is_auto=is_auto,
    )
    db.add(rule)
    await db.flush()
    return rule, True


@track_stage("apply_mapping")
async def apply_mapping(
    db: AsyncSession,
    tenant_id: str,
    session_id: str,
    actor_id: Optional[str] = None,
) -> Dict[str, int]:
    session = await _get_session(db, tenant_id, session_id)
    sm.assert_transition(session.status, sm.MAPPING)
    rows = await _session_rows(db, session.id)
    if not rows:
        raise EmptySession(session.id, "map")

    rules = await load_rules(db, tenant_id)
    normalizer = BarNormalizer((r.source_field, r.source_value, r.mapped_value) for r in rules)

    auto_created = 0
    try:
        for row in rows:
            mapping = normalizer.map_row(row.bar_size, row.grade, row.shape_type)
            row.bar_size_mapped = mapping.bar_size_mapped
            row.grade_mapped = mapping.grade_mapped
            row.shape_code_mapped = mapping.shape_code_mapped
            row.status = sm.ROW_STATUS_FOR[sm.MAPPING]
            for learned in mapping.learned:
                _, created = await _upsert_rule(
                    db, tenant_id, learned.source_field, learned.source_value, learned.mapped_value, True
                )
                auto_created += int(created)

        session.status = sm.MAPPING
        await record_event(
            db,
            tenant_id=tenant_id,
            entity_type="extract_session",
            entity_id=session.id,
            event_type="mapping_applied",
            actor_id=actor_id,
            description=f"Mapped {len(rows)} rows ({auto_created} new auto-mappings)",
            metadata={"mapped_count": len(rows), "auto_mappings_created": auto_created},
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        f"Session {session_id}: mapped {len(rows)} rows, {auto_created} auto-mappings",
        extra={"session_id": session_id},
    )
    return {"mapped_count": len(rows), "auto_mappings_created": auto_created}


async def upsert_mapping_rule(
    db: AsyncSession,
    tenant_id: str,
    source_field: str,
    source_value: str,
    mapped_value: str,
) -> MappingRule:
    if source_field not in MAPPED_FIELDS:
        raise PipelineError(
            f"Unknown mapping field '{source_field}'",
            {"allowed_fields": list(MAPPED_FIELDS)},
        )
    if not normalize_key(source_value):
        raise PipelineError("source_value must not be blank")
    try:
        rule, _ = await _upsert_rule(db, tenant_id, source_field, source_value, mapped_value.strip(), False)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return rule


async def delete_mapping_rule(db: AsyncSession, tenant_id: str, rule_id: str) -> None:
    result = await db.execute(
        delete(MappingRule).where(MappingRule.id == rule_id, MappingRule.tenant_id == tenant_id)
    )
    if result.rowcount == 0:
        await db.rollback()
        raise NotFound(f"Mapping rule {rule_id} not found", {"rule_id": rule_id})
    await db.commit()


# ─── Validation ──────────────────────────────────────────────────────────────

@track_stage("validate")
async def validate(
    db: AsyncSession,
    tenant_id: str,
    session_id: str,
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    session = await _get_session(db, tenant_id, session_id)
    sm.assert_transition(session.status, sm.VALIDATED)
    rows = await _session_rows(db, session.id)
    if not rows:
        raise EmptySession(session.id, "validate")

    issues, summary = validate_rows(rows)
    try:
        await db.execute(delete(ValidationIssue).where(ValidationIssue.session_id == session.id))
        for issue in issues:
            db.add(ValidationIssue(
                session_id=session.id,
                row_id=issue.row_id,
                field=issue.field,
                severity=issue.severity,
                message=issue.message,
            ))
        for row in rows:
            row.status = sm.ROW_STATUS_FOR[sm.VALIDATED]
        session.status = sm.VALIDATED
        await record_event(
            db,
            tenant_id=tenant_id,
            entity_type="extract_session",
            entity_id=session.id,
            event_type="validated",
            actor_id=actor_id,
            description=(
                f"Validated {summary.total_rows} rows: "
                f"{summary.blockers} blockers, {summary.warnings} warnings"
            ),
            metadata=summary.to_dict(),
            suffix=f"{summary.blockers}:{summary.warnings}",
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    return summary.to_dict()


# ─── Rejection ───────────────────────────────────────────────────────────────

@track_stage("reject")
async def reject(
    db: AsyncSession,
    tenant_id: str,
    session_id: str,
    actor_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> Dict[str, str]:
    session = await _get_session(db, tenant_id, session_id)
    if session.status == sm.REJECTED:
        return {"status": sm.REJECTED}
    sm.assert_transition(session.status, sm.REJECTED)

    previous = session.status
    try:
        session.status = sm.REJECTED
        session.rejected_reason = reason
        await db.execute(
            update(ExtractedRow)
            .where(ExtractedRow.session_id == session.id)
            .values(status=sm.ROW_STATUS_FOR[sm.REJECTED])
        )
        await record_event(
            db,
            tenant_id=tenant_id,
            entity_type="extract_session",
            entity_id=session.id,
            event_type="rejected",
            actor_id=actor_id,
            description=f"Session rejected{f': {reason}' if reason else ''}",
            metadata={"previous_status": previous, "reason": reason},
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Session {session_id} rejected from '{previous}'", extra={"session_id": session_id})
    return {"status": sm.REJECTED}


# ─── Read models ─────────────────────────────────────────────────────────────

async def get_session(db: AsyncSession, tenant_id: str, session_id: str) -> ExtractionSession:
    return await _get_session(db, tenant_id, session_id)


async def list_sessions(
    db: AsyncSession,
    tenant_id: str,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[ExtractionSession]:
    query = select(ExtractionSession).where(ExtractionSession.tenant_id == tenant_id)
    if status:
        query = query.where(ExtractionSession.status == status)
    query = query.order_by(ExtractionSession.created_at.desc(), ExtractionSession.id).limit(limit).offset(offset)
    result = await db.execute(query)
    return list(result.scalars().all())


async def list_rows(db: AsyncSession, tenant_id: str, session_id: str) -> List[ExtractedRow]:
    session = await _get_session(db, tenant_id, session_id)
    return await _session_rows(db, session.id)


async def list_issues(db: AsyncSession, tenant_id: str, session_id: str) -> List[ValidationIssue]:
    session = await _get_session(db, tenant_id, session_id)
    result = await db.execute(
        select(ValidationIssue)
        .where(ValidationIssue.session_id == session.id)
        .order_by(ValidationIssue.severity, ValidationIssue.created_at)
    )
    return list(result.scalars().all())
