"""
test_extract_pipeline.py — Session lifecycle against a SQLite database.

Tests cover:
  - create → record → map → validate happy path and the learned "20 m" rule
  - re-running mapping / validation replaces rather than accumulates
  - stage guards (InvalidTransition, EmptySession) and tenant isolation
  - extraction via the collaborator (mocked) including the failure path
  - tenant mapping-rule maintenance and rejection
"""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from rebarflow.models.orm_models import (
    Event, ExtractedRow, ExtractRawFile, MappingRule, ValidationIssue,
)
from rebarflow.services import extract_pipeline as pipeline
from rebarflow.services.errors import (
    EmptySession, ExtractionError, InvalidTransition, NotFound, PipelineError, SessionNotFound,
)
from rebarflow.services.perf_monitor import tracker


async def count(db, model, *where):
    return await db.scalar(select(func.count()).select_from(model).where(*where))


class TestSessionLifecycle:

    @pytest.mark.asyncio
    async def test_create_session_starts_uploaded(self, db, tenant):
        session = await pipeline.create_session(db, tenant.id, name="Level 2 slab", customer="Acme")
        assert session.status == "uploaded"
        assert session.created_at is not None
        assert await count(db, Event, Event.entity_id == session.id, Event.event_type == "session_created") == 1

    @pytest.mark.asyncio
    async def test_scenario_map_learns_rule_and_validates_clean(self, db, tenant):
        """Row with bar size '20 m' maps to 20M, stores rule '20 M' → '20M', validates clean."""
        session = await pipeline.create_session(db, tenant.id, name="Footings")
        row = {"mark": "F1", "quantity": 6, "bar_size": "20 m", "grade": "400W", "total_length_mm": 2400.0}
        recorded = await pipeline.record_extraction(db, tenant.id, session.id, [row])
        assert recorded == {"session_id": session.id, "status": "extracted", "rows_recorded": 1}

        mapping = await pipeline.apply_mapping(db, tenant.id, session.id)
        assert mapping == {"mapped_count": 1, "auto_mappings_created": 1}

        rule = (await db.execute(select(MappingRule).where(MappingRule.tenant_id == tenant.id))).scalar_one()
        assert (rule.source_field, rule.source_value, rule.mapped_value, rule.is_auto) == (
            "bar_size", "20 M", "20M", True
        )

        summary = await pipeline.validate(db, tenant.id, session.id)
        assert summary == {"total_rows": 1, "blockers": 0, "warnings": 0, "can_approve": True}
        assert (await pipeline.get_session(db, tenant.id, session.id)).status == "validated"

    @pytest.mark.asyncio
    async def test_mapping_rerun_creates_no_new_rules(self, db, seed, tenant):
        session = await seed.session(tenant.id, rows=[{"mark": "F1", "quantity": 2, "bar_size": "20 m"}])
        first = await pipeline.apply_mapping(db, tenant.id, session.id)
        second = await pipeline.apply_mapping(db, tenant.id, session.id)

        assert first["auto_mappings_created"] == 1
        assert second["auto_mappings_created"] == 0
        assert await count(db, MappingRule, MappingRule.tenant_id == tenant.id) == 1
        mapped = await db.scalar(select(ExtractedRow.bar_size_mapped).where(ExtractedRow.session_id == session.id))
        assert mapped == "20M"

    @pytest.mark.asyncio
    async def test_learned_rule_is_reused_by_next_session(self, db, seed, tenant):
        first = await seed.session(tenant.id, rows=[{"mark": "F1", "quantity": 2, "bar_size": "20 m"}])
        await pipeline.apply_mapping(db, tenant.id, first.id)
        second = await seed.session(tenant.id, rows=[{"mark": "F2", "quantity": 2, "bar_size": "20 M"}], name="Walls")

        result = await pipeline.apply_mapping(db, tenant.id, second.id)
        assert result["auto_mappings_created"] == 0
        assert await count(db, MappingRule, MappingRule.source_value == "20 M") == 1

    @pytest.mark.asyncio
    async def test_validation_rerun_replaces_issues(self, db, seed, tenant, valid_row):
        bad = dict(valid_row, quantity=0, bar_size="99M")
        session = await seed.session(tenant.id, rows=[valid_row, bad])
        await pipeline.apply_mapping(db, tenant.id, session.id)

        first = await pipeline.validate(db, tenant.id, session.id)
        second = await pipeline.validate(db, tenant.id, session.id)

        assert first == second == {"total_rows": 2, "blockers": 2, "warnings": 0, "can_approve": False}
        assert await count(db, ValidationIssue, ValidationIssue.session_id == session.id) == 2
        issues = await pipeline.list_issues(db, tenant.id, session.id)
        assert {i.field for i in issues} == {"quantity", "bar_size"}

    @pytest.mark.asyncio
    async def test_quantity_missing_from_extraction_is_stored_as_zero(self, db, seed, tenant):
        session = await seed.session(tenant.id, status="extracting")
        await pipeline.record_extraction(db, tenant.id, session.id, [{"mark": "Q1", "bar_size": "10M"}])
        rows = await pipeline.list_rows(db, tenant.id, session.id)
        assert rows[0].quantity == 0
        assert rows[0].row_index == 1
        assert rows[0].status == "raw"


class TestStageGuards:

    @pytest.mark.asyncio
    async def test_validate_before_mapping_is_refused(self, db, seed, tenant, valid_row):
        session = await seed.session(tenant.id, rows=[valid_row])
        with pytest.raises(InvalidTransition):
            await pipeline.validate(db, tenant.id, session.id)

    @pytest.mark.asyncio
    async def test_mapping_empty_session(self, db, seed, tenant):
        session = await seed.session(tenant.id, rows=[])
        with pytest.raises(EmptySession):
            await pipeline.apply_mapping(db, tenant.id, session.id)
        assert tracker.get_metrics()["error_count_by_stage"] == {"apply_mapping": 1}

    @pytest.mark.asyncio
    async def test_mapping_after_approval_is_refused(self, db, seed, tenant, valid_row):
        session = await seed.session(tenant.id, rows=[valid_row], status="approved")
        with pytest.raises(InvalidTransition):
            await pipeline.apply_mapping(db, tenant.id, session.id)

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_see_session(self, db, seed, tenant, valid_row):
        session = await seed.session(tenant.id, rows=[valid_row])
        intruder = await seed.tenant("Other Shop")
        with pytest.raises(SessionNotFound):
            await pipeline.apply_mapping(db, intruder.id, session.id)
        assert await pipeline.list_sessions(db, intruder.id) == []

    @pytest.mark.asyncio
    async def test_list_sessions_filters_by_status(self, db, seed, tenant):
        await seed.session(tenant.id, status="extracted", name="A")
        await seed.session(tenant.id, status="rejected", name="B")
        names = [s.name for s in await pipeline.list_sessions(db, tenant.id, status="rejected")]
        assert names == ["B"]


class TestRejection:

    @pytest.mark.asyncio
    async def test_reject_marks_rows_and_records_previous_status(self, db, seed, tenant, valid_row):
        session = await seed.session(tenant.id, rows=[valid_row], status="validated")
        result = await pipeline.reject(db, tenant.id, session.id, reason="Wrong revision")

        assert result == {"status": "rejected"}
        statuses = (await db.execute(
            select(ExtractedRow.status).where(ExtractedRow.session_id == session.id)
        )).scalars().all()
        assert statuses == ["rejected"]
        event = (await db.execute(
            select(Event).where(Event.entity_id == session.id, Event.event_type == "rejected")
        )).scalar_one()
        assert event.metadata_json["previous_status"] == "validated"

    @pytest.mark.asyncio
    async def test_reject_twice_is_harmless(self, db, seed, tenant):
        session = await seed.session(tenant.id, status="mapping")
        await pipeline.reject(db, tenant.id, session.id)
        assert await pipeline.reject(db, tenant.id, session.id) == {"status": "rejected"}

    @pytest.mark.asyncio
    async def test_approved_session_cannot_be_rejected(self, db, seed, tenant):
        session = await seed.session(tenant.id, status="approved")
        with pytest.raises(InvalidTransition):
            await pipeline.reject(db, tenant.id, session.id)


class TestExtractionRun:

    @pytest.mark.asyncio
    async def test_run_extraction_records_collaborator_rows(self, db, seed, tenant, tmp_path):
        session = await seed.session(tenant.id, status="uploaded")
        path = tmp_path / "schedule.pdf"
        path.write_bytes(b"%PDF-1.4")
        raw_file = await pipeline.register_upload(
            db, tenant.id, session.id, file_name="schedule.pdf", storage_path=str(path), file_size_bytes=8,
        )
        fake = AsyncMock(return_value={
            "rows": [{"row_index": 1, "mark": "A1", "quantity": 3, "bar_size": "15M"}],
            "summary": {"total_items": 1},
            "truncated": False,
        })
        with patch("rebarflow.services.extraction_client.extract_bar_list", fake):
            result = await pipeline.run_extraction(db, tenant.id, session.id, raw_file.id)

        assert result["status"] == "extracted"
        assert result["rows_recorded"] == 1
        assert fake.await_args.args[1] == "schedule.pdf"
        assert fake.await_args.args[2]["customer"] == "Acme Construction"
        file_status = await db.scalar(select(ExtractRawFile.status).where(ExtractRawFile.id == raw_file.id))
        assert file_status == "extracted"

    @pytest.mark.asyncio
    async def test_failed_extraction_leaves_session_extracting(self, db, seed, tenant, tmp_path):
        session = await seed.session(tenant.id, status="uploaded")
        path = tmp_path / "scan.png"
        path.write_bytes(b"\x89PNG")
        raw_file = await pipeline.register_upload(
            db, tenant.id, session.id, file_name="scan.png", storage_path=str(path),
        )
        fake = AsyncMock(side_effect=ExtractionError("All extraction models failed"))
        with patch("rebarflow.services.extraction_client.extract_bar_list", fake):
            with pytest.raises(ExtractionError):
                await pipeline.run_extraction(db, tenant.id, session.id, raw_file.id)

        assert (await pipeline.get_session(db, tenant.id, session.id)).status == "extracting"
        assert await count(db, Event, Event.entity_id == session.id, Event.event_type == "extraction_failed") == 1
        file_status = await db.scalar(select(ExtractRawFile.status).where(ExtractRawFile.id == raw_file.id))
        assert file_status == "failed"

    @pytest.mark.asyncio
    async def test_unreadable_spreadsheet_marks_file_failed(self, db, seed, tenant, tmp_path):
        session = await seed.session(tenant.id, status="uploaded")
        path = tmp_path / "bad.xlsx"
        path.write_bytes(b"this is not a workbook")
        raw_file = await pipeline.register_upload(
            db, tenant.id, session.id, file_name="bad.xlsx", storage_path=str(path),
        )

        with pytest.raises(ExtractionError):
            await pipeline.run_extraction(db, tenant.id, session.id, raw_file.id)

        assert (await pipeline.get_session(db, tenant.id, session.id)).status == "extracting"
        assert await count(db, Event, Event.entity_id == session.id, Event.event_type == "extraction_failed") == 1
        file_status = await db.scalar(select(ExtractRawFile.status).where(ExtractRawFile.id == raw_file.id))
        assert file_status == "failed"

    @pytest.mark.asyncio
    async def test_unexpected_collaborator_error_is_recorded(self, db, seed, tenant, tmp_path):
        session = await seed.session(tenant.id, status="uploaded")
        path = tmp_path / "scan.png"
        path.write_bytes(b"\x89PNG")
        raw_file = await pipeline.register_upload(
            db, tenant.id, session.id, file_name="scan.png", storage_path=str(path),
        )
        fake = AsyncMock(side_effect=ValueError("unexpected payload"))
        with patch("rebarflow.services.extraction_client.extract_bar_list", fake):
            with pytest.raises(ValueError):
                await pipeline.run_extraction(db, tenant.id, session.id, raw_file.id)

        file_status = await db.scalar(select(ExtractRawFile.status).where(ExtractRawFile.id == raw_file.id))
        assert file_status == "failed"
        assert await count(db, Event, Event.entity_id == session.id, Event.event_type == "extraction_failed") == 1

    @pytest.mark.asyncio
    async def test_file_of_another_session_is_not_found(self, db, seed, tenant, tmp_path):
        owner = await seed.session(tenant.id, status="uploaded", name="Owner")
        other = await seed.session(tenant.id, status="uploaded", name="Other")
        path = tmp_path / "schedule.pdf"
        path.write_bytes(b"%PDF-1.4")
        raw_file = await pipeline.register_upload(
            db, tenant.id, owner.id, file_name="schedule.pdf", storage_path=str(path),
        )
        fake = AsyncMock()
        with patch("rebarflow.services.extraction_client.extract_bar_list", fake):
            with pytest.raises(NotFound):
                await pipeline.run_extraction(db, tenant.id, other.id, raw_file.id)

        fake.assert_not_awaited()
        assert (await pipeline.get_session(db, tenant.id, other.id)).status == "uploaded"

    @pytest.mark.asyncio
    async def test_unknown_file(self, db, seed, tenant):
        session = await seed.session(tenant.id, status="uploaded")
        with pytest.raises(NotFound):
            await pipeline.run_extraction(db, tenant.id, session.id, "missing")


class TestMappingRules:

    @pytest.mark.asyncio
    async def test_user_rule_overwrites_auto_rule(self, db, seed, tenant):
        session = await seed.session(tenant.id, rows=[{"mark": "F1", "quantity": 2, "bar_size": "20 m"}])
        await pipeline.apply_mapping(db, tenant.id, session.id)

        rule = await pipeline.upsert_mapping_rule(db, tenant.id, "bar_size", " 20 m ", "25M")

        assert rule.source_value == "20 M"
        assert rule.mapped_value == "25M"
        assert rule.is_auto is False
        assert await count(db, MappingRule, MappingRule.tenant_id == tenant.id) == 1

    @pytest.mark.asyncio
    async def test_unknown_field_is_refused(self, db, tenant):
        with pytest.raises(PipelineError):
            await pipeline.upsert_mapping_rule(db, tenant.id, "colour", "red", "RED")

    @pytest.mark.asyncio
    async def test_delete_rule_is_tenant_scoped(self, db, seed, tenant):
        rule = await pipeline.upsert_mapping_rule(db, tenant.id, "grade", "G60", "400W")
        other = await seed.tenant("Other Shop")
        with pytest.raises(NotFound):
            await pipeline.delete_mapping_rule(db, other.id, rule.id)
        await pipeline.delete_mapping_rule(db, tenant.id, rule.id)
        assert await pipeline.load_rules(db, tenant.id) == []
