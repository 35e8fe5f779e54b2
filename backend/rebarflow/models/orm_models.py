"""ORM Models for the rebar extraction-to-production pipeline — SQLAlchemy 2.0"""
import uuid
from datetime import datetime, date
from typing import Optional
from sqlalchemy import (
    String, Text, Boolean, Integer, Float, DateTime, Date,
    ForeignKey, UniqueConstraint, Index, text
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from rebarflow.db import Base, FlexJSON


def gen_uuid():
    return str(uuid.uuid4())


# ── TENANTS & AUTH ────────────────────────────────────────────────────────────
class Tenant(Base):
    __tablename__ = "tenants"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[Optional[str]] = mapped_column(String(100), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Role(Base):
    __tablename__ = "roles"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("tenants.id"))
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    role_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("roles.id"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ── EXTRACTION SESSIONS ───────────────────────────────────────────────────────
class ExtractionSession(Base):
    """
    One drawing submission moving through the extraction pipeline.
    Status state machine:
    uploaded → extracting → extracted → mapping → validated → approved | rejected
    Never deleted; rejection is a status.
    """
    __tablename__ = "extract_sessions"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(36))
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="Untitled")
    customer: Mapped[Optional[str]] = mapped_column(String(255))
    site_address: Mapped[Optional[str]] = mapped_column(Text)
    manifest_type: Mapped[str] = mapped_column(String(20), default="delivery")  # delivery | pickup
    target_eta: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="uploaded", index=True)
    # Back-reference set by the approval cascade (no FK: barlists.session_id points the other way)
    barlist_id: Mapped[Optional[str]] = mapped_column(String(36))
    approved_by: Mapped[Optional[str]] = mapped_column(String(36))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    rejected_reason: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ExtractRawFile(Base):
    __tablename__ = "extract_raw_files"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("extract_sessions.id"), nullable=False, index=True)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_type: Mapped[str] = mapped_column(String(20), default="bin")
    file_size_bytes: Mapped[Optional[int]] = mapped_column(Integer)
    storage_path: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | extracted | failed
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ExtractedRow(Base):
    """
    One bar-list line as returned by the extraction collaborator.
    *_mapped columns are written by the normalizer and only trustworthy
    once the session reached `mapping`.
    """
    __tablename__ = "extract_rows"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("extract_sessions.id"), nullable=False, index=True)
    file_id: Mapped[Optional[str]] = mapped_column(String(36))
    row_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    dwg: Mapped[Optional[str]] = mapped_column(String(100))
    item_number: Mapped[Optional[str]] = mapped_column(String(50))
    grade: Mapped[Optional[str]] = mapped_column(String(50))
    grade_mapped: Mapped[Optional[str]] = mapped_column(String(50))
    mark: Mapped[Optional[str]] = mapped_column(String(100))
    quantity: Mapped[Optional[int]] = mapped_column(Integer)
    bar_size: Mapped[Optional[str]] = mapped_column(String(50))
    bar_size_mapped: Mapped[Optional[str]] = mapped_column(String(50))
    shape_type: Mapped[Optional[str]] = mapped_column(String(50))
    shape_code_mapped: Mapped[Optional[str]] = mapped_column(String(50))
    total_length_mm: Mapped[Optional[float]] = mapped_column(Float)
    # Bending dimensions (mm), ASA lettering
    dim_a: Mapped[Optional[float]] = mapped_column(Float)
    dim_b: Mapped[Optional[float]] = mapped_column(Float)
    dim_c: Mapped[Optional[float]] = mapped_column(Float)
    dim_d: Mapped[Optional[float]] = mapped_column(Float)
    dim_e: Mapped[Optional[float]] = mapped_column(Float)
    dim_f: Mapped[Optional[float]] = mapped_column(Float)
    dim_g: Mapped[Optional[float]] = mapped_column(Float)
    dim_h: Mapped[Optional[float]] = mapped_column(Float)
    dim_j: Mapped[Optional[float]] = mapped_column(Float)
    dim_k: Mapped[Optional[float]] = mapped_column(Float)
    dim_o: Mapped[Optional[float]] = mapped_column(Float)
    dim_r: Mapped[Optional[float]] = mapped_column(Float)
    weight_kg: Mapped[Optional[float]] = mapped_column(Float)
    customer: Mapped[Optional[str]] = mapped_column(String(255))
    reference: Mapped[Optional[str]] = mapped_column(String(255))
    address: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="raw")  # raw | mapped | validated | approved | rejected
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class MappingRule(Base):
    """Tenant dictionary: (source_field, source_value) → mapped_value. Last writer wins."""
    __tablename__ = "extract_mapping"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False)
    source_field: Mapped[str] = mapped_column(String(50), nullable=False)   # bar_size | grade | shape_type
    source_value: Mapped[str] = mapped_column(String(100), nullable=False)  # upper-cased, trimmed
    mapped_value: Mapped[str] = mapped_column(String(100), nullable=False)
    is_auto: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    __table_args__ = (
        UniqueConstraint("tenant_id", "source_field", "source_value", name="uq_extract_mapping_key"),
    )


class ValidationIssue(Base):
    """Derived snapshot: replaced wholesale on every validation run."""
    __tablename__ = "extract_errors"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("extract_sessions.id"), nullable=False, index=True)
    row_id: Mapped[Optional[str]] = mapped_column(String(36))
    field: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)  # blocker | warning
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ── PRODUCTION GRAPH ──────────────────────────────────────────────────────────
class Customer(Base):
    __tablename__ = "customers"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Project(Base):
    __tablename__ = "projects"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("customers.id"))
    site_address: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(50), default="active")
    source_session_id: Mapped[Optional[str]] = mapped_column(String(36))
    created_by: Mapped[Optional[str]] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Barlist(Base):
    __tablename__ = "barlists"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False)
    project_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("projects.id"))
    session_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("extract_sessions.id"), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="draft")  # draft | approved | in_production
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class BarlistItem(Base):
    __tablename__ = "barlist_items"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    barlist_id: Mapped[str] = mapped_column(String(36), ForeignKey("barlists.id"), nullable=False, index=True)
    mark: Mapped[Optional[str]] = mapped_column(String(100))
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    bar_size: Mapped[Optional[str]] = mapped_column(String(50))
    grade: Mapped[Optional[str]] = mapped_column(String(50))
    shape_code: Mapped[Optional[str]] = mapped_column(String(50))
    cut_length_mm: Mapped[Optional[float]] = mapped_column(Float)
    dimensions: Mapped[Optional[dict]] = mapped_column(FlexJSON)
    source_row_id: Mapped[Optional[str]] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Order(Base):
    __tablename__ = "orders"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False)
    order_number: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("customers.id"))
    source_session_id: Mapped[Optional[str]] = mapped_column(String(36))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class WorkOrder(Base):
    __tablename__ = "work_orders"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False)
    work_order_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), nullable=False)
    barlist_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("barlists.id"))
    project_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("projects.id"))
    status: Mapped[str] = mapped_column(String(20), default="pending")
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CutPlan(Base):
    __tablename__ = "cut_plans"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False)
    project_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("projects.id"))
    work_order_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("work_orders.id"))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(36))
    status: Mapped[str] = mapped_column(String(20), default="draft")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CutPlanItem(Base):
    __tablename__ = "cut_plan_items"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    cut_plan_id: Mapped[str] = mapped_column(String(36), ForeignKey("cut_plans.id"), nullable=False, index=True)
    work_order_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("work_orders.id"))
    bar_code: Mapped[str] = mapped_column(String(50), nullable=False)
    qty_bars: Mapped[int] = mapped_column(Integer, default=1)
    total_pieces: Mapped[int] = mapped_column(Integer, default=1)
    cut_length_mm: Mapped[float] = mapped_column(Float, default=0)
    mark_number: Mapped[Optional[str]] = mapped_column(String(100))
    drawing_ref: Mapped[Optional[str]] = mapped_column(String(100))
    bend_type: Mapped[str] = mapped_column(String(20), default="straight")  # straight | bend
    asa_shape_code: Mapped[Optional[str]] = mapped_column(String(50))
    bend_dimensions: Mapped[Optional[dict]] = mapped_column(FlexJSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ProductionTask(Base):
    __tablename__ = "production_tasks"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    project_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("projects.id"))
    work_order_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("work_orders.id"))
    barlist_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("barlists.id"))
    cut_plan_item_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("cut_plan_items.id"))
    task_type: Mapped[str] = mapped_column(String(20), nullable=False)  # cut | bend | spiral | load | other
    bar_code: Mapped[str] = mapped_column(String(50), nullable=False)
    grade: Mapped[Optional[str]] = mapped_column(String(50))
    setup_key: Mapped[str] = mapped_column(String(100), nullable=False)
    qty_required: Mapped[int] = mapped_column(Integer, default=0)
    qty_completed: Mapped[int] = mapped_column(Integer, default=0)
    mark_number: Mapped[Optional[str]] = mapped_column(String(100))
    drawing_ref: Mapped[Optional[str]] = mapped_column(String(100))
    cut_length_mm: Mapped[Optional[float]] = mapped_column(Float)
    asa_shape_code: Mapped[Optional[str]] = mapped_column(String(50))
    bend_dimensions: Mapped[Optional[dict]] = mapped_column(FlexJSON)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)  # pending | queued | running | done
    locked_to_machine_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("machines.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ── SHOP FLOOR ────────────────────────────────────────────────────────────────
class Machine(Base):
    __tablename__ = "machines"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    machine_type: Mapped[Optional[str]] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="idle")  # idle | running | blocked | down
    current_run_id: Mapped[Optional[str]] = mapped_column(String(36))
    last_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class MachineCapability(Base):
    """Static capacity declaration; read by the dispatcher, never written by the pipeline."""
    __tablename__ = "machine_capabilities"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False)
    machine_id: Mapped[str] = mapped_column(String(36), ForeignKey("machines.id"), nullable=False, index=True)
    process: Mapped[str] = mapped_column(String(20), nullable=False)  # cut | bend | load | other
    bar_code: Mapped[str] = mapped_column(String(50), nullable=False)
    max_bars: Mapped[int] = mapped_column(Integer, default=1)
    __table_args__ = (
        UniqueConstraint("machine_id", "process", "bar_code", name="uq_machine_capability"),
    )


class MachineQueueItem(Base):
    __tablename__ = "machine_queue_items"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False)
    task_id: Mapped[str] = mapped_column(String(36), ForeignKey("production_tasks.id"), nullable=False)
    machine_id: Mapped[str] = mapped_column(String(36), ForeignKey("machines.id"), nullable=False)
    project_id: Mapped[Optional[str]] = mapped_column(String(36))
    work_order_id: Mapped[Optional[str]] = mapped_column(String(36))
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued")  # queued | running | done | cancelled
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    __table_args__ = (
        Index("ix_queue_machine_status", "machine_id", "status"),
        # A task can sit in at most one active queue
        Index(
            "idx_queue_task_active", "task_id", unique=True,
            postgresql_where=text("status IN ('queued', 'running')"),
            sqlite_where=text("status IN ('queued', 'running')"),
        ),
    )


class MachineRun(Base):
    """One stretch of work on a machine; machines.current_run_id points at the open one."""
    __tablename__ = "machine_runs"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    machine_id: Mapped[str] = mapped_column(String(36), ForeignKey("machines.id"), nullable=False, index=True)
    task_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("production_tasks.id"))
    queue_item_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("machine_queue_items.id"))
    process: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")  # running | done | aborted
    input_qty: Mapped[int] = mapped_column(Integer, default=0)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[Optional[str]] = mapped_column(String(36))


# ── AUDIT TRAIL ───────────────────────────────────────────────────────────────
class Event(Base):
    """Append-only audit record. dedupe_key makes retried writes a no-op."""
    __tablename__ = "events"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(36))
    actor_type: Mapped[str] = mapped_column(String(20), default="user")  # user | system
    description: Mapped[Optional[str]] = mapped_column(Text)
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", FlexJSON)
    dedupe_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
