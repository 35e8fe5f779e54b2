"""
Request / response contracts for the extraction pipeline API.

Responses are built from ORM rows with `model_validate(obj)` (from_attributes),
so field names mirror the ORM columns.
"""
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


class SessionCreate(BaseModel):
    name: str = Field("Untitled", max_length=255)
    customer: Optional[str] = None
    site_address: Optional[str] = None
    manifest_type: Literal["delivery", "pickup"] = "delivery"
    target_eta: Optional[date] = None


class SessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    customer: Optional[str] = None
    site_address: Optional[str] = None
    manifest_type: str
    target_eta: Optional[date] = None
    status: str
    barlist_id: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_reason: Optional[str] = None
    created_at: Optional[datetime] = None


class ExtractedRowIn(BaseModel):
    """One raw row as produced by the extraction collaborator."""
    row_index: Optional[int] = None
    dwg: Optional[str] = None
    item_number: Optional[str] = None
    grade: Optional[str] = None
    mark: Optional[str] = None
    quantity: Optional[int] = None
    bar_size: Optional[str] = None
    shape_type: Optional[str] = None
    total_length_mm: Optional[float] = None
    dim_a: Optional[float] = None
    dim_b: Optional[float] = None
    dim_c: Optional[float] = None
    dim_d: Optional[float] = None
    dim_e: Optional[float] = None
    dim_f: Optional[float] = None
    dim_g: Optional[float] = None
    dim_h: Optional[float] = None
    dim_j: Optional[float] = None
    dim_k: Optional[float] = None
    dim_o: Optional[float] = None
    dim_r: Optional[float] = None
    weight_kg: Optional[float] = None
    customer: Optional[str] = None
    reference: Optional[str] = None
    address: Optional[str] = None


class RecordExtractionRequest(BaseModel):
    rows: List[ExtractedRowIn]
    file_id: Optional[str] = None
    summary: Optional[Dict[str, Any]] = None


class ExtractedRowOut(ExtractedRowIn):
    model_config = ConfigDict(from_attributes=True)

    id: str
    row_index: int
    bar_size_mapped: Optional[str] = None
    grade_mapped: Optional[str] = None
    shape_code_mapped: Optional[str] = None
    status: str


class ValidationIssueOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    row_id: Optional[str] = None
    field: str
    severity: str
    message: str


class MappingResult(BaseModel):
    mapped_count: int
    auto_mappings_created: int


class ValidationResult(BaseModel):
    total_rows: int
    blockers: int
    warnings: int
    can_approve: bool


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class DispatchOutcomeOut(BaseModel):
    task_id: str
    dispatched: bool
    machine_id: Optional[str] = None
    machine_name: Optional[str] = None
    position: Optional[int] = None
    score: Optional[int] = None
    reason: Optional[str] = None


class ApprovalResult(BaseModel):
    order_id: str
    work_order_id: str
    cut_plan_id: str
    barlist_id: str
    project_id: str
    work_order_number: str
    items_approved: int
    tasks_created: int
    tasks_dispatched: int
    undispatched_tasks: List[DispatchOutcomeOut] = []

    model_config = {"json_schema_extra": {
        "example": {
            "order_id": "4f0c…",
            "work_order_id": "9a12…",
            "cut_plan_id": "c7e1…",
            "barlist_id": "b03d…",
            "project_id": "p55e…",
            "work_order_number": "WO-M2K9Q1XA7F",
            "items_approved": 3,
            "tasks_created": 3,
            "tasks_dispatched": 2,
            "undispatched_tasks": [
                {"task_id": "t88a…", "dispatched": False, "reason": "no_capability"}
            ],
        }
    }}


class MappingRuleIn(BaseModel):
    source_field: Literal["bar_size", "grade", "shape_type"]
    source_value: str = Field(..., min_length=1, max_length=100)
    mapped_value: str = Field(..., min_length=1, max_length=100)


class MappingRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    source_field: str
    source_value: str
    mapped_value: str
    is_auto: bool


class QueueMoveRequest(BaseModel):
    target_machine_id: Optional[str] = None
    target_position: Optional[int] = Field(None, ge=0)


class QueueStartOut(BaseModel):
    queue_item_id: str
    task_id: str
    machine_id: str
    machine_run_id: str
    status: str
