"""Tenant mapping dictionary (raw extracted value → canonical value)."""
from typing import List
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from rebarflow.db import get_db
from rebarflow.api.deps import get_tenant_id, require_role
from rebarflow.models.orm_models import User
from rebarflow.models.pipeline_schemas import MappingRuleIn, MappingRuleOut
from rebarflow.services import extract_pipeline as pipeline

router = APIRouter(prefix="/api/v1/mapping-rules", tags=["Mapping Rules"])


@router.get("", response_model=List[MappingRuleOut])
async def list_rules(
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await pipeline.load_rules(db, tenant_id)


@router.put("", response_model=MappingRuleOut)
async def upsert_rule(
    req: MappingRuleIn,
    user: User = Depends(require_role("Supervisor")),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Create or overwrite a human-authored rule; keys are matched case-insensitively."""
    return await pipeline.upsert_mapping_rule(db, tenant_id, req.source_field, req.source_value, req.mapped_value)


@router.delete("/{rule_id}", status_code=204)
async def delete_rule(
    rule_id: str,
    user: User = Depends(require_role("Supervisor")),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    await pipeline.delete_mapping_rule(db, tenant_id, rule_id)
