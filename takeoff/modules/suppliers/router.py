"""Suppliers API — /suppliers/ endpoints.

  - POST /suppliers                               — add a supplier to the catalog
  - GET  /suppliers                               — an organization's suppliers
  - POST /suppliers/jobs/{job_id}/match           — score a job's results
  - GET  /suppliers/jobs/{job_id}/matches         — matches grouped per result
  - POST /suppliers/results/{result_id}/select    — select one supplier for a result
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from takeoff.core.database import get_db
from takeoff.modules.suppliers import matcher, service
from takeoff.modules.suppliers.schemas import (
    MatchRequest,
    ResultMatchesOut,
    SelectSupplierRequest,
    SupplierCreate,
    SupplierMatchOut,
    SupplierOut,
)

router = APIRouter(prefix="/suppliers", tags=["suppliers"])


@router.post("", response_model=SupplierOut, status_code=201)
async def create_supplier(body: SupplierCreate, db: AsyncSession = Depends(get_db)) -> SupplierOut:
    supplier = await service.create_supplier(
        db,
        body.organization_id,
        body.name,
        materials_offered=body.materials_offered,
        contact_name=body.contact_name,
        contact_email=body.contact_email,
        contact_phone=body.contact_phone,
    )
    return SupplierOut.model_validate(supplier)


@router.get("", response_model=list[SupplierOut])
async def list_suppliers(
    organization_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
) -> list[SupplierOut]:
    return [SupplierOut.model_validate(s) for s in await service.list_suppliers(db, organization_id)]


@router.post("/jobs/{job_id}/match", response_model=list[SupplierMatchOut])
async def match_suppliers(
    job_id: str,
    body: MatchRequest,
    db: AsyncSession = Depends(get_db),
) -> list[SupplierMatchOut]:
    """Replace the matches of every result in the job with fresh scores."""
    matches = await matcher.match_extraction_results_with_suppliers(db, job_id, body.organization_id)
    return [SupplierMatchOut.model_validate(m) for m in matches]


@router.get("/jobs/{job_id}/matches", response_model=list[ResultMatchesOut])
async def get_job_matches(job_id: str, db: AsyncSession = Depends(get_db)) -> list[ResultMatchesOut]:
    return [ResultMatchesOut.model_validate(r) for r in await matcher.get_matches_for_job(db, job_id)]


@router.post("/results/{result_id}/select", response_model=SupplierMatchOut)
async def select_supplier(
    result_id: str,
    body: SelectSupplierRequest,
    db: AsyncSession = Depends(get_db),
) -> SupplierMatchOut:
    match = await matcher.select_supplier(db, result_id, body.supplier_id, body.user_id)
    return SupplierMatchOut.model_validate(match)
