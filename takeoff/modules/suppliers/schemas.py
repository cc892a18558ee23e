from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SupplierCreate(BaseModel):
    organization_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)
    materials_offered: list[str] = []
    contact_name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None


class SupplierOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    name: str
    materials_offered: list[str]
    contact_name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None


class MatchRequest(BaseModel):
    organization_id: str = Field(..., min_length=1)


class SelectSupplierRequest(BaseModel):
    # Empty ids are rejected by the matcher with a ValidationError (400).
    supplier_id: str
    user_id: str | None = None


class SupplierMatchOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    extraction_result_id: str
    supplier_id: str
    confidence_score: float | None = None
    match_reason: str | None = None
    is_selected: bool
    selected_by: str | None = None
    selected_at: datetime | None = None


class ResultMatchesOut(BaseModel):
    id: str
    page_number: int = Field(..., alias="pageNumber")
    status: str
    data: dict[str, Any]
    matches: list[dict[str, Any]]
