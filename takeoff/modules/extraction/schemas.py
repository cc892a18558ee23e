"""Extraction API — Pydantic request/response models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class SchemaCreate(BaseModel):
    """First version of a new schema family."""

    organization_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)
    version: int = Field(1, ge=1)
    definition: dict[str, Any]
    prompt: str | None = None
    examples: list[Any] | None = None
    agents: list[dict[str, Any]] | None = None


class SchemaVersionCreate(BaseModel):
    """Fields to change in the next version; unset fields are carried over."""

    name: str | None = Field(None, min_length=1, max_length=200)
    definition: dict[str, Any] | None = None
    prompt: str | None = None
    examples: list[Any] | None = None
    agents: list[dict[str, Any]] | None = None
    change_description: str | None = None

    def updates(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class SchemaOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    schema_identifier: str
    name: str
    version: int
    definition: dict[str, Any]
    compiled_json_schema: dict[str, Any]
    prompt: str | None = None
    examples: list[Any] | None = None
    agents: list[dict[str, Any]] | None = None
    change_description: str | None = None
    created_at: datetime | None = None


class SchemaDeleteResponse(BaseModel):
    deleted_jobs_count: int = Field(..., serialization_alias="deletedJobsCount")


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


class AgentTestRequest(BaseModel):
    """Run one agent definition against sample data without persisting."""

    agent: dict[str, Any]
    sample_data: Any = Field(..., alias="sampleData")
    schema_id: str | None = Field(None, alias="schemaId")
    schema_name: str | None = Field(None, alias="schemaName")
    schema_definition: dict[str, Any] | None = Field(None, alias="schemaDefinition")

    model_config = ConfigDict(populate_by_name=True)


class AgentTestResponse(BaseModel):
    output: Any
    metadata: dict[str, Any]


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class JobCreate(BaseModel):
    organization_id: str = Field(..., min_length=1)
    user_id: str | None = None
    schema_id: str = Field(..., min_length=1)
    data_layer_ids: list[str] = Field(..., min_length=1)


class JobDataLayerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    data_layer_id: str
    processing_order: int
    sub_status: str
    error_message: str | None = None


class JobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    schema_id: str | None = None
    initiated_by: str | None = None
    status: str
    progress_percentage: int
    meta: dict[str, Any] | None = None
    logs: list[dict[str, Any]] | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    data_layers: list[JobDataLayerOut] = []


class ExtractionResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    page_number: int
    raw_extraction: dict[str, Any]
    verified_data: dict[str, Any] | None = None
    evidence: dict[str, Any]
    confidence_score: float
    status: str
    verified_by: str | None = None
    verified_at: datetime | None = None
    agent_execution_metadata: list[dict[str, Any]] | None = None
    source_data_layer_id: str | None = None


class JobResultsOut(BaseModel):
    results: list[ExtractionResultOut]
    schema_: dict[str, Any] | None = Field(None, serialization_alias="schema")
