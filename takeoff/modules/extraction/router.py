"""Extraction API — /extraction/ endpoints.

Schemas:
  - POST   /schemas                        — create a schema family (version 1)
  - POST   /schemas/{schema_id}/versions   — next version of the family
  - GET    /schemas                        — latest version per family
  - GET    /schemas/{identifier}/versions  — every version, newest first
  - DELETE /schemas/{identifier}           — delete a family and its jobs

Agents:
  - POST   /agents/test                    — run one agent on sample data

Jobs:
  - POST   /jobs                           — create a job and run it in the background
  - GET    /jobs/{job_id}                  — status, progress, meta, logs, layers
  - GET    /jobs/{job_id}/results          — results ordered by page + schema snapshot
  - POST   /jobs/{job_id}/cancel           — cooperative cancellation

TakeoffError subclasses raised here are mapped to HTTP statuses in main.py.
"""

from __future__ import annotations

from functools import lru_cache

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from takeoff.core.database import SessionFactory, get_db
from takeoff.core.exceptions import NotFoundError
from takeoff.modules.extraction import jobs, registry
from takeoff.modules.extraction.agents.base import SchemaContext
from takeoff.modules.extraction.documents import HttpDocumentStore, PyMuPDFRenderer
from takeoff.modules.extraction.jobs import JobOrchestrator
from takeoff.modules.extraction.llm import ProviderLLMClient
from takeoff.modules.extraction.schemas import (
    AgentTestRequest,
    AgentTestResponse,
    ExtractionResultOut,
    JobCreate,
    JobDataLayerOut,
    JobOut,
    JobResultsOut,
    SchemaCreate,
    SchemaDeleteResponse,
    SchemaOut,
    SchemaVersionCreate,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/extraction", tags=["extraction"])


@lru_cache(maxsize=1)
def get_orchestrator() -> JobOrchestrator:
    """Process-wide orchestrator wired to the configured collaborators."""
    return JobOrchestrator(
        SessionFactory,
        ProviderLLMClient(),
        HttpDocumentStore(),
        PyMuPDFRenderer(),
    )


async def _job_out(db: AsyncSession, job_id: str) -> JobOut:
    job = await jobs.get_job(db, job_id)
    layers = await jobs.list_job_data_layers(db, job_id)
    out = JobOut.model_validate(job, from_attributes=True)
    out.data_layers = [JobDataLayerOut.model_validate(layer) for layer in layers]
    return out


async def _run_in_background(orchestrator: JobOrchestrator, job_id: str) -> None:
    try:
        await orchestrator.run_job(job_id)
    except NotFoundError:
        logger.warning("Job disappeared before it could run", job_id=job_id)
    except Exception:
        logger.error("Background extraction crashed", job_id=job_id, exc_info=True)
        async with orchestrator.session_factory() as db:
            if await jobs.update_job_status(db, job_id, "failed", error_message="Internal error"):
                await jobs.append_job_log(db, job_id, "Extraction failed: internal error", "error")


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


@router.post("/schemas", response_model=SchemaOut, status_code=201)
async def create_schema(body: SchemaCreate, db: AsyncSession = Depends(get_db)) -> SchemaOut:
    schema = await registry.create_schema(
        db,
        body.organization_id,
        body.name,
        body.version,
        body.definition,
        prompt=body.prompt,
        examples=body.examples,
        agents=body.agents,
    )
    return SchemaOut.model_validate(schema)


@router.post("/schemas/{schema_id}/versions", response_model=SchemaOut, status_code=201)
async def create_schema_version(
    schema_id: str,
    body: SchemaVersionCreate,
    db: AsyncSession = Depends(get_db),
) -> SchemaOut:
    """Create ``latest + 1`` in the family of ``schema_id``; unset fields carry over."""
    schema = await registry.create_new_version(db, schema_id, body.updates())
    return SchemaOut.model_validate(schema)


@router.get("/schemas", response_model=list[SchemaOut])
async def list_schemas(
    organization_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
) -> list[SchemaOut]:
    schemas = await registry.list_schemas_for_organization(db, organization_id)
    return [SchemaOut.model_validate(s) for s in schemas]


@router.get("/schemas/{schema_identifier}/versions", response_model=list[SchemaOut])
async def list_versions(
    schema_identifier: str,
    organization_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
) -> list[SchemaOut]:
    versions = await registry.list_schema_versions(db, organization_id, schema_identifier)
    return [SchemaOut.model_validate(s) for s in versions]


@router.delete("/schemas/{schema_identifier}", response_model=SchemaDeleteResponse)
async def delete_schema_family(
    schema_identifier: str,
    organization_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
) -> SchemaDeleteResponse:
    """Delete every version of a family and every job that used one of them."""
    result = await registry.delete_all_versions(db, organization_id, schema_identifier)
    return SchemaDeleteResponse(deleted_jobs_count=result["deletedJobsCount"])


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


@router.post("/agents/test", response_model=AgentTestResponse)
async def test_agent(
    body: AgentTestRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> AgentTestResponse:
    if body.schema_id:
        compiled = await registry.get_compiled_schema(db, body.schema_id)
        context = SchemaContext(name=compiled.name or "Unknown Schema", definition=compiled.json_schema)
    else:
        context = SchemaContext(
            name=body.schema_name or "Unknown Schema",
            definition=body.schema_definition or {"type": "object", "properties": {}},
        )
    result = await orchestrator.pipeline.test_agent(body.agent, body.sample_data, context)
    return AgentTestResponse(**result)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@router.post("/jobs", response_model=JobOut, status_code=202)
async def start_job(
    body: JobCreate,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobOut:
    """Create a queued job; processing continues after the response is sent."""
    job = await orchestrator.start_job(
        body.organization_id, body.user_id, body.data_layer_ids, body.schema_id
    )
    background_tasks.add_task(_run_in_background, orchestrator, job.id)
    return await _job_out(db, job.id)


@router.get("/jobs/{job_id}", response_model=JobOut)
async def get_job(job_id: str, db: AsyncSession = Depends(get_db)) -> JobOut:
    return await _job_out(db, job_id)


@router.get("/jobs/{job_id}/results", response_model=JobResultsOut)
async def get_job_results(job_id: str, db: AsyncSession = Depends(get_db)) -> JobResultsOut:
    payload = await jobs.get_job_results(db, job_id)
    return JobResultsOut(
        results=[ExtractionResultOut.model_validate(r) for r in payload["results"]],
        schema_=payload["schema"],
    )


@router.post("/jobs/{job_id}/cancel", response_model=JobOut)
async def cancel_job(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobOut:
    """Mark the job cancelled; running layers stop at their next page boundary."""
    await orchestrator.cancel_job(job_id)
    return await _job_out(db, job_id)
