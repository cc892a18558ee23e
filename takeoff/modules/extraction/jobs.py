"""Extraction jobs — persistence helpers and the JobOrchestrator.

State machine:
  job:   queued → running → completed | failed | cancelled
  layer: pending → processing → completed | failed

The job row is written concurrently by layer workers. Every write is a
single UPDATE statement: status changes are guarded by the allowed
source states, ``progress_percentage`` is last-writer-wins, ``meta`` is a
key-level merge and ``logs`` an append, both done inside the database.
Workers never hold a session across an LLM/render/fetch await.

Layer failures stay on the layer. Only faults that make the whole job
meaningless (missing schema, no layers) fail the job.

Cancellation is cooperative: workers re-read the job status before each
layer and each page and stop scheduling work once it is terminal. An
in-flight external call is never pre-empted.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import cast, func, literal, literal_column, select, update
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from takeoff.core.config import settings
from takeoff.core.exceptions import (
    ConflictError,
    NotFoundError,
    PartialFailure,
    TakeoffError,
    ValidationError,
)
from takeoff.modules.extraction import registry
from takeoff.modules.extraction.agents import AgentPipeline
from takeoff.modules.extraction.agents.base import SchemaContext
from takeoff.modules.extraction.assembler import AssembledResult, assemble_results, flag_schema_violations
from takeoff.modules.extraction.documents import (
    IMAGE_MIME_TYPES,
    DocumentRenderer,
    DocumentStore,
    sniff_document_kind,
)
from takeoff.modules.extraction.llm import Attachment, LLMClient, call_with_timeout
from takeoff.modules.extraction.models import ExtractionJob, ExtractionResult, JobDataLayer
from takeoff.modules.extraction.parsing import parse_extraction_response
from takeoff.modules.extraction.prompts import build_vision_prompt
from takeoff.modules.extraction.schema_compiler import CompiledSchema

logger = structlog.get_logger()

JOB_STATUSES = ("queued", "running", "completed", "failed", "cancelled")
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})

# new status → statuses it may be entered from
ALLOWED_FROM: dict[str, frozenset[str]] = {
    "running": frozenset({"queued", "running"}),
    "completed": frozenset({"running"}),
    "failed": frozenset({"queued", "running"}),
    "cancelled": frozenset({"queued", "running"}),
}

LAYER_ALLOWED_FROM: dict[str, frozenset[str]] = {
    "processing": frozenset({"pending"}),
    "completed": frozenset({"processing"}),
    "failed": frozenset({"pending", "processing"}),
}

PROGRESS_RESERVE = 10


def calculate_extraction_progress(completed: float, total: int, reserve: int = PROGRESS_RESERVE) -> int:
    """Progress while extracting; the last ``reserve`` percent is left for finalization."""
    if total <= 0:
        return 0
    fraction = max(0.0, min(1.0, completed / total))
    return round(fraction * (100 - reserve))


def _clamp_progress(value: int | float) -> int:
    return int(max(0, min(100, round(value))))


def _layer_key(data_layer_id: str) -> str:
    return f"layer:{data_layer_id}"


def _dialect(db: AsyncSession) -> str:
    return db.get_bind().dialect.name


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_job(db: AsyncSession, job_id: str) -> ExtractionJob:
    job = await db.get(ExtractionJob, job_id, populate_existing=True)
    if job is None:
        raise NotFoundError(f"Extraction job not found: {job_id}", {"job_id": job_id})
    return job


async def list_job_data_layers(db: AsyncSession, job_id: str) -> list[JobDataLayer]:
    query = (
        select(JobDataLayer)
        .where(JobDataLayer.job_id == job_id)
        .order_by(JobDataLayer.processing_order)
        .execution_options(populate_existing=True)
    )
    return list((await db.execute(query)).scalars().all())


async def get_job_status(db: AsyncSession, job_id: str) -> str:
    status = (
        await db.execute(select(ExtractionJob.status).where(ExtractionJob.id == job_id))
    ).scalar_one_or_none()
    if status is None:
        raise NotFoundError(f"Extraction job not found: {job_id}", {"job_id": job_id})
    return status


async def list_job_results(db: AsyncSession, job_id: str) -> list[ExtractionResult]:
    query = (
        select(ExtractionResult)
        .where(ExtractionResult.job_id == job_id)
        .order_by(ExtractionResult.page_number, ExtractionResult.created_at, ExtractionResult.id)
        .execution_options(populate_existing=True)
    )
    return list((await db.execute(query)).scalars().all())


async def get_job_results(db: AsyncSession, job_id: str) -> dict[str, Any]:
    """Results ordered by page plus the schema snapshot the job ran with."""
    job = await get_job(db, job_id)
    return {"results": await list_job_results(db, job_id), "schema": job.compiled_json_schema}


# ---------------------------------------------------------------------------
# Atomic job-row writes
# ---------------------------------------------------------------------------


def _json_merge_expr(dialect: str, patch: dict[str, Any]) -> Any:
    if dialect == "postgresql":
        base = func.coalesce(cast(ExtractionJob.meta, JSONB), cast(literal("{}"), JSONB))
        return base.op("||", return_type=JSONB)(literal(patch, JSONB))

    expr: Any = func.coalesce(ExtractionJob.meta, literal_column("'{}'"))
    for key, value in patch.items():
        path = '$."' + key.replace('"', '\\"') + '"'
        expr = func.json_set(expr, path, func.json(json.dumps(value, default=str)))
    return expr


async def merge_job_meta(db: AsyncSession, job_id: str, patch: dict[str, Any]) -> None:
    """Merge ``patch`` into ``meta``: same-named keys overwrite, others survive."""
    if not patch:
        return
    dialect = _dialect(db)
    if dialect in ("postgresql", "sqlite"):
        result = await db.execute(
            update(ExtractionJob)
            .where(ExtractionJob.id == job_id)
            .values(meta=_json_merge_expr(dialect, patch))
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Extraction job not found: {job_id}", {"job_id": job_id})
    else:
        job = await get_job(db, job_id)
        job.meta = {**(job.meta or {}), **patch}
    await db.commit()


def _log_entry(level: str, message: str) -> dict[str, str]:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "message": message,
    }


async def append_job_log(db: AsyncSession, job_id: str, message: str, level: str = "info") -> None:
    """Append a user-facing log entry. Never raises."""
    entry = _log_entry(level, message)
    try:
        dialect = _dialect(db)
        if dialect == "postgresql":
            expr: Any = func.coalesce(cast(ExtractionJob.logs, JSONB), cast(literal("[]"), JSONB)).op(
                "||", return_type=JSONB
            )(literal([entry], JSONB))
        elif dialect == "sqlite":
            expr = func.json_insert(
                func.coalesce(ExtractionJob.logs, literal_column("'[]'")),
                "$[#]",
                func.json(json.dumps(entry)),
            )
        else:
            job = await get_job(db, job_id)
            expr = [*(job.logs or []), entry]
        await db.execute(update(ExtractionJob).where(ExtractionJob.id == job_id).values(logs=expr))
        await db.commit()
    except Exception:
        logger.warning("Failed to append job log", job_id=job_id, message=message, exc_info=True)
        try:
            await db.rollback()
        except Exception:
            logger.warning("Rollback after job log failure failed", job_id=job_id, exc_info=True)


async def update_job_status(
    db: AsyncSession,
    job_id: str,
    status: str,
    progress: int | float | None = None,
    error_message: str | None = None,
) -> bool:
    """Move the job to ``status`` if allowed from its current status.

    Returns False (and changes nothing) when the transition is not allowed,
    e.g. completing a cancelled job. Raises NotFoundError for unknown jobs.
    """
    if status not in ALLOWED_FROM:
        raise ValidationError(f"Invalid job status: {status}")

    values: dict[str, Any] = {"status": status}
    if progress is not None:
        values["progress_percentage"] = _clamp_progress(progress)
    if status == "completed":
        values["progress_percentage"] = 100
    if status == "running":
        values["started_at"] = func.coalesce(ExtractionJob.started_at, func.now())
    if status in TERMINAL_STATUSES:
        values["completed_at"] = func.now()
    if error_message is not None:
        values["error_message"] = error_message

    result = await db.execute(
        update(ExtractionJob)
        .where(ExtractionJob.id == job_id)
        .where(ExtractionJob.status.in_(ALLOWED_FROM[status]))
        .values(**values)
    )
    await db.commit()

    if result.rowcount:
        if status != "running":
            logger.info("Job status changed", job_id=job_id, status=status)
        return True

    current = await get_job_status(db, job_id)
    logger.info("Job status transition ignored", job_id=job_id, current=current, requested=status)
    return False


async def update_job_progress(db: AsyncSession, job_id: str, progress: int | float) -> None:
    """Last-writer-wins progress; ignored once the job is terminal."""
    await db.execute(
        update(ExtractionJob)
        .where(ExtractionJob.id == job_id)
        .where(ExtractionJob.status.in_(("queued", "running")))
        .values(progress_percentage=_clamp_progress(progress))
    )
    await db.commit()


async def set_layer_status(
    db: AsyncSession,
    job_id: str,
    data_layer_id: str,
    sub_status: str,
    error_message: str | None = None,
) -> bool:
    if sub_status not in LAYER_ALLOWED_FROM:
        raise ValidationError(f"Invalid data layer status: {sub_status}")
    values: dict[str, Any] = {"sub_status": sub_status}
    if error_message is not None:
        values["error_message"] = error_message
    result = await db.execute(
        update(JobDataLayer)
        .where(JobDataLayer.job_id == job_id)
        .where(JobDataLayer.data_layer_id == data_layer_id)
        .where(JobDataLayer.sub_status.in_(LAYER_ALLOWED_FROM[sub_status]))
        .values(**values)
    )
    await db.commit()
    if result.rowcount:
        return True

    exists = (
        await db.execute(
            select(JobDataLayer.id)
            .where(JobDataLayer.job_id == job_id)
            .where(JobDataLayer.data_layer_id == data_layer_id)
        )
    ).first()
    if exists is None:
        raise NotFoundError(
            f"Data layer not found in job: {data_layer_id}",
            {"job_id": job_id, "data_layer_id": data_layer_id},
        )
    return False


async def save_results(db: AsyncSession, job_id: str, results: list[AssembledResult]) -> int:
    if not results:
        return 0
    db.add_all(ExtractionResult(job_id=job_id, **r.to_row()) for r in results)
    await db.commit()
    return len(results)


# ---------------------------------------------------------------------------
# Job creation
# ---------------------------------------------------------------------------


async def create_job(
    db: AsyncSession,
    organization_id: str,
    user_id: str | None,
    data_layer_ids: list[str],
    schema_id: str,
) -> ExtractionJob:
    """Create a queued job with one data layer per document, in input order."""
    if not data_layer_ids:
        raise ValidationError("At least one data layer is required")
    if any(not d for d in data_layer_ids):
        raise ValidationError("Data layer ids must be non-empty")
    if len(set(data_layer_ids)) != len(data_layer_ids):
        raise ValidationError("Duplicate data layer ids")

    schema = await registry.get_schema(db, schema_id)
    if schema.organization_id != organization_id:
        raise NotFoundError(f"Schema not found: {schema_id}", {"schema_id": schema_id})
    compiled = registry.compile_row(schema)

    job = ExtractionJob(
        organization_id=organization_id,
        schema_id=schema.id,
        initiated_by=user_id,
        status="queued",
        progress_percentage=0,
        meta={
            "isBatchJob": len(data_layer_ids) > 1,
            "totalFiles": len(data_layer_ids),
            "totalPages": len(data_layer_ids),
            "completedFiles": 0,
            "schemaName": schema.name,
            "schemaVersion": schema.version,
        },
        logs=[_log_entry("info", f"Job created with {len(data_layer_ids)} document(s)")],
        compiled_json_schema=compiled.json_schema,
    )
    db.add(job)
    await db.flush()
    db.add_all(
        JobDataLayer(job_id=job.id, data_layer_id=layer_id, processing_order=index)
        for index, layer_id in enumerate(data_layer_ids, start=1)
    )
    await db.commit()
    await db.refresh(job)

    logger.info(
        "Extraction job created",
        job_id=job.id,
        organization_id=organization_id,
        schema_id=schema.id,
        layers=len(data_layer_ids),
    )
    return job


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class LayerFailed(TakeoffError):
    """A data layer could not produce any result."""


class JobStopped(Exception):
    """The job reached a terminal status while a layer was in progress."""


@dataclass
class _RunState:
    total_layers: int
    layer_fraction: dict[str, float] = field(default_factory=dict)
    completed_layers: int = 0
    failed_layers: int = 0
    items_found: int = 0
    pages_total: int = 0
    failures: list[PartialFailure] = field(default_factory=list)

    @property
    def progress(self) -> int:
        return calculate_extraction_progress(sum(self.layer_fraction.values()), self.total_layers)


class JobOrchestrator:
    """Drives a job's data layers through render → LLM → parse → agents → assemble."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        llm: LLMClient,
        store: DocumentStore,
        renderer: DocumentRenderer,
        *,
        pipeline: AgentPipeline | None = None,
        max_concurrent_layers: int | None = None,
        flush_batch_size: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.llm = llm
        self.store = store
        self.renderer = renderer
        self.pipeline = pipeline or AgentPipeline(llm)
        self.max_concurrent_layers = max_concurrent_layers or settings.max_concurrent_layers
        self.flush_batch_size = flush_batch_size or settings.result_flush_batch_size

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start_job(
        self,
        organization_id: str,
        user_id: str | None,
        data_layer_ids: list[str],
        schema_id: str,
    ) -> ExtractionJob:
        async with self.session_factory() as db:
            return await create_job(db, organization_id, user_id, data_layer_ids, schema_id)

    async def cancel_job(self, job_id: str) -> ExtractionJob:
        async with self.session_factory() as db:
            if not await update_job_status(db, job_id, "cancelled"):
                status = await get_job_status(db, job_id)
                raise ConflictError(
                    f"Job cannot be cancelled in status {status}",
                    {"job_id": job_id, "status": status},
                )
            await append_job_log(db, job_id, "Job cancelled", "warn")
            return await get_job(db, job_id)

    async def run_job(self, job_id: str) -> ExtractionJob:
        """Process every data layer of a job and finalize it."""
        async with self.session_factory() as db:
            job = await get_job(db, job_id)
            layers = await list_job_data_layers(db, job_id)

        if job.status in TERMINAL_STATUSES:
            logger.info("Job already finished, not running", job_id=job_id, status=job.status)
            return job

        if not layers:
            await self._fail_job(job_id, [], "Job has no data layers")
            return await self._reload(job_id)

        try:
            async with self.session_factory() as db:
                compiled = await registry.get_compiled_schema(db, job.schema_id)
        except (NotFoundError, ValidationError) as exc:
            await self._fail_job(job_id, layers, f"Schema unavailable: {exc.message}")
            return await self._reload(job_id)

        state = _RunState(total_layers=len(layers))
        semaphore = asyncio.Semaphore(self.max_concurrent_layers)

        logger.info(
            "Job started",
            job_id=job_id,
            layers=len(layers),
            schema=compiled.name,
            agents=len(compiled.agents),
        )

        async def worker(layer: JobDataLayer) -> None:
            async with semaphore:
                await self._process_layer(job_id, layer, compiled, state)

        outcomes = await asyncio.gather(*(worker(layer) for layer in layers), return_exceptions=True)
        errors = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
        if errors:
            # Every worker has settled; the job must not stay running.
            await self._abort(job_id, layers, errors[0])
            raise errors[0]

        if await self._stopped(job_id):
            logger.info("Job stopped before completion", job_id=job_id)
            return await self._reload(job_id)

        await self._finish(job_id, state)
        return await self._reload(job_id)

    # ------------------------------------------------------------------
    # Layer processing
    # ------------------------------------------------------------------

    async def _process_layer(
        self,
        job_id: str,
        layer: JobDataLayer,
        compiled: CompiledSchema,
        state: _RunState,
    ) -> None:
        layer_id = layer.data_layer_id
        if await self._stopped(job_id):
            state.layer_fraction[layer_id] = 1.0
            await self._mark_layer_failed(job_id, layer_id, "Job cancelled", log=False)
            return

        async with self.session_factory() as db:
            await update_job_status(db, job_id, "running")
            await set_layer_status(db, job_id, layer_id, "processing")
            await append_job_log(
                db, job_id, f"Processing document {layer.processing_order}/{state.total_layers}"
            )

        try:
            results = await self._extract_layer(job_id, layer, compiled, state)
        except JobStopped:
            state.layer_fraction[layer_id] = 1.0
            await self._mark_layer_failed(job_id, layer_id, "Job cancelled", log=False)
            return
        except Exception as exc:
            message = exc.message if isinstance(exc, TakeoffError) else str(exc) or type(exc).__name__
            logger.error("Data layer failed", job_id=job_id, data_layer_id=layer_id, error=message,
                         exc_info=not isinstance(exc, TakeoffError))
            state.failed_layers += 1
            state.layer_fraction[layer_id] = 1.0
            state.failures.append(PartialFailure(scope="layer", target=layer_id, message=message))
            await self._mark_layer_failed(job_id, layer_id, message)
            await self._report_progress(job_id, state)
            return

        state.completed_layers += 1
        state.items_found += results
        state.layer_fraction[layer_id] = 1.0

        async with self.session_factory() as db:
            await set_layer_status(db, job_id, layer_id, "completed")
            await merge_job_meta(
                db,
                job_id,
                {
                    "completedFiles": state.completed_layers + state.failed_layers,
                    "totalMaterialsFound": state.items_found,
                },
            )
            await append_job_log(
                db,
                job_id,
                f"Completed document {layer.processing_order}: {results} item(s) extracted "
                f"({state.completed_layers + state.failed_layers}/{state.total_layers})",
            )
        await self._report_progress(job_id, state)

    async def _extract_layer(
        self,
        job_id: str,
        layer: JobDataLayer,
        compiled: CompiledSchema,
        state: _RunState,
    ) -> int:
        """Extract one document; returns the number of persisted results."""
        layer_id = layer.data_layer_id
        document = await call_with_timeout(self.store.fetch_bytes(layer_id), what="document fetch")

        kind = sniff_document_kind(document)
        if kind == "unknown":
            raise LayerFailed("Unsupported document type", {"data_layer_id": layer_id})
        if kind == "pdf":
            total_pages = await call_with_timeout(self.renderer.page_count(document), what="page count")
        else:
            total_pages = 1
        if total_pages < 1:
            raise LayerFailed("Document has no pages", {"data_layer_id": layer_id})
        state.pages_total += total_pages

        await self._layer_meta(job_id, layer_id, 0, total_pages, "processing")

        items: list[dict[str, Any]] = []
        page_failures: list[PartialFailure] = []
        for page in range(1, total_pages + 1):
            if await self._stopped(job_id):
                raise JobStopped()
            try:
                items.extend(await self._extract_page(document, kind, page, compiled))
            except Exception as exc:
                message = str(exc) or type(exc).__name__
                page_failures.append(
                    PartialFailure(scope="page", target=f"{layer_id}#{page}", message=message)
                )
                logger.warning(
                    "Page extraction failed", job_id=job_id, data_layer_id=layer_id, page=page, error=message
                )
                await self._log(job_id, f"Page {page} of document {layer.processing_order} failed: {message}", "warn")

            state.layer_fraction[layer_id] = page / total_pages * 0.95
            await self._layer_meta(job_id, layer_id, page, total_pages, "processing")
            await self._report_progress(job_id, state)

        state.failures.extend(page_failures)
        if len(page_failures) == total_pages:
            raise LayerFailed(
                f"All {total_pages} page(s) failed: {page_failures[0].message}",
                {"data_layer_id": layer_id},
            )

        if await self._stopped(job_id):
            raise JobStopped()

        # Page each item was parsed from, by position.
        parsed_pages = [item["pageNumber"] for item in items]
        item_metadata: list[list[dict[str, Any]]] = [[] for _ in items]
        if compiled.agents and items:
            outcome = await self.pipeline.run(
                compiled.agents,
                items,
                SchemaContext(name=compiled.name or "Unknown Schema", definition=compiled.json_schema),
            )
            items, item_metadata = outcome.items, outcome.metadata
            state.failures.extend(outcome.failures)
            if outcome.diagnostics and outcome.has_errors:
                summary = "; ".join(
                    f"{a.agent_name}: {a.failure_count + a.timeout_count} failures ({a.success_rate:.1f}% success)"
                    for a in outcome.diagnostics.agent_errors
                    if a.success_rate < 100
                )
                await self._log(
                    job_id,
                    f"Agent issues detected: {summary}. "
                    f"Overall success: {outcome.diagnostics.overall_success_rate:.1f}%",
                    "warn",
                )

        items = flag_schema_violations(items, compiled)
        results = assemble_results(
            items,
            item_metadata,
            parsed_pages[-1] if parsed_pages else 1,
            layer_id,
            fallback_pages=parsed_pages,
        )
        for start in range(0, len(results), self.flush_batch_size):
            chunk = results[start:start + self.flush_batch_size]
            async with self.session_factory() as db:
                await save_results(db, job_id, chunk)

        await self._layer_meta(job_id, layer_id, total_pages, total_pages, "completed")
        return len(results)

    async def _extract_page(
        self,
        document: bytes,
        kind: str,
        page: int,
        compiled: CompiledSchema,
    ) -> list[dict[str, Any]]:
        if kind == "pdf":
            image = await call_with_timeout(
                self.renderer.page_to_image(document, page), what=f"render page {page}"
            )
            attachment = Attachment(image, "image/png")
        else:
            attachment = Attachment(document, IMAGE_MIME_TYPES[kind])

        system_prompt, user_prompt = build_vision_prompt(page, compiled)
        response = await call_with_timeout(
            self.llm.ask(system_prompt, user_prompt, [attachment]), what=f"LLM page {page}"
        )
        if not isinstance(response, str):
            response = json.dumps(response.model_dump())
        return parse_extraction_response(response, page, compiled)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _reload(self, job_id: str) -> ExtractionJob:
        async with self.session_factory() as db:
            return await get_job(db, job_id)

    async def _stopped(self, job_id: str) -> bool:
        async with self.session_factory() as db:
            return await get_job_status(db, job_id) in TERMINAL_STATUSES

    async def _log(self, job_id: str, message: str, level: str = "info") -> None:
        async with self.session_factory() as db:
            await append_job_log(db, job_id, message, level)

    async def _layer_meta(self, job_id: str, layer_id: str, page: int, total: int, status: str) -> None:
        async with self.session_factory() as db:
            await merge_job_meta(
                db,
                job_id,
                {_layer_key(layer_id): {"currentPage": page, "totalPages": total, "status": status}},
            )

    async def _report_progress(self, job_id: str, state: _RunState) -> None:
        async with self.session_factory() as db:
            await update_job_progress(db, job_id, state.progress)

    async def _mark_layer_failed(self, job_id: str, layer_id: str, message: str, log: bool = True) -> None:
        async with self.session_factory() as db:
            await set_layer_status(db, job_id, layer_id, "failed", error_message=message)
            await merge_job_meta(db, job_id, {_layer_key(layer_id): {"status": "failed", "error": message}})
            if log:
                await append_job_log(db, job_id, f"Failed to process document {layer_id}: {message}", "error")

    async def _fail_job(self, job_id: str, layers: list[JobDataLayer], message: str) -> None:
        logger.error("Job failed", job_id=job_id, error=message)
        async with self.session_factory() as db:
            await update_job_status(db, job_id, "failed", error_message=message)
            for layer in layers:
                await set_layer_status(db, job_id, layer.data_layer_id, "failed", error_message=message)
            await append_job_log(db, job_id, f"Extraction failed: {message}", "error")

    async def _abort(self, job_id: str, layers: list[JobDataLayer], exc: BaseException) -> None:
        logger.error("Layer worker crashed", job_id=job_id, error=str(exc) or type(exc).__name__, exc_info=exc)
        await self._fail_job(job_id, layers, f"Internal error: {type(exc).__name__}")

    async def _finish(self, job_id: str, state: _RunState) -> None:
        async with self.session_factory() as db:
            count, average = (
                await db.execute(
                    select(func.count(ExtractionResult.id), func.avg(ExtractionResult.confidence_score))
                    .where(ExtractionResult.job_id == job_id)
                )
            ).one()
            summary = {
                "totalItems": count,
                "averageConfidence": round(float(average or 0.0), 4),
                "processedFiles": state.completed_layers,
                "failedFiles": state.failed_layers,
                "totalFiles": state.total_layers,
            }
            message = (
                f"Extraction completed: {count} item(s) from "
                f"{state.completed_layers}/{state.total_layers} document(s)"
            )
            await merge_job_meta(
                db,
                job_id,
                {
                    "summary": summary,
                    "workflow": {
                        "stage": "completed",
                        "message": message,
                        "extractedFiles": state.completed_layers,
                        "completedExtractions": count,
                    },
                    "totalPages": state.pages_total or state.total_layers,
                    "completedFiles": state.completed_layers + state.failed_layers,
                    "totalMaterialsFound": count,
                    "diagnostics": [f.model_dump() for f in state.failures[:50]],
                },
            )
            if await update_job_status(db, job_id, "completed"):
                level = "warn" if state.failed_layers else "info"
                await append_job_log(db, job_id, message, level)
                logger.info("Job completed", job_id=job_id, **summary)
