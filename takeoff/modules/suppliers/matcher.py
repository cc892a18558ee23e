"""Supplier matching — score every result of a job against the supplier catalog.

Score = |result tokens ∩ supplier tokens| / |result tokens|, where result
tokens come from the material-describing fields of the result and
supplier tokens from ``materials_offered``. Ties are broken by supplier
name ascending.

Selection keeps at most one ``is_selected`` row per result: the unselect
and the select happen in one transaction, and the partial unique index
``uq_supplier_matches_one_selected`` backs it up.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from takeoff.core.exceptions import ConflictError, NotFoundError, ValidationError
from takeoff.modules.extraction.models import ExtractionJob, ExtractionResult
from takeoff.modules.suppliers.models import Supplier, SupplierMatch

logger = structlog.get_logger()

EXCLUDED_FIELDS = frozenset(
    {
        "pageNumber",
        "sourceText",
        "sourceFileName",
        "snippetImageKey",
        "extractionMethod",
        "sourceDataLayerId",
        "sourceTextIncomplete",
        "agentExecutionMetadata",
        "missingFieldsInSourceText",
        "boundingBox",
        "confidenceScore",
        "location",
    }
)

MAX_REASON_TERMS = 5

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def tokenize(text: str) -> set[str]:
    """Lowercased word tokens of length ≥ 2; pure numbers are dropped."""
    return {
        t
        for t in _TOKEN_RE.findall(text.lower())
        if len(t) >= 2 and not t.isdigit()
    }


def result_data(result: ExtractionResult) -> dict[str, Any]:
    """Non-empty verified data wins over the raw extraction."""
    if isinstance(result.verified_data, dict) and result.verified_data:
        return result.verified_data
    return result.raw_extraction or {}


def matching_fields(data: dict[str, Any]) -> dict[str, str]:
    fields: dict[str, str] = {}
    for key, value in data.items():
        if key in EXCLUDED_FIELDS or key.startswith("_") or value is None or value == "":
            continue
        text_value = json.dumps(value, ensure_ascii=False) if isinstance(value, (dict, list)) else str(value)
        if text_value and text_value != "null":
            fields[key] = text_value
    return fields


def result_tokens(result: ExtractionResult) -> set[str]:
    tokens: set[str] = set()
    for value in matching_fields(result_data(result)).values():
        tokens |= tokenize(value)
    return tokens


def supplier_tokens(supplier: Supplier) -> set[str]:
    tokens: set[str] = set()
    for material in supplier.materials_offered or []:
        tokens |= tokenize(str(material))
    return tokens


@dataclass(frozen=True)
class MatchScore:
    supplier_id: str
    supplier_name: str
    confidence_score: float
    match_reason: str
    matched_terms: tuple[str, ...]


def score_supplier(tokens: set[str], supplier: Supplier, offered: set[str] | None = None) -> MatchScore:
    offered = supplier_tokens(supplier) if offered is None else offered
    common = sorted(tokens & offered)
    score = round(len(common) / len(tokens), 4) if tokens else 0.0
    if common:
        shown = ", ".join(common[:MAX_REASON_TERMS])
        more = len(common) - MAX_REASON_TERMS
        reason = f"Matched {len(common)}/{len(tokens)} terms: {shown}" + (f" (+{more} more)" if more > 0 else "")
    else:
        reason = "No overlapping material terms"
    return MatchScore(supplier.id, supplier.name, score, reason, tuple(common))


def rank_suppliers(result: ExtractionResult, suppliers: list[Supplier]) -> list[MatchScore]:
    tokens = result_tokens(result)
    scores = [score_supplier(tokens, s) for s in suppliers]
    return sorted(scores, key=lambda m: (-m.confidence_score, m.supplier_name, m.supplier_id))


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


async def create_matches(
    db: AsyncSession, extraction_result_id: str, scores: list[MatchScore]
) -> list[SupplierMatch]:
    """Replace every match of a result. Does not commit."""
    await db.execute(
        delete(SupplierMatch).where(SupplierMatch.extraction_result_id == extraction_result_id)
    )
    rows = [
        SupplierMatch(
            extraction_result_id=extraction_result_id,
            supplier_id=s.supplier_id,
            confidence_score=s.confidence_score,
            match_reason=s.match_reason,
            match_metadata={"matchedTerms": list(s.matched_terms), "rank": rank},
        )
        for rank, s in enumerate(scores, start=1)
    ]
    db.add_all(rows)
    return rows


async def match_extraction_results_with_suppliers(
    db: AsyncSession, job_id: str, organization_id: str
) -> list[SupplierMatch]:
    """Score every result of ``job_id`` against the organization's suppliers."""
    job = await db.get(ExtractionJob, job_id)
    if job is None or job.organization_id != organization_id:
        raise NotFoundError(f"Extraction job not found: {job_id}", {"job_id": job_id})

    results = list(
        (
            await db.execute(
                select(ExtractionResult)
                .where(ExtractionResult.job_id == job_id)
                .order_by(ExtractionResult.page_number, ExtractionResult.created_at, ExtractionResult.id)
            )
        ).scalars().all()
    )
    suppliers = list(
        (
            await db.execute(
                select(Supplier).where(Supplier.organization_id == organization_id)
            )
        ).scalars().all()
    )

    if not results or not suppliers:
        logger.warning(
            "Nothing to match",
            job_id=job_id,
            organization_id=organization_id,
            results=len(results),
            suppliers=len(suppliers),
        )
        return []

    offered = {s.id: supplier_tokens(s) for s in suppliers}
    matches: list[SupplierMatch] = []
    matched_results = 0
    for result in results:
        tokens = result_tokens(result)
        scores = sorted(
            (score_supplier(tokens, s, offered[s.id]) for s in suppliers),
            key=lambda m: (-m.confidence_score, m.supplier_name, m.supplier_id),
        )
        if scores and scores[0].confidence_score > 0:
            matched_results += 1
        matches.extend(await create_matches(db, result.id, scores))

    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConflictError("Supplier matches changed concurrently", {"job_id": job_id}) from exc

    logger.info(
        "Supplier matching completed",
        job_id=job_id,
        results=len(results),
        suppliers=len(suppliers),
        matched_results=matched_results,
    )
    return matches


async def select_supplier(
    db: AsyncSession, extraction_result_id: str, supplier_id: str, user_id: str | None
) -> SupplierMatch:
    """Make ``supplier_id`` the single selected supplier of a result."""
    if not isinstance(supplier_id, str) or not supplier_id.strip():
        raise ValidationError("Supplier id is required")

    result = (
        await db.execute(
            select(ExtractionResult)
            .where(ExtractionResult.id == extraction_result_id)
            .with_for_update()
        )
    ).scalar_one_or_none()
    if result is None:
        raise NotFoundError(
            f"Extraction result not found: {extraction_result_id}",
            {"extraction_result_id": extraction_result_id},
        )
    organization_id = (
        await db.execute(select(ExtractionJob.organization_id).where(ExtractionJob.id == result.job_id))
    ).scalar_one()
    supplier = await db.get(Supplier, supplier_id)
    # Suppliers of another organization are invisible here.
    if supplier is None or supplier.organization_id != organization_id:
        raise NotFoundError(f"Supplier not found: {supplier_id}", {"supplier_id": supplier_id})

    now = datetime.now(timezone.utc)
    try:
        await db.execute(
            update(SupplierMatch)
            .where(SupplierMatch.extraction_result_id == extraction_result_id)
            .where(SupplierMatch.is_selected.is_(True))
            .values(is_selected=False, selected_by=None, selected_at=None)
        )
        selected = await db.execute(
            update(SupplierMatch)
            .where(SupplierMatch.extraction_result_id == extraction_result_id)
            .where(SupplierMatch.supplier_id == supplier_id)
            .values(is_selected=True, selected_by=user_id, selected_at=now)
        )
        if selected.rowcount == 0:
            # Selecting a supplier that was never proposed for this result.
            score = rank_suppliers(result, [supplier])[0]
            db.add(
                SupplierMatch(
                    extraction_result_id=extraction_result_id,
                    supplier_id=supplier_id,
                    confidence_score=score.confidence_score,
                    match_reason=score.match_reason,
                    match_metadata={"matchedTerms": list(score.matched_terms), "manual": True},
                    is_selected=True,
                    selected_by=user_id,
                    selected_at=now,
                )
            )
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConflictError(
            "Another supplier was selected concurrently",
            {"extraction_result_id": extraction_result_id, "supplier_id": supplier_id},
        ) from exc

    match = (
        await db.execute(
            select(SupplierMatch)
            .where(SupplierMatch.extraction_result_id == extraction_result_id)
            .where(SupplierMatch.supplier_id == supplier_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()
    logger.info(
        "Supplier selected",
        extraction_result_id=extraction_result_id,
        supplier_id=supplier_id,
        user_id=user_id,
    )
    return match


async def get_matches_for_job(db: AsyncSession, job_id: str) -> list[dict[str, Any]]:
    """Results of a job, each with its matches ordered by score."""
    results = list(
        (
            await db.execute(
                select(ExtractionResult)
                .where(ExtractionResult.job_id == job_id)
                .order_by(ExtractionResult.page_number, ExtractionResult.created_at, ExtractionResult.id)
            )
        ).scalars().all()
    )
    if not results:
        return []

    rows = (
        await db.execute(
            select(SupplierMatch, Supplier)
            .join(Supplier, Supplier.id == SupplierMatch.supplier_id)
            .where(SupplierMatch.extraction_result_id.in_([r.id for r in results]))
            .order_by(SupplierMatch.confidence_score.desc(), Supplier.name)
        )
    ).all()

    grouped: dict[str, list[dict[str, Any]]] = {r.id: [] for r in results}
    for match, supplier in rows:
        grouped[match.extraction_result_id].append(
            {
                "id": match.id,
                "supplierId": supplier.id,
                "supplierName": supplier.name,
                "contactEmail": supplier.contact_email,
                "confidenceScore": match.confidence_score,
                "matchReason": match.match_reason,
                "isSelected": match.is_selected,
                "selectedBy": match.selected_by,
                "selectedAt": match.selected_at,
            }
        )

    return [
        {
            "id": r.id,
            "pageNumber": r.page_number,
            "status": r.status,
            "data": result_data(r),
            "matches": grouped[r.id],
        }
        for r in results
    ]
