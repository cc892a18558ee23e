"""Confidence & evidence assembly — pipeline items → persistable results."""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import BaseModel, Field

from takeoff.modules.extraction.parsing import SOURCE_CHECK_SKIP_KEYS, clamp_confidence, resolve_page_number
from takeoff.modules.extraction.schema_compiler import CompiledSchema, validate_data

logger = structlog.get_logger()

SCHEMA_ERRORS_KEY = "_schemaValidationErrors"

# Per-item bookkeeping that is never part of the author schema.
_BOOKKEEPING_KEYS = SOURCE_CHECK_SKIP_KEYS | {"sourceTextIncomplete", "missingFieldsInSourceText", "sourceDataLayerId"}


class Evidence(BaseModel):
    source_text: str | None = Field(default=None, alias="sourceText")
    location: str | None = None
    page_number: int = Field(alias="pageNumber")

    model_config = {"populate_by_name": True}


class AssembledResult(BaseModel):
    """The final shape of one ExtractionResult before it is written."""

    page_number: int
    raw_extraction: dict[str, Any]
    verified_data: dict[str, Any] | None = None
    evidence: Evidence
    confidence_score: float
    status: str = "pending"
    agent_execution_metadata: list[dict[str, Any]] = []
    source_data_layer_id: str | None = None

    def to_row(self) -> dict[str, Any]:
        return {
            "page_number": self.page_number,
            "raw_extraction": self.raw_extraction,
            "verified_data": self.verified_data,
            "evidence": self.evidence.model_dump(by_alias=True),
            "confidence_score": self.confidence_score,
            "status": self.status,
            "agent_execution_metadata": self.agent_execution_metadata,
            "source_data_layer_id": self.source_data_layer_id,
        }


def _text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return value if isinstance(value, str) else str(value)


def assemble_result(
    item: dict[str, Any],
    batch_page: int,
    metadata: list[dict[str, Any]] | None = None,
    data_layer_id: str | None = None,
) -> AssembledResult:
    """Build one result; the model's page attribution wins over ``batch_page``."""
    page_number = resolve_page_number(item.get("pageNumber"), batch_page)
    confidence = clamp_confidence(item.get("confidenceScore", item.get("confidence")))

    raw = dict(item)
    raw["pageNumber"] = page_number
    raw["confidenceScore"] = confidence
    if data_layer_id is not None:
        raw["sourceDataLayerId"] = data_layer_id

    evidence = Evidence(
        sourceText=_text(item.get("sourceText") or item.get("originalSnippet")),
        location=_text(item.get("location") or item.get("locationInDocument")),
        pageNumber=page_number,
    )

    return AssembledResult(
        page_number=page_number,
        raw_extraction=raw,
        evidence=evidence,
        confidence_score=confidence,
        agent_execution_metadata=list(metadata or []),
        source_data_layer_id=data_layer_id,
    )


def assemble_results(
    items: list[dict[str, Any]],
    metadata: list[list[dict[str, Any]]],
    batch_page: int,
    data_layer_id: str | None = None,
    fallback_pages: list[int] | None = None,
) -> list[AssembledResult]:
    """Assemble a page (or layer) worth of items, metadata aligned by position.

    ``fallback_pages`` gives a per-position page for items without a usable
    page number; ``batch_page`` covers positions past its end.
    """
    results = [
        assemble_result(
            item,
            fallback_pages[i] if fallback_pages and i < len(fallback_pages) else batch_page,
            metadata[i] if i < len(metadata) else [],
            data_layer_id,
        )
        for i, item in enumerate(items)
    ]
    flagged = sum(1 for r in results if r.raw_extraction.get("sourceTextIncomplete"))
    if flagged:
        logger.info("Assembled results with incomplete evidence", total=len(results), flagged=flagged)
    return results


def flag_schema_violations(items: list[dict[str, Any]], compiled: CompiledSchema) -> list[dict[str, Any]]:
    """Attach the validator's messages to items that no longer match the schema.

    Bookkeeping keys are left out of the check unless the schema declares
    them. Items are kept either way; the flag is for review.
    """
    declared = {p.name for p in compiled.properties}
    flagged: list[dict[str, Any]] = []
    for item in items:
        data = {
            key: value
            for key, value in item.items()
            if key in declared or (key not in _BOOKKEEPING_KEYS and not key.startswith("_"))
        }
        ok, errors = validate_data(compiled, data)
        flagged.append(item if ok else {**item, SCHEMA_ERRORS_KEY: errors})
    invalid = sum(1 for item in flagged if SCHEMA_ERRORS_KEY in item)
    if invalid:
        logger.warning("Items do not match the schema", total=len(items), invalid=invalid, schema=compiled.name)
    return flagged
