"""Integration tests for supplier matching and selection."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select

from takeoff.core.exceptions import ConflictError, NotFoundError, ValidationError
from takeoff.modules.extraction import jobs, registry
from takeoff.modules.extraction.assembler import assemble_results
from takeoff.modules.suppliers import matcher, service
from takeoff.modules.suppliers.models import SupplierMatch

ORG = "org-1"

DEFINITION = {"type": "object", "properties": {"itemName": {"type": "string"}}}


@pytest.fixture
async def job(db):
    schema = await registry.create_schema(db, ORG, "Materials", 1, DEFINITION)
    job = await jobs.create_job(db, ORG, None, ["doc-a"], schema.id)
    items = [
        {"itemName": "Steel beam HEB 200", "pageNumber": 1, "sourceText": "concrete glass timber"},
        {"itemName": "Float glass pane", "pageNumber": 2},
        {"itemName": "Oak parquet", "pageNumber": 3},
    ]
    await jobs.save_results(db, job.id, assemble_results(items, [], 1, "doc-a"))
    return job


@pytest.fixture
async def suppliers(db):
    steel = await service.create_supplier(db, ORG, " Stahl AG ", ["Steel beams", "HEB profiles", " "])
    glass = await service.create_supplier(db, ORG, "Glas GmbH", ["Float glass", "Safety glass"])
    await service.create_supplier(db, "org-2", "Elsewhere", ["steel", "glass", "oak"])
    return steel, glass


async def _results(db, job_id: str):
    return await jobs.list_job_results(db, job_id)


async def test_create_supplier(db, suppliers) -> None:
    steel, _ = suppliers
    assert steel.name == "Stahl AG"
    assert steel.materials_offered == ["Steel beams", "HEB profiles"]
    assert [s.name for s in await service.list_suppliers(db, ORG)] == ["Glas GmbH", "Stahl AG"]
    with pytest.raises(ValidationError):
        await service.create_supplier(db, ORG, "   ")
    with pytest.raises(NotFoundError):
        await service.get_supplier(db, "missing")


async def test_every_result_supplier_pair_gets_a_row(db, job, suppliers) -> None:
    """Zero scores are stored too, with an explicit reason."""
    steel, glass = suppliers
    matches = await matcher.match_extraction_results_with_suppliers(db, job.id, ORG)
    assert len(matches) == 6

    results = await _results(db, job.id)
    by_pair = {(m.extraction_result_id, m.supplier_id): m for m in matches}

    beam = by_pair[(results[0].id, steel.id)]
    assert beam.confidence_score == round(2 / 3, 4)
    assert beam.match_reason == "Matched 2/3 terms: heb, steel"
    assert beam.match_metadata == {"matchedTerms": ["heb", "steel"], "rank": 1}
    assert by_pair[(results[0].id, glass.id)].confidence_score == 0.0

    pane = by_pair[(results[1].id, glass.id)]
    assert pane.confidence_score == round(2 / 3, 4)

    parquet = by_pair[(results[2].id, steel.id)]
    assert parquet.confidence_score == 0.0
    assert parquet.match_reason == "No overlapping material terms"


async def test_rematching_replaces_rows(db, job, suppliers) -> None:
    await matcher.match_extraction_results_with_suppliers(db, job.id, ORG)
    await matcher.match_extraction_results_with_suppliers(db, job.id, ORG)
    rows = (await db.execute(select(SupplierMatch))).scalars().all()
    assert len(rows) == 6


async def test_matching_other_organization_job_is_not_found(db, job, suppliers) -> None:
    with pytest.raises(NotFoundError):
        await matcher.match_extraction_results_with_suppliers(db, job.id, "org-2")
    with pytest.raises(NotFoundError):
        await matcher.match_extraction_results_with_suppliers(db, "missing", ORG)


async def test_no_suppliers_matches_nothing(db, job) -> None:
    assert await matcher.match_extraction_results_with_suppliers(db, job.id, ORG) == []


async def test_matches_grouped_per_result(db, job, suppliers) -> None:
    steel, glass = suppliers
    await matcher.match_extraction_results_with_suppliers(db, job.id, ORG)

    grouped = await matcher.get_matches_for_job(db, job.id)
    assert [g["pageNumber"] for g in grouped] == [1, 2, 3]
    assert [m["supplierName"] for m in grouped[0]["matches"]] == ["Stahl AG", "Glas GmbH"]
    assert [m["supplierName"] for m in grouped[1]["matches"]] == ["Glas GmbH", "Stahl AG"]
    assert grouped[0]["data"]["itemName"] == "Steel beam HEB 200"
    assert not any(m["isSelected"] for g in grouped for m in g["matches"])
    assert await matcher.get_matches_for_job(db, "missing") == []


async def test_select_switches_the_single_selection(db, job, suppliers) -> None:
    steel, glass = suppliers
    await matcher.match_extraction_results_with_suppliers(db, job.id, ORG)
    result = (await _results(db, job.id))[0]

    first = await matcher.select_supplier(db, result.id, steel.id, "user-1")
    assert first.is_selected and first.selected_by == "user-1" and first.selected_at is not None

    second = await matcher.select_supplier(db, result.id, glass.id, "user-2")
    assert second.supplier_id == glass.id and second.is_selected

    rows = (
        await db.execute(
            select(SupplierMatch)
            .where(SupplierMatch.extraction_result_id == result.id)
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    assert [(r.supplier_id, r.is_selected) for r in rows if r.is_selected] == [(glass.id, True)]
    assert all(r.selected_by is None for r in rows if not r.is_selected)


async def test_select_unproposed_supplier_creates_manual_match(db, job, suppliers) -> None:
    steel, _ = suppliers
    result = (await _results(db, job.id))[1]

    match = await matcher.select_supplier(db, result.id, steel.id, None)

    assert match.is_selected
    assert match.match_metadata["manual"] is True
    assert match.confidence_score == 0.0


async def test_select_validates_ids(db, job, suppliers) -> None:
    steel, _ = suppliers
    result = (await _results(db, job.id))[0]
    with pytest.raises(ValidationError):
        await matcher.select_supplier(db, result.id, " ", None)
    with pytest.raises(NotFoundError):
        await matcher.select_supplier(db, "missing", steel.id, None)
    with pytest.raises(NotFoundError):
        await matcher.select_supplier(db, result.id, "missing", None)


async def test_select_supplier_of_another_organization_is_not_found(db, job, suppliers) -> None:
    """The supplier must belong to the organization that owns the result's job."""
    foreign = (await service.list_suppliers(db, "org-2"))[0]
    result = (await _results(db, job.id))[0]

    with pytest.raises(NotFoundError, match="Supplier not found"):
        await matcher.select_supplier(db, result.id, foreign.id, "user-1")

    rows = (
        await db.execute(select(SupplierMatch).where(SupplierMatch.extraction_result_id == result.id))
    ).scalars().all()
    assert rows == []


async def test_concurrent_selects_leave_one_selection(session_factory, db, job, suppliers) -> None:
    """Racing selections end with exactly one selected row, or a conflict."""
    steel, glass = suppliers
    await matcher.match_extraction_results_with_suppliers(db, job.id, ORG)
    result_id = (await _results(db, job.id))[0].id

    async def select_as(supplier_id: str) -> SupplierMatch:
        async with session_factory() as session:
            return await matcher.select_supplier(session, result_id, supplier_id, "racer")

    outcomes = await asyncio.gather(select_as(steel.id), select_as(glass.id), return_exceptions=True)
    assert all(isinstance(o, (SupplierMatch, ConflictError)) for o in outcomes)

    async with session_factory() as session:
        selected = (
            await session.execute(
                select(SupplierMatch)
                .where(SupplierMatch.extraction_result_id == result_id)
                .where(SupplierMatch.is_selected.is_(True))
            )
        ).scalars().all()
    assert len(selected) == 1
