"""Integration tests for the versioned schema registry."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from takeoff.core.exceptions import ConflictError, NotFoundError, ValidationError
from takeoff.modules.extraction import jobs, registry
from takeoff.modules.extraction.assembler import assemble_results
from takeoff.modules.extraction.models import ExtractionResult

ORG = "org-1"

DEFINITION = {
    "type": "object",
    "required": ["itemName"],
    "properties": {"itemName": {"type": "string"}, "quantity": {"type": "number"}},
}

AGENTS = [{"name": "Units", "prompt": "Normalize units.", "order": 1, "timeoutSeconds": 30}]


class FixedRandom:
    """Always draws the same character, so every identifier collides."""

    def choice(self, seq: str) -> str:
        return seq[0]


async def test_create_schema_stores_compiled_form(db) -> None:
    schema = await registry.create_schema(db, ORG, "Materials", 1, DEFINITION, prompt="Steel only.", agents=AGENTS)
    assert schema.version == 1
    assert len(schema.schema_identifier) == 12
    assert schema.compiled_json_schema == DEFINITION
    assert schema.agents[0]["timeoutSeconds"] == 30

    compiled = await registry.get_compiled_schema(db, schema.id)
    assert compiled.name == "Materials"
    assert compiled.prompt == "Steel only."
    assert [a.name for a in compiled.agents] == ["Units"]


async def test_create_schema_validates_input(db) -> None:
    with pytest.raises(ValidationError):
        await registry.create_schema(db, ORG, " ", 1, DEFINITION)
    with pytest.raises(ValidationError):
        await registry.create_schema(db, ORG, "Materials", 0, DEFINITION)
    with pytest.raises(ValidationError):
        await registry.create_schema(db, ORG, "Materials", 1, {"type": "object", "properties": "x"})
    with pytest.raises(ValidationError):
        await registry.create_schema(db, ORG, "Materials", 1, DEFINITION, agents=[{"name": "a"}])


async def test_versions_strictly_increase(db) -> None:
    """Versioning always appends latest + 1, whichever version it starts from."""
    first = await registry.create_schema(db, ORG, "Materials", 1, DEFINITION, prompt="v1", agents=AGENTS)
    second = await registry.create_new_version(db, first.id, {"prompt": "v2", "change_description": "prompt"})
    third = await registry.create_new_version(db, first.id, {"name": "Materials (steel)"})

    assert [first.version, second.version, third.version] == [1, 2, 3]
    assert {first.schema_identifier, second.schema_identifier, third.schema_identifier} == {first.schema_identifier}
    assert second.prompt == "v2"
    assert second.change_description == "prompt"
    assert third.prompt == "v1"
    assert third.name == "Materials (steel)"
    assert third.agents == second.agents == first.agents
    assert third.change_description is None

    # The original row is untouched.
    await db.refresh(first)
    assert first.prompt == "v1"
    assert first.version == 1


async def test_new_version_can_clear_optional_fields(db) -> None:
    first = await registry.create_schema(db, ORG, "Materials", 1, DEFINITION, prompt="v1", agents=AGENTS)
    second = await registry.create_new_version(db, first.id, {"prompt": None, "agents": []})
    assert second.prompt is None
    assert second.agents == []
    assert second.name == "Materials"
    assert second.definition == DEFINITION


async def test_new_version_rejects_unknown_fields(db) -> None:
    first = await registry.create_schema(db, ORG, "Materials", 1, DEFINITION)
    with pytest.raises(ValidationError, match="Unknown schema fields: version"):
        await registry.create_new_version(db, first.id, {"version": 7})
    with pytest.raises(NotFoundError):
        await registry.create_new_version(db, "missing", {})


async def test_identifier_exhaustion_conflicts(db) -> None:
    rng = FixedRandom()
    first = await registry.create_schema(db, ORG, "Materials", 1, DEFINITION, rng=rng)
    assert first.schema_identifier == "a" * 12

    with pytest.raises(ConflictError, match="unique schema identifier"):
        await registry.create_schema(db, ORG, "Other", 1, DEFINITION, rng=rng)

    # Identifiers are only unique per organization.
    other_org = await registry.create_schema(db, "org-2", "Materials", 1, DEFINITION, rng=rng)
    assert other_org.schema_identifier == first.schema_identifier


async def test_list_latest_per_family(db) -> None:
    materials = await registry.create_schema(db, ORG, "Materials", 1, DEFINITION)
    await registry.create_new_version(db, materials.id, {"prompt": "v2"})
    doors = await registry.create_schema(db, ORG, "Doors", 1, DEFINITION)
    await registry.create_schema(db, "org-2", "Windows", 1, DEFINITION)

    latest = await registry.list_schemas_for_organization(db, ORG)
    assert sorted((s.name, s.version) for s in latest) == [("Doors", 1), ("Materials", 2)]

    versions = await registry.list_schema_versions(db, ORG, materials.schema_identifier)
    assert [v.version for v in versions] == [2, 1]
    assert await registry.list_schema_versions(db, ORG, doors.schema_identifier) != []


async def test_delete_family_removes_jobs_of_every_version(db) -> None:
    first = await registry.create_schema(db, ORG, "Materials", 1, DEFINITION)
    second = await registry.create_new_version(db, first.id, {"prompt": "v2"})
    keep = await registry.create_schema(db, ORG, "Doors", 1, DEFINITION)

    job_one = await jobs.create_job(db, ORG, None, ["doc-a"], first.id)
    await jobs.create_job(db, ORG, None, ["doc-b"], second.id)
    await jobs.create_job(db, ORG, None, ["doc-c"], keep.id)
    await jobs.save_results(
        db, job_one.id, assemble_results([{"itemName": "Beam", "pageNumber": 1}], [], 1, "doc-a")
    )

    assert await registry.count_jobs_for_family(db, ORG, first.schema_identifier) == 2
    result = await registry.delete_all_versions(db, ORG, first.schema_identifier)
    assert result == {"deletedJobsCount": 2}

    assert await registry.list_schema_versions(db, ORG, first.schema_identifier) == []
    assert [s.name for s in await registry.list_schemas_for_organization(db, ORG)] == ["Doors"]
    orphaned = (await db.execute(select(func.count(ExtractionResult.id)))).scalar_one()
    assert orphaned == 0

    with pytest.raises(NotFoundError):
        await registry.delete_all_versions(db, ORG, first.schema_identifier)


async def test_delete_schema_by_version_id(db) -> None:
    first = await registry.create_schema(db, ORG, "Materials", 1, DEFINITION)
    assert await registry.delete_schema(db, first.id) == {"deletedJobsCount": 0}
    with pytest.raises(NotFoundError):
        await registry.get_schema(db, first.id)
