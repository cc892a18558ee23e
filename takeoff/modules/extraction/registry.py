"""Schema registry — immutable, versioned schema families per organization.

A family is the set of rows sharing (organization_id, schema_identifier).
Rows are never updated: "editing" a schema inserts version ``latest + 1``
with the same identifier, carrying over every field the caller did not set.
"""

from __future__ import annotations

import random
from typing import Any, Protocol

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from takeoff.core.config import settings
from takeoff.core.exceptions import ConflictError, NotFoundError, ValidationError
from takeoff.modules.extraction.models import ExtractionJob, ExtractionSchema
from takeoff.modules.extraction.schema_compiler import (
    AgentDefinition,
    CompiledSchema,
    compile_schema,
    validate_agents,
)

logger = structlog.get_logger()

IDENTIFIER_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"

# Fields a new version may override; anything else is carried over.
VERSION_FIELDS = ("name", "definition", "prompt", "examples", "agents", "change_description")


class RandomSource(Protocol):
    def choice(self, seq: str) -> str: ...


_default_rng = random.SystemRandom()


# ---------------------------------------------------------------------------
# Identifier generation
# ---------------------------------------------------------------------------


def generate_schema_identifier(rng: RandomSource | None = None, length: int | None = None) -> str:
    source = rng or _default_rng
    size = length or settings.schema_identifier_length
    return "".join(source.choice(IDENTIFIER_ALPHABET) for _ in range(size))


async def _identifier_exists(db: AsyncSession, organization_id: str, identifier: str) -> bool:
    query = (
        select(ExtractionSchema.id)
        .where(ExtractionSchema.organization_id == organization_id)
        .where(ExtractionSchema.schema_identifier == identifier)
        .limit(1)
    )
    return (await db.execute(query)).first() is not None


async def ensure_unique_identifier(
    db: AsyncSession,
    organization_id: str,
    rng: RandomSource | None = None,
    max_attempts: int | None = None,
) -> str:
    """Draw identifiers until one is unused in the organization.

    Raises ConflictError after ``max_attempts`` collisions.
    """
    attempts = max_attempts or settings.schema_identifier_max_attempts
    for attempt in range(1, attempts + 1):
        identifier = generate_schema_identifier(rng)
        if not await _identifier_exists(db, organization_id, identifier):
            return identifier
        logger.warning(
            "Schema identifier collision",
            organization_id=organization_id,
            attempt=attempt,
        )
    raise ConflictError(
        "Failed to generate unique schema identifier",
        {"organization_id": organization_id, "attempts": attempts},
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_schema(db: AsyncSession, schema_id: str) -> ExtractionSchema:
    schema = await db.get(ExtractionSchema, schema_id)
    if schema is None:
        raise NotFoundError(f"Schema not found: {schema_id}", {"schema_id": schema_id})
    return schema


def compile_row(schema: ExtractionSchema) -> CompiledSchema:
    """Compile a stored version together with its prompt, examples and agents."""
    agents = [AgentDefinition.model_validate(a) for a in (schema.agents or [])]
    return compile_schema(
        schema.definition,
        name=schema.name,
        prompt=schema.prompt,
        examples=schema.examples,
        agents=agents,
    )


async def get_compiled_schema(db: AsyncSession, schema_id: str) -> CompiledSchema:
    return compile_row(await get_schema(db, schema_id))


async def list_schemas_for_organization(
    db: AsyncSession, organization_id: str
) -> list[ExtractionSchema]:
    """Latest version of every family in the organization."""
    latest = (
        select(
            ExtractionSchema.schema_identifier,
            func.max(ExtractionSchema.version).label("max_version"),
        )
        .where(ExtractionSchema.organization_id == organization_id)
        .group_by(ExtractionSchema.schema_identifier)
        .subquery()
    )
    query = (
        select(ExtractionSchema)
        .join(
            latest,
            (ExtractionSchema.schema_identifier == latest.c.schema_identifier)
            & (ExtractionSchema.version == latest.c.max_version),
        )
        .where(ExtractionSchema.organization_id == organization_id)
        .order_by(ExtractionSchema.schema_identifier)
    )
    return list((await db.execute(query)).scalars().all())


async def list_schema_versions(
    db: AsyncSession, organization_id: str, schema_identifier: str
) -> list[ExtractionSchema]:
    """All versions of one family, newest first."""
    query = (
        select(ExtractionSchema)
        .where(ExtractionSchema.organization_id == organization_id)
        .where(ExtractionSchema.schema_identifier == schema_identifier)
        .order_by(ExtractionSchema.version.desc())
    )
    return list((await db.execute(query)).scalars().all())


async def _family_ids(db: AsyncSession, organization_id: str, schema_identifier: str) -> list[str]:
    query = (
        select(ExtractionSchema.id)
        .where(ExtractionSchema.organization_id == organization_id)
        .where(ExtractionSchema.schema_identifier == schema_identifier)
    )
    return [row[0] for row in (await db.execute(query)).all()]


async def count_jobs_for_family(
    db: AsyncSession, organization_id: str, schema_identifier: str
) -> int:
    ids = await _family_ids(db, organization_id, schema_identifier)
    if not ids:
        return 0
    query = select(func.count(ExtractionJob.id)).where(ExtractionJob.schema_id.in_(ids))
    return (await db.execute(query)).scalar_one()


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


async def _name_version_taken(
    db: AsyncSession, organization_id: str, name: str, version: int
) -> bool:
    query = (
        select(ExtractionSchema.id)
        .where(ExtractionSchema.organization_id == organization_id)
        .where(ExtractionSchema.name == name)
        .where(ExtractionSchema.version == version)
        .limit(1)
    )
    return (await db.execute(query)).first() is not None


async def _insert(db: AsyncSession, row: ExtractionSchema) -> ExtractionSchema:
    db.add(row)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConflictError(
            f"Schema version already exists: {row.name} v{row.version}",
            {"name": row.name, "version": row.version},
        ) from exc
    await db.refresh(row)
    return row


async def create_schema(
    db: AsyncSession,
    organization_id: str,
    name: str,
    version: int,
    definition: dict[str, Any],
    prompt: str | None = None,
    examples: list[Any] | None = None,
    agents: list[dict[str, Any]] | None = None,
    *,
    rng: RandomSource | None = None,
) -> ExtractionSchema:
    """Create the first row of a new schema family."""
    if not name or not name.strip():
        raise ValidationError("Schema name is required")
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        raise ValidationError("Schema version must be a positive integer")

    agent_models = validate_agents(agents) if agents is not None else []
    compiled = compile_schema(definition, name=name, prompt=prompt, agents=agent_models)

    if await _name_version_taken(db, organization_id, name, version):
        raise ConflictError(
            f"Schema version already exists: {name} v{version}",
            {"name": name, "version": version},
        )

    identifier = await ensure_unique_identifier(db, organization_id, rng=rng)

    row = await _insert(
        db,
        ExtractionSchema(
            organization_id=organization_id,
            schema_identifier=identifier,
            name=name,
            version=version,
            definition=definition,
            compiled_json_schema=compiled.json_schema,
            prompt=prompt,
            examples=examples,
            agents=[a.to_json() for a in agent_models],
        ),
    )
    logger.info(
        "Schema created",
        schema_id=row.id,
        schema_identifier=identifier,
        name=name,
        version=version,
        oversized=compiled.oversized,
    )
    return row


async def create_new_version(
    db: AsyncSession, schema_id: str, updates: dict[str, Any]
) -> ExtractionSchema:
    """Insert ``latest + 1`` for the family of ``schema_id``.

    ``updates`` holds only the fields the caller set; a key set to None
    clears optional fields (prompt, examples) but never name or definition.
    """
    unknown = set(updates) - set(VERSION_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown schema fields: {', '.join(sorted(unknown))}")

    current = await get_schema(db, schema_id)

    latest_query = (
        select(func.max(ExtractionSchema.version))
        .where(ExtractionSchema.organization_id == current.organization_id)
        .where(ExtractionSchema.schema_identifier == current.schema_identifier)
    )
    latest_version = (await db.execute(latest_query)).scalar_one_or_none() or current.version
    new_version = latest_version + 1

    name = updates.get("name") or current.name
    definition = updates.get("definition") or current.definition
    prompt = updates["prompt"] if "prompt" in updates else current.prompt
    examples = updates["examples"] if "examples" in updates else current.examples

    if "agents" in updates and updates["agents"] is not None:
        agent_models = validate_agents(updates["agents"])
    else:
        agent_models = [AgentDefinition.model_validate(a) for a in (current.agents or [])]

    compiled = compile_schema(definition, name=name, prompt=prompt, agents=agent_models)

    row = await _insert(
        db,
        ExtractionSchema(
            organization_id=current.organization_id,
            schema_identifier=current.schema_identifier,
            name=name,
            version=new_version,
            definition=definition,
            compiled_json_schema=compiled.json_schema,
            prompt=prompt,
            examples=examples,
            agents=[a.to_json() for a in agent_models],
            change_description=updates.get("change_description"),
        ),
    )
    logger.info(
        "Schema version created",
        schema_id=row.id,
        schema_identifier=row.schema_identifier,
        previous_version=latest_version,
        version=new_version,
    )
    return row


async def delete_all_versions(
    db: AsyncSession, organization_id: str, schema_identifier: str
) -> dict[str, int]:
    """Delete a family and every job that used any of its versions.

    Two committed steps (jobs, then versions). A crash in between leaves
    the versions in place with no jobs; re-running finishes the delete.
    """
    ids = await _family_ids(db, organization_id, schema_identifier)
    if not ids:
        raise NotFoundError(
            f"Schema not found: {organization_id}/{schema_identifier}",
            {"schema_identifier": schema_identifier},
        )

    count_query = select(func.count(ExtractionJob.id)).where(ExtractionJob.schema_id.in_(ids))
    deleted_jobs = (await db.execute(count_query)).scalar_one()

    await db.execute(delete(ExtractionJob).where(ExtractionJob.schema_id.in_(ids)))
    await db.commit()

    await db.execute(delete(ExtractionSchema).where(ExtractionSchema.id.in_(ids)))
    await db.commit()

    logger.info(
        "Schema family deleted",
        organization_id=organization_id,
        schema_identifier=schema_identifier,
        versions=len(ids),
        deleted_jobs=deleted_jobs,
    )
    return {"deletedJobsCount": deleted_jobs}


async def delete_schema(db: AsyncSession, schema_id: str) -> dict[str, int]:
    schema = await get_schema(db, schema_id)
    return await delete_all_versions(db, schema.organization_id, schema.schema_identifier)
