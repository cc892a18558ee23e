"""Schema compiler — author definition → CompiledSchema.

An author definition is a JSON-Schema object (``type: "object"``) whose
properties may carry extraction guidance (``displayName``, ``importance``,
``extractionInstructions``, ``examples``). Compiling it yields:

  - a Draft 7 validator for item-level validation
  - an ordered list of PropertyDescriptor (one per top-level property)
  - the required-field set
  - clean/output variants used in LLM prompts

Definitions larger than ``settings.schema_max_bytes`` are not rejected:
they compile with ``oversized=True`` and carry the structure-only output
schema as their ``json_schema`` so prompts and persisted copies stay small.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

import jsonschema
import structlog
from jsonschema import Draft7Validator
from pydantic import BaseModel, ConfigDict, Field

from takeoff.core.config import settings
from takeoff.core.exceptions import ValidationError

logger = structlog.get_logger()

AUTHOR_SCHEMA_META_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["type"],
    "properties": {
        "type": {"enum": ["object"]},
        "properties": {"type": "object"},
    },
}

PROPERTY_IMPORTANCE_VALUES = ("high", "medium", "low")

MAX_INSTRUCTIONS_CHARS = 500
MAX_GENERAL_PROMPT_CHARS = 3000

AGENT_NAME_MAX = 100
AGENT_PROMPT_MAX = 5000
AGENT_DESCRIPTION_MAX = 500


# ---------------------------------------------------------------------------
# Compiled artifacts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PropertyDescriptor:
    """One extractable top-level field of a schema."""

    name: str
    type: str | None
    title: str | None = None
    required: bool = False
    display_name: str | None = None
    importance: str | None = None
    extraction_instructions: str | None = None
    enum: list[Any] | None = None

    @property
    def is_numeric(self) -> bool:
        return self.type in ("number", "integer")


class AgentDefinition(BaseModel):
    """A post-processing agent configured on a schema version."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    prompt: str
    order: int
    enabled: bool = True
    description: str | None = None
    timeout_seconds: float | None = Field(default=None, alias="timeoutSeconds")
    skip_on_validation_error: bool = Field(default=False, alias="skipOnValidationError")

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass
class CompiledSchema:
    """Derived, cached view of a schema version used by the pipeline."""

    definition: dict[str, Any]
    json_schema: dict[str, Any]
    properties: list[PropertyDescriptor]
    required: frozenset[str]
    validator: Draft7Validator
    clean_schema: dict[str, Any]
    output_schema: dict[str, Any]
    size_bytes: int
    oversized: bool = False
    name: str | None = None
    prompt: str | None = None
    examples: list[Any] = field(default_factory=list)
    agents: list[AgentDefinition] = field(default_factory=list)

    def get_property(self, name: str) -> PropertyDescriptor | None:
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None

    @property
    def property_names(self) -> list[str]:
        return [p.name for p in self.properties]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_author_schema(definition: Any) -> None:
    """Check the definition against the supported author subset."""
    try:
        jsonschema.validate(definition, AUTHOR_SCHEMA_META_SCHEMA)
    except jsonschema.ValidationError as exc:
        path = "/" + "/".join(str(p) for p in exc.absolute_path)
        raise ValidationError(f"Invalid author schema: {path} {exc.message}") from exc

    try:
        Draft7Validator.check_schema(definition)
    except jsonschema.SchemaError as exc:
        raise ValidationError(f"Invalid author schema: {exc.message}") from exc


def validate_enhanced_schema(definition: Any) -> None:
    """Validate structure plus the optional per-property guidance fields."""
    if not isinstance(definition, dict) or not definition:
        raise ValidationError("Schema definition is required and cannot be null or empty")

    validate_author_schema(definition)

    for field_name, field_schema in (definition.get("properties") or {}).items():
        if not isinstance(field_schema, dict):
            raise ValidationError(f'Property "{field_name}" must be an object')

        importance = field_schema.get("importance")
        if importance is not None and importance not in PROPERTY_IMPORTANCE_VALUES:
            raise ValidationError(
                f'Invalid importance value for field "{field_name}". '
                'Must be "high", "medium", or "low"'
            )

        display_name = field_schema.get("displayName")
        if display_name is not None and not isinstance(display_name, str):
            raise ValidationError(f'displayName for field "{field_name}" must be a string')

        instructions = field_schema.get("extractionInstructions")
        if instructions is not None and not isinstance(instructions, str):
            raise ValidationError(
                f'extractionInstructions for field "{field_name}" must be a string'
            )

        examples = field_schema.get("examples")
        if examples is None:
            continue
        if not isinstance(examples, list):
            raise ValidationError(f'Examples for field "{field_name}" must be an array')
        for index, example in enumerate(examples, start=1):
            if not isinstance(example, dict):
                raise ValidationError(
                    f'Example {index} for field "{field_name}" must be an object'
                )
            for key in ("input", "output"):
                if not isinstance(example.get(key), str):
                    raise ValidationError(
                        f'Example {index} for field "{field_name}" must have a string "{key}" property'
                    )


def validate_agents(agents: Any) -> list[AgentDefinition]:
    """Validate raw agent definitions and return them as models.

    Raises ValidationError naming the first offending agent.
    """
    if not isinstance(agents, list):
        raise ValidationError("Agents must be an array")
    if len(agents) > settings.max_agents_per_schema:
        raise ValidationError(
            f"Maximum {settings.max_agents_per_schema} agents allowed per schema"
        )

    seen_names: set[str] = set()
    seen_orders: set[int] = set()
    result: list[AgentDefinition] = []

    for i, agent in enumerate(agents):
        if not isinstance(agent, dict):
            raise ValidationError(f"Agent at index {i} must be an object")

        name = agent.get("name")
        prompt = agent.get("prompt")
        order = agent.get("order")
        for key, value in (("name", name), ("prompt", prompt), ("order", order)):
            if value is None:
                article = "an" if key == "order" else "a"
                raise ValidationError(f"Agent at index {i} must have {article} {key}")

        if not isinstance(name, str):
            raise ValidationError(f"Agent name at index {i} must be a string")
        if not name:
            raise ValidationError(f"Agent name at index {i} must not be empty")
        if len(name) > AGENT_NAME_MAX:
            raise ValidationError(f"Agent name must not exceed {AGENT_NAME_MAX} characters")
        if name in seen_names:
            raise ValidationError("Agent names must be unique within schema")
        seen_names.add(name)

        if not isinstance(prompt, str):
            raise ValidationError(f"Agent prompt at index {i} must be a string")
        if not prompt:
            raise ValidationError(f"Agent prompt at index {i} must not be empty")
        if len(prompt) > AGENT_PROMPT_MAX:
            raise ValidationError(f"Agent prompt must not exceed {AGENT_PROMPT_MAX} characters")

        if isinstance(order, bool) or not isinstance(order, (int, float)):
            raise ValidationError(f"Agent order at index {i} must be a number")
        if not float(order).is_integer() or order <= 0:
            raise ValidationError("Agent order must be a positive integer")
        order = int(order)
        if order in seen_orders:
            raise ValidationError("Agent order values must be unique within schema")
        seen_orders.add(order)

        enabled = agent.get("enabled")
        if enabled is not None and not isinstance(enabled, bool):
            raise ValidationError(f"Agent enabled at index {i} must be a boolean")

        description = agent.get("description")
        if description is not None:
            if not isinstance(description, str):
                raise ValidationError(f"Agent description at index {i} must be a string")
            if len(description) > AGENT_DESCRIPTION_MAX:
                raise ValidationError(
                    f"Agent description must not exceed {AGENT_DESCRIPTION_MAX} characters"
                )

        timeout = agent.get("timeoutSeconds")
        if timeout is not None:
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
                raise ValidationError(f"Agent timeoutSeconds at index {i} must be a number")
            if not 5 <= timeout <= 120:
                raise ValidationError("Agent timeoutSeconds must be between 5 and 120")

        skip = agent.get("skipOnValidationError")
        if skip is not None and not isinstance(skip, bool):
            raise ValidationError(
                f"Agent skipOnValidationError at index {i} must be a boolean"
            )

        result.append(
            AgentDefinition(
                name=name,
                prompt=prompt,
                order=order,
                enabled=True if enabled is None else enabled,
                description=description,
                timeoutSeconds=timeout,
                skipOnValidationError=bool(skip),
            )
        )

    return result


def sort_agents_by_order(agents: list[AgentDefinition]) -> list[AgentDefinition]:
    """Enabled agents only, ascending by order."""
    return sorted((a for a in agents if a.enabled), key=lambda a: a.order)


# ---------------------------------------------------------------------------
# LLM-facing variants
# ---------------------------------------------------------------------------


def _truncate_instructions(field_name: str, instructions: str) -> str:
    if len(instructions) <= MAX_INSTRUCTIONS_CHARS:
        return instructions
    logger.warning(
        "Truncated extractionInstructions",
        field=field_name,
        original_chars=len(instructions),
    )
    return instructions[:MAX_INSTRUCTIONS_CHARS] + "..."


def _reduce_schema(node: Any, keep_instructions: bool) -> dict[str, Any]:
    if not isinstance(node, dict):
        return {}

    reduced: dict[str, Any] = {
        "type": node.get("type"),
        "title": node.get("title"),
        "required": node.get("required"),
    }

    properties = node.get("properties")
    if isinstance(properties, dict):
        reduced_props: dict[str, Any] = {}
        for field_name, field_schema in properties.items():
            if not isinstance(field_schema, dict):
                continue
            entry: dict[str, Any] = {
                "type": field_schema.get("type"),
                "title": field_schema.get("title"),
            }
            instructions = field_schema.get("extractionInstructions")
            if keep_instructions and instructions:
                entry["extractionInstructions"] = _truncate_instructions(field_name, instructions)
            if field_schema.get("items"):
                entry["items"] = _reduce_schema(field_schema["items"], keep_instructions)
            if field_schema.get("enum"):
                entry["enum"] = field_schema["enum"]
            reduced_props[field_name] = {k: v for k, v in entry.items() if v is not None}
        reduced["properties"] = reduced_props

    if node.get("items"):
        reduced["items"] = _reduce_schema(node["items"], keep_instructions)

    return {k: v for k, v in reduced.items() if v is not None}


def clean_schema(definition: dict[str, Any]) -> dict[str, Any]:
    """Structure plus capped extractionInstructions; drops descriptions, examples, display names."""
    return _reduce_schema(definition, keep_instructions=True)


def output_schema(definition: dict[str, Any]) -> dict[str, Any]:
    """Pure response structure: type, title, required, properties, items, enum."""
    return _reduce_schema(definition, keep_instructions=False)


# ---------------------------------------------------------------------------
# Compile
# ---------------------------------------------------------------------------


def definition_size(definition: dict[str, Any]) -> int:
    return len(json.dumps(definition, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))


def compile_schema(
    definition: dict[str, Any],
    *,
    name: str | None = None,
    prompt: str | None = None,
    examples: list[Any] | None = None,
    agents: list[AgentDefinition] | None = None,
    max_bytes: int | None = None,
) -> CompiledSchema:
    """Validate and compile an author definition.

    Raises ValidationError for structurally invalid definitions. Oversized
    definitions compile successfully and are flagged.
    """
    validate_enhanced_schema(definition)

    required_list = definition.get("required") or []
    required = frozenset(r for r in required_list if isinstance(r, str))

    properties: list[PropertyDescriptor] = []
    for prop_name, prop in (definition.get("properties") or {}).items():
        prop_type = prop.get("type")
        properties.append(
            PropertyDescriptor(
                name=prop_name,
                type=prop_type if isinstance(prop_type, str) else None,
                title=prop.get("title"),
                required=prop_name in required,
                display_name=prop.get("displayName"),
                importance=prop.get("importance"),
                extraction_instructions=prop.get("extractionInstructions"),
                enum=prop.get("enum"),
            )
        )

    limit = settings.schema_max_bytes if max_bytes is None else max_bytes
    size = definition_size(definition)
    oversized = size > limit
    structure = output_schema(definition)

    if oversized:
        logger.warning(
            "Schema definition exceeds size cap, using reduced variant",
            name=name,
            size_bytes=size,
            max_bytes=limit,
        )

    return CompiledSchema(
        definition=definition,
        json_schema=structure if oversized else definition,
        properties=properties,
        required=required,
        validator=Draft7Validator(definition),
        clean_schema=clean_schema(definition),
        output_schema=structure,
        size_bytes=size,
        oversized=oversized,
        name=name,
        prompt=prompt,
        examples=list(examples or []),
        agents=list(agents or []),
    )


def validate_data(compiled: CompiledSchema, data: dict[str, Any]) -> tuple[bool, list[str]]:
    """Validate one item against the compiled schema; returns (ok, error messages)."""
    errors = sorted(compiled.validator.iter_errors(data), key=lambda e: list(e.absolute_path))
    messages = [
        f"{'/'.join(str(p) for p in e.absolute_path) or '<root>'}: {e.message}" for e in errors
    ]
    return (not messages, messages)


# ---------------------------------------------------------------------------
# Prompt generation
# ---------------------------------------------------------------------------


def generate_extraction_prompt(compiled: CompiledSchema) -> str:
    """Build the schema part of the extraction prompt.

    Sections: general instructions (capped), the JSON structure, and
    per-field guidance for fields that have instructions or examples.
    """
    parts: list[str] = []

    if compiled.prompt:
        parts.append("# General Instructions")
        if len(compiled.prompt) > MAX_GENERAL_PROMPT_CHARS:
            logger.warning("Truncated schema-level prompt", original_chars=len(compiled.prompt))
            parts.append(compiled.prompt[:MAX_GENERAL_PROMPT_CHARS] + "...")
        else:
            parts.append(compiled.prompt)
        parts.append("")

    parts.append("# Data Structure")
    parts.append("Extract data according to the following JSON schema structure:")
    parts.append("```json")
    parts.append(json.dumps(compiled.json_schema, indent=2, ensure_ascii=False))
    parts.append("```")
    parts.append("")

    properties: dict[str, Any] = compiled.json_schema.get("properties") or {}
    guided = {
        name: prop
        for name, prop in properties.items()
        if isinstance(prop, dict) and (prop.get("extractionInstructions") or prop.get("examples"))
    }
    if not guided:
        return "\n".join(parts)

    parts.append("# Field-Specific Extraction Guidance")
    parts.append("")

    for field_name, prop in guided.items():
        display_name = prop.get("displayName") or prop.get("title") or field_name
        # Tuple-form ``items`` (a list) has no single object structure.
        items = prop.get("items") if isinstance(prop.get("items"), dict) else {}
        is_object_array = prop.get("type") == "array" and items.get("type") == "object"

        parts.append(f"## {display_name} (List of Objects)" if is_object_array else f"## {display_name}")

        if prop.get("importance"):
            parts.append(f"**Importance:** {prop['importance'].upper()}")

        if prop.get("extractionInstructions"):
            parts.append("")
            parts.append("**Extraction Instructions:**")
            parts.append(_truncate_instructions(field_name, prop["extractionInstructions"]))

        if is_object_array and isinstance(items.get("properties"), dict):
            parts.append("")
            parts.append("**Object Structure:**")
            for nested_name, nested in items["properties"].items():
                if not isinstance(nested, dict):
                    parts.append(f"- {nested_name}")
                    continue
                nested_type = nested.get("type")
                if nested_type == "string" and nested.get("format") == "date":
                    nested_type = "date"
                parts.append(f"- {nested_name} ({nested_type}): {nested.get('description') or ''}")

        examples = prop.get("examples") or []
        if examples:
            parts.append("")
            parts.append("**Examples:**")
            for index, example in enumerate(examples, start=1):
                parts.append(f'{index}. Input: "{example.get("input")}"')
                output = example.get("output")
                if isinstance(output, (dict, list)):
                    parts.append(f"Output: {json.dumps(output, indent=2, ensure_ascii=False)}")
                else:
                    parts.append("Output:")
                    parts.append(json.dumps({field_name: output}, indent=2, ensure_ascii=False))

        parts.append("")

    return "\n".join(parts)
