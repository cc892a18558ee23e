"""Unit tests for the schema compiler: validation, compilation, prompt text."""

from __future__ import annotations

import pytest

from takeoff.core.exceptions import ValidationError
from takeoff.modules.extraction.schema_compiler import (
    clean_schema,
    compile_schema,
    generate_extraction_prompt,
    output_schema,
    sort_agents_by_order,
    validate_agents,
    validate_data,
    validate_enhanced_schema,
)

MATERIAL_SCHEMA = {
    "type": "object",
    "title": "Material",
    "required": ["itemName"],
    "properties": {
        "itemName": {
            "type": "string",
            "title": "Item",
            "displayName": "Item name",
            "importance": "high",
            "extractionInstructions": "Use the exact name from the bill of quantities.",
            "description": "dropped from prompts",
        },
        "quantity": {"type": "number"},
        "unit": {"type": "string", "enum": ["m", "m2", "kg", "pcs"]},
    },
}


def _agent(name: str = "Normalizer", order: int = 1, **extra) -> dict:
    return {"name": name, "prompt": "Normalize units.", "order": order, **extra}


# ---------------------------------------------------------------------------
# Definition validation
# ---------------------------------------------------------------------------


def test_compile_flattens_properties_in_order() -> None:
    """Descriptors follow property order and mark required fields."""
    compiled = compile_schema(MATERIAL_SCHEMA, name="Materials")
    assert compiled.property_names == ["itemName", "quantity", "unit"]
    assert compiled.required == frozenset({"itemName"})
    item = compiled.get_property("itemName")
    assert item is not None and item.required and item.importance == "high"
    assert compiled.get_property("quantity").is_numeric
    assert compiled.get_property("missing") is None
    assert compiled.oversized is False
    assert compiled.json_schema is MATERIAL_SCHEMA


@pytest.mark.parametrize(
    "definition",
    [
        None,
        {},
        {"type": "array", "items": {}},
        {"type": "object", "properties": []},
        {"type": "object", "properties": {"a": {"type": "nonsense"}}},
    ],
)
def test_invalid_definitions_are_rejected(definition) -> None:
    """Non-object or structurally broken definitions raise ValidationError."""
    with pytest.raises(ValidationError):
        validate_enhanced_schema(definition)


def test_invalid_importance_is_rejected() -> None:
    definition = {"type": "object", "properties": {"a": {"type": "string", "importance": "urgent"}}}
    with pytest.raises(ValidationError, match="importance"):
        compile_schema(definition)


def test_examples_need_string_input_and_output() -> None:
    definition = {
        "type": "object",
        "properties": {"a": {"type": "string", "examples": [{"input": "x", "output": 1}]}},
    }
    with pytest.raises(ValidationError, match='string "output"'):
        compile_schema(definition)


def test_oversized_definition_is_flagged_not_rejected() -> None:
    """Over the byte cap the compiled schema falls back to the structure-only variant."""
    compiled = compile_schema(MATERIAL_SCHEMA, max_bytes=50)
    assert compiled.oversized is True
    assert compiled.size_bytes > 50
    assert compiled.json_schema == output_schema(MATERIAL_SCHEMA)
    assert "extractionInstructions" not in compiled.json_schema["properties"]["itemName"]


def test_clean_schema_keeps_capped_instructions_only() -> None:
    long_instructions = "x" * 600
    definition = {
        "type": "object",
        "properties": {"a": {"type": "string", "extractionInstructions": long_instructions, "displayName": "A"}},
    }
    cleaned = clean_schema(definition)["properties"]["a"]
    assert cleaned["extractionInstructions"] == "x" * 500 + "..."
    assert "displayName" not in cleaned


def test_validate_data_reports_paths() -> None:
    compiled = compile_schema(MATERIAL_SCHEMA)
    ok, errors = validate_data(compiled, {"itemName": "Beam", "quantity": 3, "unit": "m"})
    assert ok and errors == []

    ok, errors = validate_data(compiled, {"quantity": "three", "unit": "yards"})
    assert not ok
    assert any(e.startswith("<root>") and "itemName" in e for e in errors)
    assert any(e.startswith("quantity:") for e in errors)
    assert any(e.startswith("unit:") for e in errors)


def test_extraction_prompt_sections() -> None:
    compiled = compile_schema(MATERIAL_SCHEMA, prompt="Only count structural steel.")
    prompt = generate_extraction_prompt(compiled)
    assert prompt.startswith("# General Instructions\nOnly count structural steel.")
    assert "# Data Structure" in prompt
    assert "# Field-Specific Extraction Guidance" in prompt
    assert "## Item name" in prompt
    assert "**Importance:** HIGH" in prompt


def test_extraction_prompt_without_guidance_has_no_guidance_section() -> None:
    compiled = compile_schema({"type": "object", "properties": {"a": {"type": "string"}}})
    assert "Field-Specific" not in generate_extraction_prompt(compiled)


# ---------------------------------------------------------------------------
# Agent definitions
# ---------------------------------------------------------------------------


def test_valid_agents_round_trip_aliases() -> None:
    agents = validate_agents([_agent(timeoutSeconds=30, skipOnValidationError=True)])
    assert agents[0].timeout_seconds == 30
    assert agents[0].skip_on_validation_error is True
    assert agents[0].to_json()["timeoutSeconds"] == 30


@pytest.mark.parametrize(
    "agents, message",
    [
        ("not-a-list", "must be an array"),
        ([_agent(name=f"a{i}", order=i + 1) for i in range(11)], "Maximum 10"),
        ([{"prompt": "p", "order": 1}], "must have a name"),
        ([{"name": "a", "prompt": "p"}], "must have an order"),
        ([_agent(name="")], "must not be empty"),
        ([_agent(name="n" * 101)], "100 characters"),
        ([_agent(), _agent(order=2)], "names must be unique"),
        ([_agent(), _agent(name="Other")], "order values must be unique"),
        ([_agent(order=0)], "positive integer"),
        ([_agent(order=1.5)], "positive integer"),
        ([_agent(order="1")], "must be a number"),
        ([_agent(enabled="yes")], "must be a boolean"),
        ([_agent(description="d" * 501)], "500 characters"),
        ([_agent(timeoutSeconds=3)], "between 5 and 120"),
        ([_agent(skipOnValidationError="no")], "must be a boolean"),
    ],
)
def test_invalid_agents(agents, message) -> None:
    with pytest.raises(ValidationError, match=message):
        validate_agents(agents)


def test_sort_agents_skips_disabled() -> None:
    agents = validate_agents(
        [_agent("Third", 3), _agent("First", 1), _agent("Off", 2, enabled=False)]
    )
    assert [a.name for a in sort_agents_by_order(agents)] == ["First", "Third"]
