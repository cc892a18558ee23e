"""Unit tests for the page-level vision prompts."""

from __future__ import annotations

from takeoff.modules.extraction.prompts import SYSTEM_BASE, build_vision_prompt
from takeoff.modules.extraction.schema_compiler import MAX_GENERAL_PROMPT_CHARS, compile_schema

GUIDED_SCHEMA = {
    "type": "object",
    "required": ["itemName"],
    "properties": {
        "itemName": {
            "type": "string",
            "displayName": "Position text",
            "importance": "high",
            "extractionInstructions": "Copy the full position text.",
            "examples": [{"input": "Pos. 1 HEB 200", "output": "HEB 200"}],
        },
        "rows": {
            "type": "array",
            "extractionInstructions": "One entry per table row.",
            "items": {
                "type": "object",
                "properties": {"width": {"type": "number", "description": "mm"}, "note": True},
            },
        },
        "pair": {
            "type": "array",
            "extractionInstructions": "Two values.",
            "items": [{"type": "string"}, {"type": "number"}],
        },
    },
}


def test_schema_guidance_reaches_the_page_prompt() -> None:
    """Display name, importance, examples and object structure are all in the user prompt."""
    system, user = build_vision_prompt(2, compile_schema(GUIDED_SCHEMA))

    assert system == SYSTEM_BASE
    assert "# Data Structure" in user
    assert "## Position text" in user
    assert "**Importance:** HIGH" in user
    assert "Copy the full position text." in user
    assert '1. Input: "Pos. 1 HEB 200"' in user
    assert "## rows (List of Objects)" in user
    assert "- width (number): mm" in user
    assert "- note" in user
    assert "## pair\n" in user
    assert "this image is page 2" in user
    assert "CRITICAL RULES FOR MISSING DATA" in user


def test_schema_prompt_is_capped_and_kept_out_of_the_system_prompt() -> None:
    compiled = compile_schema(GUIDED_SCHEMA, prompt="x" * (MAX_GENERAL_PROMPT_CHARS + 50))
    system, user = build_vision_prompt(1, compiled)

    assert system == SYSTEM_BASE
    assert user.startswith("# General Instructions\n")
    assert "x" * MAX_GENERAL_PROMPT_CHARS + "...\n" in user
    assert "x" * (MAX_GENERAL_PROMPT_CHARS + 1) not in user


def test_legacy_prompt_without_schema() -> None:
    system, user = build_vision_prompt(4)
    assert "Extract all materials" in system
    assert "'Page 4'" in user
    assert "# Data Structure" not in user
