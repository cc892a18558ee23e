"""Pre-agent item checks.

Items that fail are marked with ``_validationError`` / ``_skipAgents`` and
bypass every agent unchanged instead of being sent to the LLM.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog

logger = structlog.get_logger()

VALIDATION_ERROR_KEY = "_validationError"
SKIP_AGENTS_KEY = "_skipAgents"


@dataclass
class InputValidationResult:
    valid: list[Any] = field(default_factory=list)
    invalid: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def valid_count(self) -> int:
        return len(self.valid)

    @property
    def invalid_count(self) -> int:
        return len(self.invalid)


def json_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _type_matches(expected: str, actual: str, value: Any) -> bool:
    if expected == actual:
        return True
    if expected == "number" and actual == "integer":
        return True
    if expected == "integer" and actual == "number":
        return float(value).is_integer()
    return False


def check_item(item: Any, definition: dict[str, Any] | None) -> str | None:
    """Return an error message, or None when the item may go to agents."""
    if not isinstance(item, dict) or not item:
        return f"Invalid extraction result structure: {json_type(item)}"

    if not definition or not isinstance(definition.get("properties"), dict):
        return None

    for required in definition.get("required") or []:
        if required not in item:
            return f"Missing required field: {required}"

    for field_name, field_schema in definition["properties"].items():
        if not isinstance(field_schema, dict) or field_name not in item:
            continue
        expected = field_schema.get("type")
        value = item[field_name]
        if not isinstance(expected, str) or value is None:
            continue
        actual = json_type(value)
        if not _type_matches(expected, actual, value):
            return f'Field "{field_name}" has wrong type: expected {expected}, got {actual}'

    return None


def validate_items(items: list[Any], definition: dict[str, Any] | None = None) -> InputValidationResult:
    result = InputValidationResult()
    for index, item in enumerate(items):
        error = check_item(item, definition)
        if error is None:
            result.valid.append(item)
            continue
        marked = dict(item) if isinstance(item, dict) else {}
        marked[VALIDATION_ERROR_KEY] = error
        marked[SKIP_AGENTS_KEY] = True
        result.invalid.append(marked)
        result.errors.append({"index": index, "error": error})

    if result.invalid:
        logger.warning(
            "Agent input validation issues",
            valid=result.valid_count,
            invalid=result.invalid_count,
            sample_errors=[e["error"] for e in result.errors[:3]],
        )
    return result


def format_report(result: InputValidationResult) -> str:
    if result.invalid_count == 0:
        return f"All {result.valid_count} extraction results passed validation"
    sample = "\n".join(f"- Result #{e['index']}: {e['error']}" for e in result.errors[:3])
    return (
        f"Validation issues: {result.valid_count} valid, {result.invalid_count} invalid\n"
        f"Sample errors:\n{sample}"
    )
