"""Response parser — raw LLM page output → candidate records.

Never raises for malformed model output: anything that cannot be turned
into JSON (even after repair) resolves to an empty list.

Pipeline per page:
  1. strip code fences, parse; on failure strip trailing commas, parse;
     if the text looks truncated, cut back to the last complete array
     element, close open strings/brackets, parse once more
  2. unwrap the envelope: bare array, then ``materials``, then ``items``
  3. drop items missing a required field
  4. flag items whose values are not backed by their ``sourceText``
  5. normalize numbers, confidence and page number
"""

from __future__ import annotations

import json
import re
from typing import Any

import structlog

from takeoff.core.exceptions import ParseError
from takeoff.modules.extraction.schema_compiler import CompiledSchema

logger = structlog.get_logger()

DEFAULT_CONFIDENCE = 0.5

# Keys describing where a value came from rather than what was extracted.
SOURCE_CHECK_SKIP_KEYS = frozenset({
    "sourceText",
    "location",
    "locationInDocument",
    "originalSnippet",
    "pageNumber",
    "extractionMethod",
    "confidenceScore",
    "confidence",
})

_QUANTITY_FIELD_RE = re.compile(r"quantity|qty|menge|anzahl", re.IGNORECASE)
_LEADING_NUMBER_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")
_TRAILING_COMMA_RE = re.compile(r",(\s*)(?=[}\]])")
_CLOSERS = {"{": "}", "[": "]"}


# ---------------------------------------------------------------------------
# JSON cleaning & repair
# ---------------------------------------------------------------------------


def strip_code_fences(raw_text: str) -> str:
    """Remove markdown fences, stray backticks and blank lines."""
    lines = []
    for line in raw_text.strip().splitlines():
        stripped = line.strip()
        if stripped.startswith("```"):
            continue
        line = line.replace("`", "")
        if line.strip():
            lines.append(line)
    return "\n".join(lines).strip()


def _outside_strings(text: str) -> list[tuple[int, int]]:
    """Spans of ``text`` not inside JSON string literals."""
    spans: list[tuple[int, int]] = []
    start = 0
    in_string = False
    escape = False
    for i, ch in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
                start = i + 1
        elif ch == '"':
            spans.append((start, i))
            in_string = True
    if not in_string:
        spans.append((start, len(text)))
    return spans


def strip_trailing_commas(text: str) -> str:
    """Remove commas directly before ``}``/``]`` or at the very end, outside strings."""
    out: list[str] = []
    cursor = 0
    for start, end in _outside_strings(text):
        out.append(text[cursor:start])
        out.append(_TRAILING_COMMA_RE.sub(r"\1", text[start:end]))
        cursor = end
    out.append(text[cursor:])
    return "".join(out).rstrip().rstrip(",")


def salvage_truncated(text: str) -> str:
    """Cut a truncated document back to its last complete array element.

    Safe cut points are right after ``[``, right after a complete element
    whose parent is an array, and right before an array-level comma. The
    open brackets at the cut point are then closed in order.
    """
    stack: list[str] = []
    in_string = False
    escape = False
    safe: tuple[int, tuple[str, ...]] | None = None

    for i, ch in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
                if stack and stack[-1] == "[":
                    safe = (i + 1, tuple(stack))
            continue

        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append(ch)
            if ch == "[":
                safe = (i + 1, tuple(stack))
        elif ch in "}]":
            if stack:
                stack.pop()
            if stack and stack[-1] == "[":
                safe = (i + 1, tuple(stack))
        elif ch == "," and stack and stack[-1] == "[":
            safe = (i, tuple(stack))

    if in_string:
        # Unterminated string literal: close it; it is complete if it sits in an array.
        text += '"'
        if stack and stack[-1] == "[":
            safe = (len(text), tuple(stack))

    if safe is None:
        raise ParseError("No recoverable JSON prefix in truncated response")

    cut, open_brackets = safe
    head = text[:cut].rstrip().rstrip(",")
    return head + "".join(_CLOSERS[b] for b in reversed(open_brackets))


def clean_and_repair_json(response: str) -> Any:
    """Parse model output as JSON, repairing it once if needed.

    Raises ParseError when the text is empty or unrecoverable.
    """
    if not response or not response.strip():
        raise ParseError("Empty response")

    cleaned = strip_code_fences(response)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    repaired = strip_trailing_commas(cleaned)
    if not repaired.endswith(("}", "]")):
        repaired = salvage_truncated(repaired)

    try:
        return json.loads(repaired)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Invalid JSON after repair: {exc.msg}", {"position": exc.pos}) from exc


# ---------------------------------------------------------------------------
# Numbers
# ---------------------------------------------------------------------------


def parse_quantity(value: Any) -> float | int | None:
    """Parse a quantity written with either European or US separators.

    "1.234,56" → 1234.56, "1,234.56" → 1234.56, "95.000" → 95000,
    "2,5" → 2.5, "12 m2" → 12. Returns None when nothing numeric leads.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if not isinstance(value, str):
        return None

    normalized = re.sub(r"\s", "", value)
    has_comma = "," in normalized
    has_dot = "." in normalized

    if has_comma and has_dot:
        if normalized.rfind(",") > normalized.rfind("."):
            normalized = normalized.replace(".", "").replace(",", ".")
        else:
            normalized = normalized.replace(",", "")
    elif has_comma:
        if normalized.count(",") > 1:
            normalized = normalized.replace(",", "")
        else:
            normalized = normalized.replace(",", ".")
    elif has_dot:
        if normalized.count(".") > 1:
            normalized = normalized.replace(".", "")
        else:
            fraction = normalized.split(".", 1)[1]
            if len(re.match(r"\d*", fraction).group(0)) == 3:
                normalized = normalized.replace(".", "")

    match = _LEADING_NUMBER_RE.match(normalized)
    if not match:
        return None
    return float(match.group(0))


def clamp_confidence(value: Any) -> float:
    """Coerce a model-reported confidence into [0, 1]; missing → 0.5."""
    if isinstance(value, bool) or value is None:
        return DEFAULT_CONFIDENCE
    if isinstance(value, str):
        value = parse_quantity(value)
        if value is None:
            return DEFAULT_CONFIDENCE
    if not isinstance(value, (int, float)) or value != value:
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, float(value)))


def resolve_page_number(value: Any, batch_page: int) -> int:
    """Prefer the page the model attributed; fall back to the batch page."""
    if isinstance(value, bool):
        return batch_page
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int) and value >= 1:
        return value
    return batch_page


def _is_numeric_field(name: str, compiled: CompiledSchema | None) -> bool:
    prop = compiled.get_property(name) if compiled else None
    if prop is not None and prop.type is not None:
        if prop.is_numeric:
            return True
        if prop.type == "string":
            return False
    return bool(_QUANTITY_FIELD_RE.search(name))


# ---------------------------------------------------------------------------
# Evidence completeness
# ---------------------------------------------------------------------------


_PUNCTUATION_RE = re.compile(r"[^\w\s]")


def _normalize_text(value: str) -> str:
    """Lowercase, punctuation folded to spaces, whitespace collapsed."""
    return re.sub(r"\s+", " ", _PUNCTUATION_RE.sub(" ", value.lower())).strip()


def _digits_only(value: str) -> str:
    return re.sub(r"[,.\s]", "", value)


def check_source_text(item: dict[str, Any]) -> list[str]:
    """Return the fields whose values do not appear in the item's sourceText.

    Soft check: callers flag, never drop.
    """
    source = item.get("sourceText")
    if not isinstance(source, str) or not source:
        return []

    source_norm = _normalize_text(source)
    if len(source_norm) < 3:
        return ["sourceText too short"]
    source_digits = _digits_only(source_norm)

    missing: list[str] = []
    for field_name, value in item.items():
        if field_name in SOURCE_CHECK_SKIP_KEYS or field_name.startswith("_"):
            continue
        if value is None or value == "" or isinstance(value, (bool, dict, list)):
            continue
        value_norm = _normalize_text(str(value))
        if len(value_norm) < 2:
            continue
        if value_norm in source_norm:
            continue
        digits = _digits_only(value_norm)
        if digits and digits in source_digits:
            continue
        missing.append(field_name)

    if missing:
        logger.warning(
            "Incomplete sourceText",
            fields=missing,
            source_preview=source[:100],
        )
    return missing


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


def unwrap_envelope(parsed: Any, page_number: int) -> list[Any]:
    """Array first, then ``materials``, then ``items``; anything else is empty."""
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        for key in ("materials", "items"):
            if isinstance(parsed.get(key), list):
                return parsed[key]
        logger.warning(
            "Unexpected response envelope",
            page=page_number,
            keys=sorted(parsed.keys())[:20],
        )
    else:
        logger.warning("Unexpected response envelope", page=page_number, kind=type(parsed).__name__)
    return []


def _load_items(response: str, page_number: int) -> list[dict[str, Any]] | None:
    try:
        parsed = clean_and_repair_json(response)
    except ParseError as exc:
        logger.error(
            "Failed to parse extraction response",
            page=page_number,
            error=exc.message,
            response_length=len(response or ""),
            response_preview=(response or "")[:300],
        )
        return None

    items = []
    for candidate in unwrap_envelope(parsed, page_number):
        if isinstance(candidate, dict):
            items.append(candidate)
        else:
            logger.warning("Skipping non-object item", page=page_number, kind=type(candidate).__name__)
    return items


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def parse_dynamic_response(
    response: str, page_number: int, compiled: CompiledSchema | None
) -> list[dict[str, Any]]:
    """Parse one page of output against a compiled schema."""
    items = _load_items(response, page_number)
    if not items:
        return []

    required = sorted(compiled.required) if compiled else []
    results: list[dict[str, Any]] = []

    for item in items:
        missing_required = [f for f in required if item.get(f) is None]
        if missing_required:
            logger.warning(
                "Dropping item missing required fields",
                page=page_number,
                missing=missing_required,
            )
            continue

        missing_evidence = check_source_text(item)

        record = dict(item)
        for key, value in item.items():
            if key in SOURCE_CHECK_SKIP_KEYS or not isinstance(value, str):
                continue
            if _is_numeric_field(key, compiled):
                parsed = parse_quantity(value)
                if parsed is not None:
                    record[key] = parsed

        record["confidenceScore"] = clamp_confidence(
            item.get("confidenceScore", item.get("confidence"))
        )
        record["pageNumber"] = resolve_page_number(item.get("pageNumber"), page_number)
        record["extractionMethod"] = "dynamic-schema"
        if missing_evidence:
            record["sourceTextIncomplete"] = True
            record["missingFieldsInSourceText"] = missing_evidence

        results.append(record)

    logger.info("Parsed extraction response", page=page_number, items=len(results))
    return results


def _format_dimensions(dimensions: Any) -> str | None:
    if not isinstance(dimensions, dict):
        return None
    labels = (
        ("length", "L"),
        ("width", "W"),
        ("height", "H"),
        ("diameter", "⌀"),
        ("thickness", "T"),
        ("radius", "R"),
    )
    parts = [f"{label}: {dimensions[key]}" for key, label in labels if dimensions.get(key)]
    text = " × ".join(parts)
    if dimensions.get("unit"):
        text = f"{text} {dimensions['unit']}"
    return text or None


def build_technical_specs(item: dict[str, Any]) -> str:
    specs = [
        str(item[key])
        for key in ("materialType", "marketName", "color", "grain", "standards")
        if item.get(key)
    ]
    dims = _format_dimensions(item.get("dimensions"))
    if dims:
        specs.append(dims)
    specs.extend(str(item[key]) for key in ("finish", "technicalData") if item.get(key))
    if not specs and item.get("materialDescription"):
        return str(item["materialDescription"])
    return ", ".join(specs)


def _format_price(value: Any) -> str:
    amount = parse_quantity(value)
    if amount is None:
        return str(value)
    # de-DE style: 1.234,50
    return f"{amount:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")


def build_additional_notes(item: dict[str, Any]) -> str:
    notes = []
    for key, label in (
        ("surcharges", "Surcharges"),
        ("variants", "Variants"),
        ("accessories", "Accessories"),
        ("exceptions", "Exceptions"),
    ):
        if item.get(key):
            notes.append(f"{label}: {item[key]}")
    if item.get("notes"):
        notes.append(str(item["notes"]))
    if item.get("category"):
        notes.append(f"Category: {item['category']}")

    currency = item.get("currency") or "EUR"
    prices = []
    if item.get("unitPrice"):
        prices.append(f"Unit: {_format_price(item['unitPrice'])} {currency}")
    if item.get("totalPrice"):
        prices.append(f"Total: {_format_price(item['totalPrice'])} {currency}")
    if prices:
        notes.append(", ".join(prices))
    return " | ".join(notes)


def parse_legacy_response(response: str, page_number: int) -> list[dict[str, Any]]:
    """Fixed-shape material records for jobs without a schema."""
    items = _load_items(response, page_number)
    if not items:
        return []

    results = []
    for item in items:
        results.append({
            "itemCode": item.get("itemCode") or item.get("itemNumber") or "",
            "itemName": item.get("itemName") or item.get("materialName") or "Unknown Material",
            "technicalSpecifications": item.get("technicalSpecifications") or build_technical_specs(item),
            "executionNotes": item.get("executionNotes") or "",
            "quantity": parse_quantity(item.get("quantity")),
            "unit": item.get("unit"),
            "additionalNotes": item.get("additionalNotes") or build_additional_notes(item),
            "confidenceScore": clamp_confidence(item.get("confidenceScore")),
            "pageNumber": resolve_page_number(item.get("pageNumber"), page_number),
            "location": item.get("location") or item.get("locationInDocument") or f"Page {page_number}",
            "sourceText": item.get("sourceText") or item.get("originalSnippet"),
            "extractionMethod": "vision-only",
        })

    logger.info("Parsed legacy extraction response", page=page_number, items=len(results))
    return results


def parse_extraction_response(
    response: str, page_number: int, compiled: CompiledSchema | None = None
) -> list[dict[str, Any]]:
    """Entry point: dynamic parser with a schema, legacy shape without one."""
    if compiled is not None:
        return parse_dynamic_response(response, page_number, compiled)
    return parse_legacy_response(response, page_number)
