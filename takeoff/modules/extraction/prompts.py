"""Page-level vision prompts."""

from __future__ import annotations

from takeoff.modules.extraction.schema_compiler import CompiledSchema, generate_extraction_prompt

SYSTEM_BASE = "You are an expert document extraction system."

MISSING_DATA_RULES = """CRITICAL RULES FOR MISSING DATA:
- If you cannot find a value for a field, use null or empty string ("")
- NEVER use field descriptions, instructions, or placeholder text as values
- NEVER make up data or use example text
- Only extract actual data you can see in the document"""

SCHEMA_USER_TEMPLATE = """{schema_prompt}

{missing_data_rules}

EVIDENCE REQUIREMENTS:
For EACH extracted item, you MUST also include:
- sourceText: A complete text snippet containing ALL the values you extracted
  * If you extracted Quantity='50', ItemCode='ABC', and Specs='Grade A', then sourceText MUST contain '50', 'ABC', AND 'Grade A'
  * If values come from different locations, concatenate them with '...' separator
  * Example: 'Item: ABC123 ... Quantity: 50 units ... Specs: Grade A steel'
- location: A brief description of where this was found (e.g., 'Table 1, Row 3', 'Section 2.1', 'Page {page_number}')
- pageNumber: The document page the item was found on (this image is page {page_number})
- confidenceScore: Your confidence in the extracted values, between 0 and 1

Return the extracted data as a JSON array of objects matching the data structure above, with sourceText and location fields added to each object."""

LEGACY_USER_TEMPLATE = """Extract all materials and items from this construction document page.

CRITICAL RULES FOR MISSING DATA:
- If you cannot find a value, use null or empty string ("")
- NEVER use descriptions or placeholder text as values

EVIDENCE REQUIREMENTS:
For EACH extracted item, you MUST also include:
- sourceText: A complete text snippet containing ALL the values you extracted
- location: A brief description of where this was found (e.g., 'Page {page_number}')

Return as a JSON array."""


def build_vision_prompt(page_number: int, compiled: CompiledSchema | None = None) -> tuple[str, str]:
    """Return (system_prompt, user_prompt) for one rendered page."""
    if compiled is None:
        system_prompt = f"{SYSTEM_BASE} Extract all materials and items from the document."
        return system_prompt, LEGACY_USER_TEMPLATE.format(page_number=page_number)

    # The schema-level prompt is part of the (capped) schema section of the user prompt.
    user_prompt = SCHEMA_USER_TEMPLATE.format(
        schema_prompt=generate_extraction_prompt(compiled),
        missing_data_rules=MISSING_DATA_RULES,
        page_number=page_number,
    )
    return SYSTEM_BASE, user_prompt
