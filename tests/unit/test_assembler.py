"""Unit tests for confidence and evidence assembly."""

from __future__ import annotations

from takeoff.modules.extraction.assembler import (
    SCHEMA_ERRORS_KEY,
    assemble_result,
    assemble_results,
    flag_schema_violations,
)
from takeoff.modules.extraction.schema_compiler import compile_schema


def test_confidence_is_clamped() -> None:
    assert assemble_result({"itemName": "Beam", "confidenceScore": 1.4}, 1).confidence_score == 1.0
    assert assemble_result({"itemName": "Beam", "confidenceScore": -0.2}, 1).confidence_score == 0.0
    assert assemble_result({"itemName": "Beam"}, 1).confidence_score == 0.5


def test_model_page_attribution_wins() -> None:
    """A multi-page call can attribute items to pages other than the batch page."""
    result = assemble_result({"itemName": "Beam", "pageNumber": 6}, 2)
    assert result.page_number == 6
    assert result.raw_extraction["pageNumber"] == 6
    assert result.evidence.page_number == 6

    fallback = assemble_result({"itemName": "Beam", "pageNumber": "n/a"}, 2)
    assert fallback.page_number == 2


def test_evidence_and_layer_attribution() -> None:
    item = {
        "itemName": "Rebar",
        "sourceText": "Rebar B500B 12mm",
        "location": "Table 3",
        "confidenceScore": 0.8,
    }
    result = assemble_result(item, 3, [{"agentName": "Units", "status": "success"}], "layer-1")
    row = result.to_row()

    assert row["evidence"] == {"sourceText": "Rebar B500B 12mm", "location": "Table 3", "pageNumber": 3}
    assert row["source_data_layer_id"] == "layer-1"
    assert row["raw_extraction"]["sourceDataLayerId"] == "layer-1"
    assert row["status"] == "pending"
    assert row["verified_data"] is None
    assert row["agent_execution_metadata"] == [{"agentName": "Units", "status": "success"}]
    assert "sourceDataLayerId" not in item


def test_legacy_evidence_keys() -> None:
    result = assemble_result({"originalSnippet": "2x HEB", "locationInDocument": "p. 2", "confidence": 0.7}, 2)
    assert result.evidence.source_text == "2x HEB"
    assert result.evidence.location == "p. 2"
    assert result.confidence_score == 0.7


def test_assemble_results_aligns_metadata_by_position() -> None:
    results = assemble_results(
        [{"itemName": "A"}, {"itemName": "B"}],
        [[{"agentName": "X", "status": "success"}]],
        1,
    )
    assert [r.agent_execution_metadata for r in results] == [[{"agentName": "X", "status": "success"}], []]


STRICT = compile_schema(
    {
        "type": "object",
        "required": ["itemName"],
        "additionalProperties": False,
        "properties": {"itemName": {"type": "string"}, "quantity": {"type": "number"}},
    }
)


def test_schema_violations_are_flagged_not_dropped() -> None:
    items = [
        {"itemName": "Beam", "quantity": 2, "sourceText": "Beam 2", "pageNumber": 1, "_skipAgents": True},
        {"quantity": "two", "pageNumber": 2},
    ]

    flagged = flag_schema_violations(items, STRICT)

    assert flagged[0] is items[0]
    assert SCHEMA_ERRORS_KEY not in items[1]
    assert flagged[1][SCHEMA_ERRORS_KEY] == [
        "<root>: 'itemName' is a required property",
        "quantity: 'two' is not of type 'number'",
    ]
    assert assemble_results(flagged, [], 1)[1].raw_extraction[SCHEMA_ERRORS_KEY]


def test_declared_bookkeeping_names_are_validated() -> None:
    compiled = compile_schema({"type": "object", "properties": {"location": {"type": "integer"}}})
    flagged = flag_schema_violations([{"location": "Table 1"}], compiled)
    assert flagged[0][SCHEMA_ERRORS_KEY] == ["location: 'Table 1' is not of type 'integer'"]
