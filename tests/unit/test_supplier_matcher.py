"""Unit tests for supplier token matching (no database)."""

from __future__ import annotations

from takeoff.modules.extraction.models import ExtractionResult
from takeoff.modules.suppliers.matcher import (
    matching_fields,
    rank_suppliers,
    result_data,
    result_tokens,
    score_supplier,
    tokenize,
)
from takeoff.modules.suppliers.models import Supplier


def _supplier(supplier_id: str, name: str, *materials: str) -> Supplier:
    return Supplier(id=supplier_id, organization_id="org-1", name=name, materials_offered=list(materials))


def _result(raw: dict, verified: dict | None = None) -> ExtractionResult:
    return ExtractionResult(id="r-1", job_id="j-1", page_number=1, raw_extraction=raw, verified_data=verified)


def test_tokenize_drops_short_and_numeric_tokens() -> None:
    assert tokenize("Steel HEB-200 beam, 12 m x 2") == {"steel", "heb", "beam"}
    assert tokenize("Beton C25/30") == {"beton", "c25"}
    assert tokenize("") == set()


def test_matching_fields_skip_bookkeeping() -> None:
    data = {
        "itemName": "Steel beam",
        "quantity": 12,
        "pageNumber": 3,
        "sourceText": "steel beam heb",
        "confidenceScore": 0.9,
        "_validationError": "x",
        "unit": None,
        "specs": {"grade": "S235"},
    }
    assert matching_fields(data) == {
        "itemName": "Steel beam",
        "quantity": "12",
        "specs": '{"grade": "S235"}',
    }


def test_verified_data_wins_when_present() -> None:
    assert result_data(_result({"itemName": "raw"}, {"itemName": "verified"})) == {"itemName": "verified"}
    assert result_data(_result({"itemName": "raw"}, {})) == {"itemName": "raw"}


def test_score_is_share_of_result_tokens() -> None:
    tokens = {"steel", "beam", "heb", "galvanized"}
    score = score_supplier(tokens, _supplier("s-1", "Stahl AG", "Steel beams", "HEB steel profiles"))
    assert score.confidence_score == 0.5
    assert score.matched_terms == ("heb", "steel")
    assert score.match_reason == "Matched 2/4 terms: heb, steel"


def test_no_overlap_scores_zero() -> None:
    score = score_supplier({"concrete"}, _supplier("s-1", "Glass Co", "Float glass"))
    assert score.confidence_score == 0.0
    assert score.match_reason == "No overlapping material terms"
    assert score_supplier(set(), _supplier("s-1", "Glass Co", "glass")).confidence_score == 0.0


def test_reason_lists_at_most_five_terms() -> None:
    tokens = {"aa", "bb", "cc", "dd", "ee", "ff", "gg"}
    score = score_supplier(tokens, _supplier("s-1", "All", "aa bb cc dd ee ff gg"))
    assert score.confidence_score == 1.0
    assert score.match_reason == "Matched 7/7 terms: aa, bb, cc, dd, ee (+2 more)"


def test_rank_orders_by_score_then_name() -> None:
    result = _result({"itemName": "Steel beam", "material": "galvanized"})
    assert result_tokens(result) == {"steel", "beam", "galvanized"}
    ranked = rank_suppliers(
        result,
        [
            _supplier("s-3", "Zeta Steel", "steel"),
            _supplier("s-2", "Alpha Steel", "steel"),
            _supplier("s-1", "Beam & Steel", "steel beam"),
            _supplier("s-4", "Glass Co", "glass"),
        ],
    )
    assert [m.supplier_name for m in ranked] == ["Beam & Steel", "Alpha Steel", "Zeta Steel", "Glass Co"]
    assert [m.confidence_score for m in ranked] == [0.6667, 0.3333, 0.3333, 0.0]
