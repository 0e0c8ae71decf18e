import json

import pytest

from designgen.errors import ParseFailure
from designgen.llm_client import MockTextProvider
from designgen.llm_parsing import DEFAULT_PALETTE, parse_design
from designgen.models import DesignOptions, DesignRequest


def test_missing_fields_get_defaults():
    design = parse_design(json.dumps({"placements": [{}]}))
    assert design.title == "Untitled"
    assert design.palette == DEFAULT_PALETTE
    assert design.fonts == []
    assert design.production_notes == ""
    p = design.placements[0]
    assert (p.area, p.type, p.x, p.y, p.width, p.height) == ("front", "text", 0, 0, 400, 400)
    assert p.content == {}


def test_coerces_bad_values():
    raw = {
        "title": "T",
        "placements": [
            {"type": "hologram", "x": "12", "y": -5, "width": "wide", "height": None, "content": "HELLO"},
            "not a placement",
            {"type": "image", "content": "https://example.com/a.png"},
        ],
        "palette": ["#111111", 7],
    }
    design = parse_design(json.dumps(raw))
    assert len(design.placements) == 2
    first, second = design.placements
    assert first.type == "text"
    assert first.x == 12 and first.y == 0
    assert first.width == 400 and first.height == 400
    assert first.content == {"text": "HELLO"}
    assert second.content == {"src": "https://example.com/a.png"}
    assert design.palette == ["#111111", "7"]


def test_empty_palette_defaults():
    design = parse_design(json.dumps({"placements": [], "palette": []}))
    assert design.palette == DEFAULT_PALETTE


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "Sure! Here is your design: {",
        "[1, 2, 3]",
        json.dumps({"title": "x"}),
        json.dumps({"title": "x", "placements": {"a": 1}}),
    ],
)
def test_shape_failures(raw):
    with pytest.raises(ParseFailure):
        parse_design(raw)


def test_error_object_carries_reason():
    with pytest.raises(ParseFailure) as ei:
        parse_design(json.dumps({"error": "brief is not a garment"}))
    assert "brief is not a garment" in str(ei.value)


def test_mock_design_round_trips():
    req = DesignRequest(brief="Goa sunset surf shack", options=DesignOptions(product="hoodie", style="retro"))
    design = parse_design(MockTextProvider(req).generate("ignored"))
    assert design.title == "Hoodie Design - Retro"
    again = parse_design(json.dumps(design.model_dump()))
    assert again == design
