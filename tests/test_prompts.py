import json

import pytest

from designgen import prompts
from designgen.errors import EmptyBrief
from designgen.models import Canvas, Design, DesignOptions, DesignRequest, Placement


def test_sanitize_strips_control_chars_and_trims():
    assert prompts.sanitize_brief("  gold\x00 tee\x1f\x7f \n") == "gold tee"


def test_sanitize_caps_length_and_is_idempotent():
    once = prompts.sanitize_brief("a" * 2500)
    assert len(once) == prompts.MAX_BRIEF_LENGTH
    assert prompts.sanitize_brief(once) == once


def test_sanitize_never_exceeds_cap_with_whitespace_at_boundary():
    text = "a" * 1999 + " " + "b" * 100
    once = prompts.sanitize_brief(text)
    assert len(once) <= prompts.MAX_BRIEF_LENGTH
    assert prompts.sanitize_brief(once) == once


def test_empty_brief_rejected():
    with pytest.raises(EmptyBrief):
        prompts.build_prompt(DesignRequest(brief=" \x00\t "))


def test_defaults_in_user_section():
    prompt, digest = prompts.build_prompt(DesignRequest(brief="sunset surf club"))
    assert "Brief: sunset surf club" in prompt
    assert "Product: t-shirt" in prompt
    assert 'Canvas: {"w":4500,"h":5400}' in prompt
    assert "Style: classic vintage" in prompt
    assert "Context:" not in prompt
    assert prompt.startswith(prompts.SYSTEM_PREAMBLE)
    assert digest == prompts.prompt_hash(prompt)
    assert len(digest) == 64


def test_options_override_defaults():
    req = DesignRequest(
        brief="neon koi",
        options=DesignOptions(product="hoodie", style="streetwear", canvas=Canvas(w=3000, h=3600)),
    )
    prompt, _ = prompts.build_prompt(req)
    assert "Product: hoodie" in prompt
    assert "Style: streetwear" in prompt
    assert json.dumps({"w": 3000, "h": 3600}, separators=(",", ":")) in prompt


class _Retriever:
    def __init__(self, facts=None, exc=None):
        self._facts = facts or []
        self._exc = exc
        self.calls = []

    def facts(self, query):
        self.calls.append(query)
        if self._exc:
            raise self._exc
        return self._facts


def test_retrieval_adds_at_most_three_facts():
    facts = [{"text": f"fact {i}", "source": f"src{i}"} for i in range(5)]
    req = DesignRequest(brief="goa beach", options=DesignOptions(retrieval=True))
    prompt, _ = prompts.build_prompt(req, _Retriever(facts))
    assert "\nContext:\n" in prompt
    assert "Fact: fact 0 (source: src0)" in prompt
    assert "Fact: fact 2 (source: src2)" in prompt
    assert "fact 3" not in prompt


def test_retrieval_failure_yields_no_context():
    req = DesignRequest(brief="goa beach", options=DesignOptions(retrieval=True))
    prompt, _ = prompts.build_prompt(req, _Retriever(exc=RuntimeError("down")))
    assert "Context:" not in prompt


def test_retriever_not_called_without_flag():
    r = _Retriever([{"text": "x", "source": "y"}])
    prompts.build_prompt(DesignRequest(brief="goa beach"), r)
    assert r.calls == []


def test_image_prompt_mentions_title_and_text():
    design = Design(
        title="Goa Sunset",
        placements=[Placement(content={"text": "GOA 1998"}), Placement(area="back", type="shape")],
        palette=["#FFAA00", "#000000"],
    )
    out = prompts.build_image_prompt(design, DesignRequest(brief="x", options=DesignOptions(product="hoodie")))
    assert "Goa Sunset" in out
    assert "hoodie" in out
    assert "GOA 1998" in out
    assert "#FFAA00" in out
    assert "back, front" in out
