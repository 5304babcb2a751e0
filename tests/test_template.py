from __future__ import annotations

import pytest

from apprun.core.errors import TemplateReferenceError
from apprun.core.template import (
    Literal,
    Reference,
    TemplateSyntaxError,
    interpolate,
    parse,
    references,
    render,
)


def test_parse_splits_literals_and_references():
    tokens = parse("Hi {{name}}, feeling {{mood||calm}}?")
    assert tokens == (
        Literal("Hi "),
        Reference("name"),
        Literal(", feeling "),
        Reference("mood", "calm"),
        Literal("?"),
    )
    assert tokens[1].kind == "reference"
    assert not tokens[1].has_default
    assert tokens[3].has_default


def test_parse_trims_whitespace_inside_braces():
    assert parse("{{ city || austin }}") == (Reference("city", "austin"),)


def test_empty_default_is_still_a_default():
    (ref,) = parse("{{nickname||}}")
    assert ref.has_default
    assert render("[{{nickname||}}]", {}) == "[]"


@pytest.mark.parametrize("text", ["{{", "open {{name", "{{a.b}}", "{{1abc}}", "{{}}", "{{ name(x) }}"])
def test_parse_rejects_malformed_templates(text):
    with pytest.raises(TemplateSyntaxError):
        parse(text)


def test_missing_reference_with_default_uses_default():
    assert render("{{missingField||defaultValue}}", {}) == "defaultValue"


def test_missing_reference_without_default_raises():
    with pytest.raises(TemplateReferenceError) as excinfo:
        render("Hello {{who}}", {})
    assert excinfo.value.name == "who"


def test_empty_string_falls_back_only_when_default_exists():
    assert render("{{name||friend}}", {"name": ""}) == "friend"
    assert render("{{name}}", {"name": ""}) == ""


def test_lone_reference_keeps_value_type():
    assert render("{{limit}}", {"limit": 3}) == 3
    assert render("{{items}}", {"items": [1, 2]}) == [1, 2]
    assert render("n={{limit}}", {"limit": 3}) == "n=3"


def test_embedded_values_are_stringified():
    namespace = {"flag": True, "data": {"b": 1, "a": 2}}
    assert render("{{flag}}/{{data}}", namespace) == 'true/{"a": 2, "b": 1}'


def test_interpolate_walks_nested_structures_without_mutating():
    args = {"prompt": "About {{topic}}", "extra": ["{{topic}}", {"deep": "{{n||1}}"}], "count": 5}
    result = interpolate(args, {"topic": "tea"})
    assert result == {"prompt": "About tea", "extra": ["tea", {"deep": "1"}], "count": 5}
    assert args["prompt"] == "About {{topic}}"


def test_references_collects_nested_names():
    names = [r.name for r in references({"a": "{{x}}", "b": ["{{y||z}}", 4]})]
    assert names == ["x", "y"]
