"""Tests for response parsing helpers and local quality scoring."""

import pytest

from gamepress.contracts import ContentSettings, GameData
from gamepress.models import FormatRules
from gamepress.stages.parsing import (
    collect_text,
    extract_json,
    extract_json_object,
    format_hash,
    has_value,
    missing_keys,
)
from gamepress.stages.quality import count_words, evaluate_quality, keyword_density

GAME = GameData(
    id="g1",
    game_name="Block Drop",
    main_keyword="block puzzle",
    long_tail_keywords=["free block puzzle"],
)


def test_extract_json_prefers_fenced_block():
    text = 'Here you go:\n```json\n{"a": 1}\n```\nAnything else? {"b": 2}'
    assert extract_json(text) == {"a": 1}


def test_extract_json_finds_object_inside_prose():
    text = 'Sure! {"a": {"b": [1, 2]}} Hope that helps.'
    assert extract_json(text) == {"a": {"b": [1, 2]}}


def test_extract_json_object_rejects_non_objects():
    assert extract_json("[1, 2]") == [1, 2]
    assert extract_json_object("[1, 2]") is None
    assert extract_json_object("no json here") is None
    assert extract_json_object("") is None


def test_has_value_follows_dotted_paths():
    data = {"meta": {"title": "Block Drop", "empty": "  "}, "tags": []}
    assert has_value(data, "meta.title")
    assert not has_value(data, "meta.empty")
    assert not has_value(data, "meta.missing")
    assert not has_value(data, "title.meta")
    assert has_value(data, "tags")
    assert missing_keys(data, ["meta", "tags", "faq"]) == ["faq"]


def test_collect_text_and_hash():
    assert collect_text({"a": "one", "b": ["two", {"c": "three"}], "n": 4}) == (
        "one two three 4"
    )
    assert format_hash("template") == format_hash("template")
    assert format_hash("template") != format_hash("other")
    assert len(format_hash("template")) == 16


def test_required_fields_from_template_text():
    rules = FormatRules(compact_template='```json\n{"title": "", "faq": []}\n```')
    assert rules.required_fields == ["title", "faq"]
    assert FormatRules(compact_template="free text").required_fields == []


def test_word_and_keyword_counting():
    assert count_words("Play the best block-puzzle now!") == 5
    density = keyword_density("block puzzle block puzzle", ["block puzzle"])
    assert round(density, 1) == 96.0
    assert keyword_density("", ["block"]) == 0.0


def test_quality_of_complete_but_short_article():
    content = {
        "title": "Block Drop - free block puzzle",
        "description": "Block Drop is a block puzzle game.",
    }
    metrics = evaluate_quality(
        content, GAME, ContentSettings(), ["title", "description"], threshold=0.5
    )

    assert metrics.scores["structure"] == 25
    assert metrics.scores["completeness"] == 25
    assert metrics.scores["originality"] == 8
    assert metrics.scores["wordCount"] < 20
    assert metrics.word_count == count_words(collect_text(content))
    assert any("too short" in r for r in metrics.recommendations)
    assert metrics.score == pytest.approx(sum(metrics.scores.values()), abs=0.01)
    assert metrics.passed_threshold == (metrics.score / 100 >= 0.5)


def test_quality_penalises_missing_fields():
    metrics = evaluate_quality(
        {"title": "Block Drop"},
        GAME,
        ContentSettings(),
        ["title", "howToPlay", "features", "faq"],
        threshold=0.99,
    )
    assert metrics.scores["completeness"] < 20
    assert any("Missing 3 required field(s)" in r for r in metrics.recommendations)
    assert metrics.passed_threshold is False
    assert metrics.grade == "D"


def test_quality_checks_module_word_counts():
    settings = ContentSettings.model_validate(
        {"wordCount": {"total": {"min": 1, "max": 100}, "modules": {"faq": {"min": 10}}}}
    )
    metrics = evaluate_quality(
        {"title": "Block Drop", "faq": "Short."}, GAME, settings, ["title"], threshold=0
    )
    assert metrics.scores["wordCount"] == 20
    assert any("Module 'faq'" in r for r in metrics.recommendations)
    assert metrics.passed_threshold is True
