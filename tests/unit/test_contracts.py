"""Tests for flow configuration parsing and input records."""

import pytest
from pydantic import ValidationError

from gamepress.contracts import (
    STAGE_ORDER,
    GameData,
    GenerationFlowConfiguration,
    StageKind,
    WorkflowRecord,
    merge_configuration,
)
from gamepress.errors import InvalidConfiguration


def test_parse_applies_defaults():
    config = GenerationFlowConfiguration.parse(
        {"workflowId": "wf-1", "gameDataIds": ["g1"]}
    )
    assert config.concurrency.max_concurrent_items == 5
    assert config.concurrency.max_concurrent_stages == 2
    assert config.timeout.per_item == 120_000
    assert config.timeout.total == 1_800_000
    assert config.retry.max_retries == 3
    assert config.retry.retry_delay_ms == 1_000
    assert config.recovery.enable_auto_recovery is False
    assert config.recovery.max_recovery_attempts == 3
    assert config.quality_threshold == 0.7
    assert config.completion_policy == "any_success"
    assert config.content.word_count.total.min == 800


def test_parse_merges_defaults_and_accepts_snake_case():
    config = GenerationFlowConfiguration.parse(
        {
            "workflow_id": "wf-1",
            "game_data_ids": ["g1"],
            "concurrency": {"max_concurrent_items": 3},
        },
        {"concurrency": {"maxConcurrentStages": 1}, "retry": {"maxRetries": 0}},
    )
    assert config.concurrency.max_concurrent_items == 3
    assert config.concurrency.max_concurrent_stages == 1
    assert config.retry.max_retries == 0


def test_parse_reports_every_problem():
    with pytest.raises(InvalidConfiguration) as exc:
        GenerationFlowConfiguration.parse(
            {
                "workflowId": "  ",
                "gameDataIds": [],
                "concurrency": {"maxConcurrentItems": 0},
            }
        )
    errors = exc.value.errors
    assert len(errors) == 3, errors
    assert any("workflowId is required" in e for e in errors)
    assert any("gameDataIds must be a non-empty array" in e for e in errors)
    assert any("maxConcurrentItems" in e for e in errors)
    assert exc.value.kind == "InvalidConfiguration"


def test_parse_rejects_missing_fields_and_bad_threshold():
    with pytest.raises(InvalidConfiguration) as exc:
        GenerationFlowConfiguration.parse({"qualityThreshold": 1.5})
    message = str(exc.value)
    assert "workflowId" in message
    assert "gameDataIds" in message
    assert "qualityThreshold must be between 0 and 1" in message


def test_parse_rejects_non_mapping():
    with pytest.raises(InvalidConfiguration):
        GenerationFlowConfiguration.parse(["wf-1"])


def test_game_ids_are_trimmed_and_deduplicated():
    config = GenerationFlowConfiguration.parse(
        {"workflowId": "wf-1", "gameDataIds": ["g1", " g2 ", "g1", ""]}
    )
    assert config.game_data_ids == ["g1", "g2"]


def test_parsed_configuration_is_immutable():
    config = GenerationFlowConfiguration.parse(
        {"workflowId": "wf-1", "gameDataIds": ["g1"]}
    )
    assert GenerationFlowConfiguration.parse(config) is config
    with pytest.raises(ValidationError):
        config.workflow_id = "other"


def test_merge_configuration_is_deep_and_leaves_inputs_untouched():
    defaults = {"retry": {"maxRetries": 1, "retryDelayMs": 5}, "outputFormat": "csv"}
    merged = merge_configuration(defaults, {"retry": {"max_retries": 2}})
    assert merged == {"retry": {"maxRetries": 2, "retryDelayMs": 5}, "outputFormat": "csv"}
    assert defaults["retry"]["maxRetries"] == 1


def test_game_data_splits_comma_separated_lists():
    game = GameData.model_validate(
        {
            "id": "g1",
            "gameName": "Block Drop",
            "mainKeyword": "block puzzle",
            "longTailKeywords": "free block puzzle, block game online,,",
            "internalLinks": None,
        }
    )
    assert game.long_tail_keywords == ["free block puzzle", "block game online"]
    assert game.internal_links == []


def test_workflow_target_format_accepts_structured_value():
    workflow = WorkflowRecord.model_validate(
        {"id": "wf-1", "targetFormat": {"title": "string"}}
    )
    assert '"title"' in workflow.target_format


def test_stage_order_navigation():
    assert STAGE_ORDER[0] == StageKind.FORMAT_ANALYSIS
    assert StageKind.FORMAT_ANALYSIS.next() == StageKind.CONTENT_GENERATION
    assert StageKind.CONTENT_GENERATION.next() == StageKind.FORMAT_VALIDATION
    assert StageKind.FORMAT_VALIDATION.next() is None
    assert StageKind.FORMAT_ANALYSIS.previous() is None
    assert StageKind.FORMAT_VALIDATION.previous() == StageKind.CONTENT_GENERATION
    assert StageKind.FORMAT_VALIDATION.position == 2
