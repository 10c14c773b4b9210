"""Tests for the per-item state machine."""

import pytest

from gamepress.contracts import StageKind
from gamepress.errors import InternalSchedulingError
from gamepress.models import (
    FormatRules,
    ItemError,
    ItemStatus,
    QualityMetrics,
    StageStatus,
    TokenUsage,
)
from gamepress.state import ItemStateMachine

FA, CG, FV = (
    StageKind.FORMAT_ANALYSIS,
    StageKind.CONTENT_GENERATION,
    StageKind.FORMAT_VALIDATION,
)
RULES = FormatRules(compact_template={"title": "string", "features": ["string"]})
DRAFT = {"title": "Block Drop", "features": ["fast"]}


def _run_through(machine: ItemStateMachine, stage: StageKind) -> None:
    """Complete every stage before ``stage``."""
    outputs = {
        FA: {"format_rules": RULES},
        CG: {"content": DRAFT},
        FV: {"content": DRAFT, "quality": QualityMetrics(score=90, grade="A")},
    }
    for current in (FA, CG, FV):
        if current == stage:
            return
        machine.begin_stage(current)
        machine.complete_stage(current, **outputs[current])


def test_happy_path_records_outputs_and_history():
    machine = ItemStateMachine("g1")
    assert machine.status == ItemStatus.PENDING

    machine.begin_stage(FA)
    assert machine.status == ItemStatus.RUNNING
    assert machine.started_at is not None
    assert machine.complete_stage(FA, format_rules=RULES, usage=TokenUsage(total_tokens=5))
    assert machine.current_stage == CG

    machine.begin_stage(CG)
    assert machine.complete_stage(CG, content=DRAFT, attempts=2)
    machine.begin_stage(FV)
    quality = QualityMetrics(score=88, grade="B")
    assert machine.complete_stage(FV, content=DRAFT, quality=quality) is False

    assert machine.status == ItemStatus.COMPLETED
    assert machine.ended_at is not None
    assert machine.format_rules == RULES
    assert machine.draft == DRAFT
    assert machine.content == DRAFT
    assert machine.quality.grade == "B"
    assert machine.usage.total_tokens == 5
    assert machine.stages[CG].attempts == 2
    assert all(r.status == StageStatus.COMPLETED for r in machine.stages.values())
    assert [(t.from_status, t.to_status) for t in machine.history] == [
        (ItemStatus.PENDING, ItemStatus.RUNNING),
        (ItemStatus.RUNNING, ItemStatus.COMPLETED),
    ]


def test_stages_cannot_start_out_of_order():
    machine = ItemStateMachine("g1")
    with pytest.raises(InternalSchedulingError):
        machine.begin_stage(CG)
    assert machine.status == ItemStatus.PENDING
    assert machine.stages[CG].status == StageStatus.PENDING


def test_stage_cannot_start_twice():
    machine = ItemStateMachine("g1")
    machine.begin_stage(FA)
    with pytest.raises(InternalSchedulingError):
        machine.begin_stage(FA)


def test_terminal_items_reject_stage_transitions():
    machine = ItemStateMachine("g1")
    machine.begin_stage(FA)
    machine.cancel()
    assert machine.status == ItemStatus.CANCELLED
    assert machine.stages[FA].status == StageStatus.FAILED
    with pytest.raises(InternalSchedulingError):
        machine.complete_stage(FA, format_rules=RULES)
    with pytest.raises(InternalSchedulingError):
        machine.cancel()
    assert machine.status == ItemStatus.CANCELLED


def test_pause_keeps_pending_items_pending():
    machine = ItemStateMachine("g1")
    assert machine.pause() is False
    assert machine.status == ItemStatus.PENDING


def test_paused_item_accepts_in_flight_completion():
    machine = ItemStateMachine("g1")
    machine.begin_stage(FA)
    assert machine.pause() is True
    with pytest.raises(InternalSchedulingError):
        machine.begin_stage(FA)

    assert machine.complete_stage(FA, format_rules=RULES)
    assert machine.status == ItemStatus.PAUSED
    with pytest.raises(InternalSchedulingError):
        machine.begin_stage(CG)

    machine.resume()
    machine.begin_stage(CG)
    assert machine.status == ItemStatus.RUNNING


def test_failed_item_retries_from_failed_stage():
    machine = ItemStateMachine("g1")
    _run_through(machine, CG)
    machine.begin_stage(CG)
    error = ItemError(kind="RetryableStageError", message="busy", stage=CG, attempts=2)
    machine.fail_stage(CG, error, attempts=2)

    assert machine.status == ItemStatus.FAILED
    assert machine.error == error
    assert machine.stages[CG].status == StageStatus.FAILED

    machine.reset_for_retry()
    assert machine.status == ItemStatus.PENDING
    assert machine.current_stage == CG
    assert machine.error is None
    assert machine.stages[FA].status == StageStatus.COMPLETED

    machine.begin_stage(CG)
    machine.complete_stage(CG, content=DRAFT)
    assert machine.stages[CG].attempts == 3


def test_reset_requires_failed_item():
    machine = ItemStateMachine("g1")
    with pytest.raises(InternalSchedulingError):
        machine.reset_for_retry()


def test_roll_back_regenerates_from_earlier_stage():
    machine = ItemStateMachine("g1")
    _run_through(machine, FV)
    machine.begin_stage(FV)
    machine.roll_back(FV, CG, usage=TokenUsage(total_tokens=7), note="score 60")

    assert machine.status == ItemStatus.RUNNING
    assert machine.current_stage == CG
    assert machine.rollbacks == 1
    assert machine.draft is None
    assert machine.content is None
    assert machine.format_rules == RULES
    assert machine.usage.total_tokens == 7
    assert machine.stages[FA].status == StageStatus.COMPLETED
    assert machine.stages[CG].status == StageStatus.PENDING
    assert machine.stages[FV].status == StageStatus.PENDING
    assert machine.history[-1].note == "rollback to contentGeneration: score 60"

    machine.begin_stage(CG)
    machine.complete_stage(CG, content=DRAFT)
    machine.begin_stage(FV)
    machine.complete_stage(FV, content=DRAFT, quality=QualityMetrics(score=90))
    result = machine.result()
    assert result.status == ItemStatus.COMPLETED
    assert result.rollbacks == 1
    assert result.attempts == {FA: 1, CG: 2, FV: 2}


def test_roll_back_only_moves_backwards_from_running_stage():
    machine = ItemStateMachine("g1")
    _run_through(machine, CG)
    with pytest.raises(InternalSchedulingError):
        machine.roll_back(CG, FA)
    machine.begin_stage(CG)
    with pytest.raises(InternalSchedulingError):
        machine.roll_back(CG, FV)
    assert machine.rollbacks == 0


def test_fail_closes_running_stage():
    machine = ItemStateMachine("g1")
    machine.begin_stage(FA)
    error = ItemError(kind="FlowTimeoutError", message="too slow", stage=FA)
    machine.fail(error)
    assert machine.status == ItemStatus.FAILED
    assert machine.stages[FA].error == error
    with pytest.raises(InternalSchedulingError):
        machine.fail(error)


def test_result_reports_attempts_per_stage():
    machine = ItemStateMachine("g1")
    _run_through(machine, None)
    result = machine.result()
    assert result.status == ItemStatus.COMPLETED
    assert result.attempts == {FA: 1, CG: 1, FV: 1}
    assert result.content == DRAFT


def test_restore_resumes_from_last_incomplete_stage():
    machine = ItemStateMachine("g1")
    _run_through(machine, CG)
    machine.begin_stage(CG)
    machine.fail_stage(CG, ItemError(kind="FatalStageError", message="no"))

    restored = ItemStateMachine.restore(machine.snapshot())

    assert restored.status == ItemStatus.PENDING
    assert restored.current_stage == CG
    assert restored.format_rules == RULES
    assert restored.error is None
    assert restored.stages[FA].status == StageStatus.COMPLETED
    assert restored.stages[CG].status == StageStatus.PENDING
    restored.begin_stage(CG)
    assert restored.status == ItemStatus.RUNNING


def test_restore_keeps_completed_items():
    machine = ItemStateMachine("g1")
    _run_through(machine, None)
    restored = ItemStateMachine.restore(machine.snapshot())
    assert restored.status == ItemStatus.COMPLETED
    assert restored.content == DRAFT
    assert restored.ended_at == machine.ended_at
