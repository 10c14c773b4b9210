"""Text formatting helpers for CLI output."""

from __future__ import annotations

from typing import List

from ..models import FlowSnapshot, ItemResult, ItemSnapshot
from ..persistence import FlowCheckpoint


def _format_result_line(result: ItemResult) -> str:
    name = result.game_name or result.item_id
    if result.quality is not None:
        quality = result.quality
        detail = (
            f"score {quality.score:g} ({quality.grade}), {quality.word_count} words"
            + ("" if quality.passed_threshold else ", below threshold")
        )
    elif result.error is not None:
        stage = result.error.stage.value if result.error.stage else "-"
        detail = f"{result.error.kind} at {stage}: {result.error.message}"
    else:
        detail = ""
    line = f"{result.item_id}\t{name}\t{result.status.value}"
    return f"{line}\t{detail}" if detail else line


def _format_summary(snapshot: FlowSnapshot) -> List[str]:
    counts = snapshot.counts
    return [
        f"Flow {snapshot.flow_id}: {snapshot.status.value}",
        f"Items: {counts.completed} completed, {counts.failed} failed, "
        f"{counts.cancelled} cancelled of {counts.total}",
        f"API calls: {snapshot.api_calls}, tokens: {snapshot.usage.total_tokens}",
    ]


def _format_item_progress(item: ItemSnapshot) -> str:
    stages = ", ".join(
        f"{stage.value}={record.status.value}"
        + (f" x{record.attempts}" if record.attempts > 1 else "")
        for stage, record in item.stage_statuses.items()
    )
    return f"- {item.item_id}: {item.status.value} ({stages})"


def _format_checkpoint_line(checkpoint: FlowCheckpoint) -> str:
    return (
        f"{checkpoint.flow_id}\t{checkpoint.status.value}\t"
        f"{checkpoint.completed_items}/{len(checkpoint.items)}\t"
        f"{checkpoint.saved_at.isoformat()}"
    )
