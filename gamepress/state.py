"""Lifecycle of one work item as it moves through the stage pipeline."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .contracts import STAGE_ORDER, GameData, StageKind
from .errors import InternalSchedulingError
from .models import (
    FormatRules,
    ItemError,
    ItemResult,
    ItemSnapshot,
    ItemStatus,
    ItemTransition,
    QualityMetrics,
    StageStatus,
    StageStatusRecord,
    TokenUsage,
    utcnow,
)

logger = logging.getLogger(__name__)


class ItemStateMachine:
    """Owns one item's status, stage records and partial results.

    Every mutation goes through a transition method. A transition that is not
    allowed from the current state raises ``InternalSchedulingError`` and
    leaves the item untouched.
    """

    def __init__(self, item_id: str, game: Optional[GameData] = None) -> None:
        self.item_id = item_id
        self.game = game
        self.status = ItemStatus.PENDING
        self.current_stage = STAGE_ORDER[0]
        self.stages: Dict[StageKind, StageStatusRecord] = {
            stage: StageStatusRecord(stage=stage) for stage in STAGE_ORDER
        }
        self.history: List[ItemTransition] = []
        self.format_rules: Optional[FormatRules] = None
        self.draft: Optional[Dict[str, Any]] = None
        self.content: Optional[Dict[str, Any]] = None
        self.quality: Optional[QualityMetrics] = None
        self.usage = TokenUsage()
        self.error: Optional[ItemError] = None
        self.rollbacks = 0
        self.started_at = None
        self.ended_at = None

    # ------------------------------------------------------------------
    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def _invalid(self, action: str) -> InternalSchedulingError:
        return InternalSchedulingError(
            f"Item {self.item_id}: cannot {action} while {self.status.value} "
            f"(stage {self.current_stage.value})"
        )

    def _move(self, to_status: ItemStatus, note: Optional[str] = None) -> None:
        self.history.append(
            ItemTransition(
                from_status=self.status,
                to_status=to_status,
                stage=self.current_stage,
                note=note,
            )
        )
        logger.debug(
            f"Item {self.item_id}: {self.status.value} -> {to_status.value} "
            f"at {self.current_stage.value}"
        )
        self.status = to_status
        if to_status.is_terminal:
            self.ended_at = utcnow()

    # ------------------------------------------------------------------
    # Stage transitions
    def begin_stage(self, stage: StageKind) -> None:
        """Mark ``stage`` running; the item leaves ``pending`` on its first call."""
        if self.status not in (ItemStatus.PENDING, ItemStatus.RUNNING):
            raise self._invalid(f"start {stage.value}")
        if stage != self.current_stage:
            raise self._invalid(f"start {stage.value} out of order")
        record = self.stages[stage]
        if record.status == StageStatus.RUNNING:
            raise self._invalid(f"start {stage.value} twice")
        previous = stage.previous()
        if previous is not None and self.stages[previous].status != StageStatus.COMPLETED:
            raise self._invalid(f"start {stage.value} before {previous.value} completed")

        if self.status == ItemStatus.PENDING:
            if self.started_at is None:
                self.started_at = utcnow()
            self._move(ItemStatus.RUNNING, note="dispatched")
        self.stages[stage] = record.model_copy(
            update={
                "status": StageStatus.RUNNING,
                "started_at": utcnow(),
                "ended_at": None,
                "error": None,
            }
        )

    def complete_stage(
        self,
        stage: StageKind,
        *,
        attempts: int = 1,
        usage: Optional[TokenUsage] = None,
        format_rules: Optional[FormatRules] = None,
        content: Optional[Dict[str, Any]] = None,
        quality: Optional[QualityMetrics] = None,
    ) -> bool:
        """Record success of ``stage`` and advance.

        Returns ``True`` when the item has a further stage to run.
        """
        if self.status not in (ItemStatus.RUNNING, ItemStatus.PAUSED):
            raise self._invalid(f"complete {stage.value}")
        record = self.stages[stage]
        if stage != self.current_stage or record.status != StageStatus.RUNNING:
            raise self._invalid(f"complete {stage.value} that is not running")

        self.stages[stage] = record.model_copy(
            update={
                "status": StageStatus.COMPLETED,
                "attempts": record.attempts + attempts,
                "ended_at": utcnow(),
            }
        )
        if usage is not None:
            self.usage = self.usage + usage

        if stage == StageKind.FORMAT_ANALYSIS:
            self.format_rules = format_rules
        elif stage == StageKind.CONTENT_GENERATION:
            self.draft = content
        else:
            self.content = content
            self.quality = quality

        following = stage.next()
        if following is None:
            self._move(ItemStatus.COMPLETED, note="all stages completed")
            return False
        self.current_stage = following
        return True

    def fail_stage(self, stage: StageKind, error: ItemError, *, attempts: int = 1) -> None:
        """Record terminal failure of ``stage``; the item becomes ``failed``."""
        if self.status not in (ItemStatus.RUNNING, ItemStatus.PAUSED):
            raise self._invalid(f"fail {stage.value}")
        record = self.stages[stage]
        if stage != self.current_stage or record.status != StageStatus.RUNNING:
            raise self._invalid(f"fail {stage.value} that is not running")
        self.stages[stage] = record.model_copy(
            update={
                "status": StageStatus.FAILED,
                "attempts": record.attempts + attempts,
                "ended_at": utcnow(),
                "error": error,
            }
        )
        self.error = error
        self._move(ItemStatus.FAILED, note=error.kind)

    def roll_back(
        self,
        stage: StageKind,
        to_stage: StageKind,
        *,
        attempts: int = 1,
        usage: Optional[TokenUsage] = None,
        note: Optional[str] = None,
    ) -> None:
        """Reject the output of running ``stage`` and resume at ``to_stage``.

        Stages from ``to_stage`` onwards go back to ``pending`` and lose their
        outputs; earlier stages keep theirs. The item stays running.
        """
        if self.status not in (ItemStatus.RUNNING, ItemStatus.PAUSED):
            raise self._invalid(f"roll back {stage.value}")
        record = self.stages[stage]
        if stage != self.current_stage or record.status != StageStatus.RUNNING:
            raise self._invalid(f"roll back {stage.value} that is not running")
        if to_stage.position >= stage.position:
            raise self._invalid(f"roll back {stage.value} to {to_stage.value}")

        self.stages[stage] = record.model_copy(
            update={"attempts": record.attempts + attempts, "ended_at": utcnow()}
        )
        for reset in STAGE_ORDER[to_stage.position : stage.position + 1]:
            self.stages[reset] = self.stages[reset].model_copy(
                update={"status": StageStatus.PENDING, "error": None}
            )
        if usage is not None:
            self.usage = self.usage + usage
        if to_stage.position <= StageKind.CONTENT_GENERATION.position:
            self.draft = None
        self.content = None
        self.quality = None
        self.rollbacks += 1
        self._move(self.status, note=f"rollback to {to_stage.value}: {note}")
        self.current_stage = to_stage

    # ------------------------------------------------------------------
    # Flow-level transitions
    def pause(self) -> bool:
        """Pause a running item. Pending items stay pending; returns ``False``."""
        if self.status == ItemStatus.PENDING:
            return False
        if self.status != ItemStatus.RUNNING:
            raise self._invalid("pause")
        self._move(ItemStatus.PAUSED, note="flow paused")
        return True

    def resume(self) -> None:
        if self.status != ItemStatus.PAUSED:
            raise self._invalid("resume")
        self._move(ItemStatus.RUNNING, note="flow resumed")

    def cancel(self) -> None:
        if self.is_terminal:
            raise self._invalid("cancel")
        self._close_running_stage()
        self._move(ItemStatus.CANCELLED, note="flow cancelled")

    def fail(self, error: ItemError) -> None:
        """Fail the item from outside its stages, e.g. on flow timeout."""
        if self.is_terminal:
            raise self._invalid("fail")
        self._close_running_stage(error)
        self.error = error
        self._move(ItemStatus.FAILED, note=error.kind)

    def reset_for_retry(self) -> None:
        """Send a failed item back to ``pending`` at its last incomplete stage."""
        if self.status != ItemStatus.FAILED:
            raise self._invalid("retry")
        record = self.stages[self.current_stage]
        self.stages[self.current_stage] = record.model_copy(
            update={"status": StageStatus.PENDING, "error": None, "ended_at": None}
        )
        self.error = None
        self.ended_at = None
        self._move(ItemStatus.PENDING, note="recovery")

    def _close_running_stage(self, error: Optional[ItemError] = None) -> None:
        record = self.stages[self.current_stage]
        if record.status == StageStatus.RUNNING:
            self.stages[self.current_stage] = record.model_copy(
                update={
                    "status": StageStatus.FAILED,
                    "ended_at": utcnow(),
                    "error": error,
                }
            )

    # ------------------------------------------------------------------
    def snapshot(self) -> ItemSnapshot:
        return ItemSnapshot(
            item_id=self.item_id,
            status=self.status,
            current_stage=self.current_stage,
            stage_statuses=dict(self.stages),
            history=list(self.history),
            game=self.game,
            format_rules=self.format_rules,
            draft=self.draft,
            content=self.content,
            quality=self.quality,
            usage=self.usage,
            error=self.error,
            rollbacks=self.rollbacks,
            started_at=self.started_at,
            ended_at=self.ended_at,
        )

    def result(self) -> ItemResult:
        return ItemResult(
            item_id=self.item_id,
            game_name=self.game.game_name if self.game else None,
            status=self.status,
            content=self.content,
            format_rules=self.format_rules,
            quality=self.quality,
            error=self.error,
            usage=self.usage,
            attempts={stage: rec.attempts for stage, rec in self.stages.items()},
            rollbacks=self.rollbacks,
            started_at=self.started_at,
            ended_at=self.ended_at,
        )

    @classmethod
    def restore(cls, snapshot: ItemSnapshot) -> "ItemStateMachine":
        """Rebuild an item from a checkpoint.

        Completed items are kept as they are; anything else restarts from its
        last incomplete stage as ``pending``.
        """
        machine = cls(snapshot.item_id, snapshot.game)
        machine.current_stage = snapshot.current_stage
        machine.stages.update(snapshot.stage_statuses)
        machine.history = list(snapshot.history)
        machine.format_rules = snapshot.format_rules
        machine.draft = snapshot.draft
        machine.content = snapshot.content
        machine.quality = snapshot.quality
        machine.usage = snapshot.usage
        machine.rollbacks = snapshot.rollbacks
        machine.started_at = snapshot.started_at

        if snapshot.status == ItemStatus.COMPLETED:
            machine.status = ItemStatus.COMPLETED
            machine.ended_at = snapshot.ended_at
            return machine

        record = machine.stages[machine.current_stage]
        if record.status != StageStatus.COMPLETED:
            machine.stages[machine.current_stage] = record.model_copy(
                update={"status": StageStatus.PENDING, "error": None, "ended_at": None}
            )
        machine.status = snapshot.status
        machine._move(ItemStatus.PENDING, note="restored from checkpoint")
        return machine
