"""Orchestration of one generation flow."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel

from . import events
from .contracts import GenerationFlowConfiguration, StageKind, WorkflowRecord
from .errors import (
    FatalStageError,
    FlowTimeoutError,
    InternalSchedulingError,
    QualityThresholdError,
    StageError,
)
from .execute import StageExecutor
from .models import (
    CheckpointEvent,
    CompletedEvent,
    ErrorEvent,
    ErrorInfo,
    FlowCounts,
    FlowSnapshot,
    FlowStatus,
    FlowStatusEvent,
    ItemError,
    ItemStatus,
    ProgressEvent,
    TokenUsage,
    utcnow,
)
from .persistence import CheckpointRepository, FlowCheckpoint, GameRepository
from .scheduler import ConcurrencyScheduler, StageReview
from .state import ItemStateMachine
from .utils.retry import CancellationToken, RetryOutcome, RetryPolicy, run_with_retry

logger = logging.getLogger(__name__)

Emitter = Callable[[str, BaseModel], None]
FinishListener = Callable[["FlowController"], None]


class FlowController:
    """Own one flow: its items, scheduler, timers, progress and events.

    Public methods are synchronous and only mutate state from the event loop,
    so every snapshot reflects a single consistent tick.
    """

    def __init__(
        self,
        flow_id: str,
        config: GenerationFlowConfiguration,
        workflow: WorkflowRecord,
        executor: StageExecutor,
        *,
        emit: Optional[Emitter] = None,
        repository: Optional[GameRepository] = None,
        checkpoints: Optional[CheckpointRepository] = None,
        items: Optional[Sequence[ItemStateMachine]] = None,
        recovery_attempts: int = 0,
        on_finish: Optional[FinishListener] = None,
    ) -> None:
        self.flow_id = flow_id
        self.config = config
        self.workflow = workflow
        self._executor = executor
        self._emit_fn = emit
        self._repository = repository
        self._checkpoints = checkpoints
        self._on_finish = on_finish

        self.status = FlowStatus.PENDING
        self.created_at = utcnow()
        self.started_at = None
        self.ended_at = None
        self.errors: List[ItemError] = []
        self.recovery_attempts = recovery_attempts
        self.progress = 0.0
        self.current_stage: Optional[StageKind] = None
        self._api_calls = 0

        self._items: Dict[str, ItemStateMachine] = {
            m.item_id: m
            for m in (items or [ItemStateMachine(i) for i in config.game_data_ids])
        }
        self._policy = RetryPolicy.from_config(config)
        self.scheduler = ConcurrencyScheduler(
            self._items.values(),
            self._run_stage,
            max_concurrent_items=config.concurrency.max_concurrent_items,
            max_concurrent_stages=config.concurrency.max_concurrent_stages,
            on_update=self._on_item_update,
            on_internal_error=self._on_internal_error,
            review=self._review_stage,
            name=f"flow {flow_id}",
        )

        self._done = asyncio.Event()
        self._launch_task: Optional[asyncio.Task] = None
        self._timeout_handle: Optional[asyncio.TimerHandle] = None
        self._progress_handle: Optional[asyncio.TimerHandle] = None
        self._last_progress_at = 0.0
        self._emitted_progress = -1.0
        self._background: set = set()
        self._checkpoint_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def items(self) -> List[ItemStateMachine]:
        return list(self._items.values())

    def start(self) -> None:
        """Begin scheduling in the background and return immediately."""
        if self.status != FlowStatus.PENDING:
            raise InternalSchedulingError(
                f"Flow {self.flow_id} cannot start while {self.status.value}"
            )
        self.status = FlowStatus.RUNNING
        self.started_at = utcnow()
        self._arm_timeout()
        self._launch_task = asyncio.create_task(
            self._launch(), name=f"flow {self.flow_id}:launch"
        )
        logger.info(
            f"Flow {self.flow_id} started: {len(self._items)} items, "
            f"workflow {self.workflow.id}"
        )

    async def _launch(self) -> None:
        missing = [
            m.item_id for m in self._items.values() if m.game is None and not m.is_terminal
        ]
        if missing and self._repository is not None:
            try:
                records = await self._repository.batch_get(missing)
            except Exception as e:
                logger.warning(
                    f"Flow {self.flow_id}: prefetch of game records failed ({e}); "
                    "falling back to per-item lookups"
                )
            else:
                for record in records:
                    machine = self._items.get(record.id)
                    if machine is not None and machine.game is None:
                        machine.game = record
        if self.is_terminal:
            return
        self.scheduler.enqueue(self._items.values())
        # Restored flows may hold only completed items.
        self._check_settled()

    async def wait(self, timeout: Optional[float] = None) -> FlowSnapshot:
        await asyncio.wait_for(self._done.wait(), timeout)
        return self.snapshot()

    async def close(self) -> None:
        """Stop timers and wait for in-flight work and checkpoint writes."""
        self._cancel_timers()
        if self._launch_task is not None and not self._launch_task.done():
            await asyncio.gather(self._launch_task, return_exceptions=True)
        await self.scheduler.drain()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Control
    def pause(self) -> bool:
        if self.status != FlowStatus.RUNNING:
            logger.warning(
                f"Flow {self.flow_id}: pause ignored while {self.status.value}"
            )
            return False
        paused = self.scheduler.pause()
        self.status = FlowStatus.PAUSED
        logger.info(
            f"Flow {self.flow_id} paused ({paused} items, "
            f"{self.scheduler.in_flight_stages} stages still in flight)"
        )
        self._emit(events.PAUSED, FlowStatusEvent(flow_id=self.flow_id, status=self.status))
        return True

    def resume(self) -> bool:
        if self.status != FlowStatus.PAUSED:
            logger.warning(
                f"Flow {self.flow_id}: resume ignored while {self.status.value}"
            )
            return False
        self.status = FlowStatus.RUNNING
        logger.info(f"Flow {self.flow_id} resumed")
        self._emit(events.RESUMED, FlowStatusEvent(flow_id=self.flow_id, status=self.status))
        self.scheduler.resume()
        self._check_settled()
        return True

    def cancel(self) -> bool:
        """Cancel the flow. Repeated calls are harmless.

        Returns ``False`` only when the flow had already completed or failed.
        """
        if self.status == FlowStatus.CANCELLED:
            return True
        if self.is_terminal:
            logger.warning(
                f"Flow {self.flow_id}: cancel ignored, flow already {self.status.value}"
            )
            return False
        cancelled = self.scheduler.cancel()
        self._finish(FlowStatus.CANCELLED)
        logger.info(f"Flow {self.flow_id} cancelled ({cancelled} items)")
        self._emit(
            events.CANCELLED, FlowStatusEvent(flow_id=self.flow_id, status=self.status)
        )
        return True

    def retry(self, *, only_recoverable: bool = False) -> bool:
        """Re-queue failed items at their last incomplete stage.

        Bounded by ``recovery.maxRecoveryAttempts``.
        """
        if self.status in (FlowStatus.CANCELLED, FlowStatus.PAUSED):
            logger.warning(
                f"Flow {self.flow_id}: cannot retry while {self.status.value}"
            )
            return False
        limit = self.config.recovery.max_recovery_attempts
        if self.recovery_attempts >= limit:
            logger.warning(
                f"Flow {self.flow_id}: recovery limit of {limit} attempts reached"
            )
            return False
        failed = [m for m in self._items.values() if m.status == ItemStatus.FAILED]
        if only_recoverable:
            failed = [m for m in failed if _recoverable(m)]
        if not failed:
            return False

        self.recovery_attempts += 1
        was_terminal = self.is_terminal
        self.status = FlowStatus.RUNNING
        self.ended_at = None
        self._done.clear()
        if was_terminal:
            self._arm_timeout()
        self.scheduler.requeue_failed(lambda m: m in failed)
        # Progress restarts from the recomputed value.
        self.progress = self._compute_progress()
        self._emitted_progress = self.progress
        logger.info(
            f"Flow {self.flow_id}: recovery attempt {self.recovery_attempts}/{limit} "
            f"re-queued {len(failed)} items"
        )
        return True

    # ------------------------------------------------------------------
    # Stage execution
    async def _run_stage(
        self, machine: ItemStateMachine, stage: StageKind, token: CancellationToken
    ) -> RetryOutcome:
        malformed_seen = False

        async def attempt(number: int):
            nonlocal malformed_seen
            self._api_calls += 1
            result = await self._executor.execute(
                stage,
                machine.snapshot(),
                self.config,
                workflow=self.workflow,
                tolerate_malformed=not malformed_seen,
            )
            if not result.success:
                if result.error.reason == "malformed_response":
                    malformed_seen = True
                raise result.error.to_exception(stage)
            return result

        return await run_with_retry(
            attempt,
            self._policy,
            token=token,
            label=f"{stage.value} for {machine.item_id}",
            stage=stage.value,
        )

    def _review_stage(
        self, machine: ItemStateMachine, stage: StageKind, result: Any
    ) -> Optional[StageReview]:
        """Hold validated content to the quality threshold when rollback is on."""
        quality = getattr(result, "quality", None)
        if (
            stage != StageKind.FORMAT_VALIDATION
            or quality is None
            or quality.passed_threshold
            or not self.config.retry.enable_stage_rollback
        ):
            return None
        reason = (
            f"quality score {quality.score:g} below threshold "
            f"{self.config.quality_threshold * 100:g}"
        )
        limit = self.config.retry.max_rollbacks
        if machine.rollbacks < limit:
            logger.warning(
                f"Flow {self.flow_id}: {machine.item_id} {reason}; regenerating content "
                f"(rollback {machine.rollbacks + 1}/{limit})"
            )
            return StageReview(reason=reason, rollback_to=StageKind.CONTENT_GENERATION)
        error = QualityThresholdError(
            f"{reason} after {machine.rollbacks} rollbacks", stage=stage.value
        )
        return StageReview(
            reason=reason, error=ItemError.from_exception(error, stage=stage)
        )

    def _on_item_update(self, machine: ItemStateMachine, stage: StageKind) -> None:
        if self.is_terminal:
            return
        self.current_stage = stage
        if machine.status == ItemStatus.FAILED and machine.error is not None:
            self.errors.append(machine.error)
        self._save_checkpoint()
        self._update_progress(stage)
        self._check_settled()

    def _on_internal_error(self, error: InternalSchedulingError) -> None:
        self.errors.append(ItemError.from_exception(error))

    def _check_settled(self) -> None:
        if self.is_terminal or self.status == FlowStatus.PAUSED:
            return
        if not self.scheduler.settled:
            return

        recovery = self.config.recovery
        if (
            recovery.enable_auto_recovery
            and self.recovery_attempts < recovery.max_recovery_attempts
            and any(
                m.status == ItemStatus.FAILED and _recoverable(m)
                for m in self._items.values()
            )
        ):
            logger.info(f"Flow {self.flow_id}: starting automatic recovery")
            self.retry(only_recoverable=True)
            return

        counts = self._counts()
        policy = self.config.completion_policy
        if policy == "always":
            succeeded = True
        elif policy == "all_success":
            succeeded = counts.completed == counts.total
        else:
            succeeded = counts.completed > 0

        if succeeded:
            self._flush_progress()
            self._finish(FlowStatus.COMPLETED)
            logger.info(
                f"Flow {self.flow_id} completed: {counts.completed}/{counts.total} "
                f"items succeeded, {counts.failed} failed"
            )
            self._emit(
                events.COMPLETED,
                CompletedEvent(
                    flow_id=self.flow_id,
                    results=[m.result() for m in self._items.values()],
                ),
            )
        else:
            self._flush_progress()
            self._finish(FlowStatus.FAILED)
            if policy == "all_success":
                kind = "IncompleteFlow"
                message = f"{counts.failed} of {counts.total} items failed"
            else:
                kind = "AllItemsFailed"
                message = f"All {counts.total} items failed"
            logger.info(f"Flow {self.flow_id} failed: {message}")
            self._emit(
                events.ERROR,
                ErrorEvent(flow_id=self.flow_id, error=ErrorInfo(message=message, kind=kind)),
            )

    def _finish(self, status: FlowStatus) -> None:
        self.status = status
        self.ended_at = utcnow()
        self._cancel_timers()
        self._save_checkpoint()
        self._done.set()
        if self._on_finish is not None:
            self._on_finish(self)

    # ------------------------------------------------------------------
    # Timeout
    def _arm_timeout(self) -> None:
        loop = asyncio.get_running_loop()
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
        self._timeout_handle = loop.call_later(
            self.config.timeout.total / 1000, self._on_timeout
        )

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        if self.is_terminal:
            return
        error = FlowTimeoutError(self.flow_id, self.config.timeout.total)
        item_error = ItemError.from_exception(error)
        failed = self.scheduler.fail_all(item_error)
        self.errors.append(item_error)
        self._finish(FlowStatus.FAILED)
        logger.info(f"Flow {self.flow_id} timed out; {failed} items failed")
        self._emit(
            events.ERROR,
            ErrorEvent(
                flow_id=self.flow_id,
                error=ErrorInfo(message=str(error), kind=error.kind),
            ),
        )

    def _cancel_timers(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None
        if self._progress_handle is not None:
            self._progress_handle.cancel()
            self._progress_handle = None

    # ------------------------------------------------------------------
    # Progress
    def _compute_progress(self) -> float:
        total = len(self._items)
        if not total:
            return 100.0
        done = sum(1 for m in self._items.values() if m.is_terminal)
        return round(done / total * 100, 2)

    def _update_progress(self, stage: Optional[StageKind]) -> None:
        self.progress = max(self.progress, self._compute_progress())
        if not self.config.notifications.enable_progress_updates:
            return
        interval = self.config.notifications.progress_update_interval / 1000
        now = time.monotonic()
        if now - self._last_progress_at >= interval:
            self._emit_progress()
        elif self._progress_handle is None:
            delay = interval - (now - self._last_progress_at)
            self._progress_handle = asyncio.get_running_loop().call_later(
                delay, self._emit_progress
            )

    def _flush_progress(self) -> None:
        self.progress = max(self.progress, self._compute_progress())
        if self.config.notifications.enable_progress_updates:
            self._emit_progress()

    def _emit_progress(self) -> None:
        if self._progress_handle is not None:
            self._progress_handle.cancel()
            self._progress_handle = None
        if self.progress <= self._emitted_progress:
            return
        self._last_progress_at = time.monotonic()
        self._emitted_progress = self.progress
        self._emit(
            events.PROGRESS,
            ProgressEvent(
                flow_id=self.flow_id,
                progress=self.progress,
                current_stage=self.current_stage,
            ),
        )

    # ------------------------------------------------------------------
    # Checkpoints
    def checkpoint(self) -> FlowCheckpoint:
        return FlowCheckpoint(
            flow_id=self.flow_id,
            workflow_id=self.config.workflow_id,
            status=self.status,
            configuration=self.config.model_dump(by_alias=True, mode="json"),
            items=[m.snapshot() for m in self._items.values()],
            workflow=self.workflow,
            recovery_attempts=self.recovery_attempts,
        )

    def _save_checkpoint(self) -> None:
        if self._checkpoints is None or not self.config.recovery.save_checkpoints:
            return
        checkpoint = self.checkpoint()
        task = asyncio.get_running_loop().create_task(self._write_checkpoint(checkpoint))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _write_checkpoint(self, checkpoint: FlowCheckpoint) -> None:
        try:
            async with self._checkpoint_lock:
                await self._checkpoints.save_checkpoint(checkpoint)
        except Exception as e:
            logger.warning(f"Flow {self.flow_id}: checkpoint not saved ({e})")
            return
        self._emit(
            events.CHECKPOINT,
            CheckpointEvent(
                flow_id=self.flow_id,
                saved_at=checkpoint.saved_at,
                completed_items=checkpoint.completed_items,
            ),
        )

    # ------------------------------------------------------------------
    # Snapshots
    def _counts(self) -> FlowCounts:
        counts: Dict[str, int] = {status.value: 0 for status in ItemStatus}
        for machine in self._items.values():
            counts[machine.status.value] += 1
        return FlowCounts(total=len(self._items), **counts)

    @property
    def api_calls(self) -> int:
        return self._api_calls

    def snapshot(self) -> FlowSnapshot:
        usage = TokenUsage()
        for machine in self._items.values():
            usage = usage + machine.usage
        return FlowSnapshot(
            flow_id=self.flow_id,
            workflow_id=self.config.workflow_id,
            status=self.status,
            progress=self.progress,
            current_stage=self.current_stage,
            created_at=self.created_at,
            started_at=self.started_at,
            ended_at=self.ended_at,
            counts=self._counts(),
            items=[m.snapshot() for m in self._items.values()],
            results=[m.result() for m in self._items.values() if m.is_terminal],
            errors=list(self.errors),
            usage=usage,
            api_calls=self._api_calls,
            recovery_attempts=self.recovery_attempts,
            configuration=self.config.model_dump(by_alias=True, mode="json"),
        )

    def _emit(self, event: str, payload: BaseModel) -> None:
        if self._emit_fn is not None:
            self._emit_fn(event, payload)


def _recoverable(machine: ItemStateMachine) -> bool:
    error = machine.error
    return error is None or error.kind not in (
        FatalStageError.__name__,
        QualityThresholdError.__name__,
        StageError.__name__,
    )
