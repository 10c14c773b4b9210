"""Bounded dispatch of item stages."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    Optional,
    Set,
)

from .contracts import StageKind
from .errors import InternalSchedulingError
from .models import ItemError, ItemStatus
from .state import ItemStateMachine
from .utils.retry import CancellationToken, RetryOutcome

logger = logging.getLogger(__name__)

StageRunner = Callable[
    [ItemStateMachine, StageKind, CancellationToken], Awaitable[RetryOutcome]
]
UpdateListener = Callable[[ItemStateMachine, StageKind], None]
ErrorListener = Callable[[InternalSchedulingError], None]


@dataclass
class StageReview:
    """Verdict on a successful stage whose output is not accepted.

    Either ``rollback_to`` names an earlier stage to run again, or ``error``
    fails the item.
    """

    reason: str
    rollback_to: Optional[StageKind] = None
    error: Optional[ItemError] = None


StageReviewer = Callable[[ItemStateMachine, StageKind, Any], Optional[StageReview]]


class ConcurrencyScheduler:
    """Dispatch ready items to ``run_stage`` within two concurrency limits.

    An item takes one of ``max_concurrent_items`` slots when its first stage
    starts and keeps it until it reaches a terminal state. A stage execution
    takes one of ``max_concurrent_stages`` slots while it runs. The ready
    queue is FIFO; an item that already holds an item slot may overtake new
    items waiting for one.

    All bookkeeping happens in completion callbacks on the event loop, one at
    a time, so no locks are needed.
    """

    def __init__(
        self,
        items: Iterable[ItemStateMachine],
        run_stage: StageRunner,
        *,
        max_concurrent_items: int,
        max_concurrent_stages: int,
        on_update: Optional[UpdateListener] = None,
        on_internal_error: Optional[ErrorListener] = None,
        review: Optional[StageReviewer] = None,
        name: str = "flow",
    ) -> None:
        self._items: Dict[str, ItemStateMachine] = {m.item_id: m for m in items}
        self._run_stage = run_stage
        self.max_concurrent_items = max_concurrent_items
        self.max_concurrent_stages = max_concurrent_stages
        self._on_update = on_update
        self._on_internal_error = on_internal_error
        self._review = review
        self.token = CancellationToken()
        self.name = name

        self._ready: Deque[ItemStateMachine] = deque()
        self._active: Set[str] = set()
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._requeue_after: Set[str] = set()
        self._paused = False

        self.peak_stages = 0
        self.peak_items = 0
        self.dispatched = 0

    # ------------------------------------------------------------------
    @property
    def items(self) -> List[ItemStateMachine]:
        return list(self._items.values())

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def in_flight_stages(self) -> int:
        return len(self._in_flight)

    @property
    def active_items(self) -> int:
        return len(self._active)

    @property
    def queued(self) -> int:
        return sum(
            1
            for m in self._items.values()
            if not m.is_terminal and m.item_id not in self._in_flight
        )

    def is_in_flight(self, item_id: str) -> bool:
        return item_id in self._in_flight

    @property
    def settled(self) -> bool:
        return all(m.is_terminal for m in self._items.values())

    # ------------------------------------------------------------------
    # Control
    def enqueue(self, machines: Iterable[ItemStateMachine]) -> None:
        for machine in machines:
            if machine.is_terminal or machine in self._ready:
                continue
            if machine.item_id in self._in_flight:
                continue
            self._ready.append(machine)
        self._dispatch()

    def pause(self) -> int:
        """Withhold further dispatch; returns how many items were paused."""
        self._paused = True
        paused = 0
        for machine in self._items.values():
            if machine.status == ItemStatus.RUNNING:
                machine.pause()
                paused += 1
        logger.debug(
            f"{self.name}: paused with {len(self._in_flight)} stage(s) in flight"
        )
        return paused

    def resume(self) -> None:
        self._paused = False
        for machine in self._items.values():
            if machine.status != ItemStatus.PAUSED:
                continue
            machine.resume()
            if machine.item_id not in self._in_flight and machine not in self._ready:
                self._ready.append(machine)
        self._dispatch()

    def cancel(self) -> int:
        """Drop the ready queue and cancel every non-terminal item.

        In-flight stages keep running; their results are discarded.
        """
        self.token.cancel()
        self._ready.clear()
        self._requeue_after.clear()
        cancelled = 0
        for machine in self._items.values():
            if not machine.is_terminal:
                machine.cancel()
                cancelled += 1
        self._active.clear()
        return cancelled

    def fail_all(self, error: ItemError) -> int:
        """Fail every non-terminal item with ``error`` and stop dispatching."""
        self.token.cancel()
        self._ready.clear()
        self._requeue_after.clear()
        failed = 0
        for machine in self._items.values():
            if not machine.is_terminal:
                machine.fail(error.model_copy(update={"stage": machine.current_stage}))
                failed += 1
        self._active.clear()
        return failed

    def requeue_failed(
        self, predicate: Optional[Callable[[ItemStateMachine], bool]] = None
    ) -> List[ItemStateMachine]:
        """Send failed items back to their last incomplete stage.

        Starts a new dispatch round. Retry loops still running from the
        previous round keep their cancelled token and stop after their
        current attempt.
        """
        self.token = CancellationToken()
        self._paused = False
        selected = [
            m
            for m in self._items.values()
            if m.status == ItemStatus.FAILED and (predicate is None or predicate(m))
        ]
        for machine in selected:
            if machine.item_id in self._in_flight:
                # A stale attempt from before the failure is still running.
                self._requeue_after.add(machine.item_id)
                continue
            machine.reset_for_retry()
            self._ready.append(machine)
        self._dispatch()
        return selected

    async def drain(self) -> None:
        """Wait for every in-flight stage execution to return."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    # ------------------------------------------------------------------
    # Dispatch
    def _eligible(self, machine: ItemStateMachine) -> bool:
        return (
            machine.item_id in self._active
            or len(self._active) < self.max_concurrent_items
        )

    def _next_ready(self) -> Optional[ItemStateMachine]:
        if any(m.is_terminal for m in self._ready):
            self._ready = deque(m for m in self._ready if not m.is_terminal)
        for index, machine in enumerate(self._ready):
            if self._eligible(machine):
                del self._ready[index]
                return machine
        return None

    def _dispatch(self) -> None:
        if self._paused or self.token.cancelled:
            return
        while len(self._in_flight) < self.max_concurrent_stages and self._ready:
            machine = self._next_ready()
            if machine is None:
                break
            stage = machine.current_stage
            try:
                machine.begin_stage(stage)
            except InternalSchedulingError as e:
                self._report(e)
                if not machine.is_terminal:
                    machine.fail(ItemError.from_exception(e, stage=stage))
                    self._notify(machine, stage)
                continue

            self._active.add(machine.item_id)
            self._in_flight[machine.item_id] = asyncio.create_task(
                self._run(machine, stage, self.token),
                name=f"{self.name}:{machine.item_id}:{stage.value}",
            )
            self.dispatched += 1
            self.peak_stages = max(self.peak_stages, len(self._in_flight))
            self.peak_items = max(self.peak_items, len(self._active))
            logger.debug(
                f"{self.name}: dispatched {stage.value} for {machine.item_id} "
                f"({len(self._in_flight)}/{self.max_concurrent_stages} stages, "
                f"{len(self._active)}/{self.max_concurrent_items} items)"
            )

    async def _run(
        self, machine: ItemStateMachine, stage: StageKind, token: CancellationToken
    ) -> None:
        try:
            outcome = await self._run_stage(machine, stage, token)
        except asyncio.CancelledError:
            self._in_flight.pop(machine.item_id, None)
            raise
        except Exception as e:
            logger.exception(
                f"{self.name}: stage {stage.value} of {machine.item_id} raised"
            )
            outcome = RetryOutcome(success=False, error=e, attempts=1, errors=[e])
        self._finish(machine, stage, outcome)

    def _finish(
        self, machine: ItemStateMachine, stage: StageKind, outcome: RetryOutcome
    ) -> None:
        self._in_flight.pop(machine.item_id, None)

        if machine.is_terminal:
            logger.debug(
                f"{self.name}: discarded {stage.value} result for "
                f"{machine.status.value} item {machine.item_id}"
            )
            self._active.discard(machine.item_id)
            if machine.item_id in self._requeue_after:
                self._requeue_after.discard(machine.item_id)
                machine.reset_for_retry()
                self._ready.append(machine)
            self._dispatch()
            return

        has_next = False
        try:
            if outcome.success:
                has_next = self._accept(machine, stage, outcome)
            elif outcome.cancelled:
                machine.cancel()
            else:
                error = ItemError.from_exception(
                    outcome.error, stage=stage, attempts=outcome.attempts
                )
                machine.fail_stage(stage, error, attempts=outcome.attempts)
        except InternalSchedulingError as e:
            self._report(e)
            if not machine.is_terminal:
                machine.fail(ItemError.from_exception(e, stage=stage))

        if machine.is_terminal:
            self._active.discard(machine.item_id)
        elif has_next and machine.status == ItemStatus.RUNNING:
            self._ready.append(machine)

        self._notify(machine, stage)
        self._dispatch()

    def _accept(
        self, machine: ItemStateMachine, stage: StageKind, outcome: RetryOutcome
    ) -> bool:
        result = outcome.value
        usage = getattr(result, "usage", None)
        review = self._review(machine, stage, result) if self._review else None
        if review is None:
            return machine.complete_stage(
                stage,
                attempts=outcome.attempts,
                usage=usage,
                format_rules=getattr(result, "format_rules", None),
                content=getattr(result, "content", None),
                quality=getattr(result, "quality", None),
            )
        if review.rollback_to is not None:
            machine.roll_back(
                stage,
                review.rollback_to,
                attempts=outcome.attempts,
                usage=usage,
                note=review.reason,
            )
            return True
        machine.fail_stage(stage, review.error, attempts=outcome.attempts)
        return False

    def _notify(self, machine: ItemStateMachine, stage: StageKind) -> None:
        if self._on_update is None:
            return
        try:
            self._on_update(machine, stage)
        except Exception:
            logger.exception(f"{self.name}: update listener failed")

    def _report(self, error: InternalSchedulingError) -> None:
        logger.error(f"{self.name}: {error}")
        if self._on_internal_error is not None:
            self._on_internal_error(error)
