"""Flow dispatcher for gamepress."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from typing import Any, Callable, Deque, List, Mapping, Optional

from pydantic import BaseModel

from . import events
from .clients import GenerationClient, get_client
from .config import GamepressConfig, load_config
from .contracts import GenerationFlowConfiguration, WorkflowRecord
from .controller import FlowController
from .errors import InvalidConfiguration
from .events import EventBus
from .execute import StageExecutor
from .models import (
    ErrorEvent,
    ErrorInfo,
    FlowSnapshot,
    FlowStatus,
    ItemQueueStatus,
    ItemStatus,
    QueueStatus,
)
from .persistence import (
    CheckpointRepository,
    FlowCheckpoint,
    GameRepository,
    get_checkpoint_repository,
)
from .registry import FlowRegistry, get_registry
from .state import ItemStateMachine

logger = logging.getLogger(__name__)


class FlowDispatcher:
    """Entry point for starting, controlling and observing generation flows.

    Args:
        repository: Source of game records and workflow definitions.
        client: Generation API client. Defaults to the configured backend.
        registry: Flow registry; the process-wide default when omitted.
        checkpoints: Checkpoint store; the configured one when omitted.
        defaults: Flow configuration values merged under every request.
        config: Process configuration; loaded from YAML when omitted.
        max_concurrent_flows: Flows allowed to run at once; later flows wait
            as ``pending`` and start in arrival order. Defaults to the
            config's ``max_concurrent_flows``.
    """

    def __init__(
        self,
        repository: GameRepository,
        client: Optional[GenerationClient] = None,
        *,
        registry: Optional[FlowRegistry] = None,
        checkpoints: Optional[CheckpointRepository] = None,
        defaults: Optional[Mapping[str, Any]] = None,
        config: Optional[GamepressConfig] = None,
        executor: Optional[StageExecutor] = None,
        max_concurrent_flows: Optional[int] = None,
    ) -> None:
        self._config = config or load_config()
        self._repository = repository
        self._client = client or get_client(config=self._config)
        self._registry = registry if registry is not None else get_registry()
        self._checkpoints = (
            checkpoints
            if checkpoints is not None
            else get_checkpoint_repository(config=self._config)
        )
        self._defaults = dict(self._config.flow_defaults)
        self._defaults.update(defaults or {})
        self._executor = executor or StageExecutor(
            self._client,
            repository,
            stage_max_tokens=self._config.client.stage_max_tokens,
            stage_temperature=self._config.client.stage_temperature,
        )
        self.max_concurrent_flows = max(
            1, max_concurrent_flows or self._config.max_concurrent_flows
        )
        self._waiting: Deque[FlowController] = deque()
        self.events = EventBus()

    @property
    def registry(self) -> FlowRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Flow lifecycle
    async def start_flow(
        self, configuration: GenerationFlowConfiguration | Mapping[str, Any]
    ) -> str:
        """Validate ``configuration``, register a new flow and start it.

        Returns the new flow id immediately; the flow runs in the background,
        or stays ``pending`` until a running flow ends when
        ``max_concurrent_flows`` are already active.

        Raises:
            InvalidConfiguration: when the configuration or its workflow is
                invalid. No flow is registered in that case.
        """
        try:
            config = GenerationFlowConfiguration.parse(configuration, self._defaults)
            workflow = await self._load_workflow(config.workflow_id)
            if workflow is None:
                raise InvalidConfiguration(
                    [f"workflowId: workflow {config.workflow_id} not found"]
                )
        except InvalidConfiguration as e:
            logger.warning(f"Flow rejected: {e}")
            self.events.emit(
                events.ERROR,
                ErrorEvent(error=ErrorInfo(message=str(e), kind=e.kind)),
            )
            raise

        controller = self._create_controller(config, workflow)
        self._registry.add(controller)
        self._admit(controller)
        return controller.flow_id

    async def recover_flow(self, checkpoint: FlowCheckpoint) -> str:
        """Start a new flow from ``checkpoint``.

        Completed items keep their results; the others resume from their
        last incomplete stage.
        """
        config = GenerationFlowConfiguration.parse(checkpoint.configuration)
        workflow = checkpoint.workflow or await self._load_workflow(config.workflow_id)
        if workflow is None:
            raise InvalidConfiguration(
                [f"workflowId: workflow {config.workflow_id} not found"]
            )
        items = [ItemStateMachine.restore(snapshot) for snapshot in checkpoint.items]
        controller = self._create_controller(
            config,
            workflow,
            items=items,
            recovery_attempts=checkpoint.recovery_attempts,
        )
        self._registry.add(controller)
        self._admit(controller)
        logger.info(
            f"Flow {controller.flow_id} recovered from checkpoint of "
            f"{checkpoint.flow_id} ({checkpoint.completed_items} items already done)"
        )
        return controller.flow_id

    async def _load_workflow(self, workflow_id: str) -> Optional[WorkflowRecord]:
        try:
            return await self._repository.get_workflow(workflow_id)
        except Exception as e:
            raise InvalidConfiguration(
                [f"workflowId: could not load workflow {workflow_id} ({e})"]
            ) from e

    def _create_controller(
        self,
        config: GenerationFlowConfiguration,
        workflow: WorkflowRecord,
        **kwargs: Any,
    ) -> FlowController:
        return FlowController(
            str(uuid.uuid4()),
            config,
            workflow,
            self._executor,
            emit=self.events.emit,
            repository=self._repository,
            checkpoints=self._checkpoints,
            on_finish=self._on_flow_finished,
            **kwargs,
        )

    def _admit(self, controller: FlowController) -> None:
        self._waiting.append(controller)
        if self._active_flows() >= self.max_concurrent_flows:
            logger.info(
                f"Flow {controller.flow_id} queued; {self.max_concurrent_flows} "
                f"flows already running"
            )
        self._start_waiting()

    def _active_flows(self) -> int:
        return sum(
            1
            for c in self._registry.list_all()
            if c.status in (FlowStatus.RUNNING, FlowStatus.PAUSED)
        )

    def _start_waiting(self) -> None:
        while self._waiting and self._active_flows() < self.max_concurrent_flows:
            controller = self._waiting.popleft()
            # Cancelled or removed while queued.
            if controller.status != FlowStatus.PENDING:
                continue
            controller.start()

    def _on_flow_finished(self, controller: FlowController) -> None:
        if self._waiting:
            self._start_waiting()

    # ------------------------------------------------------------------
    # Control
    def pause_flow(self, flow_id: str) -> bool:
        return self._registry.require(flow_id).pause()

    def resume_flow(self, flow_id: str) -> bool:
        return self._registry.require(flow_id).resume()

    def cancel_flow(self, flow_id: str) -> bool:
        return self._registry.require(flow_id).cancel()

    def retry_flow(self, flow_id: str) -> bool:
        return self._registry.require(flow_id).retry()

    async def wait_for_flow(
        self, flow_id: str, timeout: Optional[float] = None
    ) -> FlowSnapshot:
        """Wait until the flow is terminal and return its final snapshot."""
        return await self._registry.require(flow_id).wait(timeout)

    async def remove_flow(self, flow_id: str) -> bool:
        """Evict a flow, cancelling it first when it is still active."""
        controller = self._registry.get(flow_id)
        if controller is None:
            return False
        if controller in self._waiting:
            self._waiting.remove(controller)
        if not controller.is_terminal:
            controller.cancel()
        await controller.close()
        self._registry.remove(flow_id)
        return True

    async def shutdown(self) -> None:
        """Cancel every active or queued flow and wait for in-flight work."""
        self._waiting.clear()
        controllers = self._registry.list_all()
        for controller in controllers:
            if not controller.is_terminal:
                controller.cancel()
        await asyncio.gather(*(c.close() for c in controllers))
        logger.info(f"Dispatcher shut down ({len(controllers)} flows)")

    # ------------------------------------------------------------------
    # Queries
    def get_flow_status(self, flow_id: str) -> Optional[FlowSnapshot]:
        controller = self._registry.get(flow_id)
        return controller.snapshot() if controller is not None else None

    def get_all_flow_statuses(self) -> List[FlowSnapshot]:
        return [c.snapshot() for c in self._registry.list_all()]

    def get_queue_status(self, include_items: bool = False) -> QueueStatus:
        """Count flows by state; ``queued`` flows wait for admission.

        With ``include_items`` the item breakdown across all flows is added.
        """
        status = QueueStatus(max_concurrent_flows=self.max_concurrent_flows)
        controllers = self._registry.list_all()
        for controller in controllers:
            status.total += 1
            if controller.status in (FlowStatus.RUNNING, FlowStatus.PAUSED):
                status.running += 1
            elif controller.status == FlowStatus.PENDING:
                status.queued += 1
            elif controller.status == FlowStatus.COMPLETED:
                status.completed += 1
            elif controller.status == FlowStatus.FAILED:
                status.failed += 1
            else:
                status.cancelled += 1
        if include_items:
            status.items = _item_counts(controllers)
        return status

    def subscribe(
        self,
        event: str,
        listener: Callable[[BaseModel], Any],
        flow_id: Optional[str] = None,
    ) -> Callable[[], None]:
        """Observe ``event`` (``progress``, ``completed``, ``error``, ...)."""
        return self.events.subscribe(event, listener, flow_id)


def _item_counts(controllers: List[FlowController]) -> ItemQueueStatus:
    counts = ItemQueueStatus()
    for controller in controllers:
        for machine in controller.items:
            counts.total += 1
            if controller.scheduler.is_in_flight(machine.item_id) and not machine.is_terminal:
                counts.running += 1
            elif machine.status == ItemStatus.COMPLETED:
                counts.completed += 1
            elif machine.status == ItemStatus.FAILED:
                counts.failed += 1
            elif machine.status == ItemStatus.CANCELLED:
                counts.cancelled += 1
            else:
                counts.queued += 1
    return counts
