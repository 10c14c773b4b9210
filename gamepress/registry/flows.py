"""Process-wide map of flow controllers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, List, Optional

from ..errors import UnknownFlowError

if TYPE_CHECKING:
    from ..controller import FlowController

logger = logging.getLogger(__name__)


class FlowRegistry:
    """Flows stay registered until explicitly removed or cleared."""

    def __init__(self) -> None:
        self._flows: Dict[str, FlowController] = {}

    def __contains__(self, flow_id: str) -> bool:
        return flow_id in self._flows

    def __len__(self) -> int:
        return len(self._flows)

    def add(self, controller: FlowController) -> None:
        if controller.flow_id in self._flows:
            raise ValueError(f"Flow {controller.flow_id} is already registered")
        self._flows[controller.flow_id] = controller

    def get(self, flow_id: str) -> Optional[FlowController]:
        return self._flows.get(flow_id)

    def require(self, flow_id: str) -> FlowController:
        controller = self._flows.get(flow_id)
        if controller is None:
            raise UnknownFlowError(flow_id)
        return controller

    def list_all(self) -> List[FlowController]:
        return list(self._flows.values())

    def remove(self, flow_id: str) -> Optional[FlowController]:
        controller = self._flows.pop(flow_id, None)
        if controller is not None:
            logger.debug(f"Flow {flow_id} evicted from registry")
        return controller

    def clear(self) -> None:
        self._flows.clear()
