"""Synchronous observer registry for flow events."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List, Optional, Tuple

from pydantic import BaseModel

logger = logging.getLogger(__name__)

PROGRESS = "progress"
COMPLETED = "completed"
ERROR = "error"
PAUSED = "paused"
RESUMED = "resumed"
CANCELLED = "cancelled"
CHECKPOINT = "checkpoint"

EVENT_NAMES = frozenset({PROGRESS, COMPLETED, ERROR, PAUSED, RESUMED, CANCELLED, CHECKPOINT})

Listener = Callable[[BaseModel], Any]


class EventBus:
    """Deliver typed event payloads to subscribed callbacks.

    Listeners run synchronously in emission order. A failing listener is
    logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._listeners: DefaultDict[str, List[Tuple[Optional[str], Listener]]] = (
            defaultdict(list)
        )

    def subscribe(
        self, event: str, listener: Listener, flow_id: Optional[str] = None
    ) -> Callable[[], None]:
        """Register ``listener`` for ``event``; returns an unsubscribe callable.

        With ``flow_id`` set, only that flow's events are delivered.
        """
        if event not in EVENT_NAMES:
            raise ValueError(f"Unknown event: {event}")
        entry = (flow_id, listener)
        self._listeners[event].append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners[event]:
                self._listeners[event].remove(entry)

        return unsubscribe

    def emit(self, event: str, payload: BaseModel) -> None:
        flow_id = getattr(payload, "flow_id", None)
        for wanted, listener in list(self._listeners[event]):
            if wanted is not None and wanted != flow_id:
                continue
            try:
                listener(payload)
            except Exception:
                logger.exception(f"Listener for '{event}' on flow {flow_id} failed")

    def clear(self) -> None:
        self._listeners.clear()
