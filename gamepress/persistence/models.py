from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field

from ..contracts import CamelModel, WorkflowRecord
from ..models import FlowStatus, ItemSnapshot, utcnow


class FlowCheckpoint(CamelModel):
    """Best-effort snapshot of a flow, enough to resume it elsewhere."""

    flow_id: str
    workflow_id: str
    status: FlowStatus
    configuration: Dict[str, Any]
    items: List[ItemSnapshot] = Field(default_factory=list)
    workflow: Optional[WorkflowRecord] = None
    recovery_attempts: int = 0
    saved_at: datetime = Field(default_factory=utcnow)

    @property
    def completed_items(self) -> int:
        return sum(1 for item in self.items if item.status == FlowStatus.COMPLETED)
