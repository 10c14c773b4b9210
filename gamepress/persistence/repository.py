"""Repository abstractions for game records and flow checkpoints."""

from __future__ import annotations

from typing import Protocol, Sequence

from ..contracts import GameData, WorkflowRecord
from .models import FlowCheckpoint


class GameRepository(Protocol):
    """Protocol for the store holding game records and workflows."""

    async def get_by_id(self, game_id: str) -> GameData | None:
        """Return one game record or ``None`` when it does not exist."""

    async def batch_get(self, game_ids: Sequence[str]) -> list[GameData]:
        """Return the records that exist, in request order."""

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        """Return the workflow definition by id."""


class CheckpointRepository(Protocol):
    """Protocol for flow checkpoint persistence backends."""

    async def save_checkpoint(self, checkpoint: FlowCheckpoint) -> None:
        """Insert or replace the latest checkpoint of a flow."""

    async def get_checkpoint(self, flow_id: str) -> FlowCheckpoint | None:
        """Retrieve the latest checkpoint of a flow."""

    async def list_checkpoints(self) -> list[FlowCheckpoint]:
        """Return the latest checkpoint of every flow."""

    async def delete_checkpoint(self, flow_id: str) -> None:
        """Forget a flow's checkpoint."""
