"""In-memory implementations of the game and checkpoint repositories."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence

import yaml

from ..contracts import GameData, WorkflowRecord
from .models import FlowCheckpoint
from .repository import CheckpointRepository, GameRepository

logger = logging.getLogger(__name__)


class InMemoryGameRepository(GameRepository):
    """Serve game records and workflows from local memory.

    Useful for tests and the CLI, where the catalog comes from a YAML file.
    """

    def __init__(
        self,
        games: Optional[Iterable[GameData | dict]] = None,
        workflows: Optional[Iterable[WorkflowRecord | dict]] = None,
    ) -> None:
        self._games: Dict[str, GameData] = {}
        self._workflows: Dict[str, WorkflowRecord] = {}
        for game in games or []:
            self.add_game(game)
        for workflow in workflows or []:
            self.add_workflow(workflow)
        self.lookups = 0

    @classmethod
    def from_file(cls, path: str | Path) -> "InMemoryGameRepository":
        """Load a catalog with top-level ``workflows`` and ``games`` lists."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        repo = cls(data.get("games") or [], data.get("workflows") or [])
        logger.info(
            f"Loaded catalog {path}: {len(repo._games)} games, "
            f"{len(repo._workflows)} workflows"
        )
        return repo

    @property
    def game_ids(self) -> list[str]:
        return list(self._games)

    def add_game(self, game: GameData | dict) -> GameData:
        record = game if isinstance(game, GameData) else GameData.model_validate(game)
        self._games[record.id] = record
        return record

    def add_workflow(self, workflow: WorkflowRecord | dict) -> WorkflowRecord:
        record = (
            workflow
            if isinstance(workflow, WorkflowRecord)
            else WorkflowRecord.model_validate(workflow)
        )
        self._workflows[record.id] = record
        return record

    # ------------------------------------------------------------------
    async def get_by_id(self, game_id: str) -> GameData | None:
        self.lookups += 1
        return self._games.get(game_id)

    async def batch_get(self, game_ids: Sequence[str]) -> list[GameData]:
        self.lookups += 1
        return [self._games[i] for i in game_ids if i in self._games]

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        return self._workflows.get(workflow_id)


class InMemoryCheckpointRepository(CheckpointRepository):
    """Keep the latest checkpoint per flow in local memory."""

    def __init__(self) -> None:
        self._checkpoints: Dict[str, FlowCheckpoint] = {}

    async def save_checkpoint(self, checkpoint: FlowCheckpoint) -> None:
        self._checkpoints[checkpoint.flow_id] = checkpoint

    async def get_checkpoint(self, flow_id: str) -> FlowCheckpoint | None:
        return self._checkpoints.get(flow_id)

    async def list_checkpoints(self) -> list[FlowCheckpoint]:
        return sorted(self._checkpoints.values(), key=lambda c: c.saved_at)

    async def delete_checkpoint(self, flow_id: str) -> None:
        self._checkpoints.pop(flow_id, None)
