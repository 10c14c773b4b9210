"""Persistence layer for gamepress: game catalog and flow checkpoints."""

from __future__ import annotations

import os
from typing import Optional

from ..config import GamepressConfig, load_config
from .inmemory import InMemoryCheckpointRepository, InMemoryGameRepository
from .models import FlowCheckpoint
from .repository import CheckpointRepository, GameRepository
from .sqlite import SQLiteCheckpointRepository

_repository_instance: CheckpointRepository | None = None


def get_checkpoint_repository(
    database_url: Optional[str] = None, config: Optional[GamepressConfig] = None
) -> CheckpointRepository:
    """Return the checkpoint store for this process.

    The URL comes from the argument, then ``GAMEPRESS_DATABASE_URL`` or
    ``DATABASE_URL``, then ``database_url`` in the config file. Only
    ``sqlite://PATH`` is supported; without a URL checkpoints stay in memory.
    Calls without arguments reuse the store created last.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("GAMEPRESS_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryCheckpointRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteCheckpointRepository(path)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "CheckpointRepository",
    "FlowCheckpoint",
    "GameRepository",
    "InMemoryCheckpointRepository",
    "InMemoryGameRepository",
    "SQLiteCheckpointRepository",
    "get_checkpoint_repository",
]
