"""Shared fixtures for gamepress tests."""

import pytest

from gamepress.clients import ScriptedGenerationClient
from gamepress.config import GamepressConfig
from gamepress.contracts import GameData, WorkflowRecord, merge_configuration
from gamepress.dispatch import FlowDispatcher
from gamepress.persistence import InMemoryCheckpointRepository, InMemoryGameRepository
from gamepress.registry import FlowRegistry
from gamepress.utils.retry import compute_backoff

TARGET_FORMAT = {
    "title": "Game title including the main keyword",
    "description": "Two short paragraphs introducing the game",
    "howToPlay": "Step by step instructions",
    "features": ["One bullet per feature"],
}


def make_games(count: int = 6) -> list[GameData]:
    return [
        GameData(
            id=f"g{i}",
            game_name=f"Game {i}",
            main_keyword=f"puzzle game {i}",
            long_tail_keywords=["free puzzle game"],
        )
        for i in range(1, count + 1)
    ]


@pytest.fixture
def workflow() -> WorkflowRecord:
    return WorkflowRecord(id="wf-1", name="Default article", target_format=TARGET_FORMAT)


@pytest.fixture
def repository(workflow) -> InMemoryGameRepository:
    return InMemoryGameRepository(make_games(), [workflow])


@pytest.fixture
def checkpoints() -> InMemoryCheckpointRepository:
    return InMemoryCheckpointRepository()


@pytest.fixture
def make_dispatcher(repository, checkpoints):
    """Build a dispatcher with its own registry and a scripted client."""

    def _make(client=None, config=None, **kwargs) -> FlowDispatcher:
        return FlowDispatcher(
            repository,
            client or ScriptedGenerationClient(),
            registry=FlowRegistry(),
            checkpoints=checkpoints,
            config=config or GamepressConfig(),
            **kwargs,
        )

    return _make


@pytest.fixture
def flow_config():
    """Flow configuration with short retry delays and unthrottled progress."""

    def _build(game_ids=("g1", "g2"), **overrides) -> dict:
        base = {
            "workflowId": "wf-1",
            "gameDataIds": list(game_ids),
            "retry": {"retryDelayMs": 1, "maxDelayMs": 5},
            "notifications": {"progressUpdateInterval": 0},
        }
        return merge_configuration(base, overrides)

    return _build


@pytest.fixture
def no_backoff(monkeypatch) -> list:
    """Skip retry sleeps; returns the delays that would have been used."""
    delays = []

    async def _record(attempt, policy):
        delays.append(compute_backoff(attempt, policy))

    monkeypatch.setattr("gamepress.utils.retry.schedule_retry", _record)
    return delays
