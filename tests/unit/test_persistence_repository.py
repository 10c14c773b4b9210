import pytest

import gamepress.persistence as persistence
from gamepress.config import GamepressConfig
from gamepress.contracts import StageKind
from gamepress.models import FlowStatus, FormatRules, StageStatus
from gamepress.persistence import (
    FlowCheckpoint,
    InMemoryCheckpointRepository,
    InMemoryGameRepository,
    SQLiteCheckpointRepository,
    get_checkpoint_repository,
)
from gamepress.state import ItemStateMachine


def _checkpoint(flow_id="flow-1", status=FlowStatus.RUNNING) -> FlowCheckpoint:
    done = ItemStateMachine("g1")
    done.begin_stage(StageKind.FORMAT_ANALYSIS)
    done.complete_stage(
        StageKind.FORMAT_ANALYSIS,
        format_rules=FormatRules(compact_template={"title": "string"}),
    )
    return FlowCheckpoint(
        flow_id=flow_id,
        workflow_id="wf-1",
        status=status,
        configuration={"workflowId": "wf-1", "gameDataIds": ["g1", "g2"]},
        items=[done.snapshot(), ItemStateMachine("g2").snapshot()],
    )


@pytest.mark.asyncio
async def test_game_repository_from_catalog_file(tmp_path):
    catalog = tmp_path / "catalog.yaml"
    catalog.write_text(
        """
workflows:
  - id: wf-1
    name: Default
    targetFormat:
      title: string
games:
  - id: "101"
    gameName: Block Drop
    mainKeyword: block puzzle
    longTailKeywords: free block puzzle, block game
  - id: "102"
    gameName: Star Jump
    mainKeyword: platformer
"""
    )
    repo = InMemoryGameRepository.from_file(catalog)

    assert repo.game_ids == ["101", "102"]
    game = await repo.get_by_id("101")
    assert game.long_tail_keywords == ["free block puzzle", "block game"]
    assert await repo.get_by_id("999") is None
    assert [g.id for g in await repo.batch_get(["102", "999", "101"])] == ["102", "101"]
    workflow = await repo.get_workflow("wf-1")
    assert '"title"' in workflow.target_format


@pytest.mark.asyncio
async def test_inmemory_checkpoint_repository_crud():
    repo = InMemoryCheckpointRepository()
    await repo.save_checkpoint(_checkpoint("flow-1"))
    await repo.save_checkpoint(_checkpoint("flow-2"))
    await repo.save_checkpoint(_checkpoint("flow-1", FlowStatus.COMPLETED))

    stored = await repo.get_checkpoint("flow-1")
    assert stored.status == FlowStatus.COMPLETED
    assert {c.flow_id for c in await repo.list_checkpoints()} == {"flow-1", "flow-2"}

    await repo.delete_checkpoint("flow-1")
    assert await repo.get_checkpoint("flow-1") is None


@pytest.mark.asyncio
async def test_sqlite_checkpoint_repository_round_trip(tmp_path):
    repo = SQLiteCheckpointRepository(tmp_path / "checkpoints.db")
    await repo.save_checkpoint(_checkpoint())

    stored = await repo.get_checkpoint("flow-1")
    assert stored is not None
    assert stored.completed_items == 0
    first = stored.items[0]
    assert first.current_stage == StageKind.CONTENT_GENERATION
    assert first.stage_statuses[StageKind.FORMAT_ANALYSIS].status == StageStatus.COMPLETED
    assert first.format_rules.compact_template == {"title": "string"}
    assert stored.configuration["gameDataIds"] == ["g1", "g2"]

    restored = ItemStateMachine.restore(first)
    assert restored.current_stage == StageKind.CONTENT_GENERATION
    repo.close()


@pytest.mark.asyncio
async def test_sqlite_checkpoint_repository_upserts(tmp_path):
    repo = SQLiteCheckpointRepository(tmp_path / "checkpoints.db")
    await repo.save_checkpoint(_checkpoint())
    await repo.save_checkpoint(_checkpoint(status=FlowStatus.FAILED))

    checkpoints = await repo.list_checkpoints()
    assert len(checkpoints) == 1
    assert checkpoints[0].status == FlowStatus.FAILED

    await repo.delete_checkpoint("flow-1")
    assert await repo.get_checkpoint("flow-1") is None
    assert await repo.get_checkpoint("missing") is None
    repo.close()


def test_checkpoint_repository_factory(tmp_path, monkeypatch):
    monkeypatch.delenv("GAMEPRESS_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", None)

    repo = get_checkpoint_repository(config=GamepressConfig())
    assert isinstance(repo, InMemoryCheckpointRepository)
    assert get_checkpoint_repository() is repo

    sqlite_repo = get_checkpoint_repository(f"sqlite://{tmp_path / 'cp.db'}")
    assert isinstance(sqlite_repo, SQLiteCheckpointRepository)
    sqlite_repo.close()

    with pytest.raises(ValueError):
        get_checkpoint_repository("postgresql://localhost/gamepress")
