import asyncio
from pathlib import Path

import pytest
from typer.testing import CliRunner

import gamepress.persistence as persistence
from gamepress.cli import app
from gamepress.contracts import StageKind
from gamepress.models import FlowStatus
from gamepress.persistence import FlowCheckpoint, InMemoryCheckpointRepository
from gamepress.state import ItemStateMachine

CATALOG = Path(__file__).parent.parent / "fixtures" / "catalog.yaml"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in (
        "GAMEPRESS_CONFIG",
        "GAMEPRESS_CLIENT_BACKEND",
        "GAMEPRESS_DATABASE_URL",
        "DATABASE_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(persistence, "_repository_instance", None)


def _setup_repo() -> InMemoryCheckpointRepository:
    repo = InMemoryCheckpointRepository()
    persistence._repository_instance = repo
    return repo


def test_validate_accepts_valid_file(tmp_path):
    path = tmp_path / "flow.yaml"
    path.write_text(
        "workflowId: wf-1\ngameDataIds: ['101', '102']\nconcurrency:\n  maxConcurrentItems: 3\n"
    )

    result = CliRunner().invoke(app, ["validate", str(path)])

    assert result.exit_code == 0, result.output
    assert "Configuration is valid" in result.output
    assert "Games: 2" in result.output
    assert "Concurrency: 3 items, 2 stages" in result.output


def test_validate_lists_every_problem(tmp_path):
    path = tmp_path / "flow.yaml"
    path.write_text("workflowId: ''\ngameDataIds: []\n")

    result = CliRunner().invoke(app, ["validate", str(path)])

    assert result.exit_code == 1
    assert "Invalid configuration:" in result.output
    assert "workflowId is required" in result.output
    assert "gameDataIds must be a non-empty array" in result.output


def test_run_generates_every_catalog_game():
    result = CliRunner().invoke(
        app, ["run", "wf-1", "--catalog", str(CATALOG), "--max-items", "1"]
    )

    assert result.exit_code == 0, result.output
    assert "Started flow" in result.output
    assert "Progress: 100%" in result.output
    assert "Items: 2 completed, 0 failed, 0 cancelled of 2" in result.output
    assert "101\tBlock Drop\tcompleted" in result.output
    assert "102\tStar Jump\tcompleted" in result.output


def test_run_selected_games_only():
    result = CliRunner().invoke(
        app, ["run", "wf-1", "--catalog", str(CATALOG), "--game", "102"]
    )

    assert result.exit_code == 0, result.output
    assert "102\tStar Jump\tcompleted" in result.output
    assert "101\t" not in result.output


def test_run_reports_failed_flow():
    result = CliRunner().invoke(
        app, ["run", "wf-1", "--catalog", str(CATALOG), "--game", "999"]
    )

    assert result.exit_code == 1
    assert "999\t999\tfailed\tFatalStageError at formatAnalysis" in result.output


def test_run_rejects_unknown_workflow_and_catalog(tmp_path):
    runner = CliRunner()

    unknown = runner.invoke(app, ["run", "wf-9", "--catalog", str(CATALOG)])
    assert unknown.exit_code == 1
    assert "workflow wf-9 not found" in unknown.output

    missing = runner.invoke(app, ["run", "wf-1", "--catalog", str(tmp_path / "none.yaml")])
    assert missing.exit_code == 1
    assert "Catalog not found" in missing.output


def test_checkpoint_commands_list_and_show():
    repo = _setup_repo()
    runner = CliRunner()

    empty = runner.invoke(app, ["checkpoint", "list"])
    assert empty.exit_code == 0
    assert "No checkpoints found" in empty.output

    item = ItemStateMachine("101")
    item.begin_stage(StageKind.FORMAT_ANALYSIS)
    asyncio.run(
        repo.save_checkpoint(
            FlowCheckpoint(
                flow_id="flow-1",
                workflow_id="wf-1",
                status=FlowStatus.PAUSED,
                configuration={"workflowId": "wf-1", "gameDataIds": ["101"]},
                items=[item.snapshot()],
            )
        )
    )

    listed = runner.invoke(app, ["checkpoint", "list"])
    assert listed.exit_code == 0, listed.output
    assert "flow-1\tpaused\t0/1" in listed.output

    shown = runner.invoke(app, ["checkpoint", "show", "flow-1"])
    assert shown.exit_code == 0, shown.output
    assert "Flow flow-1: paused" in shown.output
    assert "- 101: running (formatAnalysis=running" in shown.output

    missing = runner.invoke(app, ["checkpoint", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Checkpoint not found" in missing.output
