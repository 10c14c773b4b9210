"""Tests for configuration loading."""

import pytest

from gamepress.clients import ScriptedGenerationClient, get_client
from gamepress.clients.agent import AgentGenerationClient
from gamepress.config import GamepressConfig, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in (
        "GAMEPRESS_CONFIG",
        "GAMEPRESS_CLIENT_BACKEND",
        "GAMEPRESS_MODEL",
        "GAMEPRESS_DATABASE_URL",
        "DATABASE_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_load_config_defaults():
    config = load_config()
    assert config.client.backend == "scripted"
    assert config.client.stage_max_tokens["formatAnalysis"] == 2_000
    assert config.database_url is None
    assert config.flow_defaults == {}
    assert config.max_concurrent_flows == 3


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "gamepress.yaml"
    config_path.write_text(
        """
client:
  backend: agent
  model: openai:gpt-4o-mini
  timeout: 30
database_url: sqlite:///tmp/checkpoints.db
log_level: DEBUG
max_concurrent_flows: 5
flow_defaults:
  concurrency:
    maxConcurrentItems: 2
"""
    )
    monkeypatch.setenv("GAMEPRESS_CONFIG", str(config_path))

    config = load_config()
    assert config.client.backend == "agent"
    assert config.client.model == "openai:gpt-4o-mini"
    assert config.client.timeout == 30
    assert config.database_url == "sqlite:///tmp/checkpoints.db"
    assert config.log_level == "DEBUG"
    assert config.max_concurrent_flows == 5
    assert config.flow_defaults["concurrency"]["maxConcurrentItems"] == 2


def test_env_overrides_file(tmp_path, monkeypatch):
    (tmp_path / "config.yaml").write_text("client:\n  model: openai:gpt-4o\n")
    monkeypatch.setenv("GAMEPRESS_MODEL", "deepseek:deepseek-reasoner")
    monkeypatch.setenv("DATABASE_URL", "sqlite://flows.db")

    config = load_config()
    assert config.client.model == "deepseek:deepseek-reasoner"
    assert config.database_url == "sqlite://flows.db"


def test_get_client_uses_config():
    config = GamepressConfig.model_validate({"client": {"latency": 0.5}})
    client = get_client(config=config)
    assert isinstance(client, ScriptedGenerationClient)
    assert client.latency == 0.5

    config = GamepressConfig.model_validate(
        {"client": {"backend": "agent", "model": "test", "timeout": 5}}
    )
    agent_client = get_client(config=config)
    assert isinstance(agent_client, AgentGenerationClient)
    assert agent_client.model == "test"
    assert agent_client.timeout == 5


def test_get_client_backend_argument_and_env(monkeypatch):
    assert isinstance(get_client("scripted", GamepressConfig()), ScriptedGenerationClient)
    monkeypatch.setenv("GAMEPRESS_CLIENT_BACKEND", "agent")
    assert isinstance(get_client(config=GamepressConfig()), AgentGenerationClient)
    with pytest.raises(ValueError):
        get_client("carrier-pigeon", GamepressConfig())
