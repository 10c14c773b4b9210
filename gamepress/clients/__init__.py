"""Generation client factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import GamepressConfig, load_config
from .base import GenerationClient, GenerationRequest, GenerationResponse
from .scripted import ScriptedGenerationClient


def get_client(
    backend: Optional[str] = None, config: Optional[GamepressConfig] = None
) -> GenerationClient:
    """Factory function to get the configured generation client."""

    config = config or load_config()
    backend = (
        backend or os.getenv("GAMEPRESS_CLIENT_BACKEND") or config.client.backend
    ).lower()

    if backend == "scripted":
        return ScriptedGenerationClient(latency=config.client.latency)
    elif backend == "agent":
        from .agent import AgentGenerationClient

        return AgentGenerationClient(
            config.client.model, timeout=config.client.timeout
        )
    else:
        raise ValueError(f"Unsupported client backend: {backend}")


__all__ = [
    "GenerationClient",
    "GenerationRequest",
    "GenerationResponse",
    "ScriptedGenerationClient",
    "get_client",
]
