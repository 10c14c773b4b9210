"""Base interface for generation API clients."""

from __future__ import annotations

import abc
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..contracts import StageKind
from ..models import TokenUsage


class GenerationRequest(BaseModel):
    """One prompt-shaped call to the generation API."""

    stage: StageKind
    system_prompt: str
    user_prompt: str
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class GenerationResponse(BaseModel):
    content: str
    usage: TokenUsage = TokenUsage()


class GenerationClient(metaclass=abc.ABCMeta):
    """Abstract client for the external text-generation API."""

    async def connect(self) -> None:
        """Open underlying connections (no-op by default)."""
        pass

    async def close(self) -> None:
        """Release underlying connections (no-op by default)."""
        pass

    @abc.abstractmethod
    async def invoke(self, request: GenerationRequest) -> GenerationResponse:
        """Run one generation call.

        Raises:
            GenerationAPIError: carrying ``status_code``/``category`` so the
                caller can tell transient failures from fatal ones.
        """
        raise NotImplementedError
