"""Generation client backed by a pydantic-ai agent."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from pydantic_ai import Agent
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior
from pydantic_ai.settings import ModelSettings

from ..errors import GenerationAPIError
from ..models import TokenUsage
from .base import GenerationClient, GenerationRequest, GenerationResponse

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "deepseek:deepseek-chat"


def _usage_from_run(result: Any) -> TokenUsage:
    # ``usage`` is a method on older pydantic-ai results and a property on newer ones.
    usage = result.usage() if callable(result.usage) else result.usage
    prompt = getattr(usage, "input_tokens", None)
    if prompt is None:
        prompt = getattr(usage, "request_tokens", 0)
    completion = getattr(usage, "output_tokens", None)
    if completion is None:
        completion = getattr(usage, "response_tokens", 0)
    prompt, completion = prompt or 0, completion or 0
    total = getattr(usage, "total_tokens", None) or prompt + completion
    return TokenUsage(
        prompt_tokens=prompt, completion_tokens=completion, total_tokens=total
    )


class AgentGenerationClient(GenerationClient):
    """Send stage prompts through a pydantic-ai ``Agent``.

    One agent is kept per distinct system prompt, since every stage carries
    its own instructions.
    """

    def __init__(
        self, model: Any = DEFAULT_MODEL, *, timeout: Optional[float] = None
    ) -> None:
        self.model = model
        self.timeout = timeout
        self._agents: Dict[str, Agent] = {}

    def _agent_for(self, system_prompt: str) -> Agent:
        agent = self._agents.get(system_prompt)
        if agent is None:
            agent = Agent(
                self.model, system_prompt=system_prompt, defer_model_check=True
            )
            self._agents[system_prompt] = agent
        return agent

    async def invoke(self, request: GenerationRequest) -> GenerationResponse:
        settings = ModelSettings()
        if request.max_tokens is not None:
            settings["max_tokens"] = request.max_tokens
        if request.temperature is not None:
            settings["temperature"] = request.temperature

        agent = self._agent_for(request.system_prompt)
        try:
            run = agent.run(request.user_prompt, model_settings=settings)
            if self.timeout:
                result = await asyncio.wait_for(run, self.timeout)
            else:
                result = await run
        except ModelHTTPError as e:
            raise GenerationAPIError(
                f"{e.model_name} returned HTTP {e.status_code}",
                status_code=e.status_code,
            ) from e
        except UnexpectedModelBehavior as e:
            raise GenerationAPIError(
                f"Unexpected model behaviour: {e.message}",
                category="unexpected_behavior",
            ) from e
        except asyncio.TimeoutError as e:
            raise GenerationAPIError(
                f"Generation call exceeded {self.timeout}s", category="timeout"
            ) from e
        except OSError as e:
            raise GenerationAPIError(str(e) or "network error", category="network") from e

        usage = _usage_from_run(result)
        logger.debug(
            f"Agent call for {request.stage.value} used {usage.total_tokens} tokens"
        )
        return GenerationResponse(content=str(result.output), usage=usage)
