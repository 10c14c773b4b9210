"""In-process generation client for tests and offline runs."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections import Counter
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..contracts import StageKind
from ..models import TokenUsage
from .base import GenerationClient, GenerationRequest, GenerationResponse

logger = logging.getLogger(__name__)

HandlerResult = Union[str, Dict[str, Any], GenerationResponse, BaseException]
Handler = Callable[
    [GenerationRequest], Union[HandlerResult, Awaitable[HandlerResult]]
]

DEFAULT_TEMPLATE = {
    "title": "string",
    "description": "string",
    "howToPlay": "string",
    "features": ["string"],
}


class ScriptedGenerationClient(GenerationClient):
    """Answer generation requests from a handler or a built-in script.

    Args:
        handler: Optional callable (sync or async) receiving each request. It
            may return text, a dict (sent as JSON), a ``GenerationResponse``,
            or an exception instance which is raised. ``None`` falls back to
            :meth:`default_response`.
        latency: Seconds to wait before answering, to simulate the API.
    """

    def __init__(
        self, handler: Optional[Handler] = None, latency: float = 0.0
    ) -> None:
        self._handler = handler
        self.latency = latency
        self.requests: List[GenerationRequest] = []
        self.calls: Counter = Counter()
        self.in_flight = 0
        self.peak_in_flight = 0

    async def invoke(self, request: GenerationRequest) -> GenerationResponse:
        self.requests.append(request)
        self.calls[request.stage] += 1
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.latency:
                await asyncio.sleep(self.latency)
            result: Any = None
            if self._handler is not None:
                result = self._handler(request)
                if inspect.isawaitable(result):
                    result = await result
            if result is None:
                result = self.default_response(request)
            if isinstance(result, BaseException):
                raise result
            return self._to_response(request, result)
        finally:
            self.in_flight -= 1

    def calls_for(self, stage: StageKind, item_id: Optional[str] = None) -> int:
        if item_id is None:
            return self.calls[stage]
        return sum(
            1
            for r in self.requests
            if r.stage == stage and r.context.get("itemId") == item_id
        )

    @staticmethod
    def _to_response(request: GenerationRequest, result: Any) -> GenerationResponse:
        if isinstance(result, GenerationResponse):
            return result
        if isinstance(result, (dict, list)):
            result = json.dumps(result, ensure_ascii=False)
        text = str(result)
        prompt_tokens = len(request.user_prompt.split())
        completion_tokens = len(text.split())
        return GenerationResponse(
            content=text,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
        )

    @staticmethod
    def default_response(request: GenerationRequest) -> str:
        """Synthesize a well-formed answer for ``request.stage``."""
        context = request.context
        game = context.get("game") or {}
        name = game.get("gameName", "Game")
        keyword = game.get("mainKeyword", name)
        long_tail = game.get("longTailKeywords") or []

        if request.stage == StageKind.FORMAT_ANALYSIS:
            payload = {
                "compactTemplate": DEFAULT_TEMPLATE,
                "fieldConstraints": ["title: 40-70 characters"],
                "validationRules": ["all fields required", "features is a list"],
                "detailedRules": {"schema": {}, "structureRules": []},
            }
            return "```json\n" + json.dumps(payload, indent=2) + "\n```"

        if request.stage == StageKind.CONTENT_GENERATION:
            extra = f" Try {', '.join(long_tail)} too." if long_tail else ""
            payload = {
                "title": f"{name} - Play {keyword} Online",
                "description": f"{name} is a {keyword} you can play for free.{extra}",
                "howToPlay": f"Open {name} in your browser and follow the prompts.",
                "features": [f"{keyword} action", "No download needed"],
            }
            return json.dumps(payload)

        draft = context.get("draft") or {}
        return json.dumps(draft)
