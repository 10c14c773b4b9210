"""Stage execution for gamepress generation flows."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .clients import GenerationClient
from .contracts import GenerationFlowConfiguration, StageKind, WorkflowRecord
from .errors import FatalStageError, GenerationAPIError, RetryableStageError, StageError
from .models import FormatRules, ItemSnapshot, QualityMetrics, TokenUsage
from .persistence import GameRepository
from .stages.parsing import extract_json_object, format_hash, has_value, missing_keys
from .stages.prompts import build_request
from .stages.quality import evaluate_quality

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({408, 409, 425, 429})
FATAL_STATUS = frozenset({400, 401, 403, 404, 422})
FATAL_CATEGORIES = frozenset({"authentication", "content_policy", "malformed_request"})
FORMAT_ANALYSIS_KEYS = ("compactTemplate", "fieldConstraints", "validationRules")


@dataclass
class StageFailure:
    kind: str
    reason: str
    message: str
    status_code: Optional[int] = None

    @property
    def retryable(self) -> bool:
        return self.kind == "retryable"

    def to_exception(self, stage: StageKind) -> StageError:
        cls = RetryableStageError if self.retryable else FatalStageError
        return cls(
            self.message,
            reason=self.reason,
            stage=stage.value,
            status_code=self.status_code,
        )


@dataclass
class StageResult:
    """Outcome of one stage invocation. Exactly one of payload/error is set."""

    success: bool
    stage: StageKind
    format_rules: Optional[FormatRules] = None
    content: Optional[Dict[str, Any]] = None
    quality: Optional[QualityMetrics] = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    error: Optional[StageFailure] = None

    @property
    def payload(self) -> Optional[Dict[str, Any]]:
        if not self.success:
            return None
        if self.stage == StageKind.FORMAT_ANALYSIS:
            return {"formatRules": self.format_rules}
        if self.stage == StageKind.CONTENT_GENERATION:
            return {"content": self.content}
        return {"content": self.content, "quality": self.quality}


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return [f"{k}: {v}" for k, v in value.items()]
    return [value]


def classify_api_error(error: GenerationAPIError) -> StageFailure:
    """Map a client failure onto retryable or fatal."""
    status = error.status_code
    category = error.category
    if category in FATAL_CATEGORIES:
        return StageFailure("fatal", category, str(error), status)
    if status is not None:
        if status in RETRYABLE_STATUS:
            reason = "rate_limit" if status == 429 else "transient"
            return StageFailure("retryable", reason, str(error), status)
        if status >= 500:
            return StageFailure("retryable", "server_error", str(error), status)
        if status in FATAL_STATUS:
            reason = "authentication" if status in (401, 403) else "malformed_request"
            return StageFailure("fatal", reason, str(error), status)
        return StageFailure("fatal", "client_error", str(error), status)
    return StageFailure("retryable", category or "network", str(error), status)


class StageExecutor:
    """Run one pipeline stage for one item against the generation API.

    The API is invoked exactly once per call; retrying is up to the caller.
    ``execute`` never raises for stage failures, it returns a failed
    ``StageResult`` instead.
    """

    def __init__(
        self,
        client: GenerationClient,
        repository: Optional[GameRepository] = None,
        *,
        cache_format_analysis: bool = False,
        stage_max_tokens: Optional[Mapping[str, int]] = None,
        stage_temperature: Optional[Mapping[str, float]] = None,
    ) -> None:
        self._client = client
        self._repository = repository
        self.cache_format_analysis = cache_format_analysis
        self._stage_max_tokens = stage_max_tokens
        self._stage_temperature = stage_temperature
        self._format_cache: Dict[str, FormatRules] = {}
        self.api_calls = 0

    async def execute(
        self,
        stage: StageKind,
        item: ItemSnapshot,
        config: GenerationFlowConfiguration,
        *,
        workflow: WorkflowRecord,
        tolerate_malformed: bool = True,
    ) -> StageResult:
        game = item.game
        if game is None and self._repository is not None:
            game = await self._repository.get_by_id(item.item_id)
        if game is None:
            return self._failed(
                stage, "fatal", "not_found", f"Game {item.item_id} not found"
            )

        if stage != StageKind.FORMAT_ANALYSIS and item.format_rules is None:
            return self._failed(
                stage, "fatal", "missing_input", "Format rules are not available"
            )
        if stage == StageKind.FORMAT_VALIDATION and item.draft is None:
            return self._failed(
                stage, "fatal", "missing_input", "Draft content is not available"
            )

        fingerprint = format_hash(workflow.target_format)
        if stage == StageKind.FORMAT_ANALYSIS and self._use_cache(config):
            cached = self._format_cache.get(fingerprint)
            if cached is not None:
                logger.debug(f"Format analysis cache hit for {fingerprint}")
                return StageResult(success=True, stage=stage, format_rules=cached)

        request = build_request(
            stage,
            item,
            game,
            config,
            workflow,
            max_tokens=self._stage_max_tokens,
            temperature=self._stage_temperature,
        )
        self.api_calls += 1
        try:
            response = await self._client.invoke(request)
        except GenerationAPIError as e:
            failure = classify_api_error(e)
            return StageResult(success=False, stage=stage, error=failure)
        except TimeoutError as e:
            return self._failed(stage, "retryable", "timeout", str(e) or "client timeout")
        except OSError as e:
            return self._failed(stage, "retryable", "network", str(e) or "network error")

        data = extract_json_object(response.content)
        problem = self._shape_problem(stage, data, item)
        if problem is not None:
            kind = "retryable" if tolerate_malformed else "fatal"
            result = self._failed(stage, kind, "malformed_response", problem)
            result.usage = response.usage
            return result

        if stage == StageKind.FORMAT_ANALYSIS:
            detailed = data.get("detailedRules")
            rules = FormatRules(
                compact_template=data["compactTemplate"],
                field_constraints=_as_list(data.get("fieldConstraints")),
                validation_rules=_as_list(data.get("validationRules")),
                detailed_rules=detailed if isinstance(detailed, dict) else None,
                format_hash=fingerprint,
            )
            if self._use_cache(config):
                self._format_cache[fingerprint] = rules
            return StageResult(
                success=True, stage=stage, format_rules=rules, usage=response.usage
            )

        if stage == StageKind.CONTENT_GENERATION:
            return StageResult(
                success=True, stage=stage, content=data, usage=response.usage
            )

        quality = evaluate_quality(
            data,
            game,
            workflow.content_settings or config.content,
            item.format_rules.required_fields,
            config.quality_threshold,
        )
        return StageResult(
            success=True,
            stage=stage,
            content=data,
            quality=quality,
            usage=response.usage,
        )

    def _use_cache(self, config: GenerationFlowConfiguration) -> bool:
        return self.cache_format_analysis or config.cache_format_analysis

    @staticmethod
    def _failed(stage: StageKind, kind: str, reason: str, message: str) -> StageResult:
        return StageResult(
            success=False,
            stage=stage,
            error=StageFailure(kind=kind, reason=reason, message=message),
        )

    @staticmethod
    def _shape_problem(
        stage: StageKind, data: Optional[Dict[str, Any]], item: ItemSnapshot
    ) -> Optional[str]:
        if not data:
            return f"{stage.value} response is not a non-empty JSON object"
        if stage == StageKind.FORMAT_ANALYSIS:
            missing = missing_keys(data, FORMAT_ANALYSIS_KEYS)
            if missing:
                return f"format analysis response lacks {', '.join(missing)}"
        elif stage == StageKind.FORMAT_VALIDATION:
            missing = [
                f for f in item.format_rules.required_fields if not has_value(data, f)
            ]
            if missing:
                return f"validated content lacks {', '.join(missing)}"
        return None
