"""Input contracts for gamepress generation flows."""

from __future__ import annotations

import copy
import json
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .constants import (
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_MAX_CONCURRENT_ITEMS,
    DEFAULT_MAX_CONCURRENT_STAGES,
    DEFAULT_MAX_RECOVERY_ATTEMPTS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_RETRY_DELAY_MS,
    DEFAULT_MAX_ROLLBACKS,
    DEFAULT_PER_ITEM_TIMEOUT_MS,
    DEFAULT_PROGRESS_UPDATE_INTERVAL_MS,
    DEFAULT_QUALITY_THRESHOLD,
    DEFAULT_RETRY_DELAY_MS,
    DEFAULT_TOTAL_TIMEOUT_MS,
)
from .errors import InvalidConfiguration


class StageKind(str, Enum):
    """Pipeline stages in execution order."""

    FORMAT_ANALYSIS = "formatAnalysis"
    CONTENT_GENERATION = "contentGeneration"
    FORMAT_VALIDATION = "formatValidation"

    @property
    def position(self) -> int:
        return STAGE_ORDER.index(self)

    def next(self) -> Optional["StageKind"]:
        """Return the following stage or ``None`` for the last one."""
        position = self.position + 1
        return STAGE_ORDER[position] if position < len(STAGE_ORDER) else None

    def previous(self) -> Optional["StageKind"]:
        return STAGE_ORDER[self.position - 1] if self.position > 0 else None


STAGE_ORDER: List[StageKind] = [
    StageKind.FORMAT_ANALYSIS,
    StageKind.CONTENT_GENERATION,
    StageKind.FORMAT_VALIDATION,
]


class CamelModel(BaseModel):
    """Base model accepting both snake_case and camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenCamelModel(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )


# ---------------------------------------------------------------------------
# Content settings


class WordRange(FrozenCamelModel):
    min: int = Field(default=0, ge=0)
    max: int = Field(default=0, ge=0)


class KeywordTarget(FrozenCamelModel):
    """Keyword density target and ceiling, both in percent."""

    target: float = Field(default=2.0, ge=0)
    max: float = Field(default=4.0, ge=0)


class WordCountSettings(FrozenCamelModel):
    total: WordRange = WordRange(min=800, max=1500)
    modules: Dict[str, WordRange] = Field(default_factory=dict)


class KeywordDensitySettings(FrozenCamelModel):
    main_keyword: KeywordTarget = KeywordTarget(target=2.5, max=4.0)
    long_tail_keywords: KeywordTarget = KeywordTarget(target=1.5, max=3.0)
    natural_distribution: bool = True


class QualityParams(FrozenCamelModel):
    readability_level: Literal["beginner", "intermediate", "advanced"] = "intermediate"
    professional_tone: bool = True
    target_audience: Literal["gamers", "general", "children"] = "gamers"
    creative_freedom: bool = False


class ContentSettings(FrozenCamelModel):
    """Article constraints handed to the content generation stage."""

    word_count: WordCountSettings = WordCountSettings()
    keyword_density: KeywordDensitySettings = KeywordDensitySettings()
    generation_mode: Literal["strict", "standard", "free"] = "standard"
    quality_params: QualityParams = QualityParams()


# ---------------------------------------------------------------------------
# Flow configuration groups


class StructuredDataOptions(FrozenCamelModel):
    schema_types: List[str] = Field(default_factory=list)


class ConcurrencySettings(FrozenCamelModel):
    max_concurrent_items: int = DEFAULT_MAX_CONCURRENT_ITEMS
    max_concurrent_stages: int = DEFAULT_MAX_CONCURRENT_STAGES

    @field_validator("max_concurrent_items", "max_concurrent_stages")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


class TimeoutSettings(FrozenCamelModel):
    """Timeouts in milliseconds."""

    per_item: int = DEFAULT_PER_ITEM_TIMEOUT_MS
    total: int = DEFAULT_TOTAL_TIMEOUT_MS

    @field_validator("per_item", "total")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be greater than 0")
        return v


class RetrySettings(FrozenCamelModel):
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    max_delay_ms: int = DEFAULT_MAX_RETRY_DELAY_MS
    # Send items whose validated content misses the quality threshold back
    # to content generation, at most ``max_rollbacks`` times.
    enable_stage_rollback: bool = False
    max_rollbacks: int = DEFAULT_MAX_ROLLBACKS

    @field_validator("max_retries", "retry_delay_ms", "max_delay_ms", "max_rollbacks")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be non-negative")
        return v

    @field_validator("backoff_factor")
    @classmethod
    def _factor(cls, v: float) -> float:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


class RecoverySettings(FrozenCamelModel):
    enable_auto_recovery: bool = False
    save_checkpoints: bool = True
    max_recovery_attempts: int = Field(default=DEFAULT_MAX_RECOVERY_ATTEMPTS, ge=0)


class NotificationSettings(FrozenCamelModel):
    enable_progress_updates: bool = True
    enable_error_alerts: bool = True
    progress_update_interval: int = Field(
        default=DEFAULT_PROGRESS_UPDATE_INTERVAL_MS, ge=0
    )


CompletionPolicy = Literal["any_success", "all_success", "always"]


class GenerationFlowConfiguration(FrozenCamelModel):
    """Immutable input describing one generation flow.

    ``workflow_id`` and a non-empty ``game_data_ids`` list are required; every
    other group has a default.
    """

    workflow_id: str
    game_data_ids: List[str]
    enable_structured_data: bool = True
    structured_data: StructuredDataOptions = StructuredDataOptions()
    output_format: Literal["json", "csv", "xlsx"] = "json"
    quality_threshold: float = DEFAULT_QUALITY_THRESHOLD
    content: ContentSettings = ContentSettings()
    concurrency: ConcurrencySettings = ConcurrencySettings()
    timeout: TimeoutSettings = TimeoutSettings()
    retry: RetrySettings = RetrySettings()
    recovery: RecoverySettings = RecoverySettings()
    notifications: NotificationSettings = NotificationSettings()
    completion_policy: CompletionPolicy = "any_success"
    cache_format_analysis: bool = False

    @field_validator("workflow_id")
    @classmethod
    def _workflow_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("workflowId is required")
        return v

    @field_validator("game_data_ids")
    @classmethod
    def _ids_required(cls, v: List[str]) -> List[str]:
        ids = [item.strip() for item in v if item and item.strip()]
        if not ids:
            raise ValueError("gameDataIds must be a non-empty array")
        return list(dict.fromkeys(ids))

    @field_validator("quality_threshold")
    @classmethod
    def _threshold_range(cls, v: float) -> float:
        if v < 0 or v > 1:
            raise ValueError("qualityThreshold must be between 0 and 1")
        return v

    @classmethod
    def parse(
        cls,
        data: "GenerationFlowConfiguration | Mapping[str, Any]",
        defaults: Optional[Mapping[str, Any]] = None,
    ) -> "GenerationFlowConfiguration":
        """Validate ``data`` merged over ``defaults``.

        Raises:
            InvalidConfiguration: listing every validation problem.
        """
        if isinstance(data, GenerationFlowConfiguration):
            if not defaults:
                return data
            data = data.model_dump(by_alias=True, exclude_unset=True)
        if not isinstance(data, Mapping):
            raise InvalidConfiguration(["configuration must be a mapping"])

        merged = merge_configuration(defaults or {}, data)
        try:
            return cls.model_validate(merged)
        except ValidationError as exc:
            raise InvalidConfiguration(_format_errors(exc)) from None


def _normalise_keys(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {to_camel(key) if "_" in key else key: value for key, value in data.items()}


def merge_configuration(
    defaults: Mapping[str, Any], overrides: Mapping[str, Any]
) -> Dict[str, Any]:
    """Deep-merge ``overrides`` onto ``defaults``.

    Keys are normalised to camelCase first so snake_case and camelCase inputs
    merge onto the same entries.
    """
    merged = copy.deepcopy(_normalise_keys(defaults))
    for key, value in _normalise_keys(overrides).items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_configuration(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _format_errors(exc: ValidationError) -> List[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "configuration"
        message = error["msg"]
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        messages.append(f"{location}: {message}")
    return messages


# ---------------------------------------------------------------------------
# Records consumed by the stages


class GameData(CamelModel):
    """Raw game record as imported from CSV."""

    id: str
    game_name: str
    main_keyword: str
    long_tail_keywords: List[str] = Field(default_factory=list)
    video_link: Optional[str] = None
    internal_links: List[str] = Field(default_factory=list)
    competitor_pages: List[str] = Field(default_factory=list)
    icon_url: Optional[str] = None
    real_url: str = ""

    @field_validator(
        "long_tail_keywords", "internal_links", "competitor_pages", mode="before"
    )
    @classmethod
    def _split_csv(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v


class WorkflowRecord(CamelModel):
    """Stored workflow: the target article format and optional settings."""

    id: str
    name: str = ""
    target_format: str
    content_settings: Optional[ContentSettings] = None
    structured_data_types: List[str] = Field(default_factory=list)

    @field_validator("target_format", mode="before")
    @classmethod
    def _format_text(cls, v: Any) -> Any:
        if isinstance(v, (dict, list)):
            return json.dumps(v, ensure_ascii=False, indent=2)
        return v
