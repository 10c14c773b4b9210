"""Runtime state, snapshots and event payloads for generation flows."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from .contracts import CamelModel, GameData, StageKind
from .stages.parsing import extract_json


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ItemStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


# Flows move through the same states as their items.
FlowStatus = ItemStatus

TERMINAL_STATUSES = frozenset(
    {ItemStatus.COMPLETED, ItemStatus.FAILED, ItemStatus.CANCELLED}
)


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TokenUsage(CamelModel):
    """Token counters reported by the generation API."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class ItemError(CamelModel):
    """Terminal failure recorded against an item or a flow."""

    kind: str
    message: str
    stage: Optional[StageKind] = None
    reason: Optional[str] = None
    attempts: int = 0
    status_code: Optional[int] = None

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        *,
        stage: Optional[StageKind] = None,
        attempts: int = 0,
    ) -> "ItemError":
        return cls(
            kind=type(exc).__name__,
            message=str(exc) or type(exc).__name__,
            stage=stage,
            reason=getattr(exc, "reason", None),
            attempts=attempts,
            status_code=getattr(exc, "status_code", None),
        )


class StageStatusRecord(CamelModel):
    stage: StageKind
    status: StageStatus = StageStatus.PENDING
    attempts: int = 0
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    error: Optional[ItemError] = None


class ItemTransition(CamelModel):
    """One entry of an item's state history."""

    from_status: ItemStatus
    to_status: ItemStatus
    stage: Optional[StageKind] = None
    at: datetime = Field(default_factory=utcnow)
    note: Optional[str] = None


class FormatRules(CamelModel):
    """Output of the format analysis stage."""

    compact_template: Any
    field_constraints: List[Any] = Field(default_factory=list)
    validation_rules: List[Any] = Field(default_factory=list)
    detailed_rules: Optional[Dict[str, Any]] = None
    format_hash: str = ""

    @property
    def required_fields(self) -> List[str]:
        """Top-level keys of the compact template."""
        template = self.compact_template
        if isinstance(template, str):
            template = extract_json(template)
        if isinstance(template, dict):
            return list(template.keys())
        return []


class QualityMetrics(CamelModel):
    word_count: int = 0
    main_keyword_density: float = 0.0
    long_tail_keyword_density: float = 0.0
    score: float = 0.0
    scores: Dict[str, float] = Field(default_factory=dict)
    grade: str = "F"
    recommendations: List[str] = Field(default_factory=list)
    passed_threshold: bool = False


class ItemSnapshot(CamelModel):
    """Read-only copy of an item's state."""

    item_id: str
    status: ItemStatus
    current_stage: StageKind
    stage_statuses: Dict[StageKind, StageStatusRecord]
    history: List[ItemTransition] = Field(default_factory=list)
    game: Optional[GameData] = None
    format_rules: Optional[FormatRules] = None
    draft: Optional[Dict[str, Any]] = None
    content: Optional[Dict[str, Any]] = None
    quality: Optional[QualityMetrics] = None
    usage: TokenUsage = TokenUsage()
    error: Optional[ItemError] = None
    rollbacks: int = 0
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class ItemResult(CamelModel):
    """Final outcome of one item as reported in ``completed`` events."""

    item_id: str
    game_name: Optional[str] = None
    status: ItemStatus
    content: Optional[Dict[str, Any]] = None
    format_rules: Optional[FormatRules] = None
    quality: Optional[QualityMetrics] = None
    error: Optional[ItemError] = None
    usage: TokenUsage = TokenUsage()
    attempts: Dict[StageKind, int] = Field(default_factory=dict)
    rollbacks: int = 0
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class FlowCounts(CamelModel):
    total: int = 0
    pending: int = 0
    running: int = 0
    paused: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0


class FlowSnapshot(CamelModel):
    """Consistent read-only view of one flow."""

    flow_id: str
    workflow_id: str
    status: FlowStatus
    progress: float = 0.0
    current_stage: Optional[StageKind] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    counts: FlowCounts = FlowCounts()
    items: List[ItemSnapshot] = Field(default_factory=list)
    results: List[ItemResult] = Field(default_factory=list)
    errors: List[ItemError] = Field(default_factory=list)
    usage: TokenUsage = TokenUsage()
    api_calls: int = 0
    recovery_attempts: int = 0
    configuration: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class ItemQueueStatus(CamelModel):
    total: int = 0
    running: int = 0
    queued: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0


class QueueStatus(CamelModel):
    """Flow counts across the dispatcher; ``queued`` flows await admission."""

    total: int = 0
    running: int = 0
    queued: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    max_concurrent_flows: int = 0
    items: Optional[ItemQueueStatus] = None


# ---------------------------------------------------------------------------
# Event payloads


class ProgressEvent(CamelModel):
    flow_id: str
    progress: float
    current_stage: Optional[StageKind] = None


class CompletedEvent(CamelModel):
    flow_id: str
    results: List[ItemResult]


class ErrorInfo(CamelModel):
    message: str
    kind: str


class ErrorEvent(CamelModel):
    flow_id: Optional[str] = None
    error: ErrorInfo


class FlowStatusEvent(CamelModel):
    """Payload of ``paused``, ``resumed`` and ``cancelled`` events."""

    flow_id: str
    status: FlowStatus


class CheckpointEvent(CamelModel):
    flow_id: str
    saved_at: datetime
    completed_items: int = 0
