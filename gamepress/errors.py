"""Error taxonomy for the generation orchestration engine."""

from __future__ import annotations

from typing import Iterable, Optional


class GamepressError(Exception):
    """Base class for all gamepress errors."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class InvalidConfiguration(GamepressError):
    """Flow creation rejected before any work started."""

    def __init__(self, errors: Iterable[str]):
        self.errors = list(errors)
        super().__init__(f"Invalid configuration: {', '.join(self.errors)}")


class UnknownFlowError(GamepressError, KeyError):
    """Control operation addressed a flow id that is not registered."""

    def __init__(self, flow_id: str):
        self.flow_id = flow_id
        super().__init__(f"Unknown flow: {flow_id}")

    def __str__(self) -> str:
        return self.args[0]


class StageError(GamepressError):
    """Failure of a single stage attempt.

    Args:
        message: Human readable description.
        reason: Short machine readable cause such as ``rate_limit`` or
            ``malformed_response``.
        stage: Stage kind value the failure belongs to, when known.
        status_code: HTTP-like status reported by the generation API.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        reason: str = "unknown",
        stage: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.stage = stage
        self.status_code = status_code


class RetryableStageError(StageError):
    """Transient failure; the retry policy may attempt the stage again."""

    retryable = True


class FatalStageError(StageError):
    """Non-retryable failure; short-circuits the remaining retry budget."""


class QualityThresholdError(FatalStageError):
    """Validated content missed the quality threshold after every rollback."""

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message, reason="below_quality_threshold", stage=stage)


class ItemTimeoutError(StageError):
    """The final attempt of a stage exceeded the per-attempt timeout."""

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message, reason="timeout", stage=stage)


class FlowTimeoutError(GamepressError):
    """The flow-level total timeout expired."""

    def __init__(self, flow_id: str, timeout_ms: int):
        self.flow_id = flow_id
        self.timeout_ms = timeout_ms
        super().__init__(f"Flow {flow_id} exceeded total timeout of {timeout_ms}ms")


class InternalSchedulingError(GamepressError):
    """An invalid state-machine transition was attempted."""


class GenerationAPIError(GamepressError):
    """Raised by generation clients when the external call fails.

    ``status_code`` and ``category`` carry what the stage executor needs to
    decide between a retryable and a fatal failure.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        category: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.category = category


__all__ = [
    "GamepressError",
    "InvalidConfiguration",
    "UnknownFlowError",
    "StageError",
    "RetryableStageError",
    "FatalStageError",
    "ItemTimeoutError",
    "FlowTimeoutError",
    "InternalSchedulingError",
    "GenerationAPIError",
]
