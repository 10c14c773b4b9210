"""gamepress: orchestration engine for multi-stage SEO article generation."""

from .contracts import GameData, GenerationFlowConfiguration, StageKind, WorkflowRecord
from .controller import FlowController
from .dispatch import FlowDispatcher
from .errors import (
    FatalStageError,
    FlowTimeoutError,
    GamepressError,
    GenerationAPIError,
    InternalSchedulingError,
    InvalidConfiguration,
    ItemTimeoutError,
    RetryableStageError,
    UnknownFlowError,
)
from .execute import StageExecutor, StageResult
from .clients import get_client
from .persistence import get_checkpoint_repository
from .registry import FlowRegistry, get_registry
from .scheduler import ConcurrencyScheduler
from .state import ItemStateMachine
from .utils.retry import RetryPolicy, run_with_retry

__version__ = "0.1.0"
__all__ = [
    "ConcurrencyScheduler",
    "FatalStageError",
    "FlowController",
    "FlowDispatcher",
    "FlowRegistry",
    "FlowTimeoutError",
    "GameData",
    "GamepressError",
    "GenerationAPIError",
    "GenerationFlowConfiguration",
    "InternalSchedulingError",
    "InvalidConfiguration",
    "ItemStateMachine",
    "ItemTimeoutError",
    "RetryPolicy",
    "RetryableStageError",
    "StageExecutor",
    "StageKind",
    "StageResult",
    "UnknownFlowError",
    "WorkflowRecord",
    "get_checkpoint_repository",
    "get_client",
    "get_registry",
    "run_with_retry",
]
