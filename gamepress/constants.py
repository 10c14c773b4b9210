"""Shared defaults for generation flows."""

DEFAULT_MAX_CONCURRENT_ITEMS = 5
DEFAULT_MAX_CONCURRENT_STAGES = 2
DEFAULT_MAX_CONCURRENT_FLOWS = 3

DEFAULT_PER_ITEM_TIMEOUT_MS = 120_000
DEFAULT_TOTAL_TIMEOUT_MS = 1_800_000

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 1_000
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_MAX_RETRY_DELAY_MS = 30_000
DEFAULT_MAX_ROLLBACKS = 2

DEFAULT_MAX_RECOVERY_ATTEMPTS = 3
DEFAULT_PROGRESS_UPDATE_INTERVAL_MS = 1_000
DEFAULT_QUALITY_THRESHOLD = 0.7

# Token budgets per stage, taken from the three-stage pipeline limits.
DEFAULT_STAGE_MAX_TOKENS = {
    "formatAnalysis": 2_000,
    "contentGeneration": 4_000,
    "formatValidation": 4_000,
}
DEFAULT_STAGE_TEMPERATURE = {
    "formatAnalysis": 0.1,
    "contentGeneration": 0.7,
    "formatValidation": 0.2,
}
