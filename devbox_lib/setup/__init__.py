from .retry import RetryPolicy, resolve_retry_policy, with_retry
from .runner import (
    CommandExecutor,
    ExecutionOptions,
    ExecutionResult,
    PipelineResult,
    RepoOutcome,
    SetupPipelineError,
    SetupRepo,
    StepOutcome,
    run_setup_pipeline,
)

__all__ = [
    "CommandExecutor",
    "ExecutionOptions",
    "ExecutionResult",
    "PipelineResult",
    "RepoOutcome",
    "RetryPolicy",
    "SetupPipelineError",
    "SetupRepo",
    "StepOutcome",
    "resolve_retry_policy",
    "run_setup_pipeline",
    "with_retry",
]
