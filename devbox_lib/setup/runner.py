"""Per-repository setup pipeline with bounded retries and streamed output."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, ClassVar, Dict, List, Mapping, Protocol, Sequence, Union

from .retry import RetryPolicy, SleepFn, resolve_retry_policy, with_retry

LOGGER = logging.getLogger("devbox.setup")

LineCallback = Callable[[str], Any]


@dataclass(frozen=True)
class SetupRepo:
    name: str
    path: str
    setup_command: str = ""
    setup_env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SetupCommandStep:
    kind: ClassVar[str] = "setup_command"
    command: str


# New step kinds join this union; the pipeline loop only reads ``kind`` and ``command``.
SetupStep = Union[SetupCommandStep]


def steps_for(repo: SetupRepo) -> List[SetupStep]:
    return [SetupCommandStep(command=repo.setup_command.strip())]


@dataclass
class ExecutionOptions:
    cwd: str
    env: Dict[str, str]
    timeout_ms: int | None = None
    on_stdout_line: LineCallback | None = None
    on_stderr_line: LineCallback | None = None


@dataclass
class ExecutionResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class CommandExecutor(Protocol):
    async def run(self, command: str, options: ExecutionOptions) -> ExecutionResult: ...


@dataclass(frozen=True)
class StepOutcome:
    step: str
    command: str
    success: bool
    attempts: int
    skipped: bool
    error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RepoOutcome:
    repo: str
    path: str
    success: bool
    steps: tuple[StepOutcome, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repo": self.repo,
            "path": self.path,
            "success": self.success,
            "steps": [step.to_dict() for step in self.steps],
        }


@dataclass(frozen=True)
class PipelineResult:
    success: bool
    repos: tuple[RepoOutcome, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "repos": [repo.to_dict() for repo in self.repos]}


class SetupPipelineError(RuntimeError):
    def __init__(self, message: str, result: PipelineResult):
        super().__init__(message)
        self.result = result


# events -----------------------------------------------------------------------


@dataclass(frozen=True)
class _Event:
    type: ClassVar[str] = ""
    repo: str
    step: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, **asdict(self)}


@dataclass(frozen=True)
class StepStart(_Event):
    type: ClassVar[str] = "step:start"
    command: str
    attempt: int


@dataclass(frozen=True)
class StepStdout(_Event):
    type: ClassVar[str] = "step:stdout"
    line: str


@dataclass(frozen=True)
class StepStderr(_Event):
    type: ClassVar[str] = "step:stderr"
    line: str


@dataclass(frozen=True)
class StepRetry(_Event):
    type: ClassVar[str] = "step:retry"
    command: str
    attempt: int
    next_attempt: int
    error: str


@dataclass(frozen=True)
class StepSuccess(_Event):
    type: ClassVar[str] = "step:success"
    command: str
    attempts: int


@dataclass(frozen=True)
class StepFailure(_Event):
    type: ClassVar[str] = "step:failure"
    command: str
    attempts: int
    error: str


SetupEvent = Union[StepStart, StepStdout, StepStderr, StepRetry, StepSuccess, StepFailure]
EventCallback = Callable[[SetupEvent], Any]


class _StepCommandFailed(RuntimeError):
    pass


def format_command_error(command: str, exit_code: int, stderr: str | None = None) -> str:
    suffix = f": {stderr}" if stderr and stderr.strip() else ""
    return f"Command '{command}' failed with exit code {exit_code}{suffix}"


def _error_text(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or "Unknown setup error"


async def run_setup_pipeline(
    repos: Sequence[SetupRepo],
    executor: CommandExecutor,
    *,
    retry_policy: RetryPolicy | Mapping[str, Any] | None = None,
    continue_on_error: bool = False,
    timeout_ms: int | None = None,
    base_env: Mapping[str, str] | None = None,
    sleep: SleepFn | None = None,
    on_event: EventCallback | None = None,
) -> PipelineResult:
    """Run every repository's steps in order and summarise the outcome.

    With ``continue_on_error`` false the first exhausted step stops the run and
    raises :class:`SetupPipelineError`; repositories after it are never
    attempted and do not appear in the result.
    """

    policy = resolve_retry_policy(retry_policy)
    repo_results: List[RepoOutcome] = []

    def emit(event: SetupEvent) -> None:
        if on_event is not None:
            on_event(event)

    for repo in repos:
        step_results: List[StepOutcome] = []
        repo_success = True

        for step in steps_for(repo):
            if not step.command:
                step_results.append(StepOutcome(step=step.kind, command="", success=True, attempts=0, skipped=True))
                continue

            attempts = 0
            env = {**(base_env or {}), **repo.setup_env}

            async def attempt_step(attempt: int, step: SetupStep = step, env: Dict[str, str] = env) -> None:
                nonlocal attempts
                attempts = attempt
                emit(StepStart(repo=repo.name, step=step.kind, command=step.command, attempt=attempt))
                result = await executor.run(
                    step.command,
                    ExecutionOptions(
                        cwd=repo.path,
                        env=dict(env),
                        timeout_ms=timeout_ms,
                        on_stdout_line=lambda line: emit(StepStdout(repo=repo.name, step=step.kind, line=line)),
                        on_stderr_line=lambda line: emit(StepStderr(repo=repo.name, step=step.kind, line=line)),
                    ),
                )
                if result.exit_code != 0:
                    raise _StepCommandFailed(format_command_error(step.command, result.exit_code, result.stderr))

            def on_retry(exc: BaseException, attempt: int, next_attempt: int, step: SetupStep = step) -> None:
                LOGGER.info("Retrying %s for %s (attempt %d): %s", step.kind, repo.name, next_attempt, exc)
                emit(
                    StepRetry(
                        repo=repo.name,
                        step=step.kind,
                        command=step.command,
                        attempt=attempt,
                        next_attempt=next_attempt,
                        error=_error_text(exc),
                    )
                )

            try:
                await with_retry(attempt_step, policy, sleep=sleep, on_retry=on_retry)
            except Exception as exc:
                repo_success = False
                message = _error_text(exc)
                step_results.append(
                    StepOutcome(
                        step=step.kind,
                        command=step.command,
                        success=False,
                        attempts=attempts,
                        skipped=False,
                        error=message,
                    )
                )
                emit(StepFailure(repo=repo.name, step=step.kind, command=step.command, attempts=attempts, error=message))
                if not continue_on_error:
                    repo_results.append(
                        RepoOutcome(repo=repo.name, path=repo.path, success=False, steps=tuple(step_results))
                    )
                    raise SetupPipelineError(
                        f"Setup pipeline failed for repo '{repo.name}' on step '{step.kind}': {message}",
                        PipelineResult(success=False, repos=tuple(repo_results)),
                    ) from exc
                break

            step_results.append(
                StepOutcome(step=step.kind, command=step.command, success=True, attempts=attempts, skipped=False)
            )
            emit(StepSuccess(repo=repo.name, step=step.kind, command=step.command, attempts=attempts))

        repo_results.append(RepoOutcome(repo=repo.name, path=repo.path, success=repo_success, steps=tuple(step_results)))

    return PipelineResult(success=all(entry.success for entry in repo_results), repos=tuple(repo_results))
