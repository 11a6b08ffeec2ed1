"""Prepare the project workspace in a sandbox: directory, repositories, setup."""

from __future__ import annotations

import logging
import posixpath
import shlex
import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Sequence

from devbox_lib.config import WORKING_DIR_AUTO, LauncherConfig, RepoConfig
from devbox_lib.repos import GitAdapter, ProvisionedRepo, SandboxGitAdapter, provision_repos
from devbox_lib.sandbox import CommandOutcome, SandboxHandle
from devbox_lib.setup import (
    CommandExecutor,
    PipelineResult,
    SetupRepo,
    run_setup_pipeline,
)
from devbox_lib.setup.executors import SandboxCommandExecutor
from devbox_lib.setup.retry import RetryPolicy, SleepFn
from devbox_lib.setup.runner import SetupEvent

LOGGER = logging.getLogger("devbox.bootstrap")

PATH_LOOKUP_COMMAND = "printf %s \"$PATH\""
DEFAULT_BASE_PATH = "/usr/local/bin:/usr/bin:/bin:/usr/local/games:/usr/games"
DEFAULT_GIT_NAME = "Devbox Launcher"
DEFAULT_GIT_EMAIL = "launcher@example.local"

ProgressFn = Callable[[str], None]
PromptFn = Callable[[str], str]


class BootstrapError(RuntimeError):
    pass


@dataclass
class BootstrapResult:
    selected_repo_names: List[str]
    working_directory: str | None
    startup_env: Dict[str, str]
    provisioned_repos: List[ProvisionedRepo] = field(default_factory=list)
    setup: PipelineResult | None = None


def format_setup_event(event: SetupEvent) -> str | None:
    if event.type == "step:start":
        return f"Setup start: repo={event.repo} step={event.step} attempt={event.attempt}"
    if event.type == "step:retry":
        return (
            f"Setup retry: repo={event.repo} step={event.step} attempt={event.attempt} "
            f"next={event.next_attempt} error={event.error}"
        )
    if event.type == "step:success":
        return f"Setup success: repo={event.repo} step={event.step} attempts={event.attempts}"
    if event.type == "step:failure":
        return f"Setup failure: repo={event.repo} step={event.step} attempts={event.attempts} error={event.error}"
    return None


async def run_labeled(
    handle: SandboxHandle,
    command: str,
    label: str,
    *,
    timeout_ms: int | None = None,
) -> CommandOutcome:
    try:
        return await handle.run(command, timeout_ms=timeout_ms)
    except Exception as exc:
        cause = str(exc).strip() or "unknown error"
        raise BootstrapError(f"Bootstrap command failed ({label}): {cause}") from exc


async def ensure_project_directory(handle: SandboxHandle, project_dir: str, *, timeout_ms: int | None = None) -> None:
    outcome = await run_labeled(
        handle,
        f"mkdir -p {shlex.quote(project_dir)}",
        f"ensure project directory '{project_dir}'",
        timeout_ms=timeout_ms,
    )
    if outcome.exit_code != 0:
        detail = (outcome.stderr or outcome.stdout or "").strip() or "unknown error"
        raise BootstrapError(f"Failed to create project directory '{project_dir}': {detail}")


def _is_interactive_terminal() -> bool:
    return sys.stdin.isatty() and sys.stdout.isatty()


def select_repos(
    repos: Sequence[RepoConfig],
    mode: str,
    active: str,
    *,
    is_interactive: Callable[[], bool] | None = None,
    prompt_input: PromptFn | None = None,
) -> List[RepoConfig]:
    if not repos:
        return []
    if mode == "all":
        return list(repos)
    if len(repos) == 1:
        return [repos[0]]
    if active != "prompt":
        named = [repo for repo in repos if repo.name == active]
        return named or [repos[0]]
    if not (is_interactive or _is_interactive_terminal)():
        return [repos[0]]

    question = "\n".join(
        ["Multiple repos available. Select one:"]
        + [f"{index}) {repo.name}" for index, repo in enumerate(repos, start=1)]
        + [f"Enter choice [1-{len(repos)}]: "]
    )
    answer = (prompt_input or input)(question).strip()
    if not answer.isdigit() or not 1 <= int(answer) <= len(repos):
        raise BootstrapError(f"Invalid repo selection. Enter a number between 1 and {len(repos)}.")
    return [repos[int(answer) - 1]]


def resolve_working_directory(
    project_dir: str,
    working_dir: str,
    provisioned: Sequence[ProvisionedRepo],
) -> str | None:
    if working_dir == WORKING_DIR_AUTO:
        if not provisioned:
            return None
        if len(provisioned) == 1:
            return provisioned[0].path
        return project_dir
    if posixpath.isabs(working_dir):
        return working_dir
    return posixpath.normpath(posixpath.join(project_dir, working_dir))


def resolve_startup_env(selected: Sequence[RepoConfig]) -> Dict[str, str]:
    if len(selected) != 1:
        return {}
    return dict(selected[0].startup_env)


async def resolve_setup_env(
    handle: SandboxHandle,
    runtime_env: Mapping[str, str],
    *,
    timeout_ms: int | None = None,
) -> Dict[str, str]:
    """Runtime env plus a usable ``PATH`` and a fallback git identity."""

    env = dict(runtime_env)
    if not env.get("PATH", "").strip():
        outcome = await run_labeled(handle, PATH_LOOKUP_COMMAND, "resolve sandbox PATH", timeout_ms=timeout_ms)
        remote_path = outcome.stdout.strip() if outcome.exit_code == 0 else ""
        env["PATH"] = remote_path or DEFAULT_BASE_PATH
    env.setdefault("GIT_AUTHOR_NAME", DEFAULT_GIT_NAME)
    env.setdefault("GIT_AUTHOR_EMAIL", DEFAULT_GIT_EMAIL)
    env.setdefault("GIT_COMMITTER_NAME", env["GIT_AUTHOR_NAME"])
    env.setdefault("GIT_COMMITTER_EMAIL", env["GIT_AUTHOR_EMAIL"])
    return env


def _repos_for_setup(
    selected: Sequence[RepoConfig],
    provisioned: Sequence[ProvisionedRepo],
    *,
    is_connect: bool,
    setup_on_connect: bool,
) -> List[RepoConfig]:
    if not is_connect or setup_on_connect:
        return list(selected)
    cloned = {summary.repo for summary in provisioned if summary.cloned}
    return [repo for repo in selected if repo.name in cloned]


async def bootstrap_project_workspace(
    handle: SandboxHandle,
    config: LauncherConfig,
    *,
    is_connect: bool = False,
    runtime_env: Mapping[str, str] | None = None,
    on_progress: ProgressFn | None = None,
    is_interactive: Callable[[], bool] | None = None,
    prompt_input: PromptFn | None = None,
    git: GitAdapter | None = None,
    executor: CommandExecutor | None = None,
    sleep: SleepFn | None = None,
) -> BootstrapResult:
    """Create the project dir, provision selected repos and run their setup.

    On connect, only freshly cloned repos run setup unless
    ``project.setup_on_connect`` is set.
    """

    project = config.project
    timeout_ms = config.sandbox.timeout_ms
    env = dict(runtime_env or {})

    def progress(message: str) -> None:
        LOGGER.debug(message)
        if on_progress is not None:
            on_progress(message)

    await ensure_project_directory(handle, project.dir, timeout_ms=timeout_ms)

    selected = select_repos(
        project.repos,
        project.mode,
        project.active,
        is_interactive=is_interactive,
        prompt_input=prompt_input,
    )
    if selected:
        progress(f"Bootstrap repos selected: {', '.join(repo.name for repo in selected)}")
    else:
        progress("Bootstrap repos: none selected")

    adapter = git or SandboxGitAdapter(handle, timeout_ms=timeout_ms, runtime_env=env, on_progress=on_progress)
    provisioned = await provision_repos(project.dir, selected, adapter)
    for summary in provisioned:
        progress(
            f"Repo provisioned: {summary.repo} reused={summary.reused} "
            f"cloned={summary.cloned} branch_switched={summary.branch_switched}"
        )

    setup: PipelineResult | None = None
    setup_repos = _repos_for_setup(
        selected,
        provisioned,
        is_connect=is_connect,
        setup_on_connect=project.setup_on_connect,
    )
    if setup_repos:
        path_by_name = {summary.repo: summary.path for summary in provisioned}
        missing = [repo.name for repo in setup_repos if repo.name not in path_by_name]
        if missing:
            raise BootstrapError(f"Missing provisioned path for repo '{missing[0]}'.")
        setup_env = await resolve_setup_env(handle, env, timeout_ms=timeout_ms)

        def on_event(event: SetupEvent) -> None:
            message = format_setup_event(event)
            if message:
                progress(message)

        setup = await run_setup_pipeline(
            [
                SetupRepo(
                    name=repo.name,
                    path=path_by_name[repo.name],
                    setup_command=repo.setup_command,
                    setup_env=dict(repo.setup_env),
                )
                for repo in setup_repos
            ],
            executor or SandboxCommandExecutor(handle),
            retry_policy=RetryPolicy(attempts=project.setup_retries + 1, delay_ms=project.setup_delay_ms),
            continue_on_error=project.setup_continue_on_error,
            timeout_ms=timeout_ms,
            base_env=setup_env,
            sleep=sleep,
            on_event=on_event,
        )

    return BootstrapResult(
        selected_repo_names=[repo.name for repo in selected],
        working_directory=resolve_working_directory(project.dir, project.working_dir, provisioned),
        startup_env=resolve_startup_env(selected),
        provisioned_repos=provisioned,
        setup=setup,
    )
