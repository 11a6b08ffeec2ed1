from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import List

import pytest

from devbox_lib.bootstrap import (
    BootstrapError,
    bootstrap_project_workspace,
    format_setup_event,
    resolve_setup_env,
    resolve_working_directory,
    select_repos,
)
from devbox_lib.config import LauncherConfig, ProjectConfig, RepoConfig, SandboxConfig
from devbox_lib.repos import ProvisionedRepo
from devbox_lib.sandbox import SandboxError
from devbox_lib.setup import ExecutionOptions, ExecutionResult
from devbox_lib.setup.runner import StepRetry, StepStdout
from tests._sandbox_fakes import FakeHandle, failed, no_sleep, ok

API = RepoConfig(
    name="api",
    url="https://github.com/acme/api.git",
    setup_command="make setup",
    setup_env={"STAGE": "dev"},
    startup_env={"API_MODE": "local"},
)
WEB = RepoConfig(name="web", url="https://github.com/acme/web.git", setup_command="npm ci")


class FakeGit:
    def __init__(self, existing: set[str] | None = None):
        self.existing = set(existing or ())

    async def exists(self, path: str) -> bool:
        return path in self.existing

    async def is_git_repo(self, path: str) -> bool:
        return True

    async def clone(self, url: str, path: str) -> None:
        self.existing.add(path)

    async def get_current_branch(self, path: str) -> str:
        return "main"

    async def checkout_branch(self, path: str, branch: str) -> None:
        raise AssertionError("unexpected checkout")


class RecordingExecutor:
    def __init__(self, exit_codes: List[int] | None = None):
        self.exit_codes = list(exit_codes or [])
        self.calls: List[tuple[str, ExecutionOptions]] = []

    async def run(self, command: str, options: ExecutionOptions) -> ExecutionResult:
        self.calls.append((command, options))
        code = self.exit_codes.pop(0) if self.exit_codes else 0
        return ExecutionResult(exit_code=code, stderr="failed" if code else "")


def _config(**project) -> LauncherConfig:
    base = ProjectConfig(dir="/home/user/workspace", repos=(API, WEB), mode="all")
    return LauncherConfig(sandbox=SandboxConfig(timeout_ms=60_000), project=replace(base, **project))


def _run(config, handle=None, **kwargs):
    handle = handle or FakeHandle()
    kwargs.setdefault("git", FakeGit())
    kwargs.setdefault("runtime_env", {"PATH": "/usr/bin"})
    return asyncio.run(bootstrap_project_workspace(handle, config, sleep=no_sleep, **kwargs))


def test_fresh_workspace_runs_setup_for_all_repos() -> None:
    handle = FakeHandle()
    executor = RecordingExecutor()
    progress: List[str] = []

    result = _run(_config(), handle, executor=executor, on_progress=progress.append)

    assert handle.commands()[0] == "mkdir -p /home/user/workspace"
    assert result.selected_repo_names == ["api", "web"]
    assert result.working_directory == "/home/user/workspace"
    assert result.startup_env == {}
    assert [summary.cloned for summary in result.provisioned_repos] == [True, True]
    assert result.setup is not None and result.setup.success
    command, options = executor.calls[0]
    assert command == "make setup"
    assert options.cwd == "/home/user/workspace/api"
    assert options.env["PATH"] == "/usr/bin"
    assert options.env["STAGE"] == "dev"
    assert options.env["GIT_AUTHOR_NAME"] and options.env["GIT_COMMITTER_EMAIL"]
    assert "Bootstrap repos selected: api, web" in progress
    assert "Setup success: repo=api step=setup_command attempts=1" in progress


def test_connect_skips_setup_for_reused_repos() -> None:
    git = FakeGit(existing={"/home/user/workspace/api"})
    executor = RecordingExecutor()

    result = _run(_config(), git=git, executor=executor, is_connect=True)

    assert [command for command, _ in executor.calls] == ["npm ci"]
    assert [repo.repo for repo in result.setup.repos] == ["web"]


def test_connect_with_setup_on_connect_runs_every_repo() -> None:
    git = FakeGit(existing={"/home/user/workspace/api", "/home/user/workspace/web"})
    executor = RecordingExecutor()

    _run(_config(setup_on_connect=True), git=git, executor=executor, is_connect=True)

    assert [command for command, _ in executor.calls] == ["make setup", "npm ci"]


def test_connect_with_nothing_cloned_returns_no_setup() -> None:
    git = FakeGit(existing={"/home/user/workspace/api", "/home/user/workspace/web"})
    executor = RecordingExecutor()

    result = _run(_config(), git=git, executor=executor, is_connect=True)

    assert result.setup is None
    assert executor.calls == []


def test_setup_retries_follow_config() -> None:
    executor = RecordingExecutor(exit_codes=[1, 1, 0])
    progress: List[str] = []

    result = _run(
        _config(mode="single", active="api", setup_retries=2),
        executor=executor,
        on_progress=progress.append,
    )

    assert result.setup.success
    assert len(executor.calls) == 3
    assert sum(line.startswith("Setup retry: repo=api") for line in progress) == 2


def test_single_mode_startup_env_and_working_dir() -> None:
    result = _run(_config(mode="single", active="api"), executor=RecordingExecutor())

    assert result.selected_repo_names == ["api"]
    assert result.working_directory == "/home/user/workspace/api"
    assert result.startup_env == {"API_MODE": "local"}


def test_missing_path_is_looked_up_in_sandbox() -> None:
    handle = FakeHandle([('printf %s "$PATH"', ok("/home/user/.local/bin:/usr/bin"))])

    env = asyncio.run(resolve_setup_env(handle, {"GIT_AUTHOR_NAME": "Ada"}))

    assert env["PATH"] == "/home/user/.local/bin:/usr/bin"
    assert env["GIT_AUTHOR_NAME"] == "Ada"
    assert env["GIT_COMMITTER_NAME"] == "Ada"
    assert "GIT_AUTHOR_EMAIL" in env


def test_failed_path_lookup_uses_default_path() -> None:
    handle = FakeHandle([('printf %s "$PATH"', failed(1))])

    env = asyncio.run(resolve_setup_env(handle, {}))

    assert env["PATH"].startswith("/usr/local/bin:")


def test_project_dir_failure_is_labelled() -> None:
    handle = FakeHandle([("mkdir -p", SandboxError("sandbox gone"))])

    with pytest.raises(BootstrapError, match=r"Bootstrap command failed \(ensure project directory '/home/user/workspace'\): sandbox gone"):
        _run(_config(), handle)


def test_project_dir_nonzero_exit_is_reported() -> None:
    handle = FakeHandle([("mkdir -p", failed(1, stderr="Permission denied"))])

    with pytest.raises(BootstrapError, match="Failed to create project directory '/home/user/workspace': Permission denied"):
        _run(_config(), handle)


def test_select_repos_prompts_when_interactive() -> None:
    questions = []

    def prompt(question: str) -> str:
        questions.append(question)
        return "2"

    selected = select_repos([API, WEB], "single", "prompt", is_interactive=lambda: True, prompt_input=prompt)

    assert [repo.name for repo in selected] == ["web"]
    assert "1) api" in questions[0] and "2) web" in questions[0]


def test_select_repos_invalid_choice() -> None:
    with pytest.raises(BootstrapError, match="between 1 and 2"):
        select_repos([API, WEB], "single", "prompt", is_interactive=lambda: True, prompt_input=lambda q: "7")


def test_select_repos_non_interactive_takes_first() -> None:
    assert select_repos([API, WEB], "single", "prompt", is_interactive=lambda: False) == [API]
    assert select_repos([API, WEB], "single", "web") == [WEB]
    assert select_repos([], "all", "prompt") == []


def test_resolve_working_directory_variants() -> None:
    one = [ProvisionedRepo(repo="api", path="/w/api", cloned=True, reused=False, branch_switched=False)]

    assert resolve_working_directory("/w", "auto", []) is None
    assert resolve_working_directory("/w", "auto", one) == "/w/api"
    assert resolve_working_directory("/w", "/srv/app", one) == "/srv/app"
    assert resolve_working_directory("/w", "api/src", one) == "/w/api/src"


def test_format_setup_event_hides_output_lines() -> None:
    assert format_setup_event(StepStdout(repo="api", step="setup_command", line="noise")) is None
    assert format_setup_event(
        StepRetry(repo="api", step="setup_command", command="make", attempt=1, next_attempt=2, error="boom")
    ) == "Setup retry: repo=api step=setup_command attempt=1 next=2 error=boom"
