"""Clone or reuse project repositories inside the sandbox."""

from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Protocol, Sequence

from devbox_lib.sandbox import CommandOutcome, SandboxHandle, SandboxError

LOGGER = logging.getLogger("devbox.repos")

TRUE_MARKER = "DEVBOX_TRUE"
FALSE_MARKER = "DEVBOX_FALSE"
GITHUB_HTTPS_PATTERN = re.compile(r"^https://github\.com/")
TOKEN_VARS = ("GH_TOKEN", "GITHUB_TOKEN")

ProgressFn = Callable[[str], None]


class RepoError(RuntimeError):
    pass


class RepoSpec(Protocol):
    name: str
    url: str
    branch: str


class GitAdapter(Protocol):
    async def exists(self, path: str) -> bool: ...

    async def is_git_repo(self, path: str) -> bool: ...

    async def clone(self, url: str, path: str) -> None: ...

    async def get_current_branch(self, path: str) -> str: ...

    async def checkout_branch(self, path: str, branch: str) -> None: ...


@dataclass(frozen=True)
class ProvisionedRepo:
    repo: str
    path: str
    cloned: bool
    reused: bool
    branch_switched: bool

    def to_dict(self) -> Dict[str, object]:
        return {
            "repo": self.repo,
            "path": self.path,
            "cloned": self.cloned,
            "reused": self.reused,
            "branch_switched": self.branch_switched,
        }


def repo_path(project_dir: str, name: str) -> str:
    return f"{project_dir.rstrip('/')}/{name}"


async def provision_repos(project_dir: str, repos: Sequence[RepoSpec], git: GitAdapter) -> List[ProvisionedRepo]:
    """Reuse existing checkouts, clone missing ones and align each to its configured branch."""

    summaries: List[ProvisionedRepo] = []
    for repo in repos:
        path = repo_path(project_dir, repo.name)
        cloned = False
        if await git.exists(path):
            if not await git.is_git_repo(path):
                raise RepoError(
                    f"Repo path '{path}' for '{repo.name}' exists but is not a git repository. "
                    "Move it aside or pick another project.dir."
                )
        else:
            await git.clone(repo.url, path)
            cloned = True

        switched = False
        current = await git.get_current_branch(path)
        if repo.branch and current != repo.branch:
            await git.checkout_branch(path, repo.branch)
            switched = True
        summaries.append(
            ProvisionedRepo(repo=repo.name, path=path, cloned=cloned, reused=not cloned, branch_switched=switched)
        )
    return summaries


def _detail(outcome: CommandOutcome) -> str:
    return (outcome.stderr or outcome.stdout or "").strip() or "unknown error"


def _double_quote(value: str) -> str:
    return '"' + re.sub(r'(["\\`])', r"\\\1", value) + '"'


def resolve_clone_url_arg(url: str, runtime_env: Mapping[str, str] | None = None) -> str:
    """Shell argument for ``git clone``; GitHub HTTPS URLs get a token expanded by the remote shell."""

    env = runtime_env or {}
    token_var = next((name for name in TOKEN_VARS if env.get(name)), None)
    if token_var is None or not GITHUB_HTTPS_PATTERN.match(url):
        return shlex.quote(url)
    return _double_quote(f"https://x-access-token:${token_var}@{url[len('https://'):]}")


@dataclass
class SandboxGitAdapter:
    handle: SandboxHandle
    timeout_ms: int | None = None
    runtime_env: Mapping[str, str] = field(default_factory=dict)
    on_progress: ProgressFn | None = None

    def _progress(self, message: str) -> None:
        if self.on_progress is not None:
            self.on_progress(message)

    async def _run(self, command: str, label: str, *, envs: Mapping[str, str] | None = None) -> CommandOutcome:
        try:
            return await self.handle.run(command, envs=envs or None, timeout_ms=self.timeout_ms)
        except SandboxError as exc:
            raise RepoError(f"Repo command failed ({label}): {exc}") from exc

    async def _run_required(self, command: str, label: str, *, envs: Mapping[str, str] | None = None) -> CommandOutcome:
        outcome = await self._run(command, label, envs=envs)
        if outcome.exit_code != 0:
            raise RepoError(f"Repo command failed ({label}): {_detail(outcome)}")
        return outcome

    async def _check(self, test: str, label: str) -> bool:
        command = f"if {test}; then printf {TRUE_MARKER}; else printf {FALSE_MARKER}; fi"
        marker = (await self._run_required(command, label)).stdout.strip()
        if marker == TRUE_MARKER:
            return True
        if marker == FALSE_MARKER:
            return False
        raise RepoError(f"Repo command failed ({label}): unexpected boolean marker '{marker or 'empty'}'")

    async def exists(self, path: str) -> bool:
        self._progress(f"Repo check: {path}")
        return await self._check(f"[ -e {shlex.quote(path)} ]", f"check path exists '{path}'")

    async def is_git_repo(self, path: str) -> bool:
        self._progress(f"Repo validate git: {path}")
        return await self._check(f"[ -d {shlex.quote(path + '/.git')} ]", f"check git repo '{path}'")

    async def clone(self, url: str, path: str) -> None:
        self._progress(f"Repo clone: {path}")
        command = f"git clone {resolve_clone_url_arg(url, self.runtime_env)} {shlex.quote(path)}"
        await self._run_required(command, f"clone repo '{path}'", envs=self.runtime_env)

    async def get_current_branch(self, path: str) -> str:
        self._progress(f"Repo branch detect: {path}")
        outcome = await self._run_required(
            f"git -C {shlex.quote(path)} rev-parse --abbrev-ref HEAD", f"detect branch '{path}'"
        )
        return outcome.stdout.strip()

    async def checkout_branch(self, path: str, branch: str) -> None:
        self._progress(f"Repo branch switch: {path} -> {branch}")
        repo_q = shlex.quote(path)
        branch_q = shlex.quote(branch)
        local = await self._run(f"git -C {repo_q} checkout {branch_q}", f"checkout branch '{branch}' in '{path}'")
        if local.exit_code == 0:
            return

        self._progress(f"Repo branch switch fallback: {path} -> origin/{branch}")
        prefix = (
            f"Failed to checkout branch '{branch}' in repo '{path}'. Try updating project.repos[].branch. "
            f"Local checkout error: {_detail(local)}."
        )
        fetched = await self._run(f"git -C {repo_q} fetch origin {branch_q}", f"fetch branch '{branch}' in '{path}'")
        if fetched.exit_code != 0:
            raise RepoError(f"{prefix} Fetch error: {_detail(fetched)}")
        tracking = await self._run(
            f"git -C {repo_q} checkout -B {branch_q} --track {shlex.quote('origin/' + branch)}",
            f"checkout tracking branch '{branch}' in '{path}'",
        )
        if tracking.exit_code != 0:
            raise RepoError(f"{prefix} Remote-tracking checkout error: {_detail(tracking)}")
