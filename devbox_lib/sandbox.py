"""Sandbox handle contract and the e2b-backed implementation."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Protocol, Sequence, TypeVar

from e2b import AsyncSandbox, CommandExitException

LOGGER = logging.getLogger("devbox.sandbox")

BUILTIN_PASSTHROUGH_VARS = (
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GITHUB_TOKEN",
    "GH_TOKEN",
)

OutputCallback = Callable[[str], Any]
T = TypeVar("T")


@dataclass
class CommandOutcome:
    stdout: str
    stderr: str
    exit_code: int


class SandboxError(RuntimeError):
    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class SandboxHandle(Protocol):
    sandbox_id: str

    async def run(
        self,
        command: str,
        *,
        cwd: str | None = None,
        envs: Mapping[str, str] | None = None,
        timeout_ms: int | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> CommandOutcome: ...

    async def write_file(self, path: str, data: str | bytes) -> None: ...

    def get_host(self, port: int) -> str: ...

    async def set_timeout(self, timeout_ms: int) -> None: ...

    async def kill(self) -> None: ...


def normalize_timeout_seconds(timeout_ms: int | float) -> int:
    if timeout_ms <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout_ms}ms")
    return max(1, math.ceil(timeout_ms / 1000))


def build_metadata_tags(*, project: str | None = None, mode: str | None = None, user: str | None = None) -> Dict[str, str]:
    metadata: Dict[str, str] = {}
    if project:
        metadata["launcher.project"] = project
    if mode:
        metadata["launcher.mode"] = mode
    if user:
        metadata["launcher.user"] = user
    return metadata


def resolve_sandbox_create_env(pass_through: Sequence[str], environ: Mapping[str, str]) -> Dict[str, str]:
    """Collect allow-listed, non-blank variables from the local environment."""

    resolved: Dict[str, str] = {}
    for key in [*pass_through, *BUILTIN_PASSTHROUGH_VARS]:
        value = (environ.get(key) or "").strip()
        if value:
            resolved[key] = value
    return resolved


def format_sandbox_error(message: str, cause: BaseException) -> str:
    parts = [message]
    text = str(cause).strip()
    if text:
        parts.append(text)
    exit_code = getattr(cause, "exit_code", None)
    if isinstance(exit_code, int):
        parts.append(f"exitCode={exit_code}")
    stderr = str(getattr(cause, "stderr", "") or "").strip()
    stdout = str(getattr(cause, "stdout", "") or "").strip()
    if stderr:
        parts.append(f"stderr={stderr}")
    elif stdout:
        parts.append(f"stdout={stdout}")
    return ": ".join(parts)


async def _wrap(message: str, operation: Callable[[], Awaitable[T]]) -> T:
    try:
        return await operation()
    except SandboxError:
        raise
    except Exception as exc:
        raise SandboxError(format_sandbox_error(message, exc), exc) from exc


class E2BSandboxHandle:
    """Adapts an ``e2b.AsyncSandbox`` to :class:`SandboxHandle`."""

    def __init__(self, sandbox: Any):
        self._sandbox = sandbox
        self.sandbox_id: str = sandbox.sandbox_id

    async def run(
        self,
        command: str,
        *,
        cwd: str | None = None,
        envs: Mapping[str, str] | None = None,
        timeout_ms: int | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> CommandOutcome:
        kwargs: Dict[str, Any] = {}
        if cwd:
            kwargs["cwd"] = cwd
        if envs:
            kwargs["envs"] = dict(envs)
        if timeout_ms is not None:
            kwargs["timeout"] = normalize_timeout_seconds(timeout_ms)
        if on_stdout is not None:
            kwargs["on_stdout"] = on_stdout
        if on_stderr is not None:
            kwargs["on_stderr"] = on_stderr

        async def _run() -> CommandOutcome:
            try:
                result = await self._sandbox.commands.run(command, **kwargs)
            except CommandExitException as exc:
                return CommandOutcome(stdout=exc.stdout or "", stderr=exc.stderr or "", exit_code=exc.exit_code)
            return CommandOutcome(stdout=result.stdout or "", stderr=result.stderr or "", exit_code=result.exit_code)

        return await _wrap(f"Failed to run command in sandbox '{self.sandbox_id}'", _run)

    async def write_file(self, path: str, data: str | bytes) -> None:
        await _wrap(
            f"Failed to write file in sandbox '{self.sandbox_id}' at '{path}'",
            lambda: self._sandbox.files.write(path, data),
        )

    def get_host(self, port: int) -> str:
        try:
            return self._sandbox.get_host(port)
        except Exception as exc:
            message = f"Failed to resolve host for sandbox '{self.sandbox_id}' on port {port}"
            raise SandboxError(format_sandbox_error(message, exc), exc) from exc

    async def set_timeout(self, timeout_ms: int) -> None:
        seconds = normalize_timeout_seconds(timeout_ms)
        await _wrap(
            f"Failed to set timeout for sandbox '{self.sandbox_id}'",
            lambda: self._sandbox.set_timeout(seconds),
        )

    async def kill(self) -> None:
        await _wrap(f"Failed to kill sandbox '{self.sandbox_id}'", self._sandbox.kill)


async def create_sandbox(
    template: str,
    *,
    timeout_ms: int,
    metadata: Mapping[str, str] | None = None,
    envs: Mapping[str, str] | None = None,
) -> E2BSandboxHandle:
    seconds = normalize_timeout_seconds(timeout_ms)
    sandbox = await _wrap(
        f"Failed to create sandbox from template '{template}'",
        lambda: AsyncSandbox.create(
            template=template,
            timeout=seconds,
            metadata=dict(metadata or {}),
            envs=dict(envs or {}),
        ),
    )
    LOGGER.info("Created sandbox %s from template %s", sandbox.sandbox_id, template)
    return E2BSandboxHandle(sandbox)


async def connect_sandbox(sandbox_id: str) -> E2BSandboxHandle:
    sandbox = await _wrap(
        f"Failed to connect to sandbox '{sandbox_id}'",
        lambda: AsyncSandbox.connect(sandbox_id),
    )
    return E2BSandboxHandle(sandbox)
