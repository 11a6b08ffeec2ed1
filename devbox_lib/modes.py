"""Attach an interactive command to the sandbox, or smoke-test it when no TTY is present."""

from __future__ import annotations

import logging
import shlex
import sys
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping

from devbox_lib.bridge import (
    BridgeSession,
    build_interactive_remote_command,
    cleanup_bridge_session,
    prepare_bridge_session,
    run_interactive_session,
    stage_startup_env,
)
from devbox_lib.sandbox import SandboxHandle

LOGGER = logging.getLogger("devbox.modes")

SHELL_COMMAND = "bash"
SHELL_SMOKE_COMMAND = "bash -lc 'echo shell-ready'"
SMOKE_TIMEOUT_MS = 15_000


@dataclass
class ModeDeps:
    is_interactive: Callable[[], bool] = lambda: sys.stdin.isatty() and sys.stdout.isatty()
    prepare_session: Callable[[SandboxHandle], Awaitable[BridgeSession]] = prepare_bridge_session
    run_session: Callable[[BridgeSession, str], Awaitable[None]] = run_interactive_session
    cleanup_session: Callable[[SandboxHandle, BridgeSession], Awaitable[None]] = cleanup_bridge_session


@dataclass
class ModeLaunchResult:
    mode: str
    command: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


def _first_line(stdout: str, stderr: str) -> str:
    text = stdout.strip() or stderr.strip()
    if not text:
        return "no output"
    return text.splitlines()[0].strip()


async def run_smoke_check(
    handle: SandboxHandle,
    command: str,
    *,
    working_directory: str | None = None,
    startup_env: Mapping[str, str] | None = None,
) -> ModeLaunchResult:
    if command == SHELL_COMMAND:
        smoke = SHELL_SMOKE_COMMAND
    else:
        program = shlex.split(command)[0]
        smoke = f"bash -lc {shlex.quote('command -v ' + shlex.quote(program))}"
    outcome = await handle.run(
        smoke,
        cwd=working_directory or None,
        envs=dict(startup_env or {}) or None,
        timeout_ms=SMOKE_TIMEOUT_MS,
    )
    output = _first_line(outcome.stdout, outcome.stderr)
    if command == SHELL_COMMAND:
        status = "ready" if output == "shell-ready" else "unexpected-output"
    else:
        status = "ready" if outcome.exit_code == 0 else "missing"
    return ModeLaunchResult(
        mode="smoke",
        command=smoke,
        message=f"Smoke check in sandbox {handle.sandbox_id}: {output}",
        details={"status": status, "output": output, "exit_code": outcome.exit_code},
    )


async def launch_interactive(
    handle: SandboxHandle,
    command: str = SHELL_COMMAND,
    *,
    working_directory: str | None = None,
    startup_env: Mapping[str, str] | None = None,
    deps: ModeDeps | None = None,
) -> ModeLaunchResult:
    """Run ``command`` over the SSH bridge; the bridge is torn down however the session ends."""

    deps = deps or ModeDeps()
    if not deps.is_interactive():
        return await run_smoke_check(handle, command, working_directory=working_directory, startup_env=startup_env)

    LOGGER.info("Preparing secure SSH bridge (first run may install packages).")
    session = await deps.prepare_session(handle)
    try:
        script_path = await stage_startup_env(handle, session, startup_env or {})
        remote_command = build_interactive_remote_command(
            command,
            cwd=working_directory,
            env_script_path=script_path,
        )
        LOGGER.info("Opening interactive SSH session.")
        await deps.run_session(session, remote_command)
    finally:
        LOGGER.info("Cleaning up interactive SSH session.")
        await deps.cleanup_session(handle, session)

    return ModeLaunchResult(
        mode="interactive",
        command=command,
        message=f"Interactive session ended for sandbox {handle.sandbox_id}",
        details={"session": "interactive", "status": "completed"},
    )
