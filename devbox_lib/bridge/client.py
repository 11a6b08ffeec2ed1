from __future__ import annotations

import asyncio
import logging
import shlex
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, List

from .session import BridgeError, BridgeSession

LOGGER = logging.getLogger("devbox.bridge.client")

SSH_BINARY = "ssh"
PROXY_SCRIPT = Path(__file__).resolve().parents[1] / "ws_proxy.py"

SpawnFn = Callable[..., Awaitable[Any]]


def build_proxy_command(ws_url: str) -> str:
    """Command ssh runs as its transport: the WebSocket-to-stdio proxy for ``ws_url``.

    The proxy is addressed by file path so it starts from any working directory
    without ``devbox_lib`` being installed; ``-P`` keeps the package directory
    off ``sys.path``.
    """

    return f"{shlex.quote(sys.executable)} -P {shlex.quote(str(PROXY_SCRIPT))} {shlex.quote(ws_url)}"


def build_ssh_client_args(session: BridgeSession, remote_command: str, *, proxy_command: str | None = None) -> List[str]:
    proxy = proxy_command or build_proxy_command(session.ws_url)
    return [
        "-tt",
        "-o",
        "BatchMode=yes",
        "-o",
        "PasswordAuthentication=no",
        "-o",
        "KbdInteractiveAuthentication=no",
        "-o",
        "ChallengeResponseAuthentication=no",
        "-o",
        "PubkeyAuthentication=yes",
        "-o",
        "IdentitiesOnly=yes",
        "-o",
        "StrictHostKeyChecking=yes",
        "-o",
        f'UserKnownHostsFile="{session.known_hosts_path}"',
        "-o",
        "LogLevel=ERROR",
        "-o",
        f"ProxyCommand={proxy}",
        "-i",
        str(session.private_key_path),
        session.ssh_destination,
        remote_command,
    ]


def _describe_signal(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


async def run_interactive_session(
    session: BridgeSession,
    remote_command: str,
    *,
    spawn: SpawnFn | None = None,
) -> None:
    """Run ssh attached to the caller's terminal and block until it exits."""

    args = build_ssh_client_args(session, remote_command)
    spawner = spawn or asyncio.create_subprocess_exec
    try:
        proc = await spawner(SSH_BINARY, *args)
    except OSError as exc:
        raise BridgeError(f"Failed to start local ssh client for interactive SSH attach: {exc}") from exc

    returncode = await proc.wait()
    if returncode is not None and returncode < 0:
        raise BridgeError(f"Interactive SSH session terminated by signal '{_describe_signal(-returncode)}'.")
    if returncode != 0:
        raise BridgeError(f"Interactive SSH session exited with status {returncode}.")
    LOGGER.debug("Interactive SSH session for %s exited cleanly", session.session_id)
