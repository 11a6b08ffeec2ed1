from __future__ import annotations

import asyncio
import logging
import re

from devbox_lib.sandbox import SandboxHandle
from devbox_lib.setup.retry import SleepFn

from .session import SSH_SETUP_TIMEOUT_MS, SSH_SHORT_TIMEOUT_MS, BridgeError

LOGGER = logging.getLogger("devbox.bridge.deps")

DEFAULT_INSTALL_ATTEMPTS = 24
DEFAULT_INSTALL_DELAY_SECONDS = 5.0

PRESENCE_CHECK_COMMAND = (
    "bash -lc '{ command -v sshd >/dev/null 2>&1 || [ -x /usr/sbin/sshd ]; } "
    "&& command -v websockify >/dev/null 2>&1 "
    "&& command -v ssh-keygen >/dev/null 2>&1 "
    "&& printf PRESENT || printf MISSING'"
)
INSTALL_COMMAND = (
    "bash -lc 'sudo DEBIAN_FRONTEND=noninteractive apt-get update "
    "&& sudo DEBIAN_FRONTEND=noninteractive apt-get install -y openssh-server websockify'"
)
LOCK_CONTENTION_PATTERN = re.compile(
    r"could not get lock|unable to acquire the dpkg frontend lock|unable to lock (the )?(administration )?directory"
    r"|is another process using it|dpkg frontend lock",
    re.IGNORECASE,
)


def is_lock_contention(text: str) -> bool:
    return bool(LOCK_CONTENTION_PATTERN.search(text or ""))


async def _dependencies_present(handle: SandboxHandle) -> bool:
    outcome = await handle.run(PRESENCE_CHECK_COMMAND, timeout_ms=SSH_SHORT_TIMEOUT_MS)
    return outcome.stdout.strip() == "PRESENT"


async def ensure_bridge_dependencies(
    handle: SandboxHandle,
    *,
    attempts: int = DEFAULT_INSTALL_ATTEMPTS,
    delay_seconds: float = DEFAULT_INSTALL_DELAY_SECONDS,
    sleep: SleepFn | None = None,
) -> None:
    """Install sshd, websockify and ssh-keygen in the sandbox when any is missing.

    Only package-manager lock contention is retried; every other install
    failure is raised straight away.
    """

    if await _dependencies_present(handle):
        LOGGER.debug("SSH bridge dependencies already present in sandbox %s", handle.sandbox_id)
        return

    sleeper = sleep or asyncio.sleep
    LOGGER.info("SSH bridge: installing openssh-server and websockify in sandbox %s.", handle.sandbox_id)
    for attempt in range(1, attempts + 1):
        try:
            outcome = await handle.run(INSTALL_COMMAND, timeout_ms=SSH_SETUP_TIMEOUT_MS)
        except Exception as exc:
            detail = str(exc)
            exit_code = None
        else:
            if outcome.exit_code == 0:
                break
            detail = (outcome.stderr or outcome.stdout or "").strip() or "unknown error"
            exit_code = outcome.exit_code
        if not is_lock_contention(detail):
            suffix = f" (exit code {exit_code})" if exit_code is not None else ""
            raise BridgeError(
                f"Failed to install SSH bridge dependencies in sandbox '{handle.sandbox_id}'{suffix}: {detail}"
            )
        if attempt >= attempts:
            raise BridgeError(
                f"Failed to install SSH bridge dependencies in sandbox '{handle.sandbox_id}': "
                f"package manager still locked after {attempts} attempts: {detail}"
            )
        LOGGER.info("Package manager busy (attempt %d/%d); retrying in %.0fs.", attempt, attempts, delay_seconds)
        await sleeper(delay_seconds)

    if not await _dependencies_present(handle):
        raise BridgeError(
            f"SSH bridge dependencies are still unavailable in sandbox '{handle.sandbox_id}' after installation."
        )
