from __future__ import annotations

import hashlib
import logging
import shlex
from dataclasses import dataclass
from typing import Iterator

from devbox_lib.sandbox import SandboxHandle

from .session import SSH_SHORT_TIMEOUT_MS, BridgeError

LOGGER = logging.getLogger("devbox.bridge.ports")

PORT_RANGE_START = 20_000
PORT_RANGE_END = 60_000
PORT_STRIDE = 7_919
DEFAULT_MAX_ATTEMPTS = 96


@dataclass(frozen=True)
class BridgePorts:
    sshd_port: int
    relay_port: int


def stable_seed(session_id: str) -> int:
    return int(hashlib.sha256(session_id.encode("utf-8")).hexdigest()[:12], 16)


def candidate_ports(session_id: str, max_attempts: int) -> Iterator[BridgePorts]:
    """Yield distinct ``(p, p+1)`` pairs walked from the session seed by a fixed odd stride."""

    slots = (PORT_RANGE_END - PORT_RANGE_START) // 2
    seed = stable_seed(session_id)
    for attempt in range(min(max_attempts, slots)):
        slot = (seed + attempt * PORT_STRIDE) % slots
        base = PORT_RANGE_START + slot * 2
        yield BridgePorts(sshd_port=base, relay_port=base + 1)


def build_probe_command(ports: BridgePorts) -> str:
    script = (
        f"for port in {ports.sshd_port} {ports.relay_port}; do "
        'if (exec 3<>"/dev/tcp/127.0.0.1/$port") >/dev/null 2>&1; then exit 1; fi; '
        f'done; printf "%s %s" {ports.sshd_port} {ports.relay_port}'
    )
    return f"bash -c {shlex.quote(script)}"


async def _is_free(handle: SandboxHandle, ports: BridgePorts) -> bool:
    try:
        outcome = await handle.run(build_probe_command(ports), timeout_ms=SSH_SHORT_TIMEOUT_MS)
    except Exception as exc:
        LOGGER.debug("Port probe %s/%s rejected: %s", ports.sshd_port, ports.relay_port, exc)
        return False
    return outcome.exit_code == 0


async def allocate_bridge_ports(
    handle: SandboxHandle,
    session_id: str,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> BridgePorts:
    """Find a free sshd/relay port pair inside the sandbox or fail after ``max_attempts`` probes."""

    probes = 0
    for ports in candidate_ports(session_id, max_attempts):
        probes += 1
        if await _is_free(handle, ports):
            LOGGER.debug("Allocated bridge ports sshd=%d relay=%d", ports.sshd_port, ports.relay_port)
            return ports
    raise BridgeError(
        f"Unable to allocate SSH bridge ports after {probes} attempts "
        f"in sandbox '{handle.sandbox_id}' (range {PORT_RANGE_START}-{PORT_RANGE_END - 1})."
    )
