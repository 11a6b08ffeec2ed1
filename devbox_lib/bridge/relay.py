from __future__ import annotations

import asyncio
import logging
import shlex

import httpx

from devbox_lib.setup.retry import SleepFn

from .session import RemoteArtifacts

LOGGER = logging.getLogger("devbox.bridge.relay")

GATEWAY_ERRORS = {502, 503, 504}
DEFAULT_READY_ATTEMPTS = 15
DEFAULT_READY_INTERVAL = 1.0


def to_ws_url(host: str) -> str:
    if host.startswith("https://"):
        return "wss://" + host[len("https://"):]
    if host.startswith("http://"):
        return "ws://" + host[len("http://"):]
    if host.startswith(("ws://", "wss://")):
        return host
    return f"wss://{host}"


def to_http_url(ws_url: str) -> str:
    if ws_url.startswith("wss://"):
        return "https://" + ws_url[len("wss://"):]
    if ws_url.startswith("ws://"):
        return "http://" + ws_url[len("ws://"):]
    return ws_url


def build_relay_start_command(artifacts: RemoteArtifacts) -> str:
    log_path = shlex.quote(artifacts.relay_log_path)
    pid_path = shlex.quote(artifacts.relay_pid_path)
    return (
        f"nohup websockify 0.0.0.0:{artifacts.relay_port} 127.0.0.1:{artifacts.sshd_port} "
        f">{log_path} 2>&1 & echo $! > {pid_path}"
    )


async def wait_for_relay(
    ws_url: str,
    *,
    attempts: int = DEFAULT_READY_ATTEMPTS,
    interval: float = DEFAULT_READY_INTERVAL,
    sleep: SleepFn | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """Poll the relay's public endpoint until the sandbox gateway stops answering with 5xx."""

    sleeper = sleep or asyncio.sleep
    url = to_http_url(ws_url)
    async with httpx.AsyncClient(timeout=httpx.Timeout(5.0), transport=transport) as client:
        for attempt in range(1, attempts + 1):
            try:
                response = await client.get(url)
            except httpx.HTTPError as exc:
                LOGGER.debug("Relay probe %d/%d failed: %s", attempt, attempts, exc)
            else:
                if response.status_code not in GATEWAY_ERRORS:
                    return True
                LOGGER.debug("Relay probe %d/%d returned %d", attempt, attempts, response.status_code)
            if attempt < attempts:
                await sleeper(interval)
    return False
