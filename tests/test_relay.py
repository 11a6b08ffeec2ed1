from __future__ import annotations

import asyncio

import httpx

from devbox_lib.bridge.relay import build_relay_start_command, to_http_url, to_ws_url, wait_for_relay
from devbox_lib.bridge.session import RemoteArtifacts


def test_ws_url_conversion() -> None:
    assert to_ws_url("20001-sbx.e2b.app") == "wss://20001-sbx.e2b.app"
    assert to_ws_url("https://20001-sbx.e2b.app") == "wss://20001-sbx.e2b.app"
    assert to_ws_url("http://localhost:8080") == "ws://localhost:8080"
    assert to_ws_url("ws://already") == "ws://already"
    assert to_http_url("wss://20001-sbx.e2b.app") == "https://20001-sbx.e2b.app"


def test_relay_start_command_records_pid_and_log() -> None:
    artifacts = RemoteArtifacts.under("/home/user/.devbox-ssh/s", sshd_port=20010, relay_port=20011)

    command = build_relay_start_command(artifacts)

    assert command.startswith("nohup websockify 0.0.0.0:20011 127.0.0.1:20010 ")
    assert ">/home/user/.devbox-ssh/s/websockify.log 2>&1 &" in command
    assert command.endswith("echo $! > /home/user/.devbox-ssh/s/websockify.pid")


def test_wait_for_relay_polls_until_gateway_answers() -> None:
    statuses = iter([502, 503, 405])
    seen = []
    delays = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.scheme, request.url.host))
        return httpx.Response(next(statuses))

    async def sleep(seconds: float) -> None:
        delays.append(seconds)

    ready = asyncio.run(
        wait_for_relay(
            "wss://20011-sbx.e2b.app",
            interval=0.5,
            sleep=sleep,
            transport=httpx.MockTransport(handler),
        )
    )

    assert ready is True
    assert seen == [("https", "20011-sbx.e2b.app")] * 3
    assert delays == [0.5, 0.5]


def test_wait_for_relay_gives_up_after_attempts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async def sleep(_seconds: float) -> None:
        return None

    ready = asyncio.run(
        wait_for_relay("wss://x", attempts=3, sleep=sleep, transport=httpx.MockTransport(handler))
    )

    assert ready is False
