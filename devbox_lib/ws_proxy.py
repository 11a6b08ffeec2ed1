"""Relay raw stdio bytes to and from a WebSocket (ssh ``ProxyCommand`` helper).

Usage: ``python -P path/to/ws_proxy.py wss://host/`` (or ``python -m devbox_lib.ws_proxy`` when installed)
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, Callable, List

from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

CHUNK_SIZE = 64 * 1024

WriteFn = Callable[[bytes], Any]


async def pump_stdin(ws: Any, reader: asyncio.StreamReader) -> None:
    while True:
        chunk = await reader.read(CHUNK_SIZE)
        if not chunk:
            await ws.close()
            return
        await ws.send(chunk)


async def pump_socket(ws: Any, write: WriteFn) -> None:
    async for message in ws:
        write(message if isinstance(message, bytes) else message.encode("utf-8"))


async def relay(ws: Any, reader: asyncio.StreamReader, write: WriteFn) -> None:
    """Pump both directions until either side finishes, then stop the other."""

    tasks = [
        asyncio.create_task(pump_stdin(ws, reader)),
        asyncio.create_task(pump_socket(ws, write)),
    ]
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        task.result()


def _write_stdout(data: bytes) -> None:
    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()


async def _open_stdin() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def run_proxy(url: str) -> None:
    reader = await _open_stdin()
    async with connect(url, compression=None, max_size=None) as ws:
        await relay(ws, reader, _write_stdout)


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Pipe stdin/stdout through a WebSocket connection.")
    parser.add_argument("url", help="ws:// or wss:// URL of the sandbox relay")
    return parser.parse_args(argv)


def main(argv: List[str] | None = None) -> int:
    args = parse_args(argv)
    if not args.url.startswith(("ws://", "wss://")):
        print(f"ws-proxy: expected a ws:// or wss:// URL, got {args.url!r}", file=sys.stderr)
        return 2
    try:
        asyncio.run(run_proxy(args.url))
    except (OSError, WebSocketException) as exc:
        print(f"ws-proxy: connection to {args.url} failed: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
