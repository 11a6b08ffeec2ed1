from __future__ import annotations

import asyncio
import codecs
import os
from typing import Any, Callable, Dict, List, Mapping

from devbox_lib.sandbox import SandboxHandle

from .runner import ExecutionOptions, ExecutionResult


READ_CHUNK_SIZE = 64 * 1024


class SetupTimeoutError(RuntimeError):
    pass


class LineSplitter:
    """Turn arbitrary output chunks into complete lines for a callback."""

    def __init__(self, on_line: Callable[[str], Any] | None):
        self._on_line = on_line
        self._pending = ""
        self.chunks: List[str] = []

    def feed(self, chunk: str) -> None:
        self.chunks.append(chunk)
        if self._on_line is None:
            return
        self._pending += chunk
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            self._emit(line)

    def close(self) -> None:
        if self._pending:
            self._emit(self._pending)
            self._pending = ""

    def text(self) -> str:
        return "".join(self.chunks)

    def _emit(self, line: str) -> None:
        line = line.rstrip("\r")
        if line and self._on_line is not None:
            self._on_line(line)


class LocalCommandExecutor:
    """Runs setup commands through the local shell, streaming lines as they arrive."""

    def __init__(self, *, inherit_env: bool = True):
        self.inherit_env = inherit_env

    async def run(self, command: str, options: ExecutionOptions) -> ExecutionResult:
        env: Dict[str, str] = dict(os.environ) if self.inherit_env else {}
        env.update(options.env)
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=options.cwd,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout = LineSplitter(options.on_stdout_line)
        stderr = LineSplitter(options.on_stderr_line)

        async def pump(stream: asyncio.StreamReader | None, splitter: LineSplitter) -> None:
            if stream is None:
                return
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                splitter.feed(decoder.decode(chunk))
            tail = decoder.decode(b"", final=True)
            if tail:
                splitter.feed(tail)
            splitter.close()

        async def drain() -> int:
            await asyncio.gather(pump(proc.stdout, stdout), pump(proc.stderr, stderr))
            return await proc.wait()

        timeout = options.timeout_ms / 1000 if options.timeout_ms else None
        try:
            exit_code = await asyncio.wait_for(drain(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise SetupTimeoutError(f"Command '{command}' timed out after {options.timeout_ms}ms") from exc
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
        return ExecutionResult(exit_code=exit_code, stdout=stdout.text(), stderr=stderr.text())


class SandboxCommandExecutor:
    """Runs setup commands inside a sandbox; ``runtime_env`` sits under each step's env."""

    def __init__(self, handle: SandboxHandle, *, runtime_env: Mapping[str, str] | None = None):
        self.handle = handle
        self.runtime_env = dict(runtime_env or {})

    async def run(self, command: str, options: ExecutionOptions) -> ExecutionResult:
        stdout = LineSplitter(options.on_stdout_line)
        stderr = LineSplitter(options.on_stderr_line)
        outcome = await self.handle.run(
            command,
            cwd=options.cwd,
            envs={**self.runtime_env, **options.env},
            timeout_ms=options.timeout_ms,
            on_stdout=stdout.feed,
            on_stderr=stderr.feed,
        )
        # Handles that do not stream still report captured output once finished.
        if not stdout.chunks and outcome.stdout:
            stdout.feed(outcome.stdout)
        if not stderr.chunks and outcome.stderr:
            stderr.feed(outcome.stderr)
        stdout.close()
        stderr.close()
        return ExecutionResult(exit_code=outcome.exit_code, stdout=outcome.stdout, stderr=outcome.stderr)
