from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Tuple

from devbox_lib.sandbox import CommandOutcome

Responder = Callable[[str, Dict[str, Any]], Any]


@dataclass
class RecordedCall:
    command: str
    kwargs: Dict[str, Any]


@dataclass
class FakeHandle:
    """In-memory :class:`SandboxHandle` answering commands from ordered rules.

    Each rule is ``(substring, response)``; the first rule whose substring
    occurs in the command wins. A response is a ``CommandOutcome``, an
    exception instance (raised), or a callable receiving ``(command, kwargs)``.
    Unmatched commands succeed with empty output.
    """

    rules: List[Tuple[str, Any]] = field(default_factory=list)
    sandbox_id: str = "sbx-test"
    host_suffix: str = "sbx-test.e2b.app"
    calls: List[RecordedCall] = field(default_factory=list)
    killed: bool = False

    async def run(self, command: str, **kwargs: Any) -> CommandOutcome:
        self.calls.append(RecordedCall(command, kwargs))
        for needle, response in self.rules:
            if needle in command:
                if callable(response) and not isinstance(response, BaseException):
                    response = response(command, kwargs)
                if isinstance(response, BaseException):
                    raise response
                return response
        return ok()

    async def write_file(self, path: str, data: str | bytes) -> None:
        self.calls.append(RecordedCall(f"<write {path}>", {"data": data}))

    def get_host(self, port: int) -> str:
        return f"{port}-{self.host_suffix}"

    async def set_timeout(self, timeout_ms: int) -> None:
        self.calls.append(RecordedCall("<set_timeout>", {"timeout_ms": timeout_ms}))

    async def kill(self) -> None:
        self.killed = True

    def commands(self) -> List[str]:
        return [call.command for call in self.calls]

    def find(self, needle: str) -> RecordedCall:
        for call in self.calls:
            if needle in call.command:
                return call
        raise AssertionError(f"no command containing {needle!r} in {self.commands()}")


def ok(stdout: str = "", stderr: str = "") -> CommandOutcome:
    return CommandOutcome(stdout=stdout, stderr=stderr, exit_code=0)


def failed(exit_code: int = 1, stderr: str = "", stdout: str = "") -> CommandOutcome:
    return CommandOutcome(stdout=stdout, stderr=stderr, exit_code=exit_code)


async def no_sleep(_seconds: float) -> None:
    return None


def env_of(call: RecordedCall) -> Mapping[str, str]:
    return call.kwargs.get("envs") or {}
