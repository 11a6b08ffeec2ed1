from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, TypeVar

T = TypeVar("T")
SleepFn = Callable[[float], Awaitable[Any]]
RetryCallback = Callable[[BaseException, int, int], Any]


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 1
    delay_ms: int = 0


DEFAULT_RETRY_POLICY = RetryPolicy()


def resolve_retry_policy(policy: RetryPolicy | Mapping[str, Any] | None = None) -> RetryPolicy:
    """Fill unset fields from the default policy and clamp to sane bounds."""

    if policy is None:
        return DEFAULT_RETRY_POLICY
    if isinstance(policy, RetryPolicy):
        attempts, delay_ms = policy.attempts, policy.delay_ms
    else:
        attempts = policy.get("attempts", DEFAULT_RETRY_POLICY.attempts)
        delay_ms = policy.get("delay_ms", DEFAULT_RETRY_POLICY.delay_ms)
    return RetryPolicy(attempts=max(1, int(attempts)), delay_ms=max(0, int(delay_ms)))


async def with_retry(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: SleepFn | None = None,
    on_retry: RetryCallback | None = None,
) -> T:
    """Run ``operation(attempt)`` until it succeeds or ``policy.attempts`` is spent.

    ``on_retry`` fires before every wait; the last failure is re-raised without
    waiting.
    """

    sleeper = sleep or asyncio.sleep
    attempt = 1
    while True:
        try:
            return await operation(attempt)
        except Exception as exc:
            if attempt >= policy.attempts:
                raise
            if on_retry is not None:
                on_retry(exc, attempt, attempt + 1)
            await sleeper(policy.delay_ms / 1000)
            attempt += 1
