"""
Reconnect backoff policy.

Purpose:
- Centralize the reconnect delay rule for the gateway socket
- Keep GatewayClient free of arithmetic

This module contains NO timers, NO async, NO side effects.
"""
from __future__ import annotations

from dataclasses import dataclass

from constants import RECONNECT_BASE_DELAY_MS, RECONNECT_MAX_DELAY_MS


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff bounds.

    delay(n) = min(base_ms * 2**n, max_ms)
    """
    base_ms: int = RECONNECT_BASE_DELAY_MS
    max_ms: int = RECONNECT_MAX_DELAY_MS

    def __post_init__(self) -> None:
        if self.base_ms <= 0:
            raise ValueError("base_ms must be > 0")
        if self.max_ms < self.base_ms:
            raise ValueError("max_ms must be >= base_ms")


@dataclass(frozen=True)
class ReconnectAttempt:
    """
    Immutable count of consecutive failed connection attempts.

    - failures == 0: the next reconnect waits base_ms.
    - Each scheduled reconnect advances the counter by one.
    - A successful handshake replaces it with reset_attempt().
    """
    failures: int


def next_attempt(current: ReconnectAttempt) -> ReconnectAttempt:
    """Return the counter advanced by one failure."""
    return ReconnectAttempt(failures=current.failures + 1)


def reset_attempt() -> ReconnectAttempt:
    """Fresh counter after a successful connect."""
    return ReconnectAttempt(failures=0)


def get_reconnect_delay_ms(
    *,
    policy: BackoffPolicy,
    attempt: ReconnectAttempt,
) -> int:
    """
    Delay before the reconnect that follows `attempt.failures` failures.

    Doubles per consecutive failure and saturates at policy.max_ms.
    """
    delay = policy.base_ms
    for _ in range(attempt.failures):
        delay *= 2
        if delay >= policy.max_ms:
            return policy.max_ms
    return min(delay, policy.max_ms)
