"""Bounded retry loop shared by the dial, login, push and manifest phases."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from windbag.shared.exceptions import CommandTimeoutError, NetworkError, RemoteCommandError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BACKOFF: tuple[float, ...] = (1, 2, 5, 10)
RETRYABLE: tuple[type[BaseException], ...] = (NetworkError, RemoteCommandError)


def parse_backoff_seconds(raw: str) -> tuple[float, ...]:
    """Parse ``"1,2,5,10"`` into a tuple of positive delays.

    Invalid or non-positive tokens are ignored; an empty result falls back
    to ``DEFAULT_BACKOFF``.
    """
    values: list[float] = []
    for token in raw.split(","):
        stripped = token.strip()
        if not stripped:
            continue
        try:
            parsed = float(stripped)
        except ValueError:
            continue
        if parsed > 0:
            values.append(parsed)
    if not values:
        return DEFAULT_BACKOFF
    return tuple(values)


async def retry_until(
    operation: Callable[[], Awaitable[T]],
    *,
    timeout: float,
    description: str = "operation",
    backoff: Sequence[float] = DEFAULT_BACKOFF,
    retryable: tuple[type[BaseException], ...] = RETRYABLE,
) -> T:
    """Call ``operation`` until it succeeds or ``timeout`` seconds elapse.

    Each attempt is bounded by the time remaining in the window. Errors not
    listed in ``retryable`` propagate immediately, as does cancellation of the
    caller (sleeps between attempts are ordinary suspension points).

    Args:
        operation: Zero-argument factory producing a fresh awaitable per attempt.
        timeout: Overall retry window in seconds.
        description: Human readable label used in logs and timeout errors.
        backoff: Delays between attempts; the last value repeats.
        retryable: Exception types that trigger another attempt.

    Returns:
        The first successful result.

    Raises:
        Exception: The last retryable error once the window is exhausted,
            or ``CommandTimeoutError`` if the window closed mid-attempt
            before any error was seen.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    delays = tuple(backoff) or DEFAULT_BACKOFF
    last_exc: BaseException | None = None
    attempt = 0

    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        try:
            return await asyncio.wait_for(operation(), timeout=remaining)
        except retryable as exc:
            last_exc = exc
            logger.warning("%s failed (attempt %d): %s", description, attempt + 1, exc)
        except TimeoutError as exc:
            raise CommandTimeoutError(f"{description} timed out after {timeout:g}s") from (last_exc or exc)

        delay = delays[min(attempt, len(delays) - 1)]
        attempt += 1
        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        await asyncio.sleep(min(delay, remaining))

    if last_exc is None:
        raise CommandTimeoutError(f"{description} timed out after {timeout:g}s")
    raise last_exc
