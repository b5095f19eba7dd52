"""Liveness probing for the duration of one shell interaction."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar, cast

from windbag.shared.concurrency import first_completed

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_INTERVAL = 5.0


async def _tick(ping: Callable[[], Awaitable[None]], interval: float, label: str) -> None:
    while True:
        await asyncio.sleep(interval)
        await ping()
        logger.debug("[%s] keepalive", label)


async def run_with_keepalive(
    interaction: Awaitable[T],
    ping: Callable[[], Awaitable[None]],
    *,
    interval: float = DEFAULT_INTERVAL,
    label: str = "",
) -> T:
    """Await ``interaction`` while ``ping`` runs every ``interval`` seconds.

    The interaction finishing cancels the ping loop. A failing ping aborts
    the interaction and its error propagates to the caller.

    Args:
        interaction: The work to protect.
        ping: Coroutine function raising if the transport is dead.
        interval: Seconds between pings.
        label: Log prefix, usually the worker address.

    Returns:
        The interaction's result.
    """
    result = await first_completed(interaction, _tick(ping, interval, label))
    return cast(T, result)
