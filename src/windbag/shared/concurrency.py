"""Structured race and join helpers built on asyncio tasks."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Iterable
from typing import Any, TypeVar

T = TypeVar("T")


async def first_completed(primary: Awaitable[T], secondary: Awaitable[Any]) -> T | None:
    """Race two awaitables; whichever finishes first wins and the other is cancelled.

    Args:
        primary: The awaitable whose result is returned when it wins.
        secondary: A companion task (e.g. a watchdog) that only ends on failure
            or on its own terms.

    Returns:
        The result of ``primary`` if it finished first, otherwise ``None``.

    Raises:
        Exception: Whatever the winning awaitable raised.
    """
    first = asyncio.ensure_future(primary)
    second = asyncio.ensure_future(secondary)
    try:
        done, _ = await asyncio.wait({first, second}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (first, second):
            if not task.done():
                task.cancel()
        await asyncio.gather(first, second, return_exceptions=True)

    if first in done:
        return first.result()
    second.result()
    return None


async def run_all(coros: Iterable[Awaitable[T]]) -> list[T]:
    """Run awaitables concurrently and fail fast on the first error.

    Every still-pending awaitable is cancelled and awaited before the first
    error is re-raised, so no task outlives the call.

    Returns:
        Results in submission order.
    """
    tasks = [asyncio.ensure_future(c) for c in coros]
    if not tasks:
        return []
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    if pending:
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    for task in tasks:
        if task in done and not task.cancelled() and task.exception() is not None:
            raise task.exception()  # type: ignore[misc]
    return [task.result() for task in tasks]
