"""Explicit per-address connection cache."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from windbag.shared.models import WorkerEndpoint
from windbag.transport.interfaces import Connection

logger = logging.getLogger(__name__)

DialFn = Callable[[WorkerEndpoint], Awaitable[Connection]]


class ConnectionRegistry:
    """Holds at most one live connection per worker address.

    The registry is owned by whoever runs the build and is passed through
    calls; ``aclose()`` tears every cached connection down.
    """

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __contains__(self, address: object) -> bool:
        return address in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def get(self, address: str) -> Connection | None:
        return self._connections.get(address)

    async def get_or_dial(self, endpoint: WorkerEndpoint, dial: DialFn) -> Connection:
        """Return the cached connection for ``endpoint`` or dial a new one.

        Concurrent callers for the same address share a single dial.
        """
        lock = self._locks.setdefault(endpoint.address, asyncio.Lock())
        async with lock:
            existing = self._connections.get(endpoint.address)
            if existing is not None:
                return existing
            conn = await dial(endpoint)
            self._connections[endpoint.address] = conn
            return conn

    def put(self, conn: Connection) -> None:
        """Register ``conn``, replacing (but not closing) any previous entry."""
        self._connections[conn.address] = conn

    async def discard(self, address: str) -> None:
        """Close and forget the connection for ``address`` if there is one."""
        conn = self._connections.pop(address, None)
        if conn is None:
            return
        try:
            await conn.close()
        except Exception as exc:
            logger.warning("failed to close connection to %s: %s", address, exc)

    async def aclose(self) -> None:
        """Close every cached connection."""
        for address in list(self._connections):
            await self.discard(address)
