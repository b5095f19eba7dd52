"""Async adapter over one paramiko session channel."""

from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import Callable
from concurrent.futures import Executor, ThreadPoolExecutor
from functools import partial
from typing import Any, TypeVar

import paramiko

from windbag.shared.exceptions import NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# stdout, stderr and the exit status wait.
_READER_THREADS = 3


class ChannelProcess:
    """Implements the ``ShellProcess`` protocol on top of ``paramiko.Channel``.

    Blocking channel calls run in an executor, the same way the Docker SDK is
    driven from async code. Reads park a thread until the remote side writes,
    so each channel reads on its own threads and a hung command never starves
    the shared default executor. ``close`` runs inline: it is what wakes the
    parked readers.
    """

    def __init__(self, channel: paramiko.Channel) -> None:
        self._channel = channel
        self._readers = ThreadPoolExecutor(max_workers=_READER_THREADS, thread_name_prefix="windbag-channel")

    async def _call(self, fn: Callable[..., T], *args: Any, executor: Executor | None = None) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(executor, partial(fn, *args))
        except (paramiko.SSHException, socket.error, EOFError) as exc:
            raise NetworkError(f"ssh channel failure: {exc}") from exc

    async def start(self, command: str) -> None:
        await self._call(self._channel.exec_command, command)

    async def write(self, data: bytes) -> None:
        await self._call(self._channel.sendall, data)

    async def read_stdout(self, size: int) -> bytes:
        return await self._call(self._channel.recv, size, executor=self._readers)

    async def read_stderr(self, size: int) -> bytes:
        return await self._call(self._channel.recv_stderr, size, executor=self._readers)

    async def close_stdin(self) -> None:
        await self._call(self._channel.shutdown_write)

    async def wait(self) -> int:
        return await self._call(self._channel.recv_exit_status, executor=self._readers)

    async def close(self) -> None:
        try:
            if not self._channel.closed:
                self._channel.close()
        except (paramiko.SSHException, socket.error, EOFError) as exc:
            logger.debug("closing channel failed: %s", exc)
        finally:
            self._readers.shutdown(wait=False)
