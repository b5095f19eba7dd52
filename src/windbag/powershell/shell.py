"""Single-use PowerShell sessions and the interactive command channel."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TypeVar

from windbag.powershell.framing import DEFAULT_CHUNK_SIZE, SentinelReader, new_delimiter, wrap_command
from windbag.powershell.options import CreateOptions, render
from windbag.shared.concurrency import run_all
from windbag.shared.enums import SessionState
from windbag.shared.exceptions import (
    CommandTimeoutError,
    NetworkError,
    RemoteCommandError,
    SessionStateError,
)
from windbag.transport.interfaces import Connection, ShellProcess

logger = logging.getLogger(__name__)

_CLOSE_TIMEOUT = 10.0

# Exit statuses that count as success; paramiko reports -1 when the host sent none.
_CLEAN_EXIT = (0, -1)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Output captured for exactly one submitted command."""

    stdout: str
    stderr: str

    @property
    def failed(self) -> bool:
        return bool(self.stderr)

    def check(self, context: str) -> CommandResult:
        """Raise ``RemoteCommandError`` if the command wrote to stderr.

        Args:
            context: What the command was doing, used in the error message.

        Returns:
            ``self`` so calls can be chained.
        """
        if self.stderr:
            raise RemoteCommandError(
                f"error {context}: {self.stderr.strip()}",
                command=context,
                stdout=self.stdout,
                stderr=self.stderr,
            )
        return self


class PowerShell:
    """One spawned PowerShell process, usable for exactly one interaction.

    The session moves ``IDLE -> INTERACTING -> CLOSED``; asking for a second
    interaction raises ``SessionStateError`` with a message that tells a
    closed session apart from one that is still busy.
    """

    def __init__(
        self,
        process: ShellProcess,
        options: CreateOptions | None = None,
        *,
        label: str = "",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._process = process
        self._options = options or CreateOptions()
        self._label = label
        self._chunk_size = chunk_size
        self.state = SessionState.IDLE

    def _claim(self) -> None:
        if self.state is SessionState.CLOSED:
            raise SessionStateError("powershell session is closed")
        if self.state is SessionState.INTERACTING:
            raise SessionStateError("powershell session is already interacting")
        self.state = SessionState.INTERACTING

    async def execute_command(self, command: str) -> CommandResult:
        """Run ``command`` in a one-shot ``-Command`` invocation.

        Raises:
            SessionStateError: If the session was already used.
            RemoteCommandError: If PowerShell reports a non-zero exit status.
        """
        self._claim()
        logger.info("[%s] %s", self._label, command)
        return await self._run_once(render(self._options.command_args(command)), command)

    async def execute_script(self, path: str, *args: str) -> CommandResult:
        """Run a script already present on the host via ``-File``.

        Raises:
            SessionStateError: If the session was already used.
            RemoteCommandError: If PowerShell reports a non-zero exit status.
        """
        self._claim()
        logger.info("[%s] %s %s", self._label, path, " ".join(args))
        return await self._run_once(render(self._options.script_args(path, *args)), path)

    async def _run_once(self, command_line: str, description: str) -> CommandResult:
        stdout = SentinelReader(self._process.read_stdout, name="stdout", chunk_size=self._chunk_size)
        stderr = SentinelReader(
            self._process.read_stderr, name="stderr", chunk_size=self._chunk_size, log_level=logging.WARNING
        )
        try:
            await self._process.start(command_line)
            await self._process.close_stdin()
            out, err = await run_all([stdout.read_to_eof(label=self._label), stderr.read_to_eof(label=self._label)])
            status = await self._process.wait()
        finally:
            self.state = SessionState.CLOSED
            await self._process.close()

        if status not in _CLEAN_EXIT:
            raise RemoteCommandError(
                f"powershell exited with status {status}: {err.strip()}",
                command=description,
                stdout=out,
                stderr=err,
            )
        return CommandResult(stdout=out, stderr=err)

    async def commands(self) -> Commands:
        """Start the persistent shell and return its command channel.

        Raises:
            SessionStateError: If the session was already used.
        """
        self._claim()
        try:
            await self._process.start(render(self._options.interactive_args()))
        except BaseException:
            self.state = SessionState.CLOSED
            await self._process.close()
            raise
        return Commands(self, self._process, label=self._label, chunk_size=self._chunk_size)

    @asynccontextmanager
    async def interactive(self) -> AsyncIterator[Commands]:
        """``async with`` form of ``commands()`` that always closes the shell."""
        channel = await self.commands()
        try:
            yield channel
        finally:
            await channel.close()

    async def close(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        await self._process.close()


class Commands:
    """Request/response channel over a persistent PowerShell process.

    Commands are strictly one at a time: a second ``execute`` while one is
    in flight fails instead of interleaving on the shared streams.
    """

    def __init__(self, session: PowerShell, process: ShellProcess, *, label: str, chunk_size: int) -> None:
        self._session = session
        self._process = process
        self._label = label
        self._stdout = SentinelReader(process.read_stdout, name="stdout", chunk_size=chunk_size)
        self._stderr = SentinelReader(
            process.read_stderr, name="stderr", chunk_size=chunk_size, log_level=logging.WARNING
        )
        self._busy = False
        self._broken = False
        self._closed = False

    async def execute(
        self, command: str, *, timeout: float | None = None, log_as: str | None = None
    ) -> CommandResult:
        """Submit one command and collect its stdout/stderr pair.

        Args:
            command: PowerShell statement(s); newlines are folded into one line.
            timeout: Optional per-command bound in seconds.
            log_as: Text logged instead of ``command``, for commands carrying secrets.

        Returns:
            The command's output with the delimiter stripped from both streams.

        Raises:
            SessionStateError: If the channel is closed, broken, or busy.
            TransportClosed: If a stream ended before the command finished.
            CommandTimeoutError: If ``timeout`` elapsed; the channel is unusable afterwards.
        """
        if self._closed or self._broken:
            raise SessionStateError("powershell interaction is closed")
        if self._busy:
            raise SessionStateError("powershell interaction is already executing a command")

        self._busy = True
        delimiter = new_delimiter()
        try:
            logger.info("[%s] %s", self._label, command if log_as is None else log_as)
            await self._process.write(wrap_command(command, delimiter).encode())
            drain = run_all(
                [
                    self._stdout.read_until(delimiter, label=self._label),
                    self._stderr.read_until(delimiter, label=self._label),
                ]
            )
            if timeout is None:
                stdout, stderr = await drain
            else:
                stdout, stderr = await asyncio.wait_for(drain, timeout=timeout)
        except TimeoutError as exc:
            self._broken = True
            raise CommandTimeoutError(f"command did not complete within {timeout:g}s") from exc
        except (NetworkError, asyncio.CancelledError):
            self._broken = True
            raise
        finally:
            self._busy = False

        return CommandResult(stdout=stdout, stderr=stderr)

    async def close(self) -> None:
        """Send ``exit``, close stdin and wait for the shell to go away.

        The shell's own exit status after an explicit ``exit`` is not an error.
        """
        if self._closed:
            return
        self._closed = True
        try:
            if not self._broken:
                try:
                    await self._process.write(b"exit\r\n")
                    await self._process.close_stdin()
                    status = await asyncio.wait_for(self._process.wait(), timeout=_CLOSE_TIMEOUT)
                    if status not in _CLEAN_EXIT:
                        logger.debug("[%s] powershell exited with status %d", self._label, status)
                except (NetworkError, TimeoutError) as exc:
                    logger.debug("[%s] powershell did not exit cleanly: %s", self._label, exc)
        finally:
            await self._session.close()


async def run_interactive(
    connection: Connection,
    work: Callable[[Commands], Awaitable[T]],
    options: CreateOptions | None = None,
) -> T:
    """Spawn a fresh session on ``connection`` and hand its command channel to ``work``.

    The shell is closed on every exit path; the connection's keepalive ping
    runs for as long as ``work`` does.
    """

    async def interaction(session: PowerShell) -> T:
        async with session.interactive() as channel:
            return await work(channel)

    return await connection.interact(interaction, options)
