"""Delimiter framing for commands multiplexed over one interactive shell.

Every submitted command is wrapped so that, whatever happens inside it, a
per-command random token is written to both stdout and stderr once it is
done. Each output stream is then drained by its own ``SentinelReader`` until
the token shows up.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Awaitable, Callable

from windbag.shared.enums import ReaderState
from windbag.shared.exceptions import TransportClosed

logger = logging.getLogger(__name__)

ReadFn = Callable[[int], Awaitable[bytes]]

DEFAULT_CHUNK_SIZE = 32768


def new_delimiter() -> str:
    """Return a fresh ``#<16 hex chars>#`` token."""
    return f"#{secrets.token_hex(8)}#"


def collapse_lines(command: str) -> str:
    """Fold a multi-line command into one line; the shell reads whole lines only."""
    return command.replace("\r\n", " ").replace("\n", " ").replace("\r", " ")


def wrap_command(command: str, delimiter: str) -> str:
    """Wrap ``command`` so it always ends by writing ``delimiter`` to both streams."""
    return (
        "$ErrorActionPreference='Stop'; $ProgressPreference='SilentlyContinue'; "
        f"Try {{{collapse_lines(command)}}} "
        "Catch {[System.Console]::Error.Write($_.Exception.Message)}; "
        f'[System.Console]::Out.Write("{delimiter}"); '
        f'[System.Console]::Error.Write("{delimiter}");\r\n'
    )


class SentinelReader:
    """Accumulate one output stream until a sentinel token is observed.

    The reader is either ``ACCUMULATING`` (a command is in flight and the
    sentinel has not been seen) or ``MATCHED``. Only the bytes that could
    complete a sentinel are rescanned after each chunk, so large outputs are
    processed in linear time.
    """

    def __init__(
        self,
        read: ReadFn,
        *,
        name: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        log_level: int = logging.DEBUG,
    ) -> None:
        self._read = read
        self.name = name
        self._chunk_size = chunk_size
        self._log_level = log_level
        self.state = ReaderState.MATCHED

    async def read_until(self, sentinel: str, *, label: str = "") -> str:
        """Drain the stream until ``sentinel`` and return what preceded it.

        Args:
            sentinel: Delimiter token terminating this command's output.
            label: Prefix used when logging received chunks.

        Returns:
            Decoded output with the sentinel stripped.

        Raises:
            TransportClosed: If the stream ends before the sentinel arrives.
        """
        token = sentinel.encode()
        buf = bytearray()
        scan_from = 0
        self.state = ReaderState.ACCUMULATING

        while True:
            chunk = await self._read(self._chunk_size)
            if not chunk:
                raise TransportClosed(f"{self.name} closed before command completed")
            buf += chunk

            idx = buf.find(token, scan_from)
            if idx < 0:
                self._log_chunk(label, chunk)
            else:
                start = len(buf) - len(chunk)
                if idx > start:
                    self._log_chunk(label, bytes(buf[start:idx]))
                trailing = len(buf) - idx - len(token)
                if trailing:
                    logger.debug("%s: discarding %d bytes after delimiter", self.name, trailing)
                self.state = ReaderState.MATCHED
                return buf[:idx].decode("utf-8", errors="replace")
            scan_from = max(0, len(buf) - len(token) + 1)

    async def read_to_eof(self, *, label: str = "") -> str:
        """Drain the stream until end-of-stream, for one-shot invocations."""
        buf = bytearray()
        while True:
            chunk = await self._read(self._chunk_size)
            if not chunk:
                return buf.decode("utf-8", errors="replace")
            buf += chunk
            self._log_chunk(label, chunk)

    def _log_chunk(self, label: str, chunk: bytes) -> None:
        if logger.isEnabledFor(self._log_level):
            logger.log(self._log_level, "[%s] %s: %s", label, self.name, chunk.decode("utf-8", errors="replace"))
