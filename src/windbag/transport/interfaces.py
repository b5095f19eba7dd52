"""Interfaces for the transport layer."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, BinaryIO, Protocol, TypeVar, runtime_checkable

if TYPE_CHECKING:
    from windbag.powershell.options import CreateOptions
    from windbag.powershell.shell import PowerShell

T = TypeVar("T")


@runtime_checkable
class ShellProcess(Protocol):
    """One remote process with three byte streams."""

    async def start(self, command: str) -> None:
        """Launch ``command`` on the remote host.

        Args:
            command: Full command line, including executable and flags.
        """
        ...

    async def write(self, data: bytes) -> None:
        """Write raw bytes to the process standard input."""
        ...

    async def read_stdout(self, size: int) -> bytes:
        """Read up to ``size`` bytes of stdout; ``b""`` means end-of-stream."""
        ...

    async def read_stderr(self, size: int) -> bytes:
        """Read up to ``size`` bytes of stderr; ``b""`` means end-of-stream."""
        ...

    async def close_stdin(self) -> None:
        """Signal end-of-input to the process."""
        ...

    async def wait(self) -> int:
        """Wait for the process to exit.

        Returns:
            The remote exit status (``-1`` if the host did not report one).
        """
        ...

    async def close(self) -> None:
        """Release the underlying channel."""
        ...


@runtime_checkable
class Connection(Protocol):
    """An authenticated transport to one worker."""

    address: str

    async def spawn_shell(self, options: CreateOptions | None = None) -> PowerShell:
        """Start a new single-use PowerShell session."""
        ...

    async def interact(
        self,
        interaction: Callable[[PowerShell], Awaitable[T]],
        options: CreateOptions | None = None,
    ) -> T:
        """Run ``interaction`` against a fresh session while a keepalive ping runs.

        Args:
            interaction: Coroutine function receiving the spawned session.
            options: PowerShell creation options.

        Returns:
            Whatever ``interaction`` returned.
        """
        ...

    async def copy(self, source: BinaryIO, destination: str) -> int:
        """Stream ``source`` into ``destination`` on the remote host.

        Returns:
            Number of bytes written.
        """
        ...

    async def raw_dial(self, network: str, address: str) -> Any:
        """Open a tunnelled byte stream to ``address`` through the remote host."""
        ...

    async def close(self) -> None:
        """Close the transport; safe to call more than once."""
        ...
