"""SSH connection to one worker, implemented with paramiko."""

from __future__ import annotations

import asyncio
import logging
import socket
import threading
from collections.abc import Awaitable, Callable
from functools import partial
from typing import Any, BinaryIO, TypeVar

import paramiko

from windbag.powershell.framing import DEFAULT_CHUNK_SIZE
from windbag.powershell.options import CreateOptions
from windbag.powershell.shell import PowerShell
from windbag.shared.enums import CopyPhase
from windbag.shared.exceptions import AuthenticationError, NetworkError, TransferError, TransportClosed
from windbag.shared.models import WorkerEndpoint
from windbag.transport.channel import ChannelProcess
from windbag.transport.credentials import connect_kwargs, dial_hint
from windbag.transport.keepalive import DEFAULT_INTERVAL, run_with_keepalive

logger = logging.getLogger(__name__)

T = TypeVar("T")

_COPY_CHUNK = 32768
_SSH_ERRORS = (paramiko.SSHException, socket.error, EOFError)


async def _run_abandonable(fn: Callable[[], T], release: Callable[[T], Any]) -> T:
    """Run blocking ``fn`` in the executor; if the caller is cancelled first, release its late result.

    The worker thread cannot be interrupted, so whichever side observes the
    other second (a finished result or a cancelled caller) releases the result.
    """
    lock = threading.Lock()
    abandoned = threading.Event()
    delivered: list[T] = []

    def run() -> T:
        result = fn()
        with lock:
            if abandoned.is_set():
                release(result)
            else:
                delivered.append(result)
        return result

    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, run)
    except asyncio.CancelledError:
        with lock:
            abandoned.set()
            for late in delivered:
                release(late)
        raise


class SSHConnection:
    """Authenticated SSH transport to one worker.

    Hands out single-use PowerShell sessions, ships files over SFTP and opens
    tunnelled TCP channels. Host keys are accepted without verification.
    """

    def __init__(
        self,
        address: str,
        client: paramiko.SSHClient,
        *,
        shell_options: CreateOptions | None = None,
        keepalive_interval: float = DEFAULT_INTERVAL,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.address = address
        self._client = client
        self._shell_options = shell_options or CreateOptions()
        self._keepalive_interval = keepalive_interval
        self._chunk_size = chunk_size
        self._closed = False

    @classmethod
    async def dial(
        cls,
        endpoint: WorkerEndpoint,
        *,
        connect_timeout: float = 10.0,
        shell_options: CreateOptions | None = None,
        keepalive_interval: float = DEFAULT_INTERVAL,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> SSHConnection:
        """Connect and authenticate to ``endpoint``.

        Cancelling the caller while the handshake is in flight closes the
        client as soon as the handshake returns.

        Args:
            endpoint: Worker address and credentials.
            connect_timeout: Seconds allowed for TCP connect, banner and auth.

        Returns:
            A live connection.

        Raises:
            AuthenticationError: If no password or key is configured, or the host rejects them.
            NetworkError: On any other dial failure, annotated with a hint.
        """
        kwargs = connect_kwargs(endpoint, timeout=connect_timeout)
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        def connect() -> paramiko.SSHClient:
            # The thread outlives a cancelled caller; a failed handshake closes its own client.
            try:
                client.connect(**kwargs)
            except BaseException:
                client.close()
                raise
            return client

        try:
            await _run_abandonable(connect, lambda c: c.close())
        except paramiko.AuthenticationException as exc:
            raise AuthenticationError(
                f"unable to dial SSH server with {endpoint.address}: {exc}", hint=dial_hint(str(exc))
            ) from exc
        except _SSH_ERRORS as exc:
            raise NetworkError(
                f"failed to dial SSH server with {endpoint.address}: {exc}", hint=dial_hint(str(exc))
            ) from exc

        logger.info("dialed worker %s via SSH", endpoint.address)
        return cls(
            endpoint.address,
            client,
            shell_options=shell_options,
            keepalive_interval=keepalive_interval,
            chunk_size=chunk_size,
        )

    def _transport(self) -> paramiko.Transport:
        transport = self._client.get_transport()
        if self._closed or transport is None or not transport.is_active():
            raise TransportClosed(f"ssh connection to {self.address} is closed")
        return transport

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))

    async def raw_dial(self, network: str, address: str) -> paramiko.Channel:
        """Open a ``direct-tcpip`` channel to ``address`` through the worker.

        Args:
            network: Only ``"tcp"`` is supported.
            address: ``host:port`` as seen from the worker.

        Raises:
            NetworkError: If the network is unsupported or the channel cannot be opened.
        """
        if network not in ("tcp", "tcp4", "tcp6"):
            raise NetworkError(f"unsupported network {network!r}")
        host, _, port = address.rpartition(":")
        transport = self._transport()

        def open_channel() -> paramiko.Channel:
            return transport.open_channel("direct-tcpip", (host, int(port)), ("127.0.0.1", 0))

        try:
            return await _run_abandonable(open_channel, lambda ch: ch.close())
        except (*_SSH_ERRORS, ValueError) as exc:
            raise NetworkError(f"failed to dial {address} through {self.address}: {exc}") from exc

    async def spawn_shell(self, options: CreateOptions | None = None) -> PowerShell:
        """Open a new session channel and wrap it in a single-use PowerShell.

        Raises:
            NetworkError: If the session channel cannot be opened.
        """
        transport = self._transport()
        try:
            channel = await self._call(transport.open_session)
        except _SSH_ERRORS as exc:
            raise NetworkError(f"failed to create SSH session on {self.address}: {exc}") from exc
        return PowerShell(
            ChannelProcess(channel),
            options or self._shell_options,
            label=self.address,
            chunk_size=self._chunk_size,
        )

    async def _ping(self) -> None:
        transport = self._transport()
        try:
            await self._call(transport.global_request, "keepalive@openssh.com", wait=False)
        except _SSH_ERRORS as exc:
            raise TransportClosed(f"keepalive to {self.address} failed: {exc}") from exc

    async def interact(
        self,
        interaction: Callable[[PowerShell], Awaitable[T]],
        options: CreateOptions | None = None,
    ) -> T:
        """Run ``interaction`` on a fresh session with keepalive probing.

        The session is closed on every exit path.
        """
        shell = await self.spawn_shell(options)
        try:
            return await run_with_keepalive(
                interaction(shell), self._ping, interval=self._keepalive_interval, label=self.address
            )
        finally:
            await shell.close()

    async def copy(self, source: BinaryIO, destination: str) -> int:
        """Ship ``source`` to ``destination`` over SFTP, truncating any existing file.

        Returns:
            Number of bytes written.

        Raises:
            TransferError: With ``phase`` set to the step that failed.
        """
        transport = self._transport()
        try:
            sftp = await self._call(paramiko.SFTPClient.from_transport, transport)
        except _SSH_ERRORS as exc:
            raise TransferError(
                f"failed to create SFTP client on {self.address}: {exc}", phase=CopyPhase.CHANNEL
            ) from exc
        if sftp is None:
            raise TransferError(f"failed to create SFTP client on {self.address}", phase=CopyPhase.CHANNEL)

        written = [0]

        def stream(remote: paramiko.SFTPFile) -> int:
            remote.set_pipelined(True)
            while chunk := source.read(_COPY_CHUNK):
                remote.write(chunk)
                written[0] += len(chunk)
            return written[0]

        try:
            try:
                remote = await self._call(sftp.open, destination, "wb")
            except _SSH_ERRORS as exc:
                raise TransferError(
                    f"failed to create destination file {destination}: {exc}", phase=CopyPhase.CREATE
                ) from exc
            try:
                total = await self._call(stream, remote)
            except _SSH_ERRORS as exc:
                raise TransferError(
                    f"failed to ship source file to destination {destination}: {exc}",
                    phase=CopyPhase.COPY,
                    written=written[0],
                ) from exc
            finally:
                await self._quiet_close(remote.close, destination)
        finally:
            await self._quiet_close(sftp.close, "sftp client")

        logger.debug("shipped %d bytes to %s:%s", total, self.address, destination)
        return total

    async def _quiet_close(self, close: Callable[[], None], what: str) -> None:
        try:
            await self._call(close)
        except _SSH_ERRORS as exc:
            logger.debug("closing %s on %s failed: %s", what, self.address, exc)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Inline; reads on this connection may hold every executor thread.
        self._client.close()
