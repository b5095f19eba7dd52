"""Tests for the async paramiko channel adapter."""

from __future__ import annotations

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import paramiko
import pytest

from windbag.powershell.shell import PowerShell
from windbag.shared.concurrency import run_all
from windbag.shared.exceptions import NetworkError
from windbag.transport.channel import ChannelProcess
from windbag.transport.interfaces import ShellProcess


class HangingChannel:
    """Channel whose reads block until it is closed, like a remote command that never finishes."""

    def __init__(self) -> None:
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def exec_command(self, command: str) -> None:
        pass

    def sendall(self, data: bytes) -> None:
        pass

    def shutdown_write(self) -> None:
        pass

    def recv(self, size: int) -> bytes:
        self._closed.wait()
        return b""

    recv_stderr = recv

    def recv_exit_status(self) -> int:
        self._closed.wait()
        return -1

    def close(self) -> None:
        self._closed.set()


@pytest.fixture
def mock_channel() -> MagicMock:
    channel = MagicMock()
    channel.closed = False
    channel.recv.return_value = b"out"
    channel.recv_stderr.return_value = b"err"
    channel.recv_exit_status.return_value = 0
    return channel


class TestChannelProcess:
    def test_is_a_shell_process(self, mock_channel: MagicMock) -> None:
        assert isinstance(ChannelProcess(mock_channel), ShellProcess)

    async def test_delegates_to_channel(self, mock_channel: MagicMock) -> None:
        process = ChannelProcess(mock_channel)

        await process.start("powershell.exe -Command -")
        await process.write(b"Get-Date\r\n")
        assert await process.read_stdout(1024) == b"out"
        assert await process.read_stderr(1024) == b"err"
        await process.close_stdin()
        assert await process.wait() == 0

        mock_channel.exec_command.assert_called_once_with("powershell.exe -Command -")
        mock_channel.sendall.assert_called_once_with(b"Get-Date\r\n")
        mock_channel.recv.assert_called_once_with(1024)
        mock_channel.shutdown_write.assert_called_once()

    async def test_ssh_errors_become_network_errors(self, mock_channel: MagicMock) -> None:
        mock_channel.sendall.side_effect = paramiko.SSHException("Channel closed.")
        with pytest.raises(NetworkError, match="Channel closed"):
            await ChannelProcess(mock_channel).write(b"x")

    async def test_close_skips_closed_channel(self, mock_channel: MagicMock) -> None:
        mock_channel.closed = True
        await ChannelProcess(mock_channel).close()
        mock_channel.close.assert_not_called()

    async def test_close(self, mock_channel: MagicMock) -> None:
        await ChannelProcess(mock_channel).close()
        mock_channel.close.assert_called_once()

    async def test_close_errors_are_swallowed(self, mock_channel: MagicMock) -> None:
        mock_channel.close.side_effect = EOFError()
        await ChannelProcess(mock_channel).close()


class TestHungCommands:
    async def test_reads_do_not_occupy_default_executor(self) -> None:
        loop = asyncio.get_running_loop()
        loop.set_default_executor(ThreadPoolExecutor(max_workers=1))
        channel = HangingChannel()
        process = ChannelProcess(channel)

        reads = [asyncio.ensure_future(process.read_stdout(1024)), asyncio.ensure_future(process.read_stderr(1024))]
        await asyncio.wait_for(process.write(b"Get-Date\r\n"), timeout=2)

        await process.close()
        assert await asyncio.wait_for(asyncio.gather(*reads), timeout=2) == [b"", b""]

    async def test_cancelled_fleet_closes_every_session(self) -> None:
        loop = asyncio.get_running_loop()
        loop.set_default_executor(ThreadPoolExecutor(max_workers=2))
        channels = [HangingChannel() for _ in range(3)]

        async def build(channel: HangingChannel) -> None:
            async with PowerShell(ChannelProcess(channel), label="w").interactive() as commands:
                await commands.execute("docker build .")

        started = loop.time()
        with pytest.raises(TimeoutError):
            await asyncio.wait_for(run_all(build(c) for c in channels), timeout=0.5)

        assert loop.time() - started < 3
        assert all(c.closed for c in channels)
