"""Shared pytest fixtures for the windbag test suite."""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Callable
from typing import Any, BinaryIO

import pytest

from windbag.config import Settings
from windbag.powershell.options import CreateOptions
from windbag.powershell.shell import PowerShell
from windbag.shared.models import BuildPlan, BuildSpecification, SSHCredential, WorkerEndpoint

_WRAPPED = re.compile(r'Try \{(.*)\} Catch \{.*?\}; \[System\.Console\]::Out\.Write\("(#[0-9a-f]{16}#)"\)')

# Returned by a responder to make both streams hit end-of-stream.
HANG_UP = ("\x00hang-up", "")

Responder = Callable[[str], tuple[str, str]]


def _silent(command: str) -> tuple[str, str]:
    return "", ""


class FakeShellProcess:
    """Scripted stand-in for one remote PowerShell process.

    Each wrapped command written to stdin is unwrapped, passed to the
    responder, and answered on both streams followed by the delimiter, the
    way the real shell would.
    """

    def __init__(
        self,
        responder: Responder | None = None,
        *,
        exit_status: int = 0,
        preload: tuple[bytes, bytes] | None = None,
    ) -> None:
        self.responder = responder or _silent
        self.exit_status = exit_status
        self.started: list[str] = []
        self.commands: list[str] = []
        self.writes: list[bytes] = []
        self.stdin_closed = asyncio.Event()
        self.closed = False
        self._stdout: asyncio.Queue[bytes] = asyncio.Queue()
        self._stderr: asyncio.Queue[bytes] = asyncio.Queue()
        if preload is not None:
            self.feed(*preload)
            self.hang_up()

    def feed(self, stdout: bytes = b"", stderr: bytes = b"") -> None:
        if stdout:
            self._stdout.put_nowait(stdout)
        if stderr:
            self._stderr.put_nowait(stderr)

    def hang_up(self) -> None:
        self._stdout.put_nowait(b"")
        self._stderr.put_nowait(b"")

    async def start(self, command: str) -> None:
        self.started.append(command)

    async def write(self, data: bytes) -> None:
        self.writes.append(data)
        match = _WRAPPED.search(data.decode())
        if match is None:
            return
        command, delimiter = match.group(1), match.group(2)
        self.commands.append(command)
        stdout, stderr = self.responder(command)
        if (stdout, stderr) == HANG_UP:
            self.hang_up()
            return
        self._stdout.put_nowait(stdout.encode() + delimiter.encode())
        self._stderr.put_nowait(stderr.encode() + delimiter.encode())

    async def read_stdout(self, size: int) -> bytes:
        return await self._stdout.get()

    async def read_stderr(self, size: int) -> bytes:
        return await self._stderr.get()

    async def close_stdin(self) -> None:
        self.stdin_closed.set()

    async def wait(self) -> int:
        await self.stdin_closed.wait()
        return self.exit_status

    async def close(self) -> None:
        self.closed = True


class FakeConnection:
    """In-memory ``Connection`` whose shells answer through one responder."""

    def __init__(self, address: str, responder: Responder | None = None) -> None:
        self.address = address
        self.responder = responder or _silent
        self.processes: list[FakeShellProcess] = []
        self.copies: dict[str, bytes] = {}
        self.closed = False

    @property
    def commands(self) -> list[str]:
        return [c for p in self.processes for c in p.commands]

    async def spawn_shell(self, options: CreateOptions | None = None) -> PowerShell:
        process = FakeShellProcess(self.responder)
        self.processes.append(process)
        return PowerShell(process, options, label=self.address)

    async def interact(self, interaction: Callable[[PowerShell], Any], options: CreateOptions | None = None) -> Any:
        shell = await self.spawn_shell(options)
        try:
            return await interaction(shell)
        finally:
            await shell.close()

    async def copy(self, source: BinaryIO, destination: str) -> int:
        data = source.read()
        self.copies[destination] = data
        return len(data)

    async def raw_dial(self, network: str, address: str) -> Any:
        raise NotImplementedError

    async def close(self) -> None:
        self.closed = True


class ScriptedResponder:
    """Answer commands by substring; each rule's responses are used in order, the last one repeats."""

    def __init__(self, rules: dict[str, list[tuple[str, str]]] | None = None) -> None:
        self.rules = {k: list(v) for k, v in (rules or {}).items()}

    def __call__(self, command: str) -> tuple[str, str]:
        for needle, responses in self.rules.items():
            if needle in command:
                return responses.pop(0) if len(responses) > 1 else responses[0]
        return "", ""


def windows_host(build: int, release: str, arch: str = "AMD64") -> dict[str, list[tuple[str, str]]]:
    """Rules answering the host fact queries of a Windows worker."""
    version = json.dumps(
        {
            "CurrentMajorVersionNumber": 10,
            "CurrentMinorVersionNumber": 0,
            "CurrentBuildNumber": str(build),
            "UBR": 1,
            "ReleaseId": release,
        }
    )
    return {
        "CurrentVersion": [(version, "")],
        "PROCESSOR_ARCHITECTURE": [(arch + "\r\n", "")],
        "docker login": [("Login Succeeded\r\n", "")],
    }


@pytest.fixture()
def make_process() -> type[FakeShellProcess]:
    return FakeShellProcess


@pytest.fixture()
def make_connection() -> type[FakeConnection]:
    return FakeConnection


@pytest.fixture()
def make_responder() -> type[ScriptedResponder]:
    return ScriptedResponder


@pytest.fixture()
def host_rules() -> Callable[..., dict[str, list[tuple[str, str]]]]:
    return windows_host


@pytest.fixture()
def hang_up() -> tuple[str, str]:
    return HANG_UP


@pytest.fixture()
def settings() -> Settings:
    """Return a Settings instance with test defaults."""
    return Settings(
        dial_retry_timeout=5,
        keepalive_interval=0.05,
        provision_settle_seconds=0,
        retry_backoff_seconds="0.01",
        build_timeout=30,
    )


@pytest.fixture()
def endpoint() -> WorkerEndpoint:
    return WorkerEndpoint(address="10.0.0.1:22", ssh=SSHCredential(password="secret"))


@pytest.fixture()
def build_context(tmp_path: Any) -> str:
    """A small build context directory with a Dockerfile and a .dockerignore."""
    (tmp_path / "Dockerfile").write_text(
        "FROM mcr.microsoft.com/windows/servercore:${RELEASEID}\nARG TARGETARCH\nCOPY app.ps1 C:/app.ps1\n"
    )
    (tmp_path / "app.ps1").write_text("Write-Host hello\n")
    (tmp_path / ".dockerignore").write_text("*.log\n")
    (tmp_path / "debug.log").write_text("noise\n")
    return str(tmp_path)


@pytest.fixture()
def make_plan(build_context: str) -> Callable[..., BuildPlan]:
    def _make(addresses: list[str], **build: Any) -> BuildPlan:
        spec = {"tags": ["thxcode/tool:v1"], "path": build_context, **build}
        return BuildPlan(
            workers=[WorkerEndpoint(address=a, ssh=SSHCredential(password="secret")) for a in addresses],
            build=BuildSpecification(**spec),
        )

    return _make
