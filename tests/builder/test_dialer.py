"""Tests for WorkerDialer retry and provisioning."""

from __future__ import annotations

from typing import Any

import pytest

from windbag.builder.dialer import WorkerDialer
from windbag.shared.exceptions import (
    AuthenticationError,
    CommandTimeoutError,
    NetworkError,
    RemoteCommandError,
)
from windbag.shared.models import DockerProvisioning, SSHCredential, WorkerEndpoint


@pytest.fixture
def short_endpoint() -> WorkerEndpoint:
    return WorkerEndpoint(address="10.0.0.2:22", ssh=SSHCredential(password="pw"), dial_retry_timeout=1)


class _Dialer:
    """Hands out connections in order; exceptions in the script are raised instead."""

    def __init__(self, script: list[Any]) -> None:
        self.script = script
        self.calls = 0
        self.handed_out: list[Any] = []

    async def __call__(self, endpoint: WorkerEndpoint) -> Any:
        self.calls += 1
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, BaseException):
            raise item
        self.handed_out.append(item)
        return item


class TestWorkerDialer:
    async def test_plain_dial(self, endpoint: WorkerEndpoint, make_connection: Any) -> None:
        conn = make_connection(endpoint.address)
        dial = _Dialer([conn])

        assert await WorkerDialer(dial, backoff=(0.01,)).dial(endpoint) is conn
        assert dial.calls == 1
        assert conn.commands == []

    async def test_network_errors_are_retried(self, endpoint: WorkerEndpoint, make_connection: Any) -> None:
        conn = make_connection(endpoint.address)
        dial = _Dialer([NetworkError("connection refused"), NetworkError("connection refused"), conn])

        assert await WorkerDialer(dial, backoff=(0.01,)).dial(endpoint) is conn
        assert dial.calls == 3

    async def test_authentication_errors_are_not_retried(self, endpoint: WorkerEndpoint) -> None:
        dial = _Dialer([AuthenticationError("unable to dial")])

        with pytest.raises(AuthenticationError):
            await WorkerDialer(dial, backoff=(0.01,)).dial(endpoint)
        assert dial.calls == 1

    async def test_gives_up_after_window(self, short_endpoint: WorkerEndpoint) -> None:
        dial = _Dialer([NetworkError("i/o timeout")])

        with pytest.raises(NetworkError):
            await WorkerDialer(dial, backoff=(0.05,)).dial(short_endpoint)
        assert dial.calls > 1

    async def test_provisions_then_redials(
        self, endpoint: WorkerEndpoint, make_connection: Any, make_responder: Any
    ) -> None:
        first = make_connection(endpoint.address)
        second = make_connection(endpoint.address, make_responder({"docker info": [("20.10.7\r\n", "")]}))
        dial = _Dialer([first, second])
        dialer = WorkerDialer(
            dial,
            provisioning=DockerProvisioning(version="20.10.7"),
            registries=["docker.io"],
            settle_seconds=0,
            backoff=(0.01,),
        )

        assert await dialer.dial(endpoint) is second
        assert dial.calls == 2
        assert "Invoke-WebRequest" in first.commands[0]
        assert '$env:DOCKER_VERSION="20.10.7";' in first.commands[0]
        assert first.closed
        assert second.commands == ["docker info --format '{{ .ServerVersion }}'"]
        assert not second.closed

    async def test_failed_provisioning_is_retried(
        self, endpoint: WorkerEndpoint, make_connection: Any, make_responder: Any
    ) -> None:
        responder = make_responder(
            {
                "Invoke-WebRequest": [("", "The remote name could not be resolved"), ("", "")],
                "docker info": [("20.10.7", "")],
            }
        )
        conns = [make_connection(endpoint.address, responder) for _ in range(3)]
        dial = _Dialer(list(conns))
        dialer = WorkerDialer(dial, provisioning=DockerProvisioning(), settle_seconds=0, backoff=(0.01,))

        assert await dialer.dial(endpoint) is conns[2]
        assert conns[0].closed and conns[1].closed

    async def test_unready_daemon_is_retried(
        self, short_endpoint: WorkerEndpoint, make_connection: Any, make_responder: Any
    ) -> None:
        responder = make_responder({"docker info": [("", "error during connect: pipe not found")]})
        dial = _Dialer([make_connection(short_endpoint.address, responder)])
        dialer = WorkerDialer(dial, provisioning=DockerProvisioning(), settle_seconds=0, backoff=(0.05,))

        # The window may also close mid-attempt.
        with pytest.raises((RemoteCommandError, CommandTimeoutError)):
            await dialer.dial(short_endpoint)
        assert dial.calls > 1
