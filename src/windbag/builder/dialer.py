"""Dial workers with retry, provisioning docker on first contact when asked."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from windbag.builder import scripts
from windbag.docker import commands
from windbag.powershell.shell import Commands, CommandResult, run_interactive
from windbag.shared.exceptions import NetworkError, RemoteCommandError
from windbag.shared.models import DockerProvisioning, WorkerEndpoint
from windbag.shared.retry import DEFAULT_BACKOFF, retry_until
from windbag.transport.interfaces import Connection
from windbag.transport.registry import DialFn

logger = logging.getLogger(__name__)


class WorkerDialer:
    """Turns a ``WorkerEndpoint`` into a ready-to-build ``Connection``.

    When provisioning is configured, the first successful dial runs the
    docker installer, waits for the host to settle and dials again; every
    later dial confirms the daemon answers ``docker info`` before returning.
    """

    def __init__(
        self,
        dial: DialFn,
        *,
        provisioning: DockerProvisioning | None = None,
        registries: Sequence[str] = (),
        settle_seconds: float = 10.0,
        backoff: Sequence[float] = DEFAULT_BACKOFF,
    ) -> None:
        self._dial = dial
        self._provisioning = provisioning
        self._registries = list(registries)
        self._settle_seconds = settle_seconds
        self._backoff = backoff

    async def dial(self, endpoint: WorkerEndpoint) -> Connection:
        """Dial ``endpoint`` until it is usable or its retry window closes.

        Raises:
            AuthenticationError: Immediately; credentials are never retried.
            NetworkError: If the window closes while the host is unreachable.
            RemoteCommandError: If provisioning or the daemon check keeps failing.
        """
        provisioning = self._provisioning
        provision_pending = provisioning is not None

        async def attempt() -> Connection:
            nonlocal provision_pending
            conn = await self._dial(endpoint)
            try:
                if provisioning is None:
                    return conn
                if provision_pending:
                    await self._provision(conn, endpoint.address, provisioning)
                    provision_pending = False
                    # The installer may restart the host; there is no completion signal.
                    await asyncio.sleep(self._settle_seconds)
                    raise NetworkError(f"docker provisioned on worker {endpoint.address}, dialing again")
                await self._confirm(conn, endpoint.address)
                return conn
            except BaseException:
                await conn.close()
                raise

        conn = await retry_until(
            attempt,
            timeout=endpoint.dial_retry_timeout,
            description=f"dial worker {endpoint.address}",
            backoff=self._backoff,
        )
        logger.info("dialed worker %s", endpoint.address)
        return conn

    async def _provision(self, conn: Connection, address: str, provisioning: DockerProvisioning) -> None:
        script = scripts.install_docker(provisioning, self._registries)

        async def work(channel: Commands) -> CommandResult:
            return await channel.execute(script)

        result = await run_interactive(conn, work)
        result.check(f"verifying docker version on worker {address}")
        logger.info("provisioned docker on worker %s", address)

    async def _confirm(self, conn: Connection, address: str) -> None:
        async def work(channel: Commands) -> CommandResult:
            return await channel.execute(commands.server_version())

        try:
            result = await run_interactive(conn, work)
            result.check(f"confirming the state of docker server on worker {address}")
        except (NetworkError, RemoteCommandError) as exc:
            logger.error("failed to get docker info on worker %s: %s", address, exc)
            await asyncio.sleep(self._settle_seconds)
            raise
        logger.info("docker server %s is ready on worker %s", result.stdout.strip(), address)
