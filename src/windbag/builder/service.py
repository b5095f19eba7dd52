"""Fleet build orchestration: per-worker pipelines joined by a manifest step."""

from __future__ import annotations

import asyncio
import io
import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass
from functools import partial
from typing import Any

import aiofiles  # type: ignore[import-untyped]

from windbag.builder import scripts
from windbag.builder.dialer import WorkerDialer
from windbag.builder.state import WORKER_OS, BuildWorkerState
from windbag.config import Settings
from windbag.docker import commands
from windbag.docker.archive import build_context_archive, resolve_dockerfile
from windbag.docker.image import image_id
from windbag.docker.platform_args import inject_target_platform_args
from windbag.docker.registry_auth import RegistryAuth, RegistryAuthStore
from windbag.powershell.options import CreateOptions
from windbag.powershell.shell import Commands, run_interactive
from windbag.shared.concurrency import run_all
from windbag.shared.enums import WorkerPhase
from windbag.shared.exceptions import ArchiveError, BuildError, RemoteCommandError, WindbagError
from windbag.shared.models import BuildPlan, BuildReport, BuildSpecification, WorkerEndpoint
from windbag.shared.retry import parse_backoff_seconds, retry_until
from windbag.transport.interfaces import Connection
from windbag.transport.registry import ConnectionRegistry, DialFn
from windbag.transport.ssh import SSHConnection

logger = logging.getLogger(__name__)

_MASK = "******"


@dataclass(frozen=True, slots=True)
class _Job:
    """Inputs shared read-only by every worker task of one build."""

    image: str
    spec: BuildSpecification
    archive: bytes
    dockerfile: str
    auths: RegistryAuthStore
    dialer: WorkerDialer


def apply_settings_defaults(plan: BuildPlan, settings: Settings) -> BuildPlan:
    """Fill the plan fields its document left unset from ``settings``.

    Values written in the plan always win; ``model_fields_set`` tells them
    apart from model defaults.
    """
    workers = []
    for worker in plan.workers:
        update: dict[str, Any] = {}
        if "work_dir" not in worker.model_fields_set:
            update["work_dir"] = settings.work_dir
        if "dial_retry_timeout" not in worker.model_fields_set:
            update["dial_retry_timeout"] = settings.dial_retry_timeout
        if "username" not in worker.ssh.model_fields_set:
            update["ssh"] = worker.ssh.model_copy(update={"username": settings.ssh_username})
        workers.append(worker.model_copy(update=update))

    registries = [
        cred
        if "login_timeout" in cred.model_fields_set
        else cred.model_copy(update={"login_timeout": settings.login_timeout})
        for cred in plan.registries
    ]
    build_update = {
        name: getattr(settings, name)
        for name in ("push_timeout", "manifest_timeout")
        if name not in plan.build.model_fields_set
    }
    return plan.model_copy(
        update={"workers": workers, "registries": registries, "build": plan.build.model_copy(update=build_update)}
    )


def elect_manifest_host(states: Sequence[BuildWorkerState]) -> BuildWorkerState:
    """Pick the worker with the highest OS build number; the first one wins a tie."""
    if not states:
        raise ValueError("no workers to elect a manifest host from")
    elected = states[0]
    for state in states[1:]:
        if state.os_build > elected.os_build:
            elected = state
    return elected


def tag_suffixes(states: Sequence[BuildWorkerState]) -> list[str]:
    """Distinct worker tag suffixes in worker order."""
    return list(dict.fromkeys(state.tag_suffix for state in states))


class FleetBuilder:
    """Build one image on every worker of a plan and publish a manifest list.

    Every worker runs dial -> facts -> context -> login -> build -> push in its
    own task. The first worker failure cancels the rest and is reported as a
    ``BuildError`` naming the worker and phase. Once all workers have pushed,
    the worker with the newest OS build assembles the manifest lists.
    """

    def __init__(self, settings: Settings, *, dial: DialFn | None = None) -> None:
        self._settings = settings
        self._backoff = parse_backoff_seconds(settings.retry_backoff_seconds)
        self._shell_options = CreateOptions(executor=settings.powershell_executor)
        self._dial = dial or self._dial_ssh

    async def _dial_ssh(self, endpoint: WorkerEndpoint) -> Connection:
        return await SSHConnection.dial(
            endpoint,
            connect_timeout=self._settings.dial_connect_timeout,
            shell_options=self._shell_options,
            keepalive_interval=self._settings.keepalive_interval,
            chunk_size=self._settings.read_chunk_size,
        )

    async def build(
        self,
        plan: BuildPlan,
        *,
        states: dict[str, BuildWorkerState] | None = None,
        registry: ConnectionRegistry | None = None,
    ) -> BuildReport:
        """Run ``plan`` across its workers.

        Args:
            plan: Workers, build specification, registries and provisioning.
                Timeouts, work directory and SSH user it leaves unset come
                from settings.
            states: Per-address worker states from an earlier run; host facts
                and shipped contexts found there are reused. Filled in place.
            registry: Connection cache to dial through. When omitted, a private
                one is created and closed before returning.

        Returns:
            The image id, per-worker facts, pushed tags and manifest details.

        Raises:
            BuildError: On the first fatal worker or manifest failure, or when
                the whole build exceeds ``build_timeout``.
            ArchiveError: If the local build context cannot be archived.
        """
        plan = apply_settings_defaults(plan, self._settings)
        owned = registry is None
        conns = registry if registry is not None else ConnectionRegistry()
        known = states if states is not None else {}
        workers = [known.setdefault(w.address, BuildWorkerState(endpoint=w)) for w in plan.workers]
        timeout = self._settings.build_timeout
        try:
            return await asyncio.wait_for(self._run(plan, workers, conns), timeout=timeout)
        except TimeoutError as exc:
            raise BuildError(f"build did not finish within {timeout}s") from exc
        finally:
            if owned:
                await conns.aclose()

    async def _run(
        self, plan: BuildPlan, workers: list[BuildWorkerState], conns: ConnectionRegistry
    ) -> BuildReport:
        spec = plan.build
        job = await self._prepare(plan)
        image = job.image

        logger.info("==== %s building on all workers ====", image)
        await run_all(self._run_worker(state, job, conns) for state in workers)
        logger.info("==== %s built on all workers ====", image)

        pushed = [state.suffixed(tag) for state in workers for tag in spec.tags] if spec.push else []
        if not spec.push:
            logger.warning("skipped pushing image %s", image)
            return self._report(image, workers, pushed)
        if not spec.manifest:
            logger.warning("skipped manifesting image %s", image)
            return self._report(image, workers, pushed)

        host = elect_manifest_host(workers)
        logger.info("==== %s manifesting on the highest worker %s ====", image, host.address)
        suffixes = tag_suffixes(workers)
        try:
            conn = await conns.get_or_dial(host.endpoint, job.dialer.dial)
            await run_all(self._manifest(conn, host.address, tag, suffixes, spec) for tag in spec.tags)
        except WindbagError as exc:
            await conns.discard(host.address)
            logger.error("manifesting image %s on worker %s failed: %s", image, host.address, exc)
            raise BuildError(
                f"failed to manifest image {image} on worker {host.address}: {exc}",
                worker=host.address,
                phase=WorkerPhase.MANIFESTING,
            ) from exc
        logger.info("==== %s manifested on the highest worker ====", image)
        return self._report(image, workers, pushed, manifest_host=host.address, manifests=list(spec.tags))

    def _report(
        self,
        image: str,
        workers: list[BuildWorkerState],
        pushed: list[str],
        *,
        manifest_host: str | None = None,
        manifests: list[str] | None = None,
    ) -> BuildReport:
        return BuildReport(
            image_id=image,
            workers=[state.to_facts() for state in workers],
            pushed_tags=pushed,
            manifest_host=manifest_host,
            manifests=manifests or [],
        )

    async def _prepare(self, plan: BuildPlan) -> _Job:
        spec = plan.build
        loop = asyncio.get_running_loop()
        archive = await loop.run_in_executor(None, partial(build_context_archive, spec.path, spec.file))
        context_dir = os.path.abspath(os.path.expanduser(spec.path))
        dockerfile_path = resolve_dockerfile(context_dir, spec.file)
        try:
            async with aiofiles.open(dockerfile_path, encoding="utf-8") as f:
                dockerfile = await f.read()
        except OSError as exc:
            raise ArchiveError(f"failed to read dockerfile {dockerfile_path}: {exc}") from exc

        auths = RegistryAuthStore.from_credentials(plan.registries)
        dialer = WorkerDialer(
            self._dial,
            provisioning=plan.docker,
            registries=[cred.address for cred in plan.registries],
            settle_seconds=self._settings.provision_settle_seconds,
            backoff=self._backoff,
        )
        return _Job(
            image=image_id(spec.tags[-1]),
            spec=spec,
            archive=archive.getvalue(),
            dockerfile=dockerfile,
            auths=auths,
            dialer=dialer,
        )

    async def _run_worker(self, state: BuildWorkerState, job: _Job, conns: ConnectionRegistry) -> None:
        address = state.address
        try:
            state.phase = WorkerPhase.DIALING
            conn = await conns.get_or_dial(state.endpoint, job.dialer.dial)

            state.phase = WorkerPhase.PREPARING
            if not state.facts_known:
                await self._gather_facts(conn, state)
            await self._ship_context(conn, state, job)
            state.phase = WorkerPhase.CONTEXT_SHIPPED

            if len(job.auths):
                state.phase = WorkerPhase.LOGGING_IN
                for auth in job.auths:
                    await retry_until(
                        partial(self._login, conn, address, auth),
                        timeout=auth.login_timeout,
                        description=f"login to {auth.address} on worker {address}",
                        backoff=self._backoff,
                    )

            state.phase = WorkerPhase.BUILDING
            await self._build_image(conn, state, job)

            if job.spec.push:
                state.phase = WorkerPhase.PUSHING
                for tag in job.spec.tags:
                    suffixed = state.suffixed(tag)
                    await retry_until(
                        partial(self._push, conn, address, suffixed),
                        timeout=job.spec.push_timeout,
                        description=f"push {suffixed} on worker {address}",
                        backoff=self._backoff,
                    )
                    state.pushed.append(suffixed)
            state.phase = WorkerPhase.DONE
        except asyncio.CancelledError:
            await conns.discard(address)
            raise
        except WindbagError as exc:
            failed = state.phase
            state.phase = WorkerPhase.FAILED
            await conns.discard(address)
            logger.error("worker %s failed while %s: %s", address, failed.value, exc)
            raise BuildError(
                f"worker {address} failed while {failed.value}: {exc}", worker=address, phase=failed
            ) from exc

    async def _gather_facts(self, conn: Connection, state: BuildWorkerState) -> None:
        address = state.address

        async def work(channel: Commands) -> tuple[str, str]:
            version = await channel.execute(scripts.HOST_VERSION)
            version.check(f"retrieving host version on worker {address}")
            arch = await channel.execute(scripts.HOST_ARCH)
            arch.check(f"retrieving host arch on worker {address}")
            return version.stdout, arch.stdout

        version_out, arch_out = await run_interactive(conn, work)
        state.apply_facts(scripts.parse_host_version(version_out))
        state.os_arch = scripts.parse_host_arch(arch_out)
        logger.info(
            "worker %s is %s/%s release %s build %d.%d",
            address,
            WORKER_OS,
            state.os_arch,
            state.os_release,
            state.os_build,
            state.os_ubr,
        )

    async def _ship_context(self, conn: Connection, state: BuildWorkerState, job: _Job) -> None:
        work_dir = state.endpoint.work_dir
        buildpath = scripts.buildpath(work_dir, job.image)
        dockerfile_path = scripts.dockerfile_path(work_dir, job.image)
        if state.buildpath == buildpath and state.dockerfile == dockerfile_path:
            logger.info("build context of %s already shipped to worker %s", job.image, state.address)
            return

        prepared = await run_interactive(conn, lambda ch: ch.execute(scripts.prepare_workdir(work_dir)))
        prepared.check(f"preparing work directory on worker {state.address}")

        archive_path = scripts.archive_path(work_dir, job.image)
        size = await conn.copy(io.BytesIO(job.archive), archive_path)
        logger.info("shipped %d bytes of build context to %s:%s", size, state.address, archive_path)
        expanded = await run_interactive(conn, lambda ch: ch.execute(scripts.expand_archive(archive_path, buildpath)))
        expanded.check(f"expanding build context on worker {state.address}")

        dockerfile = job.dockerfile
        if not job.spec.disable_target_platform_args_injection:
            dockerfile = inject_target_platform_args(dockerfile, WORKER_OS, state.os_arch, state.os_release)
        await conn.copy(io.BytesIO(dockerfile.encode("utf-8")), dockerfile_path)

        state.buildpath = buildpath
        state.dockerfile = dockerfile_path

    async def _login(self, conn: Connection, address: str, auth: RegistryAuth) -> None:
        command = commands.registry_login(auth.address, auth.username, auth.password)
        masked = commands.registry_login(auth.address, auth.username, _MASK)
        result = await run_interactive(conn, lambda ch: ch.execute(command, log_as=masked))
        if not commands.login_succeeded(result.stdout, result.stderr):
            raise RemoteCommandError(
                f"failed to login {auth.address} on worker {address}: {result.stderr.strip()}",
                command=masked,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        logger.info("worker %s logged in to %s", address, auth.address)

    def build_args_for(self, spec: BuildSpecification, state: BuildWorkerState) -> dict[str, str]:
        """User build args plus the worker's release identifiers."""
        args = dict(spec.build_args)
        if spec.disable_release_build_args_injection:
            return args
        args["RELEASEID"] = state.os_release
        args["WINDBAGRELEASE"] = state.os_release
        for name, value in spec.release_args_for(state.os_release).items():
            args[f"WINDBAGRELEASE_{name}"] = value
        return args

    async def _build_image(self, conn: Connection, state: BuildWorkerState, job: _Job) -> None:
        spec = job.spec
        if state.buildpath is None:
            raise BuildError(
                f"build context of {job.image} was never shipped to worker {state.address}",
                worker=state.address,
                phase=WorkerPhase.BUILDING,
            )
        command = commands.build(
            commands.BuildOptions(
                buildpath=state.buildpath,
                tags=[state.suffixed(tag) for tag in spec.tags],
                dockerfile=state.dockerfile,
                build_args=self.build_args_for(spec, state),
                labels=spec.labels,
                isolation=spec.isolation,
                force_rm=spec.force_rm,
                no_cache=spec.no_cache,
                rm=spec.rm,
                target=spec.target,
            )
        )
        logger.info("building image %s on worker %s", job.image, state.address)
        result = await run_interactive(conn, lambda ch: ch.execute(command))
        result.check(f"executing docker building on worker {state.address}")
        logger.info("built image %s on worker %s", job.image, state.address)

    async def _push(self, conn: Connection, address: str, tag: str) -> None:
        result = await run_interactive(conn, lambda ch: ch.execute(commands.image_push(tag)))
        result.check(f"pushing image {tag} on worker {address}")
        logger.info("pushed image %s on worker %s", tag, address)

    async def _manifest(
        self, conn: Connection, address: str, tag: str, suffixes: list[str], spec: BuildSpecification
    ) -> None:
        manifests = [f"{tag}-{suffix}" for suffix in suffixes]

        async def work(channel: Commands) -> None:
            created = await channel.execute(commands.manifest_create(tag, manifests))
            created.check(f"executing docker manifest creation of {tag}")
            pushed = await channel.execute(commands.manifest_push(tag))
            pushed.check(f"executing docker manifest pushing of {tag}")

        await retry_until(
            partial(run_interactive, conn, work),
            timeout=spec.manifest_timeout,
            description=f"manifest {tag} on worker {address}",
            backoff=self._backoff,
        )
        logger.info("manifested image %s on worker %s", tag, address)
