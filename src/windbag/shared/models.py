"""Frozen Pydantic domain models shared by all modules."""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field, field_validator, model_validator

from windbag.shared.enums import Isolation

logger = logging.getLogger(__name__)


class SSHCredential(BaseModel):
    """How to authenticate against one worker."""

    model_config = {"frozen": True}

    username: str = "root"
    password: str | None = None
    private_key: str | None = None
    certificate: str | None = None
    with_agent: bool = False

    @property
    def has_secret(self) -> bool:
        return bool(self.password or self.private_key)


class WorkerEndpoint(BaseModel):
    """A remote Windows host reachable over SSH."""

    model_config = {"frozen": True}

    address: str
    ssh: SSHCredential = Field(default_factory=SSHCredential)
    work_dir: str = "C:/etc/windbag"
    dial_retry_timeout: int = 600

    @field_validator("address")
    @classmethod
    def _validate_address(cls, value: str) -> str:
        host, sep, port = value.rpartition(":")
        if not sep or not host:
            raise ValueError(f"expected address to be in form of host:port, got {value!r}")
        if port != "22":
            logger.warning("the default port of SSH protocol is 22, but got %s in %s", port, value)
        return value

    @property
    def host(self) -> str:
        return self.address.rpartition(":")[0]

    @property
    def port(self) -> int:
        return int(self.address.rpartition(":")[2])


class RegistryCredential(BaseModel):
    """Login material for one container registry."""

    model_config = {"frozen": True}

    address: str = "docker.io"
    username: str
    password: str
    login_timeout: int = 300


class ReleaseBuildArgs(BaseModel):
    """Extra build arguments applied only to workers of one release."""

    model_config = {"frozen": True}

    release: str
    build_args: dict[str, str] = Field(default_factory=dict)


class DockerProvisioning(BaseModel):
    """Docker daemon installation settings pushed to fresh workers."""

    model_config = {"frozen": True}

    version: str | None = None
    download_uri: str | None = None
    allow_nondistributable_artifacts: list[str] | None = None
    experimental: bool = False
    max_concurrent_downloads: int | None = None
    max_concurrent_uploads: int | None = None
    max_download_attempts: int | None = None
    registry_mirrors: list[str] = Field(default_factory=list)


class BuildSpecification(BaseModel):
    """What to build and how to publish it."""

    model_config = {"frozen": True}

    tags: list[str] = Field(min_length=1)
    path: str = "."
    file: str | None = None
    build_args: dict[str, str] = Field(default_factory=dict)
    release_build_args: list[ReleaseBuildArgs] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)
    isolation: Isolation | None = None
    force_rm: bool = False
    no_cache: bool = False
    rm: bool = True
    target: str | None = None
    push: bool = True
    push_timeout: int = 900
    manifest: bool = True
    manifest_timeout: int = 900
    disable_target_platform_args_injection: bool = False
    disable_release_build_args_injection: bool = False

    def release_args_for(self, release: str) -> dict[str, str]:
        """Return the mapped build arguments registered for ``release``."""
        for mapper in self.release_build_args:
            if mapper.release == release:
                return dict(mapper.build_args)
        return {}


class BuildPlan(BaseModel):
    """Everything one fleet build needs, typically loaded from JSON."""

    model_config = {"frozen": True}

    workers: list[WorkerEndpoint] = Field(min_length=1)
    build: BuildSpecification
    registries: list[RegistryCredential] = Field(default_factory=list)
    docker: DockerProvisioning | None = None

    @model_validator(mode="after")
    def _unique_workers(self) -> BuildPlan:
        seen: set[str] = set()
        for worker in self.workers:
            if worker.address in seen:
                raise ValueError(f"duplicate worker address {worker.address}")
            seen.add(worker.address)
        return self


class WorkerFacts(BaseModel):
    """Read-only view of what was discovered about one worker."""

    model_config = {"frozen": True}

    address: str
    os_major: int = 0
    os_minor: int = 0
    os_build: int = 0
    os_ubr: int = 0
    os_release: str = ""
    os_arch: str = ""
    buildpath: str | None = None
    dockerfile: str | None = None

    @property
    def tag_suffix(self) -> str:
        return f"windows-{self.os_arch}-{self.os_release}"


class BuildReport(BaseModel):
    """Outcome of a successful fleet build."""

    model_config = {"frozen": True}

    image_id: str
    workers: list[WorkerFacts]
    pushed_tags: list[str] = Field(default_factory=list)
    manifest_host: str | None = None
    manifests: list[str] = Field(default_factory=list)
