"""Per-worker facts accumulated during one fleet build."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from windbag.shared.enums import WorkerPhase
from windbag.shared.models import WorkerEndpoint, WorkerFacts

WORKER_OS = "windows"


@dataclass(slots=True)
class BuildWorkerState:
    """Mutable record owned by one worker's task until the manifest barrier.

    Host facts and the shipped build context are fetched once and reused if
    the same state object is passed to a later build.
    """

    endpoint: WorkerEndpoint
    os_major: int = 0
    os_minor: int = 0
    os_build: int = 0
    os_ubr: int = 0
    os_release: str = ""
    os_arch: str = ""
    buildpath: str | None = None
    dockerfile: str | None = None
    phase: WorkerPhase = WorkerPhase.UNCONNECTED
    pushed: list[str] = field(default_factory=list)

    @property
    def address(self) -> str:
        return self.endpoint.address

    @property
    def facts_known(self) -> bool:
        return bool(self.os_arch)

    @property
    def context_shipped(self) -> bool:
        return bool(self.buildpath and self.dockerfile)

    @property
    def tag_suffix(self) -> str:
        return f"{WORKER_OS}-{self.os_arch}-{self.os_release}"

    def suffixed(self, tag: str) -> str:
        return f"{tag}-{self.tag_suffix}"

    def apply_facts(self, facts: dict[str, Any]) -> None:
        for name, value in facts.items():
            setattr(self, name, value)

    def to_facts(self) -> WorkerFacts:
        return WorkerFacts(
            address=self.address,
            os_major=self.os_major,
            os_minor=self.os_minor,
            os_build=self.os_build,
            os_ubr=self.os_ubr,
            os_release=self.os_release,
            os_arch=self.os_arch,
            buildpath=self.buildpath,
            dockerfile=self.dockerfile,
        )
