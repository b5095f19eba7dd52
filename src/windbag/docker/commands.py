"""Pure renderers for the docker CLI commands run on workers."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from windbag.shared.enums import Isolation

LOGIN_SUCCEEDED = "Login Succeeded"


@dataclass(frozen=True, slots=True)
class BuildOptions:
    """Per-worker ``docker build`` invocation."""

    buildpath: str
    tags: Sequence[str]
    dockerfile: str | None = None
    build_args: Mapping[str, str] = field(default_factory=dict)
    labels: Mapping[str, str] = field(default_factory=dict)
    isolation: Isolation | None = None
    force_rm: bool = False
    no_cache: bool = False
    rm: bool = True
    target: str | None = None


def _value(raw: str) -> str:
    # PowerShell literal quoting; plain tokens stay bare.
    if raw and all(c.isalnum() or c in "-_.:/\\@+=," for c in raw):
        return raw
    return "'" + raw.replace("'", "''") + "'"


def build(opts: BuildOptions) -> str:
    parts = ["docker", "build"]
    for key in sorted(opts.build_args):
        parts.extend(["--build-arg", f"{key}={_value(opts.build_args[key])}"])
    if opts.dockerfile:
        parts.extend(["--file", opts.dockerfile])
    if opts.force_rm:
        parts.append("--force-rm")
    if opts.isolation is not None and opts.isolation is not Isolation.DEFAULT:
        parts.extend(["--isolation", opts.isolation.value])
    for key in sorted(opts.labels):
        parts.extend(["--label", f"{key}={_value(opts.labels[key])}"])
    if opts.no_cache:
        parts.append("--no-cache")
    if opts.rm:
        parts.append("--rm")
    for tag in opts.tags:
        parts.extend(["--tag", tag])
    if opts.target:
        parts.extend(["--target", opts.target])
    parts.append(opts.buildpath)
    return " ".join(parts)


def image_inspect(tag: str) -> str:
    return f"docker image inspect --format '{{{{json .}}}}' {tag}"


def image_push(tag: str) -> str:
    return f"docker push {tag}"


def manifest_create(manifest: str, tags: Sequence[str]) -> str:
    return " ".join(["docker", "manifest", "create", "--insecure", "--amend", manifest, *tags])


def manifest_push(manifest: str) -> str:
    return f"docker manifest push --purge {manifest}"


def registry_login(registry: str, username: str, password: str) -> str:
    return f"docker login --username {_value(username)} --password {_value(password)} {registry}"


def login_succeeded(stdout: str, stderr: str) -> bool:
    """``docker login`` warns on stderr even when it works; stdout is authoritative."""
    return not stderr or stdout.lstrip().startswith(LOGIN_SUCCEEDED)


def server_version() -> str:
    return "docker info --format '{{ .ServerVersion }}'"
