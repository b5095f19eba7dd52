"""Inject concrete values into Dockerfile automatic platform ``ARG`` declarations."""

from __future__ import annotations

_ARG = "ARG "

TARGET_PLATFORM = "TARGETPLATFORM"
TARGET_OS = "TARGETOS"
TARGET_ARCH = "TARGETARCH"
TARGET_VARIANT = "TARGETVARIANT"


def inject_target_platform_args(dockerfile: str, os: str, arch: str, variant: str = "") -> str:
    """Rewrite bare ``ARG TARGET*`` lines to carry the worker's platform.

    Only declarations without a default are touched, so the rewrite is
    idempotent. Nothing changes if ``os`` or ``arch`` is unknown.

    Args:
        dockerfile: Dockerfile contents.
        os: Target OS, e.g. ``windows``.
        arch: Target architecture, e.g. ``amd64``.
        variant: Target variant; Windows workers use their release id.

    Returns:
        The rewritten Dockerfile.
    """
    if not os or not arch:
        return dockerfile

    values = {
        TARGET_PLATFORM: f"{os}/{arch}",
        TARGET_OS: os,
        TARGET_ARCH: arch,
        TARGET_VARIANT: variant,
    }
    lines = []
    for line in dockerfile.splitlines(keepends=True):
        body = line.rstrip("\r\n")
        if body.startswith(_ARG):
            name = body[len(_ARG) :].strip()
            if name in values:
                line = f'{_ARG}{name}="{values[name]}"{line[len(body):]}'
        lines.append(line)
    return "".join(lines)
