"""PowerShell snippets run on workers, and parsers for their output."""

from __future__ import annotations

import json
import posixpath
from collections.abc import Sequence
from typing import Any

from windbag.shared.exceptions import RemoteCommandError
from windbag.shared.models import DockerProvisioning

DOCKER_INSTALLER_URI = "https://raw.githubusercontent.com/thxCode/terraform-provider-windbag/master/tools/docker.ps1"

HOST_VERSION = (
    'Get-ItemProperty -Path "HKLM:\\SOFTWARE\\Microsoft\\Windows NT\\CurrentVersion" '
    "| Select-Object -Property CurrentMajorVersionNumber,CurrentMinorVersionNumber,"
    "CurrentBuildNumber,UBR,ReleaseId,BuildLabEx,CurrentBuild | ConvertTo-JSON -Compress;"
)

HOST_ARCH = (
    '[Environment]::GetEnvironmentVariable("PROCESSOR_ARCHITECTURE", [EnvironmentVariableTarget]::Machine);'
)

_ARCHES = {"arm": "arm", "x86": "386", "386": "386"}


def _int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def parse_host_version(stdout: str) -> dict[str, Any]:
    """Map the ``HOST_VERSION`` JSON onto worker fact names."""
    try:
        raw = json.loads(stdout)
    except ValueError as exc:
        raise RemoteCommandError(
            f"failed to unmarshal host version retrieve output: {exc}", command=HOST_VERSION, stdout=stdout
        ) from exc
    if not isinstance(raw, dict):
        raise RemoteCommandError("unexpected host version retrieve output", command=HOST_VERSION, stdout=stdout)
    return {
        "os_major": _int(raw.get("CurrentMajorVersionNumber")),
        "os_minor": _int(raw.get("CurrentMinorVersionNumber")),
        "os_build": _int(raw.get("CurrentBuildNumber")),
        "os_ubr": _int(raw.get("UBR")),
        "os_release": str(raw.get("ReleaseId") or ""),
    }


def parse_host_arch(stdout: str) -> str:
    """``PROCESSOR_ARCHITECTURE`` to a GOARCH-style name; anything unknown is ``amd64``."""
    return _ARCHES.get(stdout.strip().lower(), "amd64")


def prepare_workdir(work_dir: str) -> str:
    """Recreate ``buildpath`` and ``dockerfile`` directories, replacing stray files of the same name."""
    return f"""
$Path = "{work_dir}";
if (Test-Path -Path "$Path/buildpath") {{
  if (-not (Test-Path -Path "$Path/buildpath" -PathType Container)) {{
    Remove-Item -Force -Path "$Path/buildpath" -ErrorAction Ignore | Out-Null;
  }}
}};
New-Item -Force -ItemType Directory -Path "$Path/buildpath" | Out-Null;
if (Test-Path -Path "$Path/dockerfile") {{
  if (-not (Test-Path -Path "$Path/dockerfile" -PathType Container)) {{
    Remove-Item -Force -Path "$Path/dockerfile" -ErrorAction Ignore | Out-Null;
  }}
}};
New-Item -Force -ItemType Directory -Path "$Path/dockerfile" | Out-Null;
"""


def expand_archive(src: str, dst: str) -> str:
    return f'Expand-Archive -Force -Path "{src}" -DestinationPath "{dst}" | Out-Null'


def archive_path(work_dir: str, image_id: str) -> str:
    return posixpath.join(work_dir, "buildpath", f"{image_id}.zip")


def buildpath(work_dir: str, image_id: str) -> str:
    return posixpath.join(work_dir, "buildpath", image_id)


def dockerfile_path(work_dir: str, image_id: str) -> str:
    return posixpath.join(work_dir, "dockerfile", f"Dockerfile.{image_id}")


def install_docker(provisioning: DockerProvisioning, registries: Sequence[str] = ()) -> str:
    """Render ``$env:DOCKER_*`` settings followed by the remote installer.

    Args:
        provisioning: Requested daemon version and configuration.
        registries: Registry addresses allowed to receive non-distributable
            layers when ``provisioning`` does not list its own.
    """
    lines: list[str] = []
    if provisioning.version:
        lines.append(f'$env:DOCKER_VERSION="{provisioning.version}";')
    if provisioning.download_uri:
        lines.append(f'$env:DOCKER_DOWNLOAD_URI="{provisioning.download_uri}";')
    allowed = provisioning.allow_nondistributable_artifacts
    if allowed is not None and not allowed:
        allowed = list(registries)
    if allowed:
        lines.append(f'$env:DOCKER_CONFIGURATION_ALLOW_NONDISTRIBUTABLE_ARTIFACT="{",".join(allowed)}";')
    lines.append(f'$env:DOCKER_CONFIGURATION_EXPERIMENTAL="{str(provisioning.experimental).lower()}";')
    if provisioning.max_concurrent_downloads:
        lines.append(f'$env:DOCKER_CONFIGURATION_MAX_CONCURRENT_DOWNLOADS="{provisioning.max_concurrent_downloads}";')
    if provisioning.max_concurrent_uploads:
        lines.append(f'$env:DOCKER_CONFIGURATION_MAX_CONCURRENT_UPLOADS="{provisioning.max_concurrent_uploads}";')
    if provisioning.max_download_attempts:
        lines.append(f'$env:DOCKER_CONFIGURATION_MAX_DOWNLOAD_ATTEMPTS="{provisioning.max_download_attempts}";')
    if provisioning.registry_mirrors:
        lines.append(f'$env:DOCKER_CONFIGURATION_REGISTRY_MIRRORS="{",".join(provisioning.registry_mirrors)}";')
    lines.append(f"Invoke-WebRequest -UseBasicParsing -Uri {DOCKER_INSTALLER_URI} | Invoke-Expression;")
    return "\n".join(lines)
