"""Command line entry for fleet builds and digest lookups."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from windbag.builder.service import FleetBuilder
from windbag.config import Settings, get_settings
from windbag.docker.digest import ImageDigestClient
from windbag.docker.registry_auth import RegistryAuthStore
from windbag.shared.exceptions import WindbagError
from windbag.shared.models import BuildPlan, BuildReport

logger = logging.getLogger(__name__)


def load_plan(path: str) -> BuildPlan:
    """Read and validate a JSON build plan."""
    with open(path, encoding="utf-8") as f:
        return BuildPlan.model_validate_json(f.read())


async def run_build(settings: Settings, plan: BuildPlan) -> BuildReport:
    """Build ``plan`` on all of its workers."""
    builder = FleetBuilder(settings)
    report = await builder.build(plan)
    logger.info(
        "built %s on %d worker(s), pushed %d tag(s), manifest host %s",
        report.image_id,
        len(report.workers),
        len(report.pushed_tags),
        report.manifest_host or "-",
    )
    return report


async def run_digest(settings: Settings, image: str, *, auths: RegistryAuthStore | None = None) -> str:
    """Resolve ``image`` to its registry digest."""
    client = ImageDigestClient(auths=auths, insecure=settings.registry_insecure, timeout=settings.registry_timeout)
    return await client.get_digest(image)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="windbag", description="Build Windows container images on a worker fleet.")
    sub = parser.add_subparsers(dest="command", required=True)

    build = sub.add_parser("build", help="build, push and manifest an image described by a JSON plan")
    build.add_argument("plan", help="path to the build plan JSON file")

    digest = sub.add_parser("digest", help="print the registry digest of an image")
    digest.add_argument("image", help="image reference, e.g. thxcode/logtail-windows:v1.0.10-1809")
    digest.add_argument("--plan", help="build plan whose registry credentials are used for the lookup")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``python -m windbag.builder.worker``."""
    args = _parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "build":
            report = asyncio.run(run_build(settings, load_plan(args.plan)))
            print(report.model_dump_json(indent=2))
        else:
            auths = RegistryAuthStore.from_credentials(load_plan(args.plan).registries) if args.plan else None
            print(asyncio.run(run_digest(settings, args.image, auths=auths)))
    except WindbagError as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    except (OSError, ValueError) as exc:
        logger.error("invalid input: %s", exc)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
