"""Zip the local build context, honouring ``.dockerignore``."""

from __future__ import annotations

import io
import logging
import os
import time
import zipfile
from collections.abc import Sequence

from docker.utils.build import PatternMatcher

from windbag.shared.exceptions import ArchiveError

logger = logging.getLogger(__name__)

DOCKERIGNORE = ".dockerignore"

# 1980-01-01, the earliest timestamp a zip entry can carry.
_ZIP_EPOCH = 315532800


def read_dockerignore(context_dir: str) -> list[str]:
    """Return the exclude patterns from ``<context_dir>/.dockerignore`` (empty if absent)."""
    path = os.path.join(context_dir, DOCKERIGNORE)
    if not os.path.exists(path):
        return []
    try:
        with open(path, encoding="utf-8") as f:
            lines = [line.strip() for line in f.read().splitlines()]
    except OSError as exc:
        raise ArchiveError(f"failed to read {path}: {exc}") from exc
    return [line for line in lines if line and not line.startswith("#")]


def trim_build_files(excludes: Sequence[str], dockerfile: str) -> list[str]:
    """Make sure ``.dockerignore`` and the Dockerfile are never excluded."""
    trimmed = list(excludes)
    matcher = PatternMatcher(trimmed)
    for name in (DOCKERIGNORE, dockerfile):
        if name and matcher.matches(name):
            trimmed.append(f"!{name}")
    return trimmed


class _ZipWalker:
    def __init__(self, src: str, zf: zipfile.ZipFile, excludes: Sequence[str]) -> None:
        self._src = src
        self._zf = zf
        self._matcher = PatternMatcher(list(excludes))
        self._exclusions = [p.cleaned_pattern for p in self._matcher.patterns if p.exclusion]
        self.seen: set[str] = set()

    def walk(self, include: str) -> None:
        root = os.path.normpath(os.path.join(self._src, include))
        if not os.path.lexists(root):
            logger.warning("zip: include %s does not exist under %s", include, self._src)
            return
        self._visit(root, os.path.normpath(include))

    def _visit(self, path: str, include: str) -> None:
        rel = os.path.relpath(path, self._src)
        is_dir = os.path.isdir(path) and not os.path.islink(path)

        if rel == "." and is_dir:
            self._children(path, include)
            return

        # An exact include is archived whatever the excludes say.
        if rel != include and self._matcher.matches(rel):
            if is_dir and self._reincluded_below(rel):
                self._children(path, include)
            return

        if rel not in self.seen:
            self.seen.add(rel)
            self._add(path, rel, is_dir)
        if is_dir:
            self._children(path, include)

    def _reincluded_below(self, rel: str) -> bool:
        dir_slash = rel.replace(os.sep, "/") + "/"
        return any(f"{pattern}/".startswith(dir_slash) for pattern in self._exclusions)

    def _children(self, path: str, include: str) -> None:
        try:
            names = sorted(os.listdir(path))
        except OSError as exc:
            raise ArchiveError(f"cannot list {path}: {exc}") from exc
        for name in names:
            self._visit(os.path.join(path, name), include)

    def _add(self, path: str, rel: str, is_dir: bool) -> None:
        arcname = rel.replace(os.sep, "/")
        try:
            if os.path.islink(path):
                st = os.lstat(path)
                info = zipfile.ZipInfo(arcname, time.localtime(max(st.st_mtime, _ZIP_EPOCH))[:6])
                info.external_attr = (st.st_mode & 0xFFFF) << 16
                self._zf.writestr(info, os.readlink(path).replace(os.sep, "/"))
            elif is_dir:
                self._zf.write(path, arcname)
            else:
                self._zf.write(path, arcname, compress_type=zipfile.ZIP_DEFLATED)
        except OSError as exc:
            raise ArchiveError(f"cannot add {path} to zip: {exc}") from exc


def zip_directory(src: str, *, excludes: Sequence[str] = (), includes: Sequence[str] | None = None) -> io.BytesIO:
    """Archive ``src`` into an in-memory zip.

    Args:
        src: Directory (or single file) to archive.
        excludes: ``.dockerignore``-style patterns; ``!pattern`` re-includes.
        includes: Walk roots relative to ``src``; an exact include path is
            archived even if an exclude pattern matches it. Defaults to ``["."]``.

    Returns:
        A rewound buffer holding the zip. Directories are stored with a trailing ``/``.

    Raises:
        ArchiveError: On any local filesystem failure.
    """
    if not os.path.lexists(src):
        raise ArchiveError(f"path {src!r} does not exist")
    roots = list(includes) if includes else ["."]
    if not os.path.isdir(src):
        if includes:
            logger.warning("zip: cannot archive a file with includes")
        src, base = os.path.split(os.path.normpath(src))
        roots = [base]

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED, strict_timestamps=False) as zf:
        walker = _ZipWalker(src or ".", zf, excludes)
        for include in roots:
            walker.walk(include)
    logger.debug("zipped %d entries from %s", len(walker.seen), src)
    buf.seek(0)
    return buf


def build_context_archive(path: str, dockerfile: str | None = None) -> io.BytesIO:
    """Zip the build context at ``path`` minus its ``.dockerignore`` matches.

    Args:
        path: Build context directory; ``~`` is expanded.
        dockerfile: Dockerfile path, defaults to ``<path>/Dockerfile``.

    Raises:
        ArchiveError: If the context or Dockerfile is missing or unreadable.
    """
    context_dir = os.path.abspath(os.path.expanduser(path))
    if not os.path.isdir(context_dir):
        raise ArchiveError(f"path {context_dir!r} is not a directory")
    dockerfile_path = resolve_dockerfile(context_dir, dockerfile)

    rel_dockerfile = os.path.relpath(dockerfile_path, context_dir)
    excludes = trim_build_files(read_dockerignore(context_dir), rel_dockerfile)
    return zip_directory(context_dir, excludes=excludes)


def resolve_dockerfile(context_dir: str, dockerfile: str | None) -> str:
    """Return the absolute Dockerfile path, checking it is a regular file."""
    candidate = os.path.abspath(os.path.expanduser(dockerfile or os.path.join(context_dir, "Dockerfile")))
    if not os.path.exists(candidate):
        raise ArchiveError(f"path {candidate!r} does not exist")
    if os.path.isdir(candidate):
        raise ArchiveError(f"path {candidate!r} is not a file")
    return candidate
