"""
Path sandbox — maps (virtual directory, argument) to a real path under the
shared root and refuses anything that would leave it.

Resolution is lexical only: no stat, no symlink resolution, nothing that
touches the filesystem. The shared root itself is canonicalised once, when
the sandbox is created.

    box = PathSandbox("/srv/share")
    box.resolve("/", "docs")            → Resolution(real=/srv/share/docs, virtual=/docs)
    box.resolve("/docs", "../etc")      → PathRejected
    box.parent("/docs/2024")            → "/docs"
"""

from __future__ import annotations

import logging
import ntpath
import os
import posixpath
from dataclasses import dataclass
from pathlib import Path

from .errors import PathRejected

log = logging.getLogger("sharedir.sandbox")


@dataclass(frozen=True)
class Resolution:
    real_path: Path
    virtual_path: str        # "/"-rooted, "/"-separated
    is_root: bool


def _segments(text: str) -> list[str]:
    """Split a wire path on either separator, dropping empty and '.' parts."""
    return [p for p in text.replace("\\", "/").split("/") if p and p != "."]


def _check_relative(text: str) -> list[str]:
    if "\x00" in text:
        raise PathRejected("Path contains a NUL byte")
    normalized = text.replace("\\", "/")
    if normalized.startswith("/"):
        raise PathRejected(f"Absolute path not allowed: {text!r}")
    if os.name == "nt" and ntpath.splitdrive(text)[0]:
        raise PathRejected(f"Drive-qualified path not allowed: {text!r}")
    parts = _segments(text)
    if ".." in parts:
        raise PathRejected(f"Parent reference not allowed: {text!r}")
    return parts


class PathSandbox:
    """Resolves client-supplied names against one shared root directory."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self._root = os.path.realpath(os.fspath(root))

    @property
    def root(self) -> Path:
        return Path(self._root)

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def resolve(self, virtual_dir: str, argument: str = "") -> Resolution:
        """
        Combine root + *virtual_dir* + *argument* and return the result if it
        stays inside the root. Raises PathRejected otherwise.
        """
        base_parts = _check_relative(virtual_dir.lstrip("/\\"))
        arg_parts = _check_relative(argument.strip())

        candidate = os.path.normpath(os.path.join(self._root, *base_parts, *arg_parts))
        if not self._contains(candidate):
            log.warning("Sandbox escape rejected: vdir=%r arg=%r", virtual_dir, argument)
            raise PathRejected(f"Path escapes the shared root: {argument!r}")

        rel = os.path.relpath(candidate, self._root)
        if rel == os.curdir:
            virtual = "/"
        else:
            virtual = "/" + rel.replace(os.sep, "/")
        return Resolution(
            real_path=Path(candidate),
            virtual_path=virtual,
            is_root=(candidate == self._root),
        )

    @staticmethod
    def is_root_reference(virtual_dir: str, argument: str) -> bool:
        """
        Lenient check used before destructive commands: does *argument*,
        read from *virtual_dir* with ".." collapsed and absolute forms taken
        as root-relative, name the shared root itself?
        """
        text = argument.strip().replace("\\", "/")
        stack = [] if text.startswith("/") else _segments(virtual_dir)
        for seg in _segments(text):
            if seg == "..":
                if stack:
                    stack.pop()
            else:
                stack.append(seg)
        return not stack

    @staticmethod
    def parent(virtual_dir: str) -> str:
        """String-level parent of a virtual directory; "/" is its own parent."""
        parts = _segments(virtual_dir)
        if not parts:
            return "/"
        return "/" + "/".join(parts[:-1]) if len(parts) > 1 else "/"

    @staticmethod
    def safe_join(dest_dir: str | os.PathLike[str], rel_path: str) -> Path:
        """
        Join a relative path received inside a directory transfer onto
        *dest_dir*, accepting either separator and refusing escapes.
        """
        parts = _check_relative(rel_path)
        if not parts:
            raise PathRejected(f"Empty relative path: {rel_path!r}")
        base = os.path.normpath(os.path.abspath(os.fspath(dest_dir)))
        candidate = os.path.normpath(os.path.join(base, *parts))
        if os.path.commonpath([base, candidate]) != base or candidate == base:
            raise PathRejected(f"Relative path escapes destination: {rel_path!r}")
        return Path(candidate)

    @staticmethod
    def to_wire(rel_path: str | os.PathLike[str]) -> str:
        """Render a local relative path with "/" separators for the wire."""
        return posixpath.join(*Path(rel_path).parts)

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _contains(self, candidate: str) -> bool:
        try:
            return os.path.commonpath([self._root, candidate]) == self._root
        except ValueError:
            # different drives on Windows
            return False
