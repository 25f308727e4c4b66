"""
Ignore file parser for .gitignore, .ignore and .codemarksignore.

Combines exclusions from two independent sources:
1. Ignore files found in any directory under the root, with gitignore
   semantics (nested files override their parents, ``!`` re-includes)
2. User-supplied globs (``--ignore`` and ``scan.ignore_patterns``), which
   are always exclusions and are evaluated relative to the root

A path excluded by either source is excluded.
"""

from __future__ import annotations

import threading
from pathlib import Path, PurePosixPath
from typing import Iterable

import structlog
from pathspec import GitIgnoreSpec

logger = structlog.get_logger(__name__)

DEFAULT_IGNORE_FILENAMES = (".gitignore", ".ignore", ".codemarksignore")


def parse_ignore_file(path: Path) -> list[str]:
    """
    Parse an ignore file (.gitignore format).

    Args:
        path: Path to the ignore file.

    Returns:
        Pattern lines, blank lines and comments removed. Negations are kept.
    """
    if not path.is_file():
        return []

    patterns: list[str] = []

    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning("Failed to read ignore file", path=str(path), error=str(e))
        return []

    for line in content.splitlines():
        stripped = line.rstrip()
        if not stripped.strip() or stripped.lstrip().startswith("#"):
            continue
        patterns.append(stripped)

    return patterns


def build_spec(patterns: Iterable[str], source: str = "") -> GitIgnoreSpec | None:
    """
    Compile gitignore-style lines, skipping (and logging) invalid ones.

    Returns:
        The compiled spec, or None when no valid pattern remains.
    """
    valid: list[str] = []
    for pattern in patterns:
        try:
            GitIgnoreSpec.from_lines([pattern])
        except ValueError as e:
            logger.warning("Invalid ignore pattern", pattern=pattern, source=source, error=str(e))
            continue
        valid.append(pattern)

    if not valid:
        return None
    return GitIgnoreSpec.from_lines(valid)


def to_relative(path: str | Path, root: Path) -> str | None:
    """
    Express a path relative to root in POSIX form.

    Returns:
        The relative path ("" for the root itself) or None when the path
        lies outside the root.
    """
    p = Path(path)
    if not p.is_absolute():
        if ".." in p.parts:
            return None
        return PurePosixPath(*p.parts).as_posix() if p.parts else ""
    try:
        rel = p.relative_to(root)
    except ValueError:
        try:
            rel = p.resolve().relative_to(root)
        except (ValueError, OSError):
            return None
    if not rel.parts:
        return ""
    return PurePosixPath(*rel.parts).as_posix()


class IgnoreFilter:
    """
    Decides whether a path under a root is excluded from scanning.

    Ignore files are loaded lazily per directory and cached; call
    ``invalidate`` when one of them changes.
    """

    def __init__(
        self,
        root: Path,
        ignore_patterns: Iterable[str] = (),
        ignore_filenames: Iterable[str] = DEFAULT_IGNORE_FILENAMES,
        include_hidden: bool = False,
    ) -> None:
        self.root = Path(root).resolve()
        self.ignore_filenames = tuple(ignore_filenames)
        self.include_hidden = include_hidden

        user_patterns: list[str] = []
        for pattern in ignore_patterns:
            pattern = pattern.strip()
            if not pattern:
                continue
            if pattern.startswith("!"):
                logger.warning("Negated ignore globs are not supported", pattern=pattern)
                continue
            user_patterns.append(pattern)
        self.user_patterns = user_patterns
        self._user_spec = build_spec(user_patterns, source="--ignore")

        self._dir_specs: dict[str, GitIgnoreSpec | None] = {}
        self._lock = threading.Lock()

    def is_ignore_file(self, path: str | Path) -> bool:
        """Check whether a path names one of the honoured ignore files."""
        return Path(path).name in self.ignore_filenames

    def invalidate(self, directory: str | Path | None = None) -> None:
        """Forget cached ignore files (all, or those of one directory)."""
        with self._lock:
            if directory is None:
                self._dir_specs.clear()
                return
            rel = to_relative(directory, self.root)
            if rel is not None:
                self._dir_specs.pop(rel, None)

    def _spec_for(self, rel_dir: str) -> GitIgnoreSpec | None:
        with self._lock:
            if rel_dir in self._dir_specs:
                return self._dir_specs[rel_dir]

        directory = self.root / rel_dir if rel_dir else self.root
        lines: list[str] = []
        for name in self.ignore_filenames:
            lines.extend(parse_ignore_file(directory / name))
        spec = build_spec(lines, source=str(directory)) if lines else None

        with self._lock:
            self._dir_specs[rel_dir] = spec
        return spec

    def excludes_entry(self, rel_path: str, is_dir: bool) -> bool:
        """
        Check a single entry, assuming its ancestors are not excluded.

        Args:
            rel_path: POSIX path relative to the root.
            is_dir: Whether the entry is a directory.

        Returns:
            True if the entry should be skipped (and, for a directory, not
            descended into).
        """
        if not rel_path:
            return False

        parts = rel_path.split("/")
        if not self.include_hidden and parts[-1].startswith("."):
            return True

        suffix = "/" if is_dir else ""

        if self._user_spec is not None and self._user_spec.match_file(rel_path + suffix):
            return True

        ignored: bool | None = None
        for depth in range(len(parts)):
            spec = self._spec_for("/".join(parts[:depth]))
            if spec is None:
                continue
            result = spec.check_file("/".join(parts[depth:]) + suffix)
            if result.include is not None:
                ignored = result.include

        return bool(ignored)

    def is_excluded(self, path: str | Path, is_dir: bool | None = None) -> bool:
        """
        Check a path including all of its ancestor directories.

        Used for change events, which can name a file deep inside a directory
        that is itself excluded. Paths outside the root are excluded.
        """
        rel = to_relative(path, self.root)
        if rel is None:
            return True
        if rel == "":
            return False

        if is_dir is None:
            full = self.root / rel
            is_dir = full.is_dir() and not full.is_symlink()

        parts = rel.split("/")
        for depth in range(1, len(parts)):
            if self.excludes_entry("/".join(parts[:depth]), is_dir=True):
                return True
        return self.excludes_entry(rel, is_dir=is_dir)

    def __repr__(self) -> str:
        return f"IgnoreFilter(root={str(self.root)!r}, user_patterns={self.user_patterns!r})"

