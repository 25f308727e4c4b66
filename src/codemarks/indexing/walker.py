"""
Ignore-aware directory traversal.

Yields candidate text files under a root. Excluded directories are pruned
before descent, so ignore rules of an excluded subtree are never read and
generated or vendored trees are never walked.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterator

import structlog

from codemarks.indexing.ignore_parser import IgnoreFilter, to_relative

logger = structlog.get_logger(__name__)

BINARY_EXTENSIONS = frozenset(
    {
        ".7z", ".a", ".avi", ".bin", ".bmp", ".class", ".dll", ".doc", ".docx",
        ".dylib", ".exe", ".gif", ".gz", ".ico", ".img", ".jar", ".jpeg", ".jpg",
        ".mov", ".mp3", ".mp4", ".o", ".obj", ".pdf", ".png", ".ppt", ".pptx",
        ".pyc", ".rar", ".so", ".tar", ".ttf", ".wasm", ".wav", ".webp",
        ".woff", ".woff2", ".xls", ".xlsx", ".zip",
    }
)


def is_binary_extension(path: str | Path) -> bool:
    """Check whether a file name carries a well-known binary extension."""
    return os.path.splitext(str(path))[1].lower() in BINARY_EXTENSIONS


class DirectoryWalker:
    """
    Traverses a directory tree under an IgnoreFilter.

    Entries are visited depth-first in name order, so two walks over the same
    filesystem snapshot yield the same sequence. Symbolic links are not
    followed.
    """

    def __init__(self, root: Path, ignore_filter: IgnoreFilter) -> None:
        self.root = Path(root).resolve()
        self.ignore_filter = ignore_filter

    def walk(self, start: Path | None = None) -> Iterator[Path]:
        """
        Yield candidate file paths.

        Args:
            start: Directory beneath the root to walk instead of the whole
                root. Its own ancestors are checked against the filter first.

        Yields:
            Absolute file paths.
        """
        base = self.root
        if start is not None:
            rel = to_relative(start, self.root)
            if rel is None or self.ignore_filter.is_excluded(self.root / rel, is_dir=True):
                return
            base = self.root / rel if rel else self.root

        stack: list[Path] = [base]
        while stack:
            directory = stack.pop()
            try:
                with os.scandir(directory) as it:
                    entries = sorted(it, key=lambda e: e.name)
            except OSError as e:
                logger.info("Skipping unreadable directory", path=str(directory), error=str(e))
                continue

            subdirs: list[Path] = []
            for entry in entries:
                try:
                    if entry.is_symlink():
                        continue
                    is_dir = entry.is_dir(follow_symlinks=False)
                    is_file = not is_dir and entry.is_file(follow_symlinks=False)
                except OSError:
                    continue

                if not is_dir and not is_file:
                    continue

                rel = to_relative(entry.path, self.root)
                if rel is None or self.ignore_filter.excludes_entry(rel, is_dir=is_dir):
                    continue

                if is_dir:
                    subdirs.append(Path(entry.path))
                elif not is_binary_extension(entry.name):
                    yield Path(entry.path)

            # Reversed so that the first subdirectory is popped first.
            stack.extend(reversed(subdirs))
