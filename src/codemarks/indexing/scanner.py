"""
Annotation scanner.

Combines the directory walker and the pattern matcher. A full scan covers
every candidate file under the root; a confined scan covers an explicit list
of paths and is what watch mode uses for incremental updates.

Scanning is best-effort: files that cannot be read, are too large or are not
valid UTF-8 are recorded as skipped and the scan carries on. A skipped file
is left out of the result scope, so its stored annotations survive the merge.
A file that vanished is the exception: it really has no annotations left.
"""

from __future__ import annotations

import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

import structlog

from codemarks.indexing.ignore_parser import IgnoreFilter, to_relative
from codemarks.indexing.matcher import PatternMatcher
from codemarks.indexing.walker import DirectoryWalker, is_binary_extension
from codemarks.models import Annotation, Scope

if TYPE_CHECKING:
    from codemarks.config import CodemarksConfig

logger = structlog.get_logger(__name__)

BINARY_SNIFF_BYTES = 8192


class SkipFile(Exception):
    """Raised internally when a file cannot be scanned."""


class FileVanished(SkipFile):
    """The file was deleted between listing and reading."""


@dataclass
class SkippedFile:
    """A file the scanner could not read."""

    path: str
    reason: str
    retained: bool = True


@dataclass
class ScanResult:
    """Result of a full or confined scan."""

    annotations: list[Annotation] = field(default_factory=list)
    scope: Scope = field(default_factory=Scope.full)
    files_scanned: int = 0
    skipped: list[SkippedFile] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def count(self) -> int:
        return len(self.annotations)


class Scanner:
    """
    Extracts annotations from files under a root directory.

    Features:
    - Ignore-aware full traversal
    - Confined rescans of explicit paths
    - Parallel file reading on a thread pool
    """

    def __init__(
        self,
        root: Path,
        matcher: PatternMatcher,
        ignore_filter: IgnoreFilter | None = None,
        max_file_size_kb: int = 1024,
        workers: int = 1,
    ) -> None:
        """
        Initialize the scanner.

        Args:
            root: Project root; annotation paths are relative to it.
            matcher: Compiled annotation pattern.
            ignore_filter: Exclusion rules. Defaults to ignore files only.
            max_file_size_kb: Larger files are skipped.
            workers: Threads used to read and match files.
        """
        self.root = Path(root).resolve()
        self.matcher = matcher
        self.ignore_filter = ignore_filter or IgnoreFilter(self.root)
        self.walker = DirectoryWalker(self.root, self.ignore_filter)
        self.max_file_size = max_file_size_kb * 1024
        self.workers = max(1, workers)

    @classmethod
    def from_config(
        cls,
        root: Path,
        config: "CodemarksConfig",
        ignore_patterns: Iterable[str] = (),
        pattern: str | None = None,
    ) -> "Scanner":
        """
        Build a scanner from configuration plus command-line overrides.

        Raises:
            ConfigurationError: If the pattern does not compile.
        """
        matcher = PatternMatcher(
            pattern or config.annotation_pattern,
            max_line_length=config.scan.max_line_length,
        )
        ignore_filter = IgnoreFilter(
            root,
            ignore_patterns=[*config.scan.ignore_patterns, *ignore_patterns],
            ignore_filenames=config.scan.ignore_filenames,
            include_hidden=config.scan.include_hidden,
        )
        return cls(
            root,
            matcher,
            ignore_filter=ignore_filter,
            max_file_size_kb=config.scan.max_file_size_kb,
            workers=config.scan.workers,
        )

    def scan_file(self, path: Path) -> list[Annotation]:
        """
        Extract annotations from one file.

        Raises:
            SkipFile: If the file cannot be scanned.
        """
        rel = to_relative(path, self.root)
        if rel is None:
            raise SkipFile("outside root")

        try:
            size = path.stat().st_size
            if size > self.max_file_size:
                raise SkipFile(f"larger than {self.max_file_size // 1024} KB")
            data = path.read_bytes()
        except FileNotFoundError:
            raise FileVanished("vanished") from None
        except PermissionError:
            raise SkipFile("permission denied") from None
        except OSError as e:
            raise SkipFile(str(e)) from e

        if b"\0" in data[:BINARY_SNIFF_BYTES]:
            raise SkipFile("binary content")

        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError:
            raise SkipFile("not valid UTF-8") from None

        annotations: list[Annotation] = []
        seen: Counter[tuple[str, str]] = Counter()

        for index, line in enumerate(text.split("\n")):
            found = self.matcher.match(line.rstrip("\r"))
            if found is None:
                continue
            key = (found.kind, found.message)
            annotations.append(
                Annotation(
                    file=rel,
                    line_number=index + 1,
                    kind=found.kind,
                    message=found.message,
                    occurrence=seen[key],
                )
            )
            seen[key] += 1

        return annotations

    def _scan_one(self, path: Path) -> tuple[list[Annotation], SkippedFile | None]:
        try:
            return self.scan_file(path), None
        except FileVanished as e:
            logger.debug("File vanished", path=str(path))
            return [], SkippedFile(path=str(path), reason=str(e), retained=False)
        except SkipFile as e:
            logger.debug("Skipping file", path=str(path), reason=str(e))
            return [], SkippedFile(path=str(path), reason=str(e))

    def _scan_files(self, files: Iterable[Path], scope: Scope) -> ScanResult:
        start = time.monotonic()
        result = ScanResult(scope=scope)

        if self.workers > 1:
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="codemarks-scan") as pool:
                outcomes = list(pool.map(self._scan_one, files))
        else:
            outcomes = [self._scan_one(path) for path in files]

        unread: set[str] = set()
        for annotations, skipped in outcomes:
            if skipped is not None:
                result.skipped.append(skipped)
                rel = to_relative(Path(skipped.path), self.root)
                if skipped.retained and rel:
                    unread.add(rel)
                continue
            result.files_scanned += 1
            result.annotations.extend(annotations)

        result.scope = scope.excluding(unread)

        result.duration_seconds = time.monotonic() - start
        return result

    def scan_root(self) -> ScanResult:
        """
        Scan every candidate file under the root.

        Returns:
            ScanResult with full scope.
        """
        logger.info("Scanning directory", root=str(self.root))
        result = self._scan_files(self.walker.walk(), Scope.full())
        logger.info(
            "Directory scan complete",
            root=str(self.root),
            files=result.files_scanned,
            annotations=result.count,
            skipped=len(result.skipped),
        )
        return result

    def scan_paths(self, paths: Iterable[str | Path]) -> ScanResult:
        """
        Scan an explicit set of paths.

        A path that no longer exists contributes zero annotations, which lets
        the merge drop its stale entries. A file that exists but cannot be read
        is excluded from the scope instead. A directory path is walked under the
        ignore filter; the root itself turns the scan into a full one. Paths
        outside the root are ignored.

        Returns:
            ScanResult whose scope is the given paths.
        """
        scope_paths: set[str] = set()
        files: dict[Path, None] = {}

        for raw in paths:
            path = Path(raw)
            if not path.is_absolute():
                path = self.root / path

            rel = to_relative(path, self.root)
            if rel is None:
                logger.debug("Ignoring path outside root", path=str(path))
                continue
            if rel == "":
                return self.scan_root()
            scope_paths.add(rel)

            full = self.root / rel
            if full.is_symlink():
                continue
            if full.is_dir():
                for found in self.walker.walk(full):
                    files.setdefault(found, None)
            elif full.is_file() and not is_binary_extension(full):
                files.setdefault(full, None)

        result = self._scan_files(sorted(files), Scope.confined(scope_paths))
        logger.debug(
            "Confined scan complete",
            paths=len(scope_paths),
            files=result.files_scanned,
            annotations=result.count,
        )
        return result
