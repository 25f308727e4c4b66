"""
Codemarks service.

Provides the CodemarksService orchestration class used by the command line.
One service instance serves one invocation: it owns the configuration, the
persistence backend and the lazily loaded annotation store.
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

import structlog

from codemarks.config import CodemarksConfig, DEFAULT_ANNOTATION_PATTERN, load_config, save_config
from codemarks.core import ConfigurationError
from codemarks.indexing.matcher import compile_pattern
from codemarks.indexing.scanner import Scanner, ScanResult
from codemarks.indexing.watcher import AnnotationWatcher, BatchReport
from codemarks.models import Annotation, MergeSummary, PruneSummary
from codemarks.project_detection import detect_project_name
from codemarks.storage.annotation_store import AnnotationStore
from codemarks.storage.persistence import StorePersistence, open_persistence

logger = structlog.get_logger(__name__)


@dataclass
class ScanReport:
    """Result of scanning a root and merging it into its project."""

    project: str
    root: Path
    result: ScanResult
    summary: MergeSummary
    total: int
    ephemeral: bool = False


class CodemarksService:
    """
    Main codemarks service orchestrating all components.

    It manages:
    - Configuration and command-line overrides
    - Loading and saving the projects database
    - Full scans, watch mode, clean and CI checks
    """

    def __init__(
        self,
        config: CodemarksConfig | None = None,
        ephemeral: bool = False,
        persistence: StorePersistence | None = None,
    ) -> None:
        """
        Initialize the service.

        Args:
            config: Configuration. Loaded from disk unless ephemeral.
            ephemeral: Never read or write any per-user document.
            persistence: Persistence backend override.
        """
        self.ephemeral = ephemeral
        self.config = config or load_config(ephemeral=ephemeral)
        self.persistence = persistence or open_persistence(ephemeral=ephemeral)
        self._store: AnnotationStore | None = None

    @property
    def store(self) -> AnnotationStore:
        """The annotation store, loaded on first use."""
        if self._store is None:
            self._store = self.persistence.load()
        return self._store

    def save(self) -> None:
        self.persistence.save(self.store)

    def resolve_target(self, directory: str | Path, name: str | None = None) -> tuple[Path, str]:
        """
        Resolve a root directory and the project name it is stored under.

        Raises:
            ConfigurationError: If the directory does not exist.
        """
        root = Path(directory).expanduser()
        if not root.is_dir():
            raise ConfigurationError(f"Directory does not exist: {root}")
        root = root.resolve()
        project = name.strip() if name and name.strip() else detect_project_name(root)
        return root, project

    def build_scanner(
        self,
        root: Path,
        ignore: Iterable[str] = (),
        pattern: str | None = None,
    ) -> Scanner:
        return Scanner.from_config(root, self.config, ignore_patterns=ignore, pattern=pattern)

    def scan(
        self,
        directory: str | Path = ".",
        ignore: Iterable[str] = (),
        pattern: str | None = None,
        name: str | None = None,
    ) -> ScanReport:
        """
        Scan a directory and merge the result into its project.

        Args:
            directory: Root to scan.
            ignore: Extra exclusion globs.
            pattern: Annotation pattern overriding the configured one.
            name: Project name overriding detection.

        Returns:
            ScanReport for display.
        """
        root, project = self.resolve_target(directory, name)
        scanner = self.build_scanner(root, ignore, pattern)
        result = scanner.scan_root()
        return self._apply(project, root, result)

    def _apply(self, project: str, root: Path, result: ScanResult) -> ScanReport:
        summary = self.store.merge(project, result.annotations, result.scope, root=root)
        self.save()
        total = len(self.store.get_project(project)) if project in self.store else 0
        return ScanReport(
            project=project,
            root=root,
            result=result,
            summary=summary,
            total=total,
            ephemeral=self.persistence.ephemeral,
        )

    async def watch(
        self,
        directory: str | Path = ".",
        ignore: Iterable[str] = (),
        pattern: str | None = None,
        name: str | None = None,
        debounce_ms: int | None = None,
        initial_scan: bool | None = None,
        on_scan: Callable[[ScanReport], None] | None = None,
        on_batch: Callable[[BatchReport], None] | None = None,
        on_start: Callable[[AnnotationWatcher], None] | None = None,
    ) -> AnnotationWatcher:
        """
        Watch a directory until SIGINT/SIGTERM or ``watcher.stop()``.

        Args:
            directory: Root to watch.
            ignore: Extra exclusion globs.
            pattern: Annotation pattern overriding the configured one.
            name: Project name overriding detection.
            debounce_ms: Quiet period override.
            initial_scan: Run a full scan first (defaults to configuration).
            on_scan: Receives the initial scan report.
            on_batch: Receives a report after every rescan.
            on_start: Receives the watcher once it is running.

        Returns:
            The stopped watcher.

        Raises:
            WatchError: If the directory cannot be watched.
            StoreError: If the store cannot be saved.
        """
        root, project = self.resolve_target(directory, name)
        scanner = self.build_scanner(root, ignore, pattern)
        if initial_scan is None:
            initial_scan = self.config.watch.initial_scan

        if initial_scan:
            result = await asyncio.to_thread(scanner.scan_root)
            report = self._apply(project, root, result)
            if on_scan is not None:
                on_scan(report)

        watcher = AnnotationWatcher(
            scanner=scanner,
            store=self.store,
            persistence=self.persistence,
            project=project,
            debounce_ms=debounce_ms or self.config.watch.debounce_ms,
            queue_size=self.config.watch.queue_size,
            on_batch=on_batch,
        )

        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, watcher.stop)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Cannot install signal handler", signal=sig.name)

        run_task = asyncio.create_task(watcher.run())
        try:
            if on_start is not None:
                started = asyncio.create_task(watcher.started.wait())
                await asyncio.wait({started, run_task}, return_when=asyncio.FIRST_COMPLETED)
                if watcher.started.is_set():
                    on_start(watcher)
                else:
                    started.cancel()
            await run_task
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

        return watcher

    def clean(self, project: str | None = None, dry_run: bool = False) -> PruneSummary:
        """
        Remove resolved annotations, saving unless dry-run.

        A missing project filter is reported in the summary, not raised.
        """
        summary = self.store.prune_resolved(project=project, dry_run=dry_run)
        if not dry_run and summary.removed_count:
            self.save()
        return summary

    def ci(
        self,
        directory: str | Path = ".",
        ignore: Iterable[str] = (),
        pattern: str | None = None,
    ) -> ScanResult:
        """
        Scan a directory without touching the store.

        The caller derives the exit status from ``result.count`` alone.
        """
        root = Path(directory).expanduser()
        if not root.is_dir():
            raise ConfigurationError(f"Directory does not exist: {root}")
        return self.build_scanner(root.resolve(), ignore, pattern).scan_root()

    def list_annotations(
        self,
        project: str | None = None,
        unresolved_only: bool = False,
    ) -> list[tuple[str, Annotation]]:
        return self.store.annotations(project=project, unresolved_only=unresolved_only)

    def set_resolved(self, project: str, identity: str, resolved: bool = True) -> Annotation:
        """Set the resolved flag of one annotation and save."""
        annotation = self.store.set_resolved(project, identity, resolved=resolved)
        self.save()
        return annotation

    def set_pattern(self, pattern: str) -> CodemarksConfig:
        """
        Validate and persist a new annotation pattern.

        Raises:
            ConfigurationError: If the pattern does not compile.
        """
        compile_pattern(pattern)
        self.config.annotation_pattern = pattern
        if not self.ephemeral:
            save_config(self.config)
        return self.config

    def reset_config(self) -> CodemarksConfig:
        """Restore and persist the default configuration."""
        self.config = CodemarksConfig(annotation_pattern=DEFAULT_ANNOTATION_PATTERN)
        if not self.ephemeral:
            save_config(self.config)
        return self.config
