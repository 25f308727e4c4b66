"""
File system watcher with debouncing.

Monitors a project root for changes and keeps its annotations current.
Events are collected into a batch; once no new event has arrived for the
debounce period, only the changed paths are rescanned and the result is
merged into the store and saved.
"""

from __future__ import annotations

import asyncio
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

import structlog
from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from codemarks.core import WatchError
from codemarks.indexing.ignore_parser import to_relative

if TYPE_CHECKING:
    from codemarks.indexing.scanner import Scanner
    from codemarks.models import MergeSummary
    from codemarks.storage.annotation_store import AnnotationStore
    from codemarks.storage.persistence import StorePersistence

logger = structlog.get_logger(__name__)


@dataclass
class BatchReport:
    """What one debounced rescan did."""

    paths: list[str]
    files_scanned: int = 0
    found: int = 0
    summary: "MergeSummary | None" = None
    total: int = 0
    duration_seconds: float = 0.0
    error: str | None = None
    skipped: list[str] = field(default_factory=list)


class ChangeHandler(FileSystemEventHandler):
    """
    Forwards relevant watchdog events to the watcher.

    Runs on the observer thread. Directory modification events carry no
    information the file events do not, so they are dropped.
    """

    def __init__(self, watcher: "AnnotationWatcher") -> None:
        super().__init__()
        self.watcher = watcher

    def on_created(self, event: FileCreatedEvent | DirCreatedEvent) -> None:
        """Handle file/directory creation."""
        self.watcher.notify(os.fsdecode(event.src_path), is_dir=event.is_directory)

    def on_modified(self, event: FileModifiedEvent | DirModifiedEvent) -> None:
        """Handle file modification."""
        if isinstance(event, DirModifiedEvent):
            return
        self.watcher.notify(os.fsdecode(event.src_path), is_dir=False)

    def on_deleted(self, event: FileDeletedEvent | DirDeletedEvent) -> None:
        """Handle file/directory deletion."""
        self.watcher.notify(os.fsdecode(event.src_path), is_dir=event.is_directory)

    def on_moved(self, event: FileMovedEvent | DirMovedEvent) -> None:
        """Handle file/directory move: the old path empties, the new one fills."""
        self.watcher.notify(os.fsdecode(event.src_path), is_dir=event.is_directory)
        self.watcher.notify(os.fsdecode(event.dest_path), is_dir=event.is_directory)


class AnnotationWatcher:
    """
    Watches a project root and applies confined rescans.

    Features:
    - Debounced change detection (every event restarts the quiet period)
    - Bounded event queue fed from the observer thread without dropping events
    - Rescans run off the event loop so the timer stays accurate
    - Cooperative, thread-safe stop that flushes the pending batch
    """

    def __init__(
        self,
        scanner: "Scanner",
        store: "AnnotationStore",
        persistence: "StorePersistence",
        project: str,
        debounce_ms: int = 500,
        queue_size: int = 1024,
        on_batch: Callable[[BatchReport], None] | None = None,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        """
        Initialize the watcher.

        Args:
            scanner: Scanner bound to the watched root.
            store: Store to merge results into.
            persistence: Where the store is saved after each batch.
            project: Project name the annotations belong to.
            debounce_ms: Quiet period in milliseconds.
            queue_size: Capacity of the event queue.
            on_batch: Called with a BatchReport after every flush.
            observer_factory: Creates the watchdog observer.
        """
        self.scanner = scanner
        self.store = store
        self.persistence = persistence
        self.project = project
        self.debounce_seconds = debounce_ms / 1000.0
        self.queue_size = queue_size
        self.on_batch = on_batch
        self.observer_factory = observer_factory

        self.started = asyncio.Event()
        self.batches = 0

        self._queue: asyncio.Queue[Path] | None = None
        self._stop_event = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: int | None = None
        self._observer: Any = None
        self._stopping = False

    @property
    def root(self) -> Path:
        return self.scanner.root

    def notify(self, path: str | Path, is_dir: bool | None = None) -> None:
        """
        Report a changed path. Safe to call from any thread.

        Excluded paths are dropped. A changed ignore file invalidates the
        cached rules of its directory and queues that directory for rescan.
        Called from a foreign thread, this blocks while the queue is full.
        """
        if self._stopping or self._loop is None or self._queue is None:
            return

        path = Path(path)
        ignore_filter = self.scanner.ignore_filter

        if not is_dir and ignore_filter.is_ignore_file(path):
            ignore_filter.invalidate(path.parent)
            logger.debug("Ignore file changed", path=str(path))
            path = path.parent
            is_dir = True

        if ignore_filter.is_excluded(path, is_dir=is_dir):
            return

        try:
            future = asyncio.run_coroutine_threadsafe(self._queue.put(path), self._loop)
        except RuntimeError:
            logger.debug("Event loop closed, dropping change", path=str(path))
            return

        if threading.get_ident() != self._loop_thread:
            future.result()

    def stop(self) -> None:
        """Request a cooperative stop. Safe to call from any thread or signal handler."""
        loop = self._loop
        if loop is None or threading.get_ident() == self._loop_thread:
            self._stop_event.set()
            return
        try:
            loop.call_soon_threadsafe(self._stop_event.set)
        except RuntimeError:
            pass

    async def run(self) -> None:
        """
        Watch until stopped.

        Raises:
            WatchError: If the root cannot be watched.
            StoreError: If saving the store fails.
        """
        if not self.root.is_dir():
            raise WatchError(f"Cannot watch {self.root}: not a directory")

        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._stopping = False

        self._start_observer()
        try:
            self.started.set()
            await self._coordinate()
        finally:
            self._stopping = True
            await self._stop_observer()
            self._loop = None
            self._loop_thread = None

    def _start_observer(self) -> None:
        logger.info("Starting file watcher", path=str(self.root), debounce_s=self.debounce_seconds)
        try:
            observer = self.observer_factory()
            observer.schedule(ChangeHandler(self), str(self.root), recursive=True)
            observer.start()
        except (OSError, RuntimeError) as e:
            self._loop = None
            self._loop_thread = None
            raise WatchError(f"Cannot watch {self.root}: {e}") from e
        self._observer = observer

    async def _stop_observer(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        logger.info("Stopping file watcher")
        observer.stop()
        await asyncio.to_thread(observer.join, 5.0)

    def _drain(self) -> set[Path]:
        drained: set[Path] = set()
        assert self._queue is not None
        while True:
            try:
                drained.add(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return drained

    async def _coordinate(self) -> None:
        assert self._queue is not None
        batch: set[Path] = set()
        stop_task = asyncio.ensure_future(self._stop_event.wait())
        get_task: asyncio.Future[Path] | None = None

        try:
            while True:
                if get_task is None:
                    get_task = asyncio.ensure_future(self._queue.get())

                done, _ = await asyncio.wait(
                    {get_task, stop_task},
                    timeout=self.debounce_seconds if batch else None,
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if get_task in done:
                    batch.add(get_task.result())
                    get_task = None
                    continue

                if stop_task in done:
                    break

                await self._flush(batch)
                batch = set()

            # Stopping: no new events are accepted, whatever is queued joins
            # the final batch.
            self._stopping = True
            if not get_task.done():
                get_task.cancel()
            try:
                batch.add(await get_task)
            except asyncio.CancelledError:
                pass
            get_task = None

            batch |= self._drain()
            await self._stop_observer()
            batch |= self._drain()

            if batch:
                logger.info("Flushing pending changes before exit", paths=len(batch))
                await self._flush(batch)
        finally:
            if get_task is not None:
                get_task.cancel()
            stop_task.cancel()

        logger.info("File watcher stopped", batches=self.batches)

    async def _flush(self, batch: set[Path]) -> BatchReport:
        """Rescan a batch, merge and save."""
        paths = sorted(batch)
        report = BatchReport(paths=[to_relative(p, self.root) or str(p) for p in paths])
        start = time.monotonic()

        try:
            result = await asyncio.to_thread(self.scanner.scan_paths, paths)
        except Exception as e:
            logger.error("Error rescanning changes", paths=report.paths, error=str(e))
            report.error = str(e)
            report.duration_seconds = time.monotonic() - start
            self._report(report)
            return report

        summary = self.store.merge(self.project, result.annotations, result.scope, root=self.root)
        self.persistence.save(self.store)

        report.files_scanned = result.files_scanned
        report.found = result.count
        report.summary = summary
        report.skipped = [s.path for s in result.skipped]
        report.total = len(self.store.get_project(self.project)) if self.project in self.store else 0
        report.duration_seconds = time.monotonic() - start

        logger.info(
            "Applied changes",
            project=self.project,
            paths=len(paths),
            added=summary.added,
            removed=summary.removed,
            total=report.total,
        )
        self._report(report)
        return report

    def _report(self, report: BatchReport) -> None:
        self.batches += 1
        if self.on_batch is not None:
            self.on_batch(report)
