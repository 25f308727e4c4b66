"""
Codemarks Core Utilities

Shared utilities for codemarks including the exception hierarchy, per-user
path resolution, atomic document writes and logging setup.
"""

from __future__ import annotations

import contextlib
import logging
import os
import sys
import tempfile
from pathlib import Path

import structlog


class CodemarksError(Exception):
    """Base exception for codemarks errors."""

    pass


class ConfigurationError(CodemarksError):
    """Raised when the configuration or an annotation pattern is invalid."""

    pass


class StoreError(CodemarksError):
    """Raised when the projects database cannot be read or written."""

    pass


class WatchError(CodemarksError):
    """Raised when a directory cannot be watched."""

    pass


class ProjectNotFoundError(CodemarksError):
    """Raised when a named project is not in the store."""

    pass


class AnnotationNotFoundError(CodemarksError):
    """Raised when no annotation matches an identity."""

    pass


class AmbiguousIdentityError(CodemarksError):
    """Raised when an identity prefix matches more than one annotation."""

    pass


HOME_ENV_VAR = "CODEMARKS_HOME"
CONFIG_FILENAME = "config.yaml"
PROJECTS_FILENAME = "projects.json"


def get_codemarks_root() -> Path:
    """
    Get the codemarks root directory path.

    ``$CODEMARKS_HOME`` wins when set, otherwise ``~/.codemarks``.

    Returns:
        Path to the per-user codemarks directory

    Example:
        >>> root = get_codemarks_root()
        >>> print(root)
        /home/user/.codemarks
    """
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".codemarks"


def get_config_path() -> Path:
    """Path of the configuration document."""
    return get_codemarks_root() / CONFIG_FILENAME


def get_projects_path() -> Path:
    """Path of the projects database document."""
    return get_codemarks_root() / PROJECTS_FILENAME


def atomic_write_text(path: Path, text: str, encoding: str = "utf-8") -> None:
    """
    Write text to a file atomically.

    The content goes to a temporary file in the same directory which then
    replaces the target, so readers see either the old or the new document.

    Args:
        path: Destination file.
        text: Content to write.
        encoding: Text encoding.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=path.name + ".", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


def configure_logging(verbose: bool = False, level: str | None = None) -> None:
    """
    Configure structlog for command-line use.

    Log lines go to stderr so that reports and CI output on stdout stay clean.
    Recovered per-file problems are logged below WARNING and therefore only
    show up with ``--verbose``.
    """
    if verbose:
        log_level = logging.DEBUG
    elif level:
        log_level = logging.getLevelName(level.upper())
    else:
        log_level = logging.WARNING

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def format_duration(seconds: float) -> str:
    """
    Format a duration in seconds to a human-readable string.

    Example:
        >>> print(format_duration(125.5))
        2m 5.5s
    """
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    remaining = seconds % 60
    if minutes < 60:
        return f"{minutes}m {remaining:.1f}s"
    hours = minutes // 60
    remaining_mins = minutes % 60
    return f"{hours}h {remaining_mins}m"
