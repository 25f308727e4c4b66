"""
codemarks - code annotation tracker

Finds TODO/FIXME/HACK style annotations across a codebase, keeps them in a
per-user, project-scoped index and keeps that index current while files change.
"""

__version__ = "0.1.0"
__author__ = "codemarks contributors"

from codemarks.core import (
    CodemarksError,
    ConfigurationError,
    StoreError,
    WatchError,
    get_codemarks_root,
)

__all__ = [
    "__version__",
    "__author__",
    "CodemarksError",
    "ConfigurationError",
    "StoreError",
    "WatchError",
    "get_codemarks_root",
]
