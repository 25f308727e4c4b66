"""
Shared fixtures for the codemarks test suite.

Provides common test fixtures including:
- An isolated per-user codemarks directory
- Sample repository trees
- Scanner factories
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable

import pytest
import structlog

from codemarks.config import CodemarksConfig
from codemarks.indexing.ignore_parser import IgnoreFilter
from codemarks.indexing.matcher import PatternMatcher
from codemarks.indexing.scanner import Scanner


# ==============================================================================
# Helpers
# ==============================================================================

def write_tree(root: Path, files: dict[str, str | bytes]) -> Path:
    """Create files (and their directories) under root."""
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")
    return root


async def wait_until(predicate: Callable[[], object], timeout: float = 5.0) -> None:
    """Poll until a condition holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ==============================================================================
# Path Fixtures
# ==============================================================================

@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo logging configuration done by CLI invocations."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def codemarks_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the per-user codemarks directory at a temporary location."""
    home = tmp_path / "codemarks-home"
    monkeypatch.setenv("CODEMARKS_HOME", str(home))
    for var in ("CODEMARKS_ANNOTATION_PATTERN", "CODEMARKS_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """An empty repository root."""
    root = tmp_path / "repo"
    root.mkdir()
    return root


@pytest.fixture
def sample_repo(repo: Path) -> Path:
    """A small repository with annotations, ignore rules and noise."""
    return write_tree(
        repo,
        {
            "main.py": (
                "import os\n"
                "\n"
                "# TODO: handle missing config\n"
                "def main():\n"
                "    pass  # FIXME: exit code\n"
            ),
            "src/lib.rs": (
                "fn parse() {\n"
                "    // HACK: skip validation\n"
                "}\n"
            ),
            "src/notes.txt": "nothing to see here\n",
            "web/index.html": "<!-- TODO: add footer -->\n",
            ".gitignore": "build/\n*.log\n",
            "build/generated.py": "# TODO: generated, never reported\n",
            "debug.log": "# TODO: logs are ignored\n",
            ".hidden/secret.py": "# TODO: hidden directories are skipped\n",
        },
    )


# ==============================================================================
# Component Fixtures
# ==============================================================================

@pytest.fixture
def default_matcher() -> PatternMatcher:
    return PatternMatcher(CodemarksConfig().annotation_pattern)


@pytest.fixture
def make_scanner(default_matcher: PatternMatcher) -> Callable[..., Scanner]:
    """Factory building a single-threaded scanner for a root."""

    def factory(root: Path, ignore_patterns: tuple[str, ...] = (), **kwargs) -> Scanner:
        ignore_filter = IgnoreFilter(root, ignore_patterns=ignore_patterns)
        return Scanner(root, default_matcher, ignore_filter=ignore_filter, **kwargs)

    return factory
