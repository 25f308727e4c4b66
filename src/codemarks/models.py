"""
Data models for codemarks.

Annotations and projects are pydantic models because they are persisted;
scopes and summaries are plain dataclasses passed between components.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Iterable

from pydantic import BaseModel, Field


class Annotation(BaseModel):
    """A single detected marker occurrence."""

    file: str = Field(description="Project-relative POSIX path")
    line_number: int = Field(ge=1, description="1-based line number")
    kind: str = Field(description="Marker kind, e.g. TODO")
    message: str = Field(default="", description="Trimmed trailing text")
    resolved: bool = Field(default=False, description="Set manually, never inferred")
    occurrence: int = Field(
        default=0,
        ge=0,
        description="Ordinal of this kind+message within the file",
    )

    @property
    def identity(self) -> str:
        """
        Stable key used to match an annotation across rescans.

        The line number is deliberately left out so that edits elsewhere in
        the file do not change it.
        """
        raw = "\0".join((self.file, self.kind, self.message, str(self.occurrence)))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]

    @property
    def location(self) -> str:
        return f"{self.file}:{self.line_number}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Project(BaseModel):
    """A named grouping of annotations, one per scanned root."""

    name: str
    root: str | None = Field(default=None, description="Absolute path of the scanned root")
    last_scanned: datetime = Field(default_factory=utcnow)
    annotations: dict[str, Annotation] = Field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.annotations)

    def sorted_annotations(self) -> list[Annotation]:
        return sorted(self.annotations.values(), key=lambda a: (a.file, a.line_number, a.occurrence))

    @property
    def resolved_count(self) -> int:
        return sum(1 for a in self.annotations.values() if a.resolved)


@dataclass(frozen=True)
class Scope:
    """
    The part of a project a scan covered.

    ``paths is None`` means the full root. Otherwise a stored annotation is in
    scope when its file equals one of the paths or lies beneath one of them
    (a path naming a deleted or moved directory).

    Files in ``exclude`` are never in scope. A scan excludes files it could
    not read so that their stored annotations are left untouched.
    """

    paths: frozenset[str] | None = None
    exclude: frozenset[str] = frozenset()

    @classmethod
    def full(cls) -> "Scope":
        return cls(None)

    @classmethod
    def confined(cls, paths: Iterable[str]) -> "Scope":
        return cls(frozenset(p.strip("/") for p in paths if p.strip("/")))

    def excluding(self, files: Iterable[str]) -> "Scope":
        files = frozenset(files)
        if not files:
            return self
        return replace(self, exclude=self.exclude | files)

    @property
    def is_full(self) -> bool:
        return self.paths is None

    def contains(self, file: str) -> bool:
        if file in self.exclude:
            return False
        if self.paths is None:
            return True
        if file in self.paths:
            return True
        return any(file.startswith(p + "/") for p in self.paths)


@dataclass
class MergeSummary:
    """Outcome of merging a scan into a project."""

    project: str
    added: int = 0
    kept: int = 0
    removed: int = 0
    project_removed: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed or self.project_removed)


@dataclass
class PruneSummary:
    """Outcome of removing resolved annotations."""

    dry_run: bool
    removed_count: int = 0
    removed_projects: list[str] = field(default_factory=list)
    per_project: dict[str, int] = field(default_factory=dict)
    missing_project: str | None = None
