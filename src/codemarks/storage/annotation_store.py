"""
In-memory annotation store.

Holds one Project per name. All mutation goes through ``merge``,
``set_resolved`` and ``prune_resolved``; persistence is a separate concern
(see ``codemarks.storage.persistence``).
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator

import structlog

from codemarks.core import (
    AmbiguousIdentityError,
    AnnotationNotFoundError,
    ProjectNotFoundError,
)
from codemarks.models import (
    Annotation,
    MergeSummary,
    Project,
    PruneSummary,
    Scope,
    utcnow,
)

logger = structlog.get_logger(__name__)


class AnnotationStore:
    """Mapping of project name to Project."""

    def __init__(self, projects: Iterable[Project] = ()) -> None:
        self._projects: dict[str, Project] = {}
        for project in projects:
            self._projects[project.name] = project

    def __contains__(self, name: object) -> bool:
        return name in self._projects

    def __len__(self) -> int:
        return len(self._projects)

    def __iter__(self) -> Iterator[Project]:
        return iter(self.projects())

    def projects(self) -> list[Project]:
        """Projects sorted by name."""
        return [self._projects[name] for name in sorted(self._projects)]

    def get_project(self, name: str) -> Project:
        """
        Look up a project.

        Raises:
            ProjectNotFoundError: If no project has that name.
        """
        try:
            return self._projects[name]
        except KeyError:
            raise ProjectNotFoundError(f"Project '{name}' not found") from None

    def annotations(
        self,
        project: str | None = None,
        unresolved_only: bool = False,
    ) -> list[tuple[str, Annotation]]:
        """
        List annotations as (project name, annotation) pairs.

        Raises:
            ProjectNotFoundError: If a project filter names a missing project.
        """
        projects = [self.get_project(project)] if project else self.projects()
        return [
            (p.name, a)
            for p in projects
            for a in p.sorted_annotations()
            if not (unresolved_only and a.resolved)
        ]

    def total_count(self) -> int:
        return sum(len(p) for p in self._projects.values())

    def merge(
        self,
        project_name: str,
        scanned: Iterable[Annotation],
        scope: Scope,
        root: Path | None = None,
        now: datetime | None = None,
    ) -> MergeSummary:
        """
        Merge freshly scanned annotations into a project.

        Within the scope, annotations found again keep their stored record
        (and resolved flag), new ones are inserted unresolved and ones no
        longer present are removed. Everything outside the scope is left as
        it is. Applying the same scan twice is a no-op.

        Args:
            project_name: Project to merge into (created if needed).
            scanned: Annotations produced by a scan.
            scope: What the scan covered.
            root: Scanned root, recorded on the project.
            now: Timestamp to record; defaults to the current time.

        Returns:
            MergeSummary with added/kept/removed counts.
        """
        summary = MergeSummary(project=project_name)
        project = self._projects.get(project_name)
        if project is None:
            project = Project(name=project_name)

        if root is not None:
            root_str = str(root)
            if project.root and project.root != root_str:
                logger.warning(
                    "Project root changed",
                    project=project_name,
                    old_root=project.root,
                    new_root=root_str,
                )
            project.root = root_str

        fresh: dict[str, Annotation] = {}
        for annotation in scanned:
            if not scope.contains(annotation.file):
                logger.debug("Dropping annotation outside scope", file=annotation.file)
                continue
            fresh[annotation.identity] = annotation

        existing_ids = [key for key, a in project.annotations.items() if scope.contains(a.file)]

        for key in existing_ids:
            if key in fresh:
                stored = project.annotations[key]
                stored.line_number = fresh[key].line_number
                summary.kept += 1
            else:
                del project.annotations[key]
                summary.removed += 1

        for key, annotation in fresh.items():
            if key not in project.annotations:
                project.annotations[key] = annotation.model_copy(update={"resolved": False})
                summary.added += 1

        if not project.annotations:
            if self._projects.pop(project_name, None) is not None:
                summary.project_removed = True
        else:
            project.last_scanned = now or utcnow()
            self._projects[project_name] = project

        logger.info(
            "Merged scan",
            project=project_name,
            added=summary.added,
            kept=summary.kept,
            removed=summary.removed,
            full=scope.is_full,
        )
        return summary

    def find(self, project_name: str, identity: str) -> Annotation:
        """
        Find an annotation by full identity or unique prefix.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            AnnotationNotFoundError: If nothing matches.
            AmbiguousIdentityError: If a prefix matches several annotations.
        """
        project = self.get_project(project_name)
        identity = identity.strip().lower()
        if not identity:
            raise AnnotationNotFoundError("Empty annotation ID")
        if identity in project.annotations:
            return project.annotations[identity]

        matches = [a for key, a in project.annotations.items() if key.startswith(identity)]
        if not matches:
            raise AnnotationNotFoundError(
                f"No annotation with ID '{identity}' in project '{project_name}'"
            )
        if len(matches) > 1:
            raise AmbiguousIdentityError(
                f"ID prefix '{identity}' matches {len(matches)} annotations in project '{project_name}'"
            )
        return matches[0]

    def set_resolved(self, project_name: str, identity: str, resolved: bool = True) -> Annotation:
        """Mark an annotation resolved or unresolved."""
        annotation = self.find(project_name, identity)
        annotation.resolved = resolved
        logger.info(
            "Set resolved flag",
            project=project_name,
            identity=annotation.identity,
            resolved=resolved,
        )
        return annotation

    def remove_empty_projects(self) -> list[str]:
        """Drop projects without annotations and return their names."""
        empty = sorted(name for name, p in self._projects.items() if not p.annotations)
        for name in empty:
            del self._projects[name]
        return empty

    def prune_resolved(self, project: str | None = None, dry_run: bool = False) -> PruneSummary:
        """
        Remove resolved annotations.

        Args:
            project: Restrict the operation to one project. A missing project
                is reported in the summary rather than raised.
            dry_run: Compute the summary without changing the store.

        Returns:
            PruneSummary describing what was (or would be) removed.
        """
        summary = PruneSummary(dry_run=dry_run)

        if project is not None and project not in self._projects:
            summary.missing_project = project
            return summary

        names = [project] if project is not None else sorted(self._projects)
        for name in names:
            record = self._projects[name]
            resolved_ids = [key for key, a in record.annotations.items() if a.resolved]
            if not resolved_ids:
                continue

            summary.removed_count += len(resolved_ids)
            summary.per_project[name] = len(resolved_ids)
            if len(resolved_ids) == len(record.annotations):
                summary.removed_projects.append(name)

            if dry_run:
                continue
            for key in resolved_ids:
                del record.annotations[key]
            if not record.annotations:
                del self._projects[name]

        logger.info(
            "Pruned resolved annotations",
            removed=summary.removed_count,
            projects=summary.removed_projects,
            dry_run=dry_run,
        )
        return summary
