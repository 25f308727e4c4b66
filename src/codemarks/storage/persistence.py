"""
Persistence of the projects database.

The database is a single JSON document (``~/.codemarks/projects.json``)
holding every project and its annotations, sorted so that successive saves
diff cleanly. Saves are atomic. The ephemeral variant never touches disk.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, ValidationError

from codemarks.core import StoreError, atomic_write_text, get_projects_path
from codemarks.models import Annotation, Project, utcnow
from codemarks.storage.annotation_store import AnnotationStore

logger = structlog.get_logger(__name__)

SCHEMA_VERSION = 1


class ProjectDocument(BaseModel):
    """On-disk form of a project."""

    name: str
    root: str | None = None
    last_scanned: datetime = Field(default_factory=utcnow)
    annotations: list[Annotation] = Field(default_factory=list)


class DatabaseDocument(BaseModel):
    """On-disk form of the whole projects database."""

    version: int = SCHEMA_VERSION
    projects: dict[str, ProjectDocument] = Field(default_factory=dict)


def store_to_document(store: AnnotationStore) -> DatabaseDocument:
    return DatabaseDocument(
        projects={
            project.name: ProjectDocument(
                name=project.name,
                root=project.root,
                last_scanned=project.last_scanned,
                annotations=project.sorted_annotations(),
            )
            for project in store.projects()
        }
    )


def document_to_store(document: DatabaseDocument) -> AnnotationStore:
    projects = []
    for name, doc in document.projects.items():
        project = Project(name=name, root=doc.root, last_scanned=doc.last_scanned)
        for annotation in doc.annotations:
            project.annotations[annotation.identity] = annotation
        projects.append(project)
    store = AnnotationStore(projects)
    store.remove_empty_projects()
    return store


class StorePersistence:
    """Loads and saves an AnnotationStore as a JSON document."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or get_projects_path()

    @property
    def ephemeral(self) -> bool:
        return False

    def load(self) -> AnnotationStore:
        """
        Load the store.

        Returns:
            The stored projects, or an empty store if no database exists yet.

        Raises:
            StoreError: If the document cannot be read or is invalid.
        """
        if not self.path.exists():
            logger.debug("No projects database yet", path=str(self.path))
            return AnnotationStore()

        try:
            content = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise StoreError(f"Failed to read projects database {self.path}: {e}") from e

        if not content.strip():
            return AnnotationStore()

        try:
            document = DatabaseDocument.model_validate_json(content)
        except ValidationError as e:
            raise StoreError(f"Invalid projects database {self.path}: {e}") from e

        if document.version > SCHEMA_VERSION:
            raise StoreError(
                f"Projects database {self.path} has version {document.version}, "
                f"newer than supported version {SCHEMA_VERSION}"
            )

        store = document_to_store(document)
        logger.debug("Loaded projects database", path=str(self.path), projects=len(store))
        return store

    def save(self, store: AnnotationStore) -> None:
        """
        Atomically save the store.

        Raises:
            StoreError: If writing fails. The previous document is left intact.
        """
        document = store_to_document(store)
        text = json.dumps(document.model_dump(mode="json"), indent=2) + "\n"
        try:
            atomic_write_text(self.path, text)
        except OSError as e:
            raise StoreError(f"Failed to save projects database {self.path}: {e}") from e
        logger.debug("Saved projects database", path=str(self.path), projects=len(store))


class EphemeralPersistence(StorePersistence):
    """Persistence that starts empty and never writes."""

    def __init__(self) -> None:
        self.path = None

    @property
    def ephemeral(self) -> bool:
        return True

    def load(self) -> AnnotationStore:
        return AnnotationStore()

    def save(self, store: AnnotationStore) -> None:
        logger.debug("Ephemeral mode, not saving", projects=len(store))


def open_persistence(ephemeral: bool = False, path: Path | None = None) -> StorePersistence:
    """Pick the persistence matching the requested mode."""
    if ephemeral:
        return EphemeralPersistence()
    return StorePersistence(path)
