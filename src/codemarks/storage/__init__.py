"""
Storage modules for codemarks.

Provides:
- In-memory annotation store with merge, resolve and prune
- Atomic JSON persistence of the projects database
- Ephemeral (no read, no write) persistence
"""

from codemarks.storage.annotation_store import AnnotationStore
from codemarks.storage.persistence import (
    EphemeralPersistence,
    StorePersistence,
    open_persistence,
)

__all__ = [
    "AnnotationStore",
    "StorePersistence",
    "EphemeralPersistence",
    "open_persistence",
]
