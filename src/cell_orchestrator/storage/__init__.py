"""Storage backends."""

from cell_orchestrator.storage.base import CollectionStorage, ProgressListener, TargetStorage
from cell_orchestrator.storage.memory import InMemoryCollectionStorage, InMemoryTargetStorage

__all__ = [
    "CollectionStorage",
    "InMemoryCollectionStorage",
    "InMemoryTargetStorage",
    "ProgressListener",
    "TargetStorage",
]
