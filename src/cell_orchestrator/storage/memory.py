"""In-memory storage backends.

Writes go through a single lock so each reducer event is applied atomically;
reads return immutable snapshots and never block on writers for long.
"""

from __future__ import annotations

import logging
import threading

from cell_orchestrator.errors import UnknownCollection
from cell_orchestrator.models import CollectionState, Target, TargetSummary
from cell_orchestrator.reducer import Event, apply, progress
from cell_orchestrator.storage.base import ProgressListener

logger = logging.getLogger(__name__)


class InMemoryCollectionStorage:
    """Keyed map of collection id -> CollectionState."""

    def __init__(self) -> None:
        self._collections: dict[str, CollectionState] = {}
        self._listeners: list[ProgressListener] = []
        self._lock = threading.Lock()

    def create(self, collection: CollectionState) -> CollectionState:
        with self._lock:
            self._collections[collection.id] = collection
        self._notify(collection)
        return collection

    def get(self, collection_id: str) -> CollectionState | None:
        return self._collections.get(collection_id)

    def list_ids(self) -> list[str]:
        return sorted(self._collections.keys())

    def dispatch(self, collection_id: str, event: Event) -> CollectionState:
        with self._lock:
            current = self._collections.get(collection_id)
            if current is None:
                raise UnknownCollection(f"Collection {collection_id} does not exist")
            updated = apply(current, event)
            self._collections[collection_id] = updated
        if updated is not current:
            self._notify(updated)
        return updated

    def subscribe(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def _notify(self, collection: CollectionState) -> None:
        snapshot = progress(collection)
        for listener in list(self._listeners):
            try:
                listener(collection.id, snapshot)
            except Exception:  # noqa: BLE001
                logger.exception("progress_listener event=failed collection_id=%s", collection.id)


class InMemoryTargetStorage:
    """Documents available to planners, cells and document tools."""

    def __init__(self, targets: list[Target] | None = None) -> None:
        self._targets: dict[str, Target] = {}
        self._lock = threading.Lock()
        for target in targets or []:
            self.upsert(target)

    def upsert(self, target: Target) -> Target:
        with self._lock:
            self._targets[target.id] = target
        return target

    def get(self, target_id: str) -> Target | None:
        return self._targets.get(target_id)

    def list(self, target_ids: list[str] | None = None) -> list[Target]:
        if target_ids is None:
            return list(self._targets.values())
        return [self._targets[tid] for tid in target_ids if tid in self._targets]

    def summaries(self, target_ids: list[str] | None = None) -> list[TargetSummary]:
        return [target.summary() for target in self.list(target_ids)]
