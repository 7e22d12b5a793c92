"""Storage interfaces for collections and targets."""

from __future__ import annotations

from typing import Callable, Protocol

from cell_orchestrator.models import CollectionState, ProgressSnapshot, Target, TargetSummary
from cell_orchestrator.reducer import Event

ProgressListener = Callable[[str, ProgressSnapshot], None]


class CollectionStorage(Protocol):
    def create(self, collection: CollectionState) -> CollectionState: ...

    def get(self, collection_id: str) -> CollectionState | None: ...

    def list_ids(self) -> list[str]: ...

    def dispatch(self, collection_id: str, event: Event) -> CollectionState: ...

    def subscribe(self, listener: ProgressListener) -> None: ...


class TargetStorage(Protocol):
    def upsert(self, target: Target) -> Target: ...

    def get(self, target_id: str) -> Target | None: ...

    def list(self, target_ids: list[str] | None = None) -> list[Target]: ...

    def summaries(self, target_ids: list[str] | None = None) -> list[TargetSummary]: ...
