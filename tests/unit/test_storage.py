import pytest
from conftest import make_task

from cell_orchestrator.errors import UnknownCollection
from cell_orchestrator.models import ProgressSnapshot, Target, TargetSummary
from cell_orchestrator.reducer import Fail, ManualEdit, MarkRunning, initialize_collection
from cell_orchestrator.storage.memory import InMemoryCollectionStorage, InMemoryTargetStorage


def _storage_with_collection() -> InMemoryCollectionStorage:
    storage = InMemoryCollectionStorage()
    storage.create(
        initialize_collection(
            "col-1",
            targets=[TargetSummary(id="doc-a", name="A.pdf")],
            tasks=[make_task("status")],
        )
    )
    return storage


def test_dispatch_notifies_listeners_with_progress() -> None:
    storage = _storage_with_collection()
    seen: list[tuple[str, ProgressSnapshot]] = []
    storage.subscribe(lambda collection_id, snapshot: seen.append((collection_id, snapshot)))

    storage.dispatch("col-1", MarkRunning(target_id="doc-a", task_id="status"))
    storage.dispatch("col-1", Fail(target_id="doc-a", task_id="status", error="boom"))

    assert [snapshot.running for _, snapshot in seen] == [1, 0]
    assert seen[-1] == ("col-1", ProgressSnapshot(complete=0, error=1, running=0, pending=0, total=1))


def test_noop_events_do_not_notify() -> None:
    storage = _storage_with_collection()
    seen: list[ProgressSnapshot] = []
    storage.subscribe(lambda _, snapshot: seen.append(snapshot))

    storage.dispatch("col-1", ManualEdit(target_id="doc-a", task_id="status", value="x"))

    assert seen == []


def test_listener_errors_do_not_break_dispatch() -> None:
    storage = _storage_with_collection()

    def broken(collection_id: str, snapshot: ProgressSnapshot) -> None:
        raise RuntimeError("listener bug")

    storage.subscribe(broken)
    state = storage.dispatch("col-1", MarkRunning(target_id="doc-a", task_id="status"))

    assert state.cell("doc-a", "status").status == "running"
    assert storage.get("col-1") is state


def test_dispatch_to_unknown_collection_raises() -> None:
    with pytest.raises(UnknownCollection):
        InMemoryCollectionStorage().dispatch("missing", MarkRunning(target_id="a", task_id="b"))


def test_target_storage_lists_and_summarises() -> None:
    storage = InMemoryTargetStorage(
        [Target(id="a", name="A.pdf", type="psw"), Target(id="b", name="B.pdf")]
    )

    assert [target.id for target in storage.list(["b", "missing", "a"])] == ["b", "a"]
    assert storage.summaries(["a"]) == [TargetSummary(id="a", name="A.pdf", type="psw")]
    assert storage.get("missing") is None
