"""Pure reducer for collection/task lifecycle state.

`apply` performs no I/O. Callers run the agent loop themselves and feed the
outcome back as Complete/Fail events. Events addressed to tasks that no longer
exist (for example a completion arriving after RemoveTask) are ignored.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Annotated, Literal, Union, assert_never

from pydantic import Field

from cell_orchestrator.models import (
    COLLECTION_SCOPE,
    CollectionState,
    ExecutionResult,
    FrozenModel,
    ProgressSnapshot,
    TargetSummary,
    TaskDefinition,
    TaskState,
    cell_key,
)
from cell_orchestrator.shapes import coerce_answer


class MarkRunning(FrozenModel):
    kind: Literal["mark_running"] = "mark_running"
    target_id: str
    task_id: str


class Complete(FrozenModel):
    kind: Literal["complete"] = "complete"
    target_id: str
    task_id: str
    result: ExecutionResult


class Fail(FrozenModel):
    kind: Literal["fail"] = "fail"
    target_id: str
    task_id: str
    error: str


class ManualEdit(FrozenModel):
    kind: Literal["manual_edit"] = "manual_edit"
    target_id: str
    task_id: str
    value: str


class AddTask(FrozenModel):
    kind: Literal["add_task"] = "add_task"
    task: TaskDefinition


class RemoveTask(FrozenModel):
    kind: Literal["remove_task"] = "remove_task"
    task_id: str


class UpdateTaskDefinition(FrozenModel):
    kind: Literal["update_task"] = "update_task"
    task: TaskDefinition


class RunStarted(FrozenModel):
    kind: Literal["run_started"] = "run_started"


class RunFinished(FrozenModel):
    kind: Literal["run_finished"] = "run_finished"


Event = Annotated[
    Union[
        MarkRunning,
        Complete,
        Fail,
        ManualEdit,
        AddTask,
        RemoveTask,
        UpdateTaskDefinition,
        RunStarted,
        RunFinished,
    ],
    Field(discriminator="kind"),
]


def initialize_collection(
    collection_id: str,
    *,
    title: str = "",
    targets: Sequence[TargetSummary],
    tasks: Sequence[TaskDefinition],
    saved_cells: Mapping[str, TaskState] | None = None,
) -> CollectionState:
    cells: dict[str, TaskState] = {}
    for task in tasks:
        for target_id in cell_target_ids(targets, task):
            key = cell_key(target_id, task.id)
            saved = (saved_cells or {}).get(key)
            # A saved "running" cell has no live job behind it; it starts over.
            if saved is None or saved.status == "running":
                saved = _initial_cell(target_id, task)
            cells[key] = saved
    return CollectionState(
        id=collection_id,
        title=title,
        targets=tuple(targets),
        tasks=tuple(tasks),
        cells=cells,
    )


def apply(state: CollectionState, event: Event) -> CollectionState:
    return _refresh_running(_apply_event(state, event))


def _apply_event(state: CollectionState, event: Event) -> CollectionState:
    if isinstance(event, MarkRunning):
        return _mark_running(state, event)
    if isinstance(event, Complete):
        return _complete(state, event)
    if isinstance(event, Fail):
        return _fail(state, event)
    if isinstance(event, ManualEdit):
        return _manual_edit(state, event)
    if isinstance(event, AddTask):
        return _add_task(state, event)
    if isinstance(event, RemoveTask):
        return _remove_task(state, event)
    if isinstance(event, UpdateTaskDefinition):
        return _update_task(state, event)
    if isinstance(event, RunStarted):
        return state.model_copy(update={"active_runs": state.active_runs + 1})
    if isinstance(event, RunFinished):
        return state.model_copy(update={"active_runs": max(0, state.active_runs - 1)})
    assert_never(event)


def _refresh_running(state: CollectionState) -> CollectionState:
    """Running while any run is open or any cell is still in flight past its deadline."""
    is_running = state.active_runs > 0 or any(
        cell.status == "running" for cell in state.cells.values()
    )
    if is_running == state.is_running:
        return state
    return state.model_copy(update={"is_running": is_running})


def cell_target_ids(targets: Sequence[TargetSummary], task: TaskDefinition) -> list[str]:
    """Target ids that own a cell for `task`."""
    if task.surface == "section":
        return [COLLECTION_SCOPE]
    return [target.id for target in targets]


def progress(state: CollectionState) -> ProgressSnapshot:
    counts = {"pending": 0, "running": 0, "complete": 0, "error": 0}
    for cell in state.cells.values():
        counts[cell.status] += 1
    return ProgressSnapshot(total=len(state.cells), **counts)


def _initial_cell(target_id: str, task: TaskDefinition) -> TaskState:
    if task.user_input:
        return TaskState(target_id=target_id, task_id=task.id, status="complete", result="")
    return TaskState(target_id=target_id, task_id=task.id)


def _addresses(state: CollectionState, target_id: str, task: TaskDefinition) -> bool:
    return target_id in cell_target_ids(state.targets, task)


def _with_cell(state: CollectionState, cell: TaskState) -> CollectionState:
    cells = dict(state.cells)
    cells[cell_key(cell.target_id, cell.task_id)] = cell
    return state.model_copy(update={"cells": cells})


def _mark_running(state: CollectionState, event: MarkRunning) -> CollectionState:
    task = state.task(event.task_id)
    if task is None or task.user_input or not _addresses(state, event.target_id, task):
        return state
    current = state.cell(event.target_id, event.task_id)
    if current is not None and current.status == "running":
        return state
    return _with_cell(
        state,
        TaskState(target_id=event.target_id, task_id=event.task_id, status="running"),
    )


def _complete(state: CollectionState, event: Complete) -> CollectionState:
    task = state.task(event.task_id)
    if task is None or not _addresses(state, event.target_id, task):
        return state
    result = event.result
    return _with_cell(
        state,
        TaskState(
            target_id=event.target_id,
            task_id=event.task_id,
            status="complete",
            result=result.result,
            detail=result.detail,
            source_text=result.source_text,
            value=result.value,
            usage=result.usage,
            latency_ms=result.latency_ms,
        ),
    )


def _fail(state: CollectionState, event: Fail) -> CollectionState:
    task = state.task(event.task_id)
    if task is None or not _addresses(state, event.target_id, task):
        return state
    return _with_cell(
        state,
        TaskState(
            target_id=event.target_id,
            task_id=event.task_id,
            status="error",
            error=event.error,
        ),
    )


def _manual_edit(state: CollectionState, event: ManualEdit) -> CollectionState:
    task = state.task(event.task_id)
    if task is None or not task.user_input or not _addresses(state, event.target_id, task):
        return state
    return _with_cell(
        state,
        TaskState(
            target_id=event.target_id,
            task_id=event.task_id,
            status="complete",
            result=event.value,
            value=coerce_answer(task.output_shape, event.value),
        ),
    )


def _add_task(state: CollectionState, event: AddTask) -> CollectionState:
    if state.task(event.task.id) is not None:
        return state
    cells = dict(state.cells)
    for target_id in cell_target_ids(state.targets, event.task):
        cells[cell_key(target_id, event.task.id)] = _initial_cell(target_id, event.task)
    return state.model_copy(update={"tasks": (*state.tasks, event.task), "cells": cells})


def _remove_task(state: CollectionState, event: RemoveTask) -> CollectionState:
    if state.task(event.task_id) is None:
        return state
    cells = {key: cell for key, cell in state.cells.items() if cell.task_id != event.task_id}
    tasks = tuple(task for task in state.tasks if task.id != event.task_id)
    return state.model_copy(update={"tasks": tasks, "cells": cells})


def _update_task(state: CollectionState, event: UpdateTaskDefinition) -> CollectionState:
    if state.task(event.task.id) is None:
        return state
    tasks = tuple(event.task if task.id == event.task.id else task for task in state.tasks)
    cells = {key: cell for key, cell in state.cells.items() if cell.task_id != event.task.id}
    for target_id in cell_target_ids(state.targets, event.task):
        cell = state.cell(target_id, event.task.id)
        # A task switched to manual input needs editable (complete) cells.
        if cell is None or (event.task.user_input and cell.status != "complete"):
            cell = _initial_cell(target_id, event.task)
        cells[cell_key(target_id, event.task.id)] = cell
    return state.model_copy(update={"tasks": tasks, "cells": cells})
