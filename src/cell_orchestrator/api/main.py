"""FastAPI app entrypoint for cell-orchestrator."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from cell_orchestrator.config.settings import Settings, get_settings
from cell_orchestrator.errors import (
    CellOrchestratorError,
    LimiterTimeout,
    ModelInvocationFailure,
    PlanningFailure,
    PresetError,
    UnknownCollection,
    UnknownTarget,
    UnknownTask,
)
from cell_orchestrator.models import (
    CollectionState,
    ExecutionPlan,
    PlanKind,
    ProgressSnapshot,
    RunReport,
    Target,
    TargetSummary,
    TaskDefinition,
    TaskGroup,
    TaskState,
)
from cell_orchestrator.presets import AGENT_PRESETS, build_task_from_preset
from cell_orchestrator.reducer import progress
from cell_orchestrator.runner import CollectionRunner, build_runner
from cell_orchestrator.tools import list_tools

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: dict[type[CellOrchestratorError], int] = {
    LimiterTimeout: 503,
    ModelInvocationFailure: 502,
    UnknownCollection: 404,
    UnknownTarget: 404,
    UnknownTask: 404,
    PlanningFailure: 502,
    PresetError: 422,
}


class PlanRequest(BaseModel):
    request: str = Field(min_length=1)
    target_ids: list[str] | None = None
    kind: PlanKind = "table"


class CreateCollectionRequest(BaseModel):
    group: TaskGroup
    target_ids: list[str] | None = None
    title: str = ""
    collection_id: str | None = None


class RunRequest(BaseModel):
    deadline_s: float | None = Field(default=None, gt=0.0)


class EditCellRequest(BaseModel):
    value: str


class PresetTaskRequest(BaseModel):
    preset_id: str
    task_id: str
    name: str | None = None
    settings: dict[str, str] | None = None


class AddTaskRequest(BaseModel):
    task: TaskDefinition | None = None
    preset: PresetTaskRequest | None = None


class UpdateTaskRequest(BaseModel):
    changes: dict[str, Any] = Field(default_factory=dict)


class CollectionView(BaseModel):
    collection: CollectionState
    progress: ProgressSnapshot


def create_app(
    *,
    runner: CollectionRunner | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()
    logging.getLogger("cell_orchestrator").setLevel(settings.log_level.upper())

    app = FastAPI(title=settings.app_name)
    app.state.settings = settings
    app.state.runner = runner or build_runner(settings)

    @app.exception_handler(CellOrchestratorError)
    async def _engine_error(request: Request, exc: CellOrchestratorError) -> JSONResponse:
        status_code = _STATUS_BY_ERROR.get(type(exc), 500)
        if status_code >= 500:
            logger.warning("api event=engine_error path=%s error=%s", request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    def _runner(request: Request) -> CollectionRunner:
        return request.app.state.runner

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/tools")
    def tools(request: Request) -> dict[str, list[str]]:
        return {"tools": list_tools(_runner(request).executor.dispatcher.registry)}

    @app.get("/presets")
    def presets() -> dict[str, list[dict[str, Any]]]:
        return {"presets": [preset.model_dump(mode="json") for preset in AGENT_PRESETS]}

    @app.post("/targets", response_model=Target)
    def upsert_target(payload: Target, request: Request) -> Target:
        return _runner(request).targets.upsert(payload)

    @app.get("/targets", response_model=list[TargetSummary])
    def list_targets(request: Request) -> list[TargetSummary]:
        return _runner(request).targets.summaries()

    @app.post("/plans", response_model=ExecutionPlan)
    async def submit_plan(payload: PlanRequest, request: Request) -> ExecutionPlan:
        return await _runner(request).submit_plan(
            payload.request, payload.target_ids, kind=payload.kind
        )

    @app.post("/collections", response_model=CollectionView)
    def create_collection(payload: CreateCollectionRequest, request: Request) -> CollectionView:
        state = _runner(request).create_collection(
            payload.group,
            payload.target_ids,
            title=payload.title,
            collection_id=payload.collection_id,
        )
        return CollectionView(collection=state, progress=progress(state))

    @app.get("/collections/{collection_id}", response_model=CollectionView)
    def get_collection(collection_id: str, request: Request) -> CollectionView:
        state = _runner(request).get_state(collection_id)
        return CollectionView(collection=state, progress=progress(state))

    @app.post("/collections/{collection_id}/run", response_model=RunReport)
    async def run_collection(
        collection_id: str,
        request: Request,
        payload: RunRequest | None = None,
    ) -> RunReport:
        deadline_s = payload.deadline_s if payload is not None else None
        return await _runner(request).run_all(collection_id, deadline_s=deadline_s)

    @app.post("/collections/{collection_id}/retry-failed", response_model=RunReport)
    async def retry_failed(
        collection_id: str,
        request: Request,
        payload: RunRequest | None = None,
    ) -> RunReport:
        deadline_s = payload.deadline_s if payload is not None else None
        return await _runner(request).retry_failed(collection_id, deadline_s=deadline_s)

    @app.post(
        "/collections/{collection_id}/cells/{target_id}/{task_id}/run",
        response_model=TaskState,
    )
    async def run_cell(
        collection_id: str,
        target_id: str,
        task_id: str,
        request: Request,
    ) -> TaskState:
        cell = await _runner(request).run_cell(collection_id, target_id, task_id)
        if cell is None:
            raise HTTPException(status_code=409, detail="Cell is already running")
        return cell

    @app.put("/collections/{collection_id}/cells/{target_id}/{task_id}", response_model=TaskState)
    def edit_cell(
        collection_id: str,
        target_id: str,
        task_id: str,
        payload: EditCellRequest,
        request: Request,
    ) -> TaskState:
        return _runner(request).edit_cell(collection_id, target_id, task_id, payload.value)

    @app.post("/collections/{collection_id}/tasks", response_model=CollectionView)
    def add_task(collection_id: str, payload: AddTaskRequest, request: Request) -> CollectionView:
        if (payload.task is None) == (payload.preset is None):
            raise HTTPException(status_code=422, detail="Provide exactly one of 'task' or 'preset'")
        task = payload.task
        if payload.preset is not None:
            task = build_task_from_preset(
                payload.preset.preset_id,
                payload.preset.task_id,
                payload.preset.settings,
                name=payload.preset.name,
            )
        state = _runner(request).add_task(collection_id, task)
        return CollectionView(collection=state, progress=progress(state))

    @app.put("/collections/{collection_id}/tasks/{task_id}", response_model=CollectionView)
    def update_task(
        collection_id: str,
        task_id: str,
        payload: UpdateTaskRequest,
        request: Request,
    ) -> CollectionView:
        cell_runner = _runner(request)
        current = cell_runner.get_state(collection_id).task(task_id)
        if current is None:
            raise UnknownTask(f"Task {task_id} does not exist in collection {collection_id}")
        try:
            revised = current.revise(**payload.changes)
        except ValidationError as exc:
            detail = exc.errors(include_url=False, include_context=False)
            raise HTTPException(status_code=422, detail=detail) from exc
        state = cell_runner.update_task(collection_id, revised)
        return CollectionView(collection=state, progress=progress(state))

    @app.delete("/collections/{collection_id}/tasks/{task_id}", response_model=CollectionView)
    def remove_task(collection_id: str, task_id: str, request: Request) -> CollectionView:
        state = _runner(request).remove_task(collection_id, task_id)
        return CollectionView(collection=state, progress=progress(state))

    return app


app = create_app()
