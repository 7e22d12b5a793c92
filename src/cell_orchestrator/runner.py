"""Collection runner: plans, collections and cell execution under the limiters.

Every state change goes through the collection store, which applies the pure
reducer atomically. A cell becomes `running` only when its limiter admits it;
any failure inside the cell ends as a Fail event for that cell alone.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping
from uuid import uuid4

from cell_orchestrator.config.settings import Settings
from cell_orchestrator.context import render_collection_context, render_target_context
from cell_orchestrator.errors import UnknownCollection, UnknownTarget, UnknownTask
from cell_orchestrator.graph.agent_loop import AgentLoopExecutor
from cell_orchestrator.llm import LLMAdapter, build_llm_router
from cell_orchestrator.models import (
    CellRef,
    CollectionState,
    ExecutionPlan,
    ExecutionResult,
    ModelConfig,
    PlanKind,
    RunReport,
    TaskContext,
    TaskDefinition,
    TaskGroup,
    TaskState,
    cell_key,
)
from cell_orchestrator.planner import OrchestrationPlanner
from cell_orchestrator.reducer import (
    AddTask,
    Complete,
    Fail,
    ManualEdit,
    MarkRunning,
    RemoveTask,
    RunFinished,
    RunStarted,
    UpdateTaskDefinition,
    cell_target_ids,
    initialize_collection,
)
from cell_orchestrator.scheduler import ConcurrencyLimiter
from cell_orchestrator.storage.base import CollectionStorage, ProgressListener, TargetStorage
from cell_orchestrator.storage.memory import InMemoryCollectionStorage, InMemoryTargetStorage
from cell_orchestrator.tools.documents import build_document_tools
from cell_orchestrator.tools.gateway import ToolDispatcher
from cell_orchestrator.tools.registry import ToolSpec

logger = logging.getLogger(__name__)


class CollectionRunner:
    def __init__(
        self,
        *,
        settings: Settings,
        planner: OrchestrationPlanner,
        executor: AgentLoopExecutor,
        collections: CollectionStorage,
        targets: TargetStorage,
        cell_limiter: ConcurrencyLimiter,
        section_limiter: ConcurrencyLimiter,
    ) -> None:
        self.settings = settings
        self.planner = planner
        self.executor = executor
        self.collections = collections
        self.targets = targets
        self.cell_limiter = cell_limiter
        self.section_limiter = section_limiter
        self._in_flight: set[tuple[str, str]] = set()
        # Cells still running after a run_all deadline; kept referenced until they finish.
        self._background: set[asyncio.Task] = set()

    def subscribe(self, listener: ProgressListener) -> None:
        self.collections.subscribe(listener)

    async def submit_plan(
        self,
        user_request: str,
        target_ids: list[str] | None = None,
        *,
        kind: PlanKind = "table",
    ) -> ExecutionPlan:
        return await self.planner.plan(user_request, self.targets.summaries(target_ids), kind=kind)

    def create_collection(
        self,
        group: TaskGroup,
        target_ids: list[str] | None = None,
        *,
        title: str = "",
        collection_id: str | None = None,
        saved_cells: Mapping[str, TaskState] | None = None,
    ) -> CollectionState:
        summaries = [s for s in self.targets.summaries(target_ids) if group.target_filter.matches(s)]
        state = initialize_collection(
            collection_id or f"col-{uuid4().hex[:12]}",
            title=title or group.name,
            targets=summaries,
            tasks=group.tasks,
            saved_cells=saved_cells,
        )
        logger.info(
            "collection event=created collection_id=%s targets=%d tasks=%d",
            state.id,
            len(state.targets),
            len(state.tasks),
        )
        return self.collections.create(state)

    def get_state(self, collection_id: str) -> CollectionState:
        state = self.collections.get(collection_id)
        if state is None:
            raise UnknownCollection(f"Collection {collection_id} does not exist")
        return state

    async def run_task(
        self,
        task: TaskDefinition,
        target_id: str,
        *,
        collection_id: str = "",
    ) -> ExecutionResult:
        """Run one task against one target outside any collection state."""
        target = self.targets.get(target_id)
        if target is None:
            raise UnknownTarget(f"Target {target_id} does not exist")
        context = TaskContext(collection_id=collection_id, target_id=target_id)
        source = render_target_context(target, max_chars=self.settings.context_max_chars)

        async def _work() -> ExecutionResult:
            return await self.executor.run(task, context, source_material=source)

        return await self._limiter_for(task).submit(
            _work, timeout_s=self.settings.limiter_queue_timeout_s
        )

    async def run_cell(self, collection_id: str, target_id: str, task_id: str) -> TaskState | None:
        """Run one cell; returns None when the same cell is already in flight."""
        state = self.get_state(collection_id)
        task = state.task(task_id)
        if task is None:
            raise UnknownTask(f"Task {task_id} does not exist in collection {collection_id}")
        if target_id not in cell_target_ids(state.targets, task):
            raise UnknownTarget(f"Target {target_id} has no cell for task {task_id}")
        if task.user_input:
            return state.cell(target_id, task_id)

        key = (collection_id, cell_key(target_id, task_id))
        if key in self._in_flight:
            logger.info(
                "cell event=duplicate_rejected collection_id=%s target_id=%s task_id=%s",
                collection_id,
                target_id,
                task_id,
            )
            return None
        self._in_flight.add(key)
        try:
            await self._execute(collection_id, target_id, task)
        finally:
            self._in_flight.discard(key)
        return self.get_state(collection_id).cell(target_id, task_id)

    async def run_all(self, collection_id: str, *, deadline_s: float | None = None) -> RunReport:
        state = self.get_state(collection_id)
        refs = [
            CellRef(target_id=target_id, task_id=task.id)
            for task in state.tasks
            if not task.user_input
            for target_id in cell_target_ids(state.targets, task)
        ]
        return await self._run_refs(collection_id, refs, deadline_s=deadline_s)

    async def run_task_column(
        self,
        collection_id: str,
        task_id: str,
        *,
        deadline_s: float | None = None,
    ) -> RunReport:
        state = self.get_state(collection_id)
        task = state.task(task_id)
        if task is None:
            raise UnknownTask(f"Task {task_id} does not exist in collection {collection_id}")
        refs = []
        if not task.user_input:
            refs = [
                CellRef(target_id=target_id, task_id=task.id)
                for target_id in cell_target_ids(state.targets, task)
            ]
        return await self._run_refs(collection_id, refs, deadline_s=deadline_s)

    async def retry_failed(
        self,
        collection_id: str,
        *,
        deadline_s: float | None = None,
    ) -> RunReport:
        state = self.get_state(collection_id)
        refs = [
            CellRef(target_id=cell.target_id, task_id=cell.task_id)
            for cell in state.cells.values()
            if cell.status == "error"
        ]
        return await self._run_refs(collection_id, refs, deadline_s=deadline_s)

    def edit_cell(self, collection_id: str, target_id: str, task_id: str, value: str) -> TaskState:
        """Manual edit; ignored (state unchanged) for model-backed tasks."""
        state = self.get_state(collection_id)
        task = state.task(task_id)
        if task is None:
            raise UnknownTask(f"Task {task_id} does not exist in collection {collection_id}")
        if not task.user_input:
            logger.info(
                "cell event=edit_ignored collection_id=%s task_id=%s reason=model-backed task",
                collection_id,
                task_id,
            )
        updated = self.collections.dispatch(
            collection_id,
            ManualEdit(target_id=target_id, task_id=task_id, value=value),
        )
        cell = updated.cell(target_id, task_id)
        if cell is None:
            raise UnknownTarget(f"Target {target_id} has no cell for task {task_id}")
        return cell

    def add_task(self, collection_id: str, task: TaskDefinition) -> CollectionState:
        self.get_state(collection_id)
        return self.collections.dispatch(collection_id, AddTask(task=task))

    def update_task(self, collection_id: str, task: TaskDefinition) -> CollectionState:
        if self.get_state(collection_id).task(task.id) is None:
            raise UnknownTask(f"Task {task.id} does not exist in collection {collection_id}")
        return self.collections.dispatch(collection_id, UpdateTaskDefinition(task=task))

    def remove_task(self, collection_id: str, task_id: str) -> CollectionState:
        if self.get_state(collection_id).task(task_id) is None:
            raise UnknownTask(f"Task {task_id} does not exist in collection {collection_id}")
        return self.collections.dispatch(collection_id, RemoveTask(task_id=task_id))

    async def _run_refs(
        self,
        collection_id: str,
        refs: Iterable[CellRef],
        *,
        deadline_s: float | None,
    ) -> RunReport:
        if deadline_s is None:
            deadline_s = self.settings.run_deadline_s
        started_at = time.perf_counter()
        self.collections.dispatch(collection_id, RunStarted())
        pending: dict[asyncio.Task, CellRef] = {}
        skipped: list[CellRef] = []
        for ref in refs:
            if (collection_id, cell_key(ref.target_id, ref.task_id)) in self._in_flight:
                skipped.append(ref)
                continue
            job = asyncio.create_task(self.run_cell(collection_id, ref.target_id, ref.task_id))
            pending[job] = ref

        timed_out: list[CellRef] = []
        if pending:
            done, still_running = await asyncio.wait(pending.keys(), timeout=deadline_s)
            for job in still_running:
                # Left running: a tool call may have side effects that cannot be aborted.
                timed_out.append(pending[job])
                self._background.add(job)
                job.add_done_callback(self._background.discard)
            for job in done:
                exc = job.exception()
                if exc is not None:
                    # The task or target was removed before the cell started.
                    logger.info(
                        "cell event=skipped collection_id=%s target_id=%s task_id=%s reason=%s",
                        collection_id,
                        pending[job].target_id,
                        pending[job].task_id,
                        exc,
                    )
                    skipped.append(pending[job])
                elif job.result() is None:
                    skipped.append(pending[job])

        state = self.collections.dispatch(collection_id, RunFinished())
        excluded = {cell_key(ref.target_id, ref.task_id) for ref in (*timed_out, *skipped)}
        completed: list[CellRef] = []
        failed: list[CellRef] = []
        for ref in pending.values():
            key = cell_key(ref.target_id, ref.task_id)
            if key in excluded:
                continue
            cell = state.cells.get(key)
            if cell is None:
                continue
            (failed if cell.status == "error" else completed).append(ref)

        report = RunReport(
            collection_id=collection_id,
            completed=tuple(completed),
            failed=tuple(failed),
            timed_out=tuple(timed_out),
            skipped=tuple(skipped),
        )
        logger.info(
            "collection event=run_finished collection_id=%s completed=%d failed=%d "
            "timed_out=%d skipped=%d duration_ms=%s",
            collection_id,
            len(report.completed),
            len(report.failed),
            len(report.timed_out),
            len(report.skipped),
            round((time.perf_counter() - started_at) * 1000.0, 2),
        )
        return report

    async def _execute(self, collection_id: str, target_id: str, task: TaskDefinition) -> None:
        async def _work() -> ExecutionResult:
            self.collections.dispatch(
                collection_id, MarkRunning(target_id=target_id, task_id=task.id)
            )
            logger.info(
                "cell event=started collection_id=%s target_id=%s task_id=%s surface=%s",
                collection_id,
                target_id,
                task.id,
                task.surface,
            )
            context = TaskContext(collection_id=collection_id, target_id=target_id)
            source = self._source_material(collection_id, target_id, task)
            return await self.executor.run(task, context, source_material=source)

        try:
            result = await self._limiter_for(task).submit(
                _work, timeout_s=self.settings.limiter_queue_timeout_s
            )
        except Exception as exc:  # noqa: BLE001
            error = str(exc) or type(exc).__name__
            logger.warning(
                "cell event=failed collection_id=%s target_id=%s task_id=%s error_type=%s error=%s",
                collection_id,
                target_id,
                task.id,
                type(exc).__name__,
                error,
            )
            self.collections.dispatch(
                collection_id, Fail(target_id=target_id, task_id=task.id, error=error)
            )
            return

        logger.info(
            "cell event=complete collection_id=%s target_id=%s task_id=%s stop_reason=%s "
            "latency_ms=%s",
            collection_id,
            target_id,
            task.id,
            result.stop_reason,
            result.latency_ms,
        )
        self.collections.dispatch(
            collection_id, Complete(target_id=target_id, task_id=task.id, result=result)
        )

    def _source_material(self, collection_id: str, target_id: str, task: TaskDefinition) -> str:
        state = self.get_state(collection_id)
        if task.surface == "section":
            documents = self.targets.list([summary.id for summary in state.targets])
            return render_collection_context(
                state.title, documents, max_chars=self.settings.context_max_chars
            )
        target = self.targets.get(target_id)
        if target is None:
            raise UnknownTarget(f"Target {target_id} does not exist")
        return render_target_context(target, max_chars=self.settings.context_max_chars)

    def _limiter_for(self, task: TaskDefinition) -> ConcurrencyLimiter:
        return self.section_limiter if task.surface == "section" else self.cell_limiter


def build_runner(
    settings: Settings,
    *,
    llm: LLMAdapter | None = None,
    targets: TargetStorage | None = None,
    collections: CollectionStorage | None = None,
    extra_tools: Mapping[str, ToolSpec] | None = None,
) -> CollectionRunner:
    """Wire a runner from settings; every collaborator can be overridden."""
    llm = llm or build_llm_router(settings)
    targets = targets or InMemoryTargetStorage()
    collections = collections or InMemoryCollectionStorage()

    registry = build_document_tools(targets, collections=collections)
    registry.update(extra_tools or {})
    dispatcher = ToolDispatcher(
        registry=registry,
        tool_timeout_s=settings.tool_timeout_s,
        max_retries=settings.tool_max_retries,
        backoff_s=settings.tool_retry_backoff_s,
    )
    planner = OrchestrationPlanner(
        llm,
        config=ModelConfig(
            provider=settings.planner_provider,
            model=settings.planner_model,
            temperature=settings.planner_temperature,
            max_tokens=settings.planner_max_tokens,
        ),
        default_task_model=ModelConfig(
            provider=settings.default_cell_provider,
            model=settings.default_cell_model,
        ),
        known_tools=registry.keys(),
    )
    return CollectionRunner(
        settings=settings,
        planner=planner,
        executor=AgentLoopExecutor(llm, dispatcher, iteration_cap=settings.max_tool_iterations),
        collections=collections,
        targets=targets,
        cell_limiter=ConcurrencyLimiter(settings.cell_concurrency, name="cells"),
        section_limiter=ConcurrencyLimiter(settings.section_concurrency, name="sections"),
    )
