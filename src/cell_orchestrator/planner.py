"""One-shot planner: free-text request -> ExecutionPlan.

The planner makes a single model call without tools. Its output goes through
the sanitizer and a lenient raw schema, then is normalised into immutable task
definitions: ids are slugified and deduplicated, unknown tools are dropped and
missing model selectors fall back to the configured default.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Iterable, Sequence
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from cell_orchestrator.errors import MalformedResponse, ModelInvocationFailure, PlanningFailure
from cell_orchestrator.llm import LLMAdapter
from cell_orchestrator.models import (
    ArtifactFormat,
    ExecutionPlan,
    Message,
    ModelConfig,
    OutputShape,
    PlanKind,
    Provider,
    SectionType,
    TargetFilter,
    TargetSummary,
    TaskDefinition,
    TaskGroup,
)
from cell_orchestrator.prompts import SECTION_SCHEMAS
from cell_orchestrator.sanitizer import sanitize

logger = logging.getLogger(__name__)

TABLE_PLANNER_PROMPT = """You plan document analysis work. The user has a collection of documents \
and wants them analysed like a spreadsheet: every row is a document, every column is an \
independent AI task run against that one document.

Respond with JSON only, matching:
{{
  "taskTitle": "short title",
  "taskDescription": "one or two sentences",
  "useCases": [
    {{
      "id": "kebab-case id",
      "name": "2-4 word name",
      "description": "what this use case checks",
      "documentFilter": {{"documentTypes": ["optional type codes; omit to include every document"]}},
      "columns": [
        {{
          "id": "kebab-case id",
          "name": "2-4 word column header",
          "description": "what the column extracts or validates",
          "systemPrompt": "self-contained instructions for the per-document call",
          "provider": "anthropic",
          "model": "{default_model}",
          "tools": [],
          "outputFormat": "text | boolean | number | json | markdown | badge",
          "temperature": 0.3,
          "maxTokens": 2048
        }}
      ]
    }}
  ]
}}

Guidelines:
- Propose 2-3 use cases, each with 3-6 columns.
- Column prompts receive only the document's content and metadata; keep them self-contained.
- Ask for short answers ("Compliant", "Missing", a part number). Answers are automatically \
wrapped as {{"answer", "detail", "sourceText"}}.
- Only add tools when a column must look at other documents. Available tools: {tools}.
- Prefer "badge" for status checks, "boolean" for pass/fail and "text" for short values."""

DOCUMENT_PLANNER_PROMPT = """You plan generated documents. Given a collection of source documents \
and a request, design document templates whose sections are each produced by one AI task that \
sees the whole collection.

Respond with JSON only, matching:
{{
  "taskTitle": "short title",
  "taskDescription": "one or two sentences",
  "templates": [
    {{
      "id": "kebab-case id",
      "name": "display name",
      "description": "what the document contains",
      "fileType": "pptx | xlsx | pdf",
      "sections": [
        {{
          "id": "kebab-case id",
          "name": "section title",
          "type": "{section_types}",
          "prompt": "self-contained instructions for this section",
          "provider": "anthropic",
          "model": "{default_model}"
        }}
      ]
    }}
  ]
}}

Section content schemas:
{schemas}

Guidelines:
- Propose 2-3 templates with 3-8 sections each.
- "pptx" for presentations, "xlsx" for tabular exports, "pdf" for formal reports.
- Keep section names short enough for slide titles and sheet names."""


class _RawTask(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    name: str = ""
    description: str = ""
    prompt: str = Field(default="", validation_alias=AliasChoices("systemPrompt", "prompt"))
    provider: Provider | None = None
    model: str | None = None
    tools: list[str] = Field(default_factory=list)
    output_format: OutputShape | None = Field(
        default=None, validation_alias=AliasChoices("outputFormat", "output_format")
    )
    section_type: SectionType | None = Field(
        default=None, validation_alias=AliasChoices("type", "sectionType")
    )
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(
        default=None, ge=1, validation_alias=AliasChoices("maxTokens", "max_tokens")
    )

    @field_validator("provider", mode="before")
    @classmethod
    def _known_provider(cls, value: Any) -> Any:
        if isinstance(value, str) and value not in ("openai", "anthropic"):
            logger.warning("planner event=unknown_provider value=%s", value)
            return None
        return value

    @field_validator("output_format", mode="before")
    @classmethod
    def _known_format(cls, value: Any) -> Any:
        if isinstance(value, str) and value not in {shape.value for shape in OutputShape}:
            logger.warning("planner event=unknown_output_format value=%s", value)
            return None
        return value

    @field_validator("section_type", mode="before")
    @classmethod
    def _known_section_type(cls, value: Any) -> Any:
        if isinstance(value, str) and value not in SECTION_SCHEMAS:
            logger.warning("planner event=unknown_section_type value=%s", value)
            return None
        return value


class _RawFilter(BaseModel):
    model_config = ConfigDict(extra="ignore")

    document_types: list[str] | None = Field(
        default=None, validation_alias=AliasChoices("documentTypes", "document_types")
    )


class _RawGroup(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    name: str = ""
    description: str = ""
    document_filter: _RawFilter | None = Field(
        default=None, validation_alias=AliasChoices("documentFilter", "document_filter")
    )
    file_type: ArtifactFormat | None = Field(
        default=None, validation_alias=AliasChoices("fileType", "file_type")
    )
    tasks: list[_RawTask] = Field(
        default_factory=list, validation_alias=AliasChoices("columns", "sections", "tasks")
    )


class _RawPlan(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str = Field(default="", validation_alias=AliasChoices("taskTitle", "title"))
    description: str = Field(
        default="", validation_alias=AliasChoices("taskDescription", "description")
    )
    groups: list[_RawGroup] = Field(
        default_factory=list, validation_alias=AliasChoices("useCases", "templates", "groups")
    )


class OrchestrationPlanner:
    def __init__(
        self,
        llm: LLMAdapter,
        *,
        config: ModelConfig,
        default_task_model: ModelConfig,
        known_tools: Iterable[str] = (),
    ) -> None:
        self.llm = llm
        self.config = config
        self.default_task_model = default_task_model
        self.known_tools = sorted(set(known_tools))

    async def plan(
        self,
        user_request: str,
        targets: Sequence[TargetSummary],
        *,
        kind: PlanKind = "table",
    ) -> ExecutionPlan:
        started_at = time.perf_counter()
        messages = [
            Message(role="system", content=self.system_prompt(kind)),
            Message(role="user", content=_request_message(user_request, targets)),
        ]
        try:
            response = await self.llm.invoke(messages, self.config)
        except ModelInvocationFailure as exc:
            raise PlanningFailure(f"Planner model call failed: {exc}") from exc

        try:
            raw = _RawPlan.model_validate(sanitize(response.content))
        except MalformedResponse as exc:
            raise PlanningFailure(f"Planner returned malformed output: {exc}") from exc
        except ValidationError as exc:
            raise PlanningFailure(f"Planner output did not match the plan schema: {exc}") from exc

        plan = self._normalise(raw, kind)
        if not plan.groups or not any(group.tasks for group in plan.groups):
            raise PlanningFailure("Planner returned no tasks")

        logger.info(
            "planner event=planned kind=%s groups=%d tasks=%d duration_ms=%s",
            kind,
            len(plan.groups),
            sum(len(group.tasks) for group in plan.groups),
            round((time.perf_counter() - started_at) * 1000.0, 2),
        )
        return plan

    def system_prompt(self, kind: PlanKind) -> str:
        if kind == "document":
            return DOCUMENT_PLANNER_PROMPT.format(
                default_model=self.default_task_model.model,
                section_types=" | ".join(SECTION_SCHEMAS),
                schemas="\n".join(f"- {name}: {schema}" for name, schema in SECTION_SCHEMAS.items()),
            )
        return TABLE_PLANNER_PROMPT.format(
            default_model=self.default_task_model.model,
            tools=", ".join(self.known_tools) or "none",
        )

    def _normalise(self, raw: _RawPlan, kind: PlanKind) -> ExecutionPlan:
        group_ids: set[str] = set()
        groups: list[TaskGroup] = []
        for index, raw_group in enumerate(raw.groups):
            group_id = _unique_slug(raw_group.id or raw_group.name, f"group-{index + 1}", group_ids)
            task_ids: set[str] = set()
            tasks: list[TaskDefinition] = []
            for pos, raw_task in enumerate(raw_group.tasks):
                task_id = _unique_slug(raw_task.id or raw_task.name, f"task-{pos + 1}", task_ids)
                tasks.append(self._task(raw_task, kind, task_id))
            document_types = None
            if raw_group.document_filter is not None:
                document_types = raw_group.document_filter.document_types
            groups.append(
                TaskGroup(
                    id=group_id,
                    name=raw_group.name or group_id,
                    description=raw_group.description,
                    target_filter=TargetFilter(
                        target_types=tuple(document_types) if document_types else None
                    ),
                    tasks=tuple(tasks),
                    artifact_format=raw_group.file_type if kind == "document" else None,
                )
            )
        return ExecutionPlan(
            title=raw.title or "Untitled plan",
            description=raw.description,
            kind=kind,
            groups=tuple(groups),
        )

    def _task(self, raw: _RawTask, kind: PlanKind, task_id: str) -> TaskDefinition:
        tools = []
        for name in raw.tools:
            if name in self.known_tools:
                tools.append(name)
            else:
                logger.warning("planner event=unknown_tool_dropped task_id=%s tool=%s", task_id, name)

        default = self.default_task_model
        model = ModelConfig(
            provider=raw.provider or default.provider,
            model=raw.model or default.model,
            temperature=raw.temperature if raw.temperature is not None else default.temperature,
            max_tokens=raw.max_tokens or default.max_tokens,
        )
        if kind == "document":
            return TaskDefinition(
                id=task_id,
                name=raw.name or task_id,
                description=raw.description,
                prompt=raw.prompt,
                model=model,
                tools=tuple(tools),
                output_shape=OutputShape.JSON,
                surface="section",
                section_type=raw.section_type or "text",
            )
        return TaskDefinition(
            id=task_id,
            name=raw.name or task_id,
            description=raw.description,
            prompt=raw.prompt,
            model=model,
            tools=tuple(tools),
            output_shape=raw.output_format or OutputShape.TEXT,
        )


def _request_message(user_request: str, targets: Sequence[TargetSummary]) -> str:
    lines = [f"## Documents ({len(targets)})"]
    lines.extend(f"- {t.name} ({t.type or 'unclassified'}) [id: {t.id}]" for t in targets)
    lines.append(f"\n## User Request\n{user_request}")
    return "\n".join(lines)


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


def _unique_slug(value: str, fallback: str, taken: set[str]) -> str:
    base = slugify(value) or fallback
    candidate = base
    suffix = 2
    while candidate in taken:
        candidate = f"{base}-{suffix}"
        suffix += 1
    taken.add(candidate)
    return candidate
