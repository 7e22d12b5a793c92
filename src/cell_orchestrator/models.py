"""Pydantic models shared across planner, agent loop, reducer, storage and API.

Terms used in this file:
- Target: one document (table row) that tasks run against.
- TaskDefinition: one column of a table or one section of a generated artifact.
- TaskState: the lifecycle record for one (target, task) pair.
- Collection: a set of targets crossed with a set of task definitions.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StrictModel(BaseModel):
    """Base model for strict schema validation."""

    model_config = ConfigDict(extra="forbid")


class FrozenModel(BaseModel):
    """Immutable record; edits go through model_copy."""

    model_config = ConfigDict(extra="forbid", frozen=True)


Provider = Literal["openai", "anthropic"]
# "none" keeps tool definitions on the request but forbids new tool calls.
ToolChoice = Literal["auto", "none"]
TaskSurface = Literal["cell", "section"]
TaskStatus = Literal["pending", "running", "complete", "error"]
StopReason = Literal["answered", "forced_final_turn", "iteration_cap"]
PlanKind = Literal["table", "document"]
ArtifactFormat = Literal["pptx", "xlsx", "pdf"]
SectionType = Literal[
    "title",
    "text",
    "table",
    "chart",
    "summary",
    "keyValue",
    "bulletList",
    "comparison",
]


class OutputShape(str, Enum):
    TEXT = "text"
    BOOLEAN = "boolean"
    NUMBER = "number"
    JSON = "json"
    MARKDOWN = "markdown"
    BADGE = "badge"


class ModelConfig(FrozenModel):
    """Provider/model selector plus sampling limits for one model call."""

    provider: Provider = "anthropic"
    model: str = Field(min_length=1)
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, ge=1)
    # Extended reasoning budget; only providers that support it honour it.
    reasoning_budget_tokens: int | None = Field(default=None, ge=1)


class TaskDefinition(FrozenModel):
    """Immutable description of one unit of model-backed work."""

    id: str = Field(min_length=1)
    name: str = ""
    description: str = ""
    prompt: str = ""
    model: ModelConfig
    # Ordered set of tool names the model may call.
    tools: tuple[str, ...] = ()
    output_shape: OutputShape = OutputShape.TEXT
    surface: TaskSurface = "cell"
    section_type: SectionType | None = None
    # Manual-input tasks never execute; users type values into them.
    user_input: bool = False
    preset_id: str | None = None

    @field_validator("tools")
    @classmethod
    def _dedupe_tools(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        seen: set[str] = set()
        ordered: list[str] = []
        for name in value:
            if name in seen:
                continue
            seen.add(name)
            ordered.append(name)
        return tuple(ordered)

    def revise(self, **changes: Any) -> TaskDefinition:
        """Return an edited copy that keeps the same identifier."""
        changes.pop("id", None)
        return type(self).model_validate({**self.model_dump(), **changes})


class TokenUsage(FrozenModel):
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)

    def plus(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


class ToolCall(FrozenModel):
    """One tool invocation requested by the model."""

    id: str = Field(default_factory=lambda: f"call_{uuid4().hex[:12]}")
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolDefinition(FrozenModel):
    """Tool description advertised to the model when tool calling is enabled."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object"})


class Message(FrozenModel):
    """Provider-neutral conversation message."""

    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    # Set on tool-result messages; points back at the answered ToolCall.id.
    tool_call_id: str | None = None
    name: str | None = None
    # Opaque provider blocks (e.g. Anthropic thinking) replayed verbatim on later turns.
    provider_blocks: tuple[dict[str, Any], ...] = ()


class ModelResponse(FrozenModel):
    content: str = ""
    usage: TokenUsage = Field(default_factory=TokenUsage)
    tool_calls: tuple[ToolCall, ...] = ()
    provider_blocks: tuple[dict[str, Any], ...] = ()


class TaskContext(FrozenModel):
    """Ambient identifiers needed to scope tool lookups."""

    collection_id: str
    target_id: str
    conversation_id: str = Field(default_factory=lambda: str(uuid4()))


# One payload type per output shape. The `shape` field is the discriminator.


class TextValue(FrozenModel):
    shape: Literal["text"] = "text"
    value: str


class BooleanValue(FrozenModel):
    shape: Literal["boolean"] = "boolean"
    value: bool


class NumberValue(FrozenModel):
    shape: Literal["number"] = "number"
    value: float


class JsonValue(FrozenModel):
    shape: Literal["json"] = "json"
    value: Any


class MarkdownValue(FrozenModel):
    shape: Literal["markdown"] = "markdown"
    value: str


class BadgeValue(FrozenModel):
    shape: Literal["badge"] = "badge"
    value: str


ShapedValue = Annotated[
    Union[TextValue, BooleanValue, NumberValue, JsonValue, MarkdownValue, BadgeValue],
    Field(discriminator="shape"),
]


class ToolCallRecord(FrozenModel):
    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    failed: bool = False


class ExecutionResult(FrozenModel):
    """Output of one agent loop invocation."""

    # Concise answer (one or two words for table cells).
    result: str
    detail: str | None = None
    source_text: str | None = None
    # None when the answer could not be coerced into the task's output shape.
    value: ShapedValue | None = None
    usage: TokenUsage = Field(default_factory=TokenUsage)
    latency_ms: float = 0.0
    tool_calls: tuple[ToolCallRecord, ...] = ()
    stop_reason: StopReason = "answered"
    model_calls: int = 0
    # True when the sanitizer failed and the lossy text fallback was used.
    degraded: bool = False


class TaskState(FrozenModel):
    """Lifecycle record keyed by (target_id, task_id)."""

    target_id: str
    task_id: str
    status: TaskStatus = "pending"
    result: str | None = None
    detail: str | None = None
    source_text: str | None = None
    value: ShapedValue | None = None
    usage: TokenUsage | None = None
    latency_ms: float | None = None
    error: str | None = None


class TargetSummary(FrozenModel):
    id: str
    name: str
    type: str | None = None


class Target(StrictModel):
    """A document registered with the target store."""

    id: str = Field(min_length=1)
    name: str
    type: str | None = None
    content: str = ""
    extracted_data: dict[str, Any] | None = None

    def summary(self) -> TargetSummary:
        return TargetSummary(id=self.id, name=self.name, type=self.type)


class TargetFilter(FrozenModel):
    # None means "every target"; otherwise only targets of these types.
    target_types: tuple[str, ...] | None = None

    def matches(self, target: TargetSummary) -> bool:
        if not self.target_types:
            return True
        return target.type in self.target_types


class TaskGroup(FrozenModel):
    """A named group of tasks applied to a filtered set of targets."""

    id: str
    name: str
    description: str = ""
    target_filter: TargetFilter = Field(default_factory=TargetFilter)
    tasks: tuple[TaskDefinition, ...] = ()
    artifact_format: ArtifactFormat | None = None


class ExecutionPlan(FrozenModel):
    title: str
    description: str = ""
    kind: PlanKind = "table"
    groups: tuple[TaskGroup, ...] = ()


class CollectionState(FrozenModel):
    """Targets crossed with task definitions, plus one TaskState per pair."""

    id: str
    title: str = ""
    targets: tuple[TargetSummary, ...] = ()
    tasks: tuple[TaskDefinition, ...] = ()
    cells: dict[str, TaskState] = Field(default_factory=dict)
    is_running: bool = False
    # Open run_all/run_task_column/retry_failed calls; maintained by the reducer.
    active_runs: int = Field(default=0, ge=0)

    def task(self, task_id: str) -> TaskDefinition | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def cell(self, target_id: str, task_id: str) -> TaskState | None:
        return self.cells.get(cell_key(target_id, task_id))


class CellRef(FrozenModel):
    target_id: str
    task_id: str


class ProgressSnapshot(FrozenModel):
    complete: int = 0
    error: int = 0
    running: int = 0
    pending: int = 0
    total: int = 0


class RunReport(FrozenModel):
    collection_id: str
    completed: tuple[CellRef, ...] = ()
    failed: tuple[CellRef, ...] = ()
    # Still running when the deadline passed; left running, never cancelled.
    timed_out: tuple[CellRef, ...] = ()
    skipped: tuple[CellRef, ...] = ()


def cell_key(target_id: str, task_id: str) -> str:
    return f"{target_id}:{task_id}"


# Target id used for section cells: one section cell per collection, not per target.
COLLECTION_SCOPE = "*"
