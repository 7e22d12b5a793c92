"""Built-in agent presets for common per-document tasks.

A preset carries a ready-made prompt plus an optional template. Templates use
`{{key}}` substitution and `{{#key}}...{{/key}}` blocks that are kept only when
`key` has a non-empty value.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Literal

from cell_orchestrator.errors import PresetError
from cell_orchestrator.models import FrozenModel, ModelConfig, OutputShape, TaskDefinition

_BLOCK = re.compile(r"\{\{#(\w+)\}\}(.*?)\{\{/\1\}\}", re.DOTALL)
_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")
_EXTRA_BLANK_LINES = re.compile(r"\n{3,}")

HAIKU = "claude-3-haiku-20240307"


class PresetSetting(FrozenModel):
    key: str
    label: str
    kind: Literal["text", "textarea", "select"] = "text"
    options: tuple[str, ...] = ()
    required: bool = True


class AgentPreset(FrozenModel):
    id: str
    name: str
    description: str
    prompt: str
    prompt_template: str | None = None
    settings: tuple[PresetSetting, ...] = ()
    model: ModelConfig
    tools: tuple[str, ...] = ()
    output_shape: OutputShape = OutputShape.TEXT


AGENT_PRESETS: tuple[AgentPreset, ...] = (
    AgentPreset(
        id="compliance-checker",
        name="Compliance Checker",
        description="Pass/fail check of a document against stated requirements",
        prompt=(
            "You audit documents for compliance. Decide whether the document meets the "
            "applicable requirements and answer Pass or Fail with a short justification "
            "that names the requirement involved."
        ),
        prompt_template=(
            "You audit documents for compliance. Check the document against these "
            "requirements:\n\n{{standardsToCheck}}\n\nAnswer Pass or Fail with a short "
            "justification that names the requirement involved."
        ),
        settings=(PresetSetting(key="standardsToCheck", label="Standards to check", kind="textarea"),),
        model=ModelConfig(provider="anthropic", model=HAIKU, temperature=0.0, max_tokens=512),
        tools=("get_document_details", "search_documents"),
        output_shape=OutputShape.BOOLEAN,
    ),
    AgentPreset(
        id="data-extractor",
        name="Data Extractor",
        description="Pull specific values out of each document",
        prompt=(
            "You extract data. Return only the requested value or values from the document, "
            "as concisely as possible. Say clearly when a value is not present."
        ),
        prompt_template=(
            "You extract data. Return only these values from the document:\n\n"
            "{{fieldsToExtract}}\n\nBe concise and say clearly when a value is not present."
        ),
        settings=(PresetSetting(key="fieldsToExtract", label="Fields to extract", kind="textarea"),),
        model=ModelConfig(provider="anthropic", model=HAIKU, temperature=0.0, max_tokens=512),
        tools=("get_document_details",),
        output_shape=OutputShape.TEXT,
    ),
    AgentPreset(
        id="document-summarizer",
        name="Document Summarizer",
        description="Summarise the key points of each document",
        prompt=(
            "You summarise technical documents. Give a concise summary of the key findings, "
            "measurements and conclusions."
        ),
        prompt_template=(
            "You summarise technical documents. Give a {{summaryLength}} summary of the key "
            "findings, measurements and conclusions.{{#focusArea}} Focus in particular on: "
            "{{focusArea}}{{/focusArea}}"
        ),
        settings=(
            PresetSetting(key="focusArea", label="Focus area", required=False),
            PresetSetting(
                key="summaryLength",
                label="Summary length",
                kind="select",
                options=("brief (1-2 sentence)", "standard (1 paragraph)", "detailed (multi-paragraph)"),
            ),
        ),
        model=ModelConfig(provider="anthropic", model=HAIKU, temperature=0.2, max_tokens=1024),
        tools=("get_document_details",),
        output_shape=OutputShape.MARKDOWN,
    ),
    AgentPreset(
        id="cross-reference-checker",
        name="Cross-Reference Checker",
        description="Compare a document with the rest of the collection for consistency",
        prompt=(
            "You cross-check documents. Compare this document with the other documents in the "
            "collection and report mismatched part numbers, revisions, dates or specifications."
        ),
        prompt_template=(
            "You cross-check documents. Compare this document with the other documents in the "
            "collection for these fields:\n\n{{fieldsToCompare}}\n\nReport every discrepancy "
            "with a reference to where it appears."
        ),
        settings=(PresetSetting(key="fieldsToCompare", label="Fields to compare", kind="textarea"),),
        model=ModelConfig(provider="anthropic", model=HAIKU, temperature=0.0, max_tokens=1024),
        tools=("get_document_details", "search_documents", "list_documents"),
        output_shape=OutputShape.BADGE,
    ),
    AgentPreset(
        id="quality-auditor",
        name="Quality Auditor",
        description="Quality and risk review of each document",
        prompt=(
            "You are a quality auditor. Review the document for risks, non-conformances and "
            "concerns, and give actionable recommendations."
        ),
        prompt_template=(
            "You are a quality auditor. Review the document against these standards:\n\n"
            "{{auditStandards}}\n\n{{#riskFocus}}Pay particular attention to: {{riskFocus}}\n\n"
            "{{/riskFocus}}Identify risks, non-conformances and concerns, and give actionable "
            "recommendations."
        ),
        settings=(
            PresetSetting(key="auditStandards", label="Audit standards", kind="textarea"),
            PresetSetting(key="riskFocus", label="Risk focus", required=False),
        ),
        model=ModelConfig(provider="anthropic", model=HAIKU, temperature=0.1, max_tokens=1024),
        tools=("get_document_details", "search_documents"),
        output_shape=OutputShape.TEXT,
    ),
)


def get_preset(preset_id: str) -> AgentPreset | None:
    for preset in AGENT_PRESETS:
        if preset.id == preset_id:
            return preset
    return None


def render_prompt_template(template: str, values: Mapping[str, str]) -> str:
    def _block(match: re.Match[str]) -> str:
        key, body = match.group(1), match.group(2)
        value = (values.get(key) or "").strip()
        return body.replace(f"{{{{{key}}}}}", value) if value else ""

    rendered = _BLOCK.sub(_block, template)
    rendered = _PLACEHOLDER.sub(lambda m: (values.get(m.group(1)) or "").strip(), rendered)
    return _EXTRA_BLANK_LINES.sub("\n\n", rendered).strip()


def build_task_from_preset(
    preset_id: str,
    task_id: str,
    settings: Mapping[str, str] | None = None,
    *,
    name: str | None = None,
) -> TaskDefinition:
    """Create a task from a preset; with settings, the preset template is rendered."""
    preset = get_preset(preset_id)
    if preset is None:
        raise PresetError(f"Unknown preset: {preset_id}")

    prompt = preset.prompt
    if settings is not None and preset.prompt_template:
        for field in preset.settings:
            value = (settings.get(field.key) or "").strip()
            if field.required and not value:
                raise PresetError(f"Preset '{preset_id}' requires setting '{field.key}'")
            if value and field.options and value not in field.options:
                raise PresetError(
                    f"Setting '{field.key}' must be one of: {', '.join(field.options)}"
                )
        prompt = render_prompt_template(preset.prompt_template, settings)

    return TaskDefinition(
        id=task_id,
        name=name or preset.name,
        description=preset.description,
        prompt=prompt,
        model=preset.model,
        tools=preset.tools,
        output_shape=preset.output_shape,
        preset_id=preset.id,
    )
