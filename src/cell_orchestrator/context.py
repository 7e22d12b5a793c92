"""Render targets into the user message a cell or section is run against."""

from __future__ import annotations

import json
from collections.abc import Sequence

from cell_orchestrator.models import Target


def render_target_context(target: Target, *, max_chars: int = 15000) -> str:
    lines = [
        f"Document: {target.name}",
        f"Type: {target.type or 'unclassified'}",
    ]
    if target.extracted_data:
        lines.append(
            "Extracted Data:\n" + json.dumps(target.extracted_data, indent=2, ensure_ascii=False)
        )
    lines.append(f"Content:\n{target.content[:max_chars]}")
    return "\n\n".join(lines)


def render_collection_context(
    title: str,
    targets: Sequence[Target],
    *,
    max_chars: int = 15000,
) -> str:
    """Collection-wide context for sections: every target, content shared by budget."""
    lines = [f"## Collection: {title or 'untitled'}", f"### Documents ({len(targets)})"]
    for target in targets:
        lines.append(f"- {target.name} ({target.type or 'unclassified'}) [id: {target.id}]")

    per_target = max_chars // max(len(targets), 1)
    for target in targets:
        if not target.content:
            continue
        lines.append(f"\n### {target.name}\n{target.content[:per_target]}")
    return "\n".join(lines)
