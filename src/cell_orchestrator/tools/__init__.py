"""Tool registry, dispatcher and reference document tools."""

from cell_orchestrator.tools.documents import build_document_tools
from cell_orchestrator.tools.gateway import ToolDispatcher, is_error_payload
from cell_orchestrator.tools.registry import ToolSpec, list_tools, tool_definitions

__all__ = [
    "ToolDispatcher",
    "ToolSpec",
    "build_document_tools",
    "is_error_payload",
    "list_tools",
    "tool_definitions",
]
