"""Reference document tools backed by the target store.

Lookups are scoped to the targets of the calling collection when the collection
is known; otherwise every registered target is visible.
"""

from __future__ import annotations

import re

from pydantic import Field

from cell_orchestrator.models import StrictModel, Target, TaskContext
from cell_orchestrator.storage.base import CollectionStorage, TargetStorage
from cell_orchestrator.tools.registry import ToolSpec

SNIPPET_CHARS = 240
DETAIL_MAX_CHARS = 20000


class ListDocumentsInput(StrictModel):
    document_type: str | None = None


class GetDocumentDetailsInput(StrictModel):
    document_id: str


class SearchDocumentsInput(StrictModel):
    query: str = Field(min_length=1)
    document_type: str | None = None
    limit: int = Field(default=5, ge=1, le=20)


def build_document_tools(
    targets: TargetStorage,
    *,
    collections: CollectionStorage | None = None,
) -> dict[str, ToolSpec]:
    def _visible(context: TaskContext) -> list[Target]:
        collection = collections.get(context.collection_id) if collections else None
        if collection is None:
            return targets.list()
        return targets.list([summary.id for summary in collection.targets])

    def list_documents(payload: ListDocumentsInput, context: TaskContext) -> dict:
        rows = [
            {"id": doc.id, "name": doc.name, "type": doc.type}
            for doc in _visible(context)
            if payload.document_type is None or doc.type == payload.document_type
        ]
        return {"documents": rows}

    def get_document_details(payload: GetDocumentDetailsInput, context: TaskContext) -> dict:
        doc = next((d for d in _visible(context) if d.id == payload.document_id), None)
        if doc is None:
            return {"error": f"Document {payload.document_id} not found"}
        return {
            "id": doc.id,
            "name": doc.name,
            "type": doc.type,
            "extracted_data": doc.extracted_data,
            "content": doc.content[:DETAIL_MAX_CHARS],
        }

    def search_documents(payload: SearchDocumentsInput, context: TaskContext) -> dict:
        terms = [term for term in re.findall(r"\w+", payload.query.lower()) if len(term) > 1]
        scored: list[tuple[int, Target]] = []
        for doc in _visible(context):
            if payload.document_type is not None and doc.type != payload.document_type:
                continue
            haystack = f"{doc.name}\n{doc.content}".lower()
            score = sum(haystack.count(term) for term in terms)
            if score > 0:
                scored.append((score, doc))
        scored.sort(key=lambda item: (-item[0], item[1].id))
        return {
            "results": [
                {
                    "id": doc.id,
                    "name": doc.name,
                    "type": doc.type,
                    "score": score,
                    "snippet": _snippet(doc.content, terms),
                }
                for score, doc in scored[: payload.limit]
            ]
        }

    return {
        "list_documents": ToolSpec(
            input_model=ListDocumentsInput,
            fn=list_documents,
            description="List documents in the collection, optionally filtered by type.",
        ),
        "get_document_details": ToolSpec(
            input_model=GetDocumentDetailsInput,
            fn=get_document_details,
            description="Get metadata, extracted data and full content for one document id.",
        ),
        "search_documents": ToolSpec(
            input_model=SearchDocumentsInput,
            fn=search_documents,
            description="Keyword search across document content. Returns ranked snippets.",
        ),
    }


def _snippet(content: str, terms: list[str]) -> str:
    lowered = content.lower()
    positions = [lowered.find(term) for term in terms if term in lowered]
    start = max(min(positions) - SNIPPET_CHARS // 4, 0) if positions else 0
    return " ".join(content[start : start + SNIPPET_CHARS].split())
