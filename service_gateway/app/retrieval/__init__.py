"""
Keyword retrieval that grounds upstream calls in a class's own materials.
"""

from service_gateway.app.retrieval.ranker import (
    Material,
    MaterialChunk,
    PageSegment,
    RetrievalRanker,
    RetrievalSelection,
    render_context,
)

__all__ = [
    "Material",
    "MaterialChunk",
    "PageSegment",
    "RetrievalRanker",
    "RetrievalSelection",
    "render_context",
]
