"""
Lexical retrieval over a class's stored materials.

Materials are split into chunks (page segments when the ingestion pipeline
produced them, paragraphs otherwise), scored by how many distinct query
keywords they contain, and selected greedily under a chunk count cap and a
cumulative character budget.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from shared.logging import get_logger
from service_gateway.app.guard.payload_guard import CONTEXT_END, CONTEXT_START


logger = get_logger("gateway.retrieval")

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "if", "then", "else", "when", "where", "what", "why", "how", "who",
    "is", "are", "was", "were", "be", "been", "being", "do", "does", "did",
    "i", "me", "my", "mine", "you", "your", "yours", "we", "our", "they", "their",
    "to", "of", "in", "on", "at", "for", "with", "about", "as", "by", "from", "into", "over", "under",
    "this", "that", "these", "those", "it", "its", "can", "could", "should", "would", "will", "just",
    "please", "give", "answer", "solve", "help", "explain",
})

INSTRUCTIONAL_PATTERN = re.compile(
    r"definition|example|formula|theorem|rule|step|procedure|concept|overview|lecture|chapter",
    re.IGNORECASE,
)
INSTRUCTIONAL_BONUS = 0.5
MIN_KEYWORD_LENGTH = 3
MIN_PARAGRAPHS = 4

_CURLY_APOSTROPHES = re.compile("[\\u2018\\u2019]")
_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n+")


@dataclass(frozen=True)
class PageSegment:
    page_number: Optional[int]
    text: str


@dataclass(frozen=True)
class Material:
    """A stored document as produced by the ingestion pipeline."""

    name: str
    content: str = ""
    page_segments: Sequence[PageSegment] = ()

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Material":
        segments = record.get("pageSegments") or record.get("pageMetadata") or []
        pages = []
        if isinstance(segments, list):
            for page in segments:
                if not isinstance(page, dict) or not isinstance(page.get("text"), str):
                    continue
                number = page.get("pageNumber")
                pages.append(PageSegment(
                    page_number=number if isinstance(number, int) else None,
                    text=page["text"],
                ))
        return cls(
            name=str(record.get("name") or "Untitled"),
            content=record.get("content") if isinstance(record.get("content"), str) else "",
            page_segments=tuple(pages),
        )


@dataclass(frozen=True)
class MaterialChunk:
    text: str
    source_name: str
    page_number: Optional[int] = None


@dataclass
class RetrievalSelection:
    """Ordered chunks chosen to ground one request."""

    chunks: List[MaterialChunk] = field(default_factory=list)

    def __iter__(self) -> Iterator[MaterialChunk]:
        return iter(self.chunks)

    def __len__(self) -> int:
        return len(self.chunks)

    @property
    def is_empty(self) -> bool:
        return not self.chunks

    @property
    def total_chars(self) -> int:
        return sum(len(chunk.text) for chunk in self.chunks)


def normalize_text(text: Any) -> str:
    lowered = str(text or "").lower()
    lowered = _CURLY_APOSTROPHES.sub("'", lowered)
    lowered = _NON_ALPHANUMERIC.sub(" ", lowered)
    return _WHITESPACE.sub(" ", lowered).strip()


def extract_keywords(query: str, max_keywords: int = 12) -> List[str]:
    keywords: List[str] = []
    seen = set()
    for word in normalize_text(query).split(" "):
        if len(word) < MIN_KEYWORD_LENGTH or word in STOP_WORDS or word in seen:
            continue
        seen.add(word)
        keywords.append(word)
    return keywords[:max_keywords]


def split_into_chunks(text: str) -> List[str]:
    raw = (text or "").strip()
    if not raw:
        return []
    paragraphs = [p.strip() for p in _PARAGRAPH_BREAK.split(raw) if p.strip()]
    if len(paragraphs) >= MIN_PARAGRAPHS:
        return paragraphs
    return [line.strip() for line in raw.split("\n") if line.strip()]


def chunk_materials(materials: Iterable[Material]) -> List[MaterialChunk]:
    chunks: List[MaterialChunk] = []
    for material in materials:
        if material.page_segments:
            for page in material.page_segments:
                if page.text and page.text.strip():
                    chunks.append(MaterialChunk(page.text, material.name, page.page_number))
            continue
        for part in split_into_chunks(material.content):
            chunks.append(MaterialChunk(part, material.name))
    return chunks


def score_chunk(chunk_text: str, keywords: Sequence[str]) -> float:
    """Distinct keyword hits plus the instructional bonus; 0 when nothing matches."""
    normalized = normalize_text(chunk_text)
    hits = sum(1 for keyword in keywords if keyword in normalized)
    if not hits:
        return 0.0
    bonus = INSTRUCTIONAL_BONUS if INSTRUCTIONAL_PATTERN.search(chunk_text) else 0.0
    return hits + bonus


class RetrievalRanker:
    """Selects a bounded grounding set for a query."""

    def __init__(self, max_chunks: int = 10, char_budget: int = 6500,
                 chunk_char_cap: int = 1500, max_keywords: int = 12):
        self.max_chunks = max_chunks
        self.char_budget = char_budget
        self.chunk_char_cap = chunk_char_cap
        self.max_keywords = max_keywords

    def rank(self, query: str, materials: Iterable[Material],
             max_chunks: Optional[int] = None) -> RetrievalSelection:
        limit = self.max_chunks if max_chunks is None else max(0, min(max_chunks, self.max_chunks))
        keywords = extract_keywords(query, self.max_keywords)
        chunks = chunk_materials(materials)
        if not keywords or not chunks:
            return RetrievalSelection()

        scored = [(score_chunk(chunk.text, keywords), chunk) for chunk in chunks]
        # sorted() is stable, so equal scores keep document order
        ranked = sorted((item for item in scored if item[0] > 0), key=lambda item: item[0], reverse=True)

        selection = RetrievalSelection()
        total = 0
        for _, chunk in ranked:
            if len(selection) >= limit:
                break
            text = chunk.text.strip()[:self.chunk_char_cap]
            if not text:
                continue
            if total + len(text) > self.char_budget:
                break
            selection.chunks.append(MaterialChunk(text, chunk.source_name, chunk.page_number))
            total += len(text)

        logger.debug(
            "Retrieval selection built",
            keywords=keywords,
            candidates=len(chunks),
            matched=len(ranked),
            selected=len(selection),
            total_chars=total,
        )
        return selection


def render_context(selection: RetrievalSelection) -> str:
    """Format a selection between the materials-context sentinels."""
    blocks = []
    for chunk in selection:
        source = chunk.source_name
        if chunk.page_number is not None:
            source = f"{source}, page {chunk.page_number}"
        blocks.append(f"[Source: {source}]\n{chunk.text}")
    return f"{CONTEXT_START}\n" + "\n\n".join(blocks) + f"\n{CONTEXT_END}"
