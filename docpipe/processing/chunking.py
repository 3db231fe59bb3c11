"""
Document Chunker  —  Structure-Aware Fixed-Window Segmentation
══════════════════════════════════════════════════════════════════

Two steps, both pure and deterministic:

  1. parse_document()  raw text → ParsedDocument
       • Unicode NFC, newline normalization, BOM / zero-width removal
       • Markdown: YAML front-matter parsed once into document metadata and
         stripped from the body; headings (#..######) located by offset
       • JSON: flattened to readable text (FAQ pairs, arrays, key: value
         lines); title / metadata keys lifted into document metadata
       • Plain text: passed through

  2. DocumentChunker.chunk()  ParsedDocument → [ChunkResult, ...]
       • Window i starts at offset i·(S−O) and spans at most S characters
       • The final window may be shorter; iteration stops once a window
         reaches the end of the text, so no empty or fully-overlapped tail
         chunk is produced
       • Each chunk carries the nearest preceding heading so it can be
         attributed to its section even when the heading sits in an
         earlier chunk

Why fixed windows with overlap?
───────────────────────────────
  Offsets are predictable (chunk i always starts at i·(S−O)), which keeps
  re-processing idempotent and makes chunk boundaries testable. The overlap
  keeps a sentence that straddles a boundary retrievable from both sides.

Normalization never collapses whitespace: offsets reported in chunk metadata
index into ParsedDocument.text exactly.
"""

from __future__ import annotations

import bisect
import copy
import hashlib
import json
import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

import yaml

from docpipe.core.errors import ChunkingError, ParseError
from docpipe.schemas.documents import FileType

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

DEFAULT_CHUNK_SIZE    = 512   # characters
DEFAULT_CHUNK_OVERLAP = 50    # characters

# Front-matter block at the very top of a Markdown file:
#   ---
#   title: Guide
#   tags: [a, b]
#   ---
_FRONT_MATTER_RE = re.compile(r"\A---[ \t]*\n(.*?)\n---[ \t]*(?:\n|\Z)", re.DOTALL)

_HEADING_RE = re.compile(r"^(#{1,6})[ \t]+(.+?)[ \t#]*$")
_FENCE_RE   = re.compile(r"^(```|~~~)")

_INVISIBLE_RE = re.compile(r"[\ufeff\u200b\u200c\u200d]")


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Heading:
    offset: int    # char offset of the heading line in ParsedDocument.text
    level:  int    # 1–6
    text:   str


@dataclass
class ParsedDocument:
    """Normalized body text plus document-level metadata."""
    text:      str
    file_type: FileType
    metadata:  dict[str, Any]  = field(default_factory=dict)
    headings:  list[Heading]   = field(default_factory=list)

    def heading_before(self, offset: int) -> Optional[Heading]:
        """Nearest heading starting at or before `offset`."""
        if not self.headings:
            return None
        offsets = [h.offset for h in self.headings]
        idx = bisect.bisect_right(offsets, offset) - 1
        return self.headings[idx] if idx >= 0 else None


@dataclass
class ChunkResult:
    """
    A single text window ready for embedding and storage.
    """
    chunk_id:      str           # deterministic: sha256(document_id:chunk_index)
    document_id:   str
    chunk_index:   int           # 0-based ordering within the document
    text:          str           # literal window content
    start_offset:  int
    end_offset:    int
    heading:       Optional[str] = None
    heading_level: Optional[int] = None
    metadata:      dict = field(default_factory=dict)   # document + chunk-local

    @property
    def char_count(self) -> int:
        return len(self.text)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def parse_document(content: str, file_type: FileType) -> ParsedDocument:
    """
    Normalize and parse raw document text.

    Raises:
        ParseError: malformed front-matter or JSON.
    """
    text = _normalize_text(content)

    if file_type == FileType.MARKDOWN:
        return _parse_markdown(text)
    if file_type == FileType.JSON:
        return _parse_json(text)

    return ParsedDocument(
        text=text,
        file_type=FileType.TEXT,
        metadata={"word_count": _word_count(text)},
    )


def _parse_markdown(text: str) -> ParsedDocument:
    metadata: dict[str, Any] = {}

    match = _FRONT_MATTER_RE.match(text)
    if match:
        try:
            front_matter = yaml.safe_load(match.group(1))
        except yaml.YAMLError as exc:
            raise ParseError(f"Invalid front-matter: {exc}") from exc

        if front_matter is None:
            front_matter = {}
        if not isinstance(front_matter, dict):
            raise ParseError("Front-matter must be a mapping of key: value pairs")

        metadata.update({str(k): _jsonable(v) for k, v in front_matter.items()})
        text = text[match.end():].lstrip("\n")

    headings = _find_headings(text)
    metadata.update({
        "word_count":    _word_count(text),
        "heading_count": len(headings),
        "has_headings":  bool(headings),
    })
    return ParsedDocument(
        text=text,
        file_type=FileType.MARKDOWN,
        metadata=metadata,
        headings=headings,
    )


def _find_headings(text: str) -> list[Heading]:
    """Locate ATX headings outside fenced code blocks."""
    headings: list[Heading] = []
    offset = 0
    in_fence = False

    for line in text.split("\n"):
        if _FENCE_RE.match(line):
            in_fence = not in_fence
        elif not in_fence:
            m = _HEADING_RE.match(line)
            if m:
                headings.append(Heading(offset=offset, level=len(m.group(1)), text=m.group(2).strip()))
        offset += len(line) + 1

    return headings


def _parse_json(text: str) -> ParsedDocument:
    try:
        data = json.loads(text) if text.strip() else None
    except json.JSONDecodeError as exc:
        raise ParseError(f"Invalid JSON at line {exc.lineno} column {exc.colno}: {exc.msg}") from exc

    metadata: dict[str, Any] = {}
    body: Any = data

    # Envelope form: {"title": ..., "content": ..., "metadata": {...}}
    if isinstance(data, dict) and "content" in data:
        if isinstance(data.get("title"), str):
            metadata["title"] = data["title"]
        extra = data.get("metadata")
        if extra is not None:
            if not isinstance(extra, dict):
                raise ParseError("JSON 'metadata' must be an object")
            metadata.update(extra)
        body = data["content"]

    kind, flattened = _flatten_json(body)
    metadata["json_kind"] = kind
    metadata["word_count"] = _word_count(flattened)

    return ParsedDocument(text=flattened, file_type=FileType.JSON, metadata=metadata)


def _flatten_json(value: Any) -> tuple[str, str]:
    """Return (kind, text) for a JSON value."""
    if value is None:
        return "text", ""
    if isinstance(value, str):
        return "text", value
    if isinstance(value, list):
        if value and all(_is_faq_item(item) for item in value):
            blocks = [f"Q: {item['question']}\nA: {item['answer']}" for item in value]
            return "faq", "\n\n".join(blocks)
        return "array", "\n\n".join(_render_value(item, 0) for item in value)
    if isinstance(value, dict):
        return "object", _render_value(value, 0)
    return "text", json.dumps(value)


def _is_faq_item(item: Any) -> bool:
    return isinstance(item, dict) and "question" in item and "answer" in item


def _render_value(value: Any, depth: int) -> str:
    indent = "  " * depth
    if isinstance(value, dict):
        lines = []
        for key, item in value.items():
            if isinstance(item, (dict, list)):
                lines.append(f"{indent}{key}:")
                lines.append(_render_value(item, depth + 1))
            else:
                lines.append(f"{indent}{key}: {_scalar(item)}")
        return "\n".join(lines)
    if isinstance(value, list):
        return "\n".join(
            _render_value(item, depth) if isinstance(item, (dict, list))
            else f"{indent}- {_scalar(item)}"
            for item in value
        )
    return f"{indent}{_scalar(value)}"


def _scalar(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value)


# ---------------------------------------------------------------------------
# Core chunker
# ---------------------------------------------------------------------------

class DocumentChunker:
    """
    Stateless fixed-window chunker.

    Usage:
        chunker = DocumentChunker(chunk_size=512, chunk_overlap=50)
        parsed  = parse_document(raw_text, FileType.MARKDOWN)
        chunks  = chunker.chunk(parsed, document_id=doc_id)
    """

    def __init__(
        self,
        chunk_size:    int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    ) -> None:
        if chunk_size <= 0:
            raise ChunkingError(f"chunk_size must be positive, got {chunk_size}")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ChunkingError(
                f"chunk_overlap ({chunk_overlap}) must be >= 0 and smaller "
                f"than chunk_size ({chunk_size})"
            )
        self.chunk_size    = chunk_size
        self.chunk_overlap = chunk_overlap

    @property
    def step(self) -> int:
        return self.chunk_size - self.chunk_overlap

    def windows(self, length: int) -> Iterator[tuple[int, int]]:
        """Yield (start, end) offsets covering a text of `length` characters."""
        start = 0
        while start < length:
            end = min(start + self.chunk_size, length)
            yield start, end
            if end == length:
                return
            start += self.step

    def iter_chunks(self, document: ParsedDocument, document_id: str) -> Iterator[ChunkResult]:
        """Lazily produce chunks; empty or whitespace-only text yields nothing."""
        text = document.text
        if not text.strip():
            return

        for index, (start, end) in enumerate(self.windows(len(text))):
            heading = document.heading_before(start)
            window  = text[start:end]

            metadata = copy.deepcopy(document.metadata)
            metadata.update({
                "heading":       heading.text if heading else None,
                "heading_level": heading.level if heading else None,
                "start_offset":  start,
                "end_offset":    end,
                "char_count":    len(window),
            })

            yield ChunkResult(
                chunk_id=_make_chunk_id(document_id, index),
                document_id=document_id,
                chunk_index=index,
                text=window,
                start_offset=start,
                end_offset=end,
                heading=heading.text if heading else None,
                heading_level=heading.level if heading else None,
                metadata=metadata,
            )

    def chunk(self, document: ParsedDocument, document_id: str) -> list[ChunkResult]:
        """
        Segment a parsed document into ordered chunks (chunk_index 0, 1, 2, …).
        """
        chunks = list(self.iter_chunks(document, document_id))

        if not chunks:
            logger.warning("DocumentChunker: empty text for doc=%s", document_id)
            return chunks

        avg_chars = sum(c.char_count for c in chunks) / len(chunks)
        logger.info(
            "DocumentChunker | doc=%s type=%s chunks=%d avg_chars=%.0f size=%d overlap=%d",
            document_id, document.file_type.value, len(chunks), avg_chars,
            self.chunk_size, self.chunk_overlap,
        )
        return chunks


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _normalize_text(text: str) -> str:
    """
    Normalize Unicode and line endings, drop BOM / zero-width characters.
    Whitespace runs are preserved so offsets stay meaningful.
    """
    text = unicodedata.normalize("NFC", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return _INVISIBLE_RE.sub("", text)


def _word_count(text: str) -> int:
    return len(text.split())


def _jsonable(value: Any) -> Any:
    """Coerce YAML scalars (dates, timestamps) into JSON-safe values."""
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def _make_chunk_id(document_id: str, chunk_index: int) -> str:
    """
    Deterministic chunk ID: sha256(document_id:chunk_index).
    Re-processing the same document yields the same ids.
    """
    raw = f"{document_id}:{chunk_index}"
    return hashlib.sha256(raw.encode()).hexdigest()[:32]
