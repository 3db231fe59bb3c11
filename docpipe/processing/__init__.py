"""
Document Processing Package
════════════════════════════

The CPU and network steps of one ingestion run:

  Parse → Chunk → Embed

Modules
───────
  chunking.py   Format-aware parsing (text / Markdown / JSON) and the
                fixed-window overlapping chunker
  embeddings.py Provider clients (OpenAI, Cohere) and the batching
                Embedder with exponential-backoff retry

Design principles
─────────────────
  • Every component is dependency-injected; nothing reads global state.
  • Chunking is deterministic: same text and settings, same chunks.
  • Every step emits structured log lines.
"""

from docpipe.processing.chunking import ChunkResult, DocumentChunker, ParsedDocument, parse_document
from docpipe.processing.embeddings import (
    CohereEmbeddingClient,
    Embedder,
    EmbeddingClient,
    OpenAIEmbeddingClient,
    create_embedding_client,
)

__all__ = [
    "ChunkResult",
    "DocumentChunker",
    "ParsedDocument",
    "parse_document",
    "Embedder",
    "EmbeddingClient",
    "OpenAIEmbeddingClient",
    "CohereEmbeddingClient",
    "create_embedding_client",
]
