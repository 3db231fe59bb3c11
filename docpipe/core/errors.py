"""
Pipeline error taxonomy.

Every failure inside the ingestion pipeline is raised as a PipelineError
subclass. The Document Processor catches them at its boundary and turns them
into a terminal `failed` state; the HTTP layer maps the ones that can reach a
request handler (validation, not-found) onto ErrorResponse bodies.

  ValidationError       bad file type / size / metadata, rejected before a record exists
  ParseError            malformed content (front-matter, JSON, encoding)
  ChunkingError         degenerate chunk configuration or no content
  EmbeddingError        remote embedding failure (after retries, or permanent)
  StorageError          database / transaction failure
  DocumentNotFoundError unknown document id
"""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for all ingestion pipeline errors."""

    code = "PIPELINE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        document_id: Optional[str] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message     = message
        self.stage       = stage
        self.document_id = document_id
        self.recoverable = recoverable

    def __str__(self) -> str:
        return self.message


class ValidationError(PipelineError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: Optional[str] = None, **kwargs) -> None:
        kwargs.setdefault("stage", "upload")
        super().__init__(message, **kwargs)
        self.field = field


class ParseError(PipelineError):
    code = "PARSE_ERROR"

    def __init__(self, message: str, **kwargs) -> None:
        kwargs.setdefault("stage", "parsing")
        super().__init__(message, **kwargs)


class ChunkingError(PipelineError):
    code = "CHUNKING_ERROR"

    def __init__(self, message: str, **kwargs) -> None:
        kwargs.setdefault("stage", "chunking")
        super().__init__(message, **kwargs)


class EmbeddingError(PipelineError):
    code = "EMBEDDING_ERROR"

    def __init__(self, message: str, *, retry_count: int = 0, **kwargs) -> None:
        kwargs.setdefault("stage", "embedding")
        super().__init__(message, **kwargs)
        self.retry_count = retry_count


class StorageError(PipelineError):
    code = "STORAGE_ERROR"

    def __init__(self, message: str, **kwargs) -> None:
        kwargs.setdefault("stage", "storing")
        super().__init__(message, **kwargs)


class DocumentNotFoundError(PipelineError):
    code = "DOCUMENT_NOT_FOUND"

    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document '{document_id}' not found", document_id=document_id)
