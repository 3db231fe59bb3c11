"""
Document Ingestion — Pydantic Request/Response Schemas

Covers the full lifecycle of a document:
  - Upload validation constants and the 202 Accepted response
  - Live progress state (Progress Store) and the ProgressEvent stream payload
  - Status, chunk, search and statistics responses
  - All structured error bodies (400, 401, 404, 413, 422, 500)

Design decisions:
  - document_id is always server-generated (UUID4 string); never client-supplied.
  - processing status and stage are closed enums; free-form metadata is
    validated into DocumentMetadata on ingress.
  - All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Accepted file types: enforced before a background run is scheduled
# ---------------------------------------------------------------------------

class FileType(str, Enum):
    TEXT     = "text"
    MARKDOWN = "markdown"
    JSON     = "json"


EXTENSION_FILE_TYPES: dict[str, FileType] = {
    ".txt":      FileType.TEXT,
    ".md":       FileType.MARKDOWN,
    ".markdown": FileType.MARKDOWN,
    ".json":     FileType.JSON,
}

ALLOWED_EXTENSIONS: frozenset[str] = frozenset(EXTENSION_FILE_TYPES)

# 50 MB hard ceiling (overridable through settings.max_file_size_bytes)
MAX_FILE_SIZE_BYTES: int = 50 * 1024 * 1024


# ---------------------------------------------------------------------------
# Processing pipeline state machine
# ---------------------------------------------------------------------------

class ProcessingStatus(str, Enum):
    """
    Maps to document_processing.status.
    Transitions: pending → processing → completed | failed
    """
    PENDING     = "pending"      # accepted, run not started yet
    PROCESSING  = "processing"   # parse / chunk / embed / store in progress
    COMPLETED   = "completed"    # chunks stored, document searchable
    FAILED      = "failed"       # terminal pipeline error (see error_message)


class ProcessingStage(str, Enum):
    """Fixed stage order: upload → parsing → chunking → embedding → storing → completed."""
    UPLOAD    = "upload"
    PARSING   = "parsing"
    CHUNKING  = "chunking"
    EMBEDDING = "embedding"
    STORING   = "storing"
    COMPLETED = "completed"
    ERROR     = "error"


TERMINAL_STATUSES: frozenset[ProcessingStatus] = frozenset(
    {ProcessingStatus.COMPLETED, ProcessingStatus.FAILED}
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Client-supplied document metadata (validated on ingress)
# ---------------------------------------------------------------------------

class DocumentMetadata(BaseModel):
    """
    Known front-matter / submission keys are typed; anything else is kept
    as an extra field so callers can attach their own attributes.
    """
    model_config = ConfigDict(extra="allow")

    title:       Optional[str]       = None
    description: Optional[str]       = None
    author:      Optional[str]       = None
    category:    Optional[str]       = None
    source:      Optional[str]       = None
    date:        Optional[str]       = None
    draft:       Optional[bool]      = None
    tags:        Optional[list[str]] = None

    @field_validator("date", mode="before")
    @classmethod
    def _date_to_string(cls, value: Any) -> Any:
        # YAML front-matter parses bare dates into date/datetime objects
        if hasattr(value, "isoformat"):
            return value.isoformat()
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [t.strip() for t in value.split(",") if t.strip()]
        return value

    def as_dict(self) -> dict[str, Any]:
        """Plain dict without unset keys, safe for a JSONB column."""
        return self.model_dump(mode="json", exclude_none=True)


# ---------------------------------------------------------------------------
# Live progress state: Progress Store entries and tracker events
# ---------------------------------------------------------------------------

class ProgressUpdate(BaseModel):
    """Partial update; only fields that are explicitly set are merged."""
    stage:       Optional[ProcessingStage]  = None
    progress:    Optional[int]              = None
    status:      Optional[ProcessingStatus] = None
    error:       Optional[str]              = None
    chunk_count: Optional[int]              = None
    metadata:    Optional[dict[str, Any]]   = None


class ProgressState(BaseModel):
    """ProcessingRecord-shaped live state held by the Progress Store."""
    document_id: str
    filename:    str
    stage:       ProcessingStage  = ProcessingStage.UPLOAD
    progress:    int              = Field(0, ge=0, le=100)
    status:      ProcessingStatus = ProcessingStatus.PENDING
    error:       Optional[str]    = None
    chunk_count: Optional[int]    = None
    metadata:    dict[str, Any]   = Field(default_factory=dict)
    created_at:  datetime         = Field(default_factory=utcnow)
    updated_at:  datetime         = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ProgressEvent(BaseModel):
    """
    Emitted as Server-Sent Events on GET /documents/{id}/progress.
    data: <json of this model>
    """
    document_id: str
    stage:       ProcessingStage
    progress:    int = Field(..., ge=0, le=100)
    status:      ProcessingStatus
    error:       Optional[str] = None
    timestamp:   datetime      = Field(default_factory=utcnow)

    @classmethod
    def from_state(cls, state: ProgressState) -> "ProgressEvent":
        return cls(
            document_id=state.document_id,
            stage=state.stage,
            progress=state.progress,
            status=state.status,
            error=state.error,
            timestamp=state.updated_at,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ---------------------------------------------------------------------------
# Upload success response: 202 Accepted
# ---------------------------------------------------------------------------

class DocumentUploadResponse(BaseModel):
    """
    Returned immediately after a successful submission.
    HTTP 202 — processing runs in the background.
    """
    document_id: str              = Field(..., description="Server-generated document id")
    filename:    str              = Field(..., description="Sanitized original filename")
    file_type:   FileType         = Field(..., description="Detected document type")
    size_bytes:  int              = Field(..., description="File size in bytes")
    status:      ProcessingStatus = Field(ProcessingStatus.PENDING)
    stage:       ProcessingStage  = Field(ProcessingStage.UPLOAD)
    status_url:  str              = Field(..., description="Poll for the current state")
    stream_url:  str              = Field(..., description="SSE progress stream")
    created_at:  datetime         = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Document status response: GET /documents/{id}/status
# ---------------------------------------------------------------------------

class DocumentStatusResponse(BaseModel):
    """Live state while tracked in-process, persisted record otherwise."""
    model_config = ConfigDict(from_attributes=True)

    document_id:   str
    filename:      str
    status:        ProcessingStatus
    stage:         ProcessingStage
    progress:      int = Field(0, ge=0, le=100)
    chunk_count:   Optional[int] = None
    error_message: Optional[str] = None
    metadata:      dict[str, Any] = Field(default_factory=dict)
    created_at:    Optional[datetime] = None
    updated_at:    Optional[datetime] = None
    source:        str = Field("persisted", description="live | persisted")

    @classmethod
    def from_state(cls, state: ProgressState) -> "DocumentStatusResponse":
        return cls(
            document_id=state.document_id,
            filename=state.filename,
            status=state.status,
            stage=state.stage,
            progress=state.progress,
            chunk_count=state.chunk_count,
            error_message=state.error,
            metadata=state.metadata,
            created_at=state.created_at,
            updated_at=state.updated_at,
            source="live",
        )

    @classmethod
    def from_record(cls, record: Any) -> "DocumentStatusResponse":
        return cls(
            document_id=record.document_id,
            filename=record.filename,
            status=record.status,
            stage=record.stage,
            progress=record.progress,
            chunk_count=record.chunk_count,
            error_message=record.error_message,
            metadata=record.doc_metadata or {},
            created_at=record.created_at,
            updated_at=record.updated_at,
            source="persisted",
        )


class DocumentListResponse(BaseModel):
    documents: list[DocumentStatusResponse]
    stats:     Optional["ProcessingStatsResponse"] = None


# ---------------------------------------------------------------------------
# Chunks and similarity search
# ---------------------------------------------------------------------------

class ChunkResponse(BaseModel):
    """A stored chunk without its vector."""
    model_config = ConfigDict(from_attributes=True)

    id:          str
    document_id: str
    filename:    str
    chunk_index: int
    content:     str
    metadata:    dict[str, Any] = Field(default_factory=dict)
    created_at:  Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "ChunkResponse":
        return cls(
            id=row.id,
            document_id=row.document_id,
            filename=row.filename,
            chunk_index=row.chunk_index,
            content=row.content,
            metadata=row.chunk_metadata or {},
            created_at=row.created_at,
        )


class SearchRequest(BaseModel):
    """Either a text query (embedded server-side) or a raw query vector."""
    query:  Optional[str]         = Field(None, min_length=1, max_length=8000)
    vector: Optional[list[float]] = None
    limit:  int                   = Field(5, ge=1, le=50)

    @model_validator(mode="after")
    def _exactly_one_input(self) -> "SearchRequest":
        if (self.query is None) == (self.vector is None):
            raise ValueError("Provide exactly one of 'query' or 'vector'")
        return self


class SearchResult(ChunkResponse):
    distance: float = Field(..., description="Cosine distance to the query (lower is closer)")


class SearchResponse(BaseModel):
    results: list[SearchResult]
    count:   int


class ProcessingStatsResponse(BaseModel):
    total:      int = 0
    pending:    int = 0
    processing: int = 0
    completed:  int = 0
    failed:     int = 0


DocumentListResponse.model_rebuild()


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code:    str              = Field(..., description="Stable machine-readable code")
    message:       str              = Field(..., description="Human-readable summary")
    details:       list[ErrorDetail] = Field(default_factory=list)
    request_id:    str | None       = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class UploadErrors:
    """Factories for every documented error case."""

    @staticmethod
    def unsupported_file_type(filename: str, extension: str) -> ErrorResponse:
        allowed = ", ".join(sorted(ALLOWED_EXTENSIONS))
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message=f"File type '{extension or 'unknown'}' is not supported.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"'{filename}' has an unsupported extension. Allowed: {allowed}.",
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit_bytes: int = MAX_FILE_SIZE_BYTES) -> ErrorResponse:
        max_mb = limit_bytes // (1024 * 1024)
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {max_mb} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit_bytes:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="No file content was provided in the request.",
            details=[
                ErrorDetail(
                    field="file",
                    message="The 'file' multipart field is required and must not be empty.",
                    code="MISSING_FILE",
                )
            ],
        )

    @staticmethod
    def invalid_encoding(filename: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_ENCODING",
            message="The uploaded file is not valid UTF-8 text.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"'{filename}' could not be decoded as UTF-8.",
                    code="INVALID_ENCODING",
                )
            ],
        )

    @staticmethod
    def invalid_metadata(detail: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_METADATA",
            message="metadata must be a valid JSON object string.",
            details=[ErrorDetail(field="metadata", message=detail, code="INVALID_METADATA")],
        )

    @staticmethod
    def unauthorized() -> ErrorResponse:
        return ErrorResponse(
            error_code="UNAUTHORIZED",
            message="A caller identity is required. Provide the X-User-ID header.",
            details=[
                ErrorDetail(
                    field=None,
                    message="Missing or empty X-User-ID header.",
                    code="UNAUTHORIZED",
                )
            ],
        )

    @staticmethod
    def storage_error(detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="STORAGE_ERROR",
            message="The database operation failed. Please retry.",
            details=(
                [ErrorDetail(field=None, message=detail, code="STORAGE_ERROR")]
                if detail
                else []
            ),
        )

    @staticmethod
    def embedding_error(detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="EMBEDDING_ERROR",
            message="The embedding service could not process the query.",
            details=(
                [ErrorDetail(field="query", message=detail, code="EMBEDDING_ERROR")]
                if detail
                else []
            ),
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred. Our team has been notified.",
            details=[],
            request_id=request_id,
        )

    @staticmethod
    def document_in_progress(document_id: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_IN_PROGRESS",
            message=f"Document '{document_id}' is still being processed.",
            details=[
                ErrorDetail(
                    field=None,
                    message="Wait for the run to complete or fail before deleting.",
                    code="DOCUMENT_IN_PROGRESS",
                )
            ],
        )

    @staticmethod
    def invalid_vector(received: int, expected: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_VECTOR",
            message="The query vector has the wrong number of dimensions.",
            details=[
                ErrorDetail(
                    field="vector",
                    message=f"Received {received} values; expected {expected}.",
                    code="INVALID_VECTOR",
                )
            ],
        )

    @staticmethod
    def document_not_found(document_id: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document '{document_id}' was not found.",
            details=[],
        )
