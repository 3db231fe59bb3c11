"""
Document Ingestion API Router

Endpoints (mounted under /api/v1):
  POST   /documents/upload                 submit a file → 202 + document_id
  GET    /documents/{document_id}/status   live state, else persisted record
  GET    /documents/{document_id}/progress Server-Sent Events progress stream
  GET    /documents/{document_id}/chunks   stored chunks in chunk_index order
  DELETE /documents/{document_id}          delete chunks + record (owner scoped)
  POST   /documents/search                 nearest chunks by cosine distance
  GET    /documents/                       recent records for the caller
  GET    /documents/stats                  record counts by status

Request lifecycle (upload):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. X-User-ID header → owner_id                          │
  │ 2. Content-Length fast rejection (413)                  │
  │ 3. Extension, metadata, size, encoding validation       │
  │ 4. Live progress state initialized                      │
  │ 5. Processing run handed to the background runner       │
  │ 6. 202 with status / stream URLs                        │
  └─────────────────────────────────────────────────────────┘

SSE stream (GET /{document_id}/progress):
  data: {"document_id", "stage", "progress", "status", "error", "timestamp"}
  The current state is sent first; the stream closes ~1 s after a
  completed or failed event. Keepalive comments are sent while idle.
"""

from __future__ import annotations

import logging
from typing import AsyncGenerator, Optional

from fastapi import (
    APIRouter,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
    status,
)
from fastapi.responses import JSONResponse, StreamingResponse

from docpipe.api.dependencies import (
    AppSettings,
    EmbedderDep,
    Ingestion,
    OwnerId,
    Repository,
    Tracker,
)
from docpipe.schemas.documents import (
    ChunkResponse,
    DocumentListResponse,
    DocumentStatusResponse,
    DocumentUploadResponse,
    ErrorResponse,
    ProcessingStatsResponse,
    ProgressEvent,
    SearchRequest,
    SearchResponse,
    SearchResult,
    UploadErrors,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Ingestion"],
)

_SSE_HEADERS = {
    "Cache-Control":     "no-cache",
    "Connection":        "keep-alive",
    "X-Accel-Buffering": "no",  # disable nginx buffering for SSE
}


# ---------------------------------------------------------------------------
# POST /documents/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=DocumentUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a document for ingestion",
    description=(
        "Accepts .txt, .md, .markdown and .json files up to 50 MB. "
        "Returns 202 immediately; processing is asynchronous. "
        "Follow GET /documents/{id}/progress for live updates."
    ),
    responses={
        202: {"model": DocumentUploadResponse, "description": "File accepted for processing"},
        400: {"model": ErrorResponse, "description": "Unsupported type, bad encoding or bad metadata"},
        401: {"model": ErrorResponse, "description": "Missing X-User-ID"},
        413: {"model": ErrorResponse, "description": "File exceeds the size limit"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
)
async def upload_document(
    request:  Request,
    service:  Ingestion,
    owner_id: OwnerId,
    settings: AppSettings,
    file:     UploadFile = File(..., description="Document file (.txt, .md, .json — max 50 MB)"),
    metadata: Optional[str] = Form(
        None,
        description="Optional JSON object string: title, tags, author, category, ...",
    ),
) -> JSONResponse:
    # Guard: reject oversized requests before reading body
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > settings.max_file_size_bytes + 4096:
        return JSONResponse(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            content=UploadErrors.file_too_large(
                int(content_length), settings.max_file_size_bytes
            ).model_dump(mode="json"),
        )

    result = await service.ingest(file=file, owner_id=owner_id, metadata_json=metadata)

    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=result.model_dump(mode="json"),
        headers={
            "X-Document-ID": result.document_id,
            "Location":      result.status_url,
        },
    )


# ---------------------------------------------------------------------------
# GET /documents/stats
# ---------------------------------------------------------------------------

@router.get(
    "/stats",
    response_model=ProcessingStatsResponse,
    summary="Processing record counts by status",
)
async def get_stats(repository: Repository) -> ProcessingStatsResponse:
    return ProcessingStatsResponse(**await repository.get_processing_stats())


# ---------------------------------------------------------------------------
# GET /documents/: recent records for the caller
# ---------------------------------------------------------------------------

@router.get(
    "/",
    response_model=DocumentListResponse,
    summary="List the caller's recent documents",
    responses={401: {"model": ErrorResponse}},
)
async def list_documents(
    repository:    Repository,
    owner_id:      OwnerId,
    limit:         int  = Query(10, ge=1, le=100),
    include_stats: bool = Query(False),
) -> DocumentListResponse:
    records = await repository.list_recent_records(owner_id, limit=limit)
    stats = None
    if include_stats:
        stats = ProcessingStatsResponse(**await repository.get_processing_stats())

    return DocumentListResponse(
        documents=[DocumentStatusResponse.from_record(r) for r in records],
        stats=stats,
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/status
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/status",
    response_model=DocumentStatusResponse,
    summary="Current processing status",
    responses={
        200: {"model": DocumentStatusResponse},
        404: {"model": ErrorResponse},
    },
)
async def get_document_status(
    document_id: str,
    tracker:     Tracker,
    repository:  Repository,
) -> DocumentStatusResponse:
    """
    Live in-process state while a run is tracked; the persisted record
    (authoritative after a run or a restart) otherwise.
    """
    state = tracker.get_state(document_id)
    if state is not None:
        return DocumentStatusResponse.from_state(state)

    record = await repository.get_processing_record(document_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=UploadErrors.document_not_found(document_id).model_dump(),
        )
    return DocumentStatusResponse.from_record(record)


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/progress: SSE stream
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/progress",
    summary="Stream processing progress via Server-Sent Events",
    response_class=StreamingResponse,
    responses={404: {"model": ErrorResponse}},
)
async def stream_progress(
    document_id: str,
    request:     Request,
    tracker:     Tracker,
    repository:  Repository,
    settings:    AppSettings,
) -> StreamingResponse:
    """
    SSE endpoint — one `data:` frame per ProgressEvent.
    Disconnecting unsubscribes; the processing run keeps going.
    """

    if not tracker.exists(document_id):
        record = await repository.get_processing_record(document_id)
        if record is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=UploadErrors.document_not_found(document_id).model_dump(),
            )

        # No live state (finished long ago, or the process restarted):
        # report the persisted state once and close
        final = ProgressEvent(
            document_id=record.document_id,
            stage=record.stage,
            progress=record.progress,
            status=record.status,
            error=record.error_message,
            timestamp=record.updated_at,
        )

        async def single_event() -> AsyncGenerator[str, None]:
            yield _sse_event(final)

        return StreamingResponse(single_event(), media_type="text/event-stream", headers=_SSE_HEADERS)

    async def event_generator() -> AsyncGenerator[str, None]:
        """Yield SSE-formatted events until terminal or disconnected."""
        stream = tracker.create_stream(document_id, keepalive=settings.stream_keepalive_seconds)
        try:
            async for event in stream:
                if await request.is_disconnected():
                    logger.debug("SSE client disconnected | doc=%s", document_id)
                    break

                if event is None:
                    # Keepalive comment prevents proxies from closing the connection
                    yield ": keepalive\n\n"
                    continue

                yield _sse_event(event)
        finally:
            await stream.aclose()

    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=_SSE_HEADERS)


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/chunks
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/chunks",
    response_model=list[ChunkResponse],
    summary="Stored chunks in chunk_index order",
    responses={404: {"model": ErrorResponse}},
)
async def get_document_chunks(document_id: str, repository: Repository) -> list[ChunkResponse]:
    record = await repository.get_processing_record(document_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=UploadErrors.document_not_found(document_id).model_dump(),
        )

    chunks = await repository.get_document_chunks(document_id)
    return [ChunkResponse.from_row(c) for c in chunks]


# ---------------------------------------------------------------------------
# DELETE /documents/{document_id}
# ---------------------------------------------------------------------------

@router.delete(
    "/{document_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a document and its chunks",
    responses={
        204: {"description": "Document deleted"},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def delete_document(
    document_id: str,
    owner_id:    OwnerId,
    tracker:     Tracker,
    repository:  Repository,
) -> Response:
    """
    Deletes chunks, then the processing record, in one transaction scoped
    to the caller. Documents with a run in flight cannot be deleted.
    """
    state = tracker.get_state(document_id)
    if state is not None and not state.is_terminal:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=UploadErrors.document_in_progress(document_id).model_dump(),
        )

    deleted = await repository.delete_document(document_id, owner_id)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=UploadErrors.document_not_found(document_id).model_dump(),
        )

    tracker.remove(document_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# POST /documents/search
# ---------------------------------------------------------------------------

@router.post(
    "/search",
    response_model=SearchResponse,
    summary="Similarity search over stored chunks",
    responses={
        400: {"model": ErrorResponse},
        502: {"model": ErrorResponse, "description": "Query embedding failed"},
    },
)
async def search_documents(
    body:       SearchRequest,
    repository: Repository,
    embedder:   EmbedderDep,
    settings:   AppSettings,
) -> SearchResponse:
    expected = settings.embedding_dimensions

    if body.vector is not None:
        if len(body.vector) != expected:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.invalid_vector(len(body.vector), expected).model_dump(),
            )
        vector = body.vector
    else:
        vector = await embedder.embed_query(body.query)

    rows = await repository.search_by_similarity(vector, limit=body.limit)
    results = [
        SearchResult(**ChunkResponse.from_row(chunk).model_dump(), distance=distance)
        for chunk, distance in rows
    ]
    return SearchResponse(results=results, count=len(results))


# ---------------------------------------------------------------------------
# SSE helper
# ---------------------------------------------------------------------------

def _sse_event(event: ProgressEvent) -> str:
    """Format one ProgressEvent as an SSE data frame."""
    return f"data: {event.model_dump_json()}\n\n"
