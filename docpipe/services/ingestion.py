"""
Document Submission Service

Orchestrates the synchronous half of an upload:
  1. Validate filename / extension
  2. Validate client metadata (JSON object → DocumentMetadata)
  3. Read the file with a size ceiling, reject empty files
  4. Decode as UTF-8
  5. Initialize live progress state under a new server-generated document_id
  6. Hand the processing run to the BackgroundTaskRunner
  7. Return the 202 response

Validation failures raise HTTPException with a structured ErrorResponse and
leave nothing behind: no live state, no ProcessingRecord, no task.

The processing run is fire-and-forget from the request's perspective; the
runner owns the asyncio.Task. Progress streams only ever hold a tracker
subscription, so closing a stream cannot cancel a run.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
import uuid
from typing import Any, Coroutine, Optional

import pydantic
from fastapi import HTTPException, UploadFile, status

from docpipe.progress.tracker import ProgressTracker
from docpipe.schemas.documents import (
    EXTENSION_FILE_TYPES,
    MAX_FILE_SIZE_BYTES,
    DocumentMetadata,
    DocumentUploadResponse,
    FileType,
    UploadErrors,
)
from docpipe.services.processor import DocumentProcessor

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 1024 * 1024


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

def _get_extension(filename: str) -> str:
    """Return lowercased file extension including the dot."""
    parts = filename.rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 else ""


def _sanitize_filename(filename: str) -> str:
    """
    Strip path components and replace unsafe characters.
    Returns only the basename with OS-safe characters.
    """
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\-]", "_", basename)
    return safe[:200]


def compute_md5(data: bytes) -> str:
    """Return MD5 hex digest of file bytes."""
    return hashlib.md5(data, usedforsecurity=False).hexdigest()


def detect_file_type(filename: str) -> Optional[FileType]:
    return EXTENSION_FILE_TYPES.get(_get_extension(filename))


# ---------------------------------------------------------------------------
# Background task runner
# ---------------------------------------------------------------------------

class BackgroundTaskRunner:
    """
    Owns fire-and-forget processing tasks.

    Tasks are kept in a set so they are not garbage-collected mid-run and
    are drained (then cancelled) on application shutdown.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def active(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task cancelled | task=%s", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task crashed | task=%s", task.get_name(), exc_info=exc)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Wait up to `timeout` seconds for running tasks, then cancel the rest."""
        if not self._tasks:
            return

        tasks = list(self._tasks)
        logger.info("Draining background tasks | count=%d timeout=%.1fs", len(tasks), timeout)
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


# ---------------------------------------------------------------------------
# Submission service
# ---------------------------------------------------------------------------

class IngestionService:
    """
    Stateless service object — dependencies are injected (testable, no hidden globals).
    """

    def __init__(
        self,
        tracker:   ProgressTracker,
        processor: DocumentProcessor,
        runner:    BackgroundTaskRunner,
        max_file_size_bytes: int = MAX_FILE_SIZE_BYTES,
    ) -> None:
        self._tracker   = tracker
        self._processor = processor
        self._runner    = runner
        self._max_bytes = max_file_size_bytes

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def ingest(
        self,
        file:          UploadFile,
        owner_id:      str,
        metadata_json: Optional[str] = None,
    ) -> DocumentUploadResponse:
        """
        Validate the upload and schedule its processing run.
        Raises HTTPException with structured ErrorResponse on all error cases.
        """
        # ---- Step 1: Filename and type ----------------------------------
        if file is None or not file.filename:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.missing_file().model_dump(),
            )

        filename  = _sanitize_filename(file.filename)
        file_type = detect_file_type(filename)
        if file_type is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.unsupported_file_type(
                    file.filename, _get_extension(filename)
                ).model_dump(),
            )

        # ---- Step 2: Client metadata --------------------------------------
        metadata = self._parse_metadata(metadata_json)

        # ---- Step 3: Read with size ceiling -------------------------------
        data = await self._read_upload(file)

        # ---- Step 4: Decode -----------------------------------------------
        try:
            content = data.decode("utf-8-sig")
        except UnicodeDecodeError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.invalid_encoding(filename).model_dump(),
            )

        document_id = str(uuid.uuid4())
        metadata["content_md5"] = compute_md5(data)

        logger.info(
            "Ingest accepted | doc=%s owner=%s file=%s type=%s size=%d",
            document_id, owner_id, filename, file_type.value, len(data),
        )

        # ---- Step 5: Live state before the run starts ---------------------
        # Status and stream requests work as soon as the 202 is returned
        self._tracker.initialize(document_id, filename)

        # ---- Step 6: Schedule ---------------------------------------------
        self._runner.spawn(
            self._processor.process(
                document_id=document_id,
                content=content,
                filename=filename,
                file_type=file_type,
                owner_id=owner_id,
                metadata=metadata,
            ),
            name=f"process-document-{document_id}",
        )

        return DocumentUploadResponse(
            document_id=document_id,
            filename=filename,
            file_type=file_type,
            size_bytes=len(data),
            status_url=f"/api/v1/documents/{document_id}/status",
            stream_url=f"/api/v1/documents/{document_id}/progress",
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_metadata(metadata_json: Optional[str]) -> dict[str, Any]:
        if not metadata_json:
            return {}

        try:
            raw = json.loads(metadata_json)
        except json.JSONDecodeError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.invalid_metadata(f"Invalid JSON: {exc.msg}").model_dump(),
            )

        if not isinstance(raw, dict):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.invalid_metadata("Expected a JSON object").model_dump(),
            )

        try:
            return DocumentMetadata.model_validate(raw).as_dict()
        except pydantic.ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.invalid_metadata(f"{location}: {first['msg']}").model_dump(),
            )

    async def _read_upload(self, file: UploadFile) -> bytes:
        """
        Read the upload into memory with a hard size ceiling.
        Raises 400/413 if the file is empty or too large.
        """
        buffer = bytearray()
        while True:
            block = await file.read(_READ_CHUNK_BYTES)
            if not block:
                break
            buffer.extend(block)
            if len(buffer) > self._max_bytes:
                raise HTTPException(
                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    detail=UploadErrors.file_too_large(len(buffer), self._max_bytes).model_dump(),
                )

        if not buffer:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.missing_file().model_dump(),
            )

        return bytes(buffer)
