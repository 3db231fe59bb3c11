"""
Document Processor — the ingestion state machine.

  pending → processing{parsing → chunking → embedding → storing} → completed
                                   ↘ error (terminal, from any stage)

Transitions (ProcessingRecord write, then tracker event, at each one):
  1. create record;            event(upload, 0);     parse
  2. event(parsing, 10);       chunk (zero chunks → error)
  3. event(chunking, 30, N);   embed batch by batch, progress 30 → 80
  4. event(embedding, 80);     store all chunk rows in one transaction
  5. event(storing, 95);       final(completed, 100, N)

The first failure ends the run: status=failed, stage=error and a readable
message go to both the tracker and the record. Chunks stored by a run that
then fails to record completion are deleted again. process() never raises a
pipeline error to its caller; callers observe the outcome through status
or the progress stream. There is no resume: a failed document is
resubmitted from scratch.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from docpipe.core.errors import ChunkingError, DocumentNotFoundError, PipelineError
from docpipe.db.repository import DocumentRepository
from docpipe.models.documents import DocumentChunk
from docpipe.processing.chunking import DocumentChunker, parse_document
from docpipe.processing.embeddings import Embedder
from docpipe.progress.tracker import ProgressTracker
from docpipe.schemas.documents import (
    FileType,
    ProcessingStage,
    ProcessingStatus,
    ProgressUpdate,
)

logger = logging.getLogger(__name__)

# Progress checkpoints (percent)
PROGRESS_UPLOAD    = 0
PROGRESS_PARSED    = 10
PROGRESS_CHUNKED   = 30
PROGRESS_EMBEDDED  = 80
PROGRESS_STORED    = 95
PROGRESS_COMPLETE  = 100


@dataclass
class ProcessingResult:
    document_id: str
    success:     bool
    chunk_count: int = 0
    error:       Optional[str] = None
    elapsed_ms:  float = 0.0


class DocumentProcessor:
    """
    Drives one document through the pipeline.

    All collaborators are injected; one processor instance serves every
    run, and per-run state lives only in local variables keyed by
    document_id.
    """

    def __init__(
        self,
        tracker:         ProgressTracker,
        repository:      DocumentRepository,
        embedder:        Embedder,
        chunker:         DocumentChunker,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._tracker    = tracker
        self._repository = repository
        self._embedder   = embedder
        self._chunker    = chunker
        self._timeout    = timeout_seconds

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def process(
        self,
        *,
        document_id: str,
        content:     str,
        filename:    str,
        file_type:   FileType,
        owner_id:    str,
        metadata:    Optional[dict[str, Any]] = None,
    ) -> ProcessingResult:
        """
        Run the full pipeline for one document and report the outcome.
        """
        t0 = time.monotonic()
        if not self._tracker.exists(document_id):
            self._tracker.initialize(document_id, filename)

        logger.info(
            "DocumentProcessor start | doc=%s file=%s type=%s owner=%s",
            document_id, filename, file_type.value, owner_id,
        )

        run = self._run(document_id, content, filename, file_type, owner_id, metadata or {})
        try:
            chunk_count = await self._run_with_deadline(document_id, run)

        except PipelineError as exc:
            await self._fail(document_id, exc.message, stage=exc.stage)
            return self._result(document_id, t0, error=exc.message)

        except asyncio.CancelledError:
            await self._fail(document_id, "Processing was cancelled")
            raise

        except Exception as exc:
            logger.exception("DocumentProcessor unexpected error | doc=%s", document_id)
            message = f"Unexpected error: {exc}"
            await self._fail(document_id, message)
            return self._result(document_id, t0, error=message)

        result = self._result(document_id, t0, chunk_count=chunk_count)
        logger.info(
            "DocumentProcessor done | doc=%s chunks=%d elapsed_ms=%.0f",
            document_id, chunk_count, result.elapsed_ms,
        )
        return result

    async def _run_with_deadline(self, document_id: str, run) -> int:
        if not self._timeout:
            return await run
        try:
            return await asyncio.wait_for(run, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise PipelineError(
                f"Processing timed out after {self._timeout:g}s",
                document_id=document_id,
            ) from None

    # ------------------------------------------------------------------
    # Stage sequence
    # ------------------------------------------------------------------

    async def _run(
        self,
        document_id: str,
        content:     str,
        filename:    str,
        file_type:   FileType,
        owner_id:    str,
        metadata:    dict[str, Any],
    ) -> int:
        # ---- Step 1: record + parse -------------------------------------
        await self._repository.create_processing_record(
            document_id=document_id,
            filename=filename,
            owner_id=owner_id,
            metadata=metadata,
        )
        await self._advance(document_id, ProcessingStage.UPLOAD, PROGRESS_UPLOAD)

        parsed = parse_document(content, file_type)
        # Front-matter wins over submission metadata for keys it defines
        parsed.metadata = {
            **metadata,
            **parsed.metadata,
            "filename":  filename,
            "file_type": file_type.value,
        }

        # ---- Step 2: chunk ----------------------------------------------
        await self._advance(
            document_id, ProcessingStage.PARSING, PROGRESS_PARSED, metadata=parsed.metadata,
        )

        chunks = self._chunker.chunk(parsed, document_id)
        if not chunks:
            raise ChunkingError("Document has no text content to index", document_id=document_id)

        # ---- Step 3: embed ----------------------------------------------
        await self._advance(
            document_id, ProcessingStage.CHUNKING, PROGRESS_CHUNKED, chunk_count=len(chunks),
        )

        async def on_batch(done: int, total: int) -> None:
            # The final batch is reported by the embedding → storing transition
            if done < total:
                span = PROGRESS_EMBEDDED - PROGRESS_CHUNKED
                self._publish(
                    document_id,
                    stage=ProcessingStage.EMBEDDING,
                    progress=PROGRESS_CHUNKED + (span * done) // total,
                    status=ProcessingStatus.PROCESSING,
                )

        vectors = await self._embedder.embed_texts([c.text for c in chunks], on_batch=on_batch)

        # ---- Step 4: store ----------------------------------------------
        await self._advance(document_id, ProcessingStage.EMBEDDING, PROGRESS_EMBEDDED)

        rows = [
            DocumentChunk(
                id=chunk.chunk_id,
                document_id=document_id,
                filename=filename,
                chunk_index=chunk.chunk_index,
                content=chunk.text,
                embedding=vector,
                chunk_metadata=chunk.metadata,
            )
            for chunk, vector in zip(chunks, vectors)
        ]
        await self._repository.store_chunks(rows)

        # ---- Step 5: complete -------------------------------------------
        # A run that cannot be recorded as completed keeps no chunks
        try:
            await self._advance(document_id, ProcessingStage.STORING, PROGRESS_STORED)
            await self._advance(
                document_id,
                ProcessingStage.COMPLETED,
                PROGRESS_COMPLETE,
                status=ProcessingStatus.COMPLETED,
                chunk_count=len(chunks),
            )
        except (Exception, asyncio.CancelledError):
            await self._discard_chunks(document_id)
            raise
        return len(chunks)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _advance(
        self,
        document_id: str,
        stage:       ProcessingStage,
        progress:    int,
        *,
        status:      ProcessingStatus = ProcessingStatus.PROCESSING,
        chunk_count: Optional[int] = None,
        metadata:    Optional[dict[str, Any]] = None,
    ) -> None:
        """One stage transition: the durable record first, then the live event."""
        await self._repository.update_processing_status(
            document_id,
            status=status,
            stage=stage,
            progress=progress,
            chunk_count=chunk_count,
            metadata=metadata,
        )
        self._publish(
            document_id,
            stage=stage,
            progress=progress,
            status=status,
            chunk_count=chunk_count,
            metadata=metadata,
        )

    async def _discard_chunks(self, document_id: str) -> None:
        try:
            await self._repository.delete_chunks(document_id)
        except Exception:
            logger.exception("Could not discard stored chunks | doc=%s", document_id)

    def _publish(self, document_id: str, **fields: Any) -> None:
        """Push a tracker update; a missing live entry is logged, not fatal."""
        update = ProgressUpdate(**{k: v for k, v in fields.items() if v is not None})
        try:
            self._tracker.update(document_id, update)
        except DocumentNotFoundError:
            logger.warning(
                "Progress update skipped, no live state | doc=%s stage=%s",
                document_id, update.stage.value if update.stage else "-",
            )

    async def _fail(self, document_id: str, message: str, stage: Optional[str] = None) -> None:
        """Record a terminal failure; errors while recording are logged only."""
        logger.error(
            "DocumentProcessor failed | doc=%s stage=%s error=%s",
            document_id, stage or "-", message,
        )

        self._publish(
            document_id,
            stage=ProcessingStage.ERROR,
            status=ProcessingStatus.FAILED,
            error=message,
        )

        try:
            await self._repository.update_processing_status(
                document_id,
                status=ProcessingStatus.FAILED,
                stage=ProcessingStage.ERROR,
                error_message=message,
            )
        except Exception:
            logger.exception("Could not persist failure state | doc=%s", document_id)

    @staticmethod
    def _result(
        document_id: str,
        t0:          float,
        *,
        chunk_count: int = 0,
        error:       Optional[str] = None,
    ) -> ProcessingResult:
        return ProcessingResult(
            document_id=document_id,
            success=error is None,
            chunk_count=chunk_count,
            error=error,
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )
