"""
Unit Tests — DocumentProcessor
═══════════════════════════════
Drives full runs against the in-memory repository, a real tracker and the
fake embedding provider.

Coverage targets:
  ✅ 1200-char text → 3 chunks, completed / 100, record matches
  ✅ Stage and progress sequence observed by a subscriber
  ✅ Per-batch embedding progress between 30 and 80
  ✅ Embedding failure → failed / error, no chunks stored
  ✅ Storage failure → failed / error, message recorded
  ✅ Empty document → failed at chunking
  ✅ Parse failure → failed, message mentions the cause
  ✅ Run deadline → failed with a timeout message
  ✅ Cancellation → failed, CancelledError propagates
  ✅ Record written before each event; a failed completion write never
     reaches subscribers as completed and its chunks are deleted
  ✅ Metadata merge order: submission < parsed front-matter
"""

from __future__ import annotations

import asyncio

import pytest

from docpipe.core.errors import StorageError
from docpipe.processing.chunking import DocumentChunker
from docpipe.processing.embeddings import Embedder
from docpipe.schemas.documents import FileType, ProcessingStage, ProcessingStatus
from docpipe.services.processor import DocumentProcessor
from tests.conftest import TEST_DIMENSIONS, TEST_OWNER_ID, FakeEmbeddingClient


async def _run(processor, content: str, file_type: FileType = FileType.TEXT, **kwargs):
    options = dict(
        document_id="doc-1",
        content=content,
        filename="notes.txt",
        file_type=file_type,
        owner_id=TEST_OWNER_ID,
        metadata={},
    )
    options.update(kwargs)
    return await processor.process(**options)


def _processor(tracker, repository, client: FakeEmbeddingClient, **kwargs) -> DocumentProcessor:
    embedder = Embedder(
        client,
        dimensions=TEST_DIMENSIONS,
        batch_size=kwargs.pop("batch_size", 5),
        retry_base_delay=0.0,
        request_timeout=None,
    )
    return DocumentProcessor(
        tracker=tracker,
        repository=repository,
        embedder=embedder,
        chunker=DocumentChunker(512, 50),
        **kwargs,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Happy path
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestProcessorHappyPath:

    async def test_1200_chars_completes_with_three_chunks(self, processor, tracker, mock_repository, text_1200):
        result = await _run(processor, text_1200)

        assert result.success is True
        assert result.chunk_count == 3

        state = tracker.get_state("doc-1")
        assert state.status   == ProcessingStatus.COMPLETED
        assert state.stage    == ProcessingStage.COMPLETED
        assert state.progress == 100
        assert state.chunk_count == 3

        record = mock_repository.records["doc-1"]
        assert (record.status, record.stage, record.progress, record.chunk_count) == (
            "completed", "completed", 100, 3,
        )

        rows = mock_repository.chunks["doc-1"]
        assert [r.chunk_index for r in rows] == [0, 1, 2]
        assert [r.chunk_metadata["start_offset"] for r in rows] == [0, 462, 924]
        assert all(len(r.embedding) == TEST_DIMENSIONS for r in rows)

    async def test_event_sequence(self, processor, tracker, text_1200):
        events = []
        tracker.initialize("doc-1", "notes.txt")
        tracker.subscribe("doc-1", events.append)

        await _run(processor, text_1200)

        assert [(e.stage, e.progress) for e in events] == [
            (ProcessingStage.UPLOAD,    0),
            (ProcessingStage.PARSING,   10),
            (ProcessingStage.CHUNKING,  30),
            (ProcessingStage.EMBEDDING, 80),
            (ProcessingStage.STORING,   95),
            (ProcessingStage.COMPLETED, 100),
        ]
        assert events[-1].status == ProcessingStatus.COMPLETED

    async def test_embedding_progress_per_batch(self, tracker, mock_repository, text_1200):
        processor = _processor(tracker, mock_repository, FakeEmbeddingClient(), batch_size=1)
        progress = []
        tracker.initialize("doc-1", "notes.txt")
        tracker.subscribe("doc-1", lambda e: progress.append(e.progress))

        await _run(processor, text_1200)

        assert progress == [0, 10, 30, 46, 63, 80, 95, 100]

    async def test_record_written_before_each_event(self, processor, tracker, mock_repository, text_1200):
        mismatches = []

        def check_record(event):
            record = mock_repository.records.get("doc-1")
            if record.stage != event.stage.value:
                mismatches.append((event.stage, record.stage))

        tracker.initialize("doc-1", "notes.txt")
        tracker.subscribe("doc-1", check_record)

        await _run(processor, text_1200)

        assert mismatches == []

    async def test_progress_is_monotonic(self, processor, tracker, text_1200):
        progress = []
        tracker.initialize("doc-1", "notes.txt")
        tracker.subscribe("doc-1", lambda e: progress.append(e.progress))

        await _run(processor, text_1200)

        assert progress == sorted(progress)

    async def test_front_matter_overrides_submission_metadata(self, processor, mock_repository, markdown_doc):
        await _run(
            processor,
            markdown_doc,
            file_type=FileType.MARKDOWN,
            filename="guide.md",
            metadata={"title": "From form", "category": "ops"},
        )

        metadata = mock_repository.chunks["doc-1"][0].chunk_metadata
        assert metadata["title"]     == "Deployment Guide"
        assert metadata["category"]  == "ops"
        assert metadata["filename"]  == "guide.md"
        assert metadata["file_type"] == "markdown"
        assert metadata["heading"]   == "Overview"

    async def test_initializes_live_state_when_missing(self, processor, tracker, text_1200):
        assert not tracker.exists("doc-1")
        await _run(processor, text_1200)
        assert tracker.exists("doc-1")


# ─────────────────────────────────────────────────────────────────────────────
# Failures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestProcessorFailures:

    async def test_embedding_failure_stores_no_chunks(self, tracker, mock_repository, text_1200):
        client = FakeEmbeddingClient(failures=[ConnectionError("provider down")] * 3)
        processor = _processor(tracker, mock_repository, client)

        result = await _run(processor, text_1200)

        assert result.success is False
        state = tracker.get_state("doc-1")
        assert state.status == ProcessingStatus.FAILED
        assert state.stage  == ProcessingStage.ERROR
        assert "provider down" in state.error
        assert state.progress == 30

        mock_repository.store_chunks.assert_not_awaited()
        record = mock_repository.records["doc-1"]
        assert (record.status, record.stage) == ("failed", "error")
        assert "provider down" in record.error_message

    async def test_storage_failure_marks_failed(self, processor, tracker, mock_repository, text_1200):
        mock_repository.store_chunks.side_effect = StorageError("store_chunks failed: deadlock")

        result = await _run(processor, text_1200)

        assert result.success is False
        assert "doc-1" not in mock_repository.chunks
        assert tracker.get_state("doc-1").error == "store_chunks failed: deadlock"
        assert mock_repository.records["doc-1"].status == "failed"

    async def test_empty_document_fails_at_chunking(self, processor, tracker, mock_repository):
        result = await _run(processor, "   \n\n  ")

        assert result.success is False
        assert result.error == "Document has no text content to index"
        assert tracker.get_state("doc-1").status == ProcessingStatus.FAILED
        mock_repository.store_chunks.assert_not_awaited()

    async def test_parse_failure_reported(self, processor, tracker):
        result = await _run(processor, '{"broken": ', file_type=FileType.JSON, filename="data.json")

        assert result.success is False
        assert "Invalid JSON" in tracker.get_state("doc-1").error

    async def test_record_creation_failure_still_publishes_failure(self, processor, tracker, mock_repository, text_1200):
        mock_repository.create_processing_record.side_effect = StorageError("create_processing_record failed")

        result = await _run(processor, text_1200)

        assert result.success is False
        assert tracker.get_state("doc-1").status == ProcessingStatus.FAILED

    async def test_deadline_exceeded(self, tracker, mock_repository, text_1200):
        client = FakeEmbeddingClient(delay=1.0)
        processor = _processor(tracker, mock_repository, client, timeout_seconds=0.05)

        result = await _run(processor, text_1200)

        assert result.success is False
        assert result.error == "Processing timed out after 0.05s"
        assert tracker.get_state("doc-1").status == ProcessingStatus.FAILED
        mock_repository.store_chunks.assert_not_awaited()

    async def test_cancellation_recorded_and_propagated(self, tracker, mock_repository, text_1200):
        client = FakeEmbeddingClient(delay=1.0)
        processor = _processor(tracker, mock_repository, client)

        task = asyncio.create_task(_run(processor, text_1200))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        state = tracker.get_state("doc-1")
        assert state.status == ProcessingStatus.FAILED
        assert state.error  == "Processing was cancelled"

    async def test_completion_write_failure_never_reports_completed(self, processor, tracker, mock_repository, text_1200):
        write_status = mock_repository.update_processing_status.side_effect

        async def failing_completion(document_id, **fields):
            if fields.get("status") == ProcessingStatus.COMPLETED:
                raise StorageError("update_processing_status failed: connection reset")
            return await write_status(document_id, **fields)

        mock_repository.update_processing_status.side_effect = failing_completion
        tracker.initialize("doc-1", "notes.txt")
        stream = tracker.create_stream("doc-1")
        await stream.__anext__()   # replayed pending state

        result = await _run(processor, text_1200)
        statuses = [event.status async for event in stream]

        assert result.success is False
        assert ProcessingStatus.COMPLETED not in statuses
        assert statuses[-1] == ProcessingStatus.FAILED
        assert tracker.get_state("doc-1").error == "update_processing_status failed: connection reset"

        record = mock_repository.records["doc-1"]
        assert (record.status, record.stage) == ("failed", "error")
        mock_repository.delete_chunks.assert_awaited_once_with("doc-1")
        assert "doc-1" not in mock_repository.chunks

    async def test_failed_chunk_cleanup_is_logged_not_raised(self, processor, tracker, mock_repository, text_1200):
        write_status = mock_repository.update_processing_status.side_effect

        async def failing_completion(document_id, **fields):
            if fields.get("status") == ProcessingStatus.COMPLETED:
                raise StorageError("update_processing_status failed")
            return await write_status(document_id, **fields)

        mock_repository.update_processing_status.side_effect = failing_completion
        mock_repository.delete_chunks.side_effect = StorageError("delete_chunks failed")

        result = await _run(processor, text_1200)

        assert result.success is False
        assert tracker.get_state("doc-1").status == ProcessingStatus.FAILED
