"""
Persistence Layer — processing records, chunks and similarity search.

Every public method opens its own session and transaction from the injected
session factory, so a call either commits completely or not at all:

  store_chunks()     all chunk rows of a document in ONE transaction; a
                     failure leaves no partial chunk set behind
  delete_chunks()    drops a stored chunk set whose run did not complete
  delete_document()  chunks first, then the record, in ONE transaction,
                     scoped to the owning caller

SQLAlchemy errors are re-raised as StorageError so the processor can record
a terminal failure with a readable message.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from enum import Enum
from typing import Any, Iterator, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docpipe.core.errors import StorageError
from docpipe.models.documents import DocumentChunk, ProcessingRecord
from docpipe.schemas.documents import ProcessingStage, ProcessingStatus

logger = logging.getLogger(__name__)


@contextmanager
def _storage_errors(operation: str, document_id: Optional[str] = None) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Database error | op=%s doc=%s error=%s", operation, document_id, exc)
        raise StorageError(f"{operation} failed: {exc}", document_id=document_id) from exc


def _value(item: Any) -> Any:
    return item.value if isinstance(item, Enum) else item


class DocumentRepository:
    """
    Usage:
        repo = DocumentRepository(AsyncSessionLocal)
        await repo.create_processing_record(doc_id, "guide.md", owner_id="u-1")
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Processing records
    # ------------------------------------------------------------------

    async def create_processing_record(
        self,
        document_id: str,
        filename:    str,
        owner_id:    str,
        metadata:    Optional[dict] = None,
    ) -> ProcessingRecord:
        """Insert the record in its initial state: pending / upload / 0."""
        record = ProcessingRecord(
            document_id=document_id,
            filename=filename,
            owner_id=owner_id,
            status=ProcessingStatus.PENDING.value,
            stage=ProcessingStage.UPLOAD.value,
            progress=0,
            doc_metadata=metadata or {},
        )

        with _storage_errors("create_processing_record", document_id):
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(record)
                    await session.flush()
                    await session.refresh(record)

        logger.info("ProcessingRecord created | doc=%s owner=%s file=%s", document_id, owner_id, filename)
        return record

    async def update_processing_status(
        self,
        document_id:   str,
        *,
        status:        ProcessingStatus | str | None = None,
        stage:         ProcessingStage | str | None = None,
        progress:      Optional[int] = None,
        chunk_count:   Optional[int] = None,
        error_message: Optional[str] = None,
        metadata:      Optional[dict] = None,
    ) -> Optional[ProcessingRecord]:
        """
        Non-destructive update: only arguments that are not None are written.
        Returns the updated record, or None if the document does not exist.
        """
        values: dict[str, Any] = {
            key: _value(val)
            for key, val in (
                ("status",        status),
                ("stage",         stage),
                ("progress",      progress),
                ("chunk_count",   chunk_count),
                ("error_message", error_message),
                ("doc_metadata",  metadata),
            )
            if val is not None
        }
        values["updated_at"] = func.now()

        stmt = (
            update(ProcessingRecord)
            .where(ProcessingRecord.document_id == document_id)
            .values(**values)
            .returning(ProcessingRecord)
        )

        with _storage_errors("update_processing_status", document_id):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    return result.scalars().first()

    async def get_processing_record(self, document_id: str) -> Optional[ProcessingRecord]:
        with _storage_errors("get_processing_record", document_id):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(ProcessingRecord).where(ProcessingRecord.document_id == document_id)
                )
                return result.scalars().first()

    async def list_recent_records(self, owner_id: str, limit: int = 10) -> list[ProcessingRecord]:
        """Newest first, scoped to one owner."""
        with _storage_errors("list_recent_records"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(ProcessingRecord)
                    .where(ProcessingRecord.owner_id == owner_id)
                    .order_by(ProcessingRecord.created_at.desc())
                    .limit(limit)
                )
                return list(result.scalars().all())

    async def get_processing_stats(self) -> dict[str, int]:
        """Counts by status plus total."""
        stats = {status.value: 0 for status in ProcessingStatus}

        with _storage_errors("get_processing_stats"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(ProcessingRecord.status, func.count())
                    .group_by(ProcessingRecord.status)
                )
                for status, count in result.all():
                    stats[status] = int(count)

        stats["total"] = sum(stats.values())
        return stats

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def store_chunks(self, chunks: Sequence[DocumentChunk]) -> int:
        """All-or-nothing insert of chunk rows."""
        if not chunks:
            return 0

        document_id = chunks[0].document_id
        with _storage_errors("store_chunks", document_id):
            async with self._session_factory() as session:
                async with session.begin():
                    session.add_all(list(chunks))
                    await session.flush()

        logger.info("Chunks stored | doc=%s count=%d", document_id, len(chunks))
        return len(chunks)

    async def delete_chunks(self, document_id: str) -> int:
        """Remove every chunk row of a document; the record is kept."""
        with _storage_errors("delete_chunks", document_id):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(DocumentChunk).where(DocumentChunk.document_id == document_id)
                    )
                    removed = result.rowcount

        logger.info("Chunks deleted | doc=%s count=%d", document_id, removed)
        return removed

    async def get_document_chunks(self, document_id: str) -> list[DocumentChunk]:
        """Ordered by chunk_index ascending."""
        with _storage_errors("get_document_chunks", document_id):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(DocumentChunk)
                    .where(DocumentChunk.document_id == document_id)
                    .order_by(DocumentChunk.chunk_index.asc())
                )
                return list(result.scalars().all())

    async def search_by_similarity(
        self,
        query_vector: Sequence[float],
        limit:        int = 5,
    ) -> list[tuple[DocumentChunk, float]]:
        """Nearest chunks first, by cosine distance."""
        distance = DocumentChunk.embedding.cosine_distance(list(query_vector)).label("distance")

        with _storage_errors("search_by_similarity"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(DocumentChunk, distance).order_by(distance).limit(limit)
                )
                return [(row[0], float(row[1])) for row in result.all()]

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete_document(self, document_id: str, owner_id: str) -> bool:
        """
        Delete a document's chunks and its record for the given owner.
        Returns False when the owner has no such document.
        """
        with _storage_errors("delete_document", document_id):
            async with self._session_factory() as session:
                async with session.begin():
                    owned = await session.execute(
                        select(ProcessingRecord.id).where(
                            ProcessingRecord.document_id == document_id,
                            ProcessingRecord.owner_id == owner_id,
                        )
                    )
                    if owned.scalar_one_or_none() is None:
                        return False

                    await session.execute(
                        delete(DocumentChunk).where(DocumentChunk.document_id == document_id)
                    )
                    result = await session.execute(
                        delete(ProcessingRecord).where(
                            ProcessingRecord.document_id == document_id,
                            ProcessingRecord.owner_id == owner_id,
                        )
                    )
                    deleted = result.rowcount > 0

        logger.info("Document deleted | doc=%s owner=%s deleted=%s", document_id, owner_id, deleted)
        return deleted
