"""
SQLAlchemy ORM Models — Processing Records & Chunks

Two tables:
  document_processing  one row per document, unique on document_id
  document_chunks      many rows per document, unique on (document_id, chunk_index),
                       vector stored alongside text and metadata (pgvector)

Using SQLAlchemy mapped classes (2.x style) for full async support.
Tables are created by db.session.create_tables() (extension + metadata.create_all).
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Fixed by the embedding model (text-embedding-3-small @ 1024 / embed-english-v3.0)
EMBEDDING_DIMENSIONS = 1024


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# ProcessingRecord: document_processing
# ---------------------------------------------------------------------------

class ProcessingRecord(Base):
    """
    Durable status of one document's ingestion run.

    State machine (status column):
        pending    — accepted, run not started
        processing — parse / chunk / embed / store in progress (see stage)
        completed  — stage=completed, progress=100, chunks stored
        failed     — stage=error, error_message set

    Written only by the Document Processor while a run is in flight.
    """

    __tablename__ = "document_processing"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="document_processing_status_check",
        ),
        CheckConstraint(
            "stage IN ('upload', 'parsing', 'chunking', 'embedding', 'storing', 'completed', 'error')",
            name="document_processing_stage_check",
        ),
        CheckConstraint("progress BETWEEN 0 AND 100", name="document_processing_progress_check"),
        Index("idx_document_processing_status",  "status"),
        Index("idx_document_processing_owner",   "owner_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    document_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    filename:    Mapped[str] = mapped_column(Text, nullable=False)

    # Caller identity: scopes listing and deletion
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="pending", server_default="pending",
    )
    stage: Mapped[str] = mapped_column(
        String(16), nullable=False, default="upload", server_default="upload",
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    chunk_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='failed'",
    )

    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",                 # PostgreSQL column name stays 'metadata'
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="Submission metadata merged with parsed front-matter",
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<ProcessingRecord doc={self.document_id} status={self.status} "
            f"stage={self.stage} progress={self.progress} file={self.filename!r}>"
        )


# ---------------------------------------------------------------------------
# DocumentChunk: document_chunks
# ---------------------------------------------------------------------------

class DocumentChunk(Base):
    """
    One text window of a document with its embedding.
    Rows for a document are written in a single transaction.
    """

    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_chunks_position"),
        Index("idx_document_chunks_document", "document_id", "chunk_index"),
        Index(
            "idx_document_chunks_embedding",
            "embedding",
            postgresql_using="hnsw",
            postgresql_with={"m": 16, "ef_construction": 64},
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )

    # Deterministic sha256(document_id:chunk_index) from the chunker
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    document_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("document_processing.document_id", ondelete="CASCADE"),
        nullable=False,
    )
    filename:    Mapped[str] = mapped_column(Text, nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content:     Mapped[str] = mapped_column(Text, nullable=False)
    embedding:   Mapped[list[float]] = mapped_column(Vector(EMBEDDING_DIMENSIONS), nullable=False)

    chunk_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="Inherited document metadata plus heading and offsets",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<DocumentChunk doc={self.document_id} index={self.chunk_index}>"
