"""
SQLAlchemy ORM Models — Knowledge-Base Documents & Embeddings

Document state machine (processing_status column):
    pending    — row created, nothing extracted yet; counters zero, timestamps null
    processing — a worker owns the document; processing_started_at set
    completed  — chunks + embeddings persisted; processing_completed_at set
    failed     — pipeline error recorded in processing_error; processing_completed_at set

Deletion is soft (deleted_at). Only DocumentProcessor and the liveness/retry
operations in services/documents.py write processing_status.

The embedding column is a pgvector `vector` on PostgreSQL and plain JSON on
SQLite (used by the test-suite).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

EMBEDDING_DIMENSIONS = 1536

TAG_SLOTS = ("tag1", "tag2", "tag3", "tag4", "tag5", "tag6", "tag7")


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model: "document" table
# ---------------------------------------------------------------------------

class Document(Base):
    """One uploaded source file inside a knowledge base."""

    __tablename__ = "document"
    __table_args__ = (
        CheckConstraint(
            "processing_status IN ('pending', 'processing', 'completed', 'failed')",
            name="document_processing_status_check",
        ),
        Index("idx_document_kb_id", "knowledge_base_id"),
        Index("idx_document_status", "knowledge_base_id", "processing_status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    knowledge_base_id: Mapped[str] = mapped_column(String(64), nullable=False)

    filename:  Mapped[str] = mapped_column(Text, nullable=False)
    file_url:  Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    mime_type: Mapped[str] = mapped_column(Text, nullable=False)

    # Summary counters: zero until processing completes
    chunk_count:     Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    token_count:     Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    character_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    processing_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="pending", server_default="pending",
    )
    processing_started_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_error:        Mapped[Optional[str]]      = mapped_column(Text, nullable=True)

    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")

    tag1: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tag2: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tag3: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tag4: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tag5: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tag6: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tag7: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    deleted_at:  Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} kb={self.knowledge_base_id} "
            f"status={self.processing_status} file={self.filename!r}>"
        )


# ---------------------------------------------------------------------------
# Embedding model: embedding (one row per chunk)
# ---------------------------------------------------------------------------

class Embedding(Base):
    """
    One chunk of a Document plus its vector.
    The whole set for a document is replaced in a single transaction.
    """

    __tablename__ = "embedding"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_embedding_position"),
        Index("idx_embedding_document_id", "document_id"),
        Index("idx_embedding_kb_id", "knowledge_base_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    knowledge_base_id: Mapped[str] = mapped_column(String(64), nullable=False)
    document_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("document.id", ondelete="CASCADE"),
        nullable=False,
    )

    chunk_index:    Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_hash:     Mapped[str] = mapped_column(String(64), nullable=False)
    content:        Mapped[str] = mapped_column(Text, nullable=False)
    content_length: Mapped[int] = mapped_column(Integer, nullable=False)
    token_count:    Mapped[int] = mapped_column(Integer, nullable=False)

    embedding: Mapped[Optional[list]] = mapped_column(
        Vector(EMBEDDING_DIMENSIONS).with_variant(JSON(), "sqlite"),
        nullable=True,
    )
    embedding_model: Mapped[str] = mapped_column(Text, nullable=False)

    start_offset: Mapped[int] = mapped_column(Integer, nullable=False)
    end_offset:   Mapped[int] = mapped_column(Integer, nullable=False)

    # Copied from the parent document when the chunk is written
    tag1: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tag2: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tag3: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tag4: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tag5: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tag6: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tag7: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<Embedding doc={self.document_id} index={self.chunk_index} tokens={self.token_count}>"


# ---------------------------------------------------------------------------
# Tag definitions: knowledge_base_tag_definitions (read-only here)
# ---------------------------------------------------------------------------

class KnowledgeBaseTagDefinition(Base):
    """Maps a human tag name to one of the seven tag slots of a knowledge base."""

    __tablename__ = "knowledge_base_tag_definitions"
    __table_args__ = (
        CheckConstraint(
            "tag_slot IN ('tag1', 'tag2', 'tag3', 'tag4', 'tag5', 'tag6', 'tag7')",
            name="kb_tag_definitions_slot_check",
        ),
        UniqueConstraint("knowledge_base_id", "tag_slot", name="uq_kb_tag_slot"),
        UniqueConstraint("knowledge_base_id", "display_name", name="uq_kb_tag_display_name"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    knowledge_base_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tag_slot:     Mapped[str] = mapped_column(String(8), nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    field_type:   Mapped[str] = mapped_column(String(16), nullable=False, default="text")
    created_at:   Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
