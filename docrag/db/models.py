# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌────────────────────┐       ┌──────────────────────────────────┐
# │  documents         │       │  chunks                          │
# ├────────────────────┤       ├──────────────────────────────────┤
# │ id (UUID PK)       │──1:N─▶│ id (UUID PK)                     │
# │ tenant_id          │       │ document_id (FK, CASCADE)        │
# │ filename           │       │ tenant_id (copied from document) │
# │ mime_type          │       │ content (text)                   │
# │ size_bytes         │       │ chunk_index (int)                │
# │ page_count         │       │ embedding (vector(N))            │
# │ upload_status      │       │ metadata_ (jsonb)                │
# │ processing_stage   │       │ created_at                       │
# │ processing_error   │       └──────────────────────────────────┘
# │ chunk_count        │
# │ metadata_ (jsonb)  │
# │ celery_task_id     │
# │ created_at/updated │
# └────────────────────┘
#
# TENANCY: Every chunk carries its document's tenant_id so similarity search
# can filter on one indexed column without joining documents. The repository
# is the only writer and always copies the document's tenant onto its chunks.
#
# chunk_count is ground truth: the repository recomputes it from committed
# rows after the chunk inserts, never from the number it tried to insert.
# =============================================================================

import enum
import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from docrag.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for all ORM models."""

    pass


class DocumentStatus(str, enum.Enum):
    """
    Coarse, client-facing ingestion status.

    State machine (forward only):
        PENDING → PROCESSING → COMPLETED
                             → FAILED
        PENDING → FAILED

    A failed document never re-enters PROCESSING; retrying means a fresh
    upload with a new document id.
    """

    PENDING = "pending"          # Row created, pipeline not started
    PROCESSING = "processing"    # Extracting / chunking / embedding / storing
    COMPLETED = "completed"      # Terminal: chunk rows committed
    FAILED = "failed"            # Terminal: see processing_error


# Allowed previous statuses for each target status. The repository turns
# this into a WHERE clause so backwards writes update zero rows.
ALLOWED_PREVIOUS_STATUS: dict[DocumentStatus, tuple[DocumentStatus, ...]] = {
    DocumentStatus.PENDING: (DocumentStatus.PENDING,),
    DocumentStatus.PROCESSING: (DocumentStatus.PENDING,),
    DocumentStatus.COMPLETED: (DocumentStatus.PROCESSING,),
    DocumentStatus.FAILED: (DocumentStatus.PENDING, DocumentStatus.PROCESSING),
}


class Document(Base):
    """An uploaded document owned by exactly one tenant."""

    __tablename__ = "documents"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )

    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)

    filename: Mapped[str] = mapped_column(String(500), nullable=False)
    mime_type: Mapped[str] = mapped_column(
        String(100), nullable=False, default="application/pdf",
    )
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    page_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    upload_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DocumentStatus.PENDING.value,
    )

    # Fine-grained coordinator stage (validating, extracting, chunking, ...)
    processing_stage: Mapped[str | None] = mapped_column(String(20), nullable=True)
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # title / author / category / tags supplied at upload
    metadata_: Mapped[dict | None] = mapped_column(
        JSONB, nullable=True, default=dict,
    )

    celery_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # passive_deletes: let the FK's ON DELETE CASCADE remove chunks instead of
    # loading every chunk row into the session first.
    chunks: Mapped[list["Chunk"]] = relationship(
        "Chunk",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="noload",
    )

    def __repr__(self) -> str:
        return (
            f"<Document(id={self.id}, tenant='{self.tenant_id}', "
            f"filename='{self.filename}', status={self.upload_status})>"
        )


class Chunk(Base):
    """One embedded slice of a document's text. Immutable once written."""

    __tablename__ = "chunks"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )

    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )

    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)

    content: Mapped[str] = mapped_column(Text, nullable=False)

    # 0-indexed position within the document
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)

    # ---------------------------------------------------------------------------
    # Vector Embedding
    # ---------------------------------------------------------------------------
    # Fixed dimension per deployment. The model that produced each vector is
    # recorded in metadata_["embedding_model"] and checked at query time.
    # ---------------------------------------------------------------------------
    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )

    # strategy, word_count, char_count, embedding_model, dimensions, ...
    metadata_: Mapped[dict | None] = mapped_column(
        JSONB, nullable=True, default=dict,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    document: Mapped["Document"] = relationship("Document", back_populates="chunks")

    def __repr__(self) -> str:
        return (
            f"<Chunk(id={self.id}, doc_id={self.document_id}, "
            f"index={self.chunk_index})>"
        )


# ---------------------------------------------------------------------------
# Indexes
# ---------------------------------------------------------------------------
# HNSW with cosine ops matches the `<=>` operator used by similarity search.
# m=16 / ef_construction=64 are pgvector's defaults.
# ---------------------------------------------------------------------------

chunk_embedding_idx = Index(
    "idx_chunks_embedding_hnsw",
    Chunk.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)

chunk_tenant_idx = Index("idx_chunks_tenant_id", Chunk.tenant_id)

chunk_document_idx = Index(
    "idx_chunks_document_index", Chunk.document_id, Chunk.chunk_index,
)

document_tenant_idx = Index(
    "idx_documents_tenant_created", Document.tenant_id, Document.created_at,
)


class ApiKey(Base):
    """
    An API key bound to one tenant.

    Holds the SHA-256 hash of the secret, a display prefix and optional
    scopes. The raw key is only returned once, at creation time.
    """

    __tablename__ = "api_keys"

    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True,
    )

    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    key_prefix: Mapped[str] = mapped_column(String(20), nullable=False)

    key_hash: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True,
    )

    # Empty / null = all scopes. Known: "ingest", "query", "documents", "admin"
    scopes: Mapped[list | None] = mapped_column(
        JSONB, nullable=True, default=list,
    )

    # Null = settings.rate_limit_rpm
    rate_limit_rpm: Mapped[int | None] = mapped_column(
        Integer, nullable=True,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False,
    )

    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    last_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<ApiKey(id={self.id}, tenant='{self.tenant_id}', "
            f"prefix='{self.key_prefix}')>"
        )
