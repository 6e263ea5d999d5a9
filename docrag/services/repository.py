# =============================================================================
# Document Repository — Tenant-Qualified Persistence
# =============================================================================
#
# The ONLY module that talks to the documents/chunks tables. Every method
# takes tenant_id explicitly and every statement filters on it, so tenant
# isolation does not depend on callers remembering a WHERE clause.
#
# ARCHITECTURE:
#   DocumentRepository (Protocol)
#   └── PgDocumentRepository   PostgreSQL + pgvector via SQLAlchemy
#         sync methods  → Celery ingestion path (get_sync_session)
#         async methods → FastAPI read path (async_session_factory)
#
# STATUS WRITES are forward-only. update_status() issues
#   UPDATE documents SET upload_status = :new
#   WHERE id = :id AND tenant_id = :tenant AND upload_status IN (:allowed)
# and raises InvalidStatusTransition when no row matched, so a stale worker
# can never move a failed document back to processing.
#
# CHUNK COUNTS are repaired, not trusted: finalize_chunk_count() takes a row
# lock on the document (SELECT ... FOR UPDATE), counts committed chunk rows
# and writes that number. Two writers on the same document serialize on the
# lock and the last one writes the true total.
# =============================================================================

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from sqlalchemy import Select, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from docrag.config import settings
from docrag.db.engine import async_session_factory, get_sync_session
from docrag.db.models import ALLOWED_PREVIOUS_STATUS, Chunk, Document, DocumentStatus
from docrag.errors import (
    DocumentNotFound,
    InvalidStatusTransition,
    SimilaritySearchUnavailable,
    StorageError,
)

if TYPE_CHECKING:
    from docrag.services.embedder import EmbeddedChunk

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class DocumentMetadata:
    """Document-level fields written by the store step's upsert."""

    document_id: uuid.UUID
    tenant_id: str
    filename: str
    size_bytes: int
    mime_type: str = "application/pdf"
    page_count: int | None = None
    metadata: dict = field(default_factory=dict)


@dataclass
class DocumentRecord:
    id: uuid.UUID
    tenant_id: str
    filename: str
    mime_type: str
    size_bytes: int
    page_count: int | None
    upload_status: str
    processing_stage: str | None
    processing_error: str | None
    chunk_count: int
    metadata: dict
    celery_task_id: str | None
    created_at: datetime | None
    updated_at: datetime | None


@dataclass
class ChunkHit:
    """A chunk returned by similarity or substring search."""

    chunk_id: uuid.UUID
    document_id: uuid.UUID
    tenant_id: str
    content: str
    chunk_index: int
    similarity: float
    metadata: dict = field(default_factory=dict)


@dataclass
class StoredChunk:
    id: uuid.UUID
    document_id: uuid.UUID
    chunk_index: int
    content: str
    metadata: dict
    created_at: datetime | None


@dataclass(frozen=True)
class EmbeddingProfile:
    """(model, dimensions) pair found on stored chunks."""

    model: str | None
    dimensions: int | None


SORTABLE_COLUMNS = ("created_at", "updated_at", "filename", "size_bytes")


@dataclass
class DocumentQuery:
    filename: str | None = None
    status: DocumentStatus | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    page: int = 1
    limit: int = 20
    sort_by: str = "created_at"
    sort_order: str = "desc"


@dataclass
class DocumentPage:
    items: list[DocumentRecord]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class DocumentRepository(Protocol):
    """
    Tenant-qualified access to documents and chunks.

    Writes are sync (Celery ingestion path); reads are async (FastAPI).
    """

    def create_document(
        self,
        tenant_id: str,
        document_id: uuid.UUID,
        filename: str,
        size_bytes: int,
        mime_type: str = "application/pdf",
        metadata: dict | None = None,
    ) -> None:
        """Insert a pending row. Idempotent for the same id and tenant."""
        ...

    def update_status(
        self,
        tenant_id: str,
        document_id: uuid.UUID,
        status: DocumentStatus,
        stage: str | None = None,
        error: str | None = None,
    ) -> None:
        """Forward-only status write. Raises InvalidStatusTransition."""
        ...

    def update_stage(self, tenant_id: str, document_id: uuid.UUID, stage: str) -> None:
        ...

    def upsert_document(self, document: DocumentMetadata) -> None:
        ...

    def insert_chunks(
        self,
        tenant_id: str,
        document_id: uuid.UUID,
        embeddings: Sequence[EmbeddedChunk],
    ) -> int:
        """Insert one sub-batch in one transaction. Raises StorageError."""
        ...

    def finalize_chunk_count(self, tenant_id: str, document_id: uuid.UUID) -> int:
        ...

    async def search_similar(
        self,
        tenant_id: str,
        vector: list[float],
        limit: int,
        threshold: float,
        document_ids: Sequence[uuid.UUID] | None = None,
    ) -> list[ChunkHit]:
        """Raises SimilaritySearchUnavailable when vector search cannot run."""
        ...

    async def search_substring(
        self,
        tenant_id: str,
        text: str,
        limit: int,
        document_ids: Sequence[uuid.UUID] | None = None,
    ) -> list[ChunkHit]:
        ...

    async def embedding_profiles(
        self,
        tenant_id: str,
        document_ids: Sequence[uuid.UUID] | None = None,
    ) -> list[EmbeddingProfile]:
        ...

    async def get_documents(
        self, tenant_id: str, document_ids: Sequence[uuid.UUID],
    ) -> dict[uuid.UUID, DocumentRecord]:
        ...

    async def get_document(self, tenant_id: str, document_id: uuid.UUID) -> DocumentRecord:
        """Raises DocumentNotFound."""
        ...

    async def list_documents(self, tenant_id: str, query: DocumentQuery) -> DocumentPage:
        ...

    async def list_chunks(
        self, tenant_id: str, document_id: uuid.UUID, limit: int,
    ) -> list[StoredChunk]:
        ...

    async def set_task_id(
        self, tenant_id: str, document_id: uuid.UUID, task_id: str,
    ) -> None:
        ...

    async def delete_document(self, tenant_id: str, document_id: uuid.UUID) -> None:
        """Cascade-deletes chunks. Raises DocumentNotFound."""
        ...


# ---------------------------------------------------------------------------
# Statement Builders
# ---------------------------------------------------------------------------
# Kept as plain functions so tests can compile them against the PostgreSQL
# dialect and assert on the SQL without a database.
# ---------------------------------------------------------------------------


def build_similarity_query(
    tenant_id: str,
    vector: list[float],
    limit: int,
    threshold: float,
    document_ids: Sequence[uuid.UUID] | None = None,
) -> Select:
    """
    Cosine similarity search scoped to one tenant.

    pgvector's `<=>` returns cosine distance in [0, 2]; similarity is
    1 - distance. Ordering by distance lets the HNSW index serve the query.
    """
    distance = Chunk.embedding.cosine_distance(vector)
    stmt = (
        select(
            Chunk.id,
            Chunk.document_id,
            Chunk.tenant_id,
            Chunk.content,
            Chunk.chunk_index,
            Chunk.metadata_,
            distance.label("distance"),
        )
        .where(Chunk.tenant_id == tenant_id)
        .where(Chunk.embedding.is_not(None))
        .where((1 - distance) >= threshold)
        .order_by(distance)
        .limit(limit)
    )
    if document_ids:
        stmt = stmt.where(Chunk.document_id.in_(list(document_ids)))
    return stmt


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_substring_query(
    tenant_id: str,
    text: str,
    limit: int,
    document_ids: Sequence[uuid.UUID] | None = None,
) -> Select:
    """Case-insensitive substring match scoped to one tenant."""
    pattern = f"%{_escape_like(text.strip())}%"
    stmt = (
        select(
            Chunk.id,
            Chunk.document_id,
            Chunk.tenant_id,
            Chunk.content,
            Chunk.chunk_index,
            Chunk.metadata_,
        )
        .where(Chunk.tenant_id == tenant_id)
        .where(Chunk.content.ilike(pattern, escape="\\"))
        .order_by(Chunk.created_at, Chunk.document_id, Chunk.chunk_index)
        .limit(limit)
    )
    if document_ids:
        stmt = stmt.where(Chunk.document_id.in_(list(document_ids)))
    return stmt


def build_status_update(
    tenant_id: str,
    document_id: uuid.UUID,
    status: DocumentStatus,
    stage: str | None = None,
    error: str | None = None,
):
    allowed = [s.value for s in ALLOWED_PREVIOUS_STATUS[status]]
    values: dict = {"upload_status": status.value}
    if stage is not None:
        values["processing_stage"] = stage
    if error is not None:
        values["processing_error"] = error[:1000]
    return (
        update(Document)
        .where(Document.id == document_id)
        .where(Document.tenant_id == tenant_id)
        .where(Document.upload_status.in_(allowed))
        .values(**values)
    )


def _to_record(doc: Document) -> DocumentRecord:
    return DocumentRecord(
        id=doc.id,
        tenant_id=doc.tenant_id,
        filename=doc.filename,
        mime_type=doc.mime_type,
        size_bytes=doc.size_bytes,
        page_count=doc.page_count,
        upload_status=doc.upload_status,
        processing_stage=doc.processing_stage,
        processing_error=doc.processing_error,
        chunk_count=doc.chunk_count,
        metadata=doc.metadata_ or {},
        celery_task_id=doc.celery_task_id,
        created_at=doc.created_at,
        updated_at=doc.updated_at,
    )


# ---------------------------------------------------------------------------
# PostgreSQL Implementation
# ---------------------------------------------------------------------------


class PgDocumentRepository:
    """pgvector-backed repository. Stateless; safe to share."""

    # -- ingestion path (sync) ------------------------------------------------

    def create_document(
        self,
        tenant_id: str,
        document_id: uuid.UUID,
        filename: str,
        size_bytes: int,
        mime_type: str = "application/pdf",
        metadata: dict | None = None,
    ) -> None:
        stmt = (
            pg_insert(Document)
            .values(
                id=document_id,
                tenant_id=tenant_id,
                filename=filename,
                mime_type=mime_type,
                size_bytes=size_bytes,
                upload_status=DocumentStatus.PENDING.value,
                metadata_=metadata or {},
            )
            .on_conflict_do_nothing(index_elements=[Document.id])
        )
        try:
            with get_sync_session() as session:
                session.execute(stmt)
                owner = session.execute(
                    select(Document.tenant_id).where(Document.id == document_id)
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not create document row: {exc}") from exc

        if owner != tenant_id:
            raise StorageError(
                "Document id is already owned by another tenant.",
                {"document_id": str(document_id)},
            )

    def update_status(
        self,
        tenant_id: str,
        document_id: uuid.UUID,
        status: DocumentStatus,
        stage: str | None = None,
        error: str | None = None,
    ) -> None:
        stmt = build_status_update(tenant_id, document_id, status, stage, error)
        try:
            with get_sync_session() as session:
                result = session.execute(stmt)
                matched = result.rowcount
        except SQLAlchemyError as exc:
            raise StorageError(f"Status update failed: {exc}") from exc

        if matched == 0:
            raise InvalidStatusTransition(
                f"Document {document_id} cannot move to '{status.value}'.",
                {"document_id": str(document_id), "target": status.value},
            )

    def update_stage(self, tenant_id: str, document_id: uuid.UUID, stage: str) -> None:
        terminal = [DocumentStatus.COMPLETED.value, DocumentStatus.FAILED.value]
        try:
            with get_sync_session() as session:
                session.execute(
                    update(Document)
                    .where(Document.id == document_id)
                    .where(Document.tenant_id == tenant_id)
                    .where(Document.upload_status.not_in(terminal))
                    .values(processing_stage=stage)
                )
        except SQLAlchemyError as exc:
            raise StorageError(f"Stage update failed: {exc}") from exc

    def upsert_document(self, document: DocumentMetadata) -> None:
        insert_stmt = pg_insert(Document).values(
            id=document.document_id,
            tenant_id=document.tenant_id,
            filename=document.filename,
            mime_type=document.mime_type,
            size_bytes=document.size_bytes,
            page_count=document.page_count,
            upload_status=DocumentStatus.PENDING.value,
            metadata_=document.metadata,
        )
        # Only the owning tenant's row may be updated on conflict.
        stmt = insert_stmt.on_conflict_do_update(
            index_elements=[Document.id],
            set_={
                "filename": insert_stmt.excluded.filename,
                "mime_type": insert_stmt.excluded.mime_type,
                "size_bytes": insert_stmt.excluded.size_bytes,
                "page_count": insert_stmt.excluded.page_count,
                "metadata_": insert_stmt.excluded.metadata_,
                "updated_at": func.now(),
            },
            where=Document.tenant_id == document.tenant_id,
        )
        try:
            with get_sync_session() as session:
                result = session.execute(stmt)
                written = result.rowcount
        except SQLAlchemyError as exc:
            raise StorageError(f"Document upsert failed: {exc}") from exc

        if written == 0:
            raise StorageError(
                "Document id is already owned by another tenant.",
                {"document_id": str(document.document_id)},
            )

    def insert_chunks(
        self,
        tenant_id: str,
        document_id: uuid.UUID,
        embeddings: Sequence[EmbeddedChunk],
    ) -> int:
        rows = [
            Chunk(
                document_id=document_id,
                tenant_id=tenant_id,
                content=item.content,
                chunk_index=item.index,
                embedding=item.vector,
                metadata_=item.metadata,
            )
            for item in embeddings
        ]
        try:
            with get_sync_session() as session:
                session.add_all(rows)
        except SQLAlchemyError as exc:
            raise StorageError(f"Chunk insert failed: {exc}") from exc
        return len(rows)

    def finalize_chunk_count(self, tenant_id: str, document_id: uuid.UUID) -> int:
        try:
            with get_sync_session() as session:
                doc = session.execute(
                    select(Document)
                    .where(Document.id == document_id)
                    .where(Document.tenant_id == tenant_id)
                    .with_for_update()
                ).scalar_one_or_none()
                if doc is None:
                    raise DocumentNotFound(f"Document {document_id} not found.")

                count = session.execute(
                    select(func.count())
                    .select_from(Chunk)
                    .where(Chunk.document_id == document_id)
                    .where(Chunk.tenant_id == tenant_id)
                ).scalar_one()
                doc.chunk_count = count
        except SQLAlchemyError as exc:
            raise StorageError(f"Chunk count update failed: {exc}") from exc
        return count

    # -- read path (async) ----------------------------------------------------

    async def search_similar(
        self,
        tenant_id: str,
        vector: list[float],
        limit: int,
        threshold: float,
        document_ids: Sequence[uuid.UUID] | None = None,
    ) -> list[ChunkHit]:
        if not settings.vector_search_enabled:
            raise SimilaritySearchUnavailable("Vector search is disabled by configuration.")

        stmt = build_similarity_query(tenant_id, vector, limit, threshold, document_ids)
        try:
            async with async_session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except DBAPIError as exc:
            # Missing extension/operator, dimension mismatch at the SQL level,
            # index unavailable: all surface here as driver errors.
            raise SimilaritySearchUnavailable(
                f"Vector similarity search failed: {exc.orig or exc}",
            ) from exc

        logger.debug(
            "Similarity search returned %d rows (tenant=%s, limit=%d, threshold=%.2f)",
            len(rows), tenant_id, limit, threshold,
        )
        return [
            ChunkHit(
                chunk_id=row.id,
                document_id=row.document_id,
                tenant_id=row.tenant_id,
                content=row.content,
                chunk_index=row.chunk_index,
                similarity=round(1.0 - row.distance, 4),
                metadata=row.metadata_ or {},
            )
            for row in rows
        ]

    async def search_substring(
        self,
        tenant_id: str,
        text: str,
        limit: int,
        document_ids: Sequence[uuid.UUID] | None = None,
    ) -> list[ChunkHit]:
        stmt = build_substring_query(tenant_id, text, limit, document_ids)
        try:
            async with async_session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise StorageError(f"Substring search failed: {exc}") from exc

        return [
            ChunkHit(
                chunk_id=row.id,
                document_id=row.document_id,
                tenant_id=row.tenant_id,
                content=row.content,
                chunk_index=row.chunk_index,
                similarity=settings.fallback_similarity_score,
                metadata=row.metadata_ or {},
            )
            for row in rows
        ]

    async def embedding_profiles(
        self,
        tenant_id: str,
        document_ids: Sequence[uuid.UUID] | None = None,
    ) -> list[EmbeddingProfile]:
        # Read from metadata rather than vector_dims() so this still works
        # when the vector extension is what's broken.
        stmt = (
            select(
                Chunk.metadata_["embedding_model"].astext,
                Chunk.metadata_["dimensions"].astext,
            )
            .where(Chunk.tenant_id == tenant_id)
            .distinct()
        )
        if document_ids:
            stmt = stmt.where(Chunk.document_id.in_(list(document_ids)))
        try:
            async with async_session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise StorageError(f"Embedding profile lookup failed: {exc}") from exc

        return [
            EmbeddingProfile(model=model, dimensions=int(dims) if dims else None)
            for model, dims in rows
        ]

    async def get_documents(
        self, tenant_id: str, document_ids: Sequence[uuid.UUID],
    ) -> dict[uuid.UUID, DocumentRecord]:
        if not document_ids:
            return {}
        stmt = (
            select(Document)
            .where(Document.tenant_id == tenant_id)
            .where(Document.id.in_(list(document_ids)))
        )
        async with async_session_factory() as session:
            docs = (await session.execute(stmt)).scalars().all()
        return {doc.id: _to_record(doc) for doc in docs}

    async def get_document(self, tenant_id: str, document_id: uuid.UUID) -> DocumentRecord:
        docs = await self.get_documents(tenant_id, [document_id])
        if document_id not in docs:
            raise DocumentNotFound(
                f"Document {document_id} not found.",
                {"document_id": str(document_id)},
            )
        return docs[document_id]

    async def list_documents(self, tenant_id: str, query: DocumentQuery) -> DocumentPage:
        conditions = [Document.tenant_id == tenant_id]
        if query.filename:
            conditions.append(
                Document.filename.ilike(f"%{_escape_like(query.filename)}%", escape="\\")
            )
        if query.status is not None:
            conditions.append(Document.upload_status == DocumentStatus(query.status).value)
        if query.date_from is not None:
            conditions.append(Document.created_at >= query.date_from)
        if query.date_to is not None:
            conditions.append(Document.created_at <= query.date_to)

        sort_column = getattr(
            Document,
            query.sort_by if query.sort_by in SORTABLE_COLUMNS else "created_at",
        )
        ordering = sort_column.asc() if query.sort_order == "asc" else sort_column.desc()

        stmt = (
            select(Document)
            .where(*conditions)
            .order_by(ordering, Document.id)
            .offset((query.page - 1) * query.limit)
            .limit(query.limit)
        )
        count_stmt = select(func.count(Document.id)).where(*conditions)

        async with async_session_factory() as session:
            docs = (await session.execute(stmt)).scalars().all()
            total = (await session.execute(count_stmt)).scalar() or 0

        return DocumentPage(
            items=[_to_record(doc) for doc in docs],
            total=total,
            page=query.page,
            limit=query.limit,
        )

    async def list_chunks(
        self, tenant_id: str, document_id: uuid.UUID, limit: int,
    ) -> list[StoredChunk]:
        stmt = (
            select(Chunk)
            .where(Chunk.tenant_id == tenant_id)
            .where(Chunk.document_id == document_id)
            .order_by(Chunk.chunk_index)
            .limit(limit)
        )
        async with async_session_factory() as session:
            chunks = (await session.execute(stmt)).scalars().all()
        return [
            StoredChunk(
                id=c.id,
                document_id=c.document_id,
                chunk_index=c.chunk_index,
                content=c.content,
                metadata=c.metadata_ or {},
                created_at=c.created_at,
            )
            for c in chunks
        ]

    async def set_task_id(
        self, tenant_id: str, document_id: uuid.UUID, task_id: str,
    ) -> None:
        stmt = (
            update(Document)
            .where(Document.id == document_id)
            .where(Document.tenant_id == tenant_id)
            .values(celery_task_id=task_id)
        )
        async with async_session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def delete_document(self, tenant_id: str, document_id: uuid.UUID) -> None:
        stmt = (
            delete(Document)
            .where(Document.id == document_id)
            .where(Document.tenant_id == tenant_id)
        )
        async with async_session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        if result.rowcount == 0:
            raise DocumentNotFound(
                f"Document {document_id} not found.",
                {"document_id": str(document_id)},
            )
        logger.info("Deleted document %s (tenant=%s)", document_id, tenant_id)


_repository: PgDocumentRepository | None = None


def get_repository() -> PgDocumentRepository:
    global _repository
    if _repository is None:
        _repository = PgDocumentRepository()
    return _repository
