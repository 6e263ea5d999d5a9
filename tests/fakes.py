# =============================================================================
# Test Fakes — In-Memory Stand-Ins for the Pipeline Seams
# =============================================================================
#
# FakeRepository     tenant-scoped, in-memory DocumentRepository with the
#                    same status-transition and not-found rules as the
#                    PostgreSQL implementation
# FakeEmbedder       deterministic EmbeddingProvider (crc32 bag of words)
# FakeLLM            LLMProvider that records calls and can be told to fail
# make_pdf()         builds real PDF bytes with PyMuPDF
#
# No database, network or API keys needed.
# =============================================================================

from __future__ import annotations

import math
import uuid
import zlib
from collections.abc import Sequence
from datetime import UTC, datetime

import fitz

from docrag.config import settings
from docrag.db.models import ALLOWED_PREVIOUS_STATUS, DocumentStatus
from docrag.errors import (
    DocumentNotFound,
    InvalidStatusTransition,
    SimilaritySearchUnavailable,
    StorageError,
)
from docrag.services.llm import LLMResponse
from docrag.services.repository import (
    ChunkHit,
    DocumentMetadata,
    DocumentPage,
    DocumentQuery,
    DocumentRecord,
    EmbeddingProfile,
    StoredChunk,
)

# ---------------------------------------------------------------------------
# PDFs
# ---------------------------------------------------------------------------


def make_pdf(pages: Sequence[str], password: str | None = None) -> bytes:
    """One page per string; lines are inserted as-is."""
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        page.insert_text((72, 72), text, fontsize=11)
    if password:
        data = doc.tobytes(
            encryption=fitz.PDF_ENCRYPT_AES_256,
            owner_pw=f"{password}-owner",
            user_pw=password,
        )
    else:
        data = doc.tobytes()
    doc.close()
    return data


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------


def bag_of_words_vector(text: str, dimensions: int = 16) -> list[float]:
    vector = [0.0] * dimensions
    for word in text.lower().split():
        token = word.strip(".,!?;:()\"'")
        if token:
            vector[zlib.crc32(token.encode()) % dimensions] += 1.0
    if not any(vector):
        vector[0] = 1.0
    return vector


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b, strict=True))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class FakeEmbedder:
    """
    Deterministic EmbeddingProvider.

    fail_calls: 1-based call numbers that raise. `overrides` maps an exact
    text to a fixed vector.
    """

    def __init__(
        self,
        dimensions: int = 16,
        fail_calls: set[int] | None = None,
        overrides: dict[str, list[float]] | None = None,
    ) -> None:
        self.dimensions = dimensions
        self.fail_calls = fail_calls or set()
        self.overrides = overrides or {}
        self.calls: list[list[str]] = []

    def embed_texts(self, texts: Sequence[str], model: str) -> list[list[float]]:
        self.calls.append(list(texts))
        if len(self.calls) in self.fail_calls:
            raise ConnectionError(f"provider unavailable (call {len(self.calls)})")
        return [
            self.overrides.get(t) or bag_of_words_vector(t, self.dimensions)
            for t in texts
        ]


# ---------------------------------------------------------------------------
# LLM
# ---------------------------------------------------------------------------


class FakeLLM:
    def __init__(self, answer: str = "Bees forage up to 5 km [Source 1].", fail: bool = False):
        self.answer = answer
        self.fail = fail
        self.calls: list[dict] = []

    async def complete(self, messages, system=None, temperature=None, max_tokens=None):
        self.calls.append({"messages": messages, "system": system})
        if self.fail:
            raise RuntimeError("upstream 529 overloaded")
        return LLMResponse(
            content=self.answer, model="fake-llm", input_tokens=120, output_tokens=30,
        )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class FakeRepository:
    """In-memory DocumentRepository."""

    def __init__(self) -> None:
        self.documents: dict[uuid.UUID, DocumentRecord] = {}
        self.chunks: list[dict] = []
        self.similarity_unavailable = False
        self.fail_insert_calls: set[int] = set()
        self.fail_status: set[DocumentStatus] = set()
        self.insert_calls = 0
        self.status_history: list[tuple[uuid.UUID, str]] = []

    # -- seeding --------------------------------------------------------------

    def add_document(
        self,
        tenant_id: str,
        filename: str = "doc.pdf",
        status: DocumentStatus = DocumentStatus.COMPLETED,
        created_at: datetime | None = None,
    ) -> uuid.UUID:
        document_id = uuid.uuid4()
        now = created_at or datetime.now(UTC)
        self.documents[document_id] = DocumentRecord(
            id=document_id,
            tenant_id=tenant_id,
            filename=filename,
            mime_type="application/pdf",
            size_bytes=1024,
            page_count=1,
            upload_status=status.value,
            processing_stage=None,
            processing_error=None,
            chunk_count=0,
            metadata={},
            celery_task_id=None,
            created_at=now,
            updated_at=now,
        )
        return document_id

    def add_chunk(
        self,
        tenant_id: str,
        document_id: uuid.UUID,
        content: str,
        vector: list[float] | None = None,
        model: str | None = None,
    ) -> uuid.UUID:
        vector = vector or bag_of_words_vector(content)
        chunk_id = uuid.uuid4()
        index = sum(1 for c in self.chunks if c["document_id"] == document_id)
        self.chunks.append({
            "id": chunk_id,
            "document_id": document_id,
            "tenant_id": tenant_id,
            "content": content,
            "chunk_index": index,
            "vector": vector,
            "metadata": {
                "embedding_model": model or settings.embedding_model,
                "dimensions": len(vector),
            },
            "created_at": datetime.now(UTC),
        })
        self.documents[document_id].chunk_count = index + 1
        return chunk_id

    def _owned(self, tenant_id: str, document_id: uuid.UUID) -> DocumentRecord | None:
        doc = self.documents.get(document_id)
        return doc if doc is not None and doc.tenant_id == tenant_id else None

    # -- ingestion path -------------------------------------------------------

    def create_document(
        self, tenant_id, document_id, filename, size_bytes,
        mime_type="application/pdf", metadata=None,
    ) -> None:
        existing = self.documents.get(document_id)
        if existing is not None:
            if existing.tenant_id != tenant_id:
                raise StorageError("Document id is already owned by another tenant.")
            return
        now = datetime.now(UTC)
        self.documents[document_id] = DocumentRecord(
            id=document_id,
            tenant_id=tenant_id,
            filename=filename,
            mime_type=mime_type,
            size_bytes=size_bytes,
            page_count=None,
            upload_status=DocumentStatus.PENDING.value,
            processing_stage=None,
            processing_error=None,
            chunk_count=0,
            metadata=metadata or {},
            celery_task_id=None,
            created_at=now,
            updated_at=now,
        )

    def update_status(self, tenant_id, document_id, status, stage=None, error=None) -> None:
        if status in self.fail_status:
            raise StorageError(f"could not write status {status.value}")
        doc = self._owned(tenant_id, document_id)
        allowed = {s.value for s in ALLOWED_PREVIOUS_STATUS[status]}
        if doc is None or doc.upload_status not in allowed:
            raise InvalidStatusTransition(
                f"Document {document_id} cannot move to '{status.value}'.",
            )
        doc.upload_status = status.value
        if stage is not None:
            doc.processing_stage = stage
        if error is not None:
            doc.processing_error = error
        self.status_history.append((document_id, status.value))

    def update_stage(self, tenant_id, document_id, stage) -> None:
        doc = self._owned(tenant_id, document_id)
        if doc is not None and doc.upload_status not in ("completed", "failed"):
            doc.processing_stage = stage

    def upsert_document(self, document: DocumentMetadata) -> None:
        doc = self.documents.get(document.document_id)
        if doc is not None and doc.tenant_id != document.tenant_id:
            raise StorageError("Document id is already owned by another tenant.")
        if doc is None:
            self.create_document(
                document.tenant_id, document.document_id,
                document.filename, document.size_bytes,
            )
            doc = self.documents[document.document_id]
        doc.filename = document.filename
        doc.page_count = document.page_count
        doc.metadata = document.metadata

    def insert_chunks(self, tenant_id, document_id, embeddings) -> int:
        self.insert_calls += 1
        if self.insert_calls in self.fail_insert_calls:
            raise StorageError(f"insert batch {self.insert_calls} failed")
        for item in embeddings:
            self.chunks.append({
                "id": uuid.uuid4(),
                "document_id": document_id,
                "tenant_id": tenant_id,
                "content": item.content,
                "chunk_index": item.index,
                "vector": item.vector,
                "metadata": item.metadata,
                "created_at": datetime.now(UTC),
            })
        return len(embeddings)

    def finalize_chunk_count(self, tenant_id, document_id) -> int:
        doc = self._owned(tenant_id, document_id)
        if doc is None:
            raise DocumentNotFound(f"Document {document_id} not found.")
        doc.chunk_count = sum(
            1 for c in self.chunks
            if c["document_id"] == document_id and c["tenant_id"] == tenant_id
        )
        return doc.chunk_count

    # -- read path ------------------------------------------------------------

    def _tenant_chunks(self, tenant_id, document_ids):
        for c in self.chunks:
            if c["tenant_id"] != tenant_id:
                continue
            if document_ids and c["document_id"] not in document_ids:
                continue
            yield c

    @staticmethod
    def _hit(c, similarity) -> ChunkHit:
        return ChunkHit(
            chunk_id=c["id"],
            document_id=c["document_id"],
            tenant_id=c["tenant_id"],
            content=c["content"],
            chunk_index=c["chunk_index"],
            similarity=similarity,
            metadata=c["metadata"],
        )

    async def search_similar(self, tenant_id, vector, limit, threshold, document_ids=None):
        if self.similarity_unavailable:
            raise SimilaritySearchUnavailable('operator does not exist: vector <=> vector')
        scored = [
            (round(cosine(vector, c["vector"]), 4), c)
            for c in self._tenant_chunks(tenant_id, document_ids)
        ]
        scored = [(s, c) for s, c in scored if s >= threshold]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [self._hit(c, s) for s, c in scored[:limit]]

    async def search_substring(self, tenant_id, text, limit, document_ids=None):
        needle = text.strip().lower()
        hits = [
            self._hit(c, settings.fallback_similarity_score)
            for c in self._tenant_chunks(tenant_id, document_ids)
            if needle in c["content"].lower()
        ]
        return hits[:limit]

    async def embedding_profiles(self, tenant_id, document_ids=None):
        seen = {
            (c["metadata"].get("embedding_model"), c["metadata"].get("dimensions"))
            for c in self._tenant_chunks(tenant_id, document_ids)
        }
        return [EmbeddingProfile(model=m, dimensions=d) for m, d in sorted(seen, key=str)]

    async def get_documents(self, tenant_id, document_ids):
        return {
            d: self.documents[d] for d in document_ids if self._owned(tenant_id, d)
        }

    async def get_document(self, tenant_id, document_id):
        doc = self._owned(tenant_id, document_id)
        if doc is None:
            raise DocumentNotFound(
                f"Document {document_id} not found.", {"document_id": str(document_id)},
            )
        return doc

    async def list_documents(self, tenant_id, query: DocumentQuery) -> DocumentPage:
        docs = [d for d in self.documents.values() if d.tenant_id == tenant_id]
        if query.filename:
            docs = [d for d in docs if query.filename.lower() in d.filename.lower()]
        if query.status is not None:
            docs = [d for d in docs if d.upload_status == DocumentStatus(query.status).value]
        docs.sort(key=lambda d: getattr(d, query.sort_by), reverse=query.sort_order == "desc")
        start = (query.page - 1) * query.limit
        return DocumentPage(
            items=docs[start : start + query.limit],
            total=len(docs),
            page=query.page,
            limit=query.limit,
        )

    async def list_chunks(self, tenant_id, document_id, limit):
        rows = sorted(
            (c for c in self._tenant_chunks(tenant_id, [document_id])),
            key=lambda c: c["chunk_index"],
        )
        return [
            StoredChunk(
                id=c["id"],
                document_id=c["document_id"],
                chunk_index=c["chunk_index"],
                content=c["content"],
                metadata=c["metadata"],
                created_at=c["created_at"],
            )
            for c in rows[:limit]
        ]

    async def set_task_id(self, tenant_id, document_id, task_id) -> None:
        doc = self._owned(tenant_id, document_id)
        if doc is not None:
            doc.celery_task_id = task_id

    async def delete_document(self, tenant_id, document_id) -> None:
        if self._owned(tenant_id, document_id) is None:
            raise DocumentNotFound(f"Document {document_id} not found.")
        del self.documents[document_id]
        self.chunks = [c for c in self.chunks if c["document_id"] != document_id]
