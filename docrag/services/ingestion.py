# =============================================================================
# Ingestion Coordinator — One Document Through the Pipeline
# =============================================================================
#
# STAGES (one-way, never retried):
#
#   PENDING → VALIDATING → EXTRACTING → CHUNKING → EMBEDDING → STORING → COMPLETED
#                 │             │           │           │          │
#                 └─────────────┴───────────┴───────────┴──────────┴──→ FAILED
#
# VALIDATING runs before any row exists: a rejected upload (bad base64,
# missing %PDF signature, oversized, bad chunking options) returns
# success=False and leaves the database untouched.
#
# After validation the pending row is created (idempotently, so the upload
# endpoint may pre-create it for polling). Entering EXTRACTING persists
# upload_status=processing; every later stage persists processing_stage; the
# terminal stage persists completed or failed + processing_error.
#
# COMPENSATION: the store step is a non-atomic saga (document upsert, then
# sub-batched chunk inserts). If nothing usable comes out of embedding or
# storage the document is marked FAILED; partial success completes and the
# per-item failures are returned alongside.
# =============================================================================

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any

from docrag.config import settings
from docrag.db.models import DocumentStatus
from docrag.errors import (
    ChunkingError,
    EmbeddingError,
    InvalidStatusTransition,
    PipelineError,
    StorageError,
    ValidationError,
)
from docrag.services.chunker import ChunkingOptions, ChunkStrategy, chunk_text
from docrag.services.embedder import EmbeddingBatcher
from docrag.services.extractor import Source, extract_text, resolve_source
from docrag.services.repository import DocumentMetadata, DocumentRepository
from docrag.services.vectorstore import VectorStoreAdapter

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Stage Machine
# ---------------------------------------------------------------------------


class IngestionStage(str, enum.Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    STORING = "storing"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: dict[IngestionStage, frozenset[IngestionStage]] = {
    IngestionStage.PENDING: frozenset({IngestionStage.VALIDATING, IngestionStage.FAILED}),
    IngestionStage.VALIDATING: frozenset({IngestionStage.EXTRACTING, IngestionStage.FAILED}),
    IngestionStage.EXTRACTING: frozenset({IngestionStage.CHUNKING, IngestionStage.FAILED}),
    IngestionStage.CHUNKING: frozenset({IngestionStage.EMBEDDING, IngestionStage.FAILED}),
    IngestionStage.EMBEDDING: frozenset({IngestionStage.STORING, IngestionStage.FAILED}),
    IngestionStage.STORING: frozenset({IngestionStage.COMPLETED, IngestionStage.FAILED}),
    IngestionStage.COMPLETED: frozenset(),
    IngestionStage.FAILED: frozenset(),
}


def can_transition(current: IngestionStage, target: IngestionStage) -> bool:
    return target in _TRANSITIONS[current]


# ---------------------------------------------------------------------------
# Request / Result
# ---------------------------------------------------------------------------


@dataclass
class IngestionOptions:
    chunk_strategy: ChunkStrategy = field(
        default_factory=lambda: ChunkStrategy(settings.chunk_strategy),
    )
    max_chunk_size: int = field(default_factory=lambda: settings.chunk_max_size)
    overlap: int = field(default_factory=lambda: settings.chunk_overlap)
    min_chunk_size: int = field(default_factory=lambda: settings.chunk_min_size)
    embedding_model: str = field(default_factory=lambda: settings.embedding_model)
    batch_size: int = field(default_factory=lambda: settings.embedding_batch_size)
    password: str | None = None


@dataclass
class IngestionRequest:
    tenant_id: str
    source: Source
    filename: str | None = None
    metadata: dict = field(default_factory=dict)
    options: IngestionOptions = field(default_factory=IngestionOptions)
    document_id: uuid.UUID | None = None


@dataclass
class IngestionResult:
    success: bool
    document_id: uuid.UUID | None = None
    chunk_count: int = 0
    embeddings_stored: int = 0
    stage: IngestionStage = IngestionStage.PENDING
    processing_summary: dict[str, Any] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form, used as the Celery task result."""
        data = asdict(self)
        data["document_id"] = str(self.document_id) if self.document_id else None
        data["stage"] = self.stage.value
        return data


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class _Run:
    """Mutable bookkeeping for one ingestion."""

    def __init__(self, request: IngestionRequest) -> None:
        self.request = request
        self.document_id = request.document_id or uuid.uuid4()
        self.stage = IngestionStage.PENDING
        self.row_created = False
        self.summary: dict[str, Any] = {}
        self.errors: list[dict[str, Any]] = []

    def advance(self, target: IngestionStage) -> None:
        if not can_transition(self.stage, target):
            raise InvalidStatusTransition(
                f"Cannot move from '{self.stage.value}' to '{target.value}'.",
            )
        logger.info(
            "[%s] Stage %s → %s", self.document_id, self.stage.value, target.value,
        )
        self.stage = target


class IngestionCoordinator:
    """Drives extract → chunk → embed → store for one document at a time."""

    def __init__(
        self,
        repository: DocumentRepository,
        batcher: EmbeddingBatcher,
        store: VectorStoreAdapter | None = None,
    ) -> None:
        self._repository = repository
        self._batcher = batcher
        self._store = store or VectorStoreAdapter(repository)

    def ingest(self, request: IngestionRequest) -> IngestionResult:
        """
        Run the full pipeline.

        Pipeline failures come back as success=False with a structured
        `error`; anything unexpected marks the document FAILED and is
        re-raised.
        """
        run = _Run(request)
        opts = request.options

        # -- VALIDATING (no row yet) ---------------------------------------------
        run.advance(IngestionStage.VALIDATING)
        try:
            chunking = ChunkingOptions(
                max_chunk_size=opts.max_chunk_size,
                overlap=opts.overlap,
                min_chunk_size=opts.min_chunk_size,
            )
            try:
                strategy = ChunkStrategy(opts.chunk_strategy)
            except ValueError as exc:
                raise ValidationError(
                    f"Unknown chunk strategy: {opts.chunk_strategy}",
                    {"allowed": [s.value for s in ChunkStrategy]},
                ) from exc
            resolved = resolve_source(request.source, request.filename)
        except PipelineError as exc:
            logger.warning("[%s] Rejected upload: %s", run.document_id, exc.message)
            # A caller-supplied id means the upload endpoint pre-created the
            # pending row; it must not stay pending forever.
            run.row_created = request.document_id is not None
            self._mark_failed(run, exc.message)
            return IngestionResult(
                success=False,
                document_id=request.document_id,
                stage=run.stage,
                errors=run.errors,
                error=exc.to_error_info(),
            )

        run.summary.update({
            "filename": resolved.filename,
            "size_bytes": resolved.size_bytes,
            "chunk_strategy": strategy.value,
            "max_chunk_size": chunking.max_chunk_size,
            "overlap": chunking.overlap,
            "min_chunk_size": chunking.min_chunk_size,
            "embedding_model": opts.embedding_model,
        })

        try:
            self._repository.create_document(
                request.tenant_id,
                run.document_id,
                filename=resolved.filename,
                size_bytes=resolved.size_bytes,
                mime_type=resolved.mime_type,
                metadata=request.metadata,
            )
            run.row_created = True

            # -- EXTRACTING ------------------------------------------------------
            self._enter(run, IngestionStage.EXTRACTING, status=DocumentStatus.PROCESSING)
            extracted = extract_text(resolved.content, opts.password)
            run.summary["page_count"] = extracted.page_count
            run.summary["text_length"] = len(extracted.text)

            # -- CHUNKING --------------------------------------------------------
            self._enter(run, IngestionStage.CHUNKING)
            chunks = chunk_text(extracted.text, strategy, chunking)
            run.summary["chunks_created"] = len(chunks)
            if not chunks:
                raise ChunkingError(
                    "Text produced no chunks.",
                    {"text_length": len(extracted.text)},
                )

            # -- EMBEDDING -------------------------------------------------------
            self._enter(run, IngestionStage.EMBEDDING)
            embedded = self._batcher.embed(
                chunks, model=opts.embedding_model, batch_size=opts.batch_size,
            )
            run.errors.extend(
                {"stage": "embedding", "chunk_id": f.chunk_id, "message": f.message}
                for f in embedded.errors
            )
            run.summary["embeddings_generated"] = len(embedded.embeddings)
            run.summary["embedding_failures"] = len(embedded.errors)
            if not embedded.embeddings:
                raise EmbeddingError(
                    "Every embedding batch failed.",
                    {"failed_chunks": len(embedded.errors)},
                )
            run.summary["dimensions"] = embedded.embeddings[0].dimensions

            # -- STORING ---------------------------------------------------------
            self._enter(run, IngestionStage.STORING)
            stored = self._store.store(
                DocumentMetadata(
                    document_id=run.document_id,
                    tenant_id=request.tenant_id,
                    filename=resolved.filename,
                    size_bytes=resolved.size_bytes,
                    mime_type=resolved.mime_type,
                    page_count=extracted.page_count,
                    metadata=request.metadata,
                ),
                embedded.embeddings,
            )
            run.errors.extend(
                {
                    "stage": "storing",
                    "batch_start": f.batch_start,
                    "batch_end": f.batch_end,
                    "message": f.message,
                }
                for f in stored.errors
            )
            run.summary["chunks_stored"] = stored.stored
            run.summary["storage_failures"] = stored.failed
            if stored.stored == 0:
                raise StorageError(
                    "No chunk rows were committed.",
                    {"failed_chunks": stored.failed},
                )

            # -- COMPLETED -------------------------------------------------------
            self._enter(run, IngestionStage.COMPLETED, status=DocumentStatus.COMPLETED)

        except PipelineError as exc:
            logger.error(
                "[%s] Ingestion failed at stage %s: %s",
                run.document_id, run.stage.value, exc.message,
            )
            self._mark_failed(run, exc.message)
            return IngestionResult(
                success=False,
                document_id=run.document_id if run.row_created else None,
                stage=run.stage,
                processing_summary=run.summary,
                errors=run.errors,
                error=exc.to_error_info(),
            )
        except Exception as exc:
            logger.exception("[%s] Unexpected ingestion failure", run.document_id)
            self._mark_failed(run, f"Unexpected error: {exc}")
            raise

        logger.info(
            "[%s] Ingestion complete: %d chunks stored, %d item errors",
            run.document_id, stored.stored, len(run.errors),
        )
        return IngestionResult(
            success=True,
            document_id=run.document_id,
            chunk_count=stored.stored,
            embeddings_stored=stored.stored,
            stage=run.stage,
            processing_summary=run.summary,
            errors=run.errors,
        )

    # -- helpers --------------------------------------------------------------

    def _enter(
        self,
        run: _Run,
        stage: IngestionStage,
        status: DocumentStatus | None = None,
    ) -> None:
        if not can_transition(run.stage, stage):
            raise InvalidStatusTransition(
                f"Cannot move from '{run.stage.value}' to '{stage.value}'.",
            )
        if status is not None:
            self._repository.update_status(
                run.request.tenant_id, run.document_id, status, stage=stage.value,
            )
        else:
            self._repository.update_stage(
                run.request.tenant_id, run.document_id, stage.value,
            )
        run.advance(stage)

    def _mark_failed(self, run: _Run, message: str) -> None:
        """Compensating action: persist FAILED when a row exists."""
        if run.stage in (IngestionStage.FAILED, IngestionStage.COMPLETED):
            return
        failed_at = run.stage.value
        run.advance(IngestionStage.FAILED)
        run.summary["failed_stage"] = failed_at
        if not run.row_created:
            return
        try:
            self._repository.update_status(
                run.request.tenant_id,
                run.document_id,
                DocumentStatus.FAILED,
                stage=IngestionStage.FAILED.value,
                error=message,
            )
        except StorageError as exc:
            logger.exception(
                "[%s] Could not persist FAILED status", run.document_id,
            )
            run.errors.append({
                "stage": "failed",
                "message": f"Could not persist failed status: {exc.message}",
            })
