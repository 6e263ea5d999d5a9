# =============================================================================
# Vector Store Adapter — Document Upsert + Sub-Batched Chunk Inserts
# =============================================================================
#
# The store step of ingestion. It makes two writes that are NOT atomic
# together:
#
#   1. upsert the document row (tenant-guarded)
#   2. insert chunk rows in sub-batches of `store_batch_size`, one
#      transaction each; a failing sub-batch is recorded and skipped
#
# then repairs `chunk_count` from the committed rows under a row lock.
#
# DESIGN DECISION: Saga, not one big transaction. A document with 5,000
# chunks should not lose 4,900 good rows because one sub-batch hit a bad
# vector. If every sub-batch fails, the coordinator runs the compensating
# action (mark the document FAILED); partial success completes with the
# failures listed. chunk_count always reflects what actually landed.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from docrag.config import settings
from docrag.errors import StorageError
from docrag.services.embedder import EmbeddedChunk
from docrag.services.repository import DocumentMetadata, DocumentRepository

logger = logging.getLogger(__name__)


@dataclass
class StorageFailure:
    batch_start: int
    batch_end: int
    message: str


@dataclass
class StoreResult:
    stored: int                 # committed chunk rows (== document.chunk_count)
    failed: int                 # chunks in failed sub-batches
    errors: list[StorageFailure] = field(default_factory=list)


class VectorStoreAdapter:
    """Writes one document's embeddings through a DocumentRepository."""

    def __init__(
        self,
        repository: DocumentRepository,
        batch_size: int | None = None,
    ) -> None:
        self._repository = repository
        self._batch_size = batch_size or settings.store_batch_size

    def store(
        self,
        document: DocumentMetadata,
        embeddings: Sequence[EmbeddedChunk],
    ) -> StoreResult:
        """
        Persist document metadata and chunk rows.

        Raises:
            StorageError: The document upsert failed (nothing was written),
                or the final chunk count could not be recomputed.
        """
        self._repository.upsert_document(document)

        errors: list[StorageFailure] = []
        failed = 0
        for start in range(0, len(embeddings), self._batch_size):
            batch = embeddings[start : start + self._batch_size]
            end = start + len(batch) - 1
            try:
                self._repository.insert_chunks(
                    document.tenant_id, document.document_id, batch,
                )
            except StorageError as exc:
                logger.error(
                    "Chunk sub-batch %d-%d failed for document %s: %s",
                    start, end, document.document_id, exc,
                )
                errors.append(StorageFailure(
                    batch_start=start, batch_end=end, message=str(exc),
                ))
                failed += len(batch)

        stored = self._repository.finalize_chunk_count(
            document.tenant_id, document.document_id,
        )

        logger.info(
            "Stored %d chunks for document %s (%d failed in %d sub-batches)",
            stored, document.document_id, failed, len(errors),
        )
        return StoreResult(stored=stored, failed=failed, errors=errors)
