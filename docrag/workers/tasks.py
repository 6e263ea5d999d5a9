# =============================================================================
# Celery Tasks — Document Ingestion
# =============================================================================
#
# Thin wrapper: rebuild the IngestionRequest from JSON arguments and hand it
# to the IngestionCoordinator, which owns stages, status writes and failure
# compensation.
#
# DESIGN DECISION: No task-level retry. Embedding batches already retry with
# backoff inside the batcher, and a document that reached FAILED must not
# re-enter processing. Clients re-upload to try again.
# =============================================================================

import logging
import uuid
from pathlib import Path

from docrag.services.embedder import EmbeddingBatcher, get_embedding_provider
from docrag.services.extractor import FileSource
from docrag.services.ingestion import (
    IngestionCoordinator,
    IngestionOptions,
    IngestionRequest,
)
from docrag.services.repository import get_repository
from docrag.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def build_coordinator() -> IngestionCoordinator:
    """Wire the coordinator with the production repository and provider."""
    return IngestionCoordinator(
        repository=get_repository(),
        batcher=EmbeddingBatcher(get_embedding_provider()),
    )


def build_options(options: dict | None) -> IngestionOptions:
    """Apply per-request overrides on top of the configured defaults."""
    opts = IngestionOptions()
    for key, value in (options or {}).items():
        if value is None or not hasattr(opts, key):
            continue
        setattr(opts, key, value)
    return opts


@celery_app.task(bind=True, name="ingest_document")
def ingest_document(
    self,
    tenant_id: str,
    document_id: str,
    file_path: str,
    filename: str | None = None,
    metadata: dict | None = None,
    options: dict | None = None,
    delete_after: bool = True,
) -> dict:
    """
    Ingest an uploaded PDF that the API saved to disk.

    Args:
        self: Bound task (provides self.request.id for log correlation).
        tenant_id: Owning tenant.
        document_id: Id of the pending row the API pre-created.
        file_path: Path to the saved upload.
        filename: Original client filename.
        metadata: title / author / category / tags.
        options: Chunking / embedding overrides (see IngestionOptions).
        delete_after: Remove the saved upload once ingestion finishes.

    Returns:
        IngestionResult.to_dict()
    """
    task_id = self.request.id
    logger.info(
        "[%s] Starting ingestion: tenant=%s, document_id=%s, file=%s",
        task_id, tenant_id, document_id, file_path,
    )

    request = IngestionRequest(
        tenant_id=tenant_id,
        source=FileSource(path=file_path),
        filename=filename,
        metadata=metadata or {},
        options=build_options(options),
        document_id=uuid.UUID(document_id),
    )

    try:
        result = build_coordinator().ingest(request)
    finally:
        if delete_after:
            Path(file_path).unlink(missing_ok=True)

    summary = result.to_dict()
    logger.info(
        "[%s] Ingestion finished: success=%s, chunks=%d, item_errors=%d",
        task_id, result.success, result.chunk_count, len(result.errors),
    )
    return summary
