# =============================================================================
# Pipeline Errors — Typed Failures With Structured Payloads
# =============================================================================
#
# Every failure the pipeline can report is a PipelineError subclass with a
# stable `error_type` string. Services raise them; the ingestion coordinator
# and retrieval engine convert them into `{"type", "message", "details"}`
# objects on their result contracts, and the FastAPI exception handler in
# docrag/main.py renders any that escape a route handler.
#
# Two kinds of failure exist:
#   - Whole-document / whole-request: abort and surface `success=false`
#     (ValidationError, ExtractionError, ChunkingError, EmbeddingMismatchError)
#   - Per-item: accumulated and returned next to the successes
#     (EmbeddingError per batch, StorageError per sub-batch)
# =============================================================================

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class for all docrag pipeline failures."""

    error_type = "pipeline_error"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_error_info(self) -> dict[str, Any]:
        """Structured form used in result contracts and HTTP bodies."""
        return {
            "type": self.error_type,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(PipelineError):
    """Input rejected before any document row exists."""

    error_type = "validation_error"
    status_code = 400


class ExtractionError(PipelineError):
    """Content could not be turned into usable text."""

    error_type = "extraction_error"
    status_code = 422


class ChunkingError(PipelineError):
    """Text produced zero chunks, or chunking options are invalid."""

    error_type = "chunking_error"
    status_code = 422


class EmbeddingError(PipelineError):
    """An embedding batch failed after exhausting its retries."""

    error_type = "embedding_error"
    status_code = 502


class StorageError(PipelineError):
    """A write to the document store failed."""

    error_type = "storage_error"
    status_code = 500


class InvalidStatusTransition(StorageError):
    """A status write would move a document backwards."""

    error_type = "invalid_status_transition"
    status_code = 409


class DocumentNotFound(StorageError):
    """No document with this id exists for the requesting tenant."""

    error_type = "document_not_found"
    status_code = 404


class SimilaritySearchUnavailable(PipelineError):
    """Vector search cannot run; callers fall back to substring matching."""

    error_type = "similarity_search_unavailable"
    status_code = 503


class RetrievalDegraded(PipelineError):
    """
    Warning condition: results came from the fallback search path.

    Never raised across the retrieval boundary. Recorded on the result so
    clients can tell nominal fallback scores from real similarities.
    """

    error_type = "retrieval_degraded"
    status_code = 200


class EmbeddingMismatchError(PipelineError):
    """Query embedding and stored chunk embeddings are not comparable."""

    error_type = "embedding_mismatch"
    status_code = 409


class GenerationError(PipelineError):
    """The text-generation provider failed to produce an answer."""

    error_type = "generation_error"
    status_code = 502


def status_code_for(error_type: str) -> int:
    """HTTP status for a structured error's `type`. Unknown types → 500."""
    pending: list[type[PipelineError]] = [PipelineError]
    while pending:
        cls = pending.pop()
        if cls.error_type == error_type:
            return cls.status_code
        pending.extend(cls.__subclasses__())
    return PipelineError.status_code
