# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Every pipeline-facing response carries an explicit `success` flag and
# either a payload or a structured `error` ({type, message, details}).
# Embedding vectors and key hashes never appear here.
# =============================================================================

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    service: str


class ErrorInfo(BaseModel):
    type: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorInfo


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class DocumentResponse(BaseModel):
    """Document metadata, built from a repository DocumentRecord."""

    id: uuid.UUID
    filename: str
    mime_type: str
    size_bytes: int
    page_count: int | None = None
    upload_status: str
    processing_stage: str | None = None
    processing_error: str | None = None
    chunk_count: int
    metadata: dict = Field(default_factory=dict)
    celery_task_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class DocumentListResponse(BaseModel):
    success: bool = True
    documents: list[DocumentResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class ChunkResponse(BaseModel):
    id: uuid.UUID
    chunk_index: int
    content: str
    metadata: dict = Field(default_factory=dict)
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class DocumentDetailResponse(BaseModel):
    success: bool = True
    document: DocumentResponse
    chunks: list[ChunkResponse] | None = None


class DocumentDeletedResponse(BaseModel):
    success: bool = True
    document_id: uuid.UUID
    message: str = "Document and its chunks deleted."


class UploadResponse(BaseModel):
    """
    Response for asynchronous ingestion (202).

    Poll GET /ingest/{task_id} until the task finishes.
    """

    success: bool = True
    document_id: uuid.UUID
    task_id: str
    status: str = "pending"
    message: str = "Document accepted. Ingestion in progress."


class IngestionResponse(BaseModel):
    """Full ingestion outcome (inline ingestion, or a finished task)."""

    success: bool
    document_id: uuid.UUID | None = None
    chunk_count: int = 0
    embeddings_stored: int = 0
    stage: str
    processing_summary: dict[str, Any] = Field(default_factory=dict)
    errors: list[dict[str, Any]] = Field(default_factory=list)
    error: ErrorInfo | None = None


class IngestStatusResponse(BaseModel):
    task_id: str
    status: str = Field(description="Celery state: PENDING, STARTED, SUCCESS, FAILURE")
    result: IngestionResponse | None = None
    document: DocumentResponse | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------


class SourceResponse(BaseModel):
    document_id: uuid.UUID
    document_name: str
    source_index: int


class RetrievedChunkResponse(BaseModel):
    id: uuid.UUID
    content: str
    similarity: float = Field(
        description="Cosine similarity, or the fixed fallback score when degraded",
    )
    metadata: dict = Field(default_factory=dict)
    source: SourceResponse | None = None


class GenerationResponse(BaseModel):
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    generation_failed: bool = False
    error: ErrorInfo | None = None


class QueryResponse(BaseModel):
    success: bool
    query: str
    chunks: list[RetrievedChunkResponse] = Field(default_factory=list)
    count: int = 0
    response: str | None = None
    degraded: bool = False
    fallback_reason: str | None = None
    message: str = ""
    documents_searched: int = 0
    search_parameters: dict[str, Any] = Field(default_factory=dict)
    generation: GenerationResponse | None = None
    error: ErrorInfo | None = None


# ---------------------------------------------------------------------------
# API Keys
# ---------------------------------------------------------------------------


class ApiKeyResponse(BaseModel):
    """API key details. Never includes the hash or the raw key."""

    id: int
    tenant_id: str
    name: str
    key_prefix: str
    scopes: list[str] | None = None
    rate_limit_rpm: int | None = None
    is_active: bool
    created_at: datetime
    expires_at: datetime | None = None
    last_used_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Returned once at creation; the only time raw_key is visible."""

    raw_key: str


class ApiKeyListResponse(BaseModel):
    keys: list[ApiKeyResponse]
    total: int
