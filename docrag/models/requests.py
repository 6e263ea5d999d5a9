# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data coming INTO the API. FastAPI uses them for body validation
# (422 on bad input) and for the OpenAPI docs at /docs.
# =============================================================================

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from docrag.config import settings
from docrag.rag.schemas import ResponseStyle
from docrag.services.chunker import ChunkStrategy


class DocumentMetadataIn(BaseModel):
    """Optional descriptive fields stored on the document row."""

    title: str | None = Field(default=None, max_length=500)
    author: str | None = Field(default=None, max_length=200)
    category: str | None = Field(default=None, max_length=100)
    tags: list[str] = Field(default_factory=list, max_length=50)


class IngestOptionsIn(BaseModel):
    """Per-request chunking / embedding overrides. Omitted = config default."""

    chunk_strategy: ChunkStrategy | None = None
    max_chunk_size: int | None = Field(default=None, ge=50, le=8000)
    overlap: int | None = Field(default=None, ge=0, le=2000)
    min_chunk_size: int | None = Field(default=None, ge=0, le=1000)
    embedding_model: str | None = None
    batch_size: int | None = Field(default=None, ge=1, le=2048)
    password: str | None = Field(
        default=None,
        description="Password for encrypted PDFs. Never stored.",
    )

    @model_validator(mode="after")
    def _sizes_are_consistent(self) -> "IngestOptionsIn":
        max_size = self.max_chunk_size or settings.chunk_max_size
        overlap = settings.chunk_overlap if self.overlap is None else self.overlap
        if overlap >= max_size:
            raise ValueError("overlap must be smaller than max_chunk_size")
        min_size = settings.chunk_min_size if self.min_chunk_size is None else self.min_chunk_size
        if min_size > max_size:
            raise ValueError("min_chunk_size must not exceed max_chunk_size")
        return self


class IngestRequest(BaseModel):
    """
    Request body for POST /documents/ingest.

    Exactly one of file_base64, compressed_base64 or file_path.
    compressed_base64 is base64(zlib(base64(pdf))), i.e. what
    `btoa(pako.deflate(base64String))` produces in a browser.

    Example:
        {
            "file_base64": "JVBERi0xLjQK...",
            "filename": "thesis.pdf",
            "metadata": {"title": "Thesis draft", "tags": ["research"]},
            "options": {"chunk_strategy": "paragraph", "max_chunk_size": 1000},
            "wait": true
        }
    """

    file_base64: str | None = None
    compressed_base64: str | None = None
    file_path: str | None = Field(
        default=None,
        description="Server-local path. Only accepted when ALLOW_FILE_PATH_INGEST is on.",
    )
    filename: str | None = Field(default=None, max_length=500)
    metadata: DocumentMetadataIn = Field(default_factory=DocumentMetadataIn)
    options: IngestOptionsIn = Field(default_factory=IngestOptionsIn)
    wait: bool = Field(
        default=False,
        description="Run ingestion inline and return the full result instead of a task id.",
    )

    @model_validator(mode="after")
    def _exactly_one_source(self) -> "IngestRequest":
        provided = [
            name for name in ("file_base64", "compressed_base64", "file_path")
            if getattr(self, name)
        ]
        if len(provided) != 1:
            raise ValueError(
                "Provide exactly one of file_base64, compressed_base64 or file_path"
            )
        return self


class QueryRequest(BaseModel):
    """
    Request body for POST /query.

    Example:
        {
            "query": "What did the study conclude about sleep?",
            "document_ids": ["2b1c..."],
            "limit": 5,
            "threshold": 0.25,
            "response_style": "concise"
        }
    """

    query: str = Field(..., min_length=1, max_length=2000)
    document_ids: list[uuid.UUID] | None = Field(
        default=None,
        description="Restrict search to these documents. Omit to search all.",
    )
    limit: int = Field(default_factory=lambda: settings.retrieval_top_k, ge=1, le=50)
    threshold: float = Field(
        default_factory=lambda: settings.retrieval_similarity_threshold,
        ge=0.0,
        le=1.0,
    )
    response_style: ResponseStyle = Field(
        default_factory=lambda: ResponseStyle(settings.default_response_style),
    )
    include_citations: bool = True
    generate_response: bool = True
    embedding_model: str | None = None

    model_config = ConfigDict(use_enum_values=False)


class CreateApiKeyRequest(BaseModel):
    """Request body for POST /admin/keys."""

    name: str = Field(..., min_length=1, max_length=200)
    tenant_id: str = Field(..., min_length=1, max_length=255)
    scopes: list[str] = Field(
        default_factory=list,
        description="Subset of ingest, query, documents, admin. Empty = all.",
    )
    rate_limit_rpm: int | None = Field(default=None, ge=1, le=100_000)
    expires_at: datetime | None = None
