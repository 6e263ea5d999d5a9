# =============================================================================
# RAG Data Structures
# =============================================================================
#
# Shared by the retrieval graph and the synthesizer. Kept as dataclasses
# (not Pydantic) because they never cross the HTTP boundary directly; the
# API layer maps them onto docrag/models/responses.py.
# =============================================================================

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from typing import Any


class ResponseStyle(str, enum.Enum):
    CONCISE = "concise"
    DETAILED = "detailed"
    ACADEMIC = "academic"
    CONVERSATIONAL = "conversational"


@dataclass
class ChunkSource:
    document_id: uuid.UUID
    document_name: str
    source_index: int  # 1-based, matches "[Source N]" in the answer


@dataclass
class RetrievedChunk:
    chunk_id: uuid.UUID
    document_id: uuid.UUID
    content: str
    chunk_index: int
    similarity: float
    metadata: dict = field(default_factory=dict)
    source: ChunkSource | None = None


@dataclass
class RetrievalRequest:
    tenant_id: str
    query: str
    document_ids: list[uuid.UUID] | None = None
    limit: int = 5
    threshold: float = 0.25
    response_style: ResponseStyle = ResponseStyle.DETAILED
    include_citations: bool = True
    generate_response: bool = True
    embedding_model: str | None = None


@dataclass
class SynthesisResult:
    answer: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    generation_failed: bool = False
    error: dict[str, Any] | None = None


@dataclass
class RetrievalResult:
    success: bool
    query: str
    chunks: list[RetrievedChunk] = field(default_factory=list)
    response: str | None = None
    degraded: bool = False
    fallback_reason: str | None = None
    message: str = ""
    documents_searched: int = 0
    search_parameters: dict[str, Any] = field(default_factory=dict)
    generation: SynthesisResult | None = None
    error: dict[str, Any] | None = None

    @property
    def count(self) -> int:
        return len(self.chunks)
