# =============================================================================
# Query API — Retrieval + Grounded Answer
# =============================================================================
#
# POST /query runs the retrieval graph (docrag/rag/retriever.py) for the
# caller's tenant and maps the RetrievalResult onto the response model.
#
# Status codes:
#   200 — success, including degraded (substring fallback) results and
#         answers whose generation failed (chunks returned verbatim)
#   409 — query embedding not comparable with the stored embeddings
#   502 — query embedding failed
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from docrag.api.deps import check_scope, get_current_api_key, get_retrieval_engine, get_tenant_id
from docrag.db.models import ApiKey
from docrag.errors import status_code_for
from docrag.models.requests import QueryRequest
from docrag.models.responses import (
    GenerationResponse,
    QueryResponse,
    RetrievedChunkResponse,
    SourceResponse,
)
from docrag.rag.retriever import RetrievalEngine
from docrag.rag.schemas import RetrievalRequest, RetrievalResult

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Query"])


@router.post(
    "/query",
    response_model=QueryResponse,
    summary="Search your documents and get a grounded answer",
    description=(
        "Embeds the query, finds the most similar chunks among the tenant's "
        "documents and, unless generate_response=false, synthesizes an answer "
        "citing them as [Source N]."
    ),
)
async def query_documents(
    request: QueryRequest,
    api_key: ApiKey | None = Depends(get_current_api_key),
    tenant_id: str = Depends(get_tenant_id),
    engine: RetrievalEngine = Depends(get_retrieval_engine),
):
    check_scope(api_key, "query")

    result = await engine.retrieve(
        RetrievalRequest(
            tenant_id=tenant_id,
            query=request.query,
            document_ids=request.document_ids,
            limit=request.limit,
            threshold=request.threshold,
            response_style=request.response_style,
            include_citations=request.include_citations,
            generate_response=request.generate_response,
            embedding_model=request.embedding_model,
        )
    )

    body = to_query_response(result)
    if result.success:
        return body
    return JSONResponse(
        status_code=status_code_for(result.error["type"]),
        content=body.model_dump(mode="json"),
    )


def to_query_response(result: RetrievalResult) -> QueryResponse:
    generation = None
    if result.generation is not None:
        generation = GenerationResponse(
            model=result.generation.model,
            input_tokens=result.generation.input_tokens,
            output_tokens=result.generation.output_tokens,
            generation_failed=result.generation.generation_failed,
            error=result.generation.error,
        )

    return QueryResponse(
        success=result.success,
        query=result.query,
        chunks=[
            RetrievedChunkResponse(
                id=chunk.chunk_id,
                content=chunk.content,
                similarity=chunk.similarity,
                metadata=chunk.metadata,
                source=SourceResponse(
                    document_id=chunk.source.document_id,
                    document_name=chunk.source.document_name,
                    source_index=chunk.source.source_index,
                ) if chunk.source else None,
            )
            for chunk in result.chunks
        ],
        count=result.count,
        response=result.response,
        degraded=result.degraded,
        fallback_reason=result.fallback_reason,
        message=result.message,
        documents_searched=result.documents_searched,
        search_parameters=result.search_parameters,
        generation=generation,
        error=result.error,
    )
