# =============================================================================
# Retrieval Engine — LangGraph Query Pipeline
# =============================================================================
#
# GRAPH STRUCTURE:
#
#   START → embed_query → check_compatibility → search → filter_hits
#                                                            ↓
#                                                     attach_sources
#                                                            ↓
#                                          ┌─────────────────┼──────────────┐
#                                          ↓                 ↓              ↓
#                                     no_content        synthesize         END
#                                          ↓                 ↓     (generate_response
#                                         END               END        = false)
#
#   Any node that sets `error` short-circuits to END.
#
# DEGRADED MODE: When similarity search raises SimilaritySearchUnavailable
# the search node falls back to a case-insensitive substring match over the
# tenant's chunks. Fallback hits carry a fixed nominal score
# (settings.fallback_similarity_score) because there is no real similarity
# to report, the threshold is not applied to them, and the result is
# flagged `degraded=True` with the reason. The request still succeeds.
#
# TENANCY: The repository filters every query by tenant. filter_hits checks
# again and attach_sources only resolves documents the tenant owns, so a
# chunk from another tenant cannot reach the synthesizer even if a lower
# layer misbehaves.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from docrag.config import settings
from docrag.errors import (
    EmbeddingError,
    EmbeddingMismatchError,
    GenerationError,
    PipelineError,
    RetrievalDegraded,
    SimilaritySearchUnavailable,
)
from docrag.rag.schemas import (
    ChunkSource,
    ResponseStyle,
    RetrievalRequest,
    RetrievalResult,
    RetrievedChunk,
    SynthesisResult,
)
from docrag.rag.synthesizer import AnswerSynthesizer, fallback_answer
from docrag.services.embedder import EmbeddingBatcher, QueryEmbedding
from docrag.services.llm import get_llm_provider
from docrag.services.repository import ChunkHit, DocumentRepository

logger = logging.getLogger(__name__)

NO_CONTENT_MESSAGE = "No relevant content found in your document knowledge base."
NO_CONTENT_RESPONSE = (
    "I couldn't find any relevant information in your uploaded documents to "
    "answer that question. You might want to upload documents related to this "
    "topic or try rephrasing your question."
)


# ---------------------------------------------------------------------------
# Graph State
# ---------------------------------------------------------------------------


class RetrievalState(TypedDict, total=False):
    """
    State flowing through the graph.

    total=False: nodes return only the keys they update.
    """

    request: RetrievalRequest
    query_embedding: QueryEmbedding

    hits: list[ChunkHit]
    degraded: bool
    fallback_reason: str | None

    chunks: list[RetrievedChunk]
    message: str
    response: str | None
    generation: SynthesisResult | None

    error: dict[str, Any] | None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class RetrievalEngine:
    """Compiles the retrieval graph once and runs it per request."""

    def __init__(
        self,
        repository: DocumentRepository,
        batcher: EmbeddingBatcher,
        synthesizer: AnswerSynthesizer | None = None,
    ) -> None:
        self._repository = repository
        self._batcher = batcher
        self._synthesizer = synthesizer
        self._graph = self._build_graph()

    # -- nodes ----------------------------------------------------------------

    async def _embed_query(self, state: RetrievalState) -> dict:
        request = state["request"]
        model = request.embedding_model or settings.embedding_model
        try:
            embedding = await asyncio.to_thread(
                self._batcher.embed_query, request.query, model,
            )
        except EmbeddingError as exc:
            logger.error("Query embedding failed: %s", exc)
            return {"error": exc.to_error_info()}
        return {"query_embedding": embedding}

    async def _check_compatibility(self, state: RetrievalState) -> dict:
        request = state["request"]
        embedding = state["query_embedding"]
        try:
            profiles = await self._repository.embedding_profiles(
                request.tenant_id, request.document_ids,
            )
        except PipelineError as exc:
            return {"error": exc.to_error_info()}

        for profile in profiles:
            model_differs = profile.model is not None and profile.model != embedding.model
            dims_differ = (
                profile.dimensions is not None
                and profile.dimensions != embedding.dimensions
            )
            if model_differs or dims_differ:
                error = EmbeddingMismatchError(
                    "Query embedding is not comparable with stored chunks.",
                    {
                        "query_model": embedding.model,
                        "query_dimensions": embedding.dimensions,
                        "stored_model": profile.model,
                        "stored_dimensions": profile.dimensions,
                    },
                )
                logger.warning("%s %s", error.message, error.details)
                return {"error": error.to_error_info()}
        return {}

    async def _search(self, state: RetrievalState) -> dict:
        request = state["request"]
        try:
            hits = await self._repository.search_similar(
                request.tenant_id,
                state["query_embedding"].vector,
                limit=request.limit,
                threshold=request.threshold,
                document_ids=request.document_ids,
            )
            return {"hits": hits, "degraded": False, "fallback_reason": None}
        except SimilaritySearchUnavailable as exc:
            warning = RetrievalDegraded(
                f"Similarity search unavailable; used substring fallback: {exc.message}",
            )
            logger.warning(warning.message)

        try:
            hits = await self._repository.search_substring(
                request.tenant_id,
                request.query,
                limit=request.limit,
                document_ids=request.document_ids,
            )
        except PipelineError as exc:
            return {"error": exc.to_error_info()}
        return {"hits": hits, "degraded": True, "fallback_reason": warning.message}

    async def _filter_hits(self, state: RetrievalState) -> dict:
        request = state["request"]
        allowed = set(request.document_ids) if request.document_ids else None
        kept: list[ChunkHit] = []
        for hit in state.get("hits", []):
            if hit.tenant_id != request.tenant_id:
                logger.error(
                    "Dropping chunk %s: tenant %s != requester %s",
                    hit.chunk_id, hit.tenant_id, request.tenant_id,
                )
                continue
            if allowed is not None and hit.document_id not in allowed:
                continue
            kept.append(hit)
        return {"hits": kept}

    async def _attach_sources(self, state: RetrievalState) -> dict:
        request = state["request"]
        hits = state.get("hits", [])
        document_ids = list(dict.fromkeys(hit.document_id for hit in hits))
        try:
            documents = await self._repository.get_documents(request.tenant_id, document_ids)
        except PipelineError as exc:
            return {"error": exc.to_error_info()}

        # Stable: equal scores keep repository order.
        ranked = sorted(
            (hit for hit in hits if hit.document_id in documents),
            key=lambda hit: hit.similarity,
            reverse=True,
        )[: request.limit]

        chunks = [
            RetrievedChunk(
                chunk_id=hit.chunk_id,
                document_id=hit.document_id,
                content=hit.content,
                chunk_index=hit.chunk_index,
                similarity=hit.similarity,
                metadata=hit.metadata,
                source=ChunkSource(
                    document_id=hit.document_id,
                    document_name=documents[hit.document_id].filename,
                    source_index=i,
                ),
            )
            for i, hit in enumerate(ranked, 1)
        ]
        searched = len({c.document_id for c in chunks})
        return {
            "chunks": chunks,
            "message": f"Found {len(chunks)} relevant chunks from {searched} documents.",
        }

    async def _no_content(self, state: RetrievalState) -> dict:
        request = state["request"]
        logger.info("No content for query (tenant=%s)", request.tenant_id)
        return {
            "chunks": [],
            "message": NO_CONTENT_MESSAGE,
            "response": NO_CONTENT_RESPONSE if request.generate_response else None,
        }

    async def _synthesize(self, state: RetrievalState) -> dict:
        request = state["request"]
        chunks = state["chunks"]
        synthesizer = self._synthesizer
        if synthesizer is None:
            try:
                synthesizer = AnswerSynthesizer(get_llm_provider())
            except ValueError as exc:
                logger.error("No LLM provider available: %s", exc)
                generation = SynthesisResult(
                    answer=fallback_answer(chunks),
                    model="n/a",
                    generation_failed=True,
                    error=GenerationError(str(exc)).to_error_info(),
                )
                return {"generation": generation, "response": generation.answer}

        generation = await synthesizer.synthesize(
            request.query,
            chunks,
            style=request.response_style,
            include_citations=request.include_citations,
        )
        return {"generation": generation, "response": generation.answer}

    # -- routing --------------------------------------------------------------

    @staticmethod
    def _continue_or_end(next_node: str):
        def route(state: RetrievalState) -> str:
            return END if state.get("error") else next_node
        return route

    @staticmethod
    def _route_after_sources(state: RetrievalState) -> str:
        if state.get("error"):
            return END
        if not state.get("chunks"):
            return "no_content"
        if state["request"].generate_response:
            return "synthesize"
        return END

    def _build_graph(self):
        builder = StateGraph(RetrievalState)
        builder.add_node("embed_query", self._embed_query)
        builder.add_node("check_compatibility", self._check_compatibility)
        builder.add_node("search", self._search)
        builder.add_node("filter_hits", self._filter_hits)
        builder.add_node("attach_sources", self._attach_sources)
        builder.add_node("no_content", self._no_content)
        builder.add_node("synthesize", self._synthesize)

        builder.add_edge(START, "embed_query")
        builder.add_conditional_edges(
            "embed_query", self._continue_or_end("check_compatibility"),
        )
        builder.add_conditional_edges(
            "check_compatibility", self._continue_or_end("search"),
        )
        builder.add_conditional_edges("search", self._continue_or_end("filter_hits"))
        builder.add_edge("filter_hits", "attach_sources")
        builder.add_conditional_edges("attach_sources", self._route_after_sources)
        builder.add_edge("no_content", END)
        builder.add_edge("synthesize", END)
        return builder.compile()

    # -- entry point ----------------------------------------------------------

    async def retrieve(self, request: RetrievalRequest) -> RetrievalResult:
        """
        Run one query through the graph.

        Never raises for pipeline failures: they come back as
        success=False with a structured `error`.
        """
        request.response_style = ResponseStyle(request.response_style)
        search_parameters = {
            "limit": request.limit,
            "threshold": request.threshold,
            "document_ids": [str(d) for d in request.document_ids or []],
            "response_style": request.response_style.value,
            "include_citations": request.include_citations,
            "generate_response": request.generate_response,
            "embedding_model": request.embedding_model or settings.embedding_model,
        }

        logger.info(
            "Retrieval: tenant=%s, query='%s', limit=%d, threshold=%.2f",
            request.tenant_id, request.query[:80], request.limit, request.threshold,
        )
        state = await self._graph.ainvoke({"request": request})

        if state.get("error"):
            return RetrievalResult(
                success=False,
                query=request.query,
                error=state["error"],
                message=state["error"]["message"],
                search_parameters=search_parameters,
            )

        chunks = state.get("chunks", [])
        result = RetrievalResult(
            success=True,
            query=request.query,
            chunks=chunks,
            response=state.get("response"),
            degraded=state.get("degraded", False),
            fallback_reason=state.get("fallback_reason"),
            message=state.get("message", ""),
            documents_searched=len({c.document_id for c in chunks}),
            search_parameters=search_parameters,
            generation=state.get("generation"),
        )
        logger.info(
            "Retrieval complete: %d chunks, degraded=%s, generated=%s",
            result.count, result.degraded, result.generation is not None,
        )
        return result
