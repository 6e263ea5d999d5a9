# =============================================================================
# Embedding Service — Batched Vector Generation With Bounded Retry
# =============================================================================
#
# Two layers:
#
#   EmbeddingProvider (Protocol)     one API call: texts in, vectors out
#   └── OpenAIEmbeddingProvider      OpenAI SDK, any OpenAI-compatible base_url
#
#   EmbeddingBatcher                 splits chunks into batches, retries each
#                                    batch, records per-chunk failures
#
# DESIGN DECISION: Retry lives here, per batch, not at the Celery task level.
# The ingestion task never retries (a failed document needs a fresh upload),
# so transient provider errors are absorbed by up to N attempts with
# exponential backoff (tenacity). A batch that still fails is recorded in
# `errors` and the remaining batches run anyway.
#
# Batches run sequentially to stay under provider rate limits.
#
# TOKEN LIMITS:
# Chunk sizes are characters, so a dense chunk can exceed the model's input
# limit (8,191 tokens for text-embedding-3-*). The OpenAI provider truncates
# with tiktoken before sending rather than failing the whole batch.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from tenacity import (
    Retrying,
    before_sleep_log,
    stop_after_attempt,
    wait_exponential,
)

from docrag.config import settings
from docrag.errors import EmbeddingError
from docrag.services.chunker import TextChunk

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class EmbeddedChunk:
    """A chunk plus its vector and the model that produced it."""

    chunk_id: str
    content: str
    index: int
    vector: list[float]
    model: str
    dimensions: int
    metadata: dict = field(default_factory=dict)


@dataclass
class EmbeddingFailure:
    chunk_id: str
    message: str


@dataclass
class EmbeddingBatchResult:
    embeddings: list[EmbeddedChunk] = field(default_factory=list)
    errors: list[EmbeddingFailure] = field(default_factory=list)


@dataclass
class QueryEmbedding:
    vector: list[float]
    model: str
    dimensions: int


# ---------------------------------------------------------------------------
# Provider Protocol
# ---------------------------------------------------------------------------


class EmbeddingProvider(Protocol):
    """
    One embeddings API call.

    Must return exactly one vector per input text, in input order.
    Raising any exception marks the call as failed (and retryable).
    """

    def embed_texts(self, texts: Sequence[str], model: str) -> list[list[float]]:
        ...


class OpenAIEmbeddingProvider:
    """
    OpenAI SDK embedding provider.

    API key resolution order:
      1. explicit api_key argument
      2. OPENAI_API_KEY
      3. LLM_API_KEY (one shared key for LLM + embeddings)
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
    ) -> None:
        from openai import OpenAI

        resolved_key = api_key or settings.openai_api_key or settings.llm_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for embeddings. "
                "Set OPENAI_API_KEY or LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        resolved_base_url = base_url or settings.embedding_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        # SDK-level retries off: the batcher owns the retry policy.
        self._client = OpenAI(max_retries=0, **client_kwargs)
        self._encodings: dict = {}

        logger.info(
            "Initialized embedding client (base_url=%s)",
            resolved_base_url or "https://api.openai.com/v1",
        )

    def _truncate(self, text: str, model: str) -> str:
        import tiktoken

        encoding = self._encodings.get(model)
        if encoding is None:
            try:
                encoding = tiktoken.encoding_for_model(model)
            except KeyError:
                encoding = tiktoken.get_encoding("cl100k_base")
            self._encodings[model] = encoding

        tokens = encoding.encode(text)
        if len(tokens) <= settings.embedding_max_input_tokens:
            return text
        logger.warning(
            "Truncating embedding input from %d to %d tokens",
            len(tokens), settings.embedding_max_input_tokens,
        )
        return encoding.decode(tokens[: settings.embedding_max_input_tokens])

    def embed_texts(self, texts: Sequence[str], model: str) -> list[list[float]]:
        inputs = [self._truncate(t, model) for t in texts]
        request: dict = {"model": model, "input": inputs}
        # ada-002 rejects the dimensions parameter; the v3 family honours it.
        if model.startswith("text-embedding-3"):
            request["dimensions"] = settings.embedding_dimensions
        response = self._client.embeddings.create(**request)

        # Order by response index so vectors line up with inputs.
        ordered = sorted(response.data, key=lambda item: item.index)
        logger.debug(
            "Embedded %d texts, %d prompt tokens",
            len(inputs),
            response.usage.prompt_tokens if response.usage else 0,
        )
        return [item.embedding for item in ordered]


_provider: OpenAIEmbeddingProvider | None = None


def get_embedding_provider() -> OpenAIEmbeddingProvider:
    """Lazy singleton. The SDK client pools connections and is thread-safe."""
    global _provider
    if _provider is None:
        _provider = OpenAIEmbeddingProvider()
    return _provider


# ---------------------------------------------------------------------------
# Batcher
# ---------------------------------------------------------------------------


class EmbeddingBatcher:
    """Embeds chunks batch by batch with per-batch bounded retry."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        max_attempts: int | None = None,
        min_wait: float | None = None,
        max_wait: float | None = None,
    ) -> None:
        self._provider = provider
        self._max_attempts = max_attempts or settings.embedding_max_attempts
        self._min_wait = settings.embedding_retry_min_wait if min_wait is None else min_wait
        self._max_wait = settings.embedding_retry_max_wait if max_wait is None else max_wait

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=1, min=self._min_wait, max=self._max_wait),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def _call_provider(self, texts: list[str], model: str) -> list[list[float]]:
        vectors = self._provider.embed_texts(texts, model)
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Provider returned {len(vectors)} vectors for {len(texts)} inputs."
            )
        dimensions = {len(v) for v in vectors}
        if len(dimensions) > 1:
            raise EmbeddingError(
                f"Provider returned mixed dimensions {sorted(dimensions)}."
            )
        return vectors

    def embed(
        self,
        chunks: Sequence[TextChunk],
        model: str | None = None,
        batch_size: int | None = None,
    ) -> EmbeddingBatchResult:
        """
        Embed chunks in sequential batches.

        A batch that fails every attempt contributes one EmbeddingFailure per
        chunk and no embeddings; later batches still run.

        Returns:
            EmbeddingBatchResult with successes in chunk order plus failures.
        """
        _model = model or settings.embedding_model
        _batch_size = batch_size or settings.embedding_batch_size
        if _batch_size <= 0:
            raise EmbeddingError("batch_size must be positive.", {"batch_size": _batch_size})

        result = EmbeddingBatchResult()
        total_batches = (len(chunks) + _batch_size - 1) // _batch_size

        for batch_number, start in enumerate(range(0, len(chunks), _batch_size), 1):
            batch = list(chunks[start : start + _batch_size])
            texts = [c.content for c in batch]
            logger.info(
                "Embedding batch %d/%d (%d chunks, model=%s)",
                batch_number, total_batches, len(batch), _model,
            )

            try:
                vectors = self._retrying()(self._call_provider, texts, _model)
            except Exception as exc:
                logger.error(
                    "Embedding batch %d/%d failed after %d attempts: %s",
                    batch_number, total_batches, self._max_attempts, exc,
                )
                result.errors.extend(
                    EmbeddingFailure(chunk_id=c.id, message=str(exc)) for c in batch
                )
                continue

            for chunk, vector in zip(batch, vectors, strict=True):
                result.embeddings.append(EmbeddedChunk(
                    chunk_id=chunk.id,
                    content=chunk.content,
                    index=chunk.index,
                    vector=vector,
                    model=_model,
                    dimensions=len(vector),
                    metadata={
                        **chunk.metadata,
                        "embedding_model": _model,
                        "dimensions": len(vector),
                    },
                ))

        logger.info(
            "Embedding complete: %d embedded, %d failed (model=%s)",
            len(result.embeddings), len(result.errors), _model,
        )
        return result

    def embed_query(self, text: str, model: str | None = None) -> QueryEmbedding:
        """
        Embed a single query string.

        Raises:
            EmbeddingError: The provider failed on every attempt.
        """
        _model = model or settings.embedding_model
        try:
            vectors = self._retrying()(self._call_provider, [text], _model)
        except EmbeddingError:
            raise
        except Exception as exc:
            raise EmbeddingError(f"Query embedding failed: {exc}") from exc
        vector = vectors[0]
        return QueryEmbedding(vector=vector, model=_model, dimensions=len(vector))
