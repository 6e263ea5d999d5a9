# =============================================================================
# Unit Tests — Retrieval Engine
# =============================================================================
#
# Runs the LangGraph retrieval pipeline against the in-memory repository.
# Chunk and query vectors are pinned so similarity scores are exact:
#
#   _vec(1, 0) · _vec(1, 0) = 1.0
#   _vec(1, 0) · _vec(1, 1) = 0.7071
#   _vec(1, 0) · _vec(0, 1) = 0.0
# =============================================================================

import asyncio
import uuid
from unittest.mock import AsyncMock, patch

from docrag.rag.retriever import NO_CONTENT_MESSAGE, NO_CONTENT_RESPONSE, RetrievalEngine
from docrag.rag.schemas import ResponseStyle, RetrievalRequest
from docrag.rag.synthesizer import GENERATION_FAILED_NOTE, AnswerSynthesizer
from docrag.services.embedder import EmbeddingBatcher
from docrag.services.repository import ChunkHit
from tests.fakes import FakeEmbedder, FakeLLM

QUERY = "how far do bees forage"


def _run(coro):
    return asyncio.run(coro)


def _vec(*head: float) -> list[float]:
    return list(head) + [0.0] * (16 - len(head))


def _engine(repository, llm=None, embedder=None) -> RetrievalEngine:
    embedder = embedder or FakeEmbedder(overrides={QUERY: _vec(1, 0)})
    batcher = EmbeddingBatcher(embedder, max_attempts=1, min_wait=0, max_wait=0)
    return RetrievalEngine(repository, batcher, AnswerSynthesizer(llm or FakeLLM()))


def _request(**kwargs) -> RetrievalRequest:
    kwargs.setdefault("tenant_id", "acme")
    kwargs.setdefault("query", QUERY)
    return RetrievalRequest(**kwargs)


def _seed(repository):
    """Two acme documents and one foreign document with a perfect match."""
    forage = repository.add_document("acme", "forage.pdf")
    hives = repository.add_document("acme", "hives.pdf")
    other = repository.add_document("other-tenant", "secret.pdf")
    repository.add_chunk("acme", forage, "Bees forage up to five km.", _vec(1, 0))
    repository.add_chunk("acme", hives, "Hives need inspection and forage.", _vec(1, 1))
    repository.add_chunk("acme", hives, "Varroa mites spread in autumn.", _vec(0, 1))
    repository.add_chunk("other-tenant", other, "Secret bees forage notes.", _vec(1, 0))
    return forage, hives, other


class TestRanking:
    """Search, threshold and source attribution."""

    def test_chunks_ranked_by_similarity(self, repository):
        forage, hives, _ = _seed(repository)
        result = _run(_engine(repository).retrieve(_request()))

        assert result.success is True
        assert [c.content for c in result.chunks] == [
            "Bees forage up to five km.",
            "Hives need inspection and forage.",
        ]
        assert [c.similarity for c in result.chunks] == [1.0, 0.7071]
        assert [c.document_id for c in result.chunks] == [forage, hives]

    def test_sources_are_numbered_from_one(self, repository):
        _seed(repository)
        result = _run(_engine(repository).retrieve(_request()))

        assert [c.source.source_index for c in result.chunks] == [1, 2]
        assert [c.source.document_name for c in result.chunks] == ["forage.pdf", "hives.pdf"]
        assert result.documents_searched == 2
        assert result.message == "Found 2 relevant chunks from 2 documents."

    def test_limit_is_respected(self, repository):
        _seed(repository)
        result = _run(_engine(repository).retrieve(_request(limit=1)))
        assert result.count == 1
        assert result.chunks[0].similarity == 1.0

    def test_document_filter(self, repository):
        _, hives, _ = _seed(repository)
        result = _run(_engine(repository).retrieve(_request(document_ids=[hives])))
        assert {c.document_id for c in result.chunks} == {hives}

    def test_search_parameters_echoed(self, repository):
        _seed(repository)
        result = _run(_engine(repository).retrieve(
            _request(limit=3, threshold=0.5, response_style="concise"),
        ))
        params = result.search_parameters
        assert params["limit"] == 3
        assert params["threshold"] == 0.5
        assert params["response_style"] == "concise"
        assert params["document_ids"] == []


class TestTenantIsolation:
    def test_other_tenant_chunks_never_returned(self, repository):
        _, _, other = _seed(repository)
        result = _run(_engine(repository).retrieve(_request()))
        assert other not in {c.document_id for c in result.chunks}
        assert all("Secret" not in c.content for c in result.chunks)

    def test_other_tenant_sees_only_its_own(self, repository):
        _, _, other = _seed(repository)
        result = _run(_engine(repository).retrieve(_request(tenant_id="other-tenant")))
        assert [c.document_id for c in result.chunks] == [other]

    def test_foreign_hit_from_lower_layer_is_dropped(self, repository):
        _seed(repository)
        leaked = ChunkHit(
            chunk_id=uuid.uuid4(),
            document_id=uuid.uuid4(),
            tenant_id="other-tenant",
            content="Leaked content.",
            chunk_index=0,
            similarity=0.99,
            metadata={},
        )
        llm = FakeLLM()
        with patch.object(repository, "search_similar", AsyncMock(return_value=[leaked])):
            result = _run(_engine(repository, llm).retrieve(_request()))

        assert result.chunks == []
        assert llm.calls == []


class TestNoContent:
    def test_nothing_above_threshold(self, repository):
        _, hives, _ = _seed(repository)
        llm = FakeLLM()
        result = _run(_engine(repository, llm).retrieve(
            _request(threshold=0.9, document_ids=[hives]),
        ))
        assert result.success is True
        assert result.chunks == []
        assert result.message == NO_CONTENT_MESSAGE
        assert result.response == NO_CONTENT_RESPONSE
        assert llm.calls == []

    def test_empty_knowledge_base(self, repository):
        llm = FakeLLM()
        result = _run(_engine(repository, llm).retrieve(_request()))
        assert result.success is True
        assert result.count == 0
        assert llm.calls == []

    def test_no_canned_response_when_generation_off(self, repository):
        result = _run(_engine(repository).retrieve(_request(generate_response=False)))
        assert result.response is None
        assert result.message == NO_CONTENT_MESSAGE


class TestGeneration:
    def test_answer_from_llm(self, repository):
        _seed(repository)
        llm = FakeLLM(answer="Up to five km [Source 1].")
        result = _run(_engine(repository, llm).retrieve(_request()))

        assert result.response == "Up to five km [Source 1]."
        assert result.generation.model == "fake-llm"
        assert result.generation.generation_failed is False
        assert len(llm.calls) == 1
        user_message = llm.calls[0]["messages"][0]["content"]
        assert "[Source 1] (forage.pdf):\nBees forage up to five km." in user_message

    def test_style_reaches_the_prompt(self, repository):
        _seed(repository)
        llm = FakeLLM()
        _run(_engine(repository, llm).retrieve(
            _request(response_style=ResponseStyle.CONCISE, include_citations=False),
        ))
        system = llm.calls[0]["system"]
        assert "brief, to-the-point" in system
        assert "Do not include source citations" in system

    def test_generation_off_returns_chunks_only(self, repository):
        _seed(repository)
        llm = FakeLLM()
        result = _run(_engine(repository, llm).retrieve(_request(generate_response=False)))
        assert result.count == 2
        assert result.response is None
        assert result.generation is None
        assert llm.calls == []

    def test_llm_failure_returns_chunks_verbatim(self, repository):
        _seed(repository)
        result = _run(_engine(repository, FakeLLM(fail=True)).retrieve(_request()))

        assert result.success is True
        assert result.count == 2
        assert result.generation.generation_failed is True
        assert result.generation.error["type"] == "generation_error"
        assert result.response.startswith(GENERATION_FAILED_NOTE)
        assert "Bees forage up to five km." in result.response

    def test_missing_llm_provider(self, repository):
        _seed(repository)
        batcher = EmbeddingBatcher(
            FakeEmbedder(overrides={QUERY: _vec(1, 0)}), max_attempts=1, min_wait=0, max_wait=0,
        )
        engine = RetrievalEngine(repository, batcher)
        with patch(
            "docrag.rag.retriever.get_llm_provider",
            side_effect=ValueError("No LLM API key configured"),
        ):
            result = _run(engine.retrieve(_request()))

        assert result.success is True
        assert result.generation.generation_failed is True
        assert result.response.startswith(GENERATION_FAILED_NOTE)


class TestDegradedMode:
    """Substring fallback when vector search is unavailable."""

    def test_substring_fallback(self, repository):
        _seed(repository)
        repository.similarity_unavailable = True
        result = _run(_engine(repository).retrieve(_request(query="forage", threshold=0.99)))

        assert result.success is True
        assert result.degraded is True
        assert "substring fallback" in result.fallback_reason
        assert sorted(c.content for c in result.chunks) == [
            "Bees forage up to five km.",
            "Hives need inspection and forage.",
        ]
        assert {c.similarity for c in result.chunks} == {0.8}

    def test_fallback_stays_tenant_scoped(self, repository):
        _seed(repository)
        repository.similarity_unavailable = True
        result = _run(_engine(repository).retrieve(_request(query="secret")))
        assert result.chunks == []

    def test_normal_search_is_not_degraded(self, repository):
        _seed(repository)
        result = _run(_engine(repository).retrieve(_request()))
        assert result.degraded is False
        assert result.fallback_reason is None


class TestFailures:
    def test_query_embedding_failure(self, repository):
        _seed(repository)
        llm = FakeLLM()
        engine = _engine(repository, llm, embedder=FakeEmbedder(fail_calls={1}))
        result = _run(engine.retrieve(_request()))

        assert result.success is False
        assert result.error["type"] == "embedding_error"
        assert result.chunks == []
        assert llm.calls == []

    def test_model_mismatch(self, repository):
        doc = repository.add_document("acme", "old.pdf")
        repository.add_chunk("acme", doc, "Bees forage.", _vec(1, 0), model="legacy-embed")
        result = _run(_engine(repository).retrieve(_request()))

        assert result.success is False
        assert result.error["type"] == "embedding_mismatch"
        assert result.error["details"]["stored_model"] == "legacy-embed"

    def test_dimension_mismatch(self, repository):
        doc = repository.add_document("acme", "short.pdf")
        repository.add_chunk("acme", doc, "Bees forage.", [1.0] * 8)
        result = _run(_engine(repository).retrieve(_request()))

        assert result.error["type"] == "embedding_mismatch"
        assert result.error["details"]["stored_dimensions"] == 8
        assert result.error["details"]["query_dimensions"] == 16

    def test_mismatch_outside_filter_is_ignored(self, repository):
        forage, _, _ = _seed(repository)
        legacy = repository.add_document("acme", "old.pdf")
        repository.add_chunk("acme", legacy, "Bees forage.", _vec(1, 0), model="legacy-embed")
        result = _run(_engine(repository).retrieve(_request(document_ids=[forage])))
        assert result.success is True
