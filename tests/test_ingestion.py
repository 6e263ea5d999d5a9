# =============================================================================
# Unit Tests — Ingestion Coordinator & Celery Task
# =============================================================================
#
# Runs whole documents through validate → extract → chunk → embed → store
# against the in-memory repository and the deterministic fake embedder.
# Retry waits are zero so failure paths stay fast.
# =============================================================================

import base64
import json
import uuid
from unittest.mock import patch

import pytest

from docrag.db.models import DocumentStatus
from docrag.services.embedder import EmbeddingBatcher
from docrag.services.extractor import Base64Source
from docrag.services.ingestion import (
    IngestionCoordinator,
    IngestionOptions,
    IngestionRequest,
    IngestionStage,
    can_transition,
)
from docrag.workers.tasks import build_options, ingest_document
from tests.fakes import FakeEmbedder, make_pdf

PAGES = [
    "Honey bees forage up to five kilometres from the hive.",
    "Inspect every seven to ten days during swarm season.",
]


def _source(pdf: bytes) -> Base64Source:
    return Base64Source(data=base64.b64encode(pdf).decode())


def _coordinator(repository, embedder=None, attempts: int = 1) -> IngestionCoordinator:
    batcher = EmbeddingBatcher(
        embedder or FakeEmbedder(), max_attempts=attempts, min_wait=0, max_wait=0,
    )
    return IngestionCoordinator(repository, batcher)


def _request(source, **kwargs) -> IngestionRequest:
    kwargs.setdefault("tenant_id", "acme")
    kwargs.setdefault("filename", "guide.pdf")
    return IngestionRequest(source=source, **kwargs)


class TestStageMachine:
    def test_forward_transitions(self):
        order = [
            IngestionStage.PENDING,
            IngestionStage.VALIDATING,
            IngestionStage.EXTRACTING,
            IngestionStage.CHUNKING,
            IngestionStage.EMBEDDING,
            IngestionStage.STORING,
            IngestionStage.COMPLETED,
        ]
        for current, target in zip(order, order[1:]):
            assert can_transition(current, target)

    def test_no_skipping_or_going_back(self):
        assert not can_transition(IngestionStage.EXTRACTING, IngestionStage.STORING)
        assert not can_transition(IngestionStage.EMBEDDING, IngestionStage.CHUNKING)

    def test_terminal_stages_are_final(self):
        for target in IngestionStage:
            assert not can_transition(IngestionStage.COMPLETED, target)
            assert not can_transition(IngestionStage.FAILED, target)

    def test_every_working_stage_can_fail(self):
        for stage in list(IngestionStage)[:6]:
            assert can_transition(stage, IngestionStage.FAILED)


class TestSuccessfulIngestion:
    """A clean two-page PDF all the way to COMPLETED."""

    def test_document_completes(self, repository):
        result = _coordinator(repository).ingest(_request(_source(make_pdf(PAGES))))

        assert result.success is True
        assert result.stage == IngestionStage.COMPLETED
        assert result.error is None
        doc = repository.documents[result.document_id]
        assert doc.upload_status == "completed"
        assert doc.processing_stage == "completed"
        assert doc.page_count == 2

    def test_chunk_count_matches_stored_rows(self, repository):
        result = _coordinator(repository).ingest(_request(_source(make_pdf(PAGES))))

        rows = [c for c in repository.chunks if c["document_id"] == result.document_id]
        assert result.chunk_count == len(rows) == result.embeddings_stored
        assert repository.documents[result.document_id].chunk_count == len(rows)

    def test_status_written_in_order(self, repository):
        result = _coordinator(repository).ingest(_request(_source(make_pdf(PAGES))))
        assert [s for _, s in repository.status_history] == ["processing", "completed"]
        assert all(d == result.document_id for d, _ in repository.status_history)

    def test_processing_summary(self, repository):
        options = IngestionOptions(chunk_strategy="sentence", max_chunk_size=200, overlap=20)
        result = _coordinator(repository).ingest(
            _request(_source(make_pdf(PAGES)), options=options),
        )
        summary = result.processing_summary
        assert summary["filename"] == "guide.pdf"
        assert summary["page_count"] == 2
        assert summary["chunk_strategy"] == "sentence"
        assert summary["chunks_stored"] == result.chunk_count
        assert summary["dimensions"] == 16

    def test_metadata_is_saved(self, repository):
        result = _coordinator(repository).ingest(
            _request(_source(make_pdf(PAGES)), metadata={"title": "Field Guide"}),
        )
        assert repository.documents[result.document_id].metadata == {"title": "Field Guide"}

    def test_pre_created_row_is_reused(self, repository):
        document_id = uuid.uuid4()
        repository.create_document("acme", document_id, "guide.pdf", 10)
        result = _coordinator(repository).ingest(
            _request(_source(make_pdf(PAGES)), document_id=document_id),
        )
        assert result.document_id == document_id
        assert len(repository.documents) == 1
        assert repository.documents[document_id].upload_status == "completed"

    def test_encrypted_pdf_with_password(self, repository):
        pdf = make_pdf(PAGES, password="hive")
        result = _coordinator(repository).ingest(
            _request(_source(pdf), options=IngestionOptions(password="hive")),
        )
        assert result.success is True

    def test_result_is_json_safe(self, repository):
        result = _coordinator(repository).ingest(_request(_source(make_pdf(PAGES))))
        data = json.loads(json.dumps(result.to_dict()))
        assert data["document_id"] == str(result.document_id)
        assert data["stage"] == "completed"
        assert data["success"] is True


class TestRejectedUploads:
    """Validation failures leave the database untouched."""

    def test_non_pdf_creates_no_row(self, repository):
        source = Base64Source(data=base64.b64encode(b"Hello, not a PDF").decode())
        result = _coordinator(repository).ingest(_request(source))

        assert result.success is False
        assert result.error["type"] == "validation_error"
        assert result.document_id is None
        assert result.stage == IngestionStage.FAILED
        assert repository.documents == {}

    def test_unknown_strategy_rejected(self, repository):
        options = IngestionOptions(chunk_strategy="bogus")
        result = _coordinator(repository).ingest(
            _request(_source(make_pdf(PAGES)), options=options),
        )
        assert result.error["type"] == "validation_error"
        assert "semantic" in result.error["details"]["allowed"]
        assert repository.documents == {}

    def test_bad_chunk_sizes_rejected(self, repository):
        options = IngestionOptions(max_chunk_size=100, overlap=100)
        result = _coordinator(repository).ingest(
            _request(_source(make_pdf(PAGES)), options=options),
        )
        assert result.success is False
        assert result.error["type"] == "chunking_error"
        assert repository.documents == {}

    def test_pre_created_row_is_failed(self, repository):
        document_id = uuid.uuid4()
        repository.create_document("acme", document_id, "upload.pdf", 16)
        source = Base64Source(data=base64.b64encode(b"Hello, not a PDF").decode())

        result = _coordinator(repository).ingest(_request(source, document_id=document_id))

        assert result.document_id == document_id
        doc = repository.documents[document_id]
        assert doc.upload_status == "failed"
        assert "%PDF" in doc.processing_error


class TestFailureCompensation:
    """Failures after the row exists end in FAILED with the reason recorded."""

    def test_unreadable_pdf_fails_at_extraction(self, repository):
        result = _coordinator(repository).ingest(_request(_source(make_pdf([""]))))

        assert result.success is False
        assert result.error["type"] == "extraction_error"
        assert result.processing_summary["failed_stage"] == "extracting"
        doc = repository.documents[result.document_id]
        assert doc.upload_status == "failed"
        assert doc.processing_stage == "failed"
        assert "No readable text" in doc.processing_error

    def test_every_embedding_batch_failing(self, repository):
        embedder = FakeEmbedder(fail_calls=set(range(1, 100)))
        result = _coordinator(repository, embedder).ingest(_request(_source(make_pdf(PAGES))))

        assert result.error["type"] == "embedding_error"
        assert result.processing_summary["failed_stage"] == "embedding"
        assert all(e["stage"] == "embedding" for e in result.errors)
        assert repository.documents[result.document_id].upload_status == "failed"
        assert repository.chunks == []

    def test_partial_embedding_failure_still_completes(self, repository):
        embedder = FakeEmbedder(fail_calls={1})
        options = IngestionOptions(chunk_strategy="paragraph", batch_size=1)
        result = _coordinator(repository, embedder).ingest(
            _request(_source(make_pdf(PAGES)), options=options),
        )

        assert result.success is True
        assert result.chunk_count == 1
        assert result.errors == [
            {"stage": "embedding", "chunk_id": "chunk_1", "message": result.errors[0]["message"]},
        ]
        assert repository.documents[result.document_id].chunk_count == 1

    def test_every_insert_failing(self, repository):
        repository.fail_insert_calls = {1}
        result = _coordinator(repository).ingest(_request(_source(make_pdf(PAGES))))

        assert result.error["type"] == "storage_error"
        assert result.errors[0]["stage"] == "storing"
        assert repository.documents[result.document_id].upload_status == "failed"

    def test_completed_status_write_failing(self, repository):
        repository.fail_status = {DocumentStatus.COMPLETED}
        result = _coordinator(repository).ingest(_request(_source(make_pdf(PAGES))))

        assert result.success is False
        assert result.processing_summary["failed_stage"] == "storing"
        assert repository.documents[result.document_id].upload_status == "failed"

    def test_failed_status_write_failing_is_reported(self, repository):
        repository.fail_status = {DocumentStatus.FAILED}
        result = _coordinator(repository).ingest(_request(_source(make_pdf([""]))))

        assert result.error["type"] == "extraction_error"
        assert "Could not persist failed status" in result.errors[-1]["message"]

    def test_id_owned_by_another_tenant(self, repository):
        document_id = uuid.uuid4()
        repository.create_document("other-tenant", document_id, "theirs.pdf", 10)
        result = _coordinator(repository).ingest(
            _request(_source(make_pdf(PAGES)), document_id=document_id),
        )

        assert result.error["type"] == "storage_error"
        assert result.document_id is None
        assert repository.documents[document_id].upload_status == "pending"

    def test_unexpected_error_marks_failed_and_propagates(self, repository):
        with patch.object(repository, "update_stage", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError, match="boom"):
                _coordinator(repository).ingest(_request(_source(make_pdf(PAGES))))

        (doc,) = repository.documents.values()
        assert doc.upload_status == "failed"
        assert "Unexpected error: boom" in doc.processing_error

    def test_redelivered_run_cannot_reenter_processing(self, repository):
        document_id = repository.add_document(
            "acme", "guide.pdf", status=DocumentStatus.PROCESSING,
        )
        repository.add_chunk("acme", document_id, "Left over from the first run.")

        result = _coordinator(repository).ingest(
            _request(_source(make_pdf(PAGES)), document_id=document_id),
        )

        assert result.success is False
        assert result.error["type"] == "invalid_status_transition"
        assert [c["content"] for c in repository.chunks if c["document_id"] == document_id] == [
            "Left over from the first run.",
        ]
        assert repository.documents[document_id].upload_status == "failed"


class TestBuildOptions:
    def test_defaults(self):
        opts = build_options(None)
        assert opts == IngestionOptions()

    def test_overrides_applied(self):
        opts = build_options({"chunk_strategy": "sentence", "max_chunk_size": 500})
        assert opts.chunk_strategy == "sentence"
        assert opts.max_chunk_size == 500

    def test_none_and_unknown_keys_ignored(self):
        opts = build_options({"overlap": None, "colour": "blue"})
        assert opts.overlap == IngestionOptions().overlap
        assert not hasattr(opts, "colour")


class TestIngestDocumentTask:
    """The Celery task run eagerly with the coordinator swapped for fakes."""

    def test_ingests_saved_upload_and_removes_it(self, repository, tmp_path):
        path = tmp_path / "upload.pdf"
        path.write_bytes(make_pdf(PAGES))
        document_id = uuid.uuid4()
        repository.create_document("acme", document_id, "guide.pdf", path.stat().st_size)

        with patch(
            "docrag.workers.tasks.build_coordinator",
            return_value=_coordinator(repository),
        ):
            outcome = ingest_document.apply(kwargs={
                "tenant_id": "acme",
                "document_id": str(document_id),
                "file_path": str(path),
                "filename": "guide.pdf",
                "options": {"chunk_strategy": "paragraph"},
            })

        result = outcome.get()
        assert result["success"] is True
        assert result["document_id"] == str(document_id)
        assert repository.documents[document_id].upload_status == "completed"
        assert not path.exists()

    def test_missing_upload_fails_the_document(self, repository, tmp_path):
        document_id = uuid.uuid4()
        repository.create_document("acme", document_id, "gone.pdf", 10)

        with patch(
            "docrag.workers.tasks.build_coordinator",
            return_value=_coordinator(repository),
        ):
            outcome = ingest_document.apply(kwargs={
                "tenant_id": "acme",
                "document_id": str(document_id),
                "file_path": str(tmp_path / "gone.pdf"),
            })

        result = outcome.get()
        assert result["success"] is False
        assert result["error"]["type"] == "validation_error"
        assert repository.documents[document_id].upload_status == "failed"
