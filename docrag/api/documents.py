# =============================================================================
# Documents API — Ingestion, Status Tracking and Document Management
# =============================================================================
#
# ENDPOINTS:
#   POST   /documents/upload     — multipart PDF, 202 + task_id (Celery)
#   POST   /documents/ingest     — JSON base64 / compressed base64 / path;
#                                  wait=true runs the pipeline inline
#   GET    /ingest/{task_id}     — poll a Celery ingestion task
#   GET    /documents            — tenant-scoped listing
#   GET    /documents/{id}       — details, optionally with chunks
#   DELETE /documents/{id}       — delete a document and its chunks
#
# Asynchronous ingestion validates the content BEFORE accepting it (bad
# base64, empty, oversized or non-PDF input is a 400, no row, no task),
# then pre-creates the pending document row so clients can poll
# GET /documents/{id} right away, saves the bytes under upload_dir and
# dispatches `ingest_document`. The worker deletes the saved file.
# =============================================================================

import asyncio
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Literal

from celery.result import AsyncResult
from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from docrag.api.deps import (
    check_scope,
    get_current_api_key,
    get_ingestion_coordinator,
    get_repository,
    get_tenant_id,
)
from docrag.config import settings
from docrag.db.models import ApiKey, DocumentStatus
from docrag.errors import ValidationError, status_code_for
from docrag.models.requests import DocumentMetadataIn, IngestOptionsIn, IngestRequest
from docrag.models.responses import (
    ChunkResponse,
    DocumentDeletedResponse,
    DocumentDetailResponse,
    DocumentListResponse,
    DocumentResponse,
    IngestionResponse,
    IngestStatusResponse,
    UploadResponse,
)
from docrag.services.extractor import (
    Base64Source,
    CompressedBase64Source,
    FileSource,
    Source,
    resolve_source,
    validate_content,
)
from docrag.services.ingestion import IngestionCoordinator, IngestionRequest
from docrag.services.repository import DocumentQuery, DocumentRepository
from docrag.workers.tasks import build_options, ingest_document

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Documents"])


# ---------------------------------------------------------------------------
# POST /documents/upload — multipart upload
# ---------------------------------------------------------------------------


@router.post(
    "/documents/upload",
    response_model=UploadResponse,
    status_code=202,
    summary="Upload a PDF for background ingestion",
    description=(
        "Upload a PDF to be extracted, chunked, embedded and stored. Returns "
        "immediately with a document_id and task_id for polling. The document "
        "is NOT searchable until processing completes."
    ),
)
async def upload_document(
    file: UploadFile = File(..., description="PDF file to ingest"),
    title: str | None = Form(default=None),
    author: str | None = Form(default=None),
    category: str | None = Form(default=None),
    tags: str | None = Form(default=None, description="Comma-separated tags"),
    chunk_strategy: str | None = Form(default=None),
    max_chunk_size: int | None = Form(default=None),
    overlap: int | None = Form(default=None),
    min_chunk_size: int | None = Form(default=None),
    embedding_model: str | None = Form(default=None),
    api_key: ApiKey | None = Depends(get_current_api_key),
    tenant_id: str = Depends(get_tenant_id),
    repository: DocumentRepository = Depends(get_repository),
) -> UploadResponse:
    check_scope(api_key, "ingest")

    if not file.filename or not file.filename.lower().endswith(".pdf"):
        raise ValidationError(
            "Only PDF files are accepted. Please upload a .pdf file.",
            {"filename": file.filename},
        )

    try:
        metadata = DocumentMetadataIn(
            title=title,
            author=author,
            category=category,
            tags=[t.strip() for t in (tags or "").split(",") if t.strip()],
        )
        options = IngestOptionsIn(
            chunk_strategy=chunk_strategy,
            max_chunk_size=max_chunk_size,
            overlap=overlap,
            min_chunk_size=min_chunk_size,
            embedding_model=embedding_model,
        )
    except PydanticValidationError as e:
        raise HTTPException(
            status_code=422, detail=e.errors(include_url=False, include_context=False),
        ) from e

    content = await file.read()
    validate_content(content)

    return await _accept_for_background(
        repository,
        tenant_id=tenant_id,
        content=content,
        filename=Path(file.filename).name,
        metadata=metadata,
        options=options,
    )


# ---------------------------------------------------------------------------
# POST /documents/ingest — JSON ingestion
# ---------------------------------------------------------------------------


@router.post(
    "/documents/ingest",
    response_model=IngestionResponse | UploadResponse,
    summary="Ingest a base64-encoded PDF",
    description=(
        "Accepts file_base64, compressed_base64 (base64 of zlib-deflated "
        "base64) or, when enabled, a server-local file_path. With wait=true "
        "the pipeline runs inline and the full ingestion result is returned; "
        "otherwise the document is queued like an upload (202)."
    ),
    responses={202: {"model": UploadResponse}},
)
async def ingest_json(
    request: IngestRequest,
    api_key: ApiKey | None = Depends(get_current_api_key),
    tenant_id: str = Depends(get_tenant_id),
    repository: DocumentRepository = Depends(get_repository),
    coordinator: IngestionCoordinator = Depends(get_ingestion_coordinator),
):
    check_scope(api_key, "ingest")
    source = _source_from_request(request)
    metadata = request.metadata.model_dump(exclude_none=True)

    if request.wait:
        logger.info("Inline ingestion requested: tenant=%s", tenant_id)
        result = await asyncio.to_thread(
            coordinator.ingest,
            IngestionRequest(
                tenant_id=tenant_id,
                source=source,
                filename=request.filename,
                metadata=metadata,
                options=build_options(request.options.model_dump(exclude_none=True)),
            ),
        )
        body = IngestionResponse(**result.to_dict())
        status_code = 200 if result.success else status_code_for(result.error["type"])
        return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))

    resolved = resolve_source(source, request.filename)
    accepted = await _accept_for_background(
        repository,
        tenant_id=tenant_id,
        content=resolved.content,
        filename=Path(resolved.filename).name,
        metadata=request.metadata,
        options=request.options,
    )
    return JSONResponse(status_code=202, content=accepted.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# GET /ingest/{task_id} — poll ingestion status
# ---------------------------------------------------------------------------


@router.get(
    "/ingest/{task_id}",
    response_model=IngestStatusResponse,
    summary="Check document ingestion status",
)
async def get_ingest_status(
    task_id: str,
    api_key: ApiKey | None = Depends(get_current_api_key),
    tenant_id: str = Depends(get_tenant_id),
    repository: DocumentRepository = Depends(get_repository),
) -> IngestStatusResponse:
    """
    Celery task states:
    - PENDING: Task not yet picked up by a worker (or unknown id)
    - STARTED: Worker has begun processing
    - SUCCESS: Task finished; `result.success` says whether ingestion did
    - FAILURE: Task crashed (check error field)
    """
    check_scope(api_key, "ingest")

    task = AsyncResult(task_id, app=ingest_document.app)
    status = task.status

    result: IngestionResponse | None = None
    document: DocumentResponse | None = None
    error: str | None = None

    if status == "SUCCESS":
        result = IngestionResponse(**(task.result or {"success": False, "stage": "failed"}))
        if result.document_id:
            # Raises DocumentNotFound for other tenants' tasks.
            record = await repository.get_document(tenant_id, result.document_id)
            document = DocumentResponse.model_validate(record)
    elif status == "FAILURE":
        error = str(task.result) if task.result else "Unknown error"

    return IngestStatusResponse(
        task_id=task_id,
        status=status,
        result=result,
        document=document,
        error=error,
    )


# ---------------------------------------------------------------------------
# GET /documents — list
# ---------------------------------------------------------------------------


@router.get(
    "/documents",
    response_model=DocumentListResponse,
    summary="List the tenant's documents",
)
async def list_documents(
    filename: str | None = Query(default=None, description="Substring match"),
    status: DocumentStatus | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    sort_by: Literal["created_at", "updated_at", "filename", "size_bytes"] = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    api_key: ApiKey | None = Depends(get_current_api_key),
    tenant_id: str = Depends(get_tenant_id),
    repository: DocumentRepository = Depends(get_repository),
) -> DocumentListResponse:
    check_scope(api_key, "documents")

    result = await repository.list_documents(
        tenant_id,
        DocumentQuery(
            filename=filename,
            status=status,
            date_from=date_from,
            date_to=date_to,
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order,
        ),
    )
    return DocumentListResponse(
        documents=[DocumentResponse.model_validate(d) for d in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
        total_pages=result.total_pages,
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id} — details
# ---------------------------------------------------------------------------


@router.get(
    "/documents/{document_id}",
    response_model=DocumentDetailResponse,
    summary="Get document details",
)
async def get_document(
    document_id: uuid.UUID,
    include_chunks: bool = Query(default=False),
    chunk_limit: int = Query(default=50, ge=1, le=500),
    api_key: ApiKey | None = Depends(get_current_api_key),
    tenant_id: str = Depends(get_tenant_id),
    repository: DocumentRepository = Depends(get_repository),
) -> DocumentDetailResponse:
    check_scope(api_key, "documents")

    record = await repository.get_document(tenant_id, document_id)
    chunks = None
    if include_chunks:
        stored = await repository.list_chunks(tenant_id, document_id, chunk_limit)
        chunks = [ChunkResponse.model_validate(c) for c in stored]

    return DocumentDetailResponse(
        document=DocumentResponse.model_validate(record),
        chunks=chunks,
    )


# ---------------------------------------------------------------------------
# DELETE /documents/{document_id}
# ---------------------------------------------------------------------------


@router.delete(
    "/documents/{document_id}",
    response_model=DocumentDeletedResponse,
    summary="Delete a document and all of its chunks",
)
async def delete_document(
    document_id: uuid.UUID,
    api_key: ApiKey | None = Depends(get_current_api_key),
    tenant_id: str = Depends(get_tenant_id),
    repository: DocumentRepository = Depends(get_repository),
) -> DocumentDeletedResponse:
    check_scope(api_key, "documents")
    await repository.delete_document(tenant_id, document_id)
    return DocumentDeletedResponse(document_id=document_id)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _source_from_request(request: IngestRequest) -> Source:
    if request.file_path:
        if not settings.allow_file_path_ingest:
            raise ValidationError(
                "file_path ingestion is disabled on this server.",
                {"setting": "ALLOW_FILE_PATH_INGEST"},
            )
        return FileSource(path=request.file_path)
    if request.compressed_base64:
        return CompressedBase64Source(data=request.compressed_base64)
    return Base64Source(data=request.file_base64 or "")


async def _accept_for_background(
    repository: DocumentRepository,
    tenant_id: str,
    content: bytes,
    filename: str,
    metadata: DocumentMetadataIn,
    options: IngestOptionsIn,
) -> UploadResponse:
    """Pre-create the pending row, save the bytes and dispatch the task."""
    document_id = uuid.uuid4()
    metadata_dict = metadata.model_dump(exclude_none=True)

    await asyncio.to_thread(
        repository.create_document,
        tenant_id,
        document_id,
        filename=filename,
        size_bytes=len(content),
        metadata=metadata_dict,
    )

    upload_dir = Path(settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    file_path = upload_dir / f"{document_id}_{filename}"
    file_path.write_bytes(content)
    logger.info("Saved upload: %s (%d bytes) → %s", filename, len(content), file_path)

    task = ingest_document.delay(
        tenant_id=tenant_id,
        document_id=str(document_id),
        file_path=str(file_path),
        filename=filename,
        metadata=metadata_dict,
        options=options.model_dump(mode="json", exclude_none=True),
    )
    await repository.set_task_id(tenant_id, document_id, task.id)

    logger.info(
        "Dispatched ingestion task: tenant=%s, document_id=%s, task_id=%s",
        tenant_id, document_id, task.id,
    )
    return UploadResponse(
        document_id=document_id,
        task_id=task.id,
        message=f"Document '{filename}' accepted. Ingestion in progress.",
    )
