# =============================================================================
# FastAPI Application
# =============================================================================
#
# Run locally:
#   uvicorn docrag.main:app --reload
#   celery -A docrag.workers.celery_app worker --loglevel=info
#
# Any PipelineError that escapes a route handler is rendered as
#   {"success": false, "error": {"type", "message", "details"}}
# with the status code its class declares (ValidationError → 400,
# DocumentNotFound → 404, EmbeddingMismatchError → 409, ...).
# =============================================================================

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from docrag.api import admin, documents, query
from docrag.config import settings
from docrag.errors import PipelineError
from docrag.models.responses import HealthResponse

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log("%s %s → %s: %s", request.method, request.url.path, exc.error_type, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_error_info()},
    )


def create_app() -> FastAPI:
    """Build and configure the FastAPI application."""
    application = FastAPI(
        title="docrag API",
        version=settings.app_version,
        description=(
            "Multi-tenant document ingestion and retrieval. Upload PDFs, which "
            "are extracted, chunked, embedded and stored per tenant, then ask "
            "questions and get answers grounded in the retrieved chunks."
        ),
        debug=settings.debug,
    )

    application.add_exception_handler(PipelineError, pipeline_error_handler)

    @application.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health() -> HealthResponse:
        return HealthResponse(version=settings.app_version, service=settings.app_name)

    application.include_router(documents.router)
    application.include_router(query.router)
    application.include_router(admin.router)

    logger.info("%s %s ready", settings.app_name, settings.app_version)
    return application


app = create_app()
