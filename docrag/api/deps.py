# =============================================================================
# API Dependencies — Auth, Tenant Resolution, Service Wiring
# =============================================================================
#
# 1. get_current_api_key() — extract & validate Bearer token
# 2. check_scope()         — verify endpoint-level permission
# 3. get_tenant_id()       — resolve the tenant every handler works in
# 4. get_repository / get_retrieval_engine / get_ingestion_coordinator
#                           — service wiring, replaced in tests through
#                             app.dependency_overrides
#
# TENANT RESOLUTION:
#   auth enabled  → the key's tenant. An X-Tenant-ID header naming a
#                   different tenant is rejected with 403.
#   auth disabled → X-Tenant-ID is required (400 when missing).
# =============================================================================

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docrag.config import settings
from docrag.db.engine import get_async_session
from docrag.db.models import ApiKey
from docrag.rag.retriever import RetrievalEngine
from docrag.services import repository as repository_module
from docrag.services.auth import hash_api_key
from docrag.services.embedder import EmbeddingBatcher, get_embedding_provider
from docrag.services.ingestion import IngestionCoordinator
from docrag.services.rate_limiter import check_rate_limit
from docrag.services.repository import DocumentRepository

logger = logging.getLogger(__name__)

# Shows the "Authorize" button in Swagger UI.
_bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_api_key(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    session: AsyncSession = Depends(get_async_session),
) -> ApiKey | None:
    """
    Validate the Bearer API key.

    When auth_enabled=False: returns None (anonymous access).
    When auth_enabled=True:
    - SHA-256 hashes the token and looks it up in api_keys
    - Validates: is_active, not expired
    - Checks the per-key rate limit
    - Updates last_used_at

    Raises:
        HTTPException 401: Missing or invalid API key
        HTTPException 403: Key is inactive or expired
        HTTPException 429: Rate limit exceeded
    """
    if not settings.auth_enabled:
        return None

    if credentials is None:
        raise HTTPException(
            status_code=401,
            detail="Missing API key. Provide 'Authorization: Bearer <key>' header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    key_hash = hash_api_key(credentials.credentials)
    result = await session.execute(select(ApiKey).where(ApiKey.key_hash == key_hash))
    api_key = result.scalar_one_or_none()

    if api_key is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid API key.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not api_key.is_active:
        raise HTTPException(status_code=403, detail="API key has been deactivated.")

    if api_key.expires_at and api_key.expires_at < datetime.now(UTC):
        raise HTTPException(status_code=403, detail="API key has expired.")

    await check_rate_limit(api_key)

    api_key.last_used_at = datetime.now(UTC)
    request.state.api_key = api_key
    return api_key


def check_scope(api_key: ApiKey | None, required_scope: str) -> None:
    """
    Raise 403 unless the key carries `required_scope`.

    No-op when auth is disabled (api_key is None) or the key has no
    scopes (full access).
    """
    if api_key is None or not api_key.scopes:
        return

    if required_scope not in api_key.scopes:
        raise HTTPException(
            status_code=403,
            detail=f"API key does not have '{required_scope}' scope.",
        )


async def get_tenant_id(
    api_key: ApiKey | None = Depends(get_current_api_key),
    x_tenant_id: str | None = Header(default=None),
) -> str:
    if api_key is not None:
        if x_tenant_id and x_tenant_id != api_key.tenant_id:
            logger.warning(
                "Tenant header mismatch: key=%s header=%s",
                api_key.key_prefix, x_tenant_id,
            )
            raise HTTPException(
                status_code=403,
                detail="X-Tenant-ID does not match the API key's tenant.",
            )
        return api_key.tenant_id

    if not x_tenant_id or not x_tenant_id.strip():
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required.")
    return x_tenant_id.strip()


# ---------------------------------------------------------------------------
# Service Wiring
# ---------------------------------------------------------------------------


def get_repository() -> DocumentRepository:
    return repository_module.get_repository()


def get_embedding_batcher() -> EmbeddingBatcher:
    try:
        provider = get_embedding_provider()
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise HTTPException(
            status_code=503,
            detail=f"Service configuration error: {e}",
        ) from e
    return EmbeddingBatcher(provider)


_retrieval_engine: RetrievalEngine | None = None


def get_retrieval_engine(
    repository: DocumentRepository = Depends(get_repository),
    batcher: EmbeddingBatcher = Depends(get_embedding_batcher),
) -> RetrievalEngine:
    """One engine per process; its LangGraph graph is compiled on first use."""
    global _retrieval_engine
    if _retrieval_engine is None:
        _retrieval_engine = RetrievalEngine(repository=repository, batcher=batcher)
    return _retrieval_engine


def get_ingestion_coordinator(
    repository: DocumentRepository = Depends(get_repository),
    batcher: EmbeddingBatcher = Depends(get_embedding_batcher),
) -> IngestionCoordinator:
    return IngestionCoordinator(repository=repository, batcher=batcher)
