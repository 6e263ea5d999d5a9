# =============================================================================
# Admin API — API Key Management
# =============================================================================
#
# Every endpoint requires the "admin" scope. The raw API key is returned
# ONCE at creation; afterwards only key_prefix is visible.
#
# Keys are bound to a tenant at creation. An admin key can only manage keys
# of its own tenant; with auth disabled (local development) all keys are
# visible.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docrag.api.deps import check_scope, get_current_api_key
from docrag.db.engine import get_async_session
from docrag.db.models import ApiKey
from docrag.models.requests import CreateApiKeyRequest
from docrag.models.responses import (
    ApiKeyCreatedResponse,
    ApiKeyListResponse,
    ApiKeyResponse,
)
from docrag.services.auth import generate_api_key, unknown_scopes

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Admin"])


# ---------------------------------------------------------------------------
# POST /admin/keys — Create API Key
# ---------------------------------------------------------------------------


@router.post(
    "/admin/keys",
    response_model=ApiKeyCreatedResponse,
    status_code=201,
    summary="Create a new API key",
    description=(
        "Generate a tenant-bound API key with optional scopes, rate limit and "
        "expiry. The raw key is only returned in this response."
    ),
)
async def create_api_key(
    request: CreateApiKeyRequest,
    api_key: ApiKey | None = Depends(get_current_api_key),
    session: AsyncSession = Depends(get_async_session),
) -> ApiKeyCreatedResponse:
    check_scope(api_key, "admin")

    if api_key is not None and request.tenant_id != api_key.tenant_id:
        raise HTTPException(
            status_code=403,
            detail="Cannot create keys for another tenant.",
        )

    bad = unknown_scopes(request.scopes)
    if bad:
        raise HTTPException(status_code=422, detail=f"Unknown scopes: {', '.join(bad)}")

    raw_key, key_prefix, key_hash = generate_api_key()
    new_key = ApiKey(
        tenant_id=request.tenant_id,
        name=request.name,
        key_prefix=key_prefix,
        key_hash=key_hash,
        scopes=request.scopes,
        rate_limit_rpm=request.rate_limit_rpm,
        expires_at=request.expires_at,
    )
    session.add(new_key)
    await session.commit()
    await session.refresh(new_key)

    logger.info(
        "API key created: id=%d, tenant=%s, name='%s', prefix='%s'",
        new_key.id, new_key.tenant_id, new_key.name, new_key.key_prefix,
    )

    return ApiKeyCreatedResponse(
        **_to_key_response(new_key).model_dump(),
        raw_key=raw_key,
    )


# ---------------------------------------------------------------------------
# GET /admin/keys — List API Keys
# ---------------------------------------------------------------------------


@router.get(
    "/admin/keys",
    response_model=ApiKeyListResponse,
    summary="List API keys",
)
async def list_api_keys(
    api_key: ApiKey | None = Depends(get_current_api_key),
    session: AsyncSession = Depends(get_async_session),
) -> ApiKeyListResponse:
    check_scope(api_key, "admin")

    stmt = select(ApiKey).order_by(ApiKey.created_at.desc())
    if api_key is not None:
        stmt = stmt.where(ApiKey.tenant_id == api_key.tenant_id)
    keys = list((await session.execute(stmt)).scalars().all())

    return ApiKeyListResponse(
        keys=[_to_key_response(k) for k in keys],
        total=len(keys),
    )


# ---------------------------------------------------------------------------
# DELETE /admin/keys/{key_id} — Delete API Key
# ---------------------------------------------------------------------------


@router.delete(
    "/admin/keys/{key_id}",
    status_code=204,
    summary="Delete an API key",
)
async def delete_api_key(
    key_id: int,
    api_key: ApiKey | None = Depends(get_current_api_key),
    session: AsyncSession = Depends(get_async_session),
) -> None:
    check_scope(api_key, "admin")

    target = await _get_key_or_404(session, key_id, api_key)
    await session.delete(target)
    await session.commit()

    logger.info("API key deleted: id=%d, prefix='%s'", key_id, target.key_prefix)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _get_key_or_404(
    session: AsyncSession, key_id: int, caller: ApiKey | None,
) -> ApiKey:
    """Load an ApiKey visible to the caller or raise 404."""
    stmt = select(ApiKey).where(ApiKey.id == key_id)
    if caller is not None:
        stmt = stmt.where(ApiKey.tenant_id == caller.tenant_id)
    target = (await session.execute(stmt)).scalar_one_or_none()
    if target is None:
        raise HTTPException(status_code=404, detail=f"API key {key_id} not found.")
    return target


def _to_key_response(key: ApiKey) -> ApiKeyResponse:
    """Convert an ApiKey ORM model to a response (excluding sensitive data)."""
    return ApiKeyResponse(
        id=key.id,
        tenant_id=key.tenant_id,
        name=key.name,
        key_prefix=key.key_prefix,
        scopes=key.scopes,
        rate_limit_rpm=key.rate_limit_rpm,
        is_active=key.is_active,
        created_at=key.created_at,
        expires_at=key.expires_at,
        last_used_at=key.last_used_at,
    )
