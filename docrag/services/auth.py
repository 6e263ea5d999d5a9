# =============================================================================
# Auth Service — API Key Generation & Hashing
# =============================================================================
#
# Pure functions, no FastAPI dependency. Used by the auth dependency, the
# admin endpoints and tests.
#
# Keys are 32 random bytes, so a single SHA-256 is enough to store them:
# the hash must be deterministic for the lookup by key_hash.
# =============================================================================

from __future__ import annotations

import hashlib
import secrets

KEY_PREFIX = "drg-"

# Scopes a key may carry. An empty scope list grants all of them.
SCOPES = frozenset({"ingest", "query", "documents", "admin"})


def generate_api_key() -> tuple[str, str, str]:
    """
    Generate a new API key.

    Returns:
        (raw_key, key_prefix, key_hash):
        - raw_key: Full key to return to the user (only visible once)
        - key_prefix: First 12 chars for identification in logs/admin
        - key_hash: SHA-256 hex digest for storage in the database
    """
    raw_key = f"{KEY_PREFIX}{secrets.token_hex(32)}"
    return raw_key, raw_key[:12], hash_api_key(raw_key)


def hash_api_key(raw_key: str) -> str:
    """Hash an API key using SHA-256. Returns 64-char hex digest."""
    return hashlib.sha256(raw_key.encode()).hexdigest()


def unknown_scopes(scopes: list[str]) -> list[str]:
    return sorted(set(scopes) - SCOPES)
