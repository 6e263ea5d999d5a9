# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Request/response schemas for the HTTP API. Kept separate from the ORM
# models in docrag/db/models.py so embedding vectors and key hashes never
# leak into responses.
# =============================================================================
