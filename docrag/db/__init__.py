# =============================================================================
# Database Package
# =============================================================================
# Provides async + sync SQLAlchemy engines, session management, ORM models.
#
# Key exports:
#   - get_async_session: FastAPI dependency for database sessions
#   - get_sync_session: context manager for Celery workers
#   - Document, Chunk, ApiKey: ORM models
# =============================================================================
