# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - documents.py: Upload, ingestion status, listing, details, deletion
#   - query.py: Retrieval + answer synthesis over a tenant's documents
#   - admin.py: API key management
#   - deps.py: Auth, scope and tenant resolution dependencies
# =============================================================================
