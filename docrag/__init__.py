# =============================================================================
# docrag — Multi-Tenant Document RAG Pipeline
# =============================================================================
# Ingests PDF documents (extract → chunk → embed → store) per tenant and
# answers natural-language questions over them with similarity search and
# LLM synthesis, degrading to substring search when vector search is down.
#
# Package structure:
#   docrag/
#   ├── api/          → FastAPI route handlers (documents, query, admin)
#   ├── db/           → Database engine, session, and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── rag/          → LangGraph retrieval graph and answer synthesis
#   ├── services/     → Ingestion pipeline stages and tenant repository
#   └── workers/      → Celery task definitions and configuration
# =============================================================================
