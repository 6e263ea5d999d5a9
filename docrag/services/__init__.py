# =============================================================================
# Services Package — Ingestion Pipeline & Providers
# =============================================================================
#   - extractor.py: PDF validation and text extraction (PyMuPDF)
#   - chunker.py: Sentence / paragraph / fixed-size / semantic chunking
#   - embedder.py: Batched embedding generation with bounded retry
#   - repository.py: Tenant-qualified persistence (PostgreSQL + pgvector)
#   - vectorstore.py: Two-step document + chunk writes with count repair
#   - ingestion.py: Stage machine driving one document through the pipeline
#   - llm.py: Multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#   - auth.py / rate_limiter.py: API keys and per-key rate limiting
# =============================================================================
