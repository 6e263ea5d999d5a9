# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery application configuration
#   - tasks.py: Document ingestion task
#
# Extraction is CPU-bound and embedding is network-bound; running them in a
# worker keeps upload requests fast. Clients poll GET /ingest/{task_id}.
# =============================================================================
