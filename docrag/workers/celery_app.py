# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Ingestion runs in Celery workers so uploads return immediately:
#
# ┌───────────┐     ┌────────┐     ┌───────────────┐     ┌────────┐
# │ FastAPI   │────▶│ Redis  │────▶│ Celery Worker │────▶│ Redis  │
# │ (producer)│     │(broker)│     │ (coordinator) │     │(result)│
# └───────────┘     └────────┘     └───────────────┘     └────────┘
#                      db 0                                  db 1
#
# Independent documents are ingested concurrently by separate workers; they
# share nothing but the database, where chunk counts are serialized per
# document by a row lock.
# =============================================================================

from celery import Celery

from docrag.config import settings

celery_app = Celery(
    "docrag.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # JSON only: task arguments and results must be plain data.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Acknowledge after completion so a crashed worker's task is redelivered
    # rather than lost. The coordinator's idempotent row creation and
    # forward-only status writes make a redelivery fail cleanly instead of
    # double-ingesting: pending → processing succeeds once per document, so
    # the redelivered run ends FAILED without writing chunks.
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # One task at a time per worker process: extraction and embedding are
    # long-running.
    worker_prefetch_multiplier=1,

    task_soft_time_limit=300,
    task_time_limit=600,

    # Results must outlive client polling.
    result_expires=3600,

    # Report STARTED so GET /ingest/{task_id} can tell queued from running.
    task_track_started=True,

    include=["docrag.workers.tasks"],
)
