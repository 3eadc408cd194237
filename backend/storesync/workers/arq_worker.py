"""ARQ async worker - background job processor.

WHAT:
    Processes tenant sync jobs and the webhook bookkeeping sweeps.
    Delegates all ingestion logic to the services layer.

WHY:
    - One PollOrchestrator per worker process, so concurrent jobs for the
      same tenant share a single request budget and in-process run registry
    - Job-id dedup (see arq_enqueue) skips syncs already queued or running
      across worker processes
    - Cron lives in the scheduler (services/sync_scheduler.py); this worker
      only executes jobs

ARCHITECTURE:
    ┌──────────────────┐  enqueues   ┌──────────────────┐  delegates  ┌──────────────────┐
    │ sync_scheduler   │────────────▶│  arq_worker.py   │────────────▶│ poll_orchestrator│
    │ (cron)           │             │  (jobs)          │             │ webhook_admission│
    └──────────────────┘             └──────────────────┘             └──────────────────┘

USAGE:
    arq storesync.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m storesync.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - storesync/services/poll_orchestrator.py
    - storesync/services/webhook_admission.py
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict
from uuid import UUID

from storesync.database import SessionLocal
from storesync.deps import get_settings
from storesync.services import tenant_service
from storesync.services.poll_orchestrator import PollOrchestrator
from storesync.services.reconciler import prune_deletion_markers
from storesync.services.webhook_admission import prune_expired_deliveries, reprocess_pending_deliveries
from storesync.telemetry import capture_exception, init_sentry
from storesync.workers.arq_enqueue import QUEUE_NAME, enqueue_tenant_sync, get_redis_settings

logger = logging.getLogger(__name__)


def _orchestrator(ctx: Dict) -> PollOrchestrator:
    orchestrator = ctx.get("orchestrator")
    if orchestrator is None:
        orchestrator = PollOrchestrator(session_factory=SessionLocal)
        ctx["orchestrator"] = orchestrator
    return orchestrator


# =============================================================================
# SYNC JOBS
# =============================================================================

async def process_tenant_sync_job(ctx: Dict, tenant_id: str) -> Dict:
    """Run one tenant's poll sync (scheduled or manual).

    Returns:
        The SyncReport as a dict (stored as the ARQ job result)
    """
    logger.info("[ARQ] Starting tenant sync job for %s", tenant_id)
    try:
        report = await _orchestrator(ctx).run_tenant_sync(UUID(tenant_id))
    except Exception as e:
        logger.exception("[ARQ] Tenant sync job failed for %s", tenant_id)
        capture_exception(e, extra={"tenant_id": tenant_id, "job": "process_tenant_sync_job"})
        raise

    return report.to_dict()


async def scheduled_poll_sync(ctx: Dict) -> Dict:
    """Scheduled job: enqueue a sync for every syncable tenant.

    WHEN:
        Hourly at :00 (see sync_scheduler.POLL_SYNC_MINUTE).

    WHY:
        Enqueueing one job per tenant lets them run in parallel across the
        worker's job slots; tenants still running from the previous cycle
        are skipped by job-id dedup.
    """
    db = SessionLocal()
    try:
        tenant_ids = [tenant.id for tenant in tenant_service.list_syncable_tenants(db)]
    finally:
        db.close()

    if not tenant_ids:
        logger.info("[ARQ] No syncable tenants")
        return {"tenants": 0, "enqueued": 0, "skipped": 0}

    results = await asyncio.gather(
        *[enqueue_tenant_sync(tenant_id, pool=ctx.get("redis")) for tenant_id in tenant_ids],
        return_exceptions=True,
    )

    enqueued = skipped = failed = 0
    for tenant_id, result in zip(tenant_ids, results):
        if isinstance(result, Exception):
            failed += 1
            logger.error("[ARQ] Failed to enqueue sync for tenant %s: %s", tenant_id, result)
            capture_exception(result, extra={"tenant_id": str(tenant_id)})
        elif result["status"] == "enqueued":
            enqueued += 1
        else:
            skipped += 1

    logger.info(
        "[ARQ] Poll cycle: %d tenants, %d enqueued, %d skipped, %d failed",
        len(tenant_ids), enqueued, skipped, failed,
    )
    return {"tenants": len(tenant_ids), "enqueued": enqueued, "skipped": skipped, "failed": failed}


# =============================================================================
# WEBHOOK BOOKKEEPING JOBS
# =============================================================================

async def scheduled_reprocess_deliveries(ctx: Dict) -> Dict:
    """Scheduled job: redo deliveries admitted but never confirmed processed."""
    settings = get_settings()
    db = SessionLocal()
    try:
        return reprocess_pending_deliveries(
            db,
            older_than_minutes=settings.WEBHOOK_REPROCESS_AFTER_MINUTES,
            limit=settings.WEBHOOK_REPROCESS_BATCH_SIZE,
        )
    finally:
        db.close()


async def scheduled_prune_webhook_deliveries(ctx: Dict) -> Dict:
    """Scheduled job: drop delivery records and deletion markers past the dedup retention window."""
    settings = get_settings()
    db = SessionLocal()
    try:
        deleted = prune_expired_deliveries(db, retention_hours=settings.WEBHOOK_DEDUP_RETENTION_HOURS)
        markers = prune_deletion_markers(db, retention_hours=settings.WEBHOOK_DEDUP_RETENTION_HOURS)
        return {"deleted": deleted, "deletion_markers": markers}
    finally:
        db.close()


# =============================================================================
# LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize resources and log config."""
    import platform

    init_sentry()
    settings = get_settings()

    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up (job processor)")
    logger.info("=" * 60)
    logger.info("[ARQ] Python: %s", platform.python_version())
    logger.info("[ARQ] Host: %s", platform.node())
    logger.info("[ARQ] Queue: %s", QUEUE_NAME)
    logger.info("[ARQ] Max concurrent jobs: %d", WorkerSettings.max_jobs)
    logger.info(
        "[ARQ] Budget: %d requests / %.0fs per tenant, page cap %d",
        settings.RATE_LIMIT_REQUESTS, settings.RATE_LIMIT_WINDOW_SECONDS, settings.POLL_MAX_PAGES,
    )
    logger.info("[ARQ] Note: Cron scheduling handled by scheduler service")
    logger.info("=" * 60)

    ctx["orchestrator"] = PollOrchestrator(session_factory=SessionLocal, settings=settings)
    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - log stats."""
    jobs = ctx.get("jobs_processed", 0)
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info("[ARQ] Jobs processed: %d", jobs)
    logger.info("[ARQ] Uptime: %s", uptime)
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration - processes jobs only.

    - max_jobs=10: up to 10 tenant syncs concurrently
    - job_timeout=1800: a full first sync of a large store pages for a while
    - keep_result=0: job-id dedup also matches stored results, so a finished
      sync must not block the next cycle's job
    """

    functions = [
        process_tenant_sync_job,
        scheduled_poll_sync,
        scheduled_reprocess_deliveries,
        scheduled_prune_webhook_deliveries,
    ]

    # NO cron_jobs here - the scheduler handles cron scheduling
    cron_jobs = []

    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    redis_settings = get_redis_settings()

    max_jobs = 10
    job_timeout = 1800
    keep_result = 0
    retry_jobs = True
    max_tries = 3
    health_check_interval = 30

    queue_name = QUEUE_NAME
