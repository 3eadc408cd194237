#!/usr/bin/env python3
"""Start the ARQ worker or the cron scheduler.

USAGE:
    python -m storesync.workers.start_arq_worker              # job worker
    python -m storesync.workers.start_arq_worker --scheduler  # cron scheduler
    python -m storesync.workers.start_arq_worker --once       # one poll cycle, in-process

    Or directly:
    arq storesync.workers.arq_worker.WorkerSettings
"""

import asyncio
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def run_sync_once(session_factory=None):
    """Poll every syncable tenant once in this process and return the reports.

    For backfills and local runs without Redis. Scheduled cycles go through
    the queue instead.
    """
    from storesync.database import SessionLocal
    from storesync.services.poll_orchestrator import PollOrchestrator

    orchestrator = PollOrchestrator(session_factory=session_factory or SessionLocal)
    reports = asyncio.run(orchestrator.run_all_tenants())
    for report in reports:
        logger.info("Tenant %s: %s", report.tenant_id, report.message)
    return reports


def main():
    """Start the ARQ worker (or scheduler with --scheduler, or one cycle with --once)."""
    from arq import run_worker

    from storesync.utils.env import load_env_file, require_env

    load_env_file()
    require_env("DATABASE_URL", "TOKEN_ENCRYPTION_KEY")

    if "--once" in sys.argv[1:]:
        logger.info("Running one poll cycle...")
        run_sync_once()
        return

    if "--scheduler" in sys.argv[1:]:
        from storesync.services.sync_scheduler import SchedulerSettings

        logger.info("Starting ARQ scheduler...")
        run_worker(SchedulerSettings)
        return

    from storesync.workers.arq_worker import WorkerSettings

    logger.info("Starting ARQ worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
