"""Sync scheduler service.

WHAT:
    ARQ cron process that enqueues the periodic jobs executed by the worker
    (storesync/workers/arq_worker.py).

WHY:
    - Exactly one scheduler runs cron; workers scale independently and
      never fire duplicate schedules
    - Fixed clock times keep poll cycles predictable per tenant

SCHEDULE (all times UTC):
    - :00 every hour: poll sync for every syncable tenant
    - every 10 min: reprocess webhook deliveries stuck in `admitted`
    - 04:30 daily: prune webhook delivery records past retention

USAGE:
    arq storesync.services.sync_scheduler.SchedulerSettings

REFERENCES:
    - https://arq-docs.helpmanual.io/#cron-jobs
    - storesync/workers/arq_worker.py
"""

from __future__ import annotations

import logging
from typing import Dict

from arq import cron

from storesync.workers.arq_enqueue import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)

POLL_SYNC_MINUTE = 0
REPROCESS_MINUTES = {0, 10, 20, 30, 40, 50}
PRUNE_HOUR, PRUNE_MINUTE = 4, 30


async def _enqueue(ctx: Dict, function_name: str) -> Dict:
    job = await ctx["redis"].enqueue_job(
        function_name,
        _job_id=f"{function_name}:{ctx.get('job_id', '')}",
        _queue_name=QUEUE_NAME,
    )
    status = "enqueued" if job else "skipped_or_duplicate"
    logger.info("[SCHEDULER] %s -> %s", function_name, status)
    return {"function": function_name, "status": status}


async def enqueue_poll_cycle(ctx: Dict) -> Dict:
    return await _enqueue(ctx, "scheduled_poll_sync")


async def enqueue_reprocess_sweep(ctx: Dict) -> Dict:
    return await _enqueue(ctx, "scheduled_reprocess_deliveries")


async def enqueue_delivery_prune(ctx: Dict) -> Dict:
    return await _enqueue(ctx, "scheduled_prune_webhook_deliveries")


class SchedulerSettings:
    """ARQ settings for the cron-only scheduler process."""

    functions = []

    cron_jobs = [
        cron(enqueue_poll_cycle, minute=POLL_SYNC_MINUTE, run_at_startup=False),
        cron(enqueue_reprocess_sweep, minute=REPROCESS_MINUTES),
        cron(enqueue_delivery_prune, hour=PRUNE_HOUR, minute=PRUNE_MINUTE),
    ]

    redis_settings = get_redis_settings()

    # Own queue so the scheduler never picks up worker jobs
    queue_name = "arq:scheduler"
    keep_result = 0
