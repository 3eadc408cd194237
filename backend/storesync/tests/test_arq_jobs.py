"""ARQ job function tests.

Job functions are plain coroutines taking the ARQ context dict, so they are
driven directly with a fake context and patched Redis enqueue.

REFERENCES:
    - storesync/workers/arq_worker.py
    - storesync/workers/arq_enqueue.py
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from storesync.models import DeletedRecord, ResourceTypeEnum, WebhookDelivery
from storesync.services.poll_orchestrator import PollOrchestrator, SyncReport
from storesync.services.tenant_service import disable_sync
from storesync.workers import arq_worker, start_arq_worker
from storesync.workers.arq_enqueue import enqueue_tenant_sync, tenant_sync_job_id


def test_tenant_sync_job_uses_context_orchestrator(tenant):
    orchestrator = MagicMock()
    orchestrator.run_tenant_sync = AsyncMock(return_value=SyncReport(tenant_id=tenant.id, message="ok"))

    result = asyncio.run(arq_worker.process_tenant_sync_job({"orchestrator": orchestrator}, str(tenant.id)))

    orchestrator.run_tenant_sync.assert_awaited_once_with(tenant.id)
    assert result["tenant_id"] == str(tenant.id)
    assert result["message"] == "ok"


def test_tenant_sync_job_reraises_for_arq_retry(tenant):
    orchestrator = MagicMock()
    orchestrator.run_tenant_sync = AsyncMock(side_effect=RuntimeError("db down"))

    with pytest.raises(RuntimeError):
        asyncio.run(arq_worker.process_tenant_sync_job({"orchestrator": orchestrator}, str(tenant.id)))


def test_scheduled_poll_enqueues_syncable_tenants(session_factory, test_db_session, tenant, other_tenant):
    disable_sync(test_db_session, other_tenant, reason="auth_error: HTTP 401")
    enqueue = AsyncMock(return_value={"job_id": "x", "status": "enqueued"})

    with patch.object(arq_worker, "SessionLocal", session_factory), \
            patch.object(arq_worker, "enqueue_tenant_sync", enqueue):
        result = asyncio.run(arq_worker.scheduled_poll_sync({"redis": "pool"}))

    assert result == {"tenants": 1, "enqueued": 1, "skipped": 0, "failed": 0}
    enqueue.assert_awaited_once_with(tenant.id, pool="pool")


def test_scheduled_poll_counts_skips_and_failures(session_factory, tenant, other_tenant):
    enqueue = AsyncMock(side_effect=[
        {"job_id": "x", "status": "skipped_already_running"},
        ConnectionError("redis unavailable"),
    ])

    with patch.object(arq_worker, "SessionLocal", session_factory), \
            patch.object(arq_worker, "enqueue_tenant_sync", enqueue):
        result = asyncio.run(arq_worker.scheduled_poll_sync({}))

    assert result["tenants"] == 2
    assert result["skipped"] == 1
    assert result["failed"] == 1


def test_prune_job_uses_retention_setting(session_factory, test_db_session, tenant):
    test_db_session.add(WebhookDelivery(
        tenant_id=tenant.id,
        delivery_id="old",
        topic="orders/create",
        resource_type=ResourceTypeEnum.orders,
        payload={},
        received_at=datetime.utcnow() - timedelta(days=30),
    ))
    test_db_session.add(DeletedRecord(
        tenant_id=tenant.id,
        resource_type=ResourceTypeEnum.orders,
        external_id="1001",
        deleted_at=datetime.utcnow() - timedelta(days=30),
    ))
    test_db_session.commit()

    with patch.object(arq_worker, "SessionLocal", session_factory):
        result = asyncio.run(arq_worker.scheduled_prune_webhook_deliveries({}))

    assert result == {"deleted": 1, "deletion_markers": 1}


def test_run_sync_once_runs_one_cycle_in_process(session_factory, tenant):
    reports = [SyncReport(tenant_id=tenant.id, message="orders=succeeded")]

    with patch.object(PollOrchestrator, "run_all_tenants", new=AsyncMock(return_value=reports)) as run_all:
        assert start_arq_worker.run_sync_once(session_factory) == reports

    run_all.assert_awaited_once()


class TestEnqueue:

    def test_job_id_is_stable_per_tenant(self, tenant):
        assert tenant_sync_job_id(tenant.id) == f"tenant-sync:{tenant.id}"

    def test_enqueue_reports_new_job(self, tenant):
        pool = MagicMock()
        pool.enqueue_job = AsyncMock(return_value=MagicMock(job_id=tenant_sync_job_id(tenant.id)))

        result = asyncio.run(enqueue_tenant_sync(tenant.id, pool=pool))

        assert result == {"job_id": tenant_sync_job_id(tenant.id), "status": "enqueued"}
        kwargs = pool.enqueue_job.await_args.kwargs
        assert kwargs["_job_id"] == tenant_sync_job_id(tenant.id)

    def test_enqueue_skips_when_job_exists(self, tenant):
        pool = MagicMock()
        pool.enqueue_job = AsyncMock(return_value=None)

        result = asyncio.run(enqueue_tenant_sync(tenant.id, pool=pool))

        assert result["status"] == "skipped_already_running"
