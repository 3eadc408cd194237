"""Tenant sync endpoints.

WHAT:
    Operator-facing status query, on-demand sync trigger and replay of
    rejected records.

WHY:
    - Routers handle auth + request parsing only
    - Manual sync enqueues the same ARQ job the scheduler uses, so it follows
      the same state machine and the same skip-if-running rule

REFERENCES:
    - storesync/services/sync_state.py
    - storesync/services/reconciler.py (replay_rejected)
    - storesync/workers/arq_enqueue.py
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from storesync.database import get_db
from storesync.deps import require_admin_key
from storesync.models import Tenant
from storesync.schemas import ReplayResponse, SyncCursorStatus, SyncTriggerResponse, TenantSyncStatusResponse
from storesync.services.reconciler import Reconciler, ReconciliationError
from storesync.services.sync_state import SyncStateTracker
from storesync.workers.arq_enqueue import enqueue_tenant_sync

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/tenants",
    tags=["Sync"],
    dependencies=[Depends(require_admin_key)],
)


def _get_tenant(db: Session, tenant_id: UUID) -> Tenant:
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if not tenant:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
    return tenant


@router.get("/{tenant_id}/sync/status", response_model=TenantSyncStatusResponse)
def get_sync_status(tenant_id: UUID, db: Session = Depends(get_db)) -> TenantSyncStatusResponse:
    """Last-run outcome, watermark and failure count per resource."""
    tenant = _get_tenant(db, tenant_id)
    cursors = SyncStateTracker().status(db, tenant.id)

    return TenantSyncStatusResponse(
        tenant_id=tenant.id,
        shop_domain=tenant.shop_domain,
        is_active=tenant.is_active,
        sync_enabled=tenant.sync_enabled,
        sync_disabled_reason=tenant.sync_disabled_reason,
        resources=[
            SyncCursorStatus(
                resource_type=cursor.resource_type.value,
                last_outcome=cursor.last_outcome.value if cursor.last_outcome else None,
                watermark=cursor.watermark,
                consecutive_failures=cursor.consecutive_failures,
                last_run_at=cursor.last_run_at,
                last_applied_count=cursor.last_applied_count,
                last_malformed_count=cursor.last_malformed_count,
                last_error=cursor.last_error,
            )
            for cursor in cursors
        ],
    )


@router.post(
    "/{tenant_id}/sync",
    response_model=SyncTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_sync(tenant_id: UUID, db: Session = Depends(get_db)) -> SyncTriggerResponse:
    """Queue an on-demand sync for a tenant."""
    tenant = _get_tenant(db, tenant_id)
    if not tenant.is_syncable:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=tenant.sync_disabled_reason or "Tenant is inactive or sync is disabled",
        )

    result = await enqueue_tenant_sync(tenant.id)
    logger.info("[SYNC] Manual sync for %s: %s", tenant.shop_domain, result["status"])
    return SyncTriggerResponse(tenant_id=tenant.id, job_id=result["job_id"], status=result["status"])


@router.post("/{tenant_id}/rejected/replay", response_model=ReplayResponse)
def replay_rejected_records(
    tenant_id: UUID,
    limit: int = Query(500, ge=1, le=5000),
    db: Session = Depends(get_db),
) -> ReplayResponse:
    """Re-merge the tenant's logged malformed records, oldest first.

    Run after fixing the cause of a rejection (handler change or upstream
    data fix). Records still malformed stay pending.
    """
    tenant = _get_tenant(db, tenant_id)
    if not tenant.is_active:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Tenant is inactive")

    try:
        counts = Reconciler().replay_rejected(db, tenant.id, limit=limit)
    except ReconciliationError as e:
        logger.error("[SYNC] Rejected record replay for %s failed: %s", tenant.shop_domain, e)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Replay failed, retry later") from e
    logger.info("[SYNC] Rejected record replay for %s: %s", tenant.shop_domain, counts)
    return ReplayResponse(tenant_id=tenant.id, **counts)
