"""Poll Orchestrator: scheduled and on-demand sync per tenant.

WHAT:
    Walks each resource collection for a tenant through the storefront
    client, merges records one by one through the reconciler, and commits
    the cursor through the sync state tracker once per resource run.

WHY:
    Webhooks can be lost or arrive out of order; polling from a persisted
    watermark is the backstop that brings every tenant to a consistent state.

    Per (tenant, resource) state machine:
        idle -> running -> {succeeded, partial_failure, failed} -> idle
    plus `skipped` when a run for the same pair is already in progress or an
    earlier resource in the same run hit an auth error or was aborted.

    Error policy:
    - RateLimitedError / TransientError / ReconciliationError:
        stop paging this resource, keep progress, partial_failure
    - AuthError:
        failed, tenant sync disabled, remaining resources skipped
    - Tenant deactivated or sync disabled mid-run (checked at every page
      boundary and before every record): aborted, committed as partial

    Id-ordered streams (checkout events) only advance their watermark after
    a complete pass. A pass cut short saves the platform page cursor of the
    first page not fully merged, and the next run resumes there.

REFERENCES:
    - storesync/services/storefront_client.py
    - storesync/services/reconciler.py
    - storesync/services/sync_state.py
    - storesync/workers/arq_worker.py (scheduled and manual trigger)
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from storesync.deps import Settings, get_settings
from storesync.models import RecordSourceEnum, ResourceTypeEnum, SyncOutcomeEnum, Tenant
from storesync.services.reconciler import MergeOutcomeEnum, Reconciler, ReconciliationError
from storesync.services.storefront_client import (
    WATERMARK_ORDERED_RESOURCES,
    AuthError,
    FetchCursor,
    RateLimitedError,
    StorefrontAPIError,
    StorefrontClient,
    TenantCredentials,
    TransientError,
)
from storesync.services.sync_state import SyncStateTracker
from storesync.services import tenant_service
from storesync.telemetry import capture_exception, capture_message, set_tenant_context

logger = logging.getLogger(__name__)

# Products first so line items can be matched to already-ingested products
RESOURCE_SYNC_ORDER: Tuple[ResourceTypeEnum, ...] = (
    ResourceTypeEnum.products,
    ResourceTypeEnum.customers,
    ResourceTypeEnum.orders,
    ResourceTypeEnum.events,
)


class RunState(str, enum.Enum):
    idle = "idle"
    running = "running"
    succeeded = "succeeded"
    partial_failure = "partial_failure"
    failed = "failed"
    aborted = "aborted"
    skipped = "skipped"


_COMMIT_OUTCOMES = {
    RunState.succeeded: SyncOutcomeEnum.success,
    RunState.partial_failure: SyncOutcomeEnum.partial,
    RunState.aborted: SyncOutcomeEnum.partial,
    RunState.failed: SyncOutcomeEnum.failed,
}


class SyncAborted(Exception):
    """Tenant was deactivated or had sync disabled while a run was in flight."""


# =============================================================================
# REPORT TYPES
# =============================================================================

@dataclass
class ResourceRunResult:
    resource_type: ResourceTypeEnum
    state: RunState = RunState.idle
    mode: str = "incremental"  # "full" when no cursor existed
    pages: int = 0
    applied: int = 0
    stale: int = 0
    malformed: int = 0
    watermark: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_type": self.resource_type.value,
            "state": self.state.value,
            "mode": self.mode,
            "pages": self.pages,
            "applied": self.applied,
            "stale": self.stale,
            "malformed": self.malformed,
            "watermark": self.watermark.isoformat() if self.watermark else None,
            "error": self.error,
        }


@dataclass
class SyncReport:
    """Per-resource outcome of one tenant sync."""
    tenant_id: UUID
    results: Dict[ResourceTypeEnum, ResourceRunResult] = field(default_factory=dict)
    tenant_disabled: bool = False
    aborted: bool = False
    message: str = ""
    duration_seconds: float = 0.0

    def outcome(self, resource_type: ResourceTypeEnum) -> RunState:
        result = self.results.get(resource_type)
        return result.state if result else RunState.skipped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": str(self.tenant_id),
            "tenant_disabled": self.tenant_disabled,
            "aborted": self.aborted,
            "message": self.message,
            "duration_seconds": round(self.duration_seconds, 3),
            "results": {rt.value: result.to_dict() for rt, result in self.results.items()},
        }


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class PollOrchestrator:
    """Runs tenant syncs; one instance per worker process.

    Usage:
        orchestrator = PollOrchestrator()
        report = await orchestrator.run_tenant_sync(tenant_id)
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        client: Optional[StorefrontClient] = None,
        reconciler: Optional[Reconciler] = None,
        tracker: Optional[SyncStateTracker] = None,
        settings: Optional[Settings] = None,
    ):
        if session_factory is None:
            from storesync.database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.client = client or StorefrontClient(self.settings)
        self.reconciler = reconciler or Reconciler()
        self.tracker = tracker or SyncStateTracker()
        self._running: Set[Tuple[UUID, ResourceTypeEnum]] = set()

    def is_running(self, tenant_id: UUID, resource_type: ResourceTypeEnum) -> bool:
        return (tenant_id, resource_type) in self._running

    async def run_all_tenants(self) -> List[SyncReport]:
        """Sync every syncable tenant concurrently, bounded by POLL_CONCURRENCY."""
        db = self.session_factory()
        try:
            tenant_ids = [tenant.id for tenant in tenant_service.list_syncable_tenants(db)]
        finally:
            db.close()

        semaphore = asyncio.Semaphore(max(self.settings.POLL_CONCURRENCY, 1))

        async def _bounded(tenant_id: UUID) -> SyncReport:
            async with semaphore:
                return await self.run_tenant_sync(tenant_id)

        logger.info("[POLL_SYNC] Starting cycle for %d tenants", len(tenant_ids))
        reports = await asyncio.gather(*[_bounded(tenant_id) for tenant_id in tenant_ids])
        return list(reports)

    async def run_tenant_sync(self, tenant_id: UUID) -> SyncReport:
        """Sync all resources for one tenant in RESOURCE_SYNC_ORDER.

        Returns:
            SyncReport with a RunState per resource
        """
        start_time = time.time()
        report = SyncReport(tenant_id=tenant_id)
        db = self.session_factory()

        try:
            tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
            if tenant is None or not tenant.is_syncable:
                report.message = "Tenant not found or sync disabled"
                logger.info("[POLL_SYNC] Skipping tenant %s: %s", tenant_id, report.message)
                self._mark_skipped(report, RESOURCE_SYNC_ORDER)
                return report

            set_tenant_context(str(tenant.id), tenant.shop_domain)
            try:
                credentials = tenant_service.load_credentials(tenant)
            except ValueError as e:
                report.tenant_disabled = True
                report.message = f"Stored credential unusable: {e}"
                tenant_service.disable_sync(db, tenant, reason="credential_unreadable")
                self._mark_skipped(report, RESOURCE_SYNC_ORDER)
                return report

            for index, resource_type in enumerate(RESOURCE_SYNC_ORDER):
                key = (tenant_id, resource_type)
                if key in self._running:
                    logger.info(
                        "[POLL_SYNC] %s/%s already running, skipping",
                        tenant.shop_domain, resource_type.value,
                    )
                    report.results[resource_type] = ResourceRunResult(resource_type, state=RunState.skipped)
                    continue

                self._running.add(key)
                try:
                    result = await self._run_resource(db, tenant, credentials, resource_type, report)
                finally:
                    self._running.discard(key)
                report.results[resource_type] = result

                if report.tenant_disabled or report.aborted:
                    self._mark_skipped(report, RESOURCE_SYNC_ORDER[index + 1:])
                    break

            report.message = ", ".join(
                f"{rt.value}={result.state.value}" for rt, result in report.results.items()
            )
            return report

        finally:
            report.duration_seconds = time.time() - start_time
            db.close()
            logger.info(
                "[POLL_SYNC] Tenant %s finished in %.2fs: %s",
                tenant_id, report.duration_seconds, report.message,
            )

    async def _run_resource(
        self,
        db: Session,
        tenant: Tenant,
        credentials: TenantCredentials,
        resource_type: ResourceTypeEnum,
        report: SyncReport,
    ) -> ResourceRunResult:
        cursor = self.tracker.get_cursor(db, tenant.id, resource_type)
        stored_watermark = cursor.watermark if cursor else None
        ordered = resource_type in WATERMARK_ORDERED_RESOURCES
        resume_after = cursor.page_cursor if cursor is not None and not ordered else None

        result = ResourceRunResult(resource_type=resource_type, state=RunState.running)
        if stored_watermark is None:
            result.mode = "full"
            since = self._earliest_watermark()
        else:
            since = stored_watermark

        logger.info(
            "[POLL_SYNC] %s/%s %s sync from %s",
            tenant.shop_domain, resource_type.value, result.mode,
            since.isoformat() if since else "earliest",
        )
        if resume_after:
            logger.info(
                "[POLL_SYNC] %s/%s resuming unfinished pass at page cursor",
                tenant.shop_domain, resource_type.value,
            )

        tenant_id = tenant.id
        watermark = stored_watermark
        fetch_cursor = FetchCursor(since=since, after=resume_after)
        capped = False
        pass_complete = False

        try:
            while True:
                self._checkpoint(db, tenant_id)

                if result.pages >= self.settings.POLL_MAX_PAGES:
                    capped = True
                    logger.warning(
                        "[POLL_SYNC] %s/%s hit page cap (%d), resuming next cycle",
                        tenant.shop_domain, resource_type.value, self.settings.POLL_MAX_PAGES,
                    )
                    break

                page = await self.client.fetch(credentials, resource_type, fetch_cursor)
                result.pages += 1

                for raw in page.records:
                    self._checkpoint(db, tenant_id)
                    merged = self.reconciler.merge(
                        db, tenant_id, resource_type, raw, source=RecordSourceEnum.poll
                    )
                    if merged.outcome == MergeOutcomeEnum.malformed:
                        result.malformed += 1
                        continue
                    if merged.outcome == MergeOutcomeEnum.applied:
                        result.applied += 1
                    else:
                        result.stale += 1
                    if merged.watermark and (watermark is None or merged.watermark > watermark):
                        watermark = merged.watermark

                if not page.next_cursor:
                    pass_complete = True
                    break
                fetch_cursor = FetchCursor(since=since, after=page.next_cursor)

            if result.malformed or capped:
                result.state = RunState.partial_failure
                if capped:
                    result.error = f"Page cap of {self.settings.POLL_MAX_PAGES} reached"
            else:
                result.state = RunState.succeeded

        except (RateLimitedError, TransientError) as e:
            result.state = RunState.partial_failure
            result.error = f"{type(e).__name__}: {e}"
            logger.warning(
                "[POLL_SYNC] %s/%s stopped after %d pages: %s",
                tenant.shop_domain, resource_type.value, result.pages, result.error,
            )

        except ReconciliationError as e:
            result.state = RunState.partial_failure
            result.error = f"ReconciliationError: {e}"
            logger.warning(
                "[POLL_SYNC] %s/%s reconciliation failed, deferring to next cycle: %s",
                tenant.shop_domain, resource_type.value, e,
            )

        except AuthError as e:
            result.state = RunState.failed
            result.error = f"AuthError: {e}"
            report.tenant_disabled = True
            tenant_service.disable_sync(db, tenant, reason=f"auth_error: {e}")
            capture_message(
                "Tenant sync disabled after credential rejection",
                level="warning",
                extra={"tenant_id": str(tenant_id), "shop_domain": tenant.shop_domain},
            )

        except SyncAborted as e:
            result.state = RunState.aborted
            result.error = str(e)
            report.aborted = True
            logger.info("[POLL_SYNC] %s/%s aborted: %s", tenant.shop_domain, resource_type.value, e)

        except StorefrontAPIError as e:
            result.state = RunState.failed
            result.error = f"StorefrontAPIError: {e}"
            logger.error("[POLL_SYNC] %s/%s API error: %s", tenant.shop_domain, resource_type.value, e)

        except Exception as e:
            result.state = RunState.failed
            result.error = f"Unexpected error: {e}"
            logger.exception("[POLL_SYNC] %s/%s failed unexpectedly", tenant.shop_domain, resource_type.value)
            capture_exception(e, extra={
                "tenant_id": str(tenant_id),
                "resource_type": resource_type.value,
                "pages": result.pages,
            })
            db.rollback()

        page_cursor = None
        if not ordered and not pass_complete:
            # Id-ordered streams only move their watermark after a full pass.
            # An unfinished pass resumes at the first page not fully merged;
            # a failed one starts over.
            watermark = stored_watermark
            if result.state != RunState.failed:
                page_cursor = fetch_cursor.after

        result.watermark = watermark
        self.tracker.commit(
            db,
            tenant_id,
            resource_type,
            watermark=watermark,
            outcome=_COMMIT_OUTCOMES[result.state],
            applied_count=result.applied,
            malformed_count=result.malformed,
            error=result.error,
            page_cursor=page_cursor,
        )
        return result

    def _checkpoint(self, db: Session, tenant_id: UUID) -> None:
        """Abort if the tenant was deactivated or had sync disabled."""
        row = (
            db.query(Tenant.is_active, Tenant.sync_enabled)
            .filter(Tenant.id == tenant_id)
            .first()
        )
        if row is None or not row.is_active:
            raise SyncAborted("tenant deactivated")
        if not row.sync_enabled:
            raise SyncAborted("tenant sync disabled")

    def _earliest_watermark(self) -> Optional[datetime]:
        if self.settings.FULL_SYNC_LOOKBACK_DAYS:
            return datetime.utcnow() - timedelta(days=self.settings.FULL_SYNC_LOOKBACK_DAYS)
        return None

    def _mark_skipped(self, report: SyncReport, resource_types) -> None:
        for resource_type in resource_types:
            report.results.setdefault(
                resource_type, ResourceRunResult(resource_type, state=RunState.skipped)
            )
