"""Sync State Tracker: per tenant/resource poll cursors.

WHAT:
    Reads and commits SyncCursor rows: the resume watermark, the platform
    page cursor of an unfinished pass, and the last-run outcome. `commit` is
    the only code path that writes a cursor and the poll orchestrator calls
    it exactly once per resource run, whatever the outcome.

WHY:
    Cursors are passed explicitly into and out of each run instead of living
    in shared scheduler state, so concurrent tenants never see each other's
    progress and the status API always reflects the most recent attempt.

    Failure accounting:
    - success, or partial with at least one applied record -> reset to 0
    - failed or partial with nothing applied               -> +1
    - failed after applying records                        -> unchanged

REFERENCES:
    - storesync/models.py::SyncCursor
    - storesync/routers/sync.py (status consumer)
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storesync.models import ResourceTypeEnum, SyncCursor, SyncOutcomeEnum

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


def next_failure_count(current: int, outcome: SyncOutcomeEnum, applied_count: int) -> int:
    """Consecutive-failure counter after a run with `outcome`."""
    if outcome == SyncOutcomeEnum.success:
        return 0
    if applied_count > 0:
        return 0 if outcome == SyncOutcomeEnum.partial else current
    return current + 1


class SyncStateTracker:
    """Cursor persistence for the poll orchestrator."""

    def get_cursor(
        self,
        db: Session,
        tenant_id: UUID,
        resource_type: ResourceTypeEnum,
    ) -> Optional[SyncCursor]:
        return (
            db.query(SyncCursor)
            .filter(
                SyncCursor.tenant_id == tenant_id,
                SyncCursor.resource_type == resource_type,
            )
            .first()
        )

    def commit(
        self,
        db: Session,
        tenant_id: UUID,
        resource_type: ResourceTypeEnum,
        *,
        watermark: Optional[datetime],
        outcome: SyncOutcomeEnum,
        applied_count: int = 0,
        malformed_count: int = 0,
        error: Optional[str] = None,
        page_cursor: Optional[str] = None,
    ) -> SyncCursor:
        """Record the result of one orchestrated run.

        The stored watermark only moves forward: a None or older watermark
        keeps the existing one. `page_cursor` is replaced on every commit;
        None means the next run starts a fresh pass.
        """
        for attempt in (1, 2):
            cursor = self.get_cursor(db, tenant_id, resource_type)
            if cursor is None:
                cursor = SyncCursor(
                    tenant_id=tenant_id,
                    resource_type=resource_type,
                    consecutive_failures=0,
                )
                db.add(cursor)

            if watermark is not None and (cursor.watermark is None or watermark > cursor.watermark):
                cursor.watermark = watermark

            cursor.page_cursor = page_cursor
            cursor.last_run_at = datetime.utcnow()
            cursor.last_outcome = outcome
            cursor.consecutive_failures = next_failure_count(
                cursor.consecutive_failures or 0, outcome, applied_count
            )
            cursor.last_applied_count = applied_count
            cursor.last_malformed_count = malformed_count
            cursor.last_error = error[:MAX_ERROR_LENGTH] if error else None

            try:
                db.commit()
                break
            except IntegrityError:
                # First run for this pair raced with another worker's first run
                db.rollback()
                if attempt == 2:
                    raise

        logger.info(
            "[SYNC_STATE] %s/%s -> %s (applied=%d malformed=%d failures=%d watermark=%s)",
            tenant_id, resource_type.value, outcome.value, applied_count, malformed_count,
            cursor.consecutive_failures,
            cursor.watermark.isoformat() if cursor.watermark else None,
        )
        return cursor

    def status(self, db: Session, tenant_id: UUID) -> List[SyncCursor]:
        """All cursors for a tenant, for the status API."""
        return (
            db.query(SyncCursor)
            .filter(SyncCursor.tenant_id == tenant_id)
            .order_by(SyncCursor.resource_type)
            .all()
        )
