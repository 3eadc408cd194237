"""Sync State Tracker tests.

REFERENCES:
    - storesync/services/sync_state.py (module under test)
"""

from datetime import datetime

import pytest

from storesync.models import ResourceTypeEnum, SyncCursor, SyncOutcomeEnum
from storesync.services.sync_state import MAX_ERROR_LENGTH, SyncStateTracker, next_failure_count


@pytest.mark.parametrize("current, outcome, applied, expected", [
    (3, SyncOutcomeEnum.success, 0, 0),
    (3, SyncOutcomeEnum.partial, 5, 0),
    (3, SyncOutcomeEnum.partial, 0, 4),
    (3, SyncOutcomeEnum.failed, 0, 4),
    (3, SyncOutcomeEnum.failed, 2, 3),
])
def test_next_failure_count(current, outcome, applied, expected):
    assert next_failure_count(current, outcome, applied) == expected


class TestCommit:

    def test_first_commit_creates_cursor(self, test_db_session, tenant):
        tracker = SyncStateTracker()

        cursor = tracker.commit(
            test_db_session, tenant.id, ResourceTypeEnum.orders,
            watermark=datetime(2025, 3, 1, 10, 0),
            outcome=SyncOutcomeEnum.success,
            applied_count=12,
        )

        assert cursor.watermark == datetime(2025, 3, 1, 10, 0)
        assert cursor.last_outcome == SyncOutcomeEnum.success
        assert cursor.consecutive_failures == 0
        assert cursor.last_applied_count == 12
        assert cursor.last_run_at is not None
        assert test_db_session.query(SyncCursor).count() == 1

    def test_watermark_never_moves_backwards(self, test_db_session, tenant):
        tracker = SyncStateTracker()
        tracker.commit(
            test_db_session, tenant.id, ResourceTypeEnum.orders,
            watermark=datetime(2025, 3, 2), outcome=SyncOutcomeEnum.success,
        )

        older = tracker.commit(
            test_db_session, tenant.id, ResourceTypeEnum.orders,
            watermark=datetime(2025, 3, 1), outcome=SyncOutcomeEnum.success,
        )
        assert older.watermark == datetime(2025, 3, 2)

        missing = tracker.commit(
            test_db_session, tenant.id, ResourceTypeEnum.orders,
            watermark=None, outcome=SyncOutcomeEnum.failed,
        )
        assert missing.watermark == datetime(2025, 3, 2)

    def test_failures_accumulate_until_progress(self, test_db_session, tenant):
        tracker = SyncStateTracker()
        for _ in range(3):
            cursor = tracker.commit(
                test_db_session, tenant.id, ResourceTypeEnum.customers,
                watermark=None, outcome=SyncOutcomeEnum.failed, error="HTTP 500",
            )
        assert cursor.consecutive_failures == 3
        assert cursor.last_error == "HTTP 500"

        cursor = tracker.commit(
            test_db_session, tenant.id, ResourceTypeEnum.customers,
            watermark=datetime(2025, 3, 1), outcome=SyncOutcomeEnum.partial, applied_count=1,
        )
        assert cursor.consecutive_failures == 0
        assert cursor.last_error is None

    def test_page_cursor_is_replaced_on_each_commit(self, test_db_session, tenant):
        tracker = SyncStateTracker()
        cursor = tracker.commit(
            test_db_session, tenant.id, ResourceTypeEnum.events,
            watermark=None, outcome=SyncOutcomeEnum.partial, page_cursor="page-3",
        )
        assert cursor.page_cursor == "page-3"

        cursor = tracker.commit(
            test_db_session, tenant.id, ResourceTypeEnum.events,
            watermark=datetime(2025, 3, 1), outcome=SyncOutcomeEnum.success,
        )
        assert cursor.page_cursor is None
        assert cursor.watermark == datetime(2025, 3, 1)

    def test_long_errors_are_truncated(self, test_db_session, tenant):
        cursor = SyncStateTracker().commit(
            test_db_session, tenant.id, ResourceTypeEnum.products,
            watermark=None, outcome=SyncOutcomeEnum.failed, error="x" * (MAX_ERROR_LENGTH + 500),
        )
        assert len(cursor.last_error) == MAX_ERROR_LENGTH

    def test_cursors_are_per_tenant_and_resource(self, test_db_session, tenant, other_tenant):
        tracker = SyncStateTracker()
        tracker.commit(
            test_db_session, tenant.id, ResourceTypeEnum.orders,
            watermark=datetime(2025, 3, 1), outcome=SyncOutcomeEnum.success,
        )
        tracker.commit(
            test_db_session, tenant.id, ResourceTypeEnum.products,
            watermark=datetime(2025, 2, 1), outcome=SyncOutcomeEnum.partial,
        )
        tracker.commit(
            test_db_session, other_tenant.id, ResourceTypeEnum.orders,
            watermark=datetime(2024, 1, 1), outcome=SyncOutcomeEnum.failed,
        )

        statuses = tracker.status(test_db_session, tenant.id)
        assert {cursor.resource_type for cursor in statuses} == {
            ResourceTypeEnum.orders,
            ResourceTypeEnum.products,
        }
        other = tracker.get_cursor(test_db_session, other_tenant.id, ResourceTypeEnum.orders)
        assert other.watermark == datetime(2024, 1, 1)
        assert tracker.get_cursor(test_db_session, other_tenant.id, ResourceTypeEnum.products) is None
