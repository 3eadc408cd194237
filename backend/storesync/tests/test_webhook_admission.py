"""Webhook admission and delivery processing tests.

WHAT:
    Signature verification, tenant resolution, duplicate rejection, and the
    processing path from an admitted delivery to canonical rows.

REFERENCES:
    - storesync/services/webhook_admission.py (module under test)
    - storesync/security.py (signature helpers)
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from storesync.models import (
    DeliveryOutcomeEnum,
    Order,
    RecordSourceEnum,
    RejectedRecord,
    ResourceTypeEnum,
    StoreEvent,
    WebhookDelivery,
)
from storesync.security import compute_webhook_signature, verify_webhook_signature
from storesync.services.tenant_service import deactivate_tenant
from storesync.services.webhook_admission import (
    AdmittedEvent,
    Rejected,
    RejectionReason,
    WebhookAdmitter,
    delivery_record,
    process_delivery,
    prune_expired_deliveries,
    reprocess_pending_deliveries,
)
from storesync.tests.payloads import WEBHOOK_SECRET, order_payload, webhook_request


@pytest.fixture
def admitter():
    return WebhookAdmitter(secret=WEBHOOK_SECRET)


def _admit(db, admitter, payload, **kwargs):
    topic = kwargs.pop("topic", "orders/updated")
    body, headers = webhook_request(payload, topic=topic, **kwargs)
    return admitter.admit(db, body, headers, topic=topic)


class TestSignature:

    def test_signature_round_trip(self):
        body = b'{"id": 1}'
        signature = compute_webhook_signature(body, "secret")
        assert verify_webhook_signature(body, signature, "secret") is True
        assert verify_webhook_signature(body + b" ", signature, "secret") is False

    def test_missing_secret_or_header_never_verifies(self):
        body = b'{"id": 1}'
        assert verify_webhook_signature(body, None, "secret") is False
        assert verify_webhook_signature(body, compute_webhook_signature(body, ""), "") is False


class TestAdmission:

    def test_valid_delivery_is_admitted_and_recorded(self, test_db_session, tenant, admitter):
        result = _admit(test_db_session, admitter, order_payload(), delivery_id="d-1")

        assert isinstance(result, AdmittedEvent)
        assert result.tenant_id == tenant.id
        assert result.resource_type == ResourceTypeEnum.orders
        assert result.is_deletion is False

        delivery = test_db_session.query(WebhookDelivery).one()
        assert delivery.delivery_id == "d-1"
        assert delivery.outcome == DeliveryOutcomeEnum.admitted
        assert delivery.payload["id"] == 1001

    def test_invalid_signature_is_rejected_before_anything_is_stored(self, test_db_session, tenant, admitter):
        result = _admit(test_db_session, admitter, order_payload(), delivery_id="d-1", secret="wrong-secret")

        assert isinstance(result, Rejected)
        assert result.reason == RejectionReason.invalid_signature
        assert test_db_session.query(WebhookDelivery).count() == 0

    def test_missing_signature_is_rejected(self, test_db_session, tenant, admitter):
        result = _admit(test_db_session, admitter, order_payload(), delivery_id="d-1", secret=None)
        assert result.reason == RejectionReason.invalid_signature

    def test_unknown_tenant(self, test_db_session, tenant, admitter):
        result = _admit(
            test_db_session, admitter, order_payload(),
            delivery_id="d-1", shop_domain="nobody.myshopify.com",
        )
        assert result.reason == RejectionReason.unknown_tenant

    def test_inactive_tenant_is_unknown(self, test_db_session, tenant, admitter):
        deactivate_tenant(test_db_session, tenant)

        result = _admit(test_db_session, admitter, order_payload(), delivery_id="d-1")

        assert result.reason == RejectionReason.unknown_tenant
        assert test_db_session.query(WebhookDelivery).count() == 0

    def test_payload_domain_claim_must_match_header(self, test_db_session, tenant, other_tenant, admitter):
        payload = order_payload(shop_domain="globex.myshopify.com")

        result = _admit(test_db_session, admitter, payload, delivery_id="d-1")

        assert result.reason == RejectionReason.unknown_tenant

    def test_duplicate_delivery_rejected_regardless_of_payload(self, test_db_session, tenant, admitter):
        first = _admit(test_db_session, admitter, order_payload(), delivery_id="d-1")
        second = _admit(
            test_db_session, admitter,
            order_payload(updated_at="2025-04-01T00:00:00Z", total_price="1.00"),
            delivery_id="d-1",
        )

        assert isinstance(first, AdmittedEvent)
        assert isinstance(second, Rejected)
        assert second.reason == RejectionReason.duplicate
        assert test_db_session.query(WebhookDelivery).count() == 1

    def test_same_delivery_id_for_different_tenants(self, test_db_session, tenant, other_tenant, admitter):
        first = _admit(test_db_session, admitter, order_payload(), delivery_id="d-1")
        second = _admit(
            test_db_session, admitter, order_payload(),
            delivery_id="d-1", shop_domain="globex.myshopify.com",
        )

        assert isinstance(first, AdmittedEvent)
        assert isinstance(second, AdmittedEvent)

    def test_non_json_body(self, test_db_session, tenant, admitter):
        body = b"not json"
        headers = {
            "X-Shopify-Hmac-Sha256": compute_webhook_signature(body, WEBHOOK_SECRET),
            "X-Shopify-Shop-Domain": "acme.myshopify.com",
            "X-Shopify-Webhook-Id": "d-1",
        }

        result = admitter.admit(test_db_session, body, headers, topic="orders/create")

        assert result.reason == RejectionReason.malformed_payload

    def test_missing_delivery_id(self, test_db_session, tenant, admitter):
        result = _admit(test_db_session, admitter, order_payload(), delivery_id="  ")
        assert result.reason == RejectionReason.malformed_payload

    def test_unsupported_topic(self, test_db_session, tenant, admitter):
        result = _admit(test_db_session, admitter, {"id": 1}, topic="app/uninstalled", delivery_id="d-1")
        assert result.reason == RejectionReason.unsupported_topic


class TestProcessing:

    def test_admitted_delivery_is_applied(self, test_db_session, tenant, admitter):
        admitted = _admit(test_db_session, admitter, order_payload(), delivery_id="d-1")

        outcome = process_delivery(test_db_session, admitted.delivery_record_id)

        assert outcome == DeliveryOutcomeEnum.applied
        order = test_db_session.query(Order).one()
        assert order.tenant_id == tenant.id
        assert order.total_price == Decimal("45.00")

        delivery = test_db_session.query(WebhookDelivery).one()
        assert delivery.outcome == DeliveryOutcomeEnum.applied
        assert delivery.processed_at is not None
        assert delivery.attempts == 1

    def test_processing_twice_is_a_no_op(self, test_db_session, tenant, admitter):
        admitted = _admit(test_db_session, admitter, order_payload(), delivery_id="d-1")
        process_delivery(test_db_session, admitted.delivery_record_id)

        assert process_delivery(test_db_session, admitted.delivery_record_id) is None

    def test_out_of_order_delivery_is_stale(self, test_db_session, tenant, admitter):
        newer = _admit(
            test_db_session, admitter,
            order_payload(updated_at="2025-03-01T12:00:00Z", financial_status="refunded"),
            delivery_id="d-2",
        )
        older = _admit(
            test_db_session, admitter,
            order_payload(updated_at="2025-03-01T10:00:00Z", financial_status="paid"),
            delivery_id="d-1",
        )

        assert process_delivery(test_db_session, newer.delivery_record_id) == DeliveryOutcomeEnum.applied
        assert process_delivery(test_db_session, older.delivery_record_id) == DeliveryOutcomeEnum.stale

        test_db_session.expire_all()
        order = test_db_session.query(Order).one()
        assert order.financial_status == "refunded"
        assert order.revision == 1

    def test_malformed_payload_is_logged_with_webhook_source(self, test_db_session, tenant, admitter):
        admitted = _admit(
            test_db_session, admitter, order_payload(total_price=None), delivery_id="d-1",
        )

        assert process_delivery(test_db_session, admitted.delivery_record_id) == DeliveryOutcomeEnum.malformed
        rejected = test_db_session.query(RejectedRecord).one()
        assert rejected.source == RecordSourceEnum.webhook
        assert test_db_session.query(Order).count() == 0

    def test_deletion_topic_removes_record(self, test_db_session, tenant, admitter):
        created = _admit(test_db_session, admitter, order_payload(), delivery_id="d-1")
        process_delivery(test_db_session, created.delivery_record_id)

        deleted = _admit(test_db_session, admitter, {"id": 1001}, topic="orders/delete", delivery_id="d-2")
        assert deleted.is_deletion is True

        assert process_delivery(test_db_session, deleted.delivery_record_id) == DeliveryOutcomeEnum.deleted
        assert test_db_session.query(Order).count() == 0

    def test_update_delivered_after_deletion_is_stale(self, test_db_session, tenant, admitter):
        created = _admit(test_db_session, admitter, order_payload(), delivery_id="d-1")
        process_delivery(test_db_session, created.delivery_record_id)
        deleted = _admit(test_db_session, admitter, {"id": 1001}, topic="orders/delete", delivery_id="d-2")
        process_delivery(test_db_session, deleted.delivery_record_id)

        late = _admit(
            test_db_session, admitter, order_payload(updated_at="2025-03-01T11:00:00Z"),
            topic="orders/updated", delivery_id="d-3",
        )

        assert process_delivery(test_db_session, late.delivery_record_id) == DeliveryOutcomeEnum.stale
        assert test_db_session.query(Order).count() == 0

    def test_tenant_deactivated_after_admission_aborts(self, test_db_session, tenant, admitter):
        admitted = _admit(test_db_session, admitter, order_payload(), delivery_id="d-1")
        deactivate_tenant(test_db_session, tenant)

        assert process_delivery(test_db_session, admitted.delivery_record_id) == DeliveryOutcomeEnum.aborted
        assert test_db_session.query(Order).count() == 0

    def test_cart_topic_sets_event_type(self):
        record = delivery_record("carts/update", {"id": 5, "updated_at": "2025-03-01T10:00:00Z"})
        assert record["event_type"] == "cart"
        assert delivery_record("checkouts/create", {"id": 5})["event_type"] == "checkout"

    def test_cart_delivery_lands_in_events(self, test_db_session, tenant, admitter):
        admitted = _admit(
            test_db_session, admitter,
            {"id": 5, "token": "abc", "updated_at": "2025-03-01T10:00:00Z", "line_items": []},
            topic="carts/create", delivery_id="d-1",
        )

        process_delivery(test_db_session, admitted.delivery_record_id)

        event = test_db_session.query(StoreEvent).one()
        assert event.external_id == "cart:5"
        assert event.line_item_count == 0


class TestSweeps:

    def test_reprocess_picks_up_stuck_deliveries(self, test_db_session, tenant, admitter):
        admitted = _admit(test_db_session, admitter, order_payload(), delivery_id="d-1")
        test_db_session.query(WebhookDelivery).update(
            {WebhookDelivery.received_at: datetime.utcnow() - timedelta(minutes=30)}
        )
        test_db_session.commit()

        counts = reprocess_pending_deliveries(test_db_session, older_than_minutes=10)

        assert counts == {"pending": 1, "processed": 1, "deferred": 0}
        assert test_db_session.query(Order).count() == 1
        delivery = test_db_session.query(WebhookDelivery).filter(
            WebhookDelivery.id == admitted.delivery_record_id
        ).one()
        assert delivery.outcome == DeliveryOutcomeEnum.applied

    def test_reprocess_ignores_fresh_deliveries(self, test_db_session, tenant, admitter):
        _admit(test_db_session, admitter, order_payload(), delivery_id="d-1")

        counts = reprocess_pending_deliveries(test_db_session, older_than_minutes=10)

        assert counts["pending"] == 0

    def test_prune_removes_only_expired_records(self, test_db_session, tenant, admitter):
        _admit(test_db_session, admitter, order_payload(), delivery_id="old")
        _admit(test_db_session, admitter, order_payload(), delivery_id="new")
        test_db_session.query(WebhookDelivery).filter(WebhookDelivery.delivery_id == "old").update(
            {WebhookDelivery.received_at: datetime.utcnow() - timedelta(hours=100)}
        )
        test_db_session.commit()

        assert prune_expired_deliveries(test_db_session, retention_hours=72) == 1
        remaining = test_db_session.query(WebhookDelivery).one()
        assert remaining.delivery_id == "new"

    def test_pruned_delivery_id_is_admitted_again(self, test_db_session, tenant, admitter):
        _admit(test_db_session, admitter, order_payload(), delivery_id="d-1")
        test_db_session.query(WebhookDelivery).update(
            {WebhookDelivery.received_at: datetime.utcnow() - timedelta(hours=100)}
        )
        test_db_session.commit()
        prune_expired_deliveries(test_db_session, retention_hours=72)

        again = _admit(test_db_session, admitter, order_payload(), delivery_id="d-1")

        assert isinstance(again, AdmittedEvent)
