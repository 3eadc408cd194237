"""HTTP-level tests for the webhook and sync routers.

WHAT:
    Status codes returned to the platform for each admission result, the
    background reconciliation of admitted deliveries, and the admin-guarded
    sync endpoints.

REFERENCES:
    - storesync/routers/webhooks.py
    - storesync/routers/sync.py
"""

import uuid
from datetime import datetime
from unittest.mock import AsyncMock, patch

from storesync.models import Order, Product, RejectedRecord, ResourceTypeEnum, SyncOutcomeEnum, WebhookDelivery
from storesync.services.reconciler import Reconciler
from storesync.services.sync_state import SyncStateTracker
from storesync.services.tenant_service import deactivate_tenant, disable_sync
from storesync.tests.payloads import order_payload, sign, webhook_request


def _post_webhook(client, payload, topic="orders/create", **kwargs):
    body, headers = webhook_request(payload, topic=topic, **kwargs)
    return client.post(f"/webhooks/storefront/{topic}", content=body, headers=headers)


class TestWebhookRoutes:

    def test_admitted_delivery_is_reconciled_in_background(self, client, test_db_session, tenant):
        response = _post_webhook(client, order_payload(), delivery_id="d-1")

        assert response.status_code == 200
        assert response.json() == {"message": "Webhook admitted", "delivery_id": "d-1", "duplicate": False}

        order = test_db_session.query(Order).one()
        assert order.tenant_id == tenant.id
        assert order.external_id == "1001"

    def test_duplicate_delivery_is_acknowledged(self, client, test_db_session, tenant):
        _post_webhook(client, order_payload(), delivery_id="d-1")

        response = _post_webhook(client, order_payload(total_price="99.00"), delivery_id="d-1")

        assert response.status_code == 200
        assert response.json()["duplicate"] is True
        assert test_db_session.query(WebhookDelivery).count() == 1

    def test_bad_signature_is_401(self, client, test_db_session, tenant):
        response = _post_webhook(client, order_payload(), delivery_id="d-1", secret="wrong")

        assert response.status_code == 401
        assert test_db_session.query(WebhookDelivery).count() == 0

    def test_unknown_tenant_is_404(self, client, tenant):
        response = _post_webhook(
            client, order_payload(), delivery_id="d-1", shop_domain="nobody.myshopify.com",
        )
        assert response.status_code == 404

    def test_non_json_body_is_400(self, client, tenant):
        body = b"{not json"
        headers = {
            "X-Shopify-Hmac-Sha256": sign(body),
            "X-Shopify-Shop-Domain": "acme.myshopify.com",
            "X-Shopify-Webhook-Id": "d-1",
            "X-Shopify-Topic": "orders/create",
        }

        response = client.post("/webhooks/storefront/orders/create", content=body, headers=headers)

        assert response.status_code == 400

    def test_malformed_record_still_acknowledged(self, client, test_db_session, tenant):
        response = _post_webhook(client, order_payload(total_price=None), delivery_id="d-1")

        assert response.status_code == 200
        assert test_db_session.query(Order).count() == 0


class TestSyncRoutes:

    def test_status_requires_admin_key(self, client, tenant):
        response = client.get(f"/tenants/{tenant.id}/sync/status")
        assert response.status_code == 401

        response = client.get(f"/tenants/{tenant.id}/sync/status", headers={"X-Admin-Key": "nope"})
        assert response.status_code == 401

    def test_status_lists_cursors(self, client, admin_headers, test_db_session, tenant):
        SyncStateTracker().commit(
            test_db_session, tenant.id, ResourceTypeEnum.orders,
            watermark=datetime(2025, 3, 1, 10, 0),
            outcome=SyncOutcomeEnum.partial,
            applied_count=4,
            malformed_count=1,
        )

        response = client.get(f"/tenants/{tenant.id}/sync/status", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["shop_domain"] == "acme.myshopify.com"
        assert data["sync_enabled"] is True
        (orders,) = data["resources"]
        assert orders["resource_type"] == "orders"
        assert orders["last_outcome"] == "partial"
        assert orders["last_applied_count"] == 4
        assert orders["last_malformed_count"] == 1
        assert orders["watermark"].startswith("2025-03-01T10:00:00")

    def test_status_unknown_tenant_is_404(self, client, admin_headers):
        response = client.get(f"/tenants/{uuid.uuid4()}/sync/status", headers=admin_headers)
        assert response.status_code == 404

    def test_manual_sync_enqueues_job(self, client, admin_headers, tenant):
        job = {"job_id": f"tenant-sync:{tenant.id}", "status": "enqueued"}
        with patch("storesync.routers.sync.enqueue_tenant_sync", new=AsyncMock(return_value=job)) as enqueue:
            response = client.post(f"/tenants/{tenant.id}/sync", headers=admin_headers)

        assert response.status_code == 202
        assert response.json() == {"tenant_id": str(tenant.id), **job}
        enqueue.assert_awaited_once_with(tenant.id)

    def test_manual_sync_for_disabled_tenant_is_409(self, client, admin_headers, test_db_session, tenant):
        disable_sync(test_db_session, tenant, reason="auth_error: HTTP 401")

        with patch("storesync.routers.sync.enqueue_tenant_sync", new=AsyncMock()) as enqueue:
            response = client.post(f"/tenants/{tenant.id}/sync", headers=admin_headers)

        assert response.status_code == 409
        assert response.json()["detail"] == "auth_error: HTTP 401"
        enqueue.assert_not_awaited()

    def test_replay_rejected_records(self, client, admin_headers, test_db_session, tenant):
        reconciler = Reconciler()
        for product_id in (1, 2):
            reconciler.merge(
                test_db_session, tenant.id, ResourceTypeEnum.products,
                {"id": product_id, "updated_at": "2025-03-01T10:00:00Z"},
            )
        fixed = test_db_session.query(RejectedRecord).filter(RejectedRecord.external_id == "1").one()
        fixed.payload = {"id": 1, "title": "Mug", "updated_at": "2025-03-01T10:00:00Z"}
        test_db_session.commit()

        response = client.post(f"/tenants/{tenant.id}/rejected/replay", headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {"tenant_id": str(tenant.id), "replayed": 1, "still_malformed": 1}
        assert test_db_session.query(Product).count() == 1

    def test_replay_requires_admin_key(self, client, tenant):
        response = client.post(f"/tenants/{tenant.id}/rejected/replay")
        assert response.status_code == 401

    def test_replay_for_inactive_tenant_is_409(self, client, admin_headers, test_db_session, tenant):
        deactivate_tenant(test_db_session, tenant)

        response = client.post(f"/tenants/{tenant.id}/rejected/replay", headers=admin_headers)

        assert response.status_code == 409


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
