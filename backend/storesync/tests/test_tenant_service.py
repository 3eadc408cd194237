"""Tenant lifecycle tests: onboarding, credential storage, sync gating.

REFERENCES:
    - storesync/services/tenant_service.py
"""

import asyncio

import pytest

from storesync.models import Tenant
from storesync.services.poll_orchestrator import PollOrchestrator, RunState
from storesync.services.tenant_service import (
    deactivate_tenant,
    disable_sync,
    list_syncable_tenants,
    load_credentials,
    normalize_shop_domain,
    onboard_tenant,
    resolve_tenant_by_domain,
    rotate_credential,
)


@pytest.mark.parametrize("raw, expected", [
    ("acme.myshopify.com", "acme.myshopify.com"),
    ("  ACME.myshopify.com ", "acme.myshopify.com"),
    ("https://acme.myshopify.com/admin", "acme.myshopify.com"),
    ("acme.myshopify.com.", "acme.myshopify.com"),
    ("", ""),
])
def test_normalize_shop_domain(raw, expected):
    assert normalize_shop_domain(raw) == expected


class TestOnboarding:

    def test_credential_is_encrypted_at_rest(self, test_db_session, tenant):
        assert tenant.credential_enc != "shpat_acme_test"
        assert load_credentials(tenant).access_token == "shpat_acme_test"

    def test_credentials_repr_hides_token(self, tenant):
        assert "shpat_acme_test" not in repr(load_credentials(tenant))

    def test_duplicate_domain_rejected(self, test_db_session, tenant):
        with pytest.raises(ValueError):
            onboard_tenant(test_db_session, name="Again", shop_domain="https://ACME.myshopify.com", access_token="x")

    def test_empty_domain_rejected(self, test_db_session):
        with pytest.raises(ValueError):
            onboard_tenant(test_db_session, name="Nobody", shop_domain="  ", access_token="x")

    def test_corrupt_credential_raises_value_error(self, test_db_session, tenant):
        tenant.credential_enc = "not-a-fernet-token"
        with pytest.raises(ValueError):
            load_credentials(tenant)


class TestSyncGating:

    def test_resolve_ignores_inactive_tenants(self, test_db_session, tenant):
        assert resolve_tenant_by_domain(test_db_session, "Acme.myshopify.com").id == tenant.id

        deactivate_tenant(test_db_session, tenant)

        assert resolve_tenant_by_domain(test_db_session, "acme.myshopify.com") is None
        assert resolve_tenant_by_domain(test_db_session, None) is None

    def test_disabled_sync_is_not_listed(self, test_db_session, tenant, other_tenant):
        disable_sync(test_db_session, other_tenant, reason="auth_error: HTTP 403")

        assert [t.id for t in list_syncable_tenants(test_db_session)] == [tenant.id]
        assert other_tenant.is_syncable is False
        # Disabled sync does not stop webhook admission
        assert resolve_tenant_by_domain(test_db_session, "globex.myshopify.com") is not None

    def test_rotation_restores_sync(self, test_db_session, tenant):
        disable_sync(test_db_session, tenant, reason="auth_error: HTTP 401")

        rotate_credential(test_db_session, tenant, "shpat_new")

        test_db_session.expire_all()
        stored = test_db_session.get(Tenant, tenant.id)
        assert stored.sync_enabled is True
        assert stored.sync_disabled_reason is None
        assert load_credentials(stored).access_token == "shpat_new"

    def test_unreadable_credential_disables_sync(self, test_db_session, session_factory, settings, tenant):
        tenant.credential_enc = "garbage"
        test_db_session.commit()

        class NeverCalled:
            async def fetch(self, *args):
                raise AssertionError("client must not be called")

        report = asyncio.run(
            PollOrchestrator(session_factory=session_factory, client=NeverCalled(), settings=settings)
            .run_tenant_sync(tenant.id)
        )

        assert report.tenant_disabled is True
        assert all(result.state == RunState.skipped for result in report.results.values())
        test_db_session.expire_all()
        assert test_db_session.get(Tenant, tenant.id).sync_disabled_reason == "credential_unreadable"
