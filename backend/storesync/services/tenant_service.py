"""Tenant service: onboarding, credentials, and sync eligibility.

WHAT:
    Creates tenants, rotates and decrypts their storefront credential, and
    flips the flags that gate ingestion (`is_active`, `sync_enabled`).

WHY:
    - Keeps encryption logic out of routers and workers.
    - Poll runs and webhook admission both need the same "may this tenant
      ingest right now" answer.
    - The raw credential only exists in memory inside TenantCredentials.

REFERENCES:
    - storesync/security.py (encrypt_secret / decrypt_secret)
    - storesync/services/poll_orchestrator.py (disables sync on auth errors)
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import List, Optional
from urllib.parse import urlparse

from sqlalchemy.orm import Session

from storesync.models import Tenant
from storesync.security import encrypt_secret, decrypt_secret
from storesync.services.storefront_client import TenantCredentials

logger = logging.getLogger(__name__)


def normalize_shop_domain(shop_domain: str) -> str:
    """Lowercase host without scheme, path or trailing dot.

    "https://Acme.myshopify.com/" -> "acme.myshopify.com"
    """
    value = (shop_domain or "").strip().lower()
    if "://" in value:
        value = urlparse(value).netloc
    return value.split("/", 1)[0].rstrip(".")


def onboard_tenant(
    db: Session,
    *,
    name: str,
    shop_domain: str,
    access_token: str,
) -> Tenant:
    """Create a tenant with an encrypted credential.

    Raises:
        ValueError: If the domain is empty or already onboarded
    """
    domain = normalize_shop_domain(shop_domain)
    if not domain:
        raise ValueError("shop_domain is required")

    if db.query(Tenant).filter(Tenant.shop_domain == domain).first():
        raise ValueError(f"Tenant for {domain} already exists")

    tenant = Tenant(
        name=name,
        shop_domain=domain,
        credential_enc=encrypt_secret(access_token, context=f"{domain}:access"),
        credential_rotated_at=datetime.utcnow(),
        is_active=True,
        sync_enabled=True,
    )
    db.add(tenant)
    db.commit()
    db.refresh(tenant)

    logger.info("[TENANT] Onboarded %s (%s)", domain, tenant.id)
    return tenant


def rotate_credential(db: Session, tenant: Tenant, access_token: str) -> Tenant:
    """Replace the stored credential and re-enable sync.

    This is the recovery path after an AuthError disabled the tenant's sync.
    """
    tenant.credential_enc = encrypt_secret(access_token, context=f"{tenant.shop_domain}:access")
    tenant.credential_rotated_at = datetime.utcnow()
    tenant.sync_enabled = True
    tenant.sync_disabled_reason = None
    db.commit()

    logger.info("[TENANT] Credential rotated for %s, sync re-enabled", tenant.shop_domain)
    return tenant


def disable_sync(db: Session, tenant: Tenant, reason: str) -> Tenant:
    """Stop scheduled and manual polling until the credential is refreshed."""
    tenant.sync_enabled = False
    tenant.sync_disabled_reason = reason[:255]
    db.commit()

    logger.warning("[TENANT] Sync disabled for %s: %s", tenant.shop_domain, reason)
    return tenant


def deactivate_tenant(db: Session, tenant: Tenant) -> Tenant:
    """Soft-delete: canonical rows stay, ingestion stops.

    In-flight poll runs notice at their next checkpoint and abort.
    """
    tenant.is_active = False
    tenant.deactivated_at = datetime.utcnow()
    db.commit()

    logger.info("[TENANT] Deactivated %s", tenant.shop_domain)
    return tenant


def resolve_tenant_by_domain(db: Session, shop_domain: Optional[str]) -> Optional[Tenant]:
    """Active tenant for a storefront domain, or None."""
    domain = normalize_shop_domain(shop_domain or "")
    if not domain:
        return None
    return (
        db.query(Tenant)
        .filter(Tenant.shop_domain == domain, Tenant.is_active.is_(True))
        .first()
    )


def list_syncable_tenants(db: Session) -> List[Tenant]:
    return (
        db.query(Tenant)
        .filter(Tenant.is_active.is_(True), Tenant.sync_enabled.is_(True))
        .order_by(Tenant.created_at)
        .all()
    )


def load_credentials(tenant: Tenant) -> TenantCredentials:
    """Decrypt the tenant's credential for API calls.

    Raises:
        ValueError: If the stored ciphertext cannot be decrypted
    """
    access_token = decrypt_secret(tenant.credential_enc, context=f"{tenant.shop_domain}:access")
    return TenantCredentials(
        tenant_id=tenant.id,
        shop_domain=tenant.shop_domain,
        access_token=access_token,
    )
