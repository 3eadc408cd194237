"""Webhook Verifier & Admitter, plus delivery processing.

WHAT:
    `WebhookAdmitter.admit` is the gate every push notification passes before
    its payload is trusted:
    1. HMAC signature over the raw body (constant-time compare)
    2. JSON body, supported topic, delivery id present
    3. Tenant resolved from the payload's shop-domain claim
    4. Delivery id not seen before for that tenant
    5. Delivery recorded (outcome=admitted) BEFORE reconciliation

    `process_delivery` then reconciles an admitted delivery and stamps its
    outcome. Sweeps reprocess deliveries stuck in `admitted` and prune old
    rows after the retention window.

WHY:
    Recording the delivery first means a crash between admission and
    reconciliation leaves an `admitted` row that the sweep can safely redo:
    reconciliation is idempotent, so a redo of an already-applied delivery
    just comes back stale.

    Duplicates are an expected steady-state outcome (the platform retries on
    timeouts), so they are acknowledged with success, not an error.

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https
    - https://shopify.dev/docs/apps/build/webhooks/ignore-duplicates
    - storesync/routers/webhooks.py (HTTP surface)
    - storesync/workers/arq_worker.py (sweeps)
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional, Union
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storesync.models import (
    DeliveryOutcomeEnum,
    RecordSourceEnum,
    ResourceTypeEnum,
    Tenant,
    WebhookDelivery,
)
from storesync.security import verify_webhook_signature
from storesync.services.reconciler import (
    MalformedRecordError,
    MergeOutcomeEnum,
    Reconciler,
    ReconciliationError,
)
from storesync.services.tenant_service import normalize_shop_domain, resolve_tenant_by_domain

logger = logging.getLogger(__name__)

HMAC_HEADER = "x-shopify-hmac-sha256"
SHOP_DOMAIN_HEADER = "x-shopify-shop-domain"
TOPIC_HEADER = "x-shopify-topic"
DELIVERY_ID_HEADER = "x-shopify-webhook-id"

WEBHOOK_TOPICS: Dict[str, ResourceTypeEnum] = {
    "customers/create": ResourceTypeEnum.customers,
    "customers/update": ResourceTypeEnum.customers,
    "customers/delete": ResourceTypeEnum.customers,
    "orders/create": ResourceTypeEnum.orders,
    "orders/updated": ResourceTypeEnum.orders,
    "orders/paid": ResourceTypeEnum.orders,
    "orders/cancelled": ResourceTypeEnum.orders,
    "orders/delete": ResourceTypeEnum.orders,
    "products/create": ResourceTypeEnum.products,
    "products/update": ResourceTypeEnum.products,
    "products/delete": ResourceTypeEnum.products,
    "checkouts/create": ResourceTypeEnum.events,
    "checkouts/update": ResourceTypeEnum.events,
    "carts/create": ResourceTypeEnum.events,
    "carts/update": ResourceTypeEnum.events,
}

DELETION_TOPICS = frozenset({"customers/delete", "orders/delete", "products/delete"})


# =============================================================================
# ADMISSION RESULTS
# =============================================================================

class RejectionReason(str, enum.Enum):
    invalid_signature = "invalid_signature"
    malformed_payload = "malformed_payload"
    unsupported_topic = "unsupported_topic"
    unknown_tenant = "unknown_tenant"
    duplicate = "duplicate"


@dataclass
class AdmittedEvent:
    delivery_record_id: UUID
    tenant_id: UUID
    delivery_id: str
    topic: str
    resource_type: ResourceTypeEnum
    payload: Dict[str, Any]

    @property
    def is_deletion(self) -> bool:
        return self.topic in DELETION_TOPICS


@dataclass
class Rejected:
    reason: RejectionReason
    detail: str = ""


AdmissionResult = Union[AdmittedEvent, Rejected]


def _lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


class WebhookAdmitter:
    """Validates inbound deliveries and records the admitted ones.

    Usage:
        admitter = WebhookAdmitter(secret=settings.WEBHOOK_SHARED_SECRET)
        result = admitter.admit(db, body, request.headers, topic="orders/create")
    """

    def __init__(self, secret: str):
        self.secret = secret

    def admit(
        self,
        db: Session,
        raw_payload: bytes,
        headers: Mapping[str, str],
        topic: Optional[str] = None,
    ) -> AdmissionResult:
        headers = _lower_headers(headers)

        if not verify_webhook_signature(raw_payload, headers.get(HMAC_HEADER), self.secret):
            logger.warning("[WEBHOOK] Invalid signature (topic=%s)", topic or headers.get(TOPIC_HEADER))
            return Rejected(RejectionReason.invalid_signature, "Invalid webhook signature")

        try:
            payload = json.loads(raw_payload)
        except (ValueError, UnicodeDecodeError):
            return Rejected(RejectionReason.malformed_payload, "Body is not valid JSON")
        if not isinstance(payload, dict):
            return Rejected(RejectionReason.malformed_payload, "Body must be a JSON object")

        topic = topic or headers.get(TOPIC_HEADER)
        resource_type = WEBHOOK_TOPICS.get(topic or "")
        if resource_type is None:
            return Rejected(RejectionReason.unsupported_topic, f"Unsupported topic {topic!r}")

        delivery_id = (headers.get(DELIVERY_ID_HEADER) or "").strip()
        if not delivery_id:
            return Rejected(RejectionReason.malformed_payload, "Missing delivery id header")

        tenant = self._resolve_tenant(db, payload, headers)
        if isinstance(tenant, Rejected):
            return tenant

        already_seen = (
            db.query(WebhookDelivery.id)
            .filter(
                WebhookDelivery.tenant_id == tenant.id,
                WebhookDelivery.delivery_id == delivery_id,
            )
            .first()
        )
        if already_seen:
            logger.debug("[WEBHOOK] Duplicate delivery %s for %s", delivery_id, tenant.shop_domain)
            return Rejected(RejectionReason.duplicate, "Delivery already received")

        delivery = WebhookDelivery(
            tenant_id=tenant.id,
            delivery_id=delivery_id,
            topic=topic,
            resource_type=resource_type,
            payload=payload,
            received_at=datetime.utcnow(),
            outcome=DeliveryOutcomeEnum.admitted,
        )
        db.add(delivery)
        try:
            db.commit()
        except IntegrityError:
            # Concurrent retry of the same delivery won the insert
            db.rollback()
            logger.debug("[WEBHOOK] Duplicate delivery %s (insert race)", delivery_id)
            return Rejected(RejectionReason.duplicate, "Delivery already received")

        logger.info(
            "[WEBHOOK] Admitted %s delivery %s for %s",
            topic, delivery_id, tenant.shop_domain,
        )
        return AdmittedEvent(
            delivery_record_id=delivery.id,
            tenant_id=tenant.id,
            delivery_id=delivery_id,
            topic=topic,
            resource_type=resource_type,
            payload=payload,
        )

    def _resolve_tenant(
        self,
        db: Session,
        payload: Dict[str, Any],
        headers: Dict[str, str],
    ) -> Union[Tenant, Rejected]:
        claimed = payload.get("shop_domain") or payload.get("myshopify_domain")
        header_domain = headers.get(SHOP_DOMAIN_HEADER)

        if claimed and header_domain and normalize_shop_domain(claimed) != normalize_shop_domain(header_domain):
            logger.warning("[WEBHOOK] Shop domain claim %s does not match header %s", claimed, header_domain)
            return Rejected(RejectionReason.unknown_tenant, "Shop domain mismatch")

        domain = claimed or header_domain
        tenant = resolve_tenant_by_domain(db, domain)
        if tenant is None:
            logger.info("[WEBHOOK] Unknown or inactive tenant for domain %s", domain)
            return Rejected(RejectionReason.unknown_tenant, "Unknown tenant")
        return tenant


# =============================================================================
# PROCESSING
# =============================================================================

_MERGE_TO_DELIVERY = {
    MergeOutcomeEnum.applied: DeliveryOutcomeEnum.applied,
    MergeOutcomeEnum.stale: DeliveryOutcomeEnum.stale,
    MergeOutcomeEnum.malformed: DeliveryOutcomeEnum.malformed,
}


def delivery_record(topic: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Raw record handed to the reconciler for a delivery payload.

    Cart and checkout payloads share the events table; the topic says which.
    """
    if WEBHOOK_TOPICS.get(topic) == ResourceTypeEnum.events:
        record = dict(payload)
        record.setdefault("event_type", "cart" if topic.startswith("carts/") else "checkout")
        return record
    return payload


def process_delivery(
    db: Session,
    delivery_record_id: UUID,
    reconciler: Optional[Reconciler] = None,
) -> Optional[DeliveryOutcomeEnum]:
    """Reconcile an admitted delivery and record the outcome.

    Returns:
        The new outcome, or None if the delivery was already processed or
        the reconciliation failed and was left for the reprocess sweep.
    """
    reconciler = reconciler or Reconciler()

    delivery = db.query(WebhookDelivery).filter(WebhookDelivery.id == delivery_record_id).first()
    if delivery is None or delivery.outcome != DeliveryOutcomeEnum.admitted:
        return None

    tenant_id = delivery.tenant_id
    topic = delivery.topic
    resource_type = delivery.resource_type
    payload = delivery.payload or {}
    delivery.attempts = (delivery.attempts or 0) + 1
    db.commit()

    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if tenant is None or not tenant.is_active:
        outcome = DeliveryOutcomeEnum.aborted
    else:
        try:
            if topic in DELETION_TOPICS:
                reconciler.remove(
                    db, tenant_id, resource_type, payload.get("id"), deleted_at=delivery.received_at,
                )
                outcome = DeliveryOutcomeEnum.deleted
            else:
                result = reconciler.merge(
                    db,
                    tenant_id,
                    resource_type,
                    delivery_record(topic, payload),
                    source=RecordSourceEnum.webhook,
                )
                outcome = _MERGE_TO_DELIVERY[result.outcome]
        except MalformedRecordError as e:
            logger.warning("[WEBHOOK] Delivery %s has no usable id: %s", delivery_record_id, e)
            outcome = DeliveryOutcomeEnum.malformed
        except ReconciliationError as e:
            logger.warning(
                "[WEBHOOK] Delivery %s left for reprocessing: %s",
                delivery_record_id, e,
            )
            return None

    db.query(WebhookDelivery).filter(WebhookDelivery.id == delivery_record_id).update({
        WebhookDelivery.outcome: outcome,
        WebhookDelivery.processed_at: datetime.utcnow(),
    })
    db.commit()

    if outcome == DeliveryOutcomeEnum.stale:
        logger.debug("[WEBHOOK] Delivery %s was stale", delivery_record_id)
    else:
        logger.info("[WEBHOOK] Delivery %s (%s) -> %s", delivery_record_id, topic, outcome.value)
    return outcome


def reprocess_pending_deliveries(
    db: Session,
    *,
    older_than_minutes: int,
    limit: int = 200,
    reconciler: Optional[Reconciler] = None,
) -> Dict[str, int]:
    """Re-run deliveries admitted but never confirmed processed."""
    cutoff = datetime.utcnow() - timedelta(minutes=older_than_minutes)
    pending_ids = [
        row.id
        for row in db.query(WebhookDelivery.id)
        .filter(
            WebhookDelivery.outcome == DeliveryOutcomeEnum.admitted,
            WebhookDelivery.received_at < cutoff,
        )
        .order_by(WebhookDelivery.received_at)
        .limit(limit)
        .all()
    ]

    counts = {"pending": len(pending_ids), "processed": 0, "deferred": 0}
    for delivery_record_id in pending_ids:
        if process_delivery(db, delivery_record_id, reconciler) is None:
            counts["deferred"] += 1
        else:
            counts["processed"] += 1

    if pending_ids:
        logger.info("[WEBHOOK] Reprocess sweep: %s", counts)
    return counts


def prune_expired_deliveries(db: Session, *, retention_hours: int) -> int:
    """Delete delivery records older than the dedup retention window."""
    cutoff = datetime.utcnow() - timedelta(hours=retention_hours)
    deleted = (
        db.query(WebhookDelivery)
        .filter(WebhookDelivery.received_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()

    logger.info("[WEBHOOK] Pruned %d deliveries older than %dh", deleted, retention_hours)
    return deleted
