"""SQLAlchemy ORM models and enums.

This module defines the ingestion schema using UUID primary keys and explicit
relationships. Every canonical row carries a non-null `tenant_id`, and every
natural key is scoped by it: there is no table where a storefront identifier
is unique on its own.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, ForeignKey, Numeric, JSON, Text, Boolean, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class ResourceTypeEnum(str, enum.Enum):
    """Storefront resource collections ingested per tenant.

    Order of declaration is not the sync order; see
    `services.poll_orchestrator.RESOURCE_SYNC_ORDER`.
    """
    customers = "customers"
    orders = "orders"
    products = "products"
    events = "events"  # cart and checkout activity


class SyncOutcomeEnum(str, enum.Enum):
    success = "success"
    partial = "partial"
    failed = "failed"


class DeliveryOutcomeEnum(str, enum.Enum):
    """Processing state of a webhook delivery.

    `admitted` means recorded but not yet confirmed processed; rows left in
    this state are picked up by the reprocess sweep.
    """
    admitted = "admitted"
    applied = "applied"
    stale = "stale"
    malformed = "malformed"
    deleted = "deleted"
    aborted = "aborted"


class EventTypeEnum(str, enum.Enum):
    cart = "cart"
    checkout = "checkout"


class RecordSourceEnum(str, enum.Enum):
    poll = "poll"
    webhook = "webhook"


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


# Tenancy -------------------------------------------------------

class Tenant(Base):
    """Isolated store whose data is ingested.

    WHAT: Storefront domain plus the encrypted API credential used for polling
    WHY: Tenants are never deleted, only deactivated, so canonical rows always
         keep a valid owner. `sync_enabled` is switched off when the platform
         rejects the credential and switched back on by credential rotation.
    """
    __tablename__ = "tenants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)

    # Normalized lowercase myshopify domain (e.g., "acme.myshopify.com")
    shop_domain = Column(String, nullable=False, unique=True, index=True)

    # Fernet ciphertext, see security.encrypt_secret
    credential_enc = Column(Text, nullable=False)
    credential_rotated_at = Column(DateTime, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    deactivated_at = Column(DateTime, nullable=True)

    sync_enabled = Column(Boolean, nullable=False, default=True)
    sync_disabled_reason = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    sync_cursors = relationship("SyncCursor", back_populates="tenant")

    @property
    def is_syncable(self) -> bool:
        return bool(self.is_active and self.sync_enabled)

    def __str__(self):
        return f"Tenant {self.shop_domain}"


# Canonical storefront mirrors ----------------------------------

class Customer(Base):
    """Tenant-scoped mirror of a storefront customer.

    WHAT: Contact fields plus the source watermark and local revision
    WHY: `source_updated_at` decides whether an incoming record is newer;
         `revision` counts applied merges and never decreases.
    """
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", name="uq_customer_tenant_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    external_id = Column(String, nullable=False)

    email = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    state = Column(String, nullable=True)  # enabled, disabled, invited, declined
    verified_email = Column(Boolean, nullable=True)
    orders_count = Column(Integer, nullable=True)
    total_spent = Column(Numeric(18, 4), nullable=True)
    tags = Column(JSON, nullable=True)

    source_created_at = Column(DateTime, nullable=True)
    source_updated_at = Column(DateTime, nullable=False)
    revision = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"Customer {self.email or self.external_id}"


class Product(Base):
    """Tenant-scoped mirror of a storefront product."""
    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", name="uq_product_tenant_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    external_id = Column(String, nullable=False)

    title = Column(String, nullable=False)
    handle = Column(String, nullable=True)
    status = Column(String, nullable=True)  # active, archived, draft
    vendor = Column(String, nullable=True)
    product_type = Column(String, nullable=True)
    price = Column(Numeric(18, 4), nullable=True)  # first variant price
    total_inventory = Column(Integer, nullable=True)
    tags = Column(JSON, nullable=True)

    source_created_at = Column(DateTime, nullable=True)
    source_updated_at = Column(DateTime, nullable=False)
    revision = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"Product {self.title}"


class Order(Base):
    """Tenant-scoped mirror of a storefront order and its line items.

    WHAT: Order totals and status, owning an ordered sequence of line items
    WHY: Line items are replaced as a set inside the same transaction as the
         order row, so readers never see a half-merged order.
    REFERENCES:
        - services/reconciler.py::OrderHandler
    """
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", name="uq_order_tenant_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    external_id = Column(String, nullable=False)

    # Customer referenced by storefront id (guest checkouts have none)
    external_customer_id = Column(String, nullable=True)

    name = Column(String, nullable=True)  # Display name (e.g., "#1001")
    order_number = Column(Integer, nullable=True)
    email = Column(String, nullable=True)
    currency = Column(String, nullable=False, default="USD")
    total_price = Column(Numeric(18, 4), nullable=False)
    subtotal_price = Column(Numeric(18, 4), nullable=True)
    total_tax = Column(Numeric(18, 4), nullable=True)
    total_discounts = Column(Numeric(18, 4), nullable=True)
    financial_status = Column(String, nullable=True)
    fulfillment_status = Column(String, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    source_created_at = Column(DateTime, nullable=True)
    source_updated_at = Column(DateTime, nullable=False)
    revision = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    line_items = relationship(
        "OrderLineItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderLineItem.position",
    )

    def __str__(self):
        return f"Order {self.name or self.external_id} - {self.total_price}"


class OrderLineItem(Base):
    """Line item within an order.

    Products are referenced by storefront id, not by foreign key: an order may
    arrive before its products are synced, and products may be deleted.
    """
    __tablename__ = "order_line_items"
    __table_args__ = (
        UniqueConstraint("order_id", "external_id", name="uq_line_item_order_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)

    external_id = Column(String, nullable=False)
    position = Column(Integer, nullable=False)

    external_product_id = Column(String, nullable=True)
    external_variant_id = Column(String, nullable=True)
    title = Column(String, nullable=False)
    variant_title = Column(String, nullable=True)
    sku = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(18, 4), nullable=False)
    total_discount = Column(Numeric(18, 4), nullable=True)

    order = relationship("Order", back_populates="line_items")

    def __str__(self):
        return f"{self.title} x{self.quantity}"


class StoreEvent(Base):
    """Cart or checkout activity.

    `external_id` is namespaced by event type ("cart:<id>", "checkout:<id>")
    because the platform issues cart and checkout ids from separate sequences.
    """
    __tablename__ = "store_events"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", name="uq_store_event_tenant_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    external_id = Column(String, nullable=False)

    event_type = Column(
        Enum(EventTypeEnum, values_callable=_enum_values),
        nullable=False,
    )
    token = Column(String, nullable=True)
    external_customer_id = Column(String, nullable=True)
    email = Column(String, nullable=True)
    currency = Column(String, nullable=True)
    total_price = Column(Numeric(18, 4), nullable=True)
    line_item_count = Column(Integer, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    source_created_at = Column(DateTime, nullable=True)
    source_updated_at = Column(DateTime, nullable=False)
    revision = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Sync bookkeeping ----------------------------------------------

class SyncCursor(Base):
    """Per (tenant, resource) poll progress.

    WHAT: Last committed watermark and the outcome of the most recent run
    WHY: Incremental polls resume from `watermark` (plus `page_cursor` for
         id-ordered streams cut short mid-pass); the status API reads the
         rest. Only `SyncStateTracker.commit` writes to this table.
    """
    __tablename__ = "sync_cursors"
    __table_args__ = (
        UniqueConstraint("tenant_id", "resource_type", name="uq_sync_cursor_tenant_resource"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    resource_type = Column(
        Enum(ResourceTypeEnum, values_callable=_enum_values),
        nullable=False,
    )

    watermark = Column(DateTime, nullable=True)
    # Platform page cursor to resume an unfinished pass over an id-ordered stream
    page_cursor = Column(Text, nullable=True)
    last_run_at = Column(DateTime, nullable=True)
    last_outcome = Column(
        Enum(SyncOutcomeEnum, values_callable=_enum_values),
        nullable=True,
    )
    consecutive_failures = Column(Integer, nullable=False, default=0)
    last_applied_count = Column(Integer, nullable=False, default=0)
    last_malformed_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="sync_cursors")


class WebhookDelivery(Base):
    """Dedup record for an admitted webhook delivery.

    Keyed by the platform's delivery id plus tenant. The payload is kept so
    deliveries left in `admitted` can be reprocessed; rows are pruned after
    the retention window.
    """
    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        UniqueConstraint("tenant_id", "delivery_id", name="uq_webhook_delivery_tenant_delivery"),
        Index("ix_webhook_deliveries_outcome_received", "outcome", "received_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    delivery_id = Column(String, nullable=False)
    topic = Column(String, nullable=False)
    resource_type = Column(
        Enum(ResourceTypeEnum, values_callable=_enum_values),
        nullable=False,
    )
    payload = Column(JSON, nullable=True)

    received_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    outcome = Column(
        Enum(DeliveryOutcomeEnum, values_callable=_enum_values),
        nullable=False,
        default=DeliveryOutcomeEnum.admitted,
    )
    processed_at = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)


class RejectedRecord(Base):
    """Malformed record kept for replay.

    Written by the reconciler whenever validation fails; `replayed_at` is set
    once a replay merges it successfully.
    """
    __tablename__ = "rejected_records"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    resource_type = Column(
        Enum(ResourceTypeEnum, values_callable=_enum_values),
        nullable=False,
    )
    source = Column(
        Enum(RecordSourceEnum, values_callable=_enum_values),
        nullable=False,
    )
    external_id = Column(String, nullable=True)
    reason = Column(Text, nullable=False)
    payload = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    replayed_at = Column(DateTime, nullable=True)


class DeletedRecord(Base):
    """Deletion marker for a canonical row removed by a deletion webhook.

    WHAT: When the entity was deleted, per (tenant, resource, external id)
    WHY: A retried update or a poll page fetched before the delete must not
         bring the row back. Merges with a watermark at or before
         `deleted_at` are stale. Pruned with the webhook dedup window.
    """
    __tablename__ = "deleted_records"
    __table_args__ = (
        UniqueConstraint("tenant_id", "resource_type", "external_id", name="uq_deleted_record_tenant_resource_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    resource_type = Column(
        Enum(ResourceTypeEnum, values_callable=_enum_values),
        nullable=False,
    )
    external_id = Column(String, nullable=False)
    deleted_at = Column(DateTime, nullable=False, index=True)
