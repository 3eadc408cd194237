"""Reconciler: merges raw storefront records into canonical storage.

WHAT:
    One entry point, `Reconciler.merge`, used by both ingestion paths
    (poll sync and webhooks). Each resource type has a handler that
    validates the raw record and applies it to the canonical row.

WHY:
    Poll runs and webhook deliveries race on the same entities. The only
    synchronization between them is the per-record transaction here plus the
    watermark comparison:
    - absent row            -> insert at revision 1
    - incoming strictly newer -> apply, revision + 1
    - equal or older        -> stale, no-op
    - absent row, deleted at or after incoming -> stale (deletion marker)

    Replaying a webhook or re-polling a page is therefore always safe.

    Validation happens before any write. Malformed records are logged to
    `rejected_records` so they can be replayed once the cause is fixed.

REFERENCES:
    - storesync/models.py (canonical tables)
    - storesync/services/poll_orchestrator.py (poll caller)
    - storesync/services/webhook_admission.py (webhook caller)
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Type
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from storesync.models import (
    Customer,
    DeletedRecord,
    EventTypeEnum,
    Order,
    OrderLineItem,
    Product,
    RecordSourceEnum,
    RejectedRecord,
    ResourceTypeEnum,
    StoreEvent,
)

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT TYPES
# =============================================================================

class MergeOutcomeEnum(str, enum.Enum):
    applied = "applied"
    stale = "stale"
    malformed = "malformed"


@dataclass
class MergeResult:
    """Outcome of a single merge.

    `watermark` is set for applied and stale results so callers can advance
    their own progress markers past records already reflected in storage.
    """
    outcome: MergeOutcomeEnum
    external_id: Optional[str] = None
    revision: Optional[int] = None
    watermark: Optional[datetime] = None
    created: bool = False
    reason: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.outcome == MergeOutcomeEnum.applied


class MalformedRecordError(ValueError):
    """Raised by handlers when a raw record fails validation."""


class ReconciliationError(Exception):
    """A merge transaction failed and was rolled back.

    Nothing from the failed merge is persisted. Callers decide whether to
    retry now or defer to the next cycle.
    """

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


@dataclass
class ValidatedRecord:
    external_id: str
    watermark: datetime
    fields: Dict[str, Any] = field(default_factory=dict)
    line_items: Optional[List[Dict[str, Any]]] = None


# =============================================================================
# FIELD PARSERS
# =============================================================================

def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Any, field_name: str, required: bool = False) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into naive UTC.

    Storage holds naive UTC everywhere so watermark comparisons never mix
    aware and naive values.
    """
    if value is None or value == "":
        if required:
            raise MalformedRecordError(f"missing required field '{field_name}'")
        return None

    if isinstance(value, datetime):
        return _to_naive_utc(value)

    if not isinstance(value, str):
        raise MalformedRecordError(f"'{field_name}' must be an ISO timestamp")

    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise MalformedRecordError(f"'{field_name}' is not a valid timestamp: {value!r}") from None
    return _to_naive_utc(parsed)


def _parse_decimal(value: Any, field_name: str, required: bool = False) -> Optional[Decimal]:
    if value is None or value == "":
        if required:
            raise MalformedRecordError(f"missing required field '{field_name}'")
        return None
    if isinstance(value, bool):
        raise MalformedRecordError(f"'{field_name}' must be numeric")
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        raise MalformedRecordError(f"'{field_name}' must be numeric, got {value!r}") from None
    if not parsed.is_finite():
        raise MalformedRecordError(f"'{field_name}' must be finite")
    return parsed


def _parse_int(value: Any, field_name: str, required: bool = False, minimum: Optional[int] = None) -> Optional[int]:
    if value is None:
        if required:
            raise MalformedRecordError(f"missing required field '{field_name}'")
        return None
    if isinstance(value, bool):
        raise MalformedRecordError(f"'{field_name}' must be an integer")
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        value = int(value)
    if not isinstance(value, int):
        raise MalformedRecordError(f"'{field_name}' must be an integer, got {value!r}")
    if minimum is not None and value < minimum:
        raise MalformedRecordError(f"'{field_name}' must be >= {minimum}")
    return value


def _parse_str(value: Any, field_name: str, required: bool = False) -> Optional[str]:
    if value is None or value == "":
        if required:
            raise MalformedRecordError(f"missing required field '{field_name}'")
        return None
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise MalformedRecordError(f"'{field_name}' must be a string")
    return str(value)


def _parse_bool(value: Any, field_name: str) -> Optional[bool]:
    if value is None:
        return None
    if not isinstance(value, bool):
        raise MalformedRecordError(f"'{field_name}' must be a boolean")
    return value


def _parse_tags(value: Any, field_name: str) -> Optional[List[str]]:
    """Webhooks send "a, b", GraphQL sends ["a", "b"]."""
    if value is None:
        return None
    if isinstance(value, str):
        return [tag.strip() for tag in value.split(",") if tag.strip()]
    if isinstance(value, list) and all(isinstance(tag, str) for tag in value):
        return value
    raise MalformedRecordError(f"'{field_name}' must be a list or comma-separated string")


def _parse_external_id(value: Any, field_name: str = "id") -> str:
    if isinstance(value, bool) or value is None or value == "":
        raise MalformedRecordError(f"missing required field '{field_name}'")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        # Accept GraphQL gids as well as numeric ids
        return value.rsplit("/", 1)[-1] if value.startswith("gid://") else value
    raise MalformedRecordError(f"'{field_name}' must be a string or integer id")


def _nested_id(raw: Dict[str, Any], key: str, flat_key: str) -> Optional[str]:
    nested = raw.get(key)
    if isinstance(nested, dict) and nested.get("id") is not None:
        return _parse_external_id(nested.get("id"), f"{key}.id")
    if raw.get(flat_key) is not None:
        return _parse_external_id(raw.get(flat_key), flat_key)
    return None


def _copy_optional(raw: Dict[str, Any], out: Dict[str, Any], key: str, parser, target: Optional[str] = None) -> None:
    """Parse `raw[key]` into `out[target]` only when the key is present.

    Absent keys leave the stored column untouched on update.
    """
    if key in raw:
        out[target or key] = parser(raw.get(key), key)


# =============================================================================
# RESOURCE HANDLERS
# =============================================================================

class ResourceHandler:
    """Validation and merge rule for one resource type."""

    resource_type: ResourceTypeEnum
    model: Type

    def external_id(self, raw: Dict[str, Any]) -> str:
        return _parse_external_id(raw.get("id"))

    def safe_external_id(self, raw: Any) -> Optional[str]:
        """Best-effort id for logging a record that failed validation."""
        if not isinstance(raw, dict):
            return None
        try:
            return self.external_id(raw)
        except MalformedRecordError:
            return None

    def validate(self, raw: Any) -> ValidatedRecord:
        if not isinstance(raw, dict):
            raise MalformedRecordError("record must be a JSON object")
        record = ValidatedRecord(
            external_id=self.external_id(raw),
            watermark=parse_timestamp(raw.get("updated_at"), "updated_at", required=True),
        )
        _copy_optional(raw, record.fields, "created_at", parse_timestamp, "source_created_at")
        self.validate_fields(raw, record)
        return record

    def validate_fields(self, raw: Dict[str, Any], record: ValidatedRecord) -> None:
        raise NotImplementedError

    def apply(self, db: Session, row, record: ValidatedRecord) -> None:
        for key, value in record.fields.items():
            setattr(row, key, value)
        row.source_updated_at = record.watermark


class CustomerHandler(ResourceHandler):
    resource_type = ResourceTypeEnum.customers
    model = Customer

    def validate_fields(self, raw, record):
        fields = record.fields
        _copy_optional(raw, fields, "email", _parse_str)
        _copy_optional(raw, fields, "first_name", _parse_str)
        _copy_optional(raw, fields, "last_name", _parse_str)
        _copy_optional(raw, fields, "phone", _parse_str)
        _copy_optional(raw, fields, "state", _parse_str)
        _copy_optional(raw, fields, "verified_email", _parse_bool)
        _copy_optional(raw, fields, "orders_count", _parse_int)
        _copy_optional(raw, fields, "total_spent", _parse_decimal)
        _copy_optional(raw, fields, "tags", _parse_tags)


class ProductHandler(ResourceHandler):
    resource_type = ResourceTypeEnum.products
    model = Product

    def validate_fields(self, raw, record):
        fields = record.fields
        fields["title"] = _parse_str(raw.get("title"), "title", required=True)
        _copy_optional(raw, fields, "handle", _parse_str)
        _copy_optional(raw, fields, "status", _parse_str)
        _copy_optional(raw, fields, "vendor", _parse_str)
        _copy_optional(raw, fields, "product_type", _parse_str)
        _copy_optional(raw, fields, "total_inventory", _parse_int)
        _copy_optional(raw, fields, "tags", _parse_tags)

        if "price" in raw:
            fields["price"] = _parse_decimal(raw.get("price"), "price")
        elif isinstance(raw.get("variants"), list) and raw["variants"]:
            # Webhook payloads carry prices on variants only
            first_variant = raw["variants"][0]
            if isinstance(first_variant, dict):
                fields["price"] = _parse_decimal(first_variant.get("price"), "variants[0].price")


class OrderHandler(ResourceHandler):
    """Orders own their line items.

    The incoming `line_items` list is authoritative: items are matched by
    storefront id, updated in place, new ones added, missing ones deleted,
    and `position` follows the incoming order.
    """
    resource_type = ResourceTypeEnum.orders
    model = Order

    def validate_fields(self, raw, record):
        fields = record.fields
        fields["total_price"] = _parse_decimal(raw.get("total_price"), "total_price", required=True)
        _copy_optional(raw, fields, "name", _parse_str)
        _copy_optional(raw, fields, "order_number", _parse_int)
        _copy_optional(raw, fields, "email", _parse_str)
        _copy_optional(raw, fields, "subtotal_price", _parse_decimal)
        _copy_optional(raw, fields, "total_tax", _parse_decimal)
        _copy_optional(raw, fields, "total_discounts", _parse_decimal)
        _copy_optional(raw, fields, "financial_status", _parse_str)
        _copy_optional(raw, fields, "fulfillment_status", _parse_str)
        _copy_optional(raw, fields, "cancelled_at", parse_timestamp)

        currency = _parse_str(raw.get("currency"), "currency")
        if currency:
            fields["currency"] = currency

        if "customer" in raw or "customer_id" in raw:
            fields["external_customer_id"] = _nested_id(raw, "customer", "customer_id")

        raw_items = raw.get("line_items")
        if not isinstance(raw_items, list):
            raise MalformedRecordError("'line_items' must be a list")

        items = []
        seen = set()
        for index, item in enumerate(raw_items):
            prefix = f"line_items[{index}]"
            if not isinstance(item, dict):
                raise MalformedRecordError(f"'{prefix}' must be an object")
            external_id = _parse_external_id(item.get("id"), f"{prefix}.id")
            if external_id in seen:
                raise MalformedRecordError(f"duplicate line item id {external_id}")
            seen.add(external_id)
            items.append({
                "external_id": external_id,
                "title": _parse_str(item.get("title") or item.get("name"), f"{prefix}.title", required=True),
                "quantity": _parse_int(item.get("quantity"), f"{prefix}.quantity", required=True, minimum=0),
                "price": _parse_decimal(item.get("price"), f"{prefix}.price", required=True),
                "total_discount": _parse_decimal(item.get("total_discount"), f"{prefix}.total_discount"),
                "variant_title": _parse_str(item.get("variant_title"), f"{prefix}.variant_title"),
                "sku": _parse_str(item.get("sku"), f"{prefix}.sku"),
                "external_product_id": _optional_id(item.get("product_id"), f"{prefix}.product_id"),
                "external_variant_id": _optional_id(item.get("variant_id"), f"{prefix}.variant_id"),
            })
        record.line_items = items

    def apply(self, db, row, record):
        super().apply(db, row, record)
        self._reconcile_line_items(row, record.line_items or [])

    def _reconcile_line_items(self, order: Order, items: List[Dict[str, Any]]) -> None:
        existing = {line_item.external_id: line_item for line_item in order.line_items}

        reconciled = []
        for position, item in enumerate(items):
            line_item = existing.pop(item["external_id"], None)
            if line_item is None:
                line_item = OrderLineItem(tenant_id=order.tenant_id, external_id=item["external_id"])
            line_item.position = position
            self._apply_line_item(line_item, item)
            reconciled.append(line_item)

        if existing:
            logger.debug(
                "[RECONCILER] Removing %d line items from order %s",
                len(existing), order.external_id,
            )

        # Items not carried over are orphaned and deleted (delete-orphan cascade)
        order.line_items = reconciled

    def _apply_line_item(self, line_item: OrderLineItem, item: Dict[str, Any]) -> None:
        for key, value in item.items():
            if key != "external_id":
                setattr(line_item, key, value)


class EventHandler(ResourceHandler):
    """Cart and checkout events share one table, namespaced by type."""
    resource_type = ResourceTypeEnum.events
    model = StoreEvent

    def _event_type(self, raw: Dict[str, Any]) -> EventTypeEnum:
        try:
            return EventTypeEnum(raw.get("event_type"))
        except ValueError:
            raise MalformedRecordError("'event_type' must be 'cart' or 'checkout'") from None

    def external_id(self, raw):
        event_type = self._event_type(raw)
        return f"{event_type.value}:{_parse_external_id(raw.get('id'))}"

    def validate_fields(self, raw, record):
        fields = record.fields
        fields["event_type"] = self._event_type(raw)
        _copy_optional(raw, fields, "token", _parse_str)
        _copy_optional(raw, fields, "email", _parse_str)
        _copy_optional(raw, fields, "currency", _parse_str)
        _copy_optional(raw, fields, "total_price", _parse_decimal)
        _copy_optional(raw, fields, "completed_at", parse_timestamp)

        if "customer" in raw or "customer_id" in raw:
            fields["external_customer_id"] = _nested_id(raw, "customer", "customer_id")

        if "line_items" in raw:
            line_items = raw.get("line_items")
            if not isinstance(line_items, list):
                raise MalformedRecordError("'line_items' must be a list")
            fields["line_item_count"] = len(line_items)


def _optional_id(value: Any, field_name: str) -> Optional[str]:
    if value is None or value == "":
        return None
    return _parse_external_id(value, field_name)


HANDLERS: Dict[ResourceTypeEnum, ResourceHandler] = {
    handler.resource_type: handler
    for handler in (CustomerHandler(), ProductHandler(), OrderHandler(), EventHandler())
}


def _json_safe(raw: Any) -> Any:
    return json.loads(json.dumps(raw, default=str))


# =============================================================================
# RECONCILER
# =============================================================================

class Reconciler:
    """Merges raw records into tenant-scoped canonical rows.

    Usage:
        reconciler = Reconciler()
        result = reconciler.merge(db, tenant.id, ResourceTypeEnum.orders, raw_order)
        if result.outcome == MergeOutcomeEnum.applied:
            ...
    """

    def __init__(self, handlers: Optional[Dict[ResourceTypeEnum, ResourceHandler]] = None):
        self.handlers = handlers or HANDLERS

    def handler_for(self, resource_type: ResourceTypeEnum) -> ResourceHandler:
        try:
            return self.handlers[ResourceTypeEnum(resource_type)]
        except (KeyError, ValueError):
            raise ValueError(f"No handler registered for resource type {resource_type!r}") from None

    def merge(
        self,
        db: Session,
        tenant_id: UUID,
        resource_type: ResourceTypeEnum,
        raw: Any,
        *,
        source: RecordSourceEnum = RecordSourceEnum.poll,
        record_rejection: bool = True,
    ) -> MergeResult:
        """Merge one raw record in its own transaction.

        Returns:
            MergeResult with outcome applied, stale, or malformed

        Raises:
            ReconciliationError: The transaction failed and was rolled back
        """
        handler = self.handler_for(resource_type)

        try:
            record = handler.validate(raw)
        except MalformedRecordError as exc:
            return self._reject(db, tenant_id, handler, raw, str(exc), source, record_rejection)

        for attempt in (1, 2):
            try:
                result = self._merge_validated(db, tenant_id, handler, record)
                db.commit()
                return result
            except IntegrityError as exc:
                db.rollback()
                if attempt == 1:
                    # Another writer inserted the same entity; re-run against its row
                    logger.info(
                        "[RECONCILER] Concurrent insert for %s %s (tenant %s), retrying",
                        handler.resource_type.value, record.external_id, tenant_id,
                    )
                    continue
                raise ReconciliationError(
                    f"Integrity error merging {handler.resource_type.value} {record.external_id}: {exc.orig}"
                ) from exc
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error(
                    "[RECONCILER] Merge of %s %s for tenant %s rolled back: %s",
                    handler.resource_type.value, record.external_id, tenant_id, exc,
                )
                raise ReconciliationError(
                    f"Failed to merge {handler.resource_type.value} {record.external_id}"
                ) from exc
            except Exception:
                db.rollback()
                raise

        raise ReconciliationError("unreachable")  # pragma: no cover

    def _merge_validated(
        self,
        db: Session,
        tenant_id: UUID,
        handler: ResourceHandler,
        record: ValidatedRecord,
    ) -> MergeResult:
        model = handler.model

        # Row lock (where supported) so concurrent merges of the same entity
        # serialize on the watermark comparison.
        existing = (
            db.query(model)
            .filter(model.tenant_id == tenant_id, model.external_id == record.external_id)
            .with_for_update()
            .first()
        )

        if existing is None:
            marker = self._deletion_marker(db, tenant_id, handler.resource_type, record.external_id)
            if marker is not None:
                if record.watermark <= marker.deleted_at:
                    logger.debug(
                        "[RECONCILER] Stale %s %s for tenant %s (incoming=%s deleted=%s)",
                        handler.resource_type.value, record.external_id, tenant_id,
                        record.watermark.isoformat(), marker.deleted_at.isoformat(),
                    )
                    return MergeResult(
                        outcome=MergeOutcomeEnum.stale,
                        external_id=record.external_id,
                        watermark=record.watermark,
                    )
                # Recreated upstream after the deletion
                db.delete(marker)

            row = model(tenant_id=tenant_id, external_id=record.external_id, revision=1)
            handler.apply(db, row, record)
            db.add(row)
            db.flush()
            logger.debug(
                "[RECONCILER] Inserted %s %s for tenant %s",
                handler.resource_type.value, record.external_id, tenant_id,
            )
            return MergeResult(
                outcome=MergeOutcomeEnum.applied,
                external_id=record.external_id,
                revision=1,
                watermark=record.watermark,
                created=True,
            )

        if record.watermark <= existing.source_updated_at:
            logger.debug(
                "[RECONCILER] Stale %s %s for tenant %s (incoming=%s stored=%s)",
                handler.resource_type.value, record.external_id, tenant_id,
                record.watermark.isoformat(), existing.source_updated_at.isoformat(),
            )
            return MergeResult(
                outcome=MergeOutcomeEnum.stale,
                external_id=record.external_id,
                revision=existing.revision,
                watermark=record.watermark,
            )

        handler.apply(db, existing, record)
        existing.revision = existing.revision + 1
        db.flush()
        return MergeResult(
            outcome=MergeOutcomeEnum.applied,
            external_id=record.external_id,
            revision=existing.revision,
            watermark=record.watermark,
        )

    def _reject(
        self,
        db: Session,
        tenant_id: UUID,
        handler: ResourceHandler,
        raw: Any,
        reason: str,
        source: RecordSourceEnum,
        record_rejection: bool,
    ) -> MergeResult:
        external_id = handler.safe_external_id(raw)
        logger.warning(
            "[RECONCILER] Malformed %s record for tenant %s (external_id=%s, source=%s): %s",
            handler.resource_type.value, tenant_id, external_id, source.value, reason,
        )

        if record_rejection:
            try:
                db.add(RejectedRecord(
                    tenant_id=tenant_id,
                    resource_type=handler.resource_type,
                    source=source,
                    external_id=external_id,
                    reason=reason,
                    payload=_json_safe(raw),
                ))
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise ReconciliationError("Failed to log rejected record") from exc

        return MergeResult(
            outcome=MergeOutcomeEnum.malformed,
            external_id=external_id,
            reason=reason,
        )

    def remove(
        self,
        db: Session,
        tenant_id: UUID,
        resource_type: ResourceTypeEnum,
        external_id: Any,
        deleted_at: Optional[datetime] = None,
    ) -> bool:
        """Delete a canonical row after a deletion webhook.

        Orders take their line items with them. A deletion marker is kept so
        a later merge with a watermark at or before `deleted_at` (default:
        now) is stale instead of re-inserting the row. The marker is written
        even when the row was never ingested.

        Returns:
            True if a row was deleted, False if it was never ingested
        """
        handler = self.handler_for(resource_type)
        external_id = _parse_external_id(external_id)
        model = handler.model
        requested_at = deleted_at or datetime.utcnow()

        for attempt in (1, 2):
            try:
                row = (
                    db.query(model)
                    .filter(model.tenant_id == tenant_id, model.external_id == external_id)
                    .with_for_update()
                    .first()
                )
                marked_at = requested_at
                if row is not None:
                    if row.source_updated_at and row.source_updated_at > marked_at:
                        marked_at = row.source_updated_at
                    db.delete(row)

                marker = self._deletion_marker(db, tenant_id, handler.resource_type, external_id)
                if marker is None:
                    db.add(DeletedRecord(
                        tenant_id=tenant_id,
                        resource_type=handler.resource_type,
                        external_id=external_id,
                        deleted_at=marked_at,
                    ))
                elif marked_at > marker.deleted_at:
                    marker.deleted_at = marked_at
                db.commit()
                break
            except IntegrityError as exc:
                db.rollback()
                if attempt == 1:
                    # Concurrent deletion of the same entity wrote the marker first
                    continue
                raise ReconciliationError(
                    f"Integrity error deleting {handler.resource_type.value} {external_id}: {exc.orig}"
                ) from exc
            except SQLAlchemyError as exc:
                db.rollback()
                raise ReconciliationError(
                    f"Failed to delete {handler.resource_type.value} {external_id}"
                ) from exc

        if row is None:
            logger.info(
                "[RECONCILER] Deletion of unknown %s %s for tenant %s recorded",
                handler.resource_type.value, external_id, tenant_id,
            )
            return False

        logger.info(
            "[RECONCILER] Deleted %s %s for tenant %s",
            handler.resource_type.value, external_id, tenant_id,
        )
        return True

    def _deletion_marker(
        self,
        db: Session,
        tenant_id: UUID,
        resource_type: ResourceTypeEnum,
        external_id: str,
    ) -> Optional[DeletedRecord]:
        return (
            db.query(DeletedRecord)
            .filter(
                DeletedRecord.tenant_id == tenant_id,
                DeletedRecord.resource_type == resource_type,
                DeletedRecord.external_id == external_id,
            )
            .with_for_update()
            .first()
        )

    def replay_rejected(self, db: Session, tenant_id: UUID, limit: int = 500) -> Dict[str, int]:
        """Re-merge logged malformed records for a tenant.

        Records that now merge (applied or stale) are stamped `replayed_at`;
        ones that are still malformed stay pending without a new log entry.
        """
        pending = (
            db.query(RejectedRecord)
            .filter(RejectedRecord.tenant_id == tenant_id, RejectedRecord.replayed_at.is_(None))
            .order_by(RejectedRecord.created_at)
            .limit(limit)
            .all()
        )

        counts = {"replayed": 0, "still_malformed": 0}
        for rejected in pending:
            rejected_id = rejected.id
            result = self.merge(
                db,
                tenant_id,
                rejected.resource_type,
                rejected.payload,
                source=rejected.source,
                record_rejection=False,
            )
            if result.outcome == MergeOutcomeEnum.malformed:
                counts["still_malformed"] += 1
                continue

            db.query(RejectedRecord).filter(RejectedRecord.id == rejected_id).update(
                {RejectedRecord.replayed_at: datetime.utcnow()}
            )
            db.commit()
            counts["replayed"] += 1

        logger.info("[RECONCILER] Replay for tenant %s: %s", tenant_id, counts)
        return counts


def prune_deletion_markers(db: Session, *, retention_hours: int) -> int:
    """Delete deletion markers older than the retention window.

    Updates delayed past the window can recreate a deleted row again.
    """
    cutoff = datetime.utcnow() - timedelta(hours=retention_hours)
    deleted = (
        db.query(DeletedRecord)
        .filter(DeletedRecord.deleted_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()

    logger.info("[RECONCILER] Pruned %d deletion markers older than %dh", deleted, retention_hours)
    return deleted
