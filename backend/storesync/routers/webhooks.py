"""Storefront webhook endpoints.

WHAT:
    One POST route per (resource, lifecycle event) topic. Each route admits
    the delivery synchronously and reconciles it in a background task.

WHY:
    The platform retries any delivery that does not get a fast 2xx, and a
    retry is pure duplicate work. The response therefore only reflects
    admission: reconciliation failures are never reported to the sender
    (they are left for the reprocess sweep).

    Status codes:
    - 200: admitted, or a duplicate of an earlier delivery
    - 400: malformed body, missing delivery id, unsupported topic
    - 401: invalid signature
    - 404: unknown or inactive tenant

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https
    - storesync/services/webhook_admission.py
"""

import logging
from typing import Callable
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from storesync.database import get_db, get_session_factory
from storesync.deps import Settings, get_settings
from storesync.schemas import WebhookAckResponse
from storesync.services.webhook_admission import (
    WEBHOOK_TOPICS,
    Rejected,
    RejectionReason,
    WebhookAdmitter,
    process_delivery,
)
from storesync.telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/storefront", tags=["Storefront Webhooks"])

_REJECTION_STATUS = {
    RejectionReason.invalid_signature: status.HTTP_401_UNAUTHORIZED,
    RejectionReason.unknown_tenant: status.HTTP_404_NOT_FOUND,
    RejectionReason.malformed_payload: status.HTTP_400_BAD_REQUEST,
    RejectionReason.unsupported_topic: status.HTTP_400_BAD_REQUEST,
}


def reconcile_delivery_in_background(
    delivery_record_id: UUID,
    session_factory: Callable[[], Session],
) -> None:
    """Background task: reconcile one admitted delivery in its own session."""
    db = session_factory()
    try:
        process_delivery(db, delivery_record_id)
    except Exception as e:
        # The delivery stays `admitted`; the reprocess sweep retries it
        logger.exception("[WEBHOOK] Background processing failed for %s", delivery_record_id)
        capture_exception(e, extra={"delivery_record_id": str(delivery_record_id)})
    finally:
        db.close()


def _make_topic_handler(topic: str):
    async def handle_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        db: Session = Depends(get_db),
        settings: Settings = Depends(get_settings),
        session_factory: Callable[[], Session] = Depends(get_session_factory),
    ) -> WebhookAckResponse:
        body = await request.body()

        result = WebhookAdmitter(secret=settings.WEBHOOK_SHARED_SECRET).admit(
            db, body, request.headers, topic=topic
        )

        if isinstance(result, Rejected):
            if result.reason == RejectionReason.duplicate:
                return WebhookAckResponse(message="Duplicate delivery acknowledged", duplicate=True)
            raise HTTPException(status_code=_REJECTION_STATUS[result.reason], detail=result.detail)

        background_tasks.add_task(
            reconcile_delivery_in_background,
            result.delivery_record_id,
            session_factory,
        )
        return WebhookAckResponse(message="Webhook admitted", delivery_id=result.delivery_id)

    handle_webhook.__name__ = f"webhook_{topic.replace('/', '_')}"
    return handle_webhook


for _topic in WEBHOOK_TOPICS:
    router.add_api_route(
        f"/{_topic}",
        _make_topic_handler(_topic),
        methods=["POST"],
        response_model=WebhookAckResponse,
        summary=f"Receive {_topic} webhook",
    )
