"""
Sentry Error Tracking
=====================

Centralized error tracking for the API process and the ARQ worker.

Related files:
- storesync/main.py: Initializes Sentry on app startup
- storesync/workers/arq_worker.py: Initializes Sentry on worker startup
- storesync/services/poll_orchestrator.py: Captures unexpected sync failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (required for Sentry to work)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import os
import logging
from typing import Optional
from functools import lru_cache

import sentry_sdk
from sentry_sdk.integrations.arq import ArqIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)


@lru_cache()
def get_sentry_dsn() -> Optional[str]:
    """Get Sentry DSN from environment variable.

    Returns:
        DSN string if configured, None otherwise.
    """
    return os.environ.get("SENTRY_DSN")


def init_sentry() -> bool:
    """
    Initialize Sentry SDK.

    Should be called once during process startup (API or worker).

    Returns:
        True if Sentry was initialized successfully, False otherwise.
    """
    dsn = get_sentry_dsn()
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        integrations=[
            FastApiIntegration(
                transaction_style="endpoint",  # Use route paths as transaction names
            ),
            SqlalchemyIntegration(),
            RedisIntegration(),
            ArqIntegration(),
            LoggingIntegration(
                level=logging.INFO,        # Capture INFO+ as breadcrumbs
                event_level=logging.ERROR,  # Send ERROR+ as events
            ),
        ],
        traces_sample_rate=0.1,
        # Payloads carry customer PII; never attach request bodies
        send_default_pii=False,
        release=os.environ.get("RELEASE_VERSION"),
    )

    logger.debug("[SENTRY] Initialized for %s environment", environment)
    return True


def set_tenant_context(tenant_id: str, shop_domain: Optional[str] = None) -> None:
    """
    Tag subsequent events with the tenant being processed.

    Args:
        tenant_id: Tenant UUID as string
        shop_domain: Storefront domain (optional)
    """
    sentry_sdk.set_tag("tenant_id", tenant_id)
    if shop_domain:
        sentry_sdk.set_tag("shop_domain", shop_domain)


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Manually capture an exception to Sentry.

    Use this for exceptions that are caught and handled but should still
    be tracked for monitoring purposes.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event

    Example:
        try:
            risky_operation()
        except RiskyError as e:
            capture_exception(e, extra={"tenant_id": str(tenant.id)})
            return fallback_response()
    """
    if not get_sentry_dsn():
        logger.error("Exception (Sentry disabled): %s", exception)
        return

    with sentry_sdk.new_scope() as scope:
        if extra:
            for key, value in extra.items():
                scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """
    Capture a message to Sentry.

    Used for notable non-exception events such as a tenant's sync being
    disabled after an authentication failure.

    Args:
        message: The message to capture
        level: Severity level (debug, info, warning, error, fatal)
        extra: Additional context to attach
    """
    if not get_sentry_dsn():
        logger.log(
            logging.getLevelName(level.upper()),
            "Message (Sentry disabled): %s",
            message,
        )
        return

    with sentry_sdk.new_scope() as scope:
        if extra:
            for key, value in extra.items():
                scope.set_extra(key, value)
        sentry_sdk.capture_message(message, level=level)
