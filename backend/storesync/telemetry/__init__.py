"""
Telemetry Module
================

Observability stack for storesync.

Components:
- sentry.py: Error tracking for the API and the ARQ worker

Environment Variables:
- SENTRY_DSN: Sentry project DSN

Usage:
    from storesync.telemetry import init_sentry, capture_exception

    init_sentry()
"""

from storesync.telemetry.sentry import (
    init_sentry,
    set_tenant_context,
    capture_exception,
    capture_message,
)


__all__ = [
    "init_sentry",
    "set_tenant_context",
    "capture_exception",
    "capture_message",
]
