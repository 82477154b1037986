"""
Telemetry Module
================

Observability for the order sync service.

Components:
- sentry.py: Error tracking for the API and the ARQ worker

Environment Variables:
- SENTRY_DSN: Sentry project DSN

Usage:
    from ordersync.telemetry import init_sentry, capture_exception
"""

from ordersync.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]
