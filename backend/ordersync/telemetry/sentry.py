"""
Sentry Error Tracking
=====================

Error tracking for the order sync worker and the trigger API.

Events from the worker carry the job context (job type, workspace, order id).
`workspace_id` and `job_type` become tags so the failures for one store, or
one job type, can be filtered in Sentry. Everything else is attached as
extra data.

Related files:
- ordersync/main.py: init at app startup
- ordersync/workers/order_sync_worker.py: init at worker startup, capture
  of job failures and of orders parked in the failed list

Environment Variables:
- SENTRY_DSN: project DSN; without it events are only logged
- ENVIRONMENT: environment name (production, staging, development)
- RELEASE_VERSION: optional release tag
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

TAG_KEYS = ("workspace_id", "job_type")


def _enabled() -> bool:
    return bool(os.environ.get("SENTRY_DSN"))


def init_sentry() -> bool:
    """Initialize the SDK once per process. Returns False when no DSN is set."""
    if not _enabled():
        logger.info("[SENTRY] SENTRY_DSN not set, errors are logged only")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")
    try:
        sentry_sdk.init(
            dsn=os.environ["SENTRY_DSN"],
            environment=environment,
            release=os.environ.get("RELEASE_VERSION"),
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            traces_sample_rate=0.1,
            # Order payloads carry buyer names, phones and addresses
            send_default_pii=False,
        )
    except Exception as e:
        logger.error(f"[SENTRY] Init failed, continuing without it: {e}")
        return False

    logger.info(f"[SENTRY] Enabled ({environment})")
    return True


def _apply_context(scope: Any, extra: Optional[Dict[str, Any]]) -> None:
    for key, value in (extra or {}).items():
        if key in TAG_KEYS and value is not None:
            scope.set_tag(key, str(value))
        else:
            scope.set_extra(key, value)


def capture_exception(exception: Exception, extra: Optional[Dict[str, Any]] = None) -> None:
    """Report a handled exception with job context.

    Example:
        except TransientSyncError as e:
            capture_exception(e, extra={"job_type": "process-order", "order_id": 9001})
            raise
    """
    if not _enabled():
        logger.error(f"[SENTRY] (disabled) {type(exception).__name__}: {exception} {extra or {}}")
        return

    try:
        with sentry_sdk.new_scope() as scope:
            _apply_context(scope, extra)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Could not report exception: {e}")


def capture_message(message: str, level: str = "info", extra: Optional[Dict[str, Any]] = None) -> None:
    """Report a non-exception event, e.g. an order moved to the failed list."""
    if not _enabled():
        logger.log(logging.getLevelName(level.upper()), f"[SENTRY] (disabled) {message} {extra or {}}")
        return

    try:
        with sentry_sdk.new_scope() as scope:
            _apply_context(scope, extra)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error(f"[SENTRY] Could not report message: {e}")
