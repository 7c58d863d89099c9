"""
Sentry Error Tracking
=====================

Centralized error tracking for the API and the attribution workers.

Related files:
- attribution_engine/main.py: Initializes Sentry on app startup
- attribution_engine/workers/arq_worker.py: Initializes Sentry on worker startup
- attribution_engine/services/attribution/run_controller.py: Captures per-conversion failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays off when unset)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release identifier (optional)
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Optional

import sentry_sdk
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

    Call once per process (API startup, worker startup).

    Returns:
        True if Sentry was initialized, False when no DSN is configured or
        initialization failed.
    """
    dsn = get_sentry_dsn()
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,         # INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
        logger.debug("[SENTRY] Initialized for %s environment", environment)
        return True

    except Exception as e:
        logger.error("[SENTRY] Failed to initialize: %s", e)
        return False


def set_tenant_context(tenant_id: str) -> None:
    """Tag subsequent events in this scope with the tenant being processed."""
    if not sentry_sdk.is_initialized():
        return

    try:
        sentry_sdk.set_tag("tenant_id", tenant_id)
    except Exception as e:
        logger.debug("[SENTRY] Failed to set tenant context: %s", e)


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Manually capture an exception to Sentry.

    Use for exceptions that are caught and handled (a conversion marked
    failed, a job that logs and returns) but should still be tracked.

    Args:
        exception: The exception to capture
        extra: Additional context, conventionally including "operation"

    Example:
        except TransientStoreError as e:
            capture_exception(e, extra={"operation": "attribution_rollup"})
    """
    if not sentry_sdk.is_initialized():
        logger.error("Exception (Sentry disabled): %s", exception)
        return

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in (extra or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture exception: %s", e)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """
    Capture a message to Sentry.

    Args:
        message: The message to capture
        level: Severity level (debug, info, warning, error, fatal)
        extra: Additional context to attach
    """
    if not sentry_sdk.is_initialized():
        logger.log(
            logging.getLevelName(level.upper()),
            "Message (Sentry disabled): %s", message,
        )
        return

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in (extra or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture message: %s", e)
