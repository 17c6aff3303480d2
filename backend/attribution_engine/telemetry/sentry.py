"""
Sentry Error Tracking
=====================

Centralized error tracking for the API process and the arq worker.

Related files:
- attribution_engine/main.py: Initializes Sentry on app startup
- attribution_engine/workers/arq_worker.py: Initializes Sentry on worker startup
- attribution_engine/services/attribution_run_service.py: Reports per-conversion failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays off when unset)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import os
import logging
from typing import Optional
from functools import lru_cache

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)

_initialized = False


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

    Should be called once per process, before the app or worker starts
    handling work.

    Returns:
        True if Sentry was initialized, False when no DSN is configured
        or initialization failed.

    Example:
        from attribution_engine.telemetry.sentry import init_sentry

        def create_app():
            init_sentry()
            app = FastAPI()
            ...
    """
    global _initialized

    dsn = get_sentry_dsn()
    if not dsn:
        logger.info("[SENTRY] SENTRY_DSN not set - error tracking disabled")
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
                    level=logging.INFO,         # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,  # Identifiers are phone numbers and emails
            release=os.environ.get("RELEASE_VERSION"),
        )
        _initialized = True
        logger.debug(f"[SENTRY] Initialized for {environment} environment")
        return True

    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def set_tenant_context(tenant_id: int) -> None:
    """Tag subsequent events in this scope with the tenant."""
    if not _initialized:
        return
    sentry_sdk.set_tag("tenant_id", str(tenant_id))


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Manually capture an exception to Sentry.

    Use this for exceptions that are caught and handled but should still
    be tracked, e.g. a single conversion failing inside an attribution run.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event

    Example:
        try:
            attribute_conversion(conversion)
        except Exception as e:
            capture_exception(e, extra={"run_id": run.id, "conversion_id": conversion.id})
    """
    if not _initialized:
        logger.error(f"Exception (Sentry disabled): {exception}", extra=extra or {})
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """
    Capture a message to Sentry.

    Args:
        message: The message to capture
        level: Severity level (debug, info, warning, error, fatal)
        extra: Additional context to attach
    """
    if not _initialized:
        logger.log(
            logging.getLevelName(level.upper()),
            f"Message (Sentry disabled): {message}"
        )
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture message: {e}")
