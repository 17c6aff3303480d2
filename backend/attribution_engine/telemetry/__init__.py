"""
Telemetry Module
================

Observability for the attribution engine.

Components:
- sentry.py: Error tracking for the API and the arq worker

Usage:
    from attribution_engine.telemetry import init_observability

    init_observability()
"""

from attribution_engine.telemetry.sentry import (
    init_sentry,
    set_tenant_context,
    capture_exception,
    capture_message,
)

__all__ = [
    "init_observability",
    "init_sentry",
    "set_tenant_context",
    "capture_exception",
    "capture_message",
]


def init_observability() -> dict:
    """Initialize every observability tool and report which ones are live."""
    return {"sentry": init_sentry()}
