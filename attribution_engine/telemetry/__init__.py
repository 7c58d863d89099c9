"""
Telemetry Module
================

Observability for the attribution engine.

Components:
- sentry.py: Error tracking and performance monitoring

Environment Variables:
- SENTRY_DSN: Sentry project DSN

Usage:
    from attribution_engine.telemetry import init_observability

    # Once per process (API or worker startup)
    init_observability()
"""

from attribution_engine.telemetry.sentry import (
    capture_exception,
    capture_message,
    init_sentry,
    set_tenant_context,
)


def init_observability() -> dict:
    """
    Initialize all observability tools.

    Returns:
        Dict with status of each tool initialization, e.g. {"sentry": False}
    """
    return {
        "sentry": init_sentry(),
    }


__all__ = [
    "init_observability",
    "init_sentry",
    "set_tenant_context",
    "capture_exception",
    "capture_message",
]
