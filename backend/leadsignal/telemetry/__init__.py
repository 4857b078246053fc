"""
Telemetry Module
================

Observability for the pipeline.

Components:
- sentry.py: Error tracking with PII scrubbing

Logging itself is plain `logging` with module loggers and `[TAG]` prefixes,
configured in leadsignal/main.py.

Usage:
    from leadsignal.telemetry import init_observability, shutdown_observability

    init_observability()      # app startup
    shutdown_observability()  # app shutdown
"""

from leadsignal.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
    flush as flush_sentry,
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


def shutdown_observability() -> None:
    """Flush pending events on application shutdown."""
    flush_sentry()


__all__ = [
    "init_observability",
    "shutdown_observability",
    "init_sentry",
    "capture_exception",
    "capture_message",
    "flush_sentry",
]
