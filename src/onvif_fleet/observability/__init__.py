"""Observability module for onvif-fleet.

Provides structured logging and dispatch statistics for monitoring
discovery cycles and device commands.

Example:
    from onvif_fleet.observability import get_logger, LogContext

    logger = get_logger(__name__)
    logger.info("Manager started")

    with LogContext(generation=2):
        logger.info("Record admitted", endpoint="urn:uuid:cam-1")

Statistics Example:
    from onvif_fleet.observability import DispatchStats

    stats = DispatchStats()
    manager = DeviceManager(discovery, driver, stats=stats)

    summary = stats.get_summary("urn:uuid:cam-1")
    print(f"Success rate: {summary.success_rate:.1%}")
"""

from onvif_fleet.observability.logging import (
    LogContext,
    StructuredLogger,
    configure_logging,
    get_logger,
    reset_logging,
)
from onvif_fleet.observability.stats import (
    DispatchStats,
    DispatchSummary,
)

__all__ = [
    # Logging
    "LogContext",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "reset_logging",
    # Statistics
    "DispatchStats",
    "DispatchSummary",
]
