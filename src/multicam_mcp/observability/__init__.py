"""Observability for multicam-mcp.

Structured logging and capture statistics.

Example:
    from multicam_mcp.observability import get_logger, LogContext

    logger = get_logger(__name__)

    with LogContext(identity="SN1234"):
        logger.info("Capture dispatched", mode="parallel")

Statistics Example:
    from multicam_mcp.observability import DeviceStats

    stats = DeviceStats()
    coordinator = CaptureCoordinator(stats=stats)
    summary = stats.get_summary("SN1234")
    print(f"Success rate: {summary.success_rate:.1%}")
"""

from multicam_mcp.observability.logging import (
    JSONFormatter,
    LogContext,
    StructuredFormatter,
    StructuredLogger,
    configure_logging,
    current_context,
    get_logger,
    reset_logging,
)
from multicam_mcp.observability.stats import (
    BatchSummary,
    DeviceStats,
    DeviceStatsCollector,
    StatsSummary,
)

__all__ = [
    # Logging
    "JSONFormatter",
    "LogContext",
    "StructuredFormatter",
    "StructuredLogger",
    "configure_logging",
    "current_context",
    "get_logger",
    "reset_logging",
    # Statistics
    "BatchSummary",
    "DeviceStats",
    "DeviceStatsCollector",
    "StatsSummary",
]
