"""Service layer logging utilities.

Provides structured logging functions for service operations, enabling
consistent log format and context across lot mutations, consumption and
batch lifecycle operations.

Usage:
    from src.services.logging_utils import get_service_logger, log_operation

    logger = get_service_logger(__name__)

    log_operation(
        logger,
        operation="consume",
        outcome="success",
        reference_id="4f1c...",
        lot_count=2,
    )

    log_operation(
        logger,
        operation="compensate",
        outcome="restore_failed",
        level=logging.CRITICAL,
        reference_id="4f1c...",
        lot_id=12,
    )
"""

import logging
from typing import Any

LOGGER_PREFIX = "lot_tracker.services"


def get_service_logger(name: str) -> logging.Logger:
    """
    Get a logger configured for service operations.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Logger named 'lot_tracker.services.<module>'.

    Example:
        >>> get_service_logger("src.services.lot_store").name
        'lot_tracker.services.lot_store'
    """
    if "." in name:
        name = name.split(".")[-1]
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}")


def log_operation(
    logger: logging.Logger,
    operation: str,
    outcome: str,
    level: int = logging.INFO,
    **context: Any,
) -> None:
    """
    Log a service operation with structured context.

    The record message is "<operation>: <outcome>"; context fields travel in
    ``extra`` so handlers can index them.

    Args:
        logger: Logger instance to use
        operation: Operation name (e.g., "withdraw", "consume", "update_batch")
        outcome: Outcome description (e.g., "success", "race_lost", "restore_failed")
        level: Log level (default: INFO)
        **context: Additional context fields (lot_id, reference_id, error, ...)
    """
    extra = {
        "operation": operation,
        "outcome": outcome,
        **context,
    }
    logger.log(level, f"{operation}: {outcome}", extra=extra)
