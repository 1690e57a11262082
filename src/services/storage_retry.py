"""Retry policy for single storage primitives.

Lot withdraw/restore and rollback-record writes are idempotent through their
operation key, so a transient database failure (lock timeout, dropped
connection) can simply be retried. Exhausted retries surface as StorageError.
"""

import logging
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import OperationalError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.services.exceptions import StorageError
from src.services.logging_utils import get_service_logger, log_operation
from src.utils.config import get_config

logger = get_service_logger(__name__)

T = TypeVar("T")


def _log_retry(retry_state: RetryCallState) -> None:
    """Log retry attempts."""
    log_operation(
        logger,
        operation="storage_retry",
        outcome="retrying",
        level=logging.WARNING,
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
    )


def run_with_storage_retry(
    operation: Callable[[], T],
    *,
    description: str,
    attempts: Optional[int] = None,
    backoff: Optional[float] = None,
) -> T:
    """
    Run a storage operation, retrying transient database failures.

    Args:
        operation: Zero-argument callable performing one transaction
        description: What is being attempted, used in the StorageError message
        attempts: Maximum attempts (default: config.storage_retry_attempts)
        backoff: Initial wait in seconds, doubled per attempt
            (default: config.storage_retry_backoff)

    Returns:
        Whatever operation returns

    Raises:
        StorageError: If every attempt failed with an OperationalError
    """
    config = get_config()
    if attempts is None:
        attempts = config.storage_retry_attempts
    if backoff is None:
        backoff = config.storage_retry_backoff

    retrying = Retrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=backoff, min=backoff, max=backoff * 8),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=_log_retry,
        reraise=True,
    )
    try:
        return retrying(operation)
    except OperationalError as e:
        raise StorageError(f"{description} failed after {attempts} attempt(s)", e) from e
