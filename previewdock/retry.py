"""Bounded retries with exponential backoff, and overall deadlines."""

import asyncio
import logging
from dataclasses import dataclass

from previewdock.errors import OperationTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Retry policy for transient errors."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* (0-indexed), capped at max_delay."""
        delay = self.base_delay * (self.exponential_base**attempt)
        return min(delay, self.max_delay)


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


async def retry_transient(operation, operation_name="operation", config: RetryConfig | None = None):
    """Run *operation* (an async callable), retrying errors flagged ``retryable``.

    Non-retryable errors propagate immediately. After the last attempt the
    final error propagates unchanged.
    """
    config = config or RetryConfig()

    for attempt in range(config.max_attempts):
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt >= config.max_attempts - 1:
                logger.warning(f"{operation_name}: all {config.max_attempts} attempts failed")
                raise
            delay = config.calculate_delay(attempt)
            logger.info(f"{operation_name}: attempt {attempt + 1} failed ({type(e).__name__}: {e}). Retrying in {delay:.1f}s...")
            await asyncio.sleep(delay)

    raise RuntimeError(f"{operation_name}: retry loop exited without a result")


async def with_deadline(awaitable, timeout, operation_name="operation"):
    """Await *awaitable* with an overall deadline.

    ``timeout=None`` means no deadline. On expiry the awaitable is cancelled
    and ``OperationTimeoutError`` is raised.
    """
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError as e:
        if isinstance(e, OperationTimeoutError):
            raise
        raise OperationTimeoutError(f"{operation_name} did not finish within {timeout}s") from e
