import asyncio
import functools
import random
from typing import Type, Tuple, Optional, Callable

from coreyield.exceptions import OperationalError
from coreyield.monitoring.logger import get_logger

logger = get_logger(__name__)


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_backoff: float = 8.0,
    transient_errors: Optional[Tuple[Type[Exception], ...]] = None,
    permanent_errors: Tuple[Type[Exception], ...] = (),
):
    """
    Decorator to retry async ledger reads on transient errors.

    Implements exponential backoff with jitter. Only exceptions matching
    `transient_errors` (OperationalError by default) are retried; anything
    else is re-raised on the first occurrence.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial wait time in seconds
        max_backoff: Maximum wait time in seconds
        transient_errors: Tuple of exception types to retry on.
        permanent_errors: Subclasses of those types that are re-raised at once.
    """
    retryable = transient_errors or (OperationalError,)

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            retry_count = 0
            backoff = base_delay

            while True:
                try:
                    return await func(*args, **kwargs)
                except retryable as e:
                    if isinstance(e, permanent_errors):
                        raise
                    if retry_count >= max_retries:
                        logger.warning(
                            f"Max retries ({max_retries}) exhausted for {func.__name__}",
                            error=str(e),
                        )
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__}, retrying ({retry_count + 1}/{max_retries})",
                        error=str(e),
                        wait=f"{backoff:.2f}s",
                    )

                    await asyncio.sleep(backoff)

                    retry_count += 1
                    backoff = min(backoff * 2, max_backoff)
                    backoff += random.uniform(0, 0.25)  # jitter

        return wrapper
    return decorator
