"""Decorator utilities for cross-cutting concerns."""
import time
import logging
import functools
from typing import Any, Callable, Optional, TypeVar, cast

# Setup logging
logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])


def log_execution_time(func: F) -> F:
    """Decorator to log how long a cloud call took, on the caller's module logger.

    Args:
        func: The function to decorate

    Returns:
        Decorated function that logs execution time
    """
    func_logger = logging.getLogger(func.__module__)

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.monotonic()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            func_logger.warning(f"{func.__qualname__} failed after {time.monotonic() - start_time:.2f}s: {e}")
            raise
        func_logger.info(f"{func.__qualname__} completed in {time.monotonic() - start_time:.2f}s")
        return result
    return cast(F, wrapper)


def retry(max_attempts: int = 3, delay: float = 1.0, backoff: float = 2.0,
          exceptions: tuple = (Exception,), max_delay: Optional[float] = None,
          sleep: Callable[[float], Any] = time.sleep,
          on_attempt: Optional[Callable[[int], Any]] = None,
          logger_name: Optional[str] = None):
    """Decorator for retrying functions with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts, the first call included
        delay: Initial delay between retries in seconds
        backoff: Backoff multiplier (e.g., 2.0 means delay doubles each retry)
        exceptions: Tuple of exceptions to catch for retry
        max_delay: Cap on a single delay
        sleep: Function used to wait between attempts
        on_attempt: Called with the attempt number before each call
        logger_name: Optional logger name (defaults to module logger)

    Returns:
        Decorator function. When every attempt fails the last exception is re-raised.
    """
    retry_logger = logging.getLogger(logger_name) if logger_name else logger

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 1
            current_delay = delay

            while attempt <= max_attempts:
                if on_attempt is not None:
                    on_attempt(attempt)
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        retry_logger.error(f"All {max_attempts} attempts failed for {func.__name__}: {str(e)}")
                        raise

                    wait = current_delay if max_delay is None else min(current_delay, max_delay)
                    retry_logger.warning(
                        f"Attempt {attempt}/{max_attempts} for {func.__name__} failed: {str(e)}. "
                        f"Retrying in {wait:.2f}s"
                    )

                    sleep(wait)
                    attempt += 1
                    current_delay *= backoff

        return cast(F, wrapper)

    return decorator
