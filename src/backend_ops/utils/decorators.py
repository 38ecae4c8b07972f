"""Decorator utilities for cross-cutting concerns."""
import time
import logging
import functools
from typing import Any, Callable, Optional, TypeVar, cast

from .backoff import BackoffPolicy

# Setup logging
logger = logging.getLogger(__name__)

F = TypeVar('F', bound=Callable[..., Any])

def log_execution_time(func: F) -> F:
    """Decorator to log function execution time.

    Args:
        func: The function to decorate

    Returns:
        Decorated function that logs execution time
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.time()
        try:
            result = func(*args, **kwargs)
            duration = time.time() - start_time
            logger.info(f"{func.__name__} completed in {duration:.2f}s")
            return result
        except BaseException as e:
            duration = time.time() - start_time
            logger.error(f"{func.__name__} failed after {duration:.2f}s: {str(e) or type(e).__name__}")
            raise
    return cast(F, wrapper)

def retry(policy: Optional[BackoffPolicy] = None, exceptions: tuple = (Exception,),
          logger_name: Optional[str] = None, sleep: Callable[[float], None] = time.sleep):
    """Decorator for retrying functions according to a backoff policy.

    Args:
        policy: Attempt count and delay schedule (defaults to 3 attempts, 1s doubling)
        exceptions: Tuple of exceptions to catch for retry
        logger_name: Optional logger name (defaults to module logger)
        sleep: Sleep function, replaceable in tests

    Returns:
        Decorator function
    """
    policy = policy or BackoffPolicy()
    retry_logger = logging.getLogger(logger_name) if logger_name else logger

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 1

            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= policy.max_attempts:
                        retry_logger.error(f"All {policy.max_attempts} attempts failed for {func.__name__}: {str(e)}")
                        raise

                    current_delay = policy.delay_for(attempt)
                    retry_logger.warning(
                        f"Attempt {attempt}/{policy.max_attempts} for {func.__name__} failed: {str(e)}. "
                        f"Retrying in {current_delay:.2f}s"
                    )

                    sleep(current_delay)
                    attempt += 1

        return cast(F, wrapper)

    return decorator
