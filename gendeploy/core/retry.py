"""Retry decorator for network operations with exponential backoff."""
import functools
import time
from typing import Tuple, Type

from gendeploy.core.logger import get_logger

logger = get_logger(__name__)


def retry(
    max_attempts: int = 3,
    delay: float = 2.0,
    backoff: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
):
    """Retry decorator with exponential backoff.

    Only the listed exception types are retried; anything else propagates
    on the first attempt. Transports pass TransientTransportError, which
    covers failures to connect only: a session that dropped after the
    remote command started raises a plain TransportError and is never
    repeated.

    Args:
        max_attempts: Maximum number of attempts (values below 1 mean one attempt)
        delay: Initial delay in seconds between attempts
        backoff: Backoff multiplier for each retry
        exceptions: Tuple of exception types to catch and retry

    Example:
        run = retry(max_attempts=3, delay=1, exceptions=(TransientTransportError,))(run_ssh)
        run(argv)  # "Connection refused" is retried, "Broken pipe" is not
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            attempts = max(1, max_attempts)
            current_delay = delay

            for attempt in range(1, attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == attempts:
                        logger.error(f"{func.__name__} failed after {attempts} attempts: {e}")
                        raise

                    logger.warning(f"{func.__name__} failed (attempt {attempt}/{attempts}): {e}")
                    logger.info(f"Retrying in {current_delay:.1f}s...")
                    time.sleep(current_delay)
                    current_delay *= backoff

            return None

        return wrapper

    return decorator
