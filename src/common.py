"""Common utilities and types for topology automation."""

import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def wait_until(
    check: Callable[[], bool],
    timeout: float = 600,
    interval: float = 15,
    description: str = 'condition',
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll check() until it returns True or timeout elapses.

    Returns:
        True if the condition was met, False on timeout
    """
    logger.debug(f"Waiting for {description} (timeout={timeout}s)...")
    start = time.time()
    while True:
        if check():
            logger.debug(f"{description} reached after {time.time() - start:.1f}s")
            return True
        if time.time() - start >= timeout:
            break
        logger.debug(f"{description} not reached, retrying in {interval}s...")
        sleep(interval)
    logger.error(f"Timeout waiting for {description}")
    return False


def format_duration(seconds: Optional[float]) -> str:
    """Render a duration for progress output."""
    if seconds is None:
        return '-'
    if seconds < 60:
        return f'{seconds:.1f}s'
    minutes, secs = divmod(int(seconds), 60)
    return f'{minutes}m{secs:02d}s'
