"""
Best-effort store writes.

Store calls made by the engine never propagate failures: they are logged,
optionally retried with exponential backoff, then dropped.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .config import StoreConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def best_effort(
    description: str,
    operation: Callable[[], Awaitable[T]],
    retry_attempts: int = 0,
    retry_backoff_s: float = 0.5
) -> Optional[T]:
    """
    Run a store operation, swallowing and logging any failure.

    Args:
        description: Human-readable name of the operation, used in log lines
        operation: Zero-argument callable returning a fresh awaitable per attempt
        retry_attempts: Extra attempts after the first failure
        retry_backoff_s: Delay before the first retry, doubled on each retry

    Returns:
        The operation's result, or None if every attempt failed
    """
    delay = retry_backoff_s
    for attempt in range(retry_attempts + 1):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if attempt < retry_attempts:
                logger.warning(
                    f"{description} failed (attempt {attempt + 1}/{retry_attempts + 1}): "
                    f"{e}; retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                delay *= 2
            else:
                logger.warning(f"{description} failed, write discarded: {e}")
    return None


def policy_from_config(config: StoreConfig) -> dict:
    """Keyword arguments for best_effort() taken from the store configuration."""
    return {
        "retry_attempts": config.retry_attempts,
        "retry_backoff_s": config.retry_backoff_s,
    }
