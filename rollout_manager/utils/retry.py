"""
Stage-level retries for transient cluster and registry errors.

These retries absorb flakiness within one stage (a single read failing on a
network blip). They are separate from attempt-level retries in the
orchestrator, which handle genuine rollout failures.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from rollout_manager.errors import ClusterUnavailable, OrchestrationError, TransientClusterError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    description: str,
    retries: int = 3,
    delay: float = 2.0,
    transient: Tuple[Type[BaseException], ...] = (TransientClusterError,),
    exhausted: Type[OrchestrationError] = ClusterUnavailable,
) -> T:
    """
    Run ``operation``, retrying transient failures up to ``retries`` times.

    Args:
        operation: Zero-argument coroutine factory
        description: What the operation does (for logging)
        retries: Retries after the first failure
        delay: Seconds to wait between tries
        transient: Exception types considered transient
        exhausted: Error raised once retries run out

    Returns:
        The operation's result

    Raises:
        ClusterUnavailable: (or ``exhausted``) if every try failed with a transient error
    """
    last_error: BaseException = TransientClusterError(description)
    for attempt in range(retries + 1):
        if attempt > 0:
            logger.info(f"Retrying {description} (try {attempt + 1}/{retries + 1})")
        try:
            return await operation()
        except transient as e:
            last_error = e
            if attempt < retries:
                logger.warning(f"Transient error during {description}: {e}")
                await asyncio.sleep(delay)
            else:
                logger.error(f"{description} failed after {retries + 1} tries: {e}")

    raise exhausted(
        f"{description} failed after {retries + 1} tries: {last_error}"
    ) from last_error
