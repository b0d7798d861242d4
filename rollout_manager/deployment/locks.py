"""
Per-workload mutual exclusion and cancellation.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from rollout_manager.errors import AlreadyInProgress, Cancelled
from rollout_manager.models import WorkloadIdentity

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cooperative cancellation for one orchestration.

    Polling loops wait on the token instead of sleeping, so a cancel request
    interrupts the wait immediately.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self.reason or "cancelled by caller")

    async def wait(self, timeout: float) -> None:
        """
        Wait up to ``timeout`` seconds.

        Raises:
            Cancelled: If cancellation is requested before or during the wait
        """
        self.raise_if_cancelled()
        if timeout <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()


class IdentityLockRegistry:
    """Allows at most one active orchestration per workload identity."""

    def __init__(self) -> None:
        self._active: Dict[WorkloadIdentity, CancellationToken] = {}

    def is_active(self, identity: WorkloadIdentity) -> bool:
        return identity in self._active

    def token_for(self, identity: WorkloadIdentity) -> Optional[CancellationToken]:
        return self._active.get(identity)

    @asynccontextmanager
    async def hold(self, identity: WorkloadIdentity) -> AsyncIterator[CancellationToken]:
        """
        Hold the lock for ``identity`` for the lifetime of the context.

        Check and claim happen without an await in between, so two coroutines
        on the same loop cannot both acquire it.

        Raises:
            AlreadyInProgress: If another orchestration holds the lock
        """
        if identity in self._active:
            logger.warning(f"Rejecting concurrent orchestration for {identity}")
            raise AlreadyInProgress(identity)
        token = CancellationToken()
        self._active[identity] = token
        try:
            yield token
        finally:
            del self._active[identity]
