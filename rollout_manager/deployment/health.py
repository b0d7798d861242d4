"""
Replica readiness verification.

Polls the workload until enough replicas on the desired reference are
ready, a replica is crash-looping, or the deadline elapses.
"""

import asyncio
import logging
from typing import Optional

from rollout_manager.cluster.protocols import WorkloadControlAPI
from rollout_manager.config.settings import ClusterSettings, HealthSettings
from rollout_manager.deployment.locks import CancellationToken
from rollout_manager.models import HealthResult, HealthStatus, WorkloadIdentity, WorkloadState
from rollout_manager.utils.retry import retry_transient

logger = logging.getLogger(__name__)


class HealthVerifier:
    """Waits for replicas to report ready."""

    def __init__(
        self,
        cluster: WorkloadControlAPI,
        settings: Optional[HealthSettings] = None,
        cluster_settings: Optional[ClusterSettings] = None,
    ) -> None:
        self.cluster = cluster
        self.settings = settings or HealthSettings()
        self.cluster_settings = cluster_settings or ClusterSettings()

    async def read_state(self, identity: WorkloadIdentity) -> WorkloadState:
        return await retry_transient(
            lambda: self.cluster.get_workload_state(identity),
            description=f"read state of {identity}",
            retries=self.cluster_settings.transient_retries,
            delay=self.cluster_settings.transient_retry_delay_seconds,
        )

    async def wait_until_ready(
        self,
        identity: WorkloadIdentity,
        reference: str,
        expected_ready: int,
        timeout: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> HealthResult:
        """
        Poll until ``expected_ready`` replicas running ``reference`` are ready.

        Args:
            identity: Workload to poll
            reference: Desired image reference
            expected_ready: Ready replicas on ``reference`` required
            timeout: Seconds before giving up (defaults to the overall deadline)
            cancel_token: Interrupts the wait between polls

        Returns:
            HealthResult with status ready, unhealthy (crash loop) or timed_out

        Raises:
            Cancelled: If the token is cancelled
            ClusterUnavailable: If reads keep failing past the stage retry budget
        """
        token = cancel_token or CancellationToken()
        deadline_seconds = timeout if timeout is not None else self.settings.deadline_seconds
        threshold = self.settings.crash_loop_restart_threshold
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + deadline_seconds
        ready = 0

        while True:
            token.raise_if_cancelled()
            state = await self.read_state(identity)
            on_reference = state.replicas_on(reference)
            ready = sum(1 for replica in on_reference if replica.ready)

            crash_looping = [
                replica
                for replica in on_reference
                if not replica.ready and replica.restart_count >= threshold
            ]
            if crash_looping:
                worst = max(crash_looping, key=lambda replica: replica.restart_count)
                detail = (
                    f"replica {worst.name} restarted {worst.restart_count} times "
                    f"(threshold {threshold})"
                )
                logger.error(f"{identity} is crash-looping: {detail}")
                return HealthResult(
                    status=HealthStatus.UNHEALTHY,
                    detail=detail,
                    ready_replicas=ready,
                    waited_seconds=loop.time() - started,
                )

            if ready >= expected_ready:
                logger.info(f"{identity}: {ready}/{expected_ready} replicas ready on {reference}")
                return HealthResult(
                    status=HealthStatus.READY,
                    ready_replicas=ready,
                    waited_seconds=loop.time() - started,
                )

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            logger.debug(f"{identity}: {ready}/{expected_ready} ready, polling again")
            await token.wait(min(self.settings.poll_interval_seconds, remaining))

        logger.warning(
            f"{identity}: only {ready}/{expected_ready} replicas ready after {deadline_seconds}s"
        )
        return HealthResult(
            status=HealthStatus.TIMED_OUT,
            detail=f"{ready}/{expected_ready} replicas ready after {deadline_seconds:.0f}s",
            ready_replicas=ready,
            waited_seconds=loop.time() - started,
        )
