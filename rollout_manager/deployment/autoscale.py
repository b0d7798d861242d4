"""
Post-rollout autoscaler confirmation.

Samples the autoscaler for a confirmation window and checks that
utilization settles below the scale-up threshold with the replica count
inside its bounds. Missing metrics are expected right after a rollout and
only turn into a (soft) warning once they outlast the grace period.
"""

import asyncio
import logging
from typing import Optional

from rollout_manager.cluster.protocols import WorkloadControlAPI
from rollout_manager.config.settings import AutoscaleSettings, ClusterSettings
from rollout_manager.deployment.locks import CancellationToken
from rollout_manager.errors import ConfigurationError
from rollout_manager.models import (
    AutoscaleObservation,
    AutoscaleResult,
    AutoscaleStatus,
    ReplicaBounds,
    WorkloadIdentity,
)
from rollout_manager.utils.retry import retry_transient

logger = logging.getLogger(__name__)


def validate_autoscale_settings(settings: AutoscaleSettings) -> None:
    """
    Reject thresholds the autoscaler cannot represent.

    The autoscaler works in whole utilization percentages, so the scale-up
    threshold must be an integer in [1, 100].

    Raises:
        ConfigurationError: On the first invalid value
    """
    threshold = settings.scale_up_threshold_percent
    if threshold != int(threshold) or not 1 <= threshold <= 100:
        raise ConfigurationError(
            f"scale_up_threshold_percent must be a whole percentage in [1, 100], got {threshold}"
        )
    if settings.sample_interval_seconds > settings.confirmation_window_seconds:
        raise ConfigurationError(
            "autoscale.sample_interval_seconds must not exceed confirmation_window_seconds"
        )


class AutoscaleMonitor:
    """Confirms the autoscaler is content after a rollout."""

    def __init__(
        self,
        cluster: WorkloadControlAPI,
        settings: Optional[AutoscaleSettings] = None,
        cluster_settings: Optional[ClusterSettings] = None,
    ) -> None:
        self.cluster = cluster
        self.settings = settings or AutoscaleSettings()
        self.cluster_settings = cluster_settings or ClusterSettings()

    async def observe(self, identity: WorkloadIdentity) -> AutoscaleObservation:
        return await retry_transient(
            lambda: self.cluster.get_autoscale_observation(identity),
            description=f"read autoscaler of {identity}",
            retries=self.cluster_settings.transient_retries,
            delay=self.cluster_settings.transient_retry_delay_seconds,
        )

    async def confirm(
        self,
        identity: WorkloadIdentity,
        bounds: Optional[ReplicaBounds] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AutoscaleResult:
        """
        Sample the autoscaler until it is stable or the window closes.

        Args:
            identity: Workload whose autoscaler to observe
            bounds: Replica bounds to enforce, defaults to the autoscaler's own
            cancel_token: Interrupts the wait between samples

        Returns:
            AutoscaleResult stable, elevated or metrics_unavailable
        """
        token = cancel_token or CancellationToken()
        settings = self.settings
        loop = asyncio.get_running_loop()
        started = loop.time()
        window_end = started + settings.confirmation_window_seconds

        samples = 0
        consecutive_stable = 0
        unavailable_since: Optional[float] = None
        last: Optional[AutoscaleObservation] = None

        while True:
            token.raise_if_cancelled()
            observation = await self.observe(identity)
            now = loop.time()
            samples += 1
            last = observation

            if not observation.metrics_available:
                consecutive_stable = 0
                if unavailable_since is None:
                    unavailable_since = now
                if now - unavailable_since >= settings.metrics_grace_seconds:
                    logger.warning(
                        f"{identity}: autoscaler metrics unavailable for "
                        f"{now - unavailable_since:.0f}s, past the grace period"
                    )
                    return AutoscaleResult(
                        status=AutoscaleStatus.METRICS_UNAVAILABLE,
                        current_replicas=observation.current_replicas,
                        samples=samples,
                        detail=f"metrics unavailable past {settings.metrics_grace_seconds:.0f}s grace period",
                    )
            else:
                unavailable_since = None
                utilization = observation.utilization
                lower = bounds.min_replicas if bounds else observation.min_replicas
                upper = bounds.max_replicas if bounds else observation.max_replicas
                in_bounds = lower <= observation.current_replicas <= upper
                if (
                    utilization is not None
                    and utilization < settings.scale_up_threshold_percent
                    and in_bounds
                ):
                    consecutive_stable += 1
                else:
                    consecutive_stable = 0
                logger.debug(
                    f"{identity}: utilization {utilization}% with {observation.current_replicas} "
                    f"replicas in [{lower}, {upper}] ({consecutive_stable}/{settings.stable_samples} stable)"
                )
                if consecutive_stable >= settings.stable_samples:
                    return AutoscaleResult(
                        status=AutoscaleStatus.STABLE,
                        utilization=utilization,
                        current_replicas=observation.current_replicas,
                        samples=samples,
                    )

            remaining = window_end - loop.time()
            if remaining <= 0:
                break
            await token.wait(min(settings.sample_interval_seconds, remaining))

        if last is None or not last.metrics_available:
            return AutoscaleResult(
                status=AutoscaleStatus.METRICS_UNAVAILABLE,
                current_replicas=last.current_replicas if last else None,
                samples=samples,
                detail="metrics still unavailable when the confirmation window closed",
            )

        logger.warning(
            f"{identity}: autoscaler not stable after {settings.confirmation_window_seconds:.0f}s "
            f"(utilization {last.utilization}%, replicas {last.current_replicas})"
        )
        return AutoscaleResult(
            status=AutoscaleStatus.ELEVATED,
            utilization=last.utilization,
            current_replicas=last.current_replicas,
            samples=samples,
            detail=f"utilization {last.utilization}% with {last.current_replicas} replicas",
        )
