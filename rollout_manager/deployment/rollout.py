"""
Rolling update execution.

Applies a RolloutPlan one batch at a time and waits for each batch to become
ready before advancing. A stalled batch halts the rollout where it is; rolling
back is a separate, explicit operation.
"""

import logging
from typing import Dict, Optional

from rollout_manager.cluster.protocols import WorkloadControlAPI
from rollout_manager.config.settings import ClusterSettings, HealthSettings
from rollout_manager.deployment.health import HealthVerifier
from rollout_manager.deployment.locks import CancellationToken
from rollout_manager.errors import ConfigurationError, UpdateRejected
from rollout_manager.models import (
    IMAGE_ANNOTATION,
    PREVIOUS_IMAGE_ANNOTATION,
    RolloutPlan,
    RolloutResult,
    RolloutStatus,
    WorkloadSpec,
    WorkloadState,
    WorkloadUpdate,
)
from rollout_manager.utils.retry import retry_transient

logger = logging.getLogger(__name__)


def rollout_annotations(spec: WorkloadSpec, state: WorkloadState) -> Dict[str, str]:
    """Annotations recording the applied image and the one it replaces."""
    annotations = {IMAGE_ANNOTATION: spec.desired_reference}
    previous = state.annotations.get(IMAGE_ANNOTATION)
    if previous and previous != spec.desired_reference:
        annotations[PREVIOUS_IMAGE_ANNOTATION] = previous
    elif state.annotations.get(PREVIOUS_IMAGE_ANNOTATION):
        annotations[PREVIOUS_IMAGE_ANNOTATION] = state.annotations[PREVIOUS_IMAGE_ANNOTATION]
    return annotations


class RolloutController:
    """Drives a rolling update batch by batch."""

    def __init__(
        self,
        cluster: WorkloadControlAPI,
        health: HealthVerifier,
        settings: Optional[HealthSettings] = None,
        cluster_settings: Optional[ClusterSettings] = None,
    ) -> None:
        self.cluster = cluster
        self.health = health
        self.settings = settings or HealthSettings()
        self.cluster_settings = cluster_settings or ClusterSettings()

    async def execute(
        self,
        spec: WorkloadSpec,
        plan: RolloutPlan,
        revision: str,
        annotations: Optional[Dict[str, str]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RolloutResult:
        """
        Execute ``plan`` against the cluster.

        Args:
            spec: Resolved desired spec
            plan: Validated replacement steps
            revision: Revision marker to store on the workload
            annotations: Extra annotations written with every batch
            cancel_token: Stops the rollout between polls

        Returns:
            RolloutResult complete (with final replica count) or stalled

        Raises:
            ConfigurationError: Plan violates its own budgets (no write is issued)
            UpdateRejected: Cluster refused a batch
            Cancelled: Caller cancelled; the in-flight batch is left as-is
        """
        token = cancel_token or CancellationToken()
        identity = spec.identity

        problems = plan.violations()
        if problems:
            raise ConfigurationError(f"Invalid rollout plan for {identity}: {'; '.join(problems)}")

        last_good_batch: Optional[int] = None
        for step in plan.steps:
            token.raise_if_cancelled()
            logger.info(
                f"{identity}: batch {step.index + 1}/{len(plan.steps)} - moving "
                f"{step.batch_size} replica(s) to {plan.reference} "
                f"(surge {step.surge}, unavailable {step.max_unavailable})"
            )

            update = WorkloadUpdate(
                container_name=spec.container,
                image_reference=plan.reference,
                resources=spec.resources,
                replica_bounds=spec.replica_bounds,
                replicas=step.total_replicas,
                updated_replicas=step.updated_target,
                max_surge=step.surge,
                max_unavailable=step.max_unavailable,
                revision=revision,
                annotations=annotations or {},
            )
            ack = await retry_transient(
                lambda: self.cluster.apply_workload_update(identity, update),
                description=f"apply batch {step.index} to {identity}",
                retries=self.cluster_settings.transient_retries,
                delay=self.cluster_settings.transient_retry_delay_seconds,
            )
            if not ack.accepted:
                raise UpdateRejected(
                    f"Cluster rejected batch {step.index} for {identity}: {ack.message}"
                )

            result = await self.health.wait_until_ready(
                identity,
                plan.reference,
                expected_ready=step.updated_target,
                timeout=self.settings.batch_timeout_seconds,
                cancel_token=token,
            )
            if not result.ready:
                detail = f"batch {step.index} not ready: {result.detail}"
                logger.error(f"{identity}: rollout stalled, {detail}")
                return RolloutResult(
                    status=RolloutStatus.STALLED,
                    last_good_batch=last_good_batch,
                    detail=detail,
                )
            last_good_batch = step.index

        logger.info(f"{identity}: rollout complete with {plan.replicas} replicas")
        return RolloutResult(
            status=RolloutStatus.COMPLETE,
            final_replica_count=plan.replicas,
            last_good_batch=last_good_batch,
        )
