"""
Deployment orchestrator.

Runs the orchestration state machine for one workload:

    idle -> detecting -> (no change: idle)
                      -> rolling_out -> verifying_health -> monitoring_scale
                      -> succeeded | succeeded_with_warning | failed

Failed or stalled attempts are retried with exponential backoff up to the
configured attempt limit. Only one orchestration per workload identity may
run at a time: an in-process lock guards against concurrent callers in this
process and a cluster-side lock against other processes.
"""

import asyncio
import logging
import os
import socket
from contextlib import asynccontextmanager, contextmanager
from typing import AsyncIterator, Iterator, List, Optional, Tuple

from rollout_manager.audit import audit_orchestration
from rollout_manager.cluster.protocols import RegistryLookup, WorkloadControlAPI
from rollout_manager.config.settings import RolloutManagerConfig
from rollout_manager.deployment.autoscale import AutoscaleMonitor, validate_autoscale_settings
from rollout_manager.deployment.detector import compute_revision, detect_changes
from rollout_manager.deployment.health import HealthVerifier
from rollout_manager.deployment.locks import CancellationToken, IdentityLockRegistry
from rollout_manager.deployment.planner import build_rollout_plan
from rollout_manager.deployment.resolver import ImageReferenceResolver
from rollout_manager.deployment.rollout import RolloutController, rollout_annotations
from rollout_manager.errors import (
    AlreadyInProgress,
    Cancelled,
    ConfigurationError,
    MetricsUnavailable,
    OrchestrationError,
    RetriesExhausted,
    RolloutStalled,
    TimedOut,
    Unhealthy,
    UnresolvableReference,
)
from rollout_manager.logging_config import LogContext, log_attempt_event
from rollout_manager.models import (
    PREVIOUS_IMAGE_ANNOTATION,
    AttemptOutcome,
    AttemptRecord,
    AutoscaleStatus,
    ChangeDecision,
    HealthStatus,
    OrchestrationOutcome,
    OrchestrationReport,
    OrchestrationState,
    RolloutPlan,
    RolloutStatus,
    Stage,
    StageStatus,
    WorkloadIdentity,
    WorkloadSpec,
)
from rollout_manager.models.attempt import utc_now
from rollout_manager.utils.retry import retry_transient

logger = logging.getLogger(__name__)


class DeploymentOrchestrator:
    """Orchestrates deployments of single workloads."""

    def __init__(
        self,
        cluster: WorkloadControlAPI,
        registry: RegistryLookup,
        config: Optional[RolloutManagerConfig] = None,
        locks: Optional[IdentityLockRegistry] = None,
        holder: Optional[str] = None,
    ) -> None:
        self.cluster = cluster
        # Owner recorded on the cluster-side lock
        self.holder = holder or f"{socket.gethostname()}-{os.getpid()}"
        self.config = config or RolloutManagerConfig()
        self.locks = locks or IdentityLockRegistry()

        cluster_settings = self.config.cluster
        self.resolver = ImageReferenceResolver(
            registry,
            retries=cluster_settings.transient_retries,
            retry_delay=cluster_settings.transient_retry_delay_seconds,
        )
        self.health = HealthVerifier(cluster, self.config.health, cluster_settings)
        self.rollout = RolloutController(cluster, self.health, self.config.health, cluster_settings)
        self.autoscale = AutoscaleMonitor(cluster, self.config.autoscale, cluster_settings)

    def is_active(self, identity: WorkloadIdentity) -> bool:
        return self.locks.is_active(identity)

    def cancel(self, identity: WorkloadIdentity, reason: str = "cancelled by caller") -> bool:
        """
        Cancel the in-flight orchestration for ``identity``.

        Takes effect at the next poll or backoff wait. Returns False if nothing
        is running for that identity.
        """
        token = self.locks.token_for(identity)
        if token is None:
            return False
        logger.warning(f"Cancelling orchestration of {identity}: {reason}")
        token.cancel(reason)
        return True

    async def resolve(self, spec: WorkloadSpec) -> WorkloadSpec:
        """Return ``spec`` with a digest-pinned image reference."""
        if spec.image_reference and "@" in spec.image_reference:
            return spec
        reference = await self.resolver.resolve(spec.image, spec.tag)
        return spec.with_reference(reference)

    async def preview(
        self, spec: WorkloadSpec
    ) -> Tuple[WorkloadSpec, ChangeDecision, Optional[RolloutPlan]]:
        """
        Resolve, detect and plan without writing to the cluster.

        Returns:
            Tuple of (resolved spec, change decision, plan or None when no change)
        """
        resolved = await self.resolve(spec)
        state = await self.health.read_state(resolved.identity)
        decision = detect_changes(resolved, state)
        if not decision.rollout_required:
            return resolved, decision, None
        return resolved, decision, build_rollout_plan(resolved, state)

    async def rollback(self, spec: WorkloadSpec) -> OrchestrationReport:
        """
        Roll the workload back to the image it ran before the last rollout.

        Raises:
            UnresolvableReference: No previous image is recorded on the workload
            AlreadyInProgress: Another orchestration holds the workload
        """
        state = await self.health.read_state(spec.identity)
        previous = state.annotations.get(PREVIOUS_IMAGE_ANNOTATION)
        if not previous:
            raise UnresolvableReference(
                spec.image, spec.tag, "no previous image recorded on the workload"
            )
        logger.info(f"Rolling {spec.identity} back to {previous}")
        return await self.orchestrate(spec.with_reference(previous))

    async def orchestrate(self, spec: WorkloadSpec) -> OrchestrationReport:
        """
        Run the full state machine for ``spec``.

        Returns:
            OrchestrationReport describing every attempt and the final outcome

        Raises:
            ConfigurationError: Invalid autoscale thresholds (checked before anything runs)
            AlreadyInProgress: Another orchestration, in this process or another, holds
                this workload identity
            ClusterUnavailable: The cluster-side lock could not be claimed
        """
        validate_autoscale_settings(self.config.autoscale)
        identity = spec.identity

        async with self.locks.hold(identity) as token:
            with LogContext(workload=str(identity)):
                async with self._cluster_lock(identity):
                    report = await self._run(spec, token)

        audit_orchestration(report, path=self.config.logging.audit_log)
        return report

    @asynccontextmanager
    async def _cluster_lock(self, identity: WorkloadIdentity) -> AsyncIterator[None]:
        """Hold the cluster-side lock for ``identity`` across processes."""
        settings = self.config.cluster
        acquired = await retry_transient(
            lambda: self.cluster.acquire_lock(identity, self.holder),
            description=f"lock {identity}",
            retries=settings.transient_retries,
            delay=settings.transient_retry_delay_seconds,
        )
        if not acquired:
            raise AlreadyInProgress(identity)
        try:
            yield
        finally:
            try:
                await self.cluster.release_lock(identity, self.holder)
            except Exception as e:
                # The lock expires on its own after lease_duration_seconds
                logger.warning(f"Could not release lock on {identity}: {e}")

    async def _run(self, spec: WorkloadSpec, token: CancellationToken) -> OrchestrationReport:
        identity = spec.identity
        max_attempts = self.config.orchestrator.max_attempts
        attempts: List[AttemptRecord] = []

        record = AttemptRecord(attempt=1)
        attempts.append(record)
        log_attempt_event("started", str(identity), 1, {"tag": spec.tag})

        # Resolve once so every attempt deploys the same digest
        try:
            with self._stage(record, Stage.RESOLVE):
                resolved = await self.resolve(spec)
                record.record(Stage.RESOLVE, StageStatus.SUCCEEDED, reference=resolved.image_reference)
        except OrchestrationError as e:
            record.finalize(AttemptOutcome.FAILED, e)
            log_attempt_event("failed", str(identity), 1, {"error": str(e)}, level="ERROR")
            return self._report(spec, None, attempts, OrchestrationOutcome.FAILED, error=e)

        last_error: Optional[BaseException] = None
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                record = AttemptRecord(attempt=attempt)
                attempts.append(record)
                log_attempt_event("started", str(identity), attempt)

            # Only a retry after a rollout write can find replicas on the reference
            # that never became ready
            reverify = any(
                result.stage == Stage.ROLLOUT
                for previous in attempts[:-1]
                for result in previous.stages
            )
            try:
                outcome, warning = await self._attempt(resolved, record, token, reverify)
            except Cancelled as e:
                record.state = OrchestrationState.CANCELLED
                record.finalize(AttemptOutcome.CANCELLED, e)
                log_attempt_event("cancelled", str(identity), attempt, level="WARNING")
                return self._report(
                    spec, resolved, attempts, OrchestrationOutcome.CANCELLED, error=e
                )
            except asyncio.CancelledError:
                record.state = OrchestrationState.CANCELLED
                record.finalize(AttemptOutcome.CANCELLED, Cancelled("task cancelled"))
                log_attempt_event("cancelled", str(identity), attempt, level="WARNING")
                raise
            except ConfigurationError as e:
                record.state = OrchestrationState.FAILED
                record.finalize(AttemptOutcome.FAILED, e)
                log_attempt_event("failed", str(identity), attempt, {"error": str(e)}, level="ERROR")
                return self._report(spec, resolved, attempts, OrchestrationOutcome.FAILED, error=e)
            except Exception as e:
                if not isinstance(e, OrchestrationError):
                    logger.error(f"Unexpected error deploying {identity}: {e}", exc_info=True)
                last_error = e
                record.state = OrchestrationState.FAILED
                record.finalize(
                    AttemptOutcome.TIMED_OUT if isinstance(e, TimedOut) else AttemptOutcome.FAILED,
                    e,
                )
                log_attempt_event(
                    "failed",
                    str(identity),
                    attempt,
                    {"stage": getattr(record.failed_stage, "value", None), "error": str(e)},
                    level="ERROR",
                )
                if attempt < max_attempts:
                    delay = self.config.orchestrator.backoff_for(attempt)
                    logger.info(f"Retrying {identity} in {delay:.1f}s (attempt {attempt + 1}/{max_attempts})")
                    try:
                        await token.wait(delay)
                    except Cancelled as cancelled:
                        record = AttemptRecord(attempt=attempt + 1, state=OrchestrationState.CANCELLED)
                        record.finalize(AttemptOutcome.CANCELLED, cancelled)
                        attempts.append(record)
                        log_attempt_event("cancelled", str(identity), attempt + 1, level="WARNING")
                        return self._report(
                            spec, resolved, attempts, OrchestrationOutcome.CANCELLED, error=cancelled
                        )
                continue

            record.finalize(outcome)
            log_attempt_event("finalized", str(identity), attempt, {"outcome": outcome.value})
            if outcome == AttemptOutcome.NO_CHANGE:
                final = OrchestrationOutcome.NO_CHANGE_NEEDED
            elif outcome == AttemptOutcome.SUCCEEDED_WITH_WARNING:
                final = OrchestrationOutcome.SUCCEEDED_WITH_WARNING
            else:
                final = OrchestrationOutcome.SUCCEEDED
            return self._report(spec, resolved, attempts, final, warning=warning)

        first_failed = next(
            (record.failed_stage for record in attempts if record.failed_stage), None
        )
        exhausted = RetriesExhausted(
            attempts=len(attempts),
            last_error=last_error,
            first_failed_stage=first_failed.value if first_failed else None,
        )
        logger.error(f"{identity}: {exhausted.message}")
        return self._report(spec, resolved, attempts, OrchestrationOutcome.FAILED, error=exhausted)

    async def _attempt(
        self,
        spec: WorkloadSpec,
        record: AttemptRecord,
        token: CancellationToken,
        reverify: bool = False,
    ) -> Tuple[AttemptOutcome, Optional[str]]:
        """
        One pass through the state machine. Raises on failure.

        With ``reverify`` a workload that already runs the reference is rolled
        out again so health and autoscale checks run on it.
        """
        identity = spec.identity
        reference = spec.desired_reference

        record.state = OrchestrationState.DETECTING
        with self._stage(record, Stage.DETECT):
            token.raise_if_cancelled()
            state = await self.health.read_state(identity)
            decision = detect_changes(spec, state)
            if not decision.rollout_required and reverify:
                decision = ChangeDecision.rollout(["retrying after failed attempt"])
            record.record(
                Stage.DETECT,
                StageStatus.SUCCEEDED,
                decision=decision.status.value,
                reasons=decision.reasons,
            )

        if not decision.rollout_required:
            logger.info(f"{identity} already runs {reference}, nothing to do")
            record.state = OrchestrationState.IDLE
            return AttemptOutcome.NO_CHANGE, None

        logger.info(f"Rollout required for {identity}: {decision.reason}")
        record.state = OrchestrationState.ROLLING_OUT
        with self._stage(record, Stage.ROLLOUT):
            plan = build_rollout_plan(spec, state)
            result = await self.rollout.execute(
                spec,
                plan,
                revision=compute_revision(spec),
                annotations=rollout_annotations(spec, state),
                cancel_token=token,
            )
            if result.status == RolloutStatus.STALLED:
                raise RolloutStalled(
                    f"Rollout of {identity} stalled: {result.detail}",
                    last_good_batch=result.last_good_batch,
                )
            record.record(
                Stage.ROLLOUT,
                StageStatus.SUCCEEDED,
                batches=len(plan.steps),
                final_replica_count=result.final_replica_count,
            )

        record.state = OrchestrationState.VERIFYING_HEALTH
        with self._stage(record, Stage.HEALTH):
            health = await self.health.wait_until_ready(
                identity,
                reference,
                expected_ready=plan.replicas,
                timeout=self.config.health.deadline_seconds,
                cancel_token=token,
            )
            if health.status == HealthStatus.UNHEALTHY:
                raise Unhealthy(f"{identity} is unhealthy: {health.detail}")
            if health.status == HealthStatus.TIMED_OUT:
                raise TimedOut(f"{identity} not ready before deadline: {health.detail}")
            record.record(Stage.HEALTH, StageStatus.SUCCEEDED, ready_replicas=health.ready_replicas)

        record.state = OrchestrationState.MONITORING_SCALE
        with self._stage(record, Stage.AUTOSCALE):
            scale = await self.autoscale.confirm(identity, spec.replica_bounds, cancel_token=token)

        if scale.status == AutoscaleStatus.STABLE:
            record.record(Stage.AUTOSCALE, StageStatus.SUCCEEDED, utilization=scale.utilization)
            record.state = OrchestrationState.SUCCEEDED
            return AttemptOutcome.SUCCEEDED, None

        # Autoscale problems are soft: the rollout itself already succeeded
        if scale.status == AutoscaleStatus.METRICS_UNAVAILABLE:
            soft_error = MetricsUnavailable(
                f"Autoscaler metrics unavailable for {identity}: {scale.detail}"
            )
            warning = soft_error.message
            record.record(Stage.AUTOSCALE, StageStatus.WARNING, error=soft_error)
        else:
            warning = f"Utilization elevated for {identity}: {scale.detail}"
            record.record(
                Stage.AUTOSCALE, StageStatus.WARNING, utilization=scale.utilization, detail=warning
            )
        record.state = OrchestrationState.SUCCEEDED_WITH_WARNING
        logger.warning(warning)
        return AttemptOutcome.SUCCEEDED_WITH_WARNING, warning

    @contextmanager
    def _stage(self, record: AttemptRecord, stage: Stage) -> Iterator[None]:
        """Record ``stage`` as failed, or cancelled, if its block raises."""
        try:
            yield
        except (Cancelled, asyncio.CancelledError) as e:
            record.record(stage, StageStatus.CANCELLED, error=e)
            raise
        except Exception as e:
            record.record(stage, StageStatus.FAILED, error=e)
            raise

    def _report(
        self,
        spec: WorkloadSpec,
        resolved: Optional[WorkloadSpec],
        attempts: List[AttemptRecord],
        outcome: OrchestrationOutcome,
        error: Optional[BaseException] = None,
        warning: Optional[str] = None,
    ) -> OrchestrationReport:
        last = attempts[-1]
        first_failed = next((record.failed_stage for record in attempts if record.failed_stage), None)
        last_completed = next(
            (
                record.last_completed_stage
                for record in reversed(attempts)
                if record.last_completed_stage
            ),
            None,
        )
        report = OrchestrationReport(
            identity=spec.identity,
            tag=spec.tag,
            reference=resolved.image_reference if resolved else None,
            outcome=outcome,
            attempts=attempts,
            failed_stage=last.failed_stage,
            first_failed_stage=first_failed,
            last_completed_stage=last_completed,
            error=str(error) if error else None,
            error_type=type(error).__name__ if error else None,
            warning=warning,
            started_at=attempts[0].started_at,
            completed_at=utc_now(),
        )
        level = logging.INFO if report.succeeded else logging.ERROR
        logger.log(
            level,
            f"Orchestration of {spec.identity} finished: {outcome.value} after "
            f"{len(attempts)} attempt(s)",
        )
        return report
