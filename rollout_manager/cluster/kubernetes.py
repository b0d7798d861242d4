"""
Kubernetes implementation of the workload control API.

A workload is an apps/v1 Deployment, its Pods and an autoscaling/v2
HorizontalPodAutoscaler of the same name. The official client is synchronous,
so every call runs in the default executor to keep the event loop free.

The cross-process orchestration lock is a coordination.k8s.io/v1 Lease named
after the workload. An unexpired Lease held by someone else blocks a new
orchestration; an expired one is taken over with a resourceVersion
precondition so two claimants cannot both win.
"""

import asyncio
import functools
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from rollout_manager.errors import TransientClusterError
from rollout_manager.models import (
    REVISION_ANNOTATION,
    AutoscaleObservation,
    ReplicaState,
    UpdateAck,
    WorkloadIdentity,
    WorkloadState,
    WorkloadUpdate,
)
from rollout_manager.models.workload import format_cpu, format_memory

logger = logging.getLogger(__name__)

CONTAINER_ANNOTATION = "rollout-manager.io/container"
LEASE_PREFIX = "rollout-manager-"


def _is_transient(exc: ApiException) -> bool:
    return exc.status is None or exc.status == 429 or exc.status >= 500


def lease_name(identity: WorkloadIdentity) -> str:
    return f"{LEASE_PREFIX}{identity.name}"


def _lease_expired(spec: Any, now: datetime) -> bool:
    renewed = spec.renew_time or spec.acquire_time
    if renewed is None or not spec.lease_duration_seconds:
        return True
    return renewed + timedelta(seconds=spec.lease_duration_seconds) <= now


def render_resources(update: WorkloadUpdate) -> Dict[str, Dict[str, str]]:
    """Render resource requirements as a container ``resources`` block."""
    resources = update.resources
    rendered: Dict[str, Dict[str, str]] = {
        "requests": {
            "cpu": format_cpu(resources.cpu_request_millicores),
            "memory": format_memory(resources.memory_request_bytes),
        }
    }
    limits = {}
    if resources.cpu_limit_millicores is not None:
        limits["cpu"] = format_cpu(resources.cpu_limit_millicores)
    if resources.memory_limit_bytes is not None:
        limits["memory"] = format_memory(resources.memory_limit_bytes)
    if limits:
        rendered["limits"] = limits
    return rendered


class KubernetesWorkloadAPI:
    """WorkloadControlAPI backed by the Kubernetes API server."""

    def __init__(
        self,
        in_cluster: bool = False,
        context: Optional[str] = None,
        apps_v1: Optional[Any] = None,
        core_v1: Optional[Any] = None,
        autoscaling_v2: Optional[Any] = None,
        coordination_v1: Optional[Any] = None,
        lease_duration_seconds: int = 3600,
    ) -> None:
        """
        Initialize Kubernetes clients.

        Args:
            in_cluster: Load the in-cluster service account instead of kubeconfig
            context: kubeconfig context name
            apps_v1, core_v1, autoscaling_v2, coordination_v1: Pre-built API clients (tests)
            lease_duration_seconds: Lifetime of the orchestration Lease
        """
        if None in (apps_v1, core_v1, autoscaling_v2, coordination_v1):
            if in_cluster:
                config.load_incluster_config()
            else:
                config.load_kube_config(context=context)
            logger.info(
                f"Kubernetes client initialized ({'in-cluster' if in_cluster else context or 'default context'})"
            )
        self.apps_v1 = apps_v1 or client.AppsV1Api()
        self.core_v1 = core_v1 or client.CoreV1Api()
        self.autoscaling_v2 = autoscaling_v2 or client.AutoscalingV2Api()
        self.coordination_v1 = coordination_v1 or client.CoordinationV1Api()
        self.lease_duration_seconds = lease_duration_seconds

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking client call in the executor, classifying failures."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
        except ApiException as e:
            if _is_transient(e):
                raise TransientClusterError(f"Kubernetes API error {e.status}: {e.reason}") from e
            raise
        except (urllib3.exceptions.HTTPError, ConnectionError) as e:
            raise TransientClusterError(f"Kubernetes API unreachable: {e}") from e

    async def get_workload_state(self, identity: WorkloadIdentity) -> WorkloadState:
        try:
            deployment = await self._call(
                self.apps_v1.read_namespaced_deployment, identity.name, identity.namespace
            )
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Deployment {identity} does not exist yet")
                return WorkloadState(identity=identity)
            raise

        annotations: Dict[str, str] = dict(deployment.metadata.annotations or {})
        container_name = annotations.get(CONTAINER_ANNOTATION, identity.name)
        match_labels = deployment.spec.selector.match_labels or {}
        selector = ",".join(f"{key}={value}" for key, value in sorted(match_labels.items()))

        pods = await self._call(
            self.core_v1.list_namespaced_pod, identity.namespace, label_selector=selector
        )

        replicas: List[ReplicaState] = []
        for pod in pods.items:
            if pod.metadata.deletion_timestamp is not None:
                # Terminating pods no longer count toward the workload
                continue
            replicas.append(self._replica_from_pod(pod, container_name))

        transitions = [r.last_transition for r in replicas if r.last_transition is not None]
        return WorkloadState(
            identity=identity,
            replicas=replicas,
            desired_replicas=deployment.spec.replicas or 0,
            revision=annotations.get(REVISION_ANNOTATION),
            annotations=annotations,
            last_transition=max(transitions) if transitions else None,
        )

    @staticmethod
    def _replica_from_pod(pod: Any, container_name: str) -> ReplicaState:
        containers = pod.spec.containers or []
        container = next((c for c in containers if c.name == container_name), None)
        if container is None and containers:
            container = containers[0]

        ready = False
        last_transition = None
        for condition in pod.status.conditions or []:
            if condition.type == "Ready":
                ready = condition.status == "True"
                last_transition = condition.last_transition_time

        restart_count = sum(
            status.restart_count or 0 for status in (pod.status.container_statuses or [])
        )
        return ReplicaState(
            name=pod.metadata.name,
            image_reference=container.image if container is not None else "",
            ready=ready,
            restart_count=restart_count,
            last_transition=last_transition,
        )

    async def apply_workload_update(
        self, identity: WorkloadIdentity, update: WorkloadUpdate
    ) -> UpdateAck:
        """
        Patch the Deployment template, strategy and annotations for one batch.

        The Deployment controller replaces pods on its own; how far it runs
        ahead is bounded only by the maxSurge/maxUnavailable set here for the
        step. ``update.updated_replicas`` is the readiness target the
        RolloutController waits for before sending the next step, not a value
        written to the cluster.
        """
        has_autoscaler = await self._patch_autoscaler_bounds(identity, update)

        annotations = dict(update.annotations)
        annotations[REVISION_ANNOTATION] = update.revision
        annotations[CONTAINER_ANNOTATION] = update.container_name

        spec: Dict[str, Any] = {
            "strategy": {
                "type": "RollingUpdate",
                "rollingUpdate": {
                    "maxSurge": update.max_surge,
                    "maxUnavailable": update.max_unavailable,
                },
            },
            "template": {
                "spec": {
                    "containers": [
                        {
                            "name": update.container_name,
                            "image": update.image_reference,
                            "resources": render_resources(update),
                        }
                    ]
                }
            },
        }
        if not has_autoscaler:
            # With an autoscaler present the replica count belongs to it
            spec["replicas"] = update.replicas

        body = {"metadata": {"annotations": annotations}, "spec": spec}
        try:
            await self._call(
                self.apps_v1.patch_namespaced_deployment, identity.name, identity.namespace, body
            )
        except ApiException as e:
            logger.error(f"Update of {identity} rejected: {e.status} {e.reason}")
            return UpdateAck(accepted=False, message=f"{e.status} {e.reason}")

        logger.debug(
            f"Patched {identity}: {update.updated_replicas}/{update.replicas} replicas "
            f"to {update.image_reference}"
        )
        return UpdateAck(accepted=True)

    async def _patch_autoscaler_bounds(
        self, identity: WorkloadIdentity, update: WorkloadUpdate
    ) -> bool:
        body = {
            "spec": {
                "minReplicas": update.replica_bounds.min_replicas,
                "maxReplicas": update.replica_bounds.max_replicas,
            }
        }
        try:
            await self._call(
                self.autoscaling_v2.patch_namespaced_horizontal_pod_autoscaler,
                identity.name,
                identity.namespace,
                body,
            )
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"No autoscaler for {identity}, managing replicas directly")
                return False
            raise
        return True

    async def get_autoscale_observation(self, identity: WorkloadIdentity) -> AutoscaleObservation:
        try:
            hpa = await self._call(
                self.autoscaling_v2.read_namespaced_horizontal_pod_autoscaler,
                identity.name,
                identity.namespace,
            )
        except ApiException as e:
            if e.status != 404:
                raise
            logger.warning(f"No autoscaler found for {identity}")
            state = await self.get_workload_state(identity)
            return AutoscaleObservation(
                current_replicas=state.replica_count,
                min_replicas=state.desired_replicas,
                max_replicas=state.desired_replicas,
                metrics_available=False,
            )

        cpu: Optional[float] = None
        memory: Optional[float] = None
        for metric in hpa.status.current_metrics or []:
            if metric.type != "Resource" or metric.resource is None:
                continue
            current = metric.resource.current
            if current is None or current.average_utilization is None:
                continue
            if metric.resource.name == "cpu":
                cpu = float(current.average_utilization)
            elif metric.resource.name == "memory":
                memory = float(current.average_utilization)

        return AutoscaleObservation(
            current_replicas=hpa.status.current_replicas or 0,
            min_replicas=hpa.spec.min_replicas or 1,
            max_replicas=hpa.spec.max_replicas,
            cpu_utilization_percent=cpu,
            memory_utilization_percent=memory,
            metrics_available=cpu is not None or memory is not None,
        )

    async def acquire_lock(self, identity: WorkloadIdentity, holder: str) -> bool:
        name = lease_name(identity)
        now = datetime.now(timezone.utc)
        lease = client.V1Lease(
            metadata=client.V1ObjectMeta(name=name, namespace=identity.namespace),
            spec=client.V1LeaseSpec(
                holder_identity=holder,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            await self._call(self.coordination_v1.create_namespaced_lease, identity.namespace, lease)
            logger.debug(f"Created lease {name} for {holder}")
            return True
        except ApiException as e:
            if e.status != 409:
                raise

        try:
            current = await self._call(
                self.coordination_v1.read_namespaced_lease, name, identity.namespace
            )
        except ApiException as e:
            if e.status == 404:
                raise TransientClusterError(f"Lease {name} released while claiming it") from e
            raise

        current_holder = current.spec.holder_identity
        if current_holder not in (None, holder) and not _lease_expired(current.spec, now):
            logger.info(f"{identity} is locked by {current_holder}")
            return False

        lease.metadata.resource_version = current.metadata.resource_version
        try:
            await self._call(
                self.coordination_v1.replace_namespaced_lease, name, identity.namespace, lease
            )
        except ApiException as e:
            if e.status == 409:
                logger.info(f"Lost the race for lease {name}")
                return False
            raise
        if current_holder not in (None, holder):
            logger.warning(f"Took over expired lease {name} from {current_holder}")
        return True

    async def release_lock(self, identity: WorkloadIdentity, holder: str) -> None:
        name = lease_name(identity)
        try:
            current = await self._call(
                self.coordination_v1.read_namespaced_lease, name, identity.namespace
            )
        except ApiException as e:
            if e.status == 404:
                return
            raise

        if current.spec.holder_identity != holder:
            logger.warning(f"Lease {name} now held by {current.spec.holder_identity}, leaving it")
            return

        options = client.V1DeleteOptions(
            preconditions=client.V1Preconditions(
                resource_version=current.metadata.resource_version
            )
        )
        try:
            await self._call(
                self.coordination_v1.delete_namespaced_lease,
                name,
                identity.namespace,
                body=options,
            )
        except ApiException as e:
            if e.status not in (404, 409):
                raise
        logger.debug(f"Released lease {name}")
