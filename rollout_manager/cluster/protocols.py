"""
Protocols for the collaborators the orchestrator depends on.

The orchestrator never talks to a cluster or registry directly; it goes
through these contracts so tests can substitute in-memory implementations.
"""

from typing import Optional, Protocol, runtime_checkable

from rollout_manager.models import (
    AutoscaleObservation,
    UpdateAck,
    WorkloadIdentity,
    WorkloadState,
    WorkloadUpdate,
)


@runtime_checkable
class WorkloadControlAPI(Protocol):
    """Read and update one workload and its autoscaler."""

    async def get_workload_state(self, identity: WorkloadIdentity) -> WorkloadState:
        """
        Read the observed state of a workload.

        Promises:
        - Returns an eventually-consistent snapshot, possibly lagging writes
        - Raises TransientClusterError for failures worth retrying
        """
        ...

    async def apply_workload_update(
        self, identity: WorkloadIdentity, update: WorkloadUpdate
    ) -> UpdateAck:
        """
        Request that the cluster move a batch of replicas.

        Promises:
        - Returns accepted=False (never raises) when the request is refused
        - Stores the revision marker and annotations on the workload
        - Raises TransientClusterError for failures worth retrying
        """
        ...

    async def get_autoscale_observation(self, identity: WorkloadIdentity) -> AutoscaleObservation:
        """
        Read the horizontal autoscaler's view of a workload.

        Promises:
        - Reports metrics_available=False rather than raising while metrics warm up
        - Raises TransientClusterError for failures worth retrying
        """
        ...

    async def acquire_lock(self, identity: WorkloadIdentity, holder: str) -> bool:
        """
        Claim the cluster-side orchestration lock for a workload.

        Promises:
        - Returns False while another holder owns an unexpired lock
        - Returns True when the lock is free, expired or already owned by ``holder``
        - Raises TransientClusterError for failures worth retrying
        """
        ...

    async def release_lock(self, identity: WorkloadIdentity, holder: str) -> None:
        """
        Give up the lock if ``holder`` still owns it.

        Promises:
        - Never removes a lock owned by someone else
        """
        ...


@runtime_checkable
class RegistryLookup(Protocol):
    """Resolve mutable tags to immutable digests."""

    async def resolve_reference(self, image: str, tag: str) -> Optional[str]:
        """
        Promises:
        - Returns the digest served for ``tag`` at call time
        - Returns None when the tag does not exist
        - Raises RegistryUnavailable when the registry cannot answer
        """
        ...
