"""
Workload update requests sent to the cluster.
"""

from typing import Dict, Optional

from pydantic import BaseModel, Field

from rollout_manager.models.workload import ReplicaBounds, ResourceRequirements

REVISION_ANNOTATION = "rollout-manager.io/revision"
IMAGE_ANNOTATION = "rollout-manager.io/image"
PREVIOUS_IMAGE_ANNOTATION = "rollout-manager.io/previous-image"


class WorkloadUpdate(BaseModel):
    """
    Request to move one batch of replicas to a reference.

    The cluster keeps ``replicas`` replicas in steady state, of which
    ``updated_replicas`` run ``image_reference`` once the batch settles. It may
    create at most ``max_surge`` extra replicas and take down at most
    ``max_unavailable`` old ones while doing so.
    """

    container_name: str
    image_reference: str
    resources: ResourceRequirements
    replica_bounds: ReplicaBounds
    replicas: int = Field(..., ge=1)
    updated_replicas: int = Field(..., ge=0)
    max_surge: int = Field(..., ge=0)
    max_unavailable: int = Field(..., ge=0)
    revision: str
    annotations: Dict[str, str] = Field(default_factory=dict)


class UpdateAck(BaseModel):
    """Cluster answer to a WorkloadUpdate."""

    accepted: bool
    message: Optional[str] = None
