"""
Pydantic models for the rollout manager.
"""

from rollout_manager.models.attempt import (
    AttemptOutcome,
    AttemptRecord,
    OrchestrationOutcome,
    OrchestrationReport,
    OrchestrationState,
    Stage,
    StageResult,
    StageStatus,
)
from rollout_manager.models.autoscale import AutoscaleObservation
from rollout_manager.models.results import (
    AutoscaleResult,
    AutoscaleStatus,
    ChangeDecision,
    ChangeStatus,
    HealthResult,
    HealthStatus,
    RolloutPlan,
    RolloutResult,
    RolloutStatus,
    RolloutStep,
)
from rollout_manager.models.update import (
    IMAGE_ANNOTATION,
    PREVIOUS_IMAGE_ANNOTATION,
    REVISION_ANNOTATION,
    UpdateAck,
    WorkloadUpdate,
)
from rollout_manager.models.workload import (
    ReplicaBounds,
    ReplicaState,
    ResourceRequirements,
    RolloutStrategy,
    WorkloadIdentity,
    WorkloadSpec,
    WorkloadState,
)

__all__ = [
    # Workload
    "ReplicaBounds",
    "ReplicaState",
    "ResourceRequirements",
    "RolloutStrategy",
    "WorkloadIdentity",
    "WorkloadSpec",
    "WorkloadState",
    # Cluster requests
    "IMAGE_ANNOTATION",
    "PREVIOUS_IMAGE_ANNOTATION",
    "REVISION_ANNOTATION",
    "UpdateAck",
    "WorkloadUpdate",
    # Autoscaler
    "AutoscaleObservation",
    # Stage results
    "AutoscaleResult",
    "AutoscaleStatus",
    "ChangeDecision",
    "ChangeStatus",
    "HealthResult",
    "HealthStatus",
    "RolloutPlan",
    "RolloutResult",
    "RolloutStatus",
    "RolloutStep",
    # Attempts
    "AttemptOutcome",
    "AttemptRecord",
    "OrchestrationOutcome",
    "OrchestrationReport",
    "OrchestrationState",
    "Stage",
    "StageResult",
    "StageStatus",
]
