"""
Deployment orchestration module.

Provides the stages of a single-workload deployment:
- Digest pinning of image tags
- Change detection against the running workload
- Batched rolling updates within availability budgets
- Replica health verification and autoscaler confirmation

Usage:
    from rollout_manager.deployment import DeploymentOrchestrator

    orchestrator = DeploymentOrchestrator(cluster, registry, config)
    report = await orchestrator.orchestrate(spec)
"""

from rollout_manager.deployment.autoscale import AutoscaleMonitor, validate_autoscale_settings
from rollout_manager.deployment.detector import compute_revision, detect_changes
from rollout_manager.deployment.health import HealthVerifier
from rollout_manager.deployment.locks import CancellationToken, IdentityLockRegistry
from rollout_manager.deployment.orchestrator import DeploymentOrchestrator
from rollout_manager.deployment.planner import build_rollout_plan, target_replicas
from rollout_manager.deployment.resolver import ImageReferenceResolver
from rollout_manager.deployment.rollout import RolloutController, rollout_annotations

__all__ = [
    "AutoscaleMonitor",
    "CancellationToken",
    "DeploymentOrchestrator",
    "HealthVerifier",
    "IdentityLockRegistry",
    "ImageReferenceResolver",
    "RolloutController",
    "build_rollout_plan",
    "compute_revision",
    "detect_changes",
    "rollout_annotations",
    "target_replicas",
    "validate_autoscale_settings",
]
