"""Rollout manager - digest-pinned rolling deployments for containerized workloads."""

__version__ = "1.0.0"

from .deployment.orchestrator import DeploymentOrchestrator

__all__ = ["DeploymentOrchestrator"]
