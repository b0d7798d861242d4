"""
Cluster and registry collaborators.
"""

from rollout_manager.cluster.protocols import RegistryLookup, WorkloadControlAPI

__all__ = ["RegistryLookup", "WorkloadControlAPI"]
