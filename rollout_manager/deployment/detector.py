"""
Change detection.

Deciding whether a rollout is needed is a pure function of the desired spec
and the observed state, kept apart from the effectful rollout so it can be
tested without a cluster.
"""

import hashlib
import json

from rollout_manager.models import ChangeDecision, WorkloadSpec, WorkloadState


def compute_revision(spec: WorkloadSpec) -> str:
    """
    Opaque marker for the parts of a spec that are not visible on replicas.

    Covers resource requests/limits and replica bounds. The image is compared
    per replica instead.
    """
    payload = {
        "resources": spec.resources.model_dump(),
        "replica_bounds": spec.replica_bounds.model_dump(),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()[:16]


def detect_changes(spec: WorkloadSpec, state: WorkloadState) -> ChangeDecision:
    """
    Decide whether ``state`` must be rolled to ``spec``.

    Args:
        spec: Resolved desired spec
        state: Observed workload state

    Returns:
        ChangeDecision.no_change() or ChangeDecision.rollout(reasons)
    """
    reasons = []
    desired = spec.desired_reference

    if not state.replicas:
        reasons.append("no running replicas")
    else:
        stale = sorted(
            replica.name for replica in state.replicas if replica.image_reference != desired
        )
        if stale:
            reasons.append(f"{len(stale)} replica(s) not running {desired}: {', '.join(stale)}")

    revision = compute_revision(spec)
    if state.revision != revision:
        if state.revision is None:
            reasons.append("no revision marker on workload")
        else:
            reasons.append(f"revision changed from {state.revision} to {revision}")

    if reasons:
        return ChangeDecision.rollout(reasons)
    return ChangeDecision.no_change()
