"""
Rollout planning.

Splits a rollout into batches so that, at every step, no more than the
max-unavailable budget of old replicas is down and no more than the
max-surge budget of extra replicas exists.
"""

from rollout_manager.errors import ConfigurationError
from rollout_manager.models import RolloutPlan, RolloutStep, WorkloadSpec, WorkloadState


def target_replicas(spec: WorkloadSpec, state: WorkloadState) -> int:
    """Steady-state replica count: the observed desired count clamped into bounds."""
    observed = state.desired_replicas or state.replica_count
    return spec.replica_bounds.clamp(observed)


def build_rollout_plan(spec: WorkloadSpec, state: WorkloadState) -> RolloutPlan:
    """
    Build the ordered replacement steps for moving ``state`` to ``spec``.

    Each step creates up to ``surge`` new replicas ahead of time and takes
    down the rest of its batch, so the number of unavailable replicas during
    the step is ``batch_size - surge``, never more than the unavailable budget.

    Raises:
        ConfigurationError: If both budgets resolve to zero
    """
    replicas = target_replicas(spec, state)
    unavailable_budget = min(spec.strategy.unavailable_budget(replicas), replicas)
    surge_budget = spec.strategy.surge_budget(replicas)
    if unavailable_budget + surge_budget == 0:
        raise ConfigurationError(
            f"Rollout of {spec.identity} cannot progress: max_unavailable and max_surge "
            f"both resolve to 0 for {replicas} replicas"
        )

    reference = spec.desired_reference
    # Replicas already running the desired reference need no replacement
    already_updated = min(len(state.replicas_on(reference)), replicas)

    steps = []
    updated = already_updated
    while updated < replicas or not steps:
        batch_size = max(1, min(replicas - updated, unavailable_budget + surge_budget))
        surge = min(surge_budget, batch_size)
        down = batch_size - surge
        updated = min(replicas, updated + batch_size)
        steps.append(
            RolloutStep(
                index=len(steps),
                batch_size=batch_size,
                surge=surge,
                max_unavailable=down,
                updated_target=updated,
                total_replicas=replicas,
                min_ready=replicas - down,
            )
        )

    return RolloutPlan(
        reference=reference,
        replicas=replicas,
        unavailable_budget=unavailable_budget,
        surge_budget=surge_budget,
        steps=steps,
    )
