"""
Tests for batch-by-batch rollout execution.
"""

import pytest

from rollout_manager.config.settings import ClusterSettings, HealthSettings
from rollout_manager.deployment.detector import compute_revision
from rollout_manager.deployment.health import HealthVerifier
from rollout_manager.deployment.locks import CancellationToken
from rollout_manager.deployment.planner import build_rollout_plan
from rollout_manager.deployment.rollout import RolloutController, rollout_annotations
from rollout_manager.errors import Cancelled, ConfigurationError, UpdateRejected
from rollout_manager.models import (
    IMAGE_ANNOTATION,
    PREVIOUS_IMAGE_ANNOTATION,
    REVISION_ANNOTATION,
    RolloutStatus,
    WorkloadSpec,
    WorkloadState,
)

from fakes import DIGEST_NEW, DIGEST_OLD, IMAGE, FakeCluster, make_replicas

NEW_REF = f"{IMAGE}@{DIGEST_NEW}"
OLD_REF = f"{IMAGE}@{DIGEST_OLD}"


def make_spec(replicas=3, max_unavailable=1, max_surge=1):
    return WorkloadSpec(
        name="breach-lookup",
        namespace="security",
        image=IMAGE,
        image_reference=NEW_REF,
        replica_bounds={"min_replicas": replicas, "max_replicas": replicas + 2},
        strategy={"max_unavailable": max_unavailable, "max_surge": max_surge},
    )


@pytest.fixture
def health_settings():
    return HealthSettings(
        poll_interval_seconds=0.01, deadline_seconds=0.5, batch_timeout_seconds=0.1
    )


@pytest.fixture
def cluster_settings():
    return ClusterSettings(transient_retries=1, transient_retry_delay_seconds=0)


def make_controller(cluster, health_settings, cluster_settings):
    health = HealthVerifier(cluster, health_settings, cluster_settings)
    return RolloutController(cluster, health, health_settings, cluster_settings)


async def plan_for(spec, cluster):
    state = await cluster.get_workload_state(spec.identity)
    return build_rollout_plan(spec, state)


def cluster_state(cluster, spec):
    return WorkloadState(identity=spec.identity, annotations=dict(cluster.annotations))


class TestRolloutController:
    @pytest.mark.asyncio
    async def test_completes_all_batches(self, health_settings, cluster_settings):
        spec = make_spec(replicas=3)
        cluster = FakeCluster(spec.identity, replicas=make_replicas(3, OLD_REF))
        controller = make_controller(cluster, health_settings, cluster_settings)
        plan = await plan_for(spec, cluster)

        result = await controller.execute(spec, plan, revision=compute_revision(spec))

        assert result.status == RolloutStatus.COMPLETE
        assert result.final_replica_count == 3
        assert result.last_good_batch == len(plan.steps) - 1
        assert cluster.writes == len(plan.steps)
        assert [u.updated_replicas for u in cluster.updates] == [2, 3]
        assert all(r.image_reference == NEW_REF for r in cluster.replicas)
        assert cluster.annotations[REVISION_ANNOTATION] == compute_revision(spec)

    @pytest.mark.asyncio
    async def test_updates_carry_step_budgets(self, health_settings, cluster_settings):
        spec = make_spec(replicas=4, max_unavailable=1, max_surge=0)
        cluster = FakeCluster(spec.identity, replicas=make_replicas(4, OLD_REF))
        controller = make_controller(cluster, health_settings, cluster_settings)
        plan = await plan_for(spec, cluster)

        await controller.execute(spec, plan, revision="r1")

        for update in cluster.updates:
            assert update.max_unavailable <= 1
            assert update.max_surge == 0
            assert update.replicas == 4
            assert update.container_name == "breach-lookup"

    @pytest.mark.asyncio
    async def test_stalled_batch_halts_rollout(self, health_settings, cluster_settings):
        spec = make_spec(replicas=3)
        cluster = FakeCluster(spec.identity, replicas=make_replicas(3, OLD_REF))
        cluster.new_replicas_ready = False
        controller = make_controller(cluster, health_settings, cluster_settings)
        plan = await plan_for(spec, cluster)

        result = await controller.execute(spec, plan, revision="r1")

        assert result.status == RolloutStatus.STALLED
        assert result.last_good_batch is None
        assert "batch 0 not ready" in result.detail
        # Later batches are never requested and nothing is rolled back
        assert cluster.writes == 1
        assert len(cluster.replicas) == 3

    @pytest.mark.asyncio
    async def test_rejected_update_raises(self, health_settings, cluster_settings):
        spec = make_spec(replicas=2)
        cluster = FakeCluster(spec.identity, replicas=make_replicas(2, OLD_REF))
        cluster.reject_updates = True
        controller = make_controller(cluster, health_settings, cluster_settings)
        plan = await plan_for(spec, cluster)

        with pytest.raises(UpdateRejected, match="admission webhook"):
            await controller.execute(spec, plan, revision="r1")

    @pytest.mark.asyncio
    async def test_invalid_plan_is_refused_before_any_write(self, health_settings, cluster_settings):
        spec = make_spec(replicas=3)
        cluster = FakeCluster(spec.identity, replicas=make_replicas(3, OLD_REF))
        controller = make_controller(cluster, health_settings, cluster_settings)
        plan = await plan_for(spec, cluster)
        broken = plan.model_copy(update={"unavailable_budget": 0})

        with pytest.raises(ConfigurationError, match="Invalid rollout plan"):
            await controller.execute(spec, broken, revision="r1")
        assert cluster.writes == 0

    @pytest.mark.asyncio
    async def test_cancelled_before_first_batch(self, health_settings, cluster_settings):
        spec = make_spec(replicas=2)
        cluster = FakeCluster(spec.identity, replicas=make_replicas(2, OLD_REF))
        controller = make_controller(cluster, health_settings, cluster_settings)
        plan = await plan_for(spec, cluster)
        token = CancellationToken()
        token.cancel()

        with pytest.raises(Cancelled):
            await controller.execute(spec, plan, revision="r1", cancel_token=token)
        assert cluster.writes == 0


class TestRolloutAnnotations:
    def test_records_previous_image(self):
        spec = make_spec()
        cluster = FakeCluster(spec.identity, annotations={IMAGE_ANNOTATION: OLD_REF})
        state = cluster_state(cluster, spec)

        annotations = rollout_annotations(spec, state)

        assert annotations == {IMAGE_ANNOTATION: NEW_REF, PREVIOUS_IMAGE_ANNOTATION: OLD_REF}

    def test_redeploy_keeps_existing_previous_image(self):
        spec = make_spec()
        cluster = FakeCluster(
            spec.identity,
            annotations={IMAGE_ANNOTATION: NEW_REF, PREVIOUS_IMAGE_ANNOTATION: OLD_REF},
        )
        annotations = rollout_annotations(spec, cluster_state(cluster, spec))
        assert annotations[PREVIOUS_IMAGE_ANNOTATION] == OLD_REF

    def test_first_deploy_has_no_previous_image(self):
        spec = make_spec()
        annotations = rollout_annotations(spec, cluster_state(FakeCluster(spec.identity), spec))
        assert PREVIOUS_IMAGE_ANNOTATION not in annotations
