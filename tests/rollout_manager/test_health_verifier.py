"""
Tests for replica health verification.
"""

import asyncio

import pytest

from rollout_manager.config.settings import ClusterSettings, HealthSettings
from rollout_manager.deployment.health import HealthVerifier
from rollout_manager.deployment.locks import CancellationToken
from rollout_manager.errors import Cancelled, ClusterUnavailable
from rollout_manager.models import HealthStatus, ReplicaState, WorkloadIdentity

from fakes import DIGEST_NEW, IMAGE, FakeCluster

REF = f"{IMAGE}@{DIGEST_NEW}"
IDENTITY = WorkloadIdentity(namespace="security", name="breach-lookup")


class SlowStartCluster(FakeCluster):
    """Replicas become ready after a number of state reads."""

    def __init__(self, ready_after: int, **kwargs):
        super().__init__(IDENTITY, **kwargs)
        self.ready_after = ready_after

    async def get_workload_state(self, identity):
        if self.state_reads >= self.ready_after:
            for replica in self.replicas:
                replica.ready = True
        return await super().get_workload_state(identity)


@pytest.fixture
def settings():
    return HealthSettings(
        poll_interval_seconds=0.01,
        deadline_seconds=1.0,
        batch_timeout_seconds=0.5,
        crash_loop_restart_threshold=3,
    )


@pytest.fixture
def cluster_settings():
    return ClusterSettings(transient_retries=2, transient_retry_delay_seconds=0)


def replica(name, ready=False, restarts=0, reference=REF):
    return ReplicaState(name=name, image_reference=reference, ready=ready, restart_count=restarts)


class TestWaitUntilReady:
    @pytest.mark.asyncio
    async def test_ready_immediately(self, settings, cluster_settings):
        cluster = FakeCluster(IDENTITY, replicas=[replica("a", ready=True), replica("b", ready=True)])
        verifier = HealthVerifier(cluster, settings, cluster_settings)

        result = await verifier.wait_until_ready(IDENTITY, REF, expected_ready=2)

        assert result.status == HealthStatus.READY
        assert result.ready
        assert result.ready_replicas == 2
        assert cluster.state_reads == 1

    @pytest.mark.asyncio
    async def test_polls_until_ready(self, settings, cluster_settings):
        cluster = SlowStartCluster(ready_after=3, replicas=[replica("a")])
        verifier = HealthVerifier(cluster, settings, cluster_settings)

        result = await verifier.wait_until_ready(IDENTITY, REF, expected_ready=1)

        assert result.status == HealthStatus.READY
        assert cluster.state_reads == 4

    @pytest.mark.asyncio
    async def test_replicas_on_other_reference_do_not_count(self, settings, cluster_settings):
        cluster = FakeCluster(
            IDENTITY,
            replicas=[replica("old", ready=True, reference=f"{IMAGE}@sha256:{'c' * 64}")],
        )
        verifier = HealthVerifier(cluster, settings, cluster_settings)

        result = await verifier.wait_until_ready(IDENTITY, REF, expected_ready=1, timeout=0.05)

        assert result.status == HealthStatus.TIMED_OUT
        assert result.ready_replicas == 0

    @pytest.mark.asyncio
    async def test_times_out(self, settings, cluster_settings):
        cluster = FakeCluster(IDENTITY, replicas=[replica("a")])
        verifier = HealthVerifier(cluster, settings, cluster_settings)

        result = await verifier.wait_until_ready(IDENTITY, REF, expected_ready=1, timeout=0.05)

        assert result.status == HealthStatus.TIMED_OUT
        assert not result.ready
        assert "0/1" in result.detail
        assert result.waited_seconds > 0

    @pytest.mark.asyncio
    async def test_crash_loop_short_circuits(self, settings, cluster_settings):
        cluster = FakeCluster(IDENTITY, replicas=[replica("a", restarts=5), replica("b", ready=True)])
        verifier = HealthVerifier(cluster, settings, cluster_settings)

        result = await asyncio.wait_for(
            verifier.wait_until_ready(IDENTITY, REF, expected_ready=2, timeout=30),
            timeout=1,
        )

        assert result.status == HealthStatus.UNHEALTHY
        assert "replica a restarted 5 times" in result.detail
        assert result.waited_seconds < 1
        assert cluster.state_reads == 1

    @pytest.mark.asyncio
    async def test_restarts_below_threshold_keep_polling(self, settings, cluster_settings):
        cluster = FakeCluster(IDENTITY, replicas=[replica("a", restarts=2)])
        verifier = HealthVerifier(cluster, settings, cluster_settings)

        result = await verifier.wait_until_ready(IDENTITY, REF, expected_ready=1, timeout=0.05)

        assert result.status == HealthStatus.TIMED_OUT
        assert cluster.state_reads > 1

    @pytest.mark.asyncio
    async def test_cancellation_interrupts_wait(self, settings, cluster_settings):
        cluster = FakeCluster(IDENTITY, replicas=[replica("a")])
        verifier = HealthVerifier(cluster, settings, cluster_settings)
        token = CancellationToken()

        async def cancel_soon():
            await asyncio.sleep(0.03)
            token.cancel("operator abort")

        canceller = asyncio.ensure_future(cancel_soon())
        with pytest.raises(Cancelled, match="operator abort"):
            await verifier.wait_until_ready(
                IDENTITY, REF, expected_ready=1, timeout=10, cancel_token=token
            )
        await canceller

    @pytest.mark.asyncio
    async def test_transient_read_errors_are_absorbed(self, settings, cluster_settings):
        cluster = FakeCluster(IDENTITY, replicas=[replica("a", ready=True)])
        cluster.transient_read_failures = 2
        verifier = HealthVerifier(cluster, settings, cluster_settings)

        result = await verifier.wait_until_ready(IDENTITY, REF, expected_ready=1)

        assert result.status == HealthStatus.READY

    @pytest.mark.asyncio
    async def test_persistent_read_errors_raise(self, settings, cluster_settings):
        cluster = FakeCluster(IDENTITY, replicas=[replica("a", ready=True)])
        cluster.transient_read_failures = 10
        verifier = HealthVerifier(cluster, settings, cluster_settings)

        with pytest.raises(ClusterUnavailable):
            await verifier.wait_until_ready(IDENTITY, REF, expected_ready=1)
