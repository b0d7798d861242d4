"""
Fixtures for rollout manager tests.

The in-memory cluster and registry live in fakes.py so test modules can
import them directly.
"""

import pytest

from fakes import DIGEST_NEW, DIGEST_OLD, IMAGE, FakeCluster, FakeRegistry
from rollout_manager.config.settings import (
    AutoscaleSettings,
    ClusterSettings,
    HealthSettings,
    LoggingSettings,
    OrchestratorSettings,
    RolloutManagerConfig,
)
from rollout_manager.models import WorkloadSpec


@pytest.fixture
def fast_config(tmp_path):
    """Configuration with intervals short enough for unit tests."""
    return RolloutManagerConfig(
        orchestrator=OrchestratorSettings(
            max_attempts=3, backoff_base_seconds=0.01, backoff_max_seconds=0.02
        ),
        health=HealthSettings(
            poll_interval_seconds=0.01,
            deadline_seconds=0.3,
            batch_timeout_seconds=0.2,
            crash_loop_restart_threshold=3,
        ),
        autoscale=AutoscaleSettings(
            sample_interval_seconds=0.01,
            confirmation_window_seconds=0.2,
            metrics_grace_seconds=0.05,
            scale_up_threshold_percent=80,
            stable_samples=2,
        ),
        cluster=ClusterSettings(transient_retries=2, transient_retry_delay_seconds=0),
        logging=LoggingSettings(log_dir=str(tmp_path / "logs"), audit_log=str(tmp_path / "audit.jsonl")),
    )


@pytest.fixture
def workload_spec():
    return WorkloadSpec(
        name="breach-lookup",
        namespace="security",
        image=IMAGE,
        tag="v2.0.0",
        replica_bounds={"min_replicas": 1, "max_replicas": 3},
        strategy={"max_unavailable": 0, "max_surge": 1},
    )


@pytest.fixture
def registry():
    return FakeRegistry({f"{IMAGE}:v2.0.0": DIGEST_NEW, f"{IMAGE}:v1.0.0": DIGEST_OLD})


@pytest.fixture
def empty_cluster(workload_spec):
    return FakeCluster(workload_spec.identity)
