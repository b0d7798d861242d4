"""
Tests for report rendering and persistence.
"""

import json
from pathlib import Path

import pytest
import yaml

from rollout_manager.deployment.report import (
    render_plan,
    render_report,
    report_to_dict,
    write_report,
)
from rollout_manager.models import (
    AttemptOutcome,
    AttemptRecord,
    ChangeDecision,
    OrchestrationOutcome,
    OrchestrationReport,
    RolloutPlan,
    RolloutStep,
    Stage,
    StageStatus,
    WorkloadIdentity,
)

IDENTITY = WorkloadIdentity(namespace="security", name="breach-lookup")
REF = "ghcr.io/acme/breach-lookup@sha256:" + "b" * 64


def failed_report():
    first = AttemptRecord(attempt=1)
    first.record(Stage.RESOLVE, StageStatus.SUCCEEDED)
    first.record(Stage.DETECT, StageStatus.SUCCEEDED)
    first.record(Stage.ROLLOUT, StageStatus.FAILED, RuntimeError("batch 0 not ready"))
    first.finalize(AttemptOutcome.FAILED, RuntimeError("batch 0 not ready"))
    second = AttemptRecord(attempt=2)
    second.record(Stage.DETECT, StageStatus.SUCCEEDED)
    second.record(Stage.ROLLOUT, StageStatus.SUCCEEDED)
    second.record(Stage.HEALTH, StageStatus.FAILED, RuntimeError("1/3 ready"))
    second.finalize(AttemptOutcome.FAILED, RuntimeError("1/3 ready"))
    return OrchestrationReport(
        identity=IDENTITY,
        tag="v2.0.0",
        reference=REF,
        outcome=OrchestrationOutcome.FAILED,
        attempts=[first, second],
        failed_stage=Stage.HEALTH,
        first_failed_stage=Stage.ROLLOUT,
        last_completed_stage=Stage.ROLLOUT,
        error="1/3 ready",
        error_type="RetriesExhausted",
    )


def succeeded_report():
    record = AttemptRecord(attempt=1)
    record.record(Stage.RESOLVE, StageStatus.SUCCEEDED)
    record.finalize(AttemptOutcome.NO_CHANGE)
    return OrchestrationReport(
        identity=IDENTITY,
        tag="v2.0.0",
        reference=REF,
        outcome=OrchestrationOutcome.NO_CHANGE_NEEDED,
        attempts=[record],
        last_completed_stage=Stage.RESOLVE,
    )


class TestRenderReport:
    def test_table_shows_stages_and_failure(self):
        output = render_report(failed_report(), "table")

        assert "security/breach-lookup" in output
        assert "Failed stage" in output
        assert "First failed stage" in output
        assert "RetriesExhausted: 1/3 ready" in output
        assert "batch 0 not ready" in output
        assert "Attempt" in output

    def test_table_omits_absent_fields(self):
        output = render_report(succeeded_report())

        assert "no_change_needed" in output
        assert "Failed stage" not in output
        assert "Warning" not in output

    def test_json(self):
        data = json.loads(render_report(failed_report(), "json"))

        assert data["identity"] == "security/breach-lookup"
        assert data["outcome"] == "failed"
        assert data["failed_stage"] == "health"
        assert data["exit_code"] == 1
        assert len(data["attempts"]) == 2

    def test_yaml(self):
        data = yaml.safe_load(render_report(succeeded_report(), "yaml"))

        assert data["outcome"] == "no_change_needed"
        assert data["exit_code"] == 0

    def test_unknown_format(self):
        with pytest.raises(ValueError, match="Unknown report format"):
            render_report(succeeded_report(), "xml")


class TestReportToDict:
    def test_exit_code_follows_outcome(self):
        report = succeeded_report().model_copy(
            update={"outcome": OrchestrationOutcome.SUCCEEDED_WITH_WARNING, "warning": "hot"}
        )
        assert report_to_dict(report)["exit_code"] == 3

    def test_configuration_error_exit_code(self):
        report = failed_report().model_copy(update={"error_type": "ConfigurationError"})
        assert report_to_dict(report)["exit_code"] == 2


class TestRenderPlan:
    def test_no_change(self):
        output = render_plan(REF, ChangeDecision.no_change(), None)

        assert REF in output
        assert "no_change_needed" in output
        assert "Batch" not in output

    def test_lists_batches(self):
        plan = RolloutPlan(
            reference=REF,
            replicas=3,
            unavailable_budget=0,
            surge_budget=1,
            steps=[
                RolloutStep(
                    index=i,
                    batch_size=1,
                    surge=1,
                    max_unavailable=0,
                    updated_target=i + 1,
                    total_replicas=3,
                    min_ready=3,
                )
                for i in range(3)
            ],
        )

        output = render_plan(REF, ChangeDecision.rollout(["image changed"]), plan)

        assert "rollout_required" in output
        assert "- image changed" in output
        assert "max surge 1" in output
        assert "Min ready" in output


class TestWriteReport:
    @pytest.mark.asyncio
    async def test_json_by_suffix(self, tmp_path):
        path = await write_report(failed_report(), tmp_path / "reports" / "deploy.json")

        assert path == tmp_path / "reports" / "deploy.json"
        assert json.loads(path.read_text())["failed_stage"] == "health"
        assert not Path(str(path) + ".tmp").exists()

    @pytest.mark.asyncio
    async def test_yaml_by_suffix(self, tmp_path):
        path = await write_report(succeeded_report(), str(tmp_path / "deploy.yaml"))

        assert yaml.safe_load(path.read_text())["outcome"] == "no_change_needed"

    @pytest.mark.asyncio
    async def test_explicit_format(self, tmp_path):
        path = await write_report(succeeded_report(), tmp_path / "deploy.txt", fmt="table")

        assert "no_change_needed" in path.read_text()
