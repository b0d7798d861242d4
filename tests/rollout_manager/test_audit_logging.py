"""
Tests for audit records, log sanitization and logging setup.
"""

import asyncio
import json
import logging

import pytest

from rollout_manager.audit import audit_orchestration
from rollout_manager.logging_config import (
    ATTEMPT_LOGGER,
    ContextFilter,
    LogContext,
    StructuredFormatter,
    log_attempt_event,
    setup_logging,
)
from rollout_manager.models import (
    OrchestrationOutcome,
    OrchestrationReport,
    Stage,
    WorkloadIdentity,
)
from rollout_manager.utils.log_sanitizer import sanitize_for_log, sanitize_image_ref

IDENTITY = WorkloadIdentity(namespace="security", name="breach-lookup")


def make_report(**kwargs):
    fields = dict(identity=IDENTITY, tag="v2.0.0", outcome=OrchestrationOutcome.SUCCEEDED)
    fields.update(kwargs)
    return OrchestrationReport(**fields)


class TestAudit:
    def test_appends_json_lines(self, tmp_path):
        path = tmp_path / "audit" / "audit.jsonl"

        audit_orchestration(make_report(), path=path, user="ci-pipeline")
        audit_orchestration(
            make_report(
                outcome=OrchestrationOutcome.FAILED,
                failed_stage=Stage.HEALTH,
                error="1/3 ready",
            ),
            path=path,
        )

        entries = [json.loads(line) for line in path.read_text().splitlines()]
        assert len(entries) == 2
        assert entries[0]["workload"] == "security/breach-lookup"
        assert entries[0]["user"] == "ci-pipeline"
        assert entries[1]["outcome"] == "failed"
        assert entries[1]["failed_stage"] == "health"
        assert entries[1]["user"] == "system"

    def test_unwritable_path_is_logged(self, tmp_path, caplog):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")

        with caplog.at_level(logging.ERROR):
            audit_orchestration(make_report(), path=blocker / "audit.jsonl")

        assert "Failed to write audit log" in caplog.text


class TestLogSanitizer:
    def test_strips_control_characters(self):
        assert sanitize_for_log("deploy\nFAKE ENTRY\r\x1b[31m") == "deployFAKE ENTRY[31m"

    def test_truncates(self):
        assert sanitize_for_log("a" * 150, max_length=10) == "a" * 10 + "..."

    def test_image_ref_keeps_registry_characters(self):
        ref = "ghcr.io/acme/breach-lookup@sha256:" + "b" * 64
        assert sanitize_image_ref(ref) == ref
        assert sanitize_image_ref("ghcr.io/acme/app:v1; rm -rf /") == "ghcr.io/acme/app:v1rm-rf/"


class TestLogging:
    def test_setup_creates_log_files(self, tmp_path):
        root = logging.getLogger()
        saved = list(root.handlers)
        try:
            setup_logging(log_dir=str(tmp_path), console_level="WARNING")
            logging.getLogger("rollout_manager.test").info("hello")
            log_attempt_event("started", "security/breach-lookup", 1)

            assert (tmp_path / "rollout-manager.log").exists()
            assert (tmp_path / "attempts.log").exists()
            assert "hello" in (tmp_path / "rollout-manager.log").read_text()
            assert "Attempt 1 for security/breach-lookup: started" in (
                tmp_path / "attempts.log"
            ).read_text()
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers[:] = saved
            attempt_logger = logging.getLogger(ATTEMPT_LOGGER)
            for handler in attempt_logger.handlers:
                handler.close()
            attempt_logger.handlers.clear()

    def test_log_context_adds_fields(self):
        with LogContext(workload="security/breach-lookup"):
            record = logging.makeLogRecord({"name": "rollout_manager", "msg": "hello"})
            ContextFilter().filter(record)

        data = json.loads(StructuredFormatter().format(record))
        assert data["workload"] == "security/breach-lookup"
        assert data["message"] == "hello"

    def test_explicit_fields_win_over_context(self):
        with LogContext(workload="security/breach-lookup", stage="rollout"):
            record = logging.makeLogRecord({"msg": "hello", "workload": "billing/api"})
            ContextFilter().filter(record)

        assert record.workload == "billing/api"
        assert record.stage == "rollout"

    def test_attempt_event_inside_context(self, caplog):
        with LogContext(workload="security/breach-lookup"):
            with caplog.at_level(logging.DEBUG, logger=ATTEMPT_LOGGER):
                log_attempt_event(
                    "failed", "security/breach-lookup", 2, {"error": "stalled"}, level="ERROR"
                )

        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert record.workload == "security/breach-lookup"
        assert record.attempt == 2

    @pytest.mark.asyncio
    async def test_concurrent_contexts_stay_separate(self):
        factory = logging.getLogRecordFactory()
        seen = {}

        async def orchestrate(workload, delay):
            with LogContext(workload=workload):
                await asyncio.sleep(delay)
                record = logging.makeLogRecord({"msg": "polling"})
                ContextFilter().filter(record)
                seen[workload] = record.workload

        # The first context to open is the last to close
        await asyncio.gather(orchestrate("default/api", 0.02), orchestrate("default/worker", 0.01))

        assert seen == {"default/api": "default/api", "default/worker": "default/worker"}
        assert logging.getLogRecordFactory() is factory
        later = logging.makeLogRecord({"msg": "after"})
        ContextFilter().filter(later)
        assert not hasattr(later, "workload")
