"""
Audit logging for orchestration outcomes.

Appends one JSON line per orchestration so operators can review what was
deployed, when, and how it ended.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from rollout_manager.models import OrchestrationReport

logger = logging.getLogger(__name__)

AUDIT_LOG_PATH = Path("/var/log/rollout-manager/audit.jsonl")


def audit_orchestration(
    report: OrchestrationReport,
    path: Optional[Union[str, Path]] = None,
    user: Optional[str] = None,
) -> None:
    """
    Record the outcome of one orchestration.

    Args:
        report: Final orchestration report
        path: Audit log file, defaults to AUDIT_LOG_PATH
        user: Operator or pipeline that triggered the run
    """
    audit_path = Path(path) if path else AUDIT_LOG_PATH
    try:
        audit_path.parent.mkdir(parents=True, exist_ok=True)

        audit_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "workload": str(report.identity),
            "tag": report.tag,
            "reference": report.reference,
            "outcome": report.outcome.value,
            "attempts": report.attempt_count,
            "failed_stage": report.failed_stage.value if report.failed_stage else None,
            "error": report.error,
            "warning": report.warning,
            "user": user or "system",
        }

        with open(audit_path, "a") as f:
            f.write(json.dumps(audit_entry) + "\n")

        logger.info(f"Audit: {report.outcome.value} deployment of {report.identity}")

    except OSError as e:
        # An unwritable audit log must not change the deployment outcome
        logger.error(f"Failed to write audit log: {e}")
