"""
Rendering and persistence of orchestration reports.
"""

import json
import logging
from pathlib import Path
from typing import List, Optional, Union

import aiofiles  # type: ignore
import yaml
from tabulate import tabulate

from rollout_manager.models import ChangeDecision, OrchestrationReport, RolloutPlan

logger = logging.getLogger(__name__)

REPORT_FORMATS = ("table", "json", "yaml")


def report_to_dict(report: OrchestrationReport) -> dict:
    data = report.model_dump(mode="json")
    data["identity"] = str(report.identity)
    data["exit_code"] = report.exit_code
    return data


def render_report(report: OrchestrationReport, fmt: str = "table") -> str:
    """
    Render a report for the terminal or a file.

    Args:
        report: Report to render
        fmt: One of "table", "json" or "yaml"
    """
    if fmt == "json":
        return json.dumps(report_to_dict(report), indent=2)
    if fmt == "yaml":
        return yaml.safe_dump(report_to_dict(report), default_flow_style=False, sort_keys=False)
    if fmt != "table":
        raise ValueError(f"Unknown report format: {fmt}")

    summary = [
        ["Workload", str(report.identity)],
        ["Tag", report.tag],
        ["Reference", report.reference or "-"],
        ["Outcome", report.outcome.value],
        ["Attempts", report.attempt_count],
    ]
    if report.failed_stage:
        summary.append(["Failed stage", report.failed_stage.value])
    if report.first_failed_stage and report.first_failed_stage != report.failed_stage:
        summary.append(["First failed stage", report.first_failed_stage.value])
    if report.last_completed_stage:
        summary.append(["Last completed stage", report.last_completed_stage.value])
    if report.error:
        summary.append(["Error", f"{report.error_type}: {report.error}"])
    if report.warning:
        summary.append(["Warning", report.warning])

    rows: List[list] = []
    for record in report.attempts:
        for result in record.stages:
            rows.append(
                [
                    record.attempt,
                    result.stage.value,
                    result.status.value,
                    result.error or "",
                ]
            )

    sections = [tabulate(summary, tablefmt="plain")]
    if rows:
        sections.append(tabulate(rows, headers=["Attempt", "Stage", "Status", "Error"], tablefmt="grid"))
    return "\n\n".join(sections)


def render_plan(
    reference: str, decision: ChangeDecision, plan: Optional[RolloutPlan]
) -> str:
    """Render a dry-run result."""
    lines = [f"Reference: {reference}", f"Decision:  {decision.status.value}"]
    for reason in decision.reasons:
        lines.append(f"  - {reason}")
    if plan is None:
        return "\n".join(lines)

    lines.append(
        f"Replicas:  {plan.replicas} (max unavailable {plan.unavailable_budget}, "
        f"max surge {plan.surge_budget})"
    )
    rows = [
        [
            step.index,
            step.batch_size,
            step.surge,
            step.max_unavailable,
            step.updated_target,
            step.min_ready,
        ]
        for step in plan.steps
    ]
    table = tabulate(
        rows,
        headers=["Batch", "Size", "Surge", "Unavailable", "Updated", "Min ready"],
        tablefmt="grid",
    )
    return "\n".join(lines) + "\n\n" + table


async def write_report(
    report: OrchestrationReport, path: Union[str, Path], fmt: Optional[str] = None
) -> Path:
    """
    Write a report to ``path``.

    The format follows the file suffix (.json, .yml/.yaml) unless given.
    """
    path = Path(path)
    if fmt is None:
        fmt = "yaml" if path.suffix in (".yml", ".yaml") else "json"

    path.parent.mkdir(parents=True, exist_ok=True)
    content = render_report(report, fmt)

    # Write atomically using temp file
    temp_file = path.with_suffix(path.suffix + ".tmp")
    async with aiofiles.open(temp_file, "w") as f:
        await f.write(content)
    temp_file.replace(path)

    logger.debug(f"Wrote orchestration report to {path}")
    return path
