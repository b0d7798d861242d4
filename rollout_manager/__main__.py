"""
Rollout manager CLI entry point.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from rollout_manager.cluster.kubernetes import KubernetesWorkloadAPI
from rollout_manager.config.settings import DEFAULT_CONFIG_PATH, RolloutManagerConfig
from rollout_manager.deployment.orchestrator import DeploymentOrchestrator
from rollout_manager.deployment.report import REPORT_FORMATS, render_plan, render_report, write_report
from rollout_manager.docker_registry import DockerRegistryClient
from rollout_manager.errors import AlreadyInProgress, ConfigurationError, OrchestrationError
from rollout_manager.logging_config import setup_logging as setup_full_logging
from rollout_manager.models import WorkloadSpec
from rollout_manager.utils.log_sanitizer import sanitize_for_log

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_IN_PROGRESS = 4
EXIT_CANCELLED = 130

logger = logging.getLogger(__name__)


def setup_logging(config: RolloutManagerConfig, verbose: bool = False) -> None:
    """Setup logging, falling back to a user directory when /var/log is not writable."""
    console_level = "DEBUG" if verbose else config.logging.console_level

    log_dir = config.logging.log_dir
    if not os.access(Path(log_dir).parent, os.W_OK) and not os.access(log_dir, os.W_OK):
        log_dir = str(Path.home() / ".local" / "log" / "rollout-manager")

    try:
        setup_full_logging(
            log_dir=log_dir,
            console_level=console_level,
            file_level=config.logging.file_level,
            use_json=config.logging.use_json,
        )
    except PermissionError:
        # Fall back to basic logging if file logging fails
        logging.basicConfig(
            level=getattr(logging, console_level),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            handlers=[logging.StreamHandler(sys.stderr)],
        )


def load_workload_spec(
    path: str,
    tag: Optional[str] = None,
    max_unavailable: Optional[str] = None,
    max_surge: Optional[str] = None,
) -> WorkloadSpec:
    """
    Load a workload spec from YAML, applying command line overrides.

    Raises:
        ConfigurationError: File missing, unreadable or invalid
    """
    workload_path = Path(path)
    if not workload_path.exists():
        raise ConfigurationError(f"Workload file not found: {workload_path}")

    try:
        with open(workload_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Workload file is not valid YAML: {e}") from e

    if isinstance(data, dict) and "workload" in data:
        data = data["workload"]
    if not isinstance(data, dict):
        raise ConfigurationError(f"Workload file must contain a mapping: {workload_path}")

    if tag:
        data["tag"] = tag
    if max_unavailable is not None or max_surge is not None:
        strategy: Dict[str, Any] = dict(data.get("strategy") or {})
        if max_unavailable is not None:
            strategy["max_unavailable"] = max_unavailable
        if max_surge is not None:
            strategy["max_surge"] = max_surge
        data["strategy"] = strategy

    try:
        return WorkloadSpec.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid workload spec in {workload_path}: {e}") from e


def apply_overrides(config: RolloutManagerConfig, args: argparse.Namespace) -> RolloutManagerConfig:
    """Return ``config`` with command line overrides applied and re-validated."""
    data = config.model_dump()
    if getattr(args, "max_attempts", None) is not None:
        data["orchestrator"]["max_attempts"] = args.max_attempts
    if getattr(args, "health_timeout", None) is not None:
        data["health"]["deadline_seconds"] = args.health_timeout
    if getattr(args, "batch_timeout", None) is not None:
        data["health"]["batch_timeout_seconds"] = args.batch_timeout
    if getattr(args, "confirmation_window", None) is not None:
        data["autoscale"]["confirmation_window_seconds"] = args.confirmation_window
    try:
        return RolloutManagerConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid option: {e}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rollout-manager",
        description="Rollout manager - digest-pinned rolling deployments with health and autoscale checks",
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help="Path to configuration file",
    )

    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    parser.add_argument(
        "--generate-config",
        action="store_true",
        help="Generate default configuration file and exit",
    )

    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration file and exit"
    )

    subparsers = parser.add_subparsers(dest="command")

    def add_workload_args(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--workload", "-w", required=True, help="Path to workload spec YAML"
        )
        sub.add_argument(
            "--max-unavailable", help="Override max unavailable (count or percentage)"
        )
        sub.add_argument("--max-surge", help="Override max surge (count or percentage)")

    def add_run_args(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--max-attempts", type=int, help="Override attempt limit")
        sub.add_argument("--health-timeout", type=float, help="Overall health deadline (seconds)")
        sub.add_argument("--batch-timeout", type=float, help="Per-batch readiness timeout (seconds)")
        sub.add_argument(
            "--confirmation-window", type=float, help="Autoscale confirmation window (seconds)"
        )
        sub.add_argument("--report-file", help="Write the report to this file (.json or .yaml)")
        sub.add_argument(
            "--output", "-o", choices=REPORT_FORMATS, default="table", help="Report format"
        )

    deploy = subparsers.add_parser("deploy", help="Roll a workload out to a tag")
    add_workload_args(deploy)
    deploy.add_argument("--tag", "-t", help="Tag or digest to deploy (overrides the workload file)")
    add_run_args(deploy)

    plan = subparsers.add_parser("plan", help="Show what deploy would do without writing")
    add_workload_args(plan)
    plan.add_argument("--tag", "-t", help="Tag or digest to plan for (overrides the workload file)")

    rollback = subparsers.add_parser("rollback", help="Roll back to the previously deployed image")
    add_workload_args(rollback)
    add_run_args(rollback)

    return parser


async def run_command(args: argparse.Namespace, config: RolloutManagerConfig) -> int:
    """Run one subcommand against the cluster."""
    spec = load_workload_spec(
        args.workload,
        tag=getattr(args, "tag", None),
        max_unavailable=args.max_unavailable,
        max_surge=args.max_surge,
    )
    logger.info(f"Loaded workload {spec.identity} from {sanitize_for_log(args.workload)}")

    registry = DockerRegistryClient(
        auth_token=config.registry.auth_token, timeout=config.registry.timeout_seconds
    )
    try:
        cluster = KubernetesWorkloadAPI(
            in_cluster=config.cluster.in_cluster,
            context=config.cluster.context,
            lease_duration_seconds=config.cluster.lease_duration_seconds,
        )
        orchestrator = DeploymentOrchestrator(cluster, registry, config)

        if args.command == "plan":
            resolved, decision, plan = await orchestrator.preview(spec)
            print(render_plan(resolved.desired_reference, decision, plan))
            return EXIT_OK

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(
                sig, orchestrator.cancel, spec.identity, f"received {signal.Signals(sig).name}"
            )
        try:
            if args.command == "rollback":
                report = await orchestrator.rollback(spec)
            else:
                report = await orchestrator.orchestrate(spec)
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

        print(render_report(report, args.output))
        if args.report_file:
            await write_report(report, args.report_file)
        if not report.succeeded:
            print(
                f"Deployment {report.outcome.value}: stage "
                f"{report.failed_stage.value if report.failed_stage else 'unknown'} failed, "
                f"last completed stage "
                f"{report.last_completed_stage.value if report.last_completed_stage else 'none'}",
                file=sys.stderr,
            )
        return report.exit_code
    finally:
        await registry.close()


def main(argv: Optional[list] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Handle config generation
    if args.generate_config:
        config = RolloutManagerConfig()
        config.save(args.config)
        print(f"Generated default configuration at: {args.config}")
        return EXIT_OK

    try:
        config = RolloutManagerConfig.from_file(args.config)
    except (ValueError, yaml.YAMLError) as e:
        print(f"Configuration invalid: {e}", file=sys.stderr)
        return EXIT_INVALID

    # Handle config validation
    if args.validate_config:
        print(f"Configuration valid: {args.config}")
        return EXIT_OK

    if not args.command:
        parser.print_help()
        return EXIT_INVALID

    setup_logging(config, args.verbose)

    try:
        if args.command != "plan":
            config = apply_overrides(config, args)
        return asyncio.run(run_command(args, config))
    except AlreadyInProgress as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_IN_PROGRESS
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID
    except OrchestrationError as e:
        logger.error(f"{type(e).__name__}: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_CANCELLED
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"Error running rollout manager: {e}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
