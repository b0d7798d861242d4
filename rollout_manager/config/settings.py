"""
Configuration for the rollout manager.

Loaded from YAML with environment overrides; command-line flags override
both.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = "/etc/rollout-manager/config.yml"


class OrchestratorSettings(BaseModel):
    """Attempt-level retry policy."""

    max_attempts: int = Field(default=3, ge=1, description="Attempts before giving up")
    backoff_base_seconds: float = Field(default=5.0, ge=0)
    backoff_max_seconds: float = Field(default=60.0, ge=0)

    def backoff_for(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt``."""
        return min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)


class HealthSettings(BaseModel):
    """Readiness polling."""

    poll_interval_seconds: float = Field(default=3.0, gt=0)
    deadline_seconds: float = Field(default=300.0, gt=0, description="Overall health deadline")
    batch_timeout_seconds: float = Field(default=120.0, gt=0, description="Per-batch deadline")
    crash_loop_restart_threshold: int = Field(default=3, ge=1)


class AutoscaleSettings(BaseModel):
    """Post-rollout autoscaler confirmation."""

    sample_interval_seconds: float = Field(default=15.0, gt=0)
    confirmation_window_seconds: float = Field(default=180.0, gt=0)
    metrics_grace_seconds: float = Field(default=90.0, ge=0)
    scale_up_threshold_percent: float = Field(default=80.0)
    stable_samples: int = Field(default=3, ge=1)


class RegistrySettings(BaseModel):
    auth_token: Optional[str] = Field(default=None, description="Token for ghcr.io pulls")
    timeout_seconds: float = Field(default=30.0, gt=0)


class ClusterSettings(BaseModel):
    in_cluster: bool = Field(default=False, description="Use the in-cluster service account")
    context: Optional[str] = Field(default=None, description="kubeconfig context")
    transient_retries: int = Field(
        default=3, ge=0, description="Retries for a single failed read or write"
    )
    transient_retry_delay_seconds: float = Field(default=2.0, ge=0)
    lease_duration_seconds: int = Field(
        default=3600,
        ge=1,
        description="Lifetime of the cluster-side orchestration lock; an expired lock is taken over",
    )


class LoggingSettings(BaseModel):
    log_dir: str = "/var/log/rollout-manager"
    console_level: str = "INFO"
    file_level: str = "DEBUG"
    use_json: bool = False
    audit_log: str = "/var/log/rollout-manager/audit.jsonl"

    @field_validator("console_level", "file_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return level


class RolloutManagerConfig(BaseModel):
    """Top-level configuration."""

    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    autoscale: AutoscaleSettings = Field(default_factory=AutoscaleSettings)
    registry: RegistrySettings = Field(default_factory=RegistrySettings)
    cluster: ClusterSettings = Field(default_factory=ClusterSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @model_validator(mode="after")
    def _batch_within_deadline(self) -> "RolloutManagerConfig":
        if self.health.poll_interval_seconds > self.health.batch_timeout_seconds:
            raise ValueError("health.poll_interval_seconds must not exceed batch_timeout_seconds")
        return self

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "RolloutManagerConfig":
        """Load configuration from YAML, applying environment overrides."""
        config_path = Path(path)
        data: Dict[str, Any] = {}
        if config_path.exists():
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError(f"Configuration root must be a mapping: {config_path}")
        return cls.model_validate(_apply_env_overrides(data))

    def save(self, path: Union[str, Path]) -> None:
        config_path = Path(path)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.safe_dump(self.model_dump(), f, default_flow_style=False, sort_keys=False)


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    registry = dict(data.get("registry") or {})
    token = os.getenv("ROLLOUT_MANAGER_REGISTRY_TOKEN") or os.getenv("GITHUB_TOKEN")
    if token and not registry.get("auth_token"):
        registry["auth_token"] = token
    data["registry"] = registry

    log_dir = os.getenv("ROLLOUT_MANAGER_LOG_DIR")
    if log_dir:
        logging_section = dict(data.get("logging") or {})
        logging_section["log_dir"] = log_dir
        data["logging"] = logging_section
    return data
