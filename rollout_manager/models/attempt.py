"""
Attempt and report models.

An AttemptRecord tracks one pass through the orchestration state machine.
An OrchestrationReport gathers every attempt of one invocation plus the
outcome shown to the operator.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from rollout_manager.models.workload import WorkloadIdentity


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Stage(str, Enum):
    RESOLVE = "resolve"
    DETECT = "detect"
    ROLLOUT = "rollout"
    HEALTH = "health"
    AUTOSCALE = "autoscale"


class StageStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    WARNING = "warning"
    CANCELLED = "cancelled"


class OrchestrationState(str, Enum):
    """States of the orchestration state machine."""

    IDLE = "idle"
    DETECTING = "detecting"
    ROLLING_OUT = "rolling_out"
    VERIFYING_HEALTH = "verifying_health"
    MONITORING_SCALE = "monitoring_scale"
    SUCCEEDED = "succeeded"
    SUCCEEDED_WITH_WARNING = "succeeded_with_warning"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AttemptOutcome(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    SUCCEEDED_WITH_WARNING = "succeeded_with_warning"
    NO_CHANGE = "no_change"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class StageResult(BaseModel):
    """Result of one stage within an attempt."""

    stage: Stage
    status: StageStatus
    started_at: str = Field(default_factory=utc_now)
    completed_at: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class AttemptRecord(BaseModel):
    """One orchestration attempt. Owned by the state machine."""

    attempt: int = Field(..., ge=1)
    started_at: str = Field(default_factory=utc_now)
    completed_at: Optional[str] = None
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    state: OrchestrationState = OrchestrationState.IDLE
    stages: List[StageResult] = Field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[str] = None

    def record(
        self,
        stage: Stage,
        status: StageStatus,
        error: Optional[BaseException] = None,
        **details: Any,
    ) -> StageResult:
        result = StageResult(
            stage=stage,
            status=status,
            completed_at=utc_now(),
            error=str(error) if error else None,
            error_type=type(error).__name__ if error else None,
            details=details,
        )
        self.stages.append(result)
        return result

    def finalize(self, outcome: AttemptOutcome, error: Optional[BaseException] = None) -> None:
        self.outcome = outcome
        self.completed_at = utc_now()
        if error is not None:
            self.error = str(error)
            self.error_type = type(error).__name__

    @property
    def failed_stage(self) -> Optional[Stage]:
        for result in self.stages:
            if result.status == StageStatus.FAILED:
                return result.stage
        return None

    @property
    def last_completed_stage(self) -> Optional[Stage]:
        completed = [
            result.stage
            for result in self.stages
            if result.status in (StageStatus.SUCCEEDED, StageStatus.WARNING)
        ]
        return completed[-1] if completed else None


class OrchestrationOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    SUCCEEDED_WITH_WARNING = "succeeded_with_warning"
    NO_CHANGE_NEEDED = "no_change_needed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OrchestrationReport(BaseModel):
    """Final outcome of one orchestrator invocation."""

    identity: WorkloadIdentity
    tag: str
    reference: Optional[str] = Field(None, description="Digest-pinned reference deployed")
    outcome: OrchestrationOutcome
    attempts: List[AttemptRecord] = Field(default_factory=list)
    failed_stage: Optional[Stage] = None
    first_failed_stage: Optional[Stage] = None
    last_completed_stage: Optional[Stage] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    warning: Optional[str] = None
    started_at: str = Field(default_factory=utc_now)
    completed_at: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in (
            OrchestrationOutcome.SUCCEEDED,
            OrchestrationOutcome.SUCCEEDED_WITH_WARNING,
            OrchestrationOutcome.NO_CHANGE_NEEDED,
        )

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def exit_code(self) -> int:
        """Process exit code for this outcome."""
        if self.outcome in (OrchestrationOutcome.SUCCEEDED, OrchestrationOutcome.NO_CHANGE_NEEDED):
            return 0
        if self.outcome == OrchestrationOutcome.SUCCEEDED_WITH_WARNING:
            return 3
        if self.outcome == OrchestrationOutcome.CANCELLED:
            return 130
        if self.error_type == "ConfigurationError":
            return 2
        return 1
