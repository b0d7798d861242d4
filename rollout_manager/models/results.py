"""
Stage result models.

Each stage reports a tagged result: the ``status`` enum is the tag and the
remaining fields carry the payload that goes with it.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class ChangeStatus(str, Enum):
    NO_CHANGE_NEEDED = "no_change_needed"
    ROLLOUT_REQUIRED = "rollout_required"


class ChangeDecision(BaseModel):
    """Outcome of comparing desired and observed workload state."""

    status: ChangeStatus
    reasons: List[str] = Field(default_factory=list)

    @classmethod
    def no_change(cls) -> "ChangeDecision":
        return cls(status=ChangeStatus.NO_CHANGE_NEEDED)

    @classmethod
    def rollout(cls, reasons: List[str]) -> "ChangeDecision":
        return cls(status=ChangeStatus.ROLLOUT_REQUIRED, reasons=reasons)

    @property
    def rollout_required(self) -> bool:
        return self.status == ChangeStatus.ROLLOUT_REQUIRED

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons)


class RolloutStep(BaseModel):
    """One replica-replacement batch."""

    index: int = Field(..., ge=0)
    batch_size: int = Field(..., ge=1, description="Replicas moved to the new reference")
    surge: int = Field(..., ge=0, description="Extra replicas created ahead of the batch")
    max_unavailable: int = Field(
        ..., ge=0, description="Old replicas taken down before replacements are ready"
    )
    updated_target: int = Field(
        ..., ge=1, description="Replicas on the desired reference once the step completes"
    )
    total_replicas: int = Field(..., ge=1, description="Steady-state replica count")
    min_ready: int = Field(..., ge=0, description="Ready replicas guaranteed during the step")


class RolloutPlan(BaseModel):
    """Ordered replacement steps for one rollout."""

    reference: str
    replicas: int = Field(..., ge=1)
    unavailable_budget: int = Field(..., ge=0)
    surge_budget: int = Field(..., ge=0)
    steps: List[RolloutStep] = Field(default_factory=list)

    def violations(self) -> List[str]:
        """Budget violations, empty for a valid plan."""
        problems = []
        for step in self.steps:
            if step.max_unavailable > self.unavailable_budget:
                problems.append(
                    f"step {step.index}: {step.max_unavailable} unavailable exceeds "
                    f"budget {self.unavailable_budget}"
                )
            if step.surge > self.surge_budget:
                problems.append(
                    f"step {step.index}: surge {step.surge} exceeds budget {self.surge_budget}"
                )
            if step.min_ready < self.replicas - self.unavailable_budget:
                problems.append(
                    f"step {step.index}: min ready {step.min_ready} below "
                    f"{self.replicas - self.unavailable_budget}"
                )
        if self.steps and self.steps[-1].updated_target != self.replicas:
            problems.append("plan does not move every replica to the desired reference")
        return problems


class RolloutStatus(str, Enum):
    COMPLETE = "complete"
    STALLED = "stalled"


class RolloutResult(BaseModel):
    status: RolloutStatus
    final_replica_count: Optional[int] = None
    last_good_batch: Optional[int] = Field(
        None, description="Index of the last batch that became ready, None if none did"
    )
    detail: Optional[str] = None


class HealthStatus(str, Enum):
    READY = "ready"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed_out"


class HealthResult(BaseModel):
    status: HealthStatus
    detail: Optional[str] = None
    ready_replicas: int = 0
    waited_seconds: float = 0.0

    @property
    def ready(self) -> bool:
        return self.status == HealthStatus.READY


class AutoscaleStatus(str, Enum):
    STABLE = "stable"
    ELEVATED = "elevated"
    METRICS_UNAVAILABLE = "metrics_unavailable"


class AutoscaleResult(BaseModel):
    status: AutoscaleStatus
    utilization: Optional[float] = None
    current_replicas: Optional[int] = None
    samples: int = 0
    detail: Optional[str] = None
