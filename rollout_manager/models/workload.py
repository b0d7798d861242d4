"""
Workload data models.

A WorkloadSpec is the immutable input to one orchestration run. A WorkloadState
is a read-only snapshot of what the cluster reports for the same workload.
"""

import math
import re
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_MEMORY_SUFFIXES = {
    "Ki": 1024,
    "Mi": 1024**2,
    "Gi": 1024**3,
    "Ti": 1024**4,
    "k": 1000,
    "K": 1000,
    "M": 1000**2,
    "G": 1000**3,
    "T": 1000**4,
}
_PERCENT_RE = re.compile(r"^(\d+)%$")


def parse_cpu_millicores(value: Union[int, float, str]) -> int:
    """
    Parse a Kubernetes CPU quantity into millicores.

    Integers are taken as millicores already; strings follow Kubernetes
    notation ("250m" is 250, "0.5" and "1" are cores).
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid CPU quantity: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(round(value * 1000))
    text = value.strip()
    if text.endswith("m"):
        return int(text[:-1])
    try:
        return int(round(float(text) * 1000))
    except ValueError:
        raise ValueError(f"Invalid CPU quantity: {value!r}") from None


def parse_memory_bytes(value: Union[int, str]) -> int:
    """Parse a Kubernetes memory quantity ("256Mi", "1G", "1048576") into bytes."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid memory quantity: {value!r}")
    if isinstance(value, int):
        return value
    text = value.strip()
    for suffix in sorted(_MEMORY_SUFFIXES, key=len, reverse=True):
        if text.endswith(suffix):
            number = text[: -len(suffix)]
            try:
                return int(float(number) * _MEMORY_SUFFIXES[suffix])
            except ValueError:
                raise ValueError(f"Invalid memory quantity: {value!r}") from None
    try:
        return int(text)
    except ValueError:
        raise ValueError(f"Invalid memory quantity: {value!r}") from None


def format_cpu(millicores: int) -> str:
    """Render millicores as a Kubernetes quantity."""
    return f"{millicores}m"


def format_memory(num_bytes: int) -> str:
    """Render bytes as the shortest exact binary Kubernetes quantity."""
    for suffix in ("Ti", "Gi", "Mi", "Ki"):
        factor = _MEMORY_SUFFIXES[suffix]
        if num_bytes and num_bytes % factor == 0:
            return f"{num_bytes // factor}{suffix}"
    return str(num_bytes)


class WorkloadIdentity(BaseModel):
    """Namespace-scoped name of one deployable unit."""

    model_config = ConfigDict(frozen=True)

    namespace: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class ResourceRequirements(BaseModel):
    """CPU (millicores) and memory (bytes) requests and limits."""

    model_config = ConfigDict(frozen=True)

    cpu_request_millicores: int = Field(default=100, ge=0)
    cpu_limit_millicores: Optional[int] = Field(default=None, ge=0)
    memory_request_bytes: int = Field(default=128 * 1024**2, ge=0)
    memory_limit_bytes: Optional[int] = Field(default=None, ge=0)

    @field_validator("cpu_request_millicores", "cpu_limit_millicores", mode="before")
    @classmethod
    def _parse_cpu(cls, value):
        if value is None:
            return value
        return parse_cpu_millicores(value)

    @field_validator("memory_request_bytes", "memory_limit_bytes", mode="before")
    @classmethod
    def _parse_memory(cls, value):
        if value is None:
            return value
        return parse_memory_bytes(value)

    @model_validator(mode="after")
    def _limits_cover_requests(self) -> "ResourceRequirements":
        if (
            self.cpu_limit_millicores is not None
            and self.cpu_limit_millicores < self.cpu_request_millicores
        ):
            raise ValueError("cpu limit must be >= cpu request")
        if (
            self.memory_limit_bytes is not None
            and self.memory_limit_bytes < self.memory_request_bytes
        ):
            raise ValueError("memory limit must be >= memory request")
        return self


class ReplicaBounds(BaseModel):
    """Autoscaler replica bounds."""

    model_config = ConfigDict(frozen=True)

    min_replicas: int = Field(default=1, ge=1)
    max_replicas: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def _ordered(self) -> "ReplicaBounds":
        if self.max_replicas < self.min_replicas:
            raise ValueError(
                f"max_replicas ({self.max_replicas}) must be >= min_replicas ({self.min_replicas})"
            )
        return self

    def clamp(self, replicas: int) -> int:
        return max(self.min_replicas, min(self.max_replicas, replicas))


class RolloutStrategy(BaseModel):
    """
    Rolling update budgets.

    Each budget is an absolute replica count or a percentage string ("25%")
    of the workload's replica count. Percentages round up.
    """

    model_config = ConfigDict(frozen=True)

    max_unavailable: Union[int, str] = Field(default="25%")
    max_surge: Union[int, str] = Field(default="25%")

    @field_validator("max_unavailable", "max_surge")
    @classmethod
    def _valid_budget(cls, value: Union[int, str]) -> Union[int, str]:
        if isinstance(value, int):
            if value < 0:
                raise ValueError("budget must be >= 0")
            return value
        match = _PERCENT_RE.match(value.strip())
        if not match:
            if value.strip().isdigit():
                return int(value.strip())
            raise ValueError(f"budget must be an integer or a percentage, got {value!r}")
        if int(match.group(1)) > 100:
            raise ValueError("percentage budget must be <= 100%")
        return value.strip()

    @model_validator(mode="after")
    def _not_both_zero(self) -> "RolloutStrategy":
        if _is_zero(self.max_unavailable) and _is_zero(self.max_surge):
            raise ValueError("max_unavailable and max_surge cannot both be zero")
        return self

    def unavailable_budget(self, replicas: int) -> int:
        return _resolve_budget(self.max_unavailable, replicas)

    def surge_budget(self, replicas: int) -> int:
        return _resolve_budget(self.max_surge, replicas)


def _is_zero(budget: Union[int, str]) -> bool:
    if isinstance(budget, int):
        return budget == 0
    return budget == "0%"


def _resolve_budget(budget: Union[int, str], replicas: int) -> int:
    if isinstance(budget, int):
        return budget
    percent = int(budget.rstrip("%"))
    return math.ceil(replicas * percent / 100)


class WorkloadSpec(BaseModel):
    """Desired state of one deployable unit for a single orchestration run."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Workload (Deployment) name")
    namespace: str = Field(default="default", min_length=1)
    container_name: Optional[str] = Field(
        default=None, description="Container to update, defaults to the workload name"
    )
    image: str = Field(
        ..., min_length=1, description="Registry coordinate, e.g. ghcr.io/acme/breach-lookup"
    )
    tag: str = Field(default="latest", min_length=1, description="Human-supplied tag or digest")
    image_reference: Optional[str] = Field(
        default=None, description="Digest-pinned reference filled in by the resolver"
    )
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    replica_bounds: ReplicaBounds = Field(default_factory=ReplicaBounds)
    strategy: RolloutStrategy = Field(default_factory=RolloutStrategy)

    @property
    def identity(self) -> WorkloadIdentity:
        return WorkloadIdentity(namespace=self.namespace, name=self.name)

    @property
    def container(self) -> str:
        return self.container_name or self.name

    @property
    def desired_reference(self) -> str:
        """Pinned reference, or the raw image:tag before resolution."""
        if self.image_reference:
            return self.image_reference
        return f"{self.image}:{self.tag}"

    def with_reference(self, reference: str) -> "WorkloadSpec":
        return self.model_copy(update={"image_reference": reference})


class ReplicaState(BaseModel):
    """One running replica as reported by the cluster."""

    name: str
    image_reference: str
    ready: bool = False
    restart_count: int = 0
    last_transition: Optional[datetime] = None


class WorkloadState(BaseModel):
    """Observed state of a workload. Only the cluster changes it."""

    identity: WorkloadIdentity
    replicas: List[ReplicaState] = Field(default_factory=list)
    desired_replicas: int = 0
    revision: Optional[str] = Field(
        default=None, description="Revision marker stored on the workload at last apply"
    )
    annotations: Dict[str, str] = Field(default_factory=dict)
    last_transition: Optional[datetime] = None
    observed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def replica_count(self) -> int:
        return len(self.replicas)

    @property
    def ready_count(self) -> int:
        return sum(1 for replica in self.replicas if replica.ready)


    def replicas_on(self, reference: str) -> List[ReplicaState]:
        return [replica for replica in self.replicas if replica.image_reference == reference]
