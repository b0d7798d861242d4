"""
Error taxonomy for deployment orchestration.

Every error carries the stage it was raised in so the final report can name
the exact stage that failed.
"""

from typing import Any, Optional


class OrchestrationError(Exception):
    """Base class for orchestration failures."""

    stage: Optional[str] = None

    def __init__(self, message: str, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if stage is not None:
            self.stage = stage


class ConfigurationError(OrchestrationError):
    """Invalid workload spec or orchestrator configuration."""

    stage = "validate"


class UnresolvableReference(OrchestrationError):
    """Registry unreachable or the requested tag does not exist."""

    stage = "resolve"

    def __init__(self, image: str, tag: str, reason: str) -> None:
        super().__init__(f"Cannot resolve {image}:{tag}: {reason}")
        self.image = image
        self.tag = tag
        self.reason = reason


class AlreadyInProgress(OrchestrationError):
    """Another attempt holds the lock for this workload identity."""

    stage = "lock"

    def __init__(self, identity: Any) -> None:
        super().__init__(f"Deployment already in progress for {identity}")
        self.identity = identity


class TransientClusterError(OrchestrationError):
    """A single cluster read or write failed in a way that may succeed on retry."""


class ClusterUnavailable(OrchestrationError):
    """Transient cluster errors persisted past the stage-level retry budget."""


class UpdateRejected(OrchestrationError):
    """The cluster refused a workload update request."""

    stage = "rollout"


class RolloutStalled(OrchestrationError):
    """A rollout batch did not become ready within its timeout."""

    stage = "rollout"

    def __init__(self, message: str, last_good_batch: Optional[int] = None) -> None:
        super().__init__(message)
        self.last_good_batch = last_good_batch


class Unhealthy(OrchestrationError):
    """A replica is crash-looping or otherwise cannot become ready."""

    stage = "health"


class TimedOut(OrchestrationError):
    """Replicas did not become ready before the health deadline."""

    stage = "health"


class MetricsUnavailable(OrchestrationError):
    """Autoscaler metrics stayed unavailable past the grace period."""

    stage = "autoscale"


class Cancelled(OrchestrationError):
    """The caller cancelled an in-flight attempt."""


class RetriesExhausted(OrchestrationError):
    """Every allowed attempt failed."""

    def __init__(
        self,
        attempts: int,
        last_error: Optional[BaseException],
        first_failed_stage: Optional[str] = None,
    ) -> None:
        detail = str(last_error) if last_error else "unknown error"
        super().__init__(
            f"Deployment failed after {attempts} attempts: {detail}",
            stage=getattr(last_error, "stage", None),
        )
        self.attempts = attempts
        self.last_error = last_error
        self.first_failed_stage = first_failed_stage


class RegistryUnavailable(OrchestrationError):
    """The registry could not be reached or answered with a server error."""

    stage = "resolve"
