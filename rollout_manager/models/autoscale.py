"""
Autoscaler observation model.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


class AutoscaleObservation(BaseModel):
    """Snapshot of what the horizontal autoscaler reports for a workload."""

    current_replicas: int = Field(..., ge=0)
    min_replicas: int = Field(..., ge=0)
    max_replicas: int = Field(..., ge=0)
    cpu_utilization_percent: Optional[float] = Field(
        None, description="Observed average CPU utilization against requests"
    )
    memory_utilization_percent: Optional[float] = Field(
        None, description="Observed average memory utilization against requests"
    )
    metrics_available: bool = Field(
        default=False, description="False while the metrics pipeline has no data"
    )
    observed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def utilization(self) -> Optional[float]:
        """Highest available utilization, None when no metric is reported."""
        values = [
            value
            for value in (self.cpu_utilization_percent, self.memory_utilization_percent)
            if value is not None
        ]
        return max(values) if values else None