"""Project-level state and metrics for an orchestrated run."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ProjectStatus(str, Enum):
    """Status of a project run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"  # at least one sprint abandoned
    STALLED = "stalled"  # ready work left but nothing can run it
    CANCELLED = "cancelled"


class ProjectMetrics(BaseModel):
    """Running totals maintained by the orchestrator."""

    model_config = ConfigDict(frozen=False)

    total_sprints: int = 0
    completed_sprints: int = 0
    failed_attempts: int = 0
    abandoned_sprints: int = 0
    average_duration: float = 0.0
    busy_duration: float = 0.0
    parallelization_efficiency: float = 0.0

    def record_completion(self, duration: float) -> None:
        """Add one completed sprint of the given duration."""
        total = self.average_duration * self.completed_sprints
        self.completed_sprints += 1
        self.busy_duration += duration
        self.average_duration = (total + duration) / self.completed_sprints

    def finalize(self, elapsed: float) -> None:
        """Compute efficiency as busy time over wall-clock time, in percent."""
        if elapsed > 0:
            self.parallelization_efficiency = 100.0 * self.busy_duration / elapsed


class ProjectReport(BaseModel):
    """Final (or current) outcome of a project run."""

    model_config = ConfigDict(frozen=True)

    status: ProjectStatus
    completed: list[str] = Field(default_factory=list)
    abandoned: list[str] = Field(default_factory=list)
    blocked: list[str] = Field(default_factory=list)
    metrics: ProjectMetrics = Field(default_factory=ProjectMetrics)
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == ProjectStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return self.model_dump(mode="json")
