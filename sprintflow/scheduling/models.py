"""Pydantic models for sprint scheduling.

This module defines the data structures shared by the dependency graph,
the sprint decomposer, the worker pool and the orchestrator: node and
worker state, decomposition inputs, validation reports and execution
outcomes.
"""

from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from sprintflow.scheduling.graph import DependencyGraph


# =============================================================================
# ENUMS
# =============================================================================


class NodeStatus(str, Enum):
    """Lifecycle status of a sprint node."""

    BACKLOG = "backlog"
    BLOCKED = "blocked"
    READY = "ready"
    CLAIMED = "claimed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkerStatus(str, Enum):
    """Availability of a worker."""

    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class SprintType(str, Enum):
    """Kind of work a sprint performs."""

    ANALYSIS = "analysis"
    PLANNING = "planning"
    IMPLEMENTATION = "implementation"
    TESTING = "testing"
    REVIEW = "review"
    DOCUMENTATION = "documentation"


class ComplexityLevel(str, Enum):
    """Coarse task complexity."""

    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


# Permitted status changes. COMPLETED is terminal; FAILED may be retried.
ALLOWED_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.BACKLOG: frozenset({NodeStatus.BLOCKED, NodeStatus.READY}),
    NodeStatus.BLOCKED: frozenset({NodeStatus.READY}),
    NodeStatus.READY: frozenset({NodeStatus.CLAIMED, NodeStatus.BLOCKED}),
    NodeStatus.CLAIMED: frozenset(
        {NodeStatus.IN_PROGRESS, NodeStatus.READY, NodeStatus.BLOCKED}
    ),
    NodeStatus.IN_PROGRESS: frozenset(
        {NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.READY, NodeStatus.BLOCKED}
    ),
    NodeStatus.FAILED: frozenset({NodeStatus.READY}),
    NodeStatus.COMPLETED: frozenset(),
}


# =============================================================================
# GRAPH NODES
# =============================================================================


class Node(BaseModel):
    """A sprint: one bounded-duration unit of work in the dependency graph.

    ``depends_on``, ``enables``, ``depth`` and ``status`` are owned by
    :class:`~sprintflow.scheduling.graph.DependencyGraph`; callers should
    change them only through graph operations.

    Example:
        >>> node = Node(
        ...     id="sprint-1",
        ...     title="Sprint 1: understanding",
        ...     sprint_type=SprintType.ANALYSIS,
        ...     estimated_duration=5,
        ...     required_skills={"research", "analysis"},
        ... )
    """

    model_config = ConfigDict(frozen=False)

    id: str = Field(..., min_length=1, description="Unique node identifier")
    title: str = Field(default="", description="Human readable title")
    description: str = Field(default="", description="What the sprint covers")
    sprint_type: SprintType = Field(
        default=SprintType.IMPLEMENTATION,
        description="Kind of work",
    )
    status: NodeStatus = Field(default=NodeStatus.BACKLOG)
    depends_on: set[str] = Field(
        default_factory=set,
        description="Node IDs this node waits for",
    )
    enables: set[str] = Field(
        default_factory=set,
        description="Node IDs waiting for this node",
    )
    depth: int = Field(default=0, ge=0, description="Longest dependency chain below this node")
    estimated_duration: float = Field(
        default=10,
        ge=0,
        description="Estimated duration in minutes",
    )
    required_skills: set[str] = Field(default_factory=set)
    priority: int = Field(default=0, description="Higher runs first among equals")
    retry_count: int = Field(default=0, ge=0)
    deliverables: list[str] = Field(default_factory=list)
    acceptance_criteria: list[str] = Field(default_factory=list)
    parallelizable: bool = Field(default=False)
    produces: set[str] = Field(
        default_factory=set,
        description="Data types this sprint makes available to later sprints",
    )
    requires: set[str] = Field(
        default_factory=set,
        description="Data types this sprint consumes",
    )
    resource_requirements: set[str] = Field(
        default_factory=set,
        description="Shared resources held while the sprint runs",
    )
    record_id: str | None = Field(
        default=None,
        description="Knowledge store record backing this node",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = self.model_dump(mode="json")
        data["depends_on"] = sorted(self.depends_on)
        data["enables"] = sorted(self.enables)
        data["required_skills"] = sorted(self.required_skills)
        for key in ("produces", "requires", "resource_requirements"):
            data[key] = sorted(getattr(self, key))
        return data


class ValidationReport(BaseModel):
    """Outcome of a graph or plan validation."""

    model_config = ConfigDict(frozen=False)

    valid: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.valid = False

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)


class ResourceConflict(BaseModel):
    """A resource wanted by nodes that are free to run at the same time."""

    resource: str
    node_ids: list[str] = Field(default_factory=list)


# =============================================================================
# WORKERS
# =============================================================================


class WorkerPerformance(BaseModel):
    """Rolling performance figures for a worker."""

    tasks_completed: int = 0
    tasks_failed: int = 0
    success_rate: float = Field(default=100.0, ge=0.0, le=100.0)
    average_duration: float = 0.0


class Worker(BaseModel):
    """An agent able to execute sprints."""

    model_config = ConfigDict(frozen=False)

    id: str = Field(..., min_length=1)
    skills: set[str] = Field(default_factory=set)
    worker_type: str = Field(default="specialist", description="e.g. manager, specialist")
    status: WorkerStatus = WorkerStatus.AVAILABLE
    current_node: str | None = None
    performance: WorkerPerformance = Field(default_factory=WorkerPerformance)


class Allocation(BaseModel):
    """Exclusive ownership of a node by a worker."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    worker_id: str


# =============================================================================
# DECOMPOSITION
# =============================================================================


class SprintRequest(BaseModel):
    """High-level task handed to the decomposer.

    Example:
        >>> request = SprintRequest(
        ...     title="Payment integration",
        ...     description="Design and implement Stripe checkout with tests",
        ... )
    """

    title: str = Field(..., min_length=1)
    description: str = Field(default="")
    dependencies: list[str] = Field(
        default_factory=list,
        description="External prerequisites, used as a complexity signal",
    )
    estimated_duration: float | None = Field(
        default=None,
        gt=0,
        description="Total minutes if already known; spread over the phases",
    )

    @property
    def text(self) -> str:
        return f"{self.title} {self.description}".strip()


class DecompositionConstraints(BaseModel):
    """Per-call overrides for the decomposer. ``None`` means use settings."""

    max_sprint_duration: float | None = Field(default=None, gt=0)
    max_sprints_per_project: int | None = Field(default=None, ge=1)
    phases: list[SprintType] | None = Field(
        default=None,
        description="Use exactly these phases instead of keyword selection",
    )
    priority: int = Field(default=0, description="Priority given to every node")
    id_prefix: str = Field(default="sprint", min_length=1)


class ComplexityAssessment(BaseModel):
    """Result of the complexity heuristics."""

    model_config = ConfigDict(frozen=True)

    score: float
    level: ComplexityLevel
    factors: dict[str, float] = Field(default_factory=dict)
    estimated_sprints: int


class SprintComponent(BaseModel):
    """Phase of work before it becomes a graph node."""

    name: str
    sprint_type: SprintType
    priority: int
    description: str = ""
    estimated_duration: float
    part: int = 1
    parts: int = 1

    @property
    def parallelizable(self) -> bool:
        return (
            self.sprint_type
            in (SprintType.TESTING, SprintType.DOCUMENTATION, SprintType.ANALYSIS)
            and self.priority > 2
        )


class SprintPlan(BaseModel):
    """Populated dependency graph plus plan-level aggregates."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    project_id: str
    title: str
    complexity: ComplexityAssessment
    graph: "DependencyGraph"
    sprints: list[Node] = Field(default_factory=list)
    total_duration: float = 0.0
    parallel_groups: list[list[str]] = Field(default_factory=list)
    critical_path: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def total_sprints(self) -> int:
        return len(self.sprints)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "project_id": self.project_id,
            "title": self.title,
            "complexity": self.complexity.model_dump(mode="json"),
            "sprints": [s.to_dict() for s in self.sprints],
            "total_duration": self.total_duration,
            "parallel_groups": self.parallel_groups,
            "critical_path": self.critical_path,
            "warnings": self.warnings,
        }


# =============================================================================
# EXECUTION
# =============================================================================


class SprintOutcome(BaseModel):
    """What a worker reports after finishing a sprint.

    ``criteria_met`` lists the acceptance criteria the worker satisfied;
    ``None`` means the worker does not report criteria and the acceptance
    check is skipped.
    """

    deliverables: list[str] = Field(default_factory=list)
    duration_actual: float = Field(default=0.0, ge=0.0)
    criteria_met: list[str] | None = None
    output: str | None = None


class SprintExecutionResult(BaseModel):
    """Result of one execution attempt of a node."""

    node_id: str
    worker_id: str | None = None
    success: bool
    outcome: SprintOutcome | None = None
    error: str | None = None
    attempt: int = 1
