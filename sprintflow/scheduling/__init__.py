"""Sprint scheduling - decomposition, dependency tracking and allocation.

This module provides the scheduling building blocks:
- Sprint decomposition (high-level task -> bounded sprints)
- Dependency graph (sprints -> readiness, critical path, parallel layers)
- Claims and worker matching (ready sprints -> exclusive allocations)
- Layered execution (parallel layers -> results)
"""

from sprintflow.scheduling.claims import TaskClaimRegistry
from sprintflow.scheduling.decomposer import SprintDecomposer
from sprintflow.scheduling.executor import (
    LayerExecutionResult,
    ParallelExecutionCoordinator,
    SimulatedSprintExecutor,
    SprintExecutor,
)
from sprintflow.scheduling.graph import DependencyGraph
from sprintflow.scheduling.models import (
    Allocation,
    ComplexityAssessment,
    ComplexityLevel,
    DecompositionConstraints,
    Node,
    NodeStatus,
    ResourceConflict,
    SprintExecutionResult,
    SprintOutcome,
    SprintPlan,
    SprintRequest,
    SprintType,
    ValidationReport,
    Worker,
    WorkerStatus,
)
from sprintflow.scheduling.workers import WorkerPool

__all__ = [
    # Models
    "Allocation",
    "ComplexityAssessment",
    "ComplexityLevel",
    "DecompositionConstraints",
    "Node",
    "NodeStatus",
    "ResourceConflict",
    "SprintExecutionResult",
    "SprintOutcome",
    "SprintPlan",
    "SprintRequest",
    "SprintType",
    "ValidationReport",
    "Worker",
    "WorkerStatus",
    # Decomposition
    "SprintDecomposer",
    # Graph
    "DependencyGraph",
    # Allocation
    "TaskClaimRegistry",
    "WorkerPool",
    # Execution
    "LayerExecutionResult",
    "ParallelExecutionCoordinator",
    "SimulatedSprintExecutor",
    "SprintExecutor",
]
