"""
Sprintflow - sprint decomposition and dependency-aware task orchestration.

Break high-level tasks into bounded sprints and execute them in parallel
across a pool of workers without ever running a sprint before its
prerequisites.
"""

__version__ = "0.1.0"
__author__ = "Sprintflow Team"

from sprintflow.core.orchestrator import TaskOrchestrator
from sprintflow.scheduling.decomposer import SprintDecomposer
from sprintflow.scheduling.graph import DependencyGraph

__all__ = ["DependencyGraph", "SprintDecomposer", "TaskOrchestrator", "__version__"]
