"""Core module - Orchestrator, project state, events and configuration."""

from sprintflow.core.config import Settings, get_settings
from sprintflow.core.events import OrchestratorHooks
from sprintflow.core.orchestrator import TaskOrchestrator
from sprintflow.core.state import ProjectMetrics, ProjectReport, ProjectStatus

__all__ = [
    "OrchestratorHooks",
    "ProjectMetrics",
    "ProjectReport",
    "ProjectStatus",
    "Settings",
    "TaskOrchestrator",
    "get_settings",
]
