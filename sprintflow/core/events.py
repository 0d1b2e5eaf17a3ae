"""Typed orchestrator events and the hooks that receive them."""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field


class SprintCompletedEvent(BaseModel):
    """A sprint finished and its dependents were processed."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    worker_id: str
    duration: float = 0.0
    deliverables: list[str] = Field(default_factory=list)
    unblocked: list[str] = Field(default_factory=list)


class SprintFailedEvent(BaseModel):
    """One execution attempt failed."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    worker_id: str
    error: str
    attempt: int
    will_retry: bool


class SprintAbandonedEvent(BaseModel):
    """A sprint exhausted its retries; its downstream stays blocked."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    attempts: int
    error: str
    blocked_descendants: list[str] = Field(default_factory=list)


class DependencyViolationEvent(BaseModel):
    """A node was completed while prerequisites were still pending."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    pending: list[str] = Field(default_factory=list)
    message: str = ""


class TasksUnblockedEvent(BaseModel):
    """Dependents became ready after a completion."""

    model_config = ConfigDict(frozen=True)

    completed_id: str
    node_ids: list[str]


class ProjectCompletedEvent(BaseModel):
    """Every node in the graph is completed."""

    model_config = ConfigDict(frozen=True)

    total_sprints: int
    elapsed_seconds: float
    metrics: dict[str, Any] = Field(default_factory=dict)


@dataclass
class OrchestratorHooks:
    """
    Callbacks invoked by the orchestrator, one per event kind.

    Hooks are fire-and-forget: an exception raised by a hook is logged
    and does not affect scheduling.

    Example:
        >>> abandoned = []
        >>> hooks = OrchestratorHooks(on_sprint_abandoned=abandoned.append)
    """

    on_sprint_completed: Callable[[SprintCompletedEvent], None] | None = None
    on_sprint_failed: Callable[[SprintFailedEvent], None] | None = None
    on_sprint_abandoned: Callable[[SprintAbandonedEvent], None] | None = None
    on_dependency_violation: Callable[[DependencyViolationEvent], None] | None = None
    on_tasks_unblocked: Callable[[TasksUnblockedEvent], None] | None = None
    on_project_completed: Callable[[ProjectCompletedEvent], None] | None = None

    def emit(self, callback: Callable[[Any], None] | None, event: BaseModel) -> None:
        """Deliver an event to a hook, if one is registered."""
        if callback is None:
            return
        try:
            callback(event)
        except Exception as e:
            logger.warning(f"Hook error for {type(event).__name__}: {e}")
