"""
Sprint execution boundary and layered parallel execution.

This module defines the protocol workers implement, a simulated worker
for dry runs, and the coordinator that executes a layer of mutually
independent sprints concurrently through the orchestrator.
"""

import asyncio
import random
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from loguru import logger

from sprintflow.core.config import get_settings
from sprintflow.core.exceptions import ExecutionError
from sprintflow.core.state import ProjectStatus
from sprintflow.scheduling.models import (
    Node,
    NodeStatus,
    SprintExecutionResult,
    SprintOutcome,
    Worker,
)

if TYPE_CHECKING:
    from sprintflow.core.orchestrator import TaskOrchestrator


# =============================================================================
# WORKER EXECUTION PROTOCOL
# =============================================================================


@runtime_checkable
class SprintExecutor(Protocol):
    """Opaque asynchronous execution of one sprint by one worker.

    Implementations raise on failure; the orchestrator turns any
    exception into a retry or an abandonment.
    """

    async def execute(self, node: Node, worker: Worker) -> SprintOutcome:
        ...


class SimulatedSprintExecutor:
    """
    Executor that simulates sprints without doing any work.

    Useful for dry runs of a plan and for tests. Each sprint sleeps for
    its estimated duration scaled by ``time_scale`` seconds per minute and
    fails with probability ``failure_rate``.

    Example:
        >>> executor = SimulatedSprintExecutor(time_scale=0.01, seed=7)
        >>> outcome = await executor.execute(node, worker)
    """

    def __init__(
        self,
        time_scale: float = 0.0,
        failure_rate: float = 0.0,
        seed: int | None = None,
    ) -> None:
        """
        Initialize simulated executor.

        Args:
            time_scale: Seconds slept per estimated minute.
            failure_rate: Probability of a simulated failure (0.0 to 1.0).
            seed: Seed for reproducible failures.
        """
        self.time_scale = time_scale
        self.failure_rate = failure_rate
        self._random = random.Random(seed)
        self.calls: list[tuple[str, str]] = []

    async def execute(self, node: Node, worker: Worker) -> SprintOutcome:
        self.calls.append((node.id, worker.id))
        logger.debug(f"Simulating {node.id} on {worker.id}")

        await asyncio.sleep(node.estimated_duration * self.time_scale)

        if self._random.random() < self.failure_rate:
            raise ExecutionError(f"Simulated failure of {node.id}")

        return SprintOutcome(
            deliverables=list(node.deliverables),
            duration_actual=node.estimated_duration,
            criteria_met=list(node.acceptance_criteria),
            output=f"Simulated output for {node.title or node.id}",
        )


# =============================================================================
# LAYER RESULTS
# =============================================================================


class LayerExecutionResult:
    """Result of executing one layer of independent sprints."""

    def __init__(
        self,
        layer_number: int,
        results: list[SprintExecutionResult],
    ):
        self.layer_number = layer_number
        self.results = results
        self.completed_at = datetime.now().isoformat()

    @property
    def succeeded(self) -> list[str]:
        """IDs of sprints that completed."""
        return [r.node_id for r in self.results if r.success]

    @property
    def failed(self) -> list[str]:
        """IDs of sprints whose attempt failed."""
        return [r.node_id for r in self.results if not r.success]

    @property
    def success_rate(self) -> float:
        if not self.results:
            return 0.0
        return len(self.succeeded) / len(self.results)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "layer_number": self.layer_number,
            "results": [r.model_dump(mode="json") for r in self.results],
            "succeeded": self.succeeded,
            "failed": self.failed,
            "success_rate": self.success_rate,
            "completed_at": self.completed_at,
        }


# =============================================================================
# PARALLEL EXECUTION COORDINATOR
# =============================================================================


class ParallelExecutionCoordinator:
    """
    Execute layers of mutually independent sprints concurrently.

    Each sprint runs through the orchestrator's single-task primitive,
    so claims, retries and abandonment follow the normal path. A failing
    sprint never fails the layer; the layer result only partitions
    outcomes for monitoring.

    Example:
        >>> coordinator = ParallelExecutionCoordinator(max_concurrent=4)
        >>> orchestrator = TaskOrchestrator(graph, pool, executor, auto_allocate=False)
        >>> await orchestrator.start()
        >>> results = await coordinator.execute_graph(orchestrator)
    """

    def __init__(self, max_concurrent: int | None = None):
        """
        Initialize the coordinator.

        Args:
            max_concurrent: Maximum sprints executing at once. Defaults to
                the ``max_concurrent`` setting.
        """
        self.max_concurrent = max_concurrent or get_settings().max_concurrent
        self._semaphore = asyncio.Semaphore(self.max_concurrent)

    async def execute_layer(
        self,
        node_ids: list[str],
        orchestrator: "TaskOrchestrator",
        layer_number: int = 0,
    ) -> LayerExecutionResult:
        """
        Execute a layer of sprints concurrently and wait for all of them.

        Args:
            node_ids: Ready sprints with no dependencies on each other.
            orchestrator: Orchestrator providing ``execute_node``.
            layer_number: Layer index for logging.

        Returns:
            LayerExecutionResult partitioning succeeded and failed sprints.
        """
        logger.info(f"Executing layer {layer_number} with {len(node_ids)} sprints")

        coroutines = [self._execute_with_semaphore(nid, orchestrator) for nid in node_ids]
        outcomes = await asyncio.gather(*coroutines, return_exceptions=True)

        results: list[SprintExecutionResult] = []
        for node_id, outcome in zip(node_ids, outcomes, strict=True):
            if isinstance(outcome, asyncio.CancelledError):
                results.append(
                    SprintExecutionResult(node_id=node_id, success=False, error="cancelled")
                )
            elif isinstance(outcome, BaseException):
                logger.error(f"Sprint {node_id} could not be executed: {outcome}")
                results.append(
                    SprintExecutionResult(node_id=node_id, success=False, error=str(outcome))
                )
            else:
                results.append(outcome)

        layer_result = LayerExecutionResult(layer_number=layer_number, results=results)
        logger.info(
            f"Layer {layer_number} complete: "
            f"{len(layer_result.succeeded)} succeeded, {len(layer_result.failed)} failed"
        )
        return layer_result

    async def execute_graph(self, orchestrator: "TaskOrchestrator") -> list[LayerExecutionResult]:
        """
        Execute the orchestrator's graph wave by wave.

        Every wave runs all currently ready sprints. Sprints that failed
        but still have retries left are ready again and run in a later
        wave; abandoned sprints keep their dependents blocked. Stops when
        no sprint is ready or the project stops running.

        Returns:
            One LayerExecutionResult per wave.
        """
        results: list[LayerExecutionResult] = []
        graph = orchestrator.graph

        while orchestrator.status == ProjectStatus.RUNNING:
            wave = self._next_wave(graph.get_parallel_layers(), graph)
            if not wave:
                break
            if not orchestrator.pool.has_online_workers():
                logger.warning(f"No online workers left for {len(wave)} ready sprints")
                break
            results.append(await self.execute_layer(wave, orchestrator, layer_number=len(results)))

        orchestrator.finish()
        return results

    @staticmethod
    def _next_wave(layers: list[list[str]], graph: Any) -> list[str]:
        return [
            nid for layer in layers for nid in layer
            if graph.get_node(nid).status == NodeStatus.READY
        ]

    async def _execute_with_semaphore(
        self,
        node_id: str,
        orchestrator: "TaskOrchestrator",
    ) -> SprintExecutionResult:
        async with self._semaphore:
            return await orchestrator.execute_node(node_id)
