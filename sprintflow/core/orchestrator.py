"""Task orchestrator - drives a sprint graph to completion.

The orchestrator pairs ready sprints with workers, runs them through a
:class:`~sprintflow.scheduling.executor.SprintExecutor`, mirrors every
status change into the knowledge store and reacts to completions and
failures: unblocking dependents, retrying up to ``max_retries`` and
abandoning sprints that keep failing.

Two execution modes are supported:

- ``auto_allocate=True`` (default): :meth:`TaskOrchestrator.run` allocates
  every ready sprint as soon as a worker is free and returns when the
  project settles.
- ``auto_allocate=False``: the caller drives execution one sprint at a
  time with :meth:`TaskOrchestrator.execute_node`, typically through
  :class:`~sprintflow.scheduling.executor.ParallelExecutionCoordinator`.
"""

import asyncio
import time
from typing import Any

from loguru import logger

from sprintflow.core.config import Settings, get_settings
from sprintflow.core.events import (
    DependencyViolationEvent,
    OrchestratorHooks,
    ProjectCompletedEvent,
    SprintAbandonedEvent,
    SprintCompletedEvent,
    SprintFailedEvent,
    TasksUnblockedEvent,
)
from sprintflow.core.exceptions import (
    AcceptanceError,
    AlreadyCompletedError,
    ClaimError,
    DanglingDependencyError,
    DependencyViolationError,
    InvalidPlanError,
    InvalidTransitionError,
    InvariantError,
    NoWorkersAvailableError,
    SprintFlowError,
    SprintTimeoutError,
)
from sprintflow.core.state import ProjectMetrics, ProjectReport, ProjectStatus
from sprintflow.knowledge.store import (
    InMemoryKnowledgeStore,
    KnowledgeStore,
    RetryingKnowledgeStore,
)
from sprintflow.scheduling.claims import TaskClaimRegistry
from sprintflow.scheduling.executor import SprintExecutor
from sprintflow.scheduling.graph import DependencyGraph
from sprintflow.scheduling.models import (
    Allocation,
    Node,
    NodeStatus,
    SprintExecutionResult,
    SprintOutcome,
    WorkerStatus,
)
from sprintflow.scheduling.workers import WorkerPool


class TaskOrchestrator:
    """
    Allocate, execute and track the sprints of one project.

    The graph is validated and frozen by :meth:`start`. From then on the
    orchestrator is the only writer of node statuses, worker
    availability and claims.

    Example:
        >>> pool = WorkerPool()
        >>> pool.register("dev-1", skills={"coding"})
        >>> orchestrator = TaskOrchestrator(plan.graph, pool, SimulatedSprintExecutor())
        >>> report = await orchestrator.run()
        >>> report.status
        <ProjectStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        graph: DependencyGraph,
        pool: WorkerPool,
        executor: SprintExecutor,
        *,
        settings: Settings | None = None,
        claims: TaskClaimRegistry | None = None,
        store: KnowledgeStore | None = None,
        hooks: OrchestratorHooks | None = None,
        auto_allocate: bool = True,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            graph: Populated dependency graph.
            pool: Registered workers.
            executor: Runs one sprint on one worker.
            settings: Optional settings override.
            claims: Claim registry, shared if several orchestrators
                allocate from the same graph.
            store: Knowledge store to mirror statuses into. Defaults to
                an in-memory store.
            hooks: Event callbacks.
            auto_allocate: Allocate ready sprints automatically.
        """
        self.settings = settings or get_settings()
        self.graph = graph
        self.pool = pool
        self.executor = executor
        self.claims = claims or TaskClaimRegistry()
        self.store = RetryingKnowledgeStore(
            store if store is not None else InMemoryKnowledgeStore(),
            max_retries=self.settings.store_max_retries,
            retry_delay=self.settings.store_retry_delay,
        )
        self.hooks = hooks or OrchestratorHooks()
        self.auto_allocate = auto_allocate

        self.status = ProjectStatus.PENDING
        self.metrics = ProjectMetrics()

        self._running: dict[str, asyncio.Task[Any]] = {}
        self._finished = asyncio.Event()
        self._worker_freed = asyncio.Event()
        self._fatal_error: InvariantError | None = None
        self._started_at: float | None = None
        self._ended_at: float | None = None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """
        Validate the graph, create store records and begin allocation.

        Raises:
            InvalidPlanError: If the graph has errors (cycles, dangling
                references). Nothing is allocated in that case. Dangling
                references are chained as a DanglingDependencyError cause.
            SprintFlowError: If the project was already started.
        """
        if self.status != ProjectStatus.PENDING:
            raise SprintFlowError(f"Project already started (status: {self.status.value})")

        report = self.graph.validate()
        if not report.valid:
            self.status = ProjectStatus.FAILED
            logger.error(f"Refusing to start invalid graph: {report.errors}")
            try:
                self.graph.check_references()
            except DanglingDependencyError as e:
                raise InvalidPlanError(report.errors) from e
            raise InvalidPlanError(report.errors)
        for warning in report.warnings:
            logger.warning(warning)

        self.graph.freeze()
        self.metrics.total_sprints = len(self.graph)
        self._started_at = time.monotonic()

        for node in self.graph.nodes:
            node.record_id = await self.store.create_task_record(node)

        self.status = ProjectStatus.RUNNING
        logger.info(
            f"Starting project with {len(self.graph)} sprints and {len(self.pool)} workers "
            f"(critical path: {' -> '.join(self.graph.critical_path) or 'none'})"
        )

        if self.auto_allocate:
            self.allocate_ready_tasks()

    async def run(self) -> ProjectReport:
        """
        Start the project and wait until it settles.

        Returns:
            ProjectReport with the final status.

        Raises:
            InvalidPlanError: If the graph is invalid.
            InvariantError: If a scheduling invariant was broken mid-run.
        """
        if not self.auto_allocate:
            raise SprintFlowError("run() requires auto_allocate; use execute_node() instead")
        await self.start()
        return await self.wait()

    async def wait(self) -> ProjectReport:
        """Wait until the project completes, fails, stalls or is cancelled."""
        await self._finished.wait()
        if self._fatal_error is not None:
            raise self._fatal_error
        return self.report()

    def finish(self) -> ProjectReport:
        """
        Settle a project whose caller drives execution.

        Sets the final status when nothing is running any more and
        returns the report.
        """
        if self.status == ProjectStatus.RUNNING and not self._running:
            self._settle()
        return self.report()

    async def cancel(self) -> None:
        """
        Cancel every running sprint.

        Claims are released, claimed and in-progress sprints go back to
        ``blocked`` with their retry counts untouched, and workers become
        available. :meth:`resume` continues from there.
        """
        if self.status != ProjectStatus.RUNNING:
            return

        self.status = ProjectStatus.CANCELLED
        current = asyncio.current_task()
        tasks = [t for t in self._running.values() if t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._running.clear()

        released = self.claims.release_all()
        for node in self.graph.nodes:
            if node.status in (NodeStatus.CLAIMED, NodeStatus.IN_PROGRESS):
                self.graph.transition(node.id, NodeStatus.BLOCKED)
                await self.store.update_task_status(node.record_id, NodeStatus.BLOCKED.value)
        for worker in self.pool.workers:
            if worker.status == WorkerStatus.BUSY:
                self._release_worker(worker.id)

        self._finalize_metrics()
        self._finished.set()
        logger.warning(f"Project cancelled, released {len(released)} claims")

    async def resume(self) -> list[Allocation]:
        """
        Resume a cancelled project.

        Returns:
            Allocations made immediately (empty without auto allocation).
        """
        if self.status != ProjectStatus.CANCELLED:
            raise SprintFlowError(f"Cannot resume project in status {self.status.value}")

        promoted = self.graph.refresh_ready()
        for node_id in promoted:
            node = self.graph.get_node(node_id)
            await self.store.update_task_status(node.record_id, NodeStatus.READY.value)

        self.status = ProjectStatus.RUNNING
        self._ended_at = None
        self._finished.clear()
        logger.info(f"Project resumed, {len(promoted)} sprints ready again")

        if self.auto_allocate:
            return self.allocate_ready_tasks()
        return []

    # =========================================================================
    # ALLOCATION
    # =========================================================================

    def allocate_ready_tasks(self) -> list[Allocation]:
        """
        Pair ready sprints with the best available workers.

        Sprints are considered in graph order (critical path first), each
        allocation claims the sprint before the worker is marked busy and
        a claim lost to a concurrent allocator is skipped.

        Returns:
            Allocations made by this call.
        """
        if self.status != ProjectStatus.RUNNING:
            return []

        allocations: list[Allocation] = []
        for node in self.graph.get_ready_tasks():
            if not self.pool.get_available():
                break
            allocation = self._try_allocate(node)
            if allocation is None:
                continue
            allocations.append(allocation)
            task = asyncio.create_task(
                self._run_in_background(allocation.node_id, allocation.worker_id),
                name=f"sprint-{allocation.node_id}",
            )
            self._running[allocation.node_id] = task

        self._maybe_finish()
        return allocations

    def _try_allocate(self, node: Node) -> Allocation | None:
        worker = self.pool.find_best_match(node, self.pool.get_available())
        if worker is None:
            return None

        try:
            allocation = self.claims.claim(worker.id, node.id)
        except ClaimError as e:
            logger.debug(f"Skipping {node.id}: {e}")
            return None

        try:
            self.graph.transition(node.id, NodeStatus.CLAIMED)
        except InvalidTransitionError as e:
            self.claims.release(worker.id, node.id)
            logger.debug(f"Skipping {node.id}: {e}")
            return None

        self.pool.mark_busy(worker.id, node.id)
        logger.info(f"Allocated {node.id} to {worker.id}")
        return allocation

    def _release_worker(self, worker_id: str) -> None:
        self.pool.mark_available(worker_id)
        self._worker_freed.set()

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def execute_node(self, node_id: str) -> SprintExecutionResult:
        """
        Execute one ready sprint and wait for its result.

        Waits for a worker when all are busy. The completion or failure
        is processed before this returns.

        Args:
            node_id: A sprint in ``ready`` status.

        Returns:
            SprintExecutionResult of this attempt.

        Raises:
            NoWorkersAvailableError: If no online worker exists.
            InvalidTransitionError: If the sprint is not ready.
            SprintFlowError: If the project is not running.
        """
        node = self.graph.get_node(node_id)
        allocation = await self._acquire_worker(node)

        self._running[node_id] = asyncio.current_task()
        return await self._execute(allocation.node_id, allocation.worker_id)

    async def _acquire_worker(self, node: Node) -> Allocation:
        while True:
            if self.status != ProjectStatus.RUNNING:
                raise SprintFlowError(f"Project is {self.status.value}, not running")
            if node.status != NodeStatus.READY:
                raise InvalidTransitionError(node.id, node.status.value, NodeStatus.CLAIMED.value)
            if not self.pool.has_online_workers():
                raise NoWorkersAvailableError(f"No online workers to run {node.id}")

            allocation = self._try_allocate(node)
            if allocation is not None:
                return allocation

            self._worker_freed.clear()
            await self._worker_freed.wait()

    async def _run_in_background(self, node_id: str, worker_id: str) -> SprintExecutionResult:
        try:
            return await self._execute(node_id, worker_id)
        except InvariantError as e:
            self._abort(e)
            return SprintExecutionResult(
                node_id=node_id, worker_id=worker_id, success=False, error=str(e)
            )

    async def _execute(self, node_id: str, worker_id: str) -> SprintExecutionResult:
        try:
            return await self._run_sprint(node_id, worker_id)
        finally:
            if self._running.get(node_id) is asyncio.current_task():
                del self._running[node_id]
            self._maybe_finish()

    async def _run_sprint(self, node_id: str, worker_id: str) -> SprintExecutionResult:
        node = self.graph.transition(node_id, NodeStatus.IN_PROGRESS)
        worker = self.pool.get(worker_id)
        attempt = node.retry_count + 1

        await self.store.claim_task_record(node.record_id, worker_id)
        await self.store.update_task_status(node.record_id, NodeStatus.IN_PROGRESS.value)

        timeout = self.settings.sprint_timeout(node.estimated_duration)
        logger.info(f"Executing {node_id} on {worker_id} (attempt {attempt}, timeout {timeout:.2f}s)")
        started = time.monotonic()

        try:
            try:
                outcome = await asyncio.wait_for(
                    self.executor.execute(node, worker),
                    timeout=timeout or None,
                )
            except TimeoutError as e:
                raise SprintTimeoutError(node_id, timeout) from e
            self._check_acceptance(node, outcome)
        except Exception as e:
            await self.on_task_failed(node_id, worker_id, e)
            return SprintExecutionResult(
                node_id=node_id,
                worker_id=worker_id,
                success=False,
                error=str(e),
                attempt=attempt,
            )

        if not outcome.duration_actual:
            elapsed = (time.monotonic() - started) / self.settings.time_unit_seconds
            outcome = outcome.model_copy(update={"duration_actual": elapsed})

        await self.on_task_completed(node_id, worker_id, outcome)
        return SprintExecutionResult(
            node_id=node_id,
            worker_id=worker_id,
            success=True,
            outcome=outcome,
            attempt=attempt,
        )

    def _check_acceptance(self, node: Node, outcome: SprintOutcome) -> None:
        """Reject outcomes meeting too few acceptance criteria."""
        if outcome.criteria_met is None or not node.acceptance_criteria:
            return
        met = set(outcome.criteria_met) & set(node.acceptance_criteria)
        ratio = len(met) / len(node.acceptance_criteria)
        if ratio < self.settings.acceptance_threshold:
            raise AcceptanceError(node.id, ratio, self.settings.acceptance_threshold)

    # =========================================================================
    # COMPLETION AND FAILURE
    # =========================================================================

    async def on_task_completed(
        self,
        node_id: str,
        worker_id: str,
        outcome: SprintOutcome | None = None,
    ) -> list[str]:
        """
        Process a finished sprint.

        Releases the claim, completes the node (which unblocks its
        dependents and recomputes the critical path), frees the worker
        and allocates newly ready work. Invariant errors free the worker
        before propagating; double completion and pending prerequisites
        also emit ``on_dependency_violation``.

        Returns:
            IDs of dependents that became ready.

        Raises:
            DependencyViolationError: If a prerequisite was not completed.
            AlreadyCompletedError: If the node was completed before.
        """
        outcome = outcome or SprintOutcome()
        self.claims.release(worker_id, node_id)

        try:
            unblocked = self.graph.mark_completed(node_id)
        except InvariantError as e:
            logger.error(str(e))
            if isinstance(e, (AlreadyCompletedError, DependencyViolationError)):
                pending = e.pending if isinstance(e, DependencyViolationError) else []
                self.hooks.emit(
                    self.hooks.on_dependency_violation,
                    DependencyViolationEvent(node_id=node_id, pending=pending, message=str(e)),
                )
            self._release_worker(worker_id)
            raise

        self.pool.record_result(worker_id, True, outcome.duration_actual)
        self._release_worker(worker_id)
        self.metrics.record_completion(outcome.duration_actual)

        node = self.graph.get_node(node_id)
        await self.store.update_task_status(node.record_id, NodeStatus.COMPLETED.value)
        for child_id in unblocked:
            child = self.graph.get_node(child_id)
            await self.store.update_task_status(child.record_id, NodeStatus.READY.value)

        logger.info(
            f"Sprint {node_id} completed by {worker_id} "
            f"({self.metrics.completed_sprints}/{self.metrics.total_sprints})"
        )
        self.hooks.emit(
            self.hooks.on_sprint_completed,
            SprintCompletedEvent(
                node_id=node_id,
                worker_id=worker_id,
                duration=outcome.duration_actual,
                deliverables=outcome.deliverables,
                unblocked=unblocked,
            ),
        )
        if unblocked:
            self.hooks.emit(
                self.hooks.on_tasks_unblocked,
                TasksUnblockedEvent(completed_id=node_id, node_ids=unblocked),
            )

        if self.graph.is_complete():
            self._complete_project()
        elif self.auto_allocate:
            self.allocate_ready_tasks()
        return unblocked

    async def on_task_failed(self, node_id: str, worker_id: str, error: BaseException | str) -> bool:
        """
        Process a failed attempt.

        The sprint goes back to ``ready`` while attempts remain; after
        ``max_retries`` attempts it is abandoned as ``failed`` and its
        downstream stays blocked.

        Returns:
            True if the sprint will be retried.

        Raises:
            InvalidTransitionError: If the sprint is not in progress. Nothing
                is recorded in that case.
        """
        node = self.graph.get_node(node_id)
        if node.status != NodeStatus.IN_PROGRESS:
            raise InvalidTransitionError(node_id, node.status.value, NodeStatus.FAILED.value)

        self.claims.release(worker_id, node_id)
        node.retry_count += 1

        self.pool.record_result(worker_id, False)
        self._release_worker(worker_id)
        self.metrics.failed_attempts += 1

        max_retries = self.settings.max_retries
        will_retry = node.retry_count < max_retries
        self.hooks.emit(
            self.hooks.on_sprint_failed,
            SprintFailedEvent(
                node_id=node_id,
                worker_id=worker_id,
                error=str(error),
                attempt=node.retry_count,
                will_retry=will_retry,
            ),
        )

        if will_retry:
            logger.warning(
                f"Sprint {node_id} failed (attempt {node.retry_count}/{max_retries}), "
                f"retrying: {error}"
            )
            self.graph.transition(node_id, NodeStatus.READY)
            await self.store.update_task_status(node.record_id, NodeStatus.READY.value)
        else:
            blocked = self.graph.descendants(node_id)
            logger.error(
                f"Sprint {node_id} abandoned after {node.retry_count} attempts: {error}"
                + (f" (blocking {', '.join(blocked)})" if blocked else "")
            )
            self.graph.transition(node_id, NodeStatus.FAILED)
            self.metrics.abandoned_sprints += 1
            await self.store.update_task_status(node.record_id, NodeStatus.FAILED.value)
            self.hooks.emit(
                self.hooks.on_sprint_abandoned,
                SprintAbandonedEvent(
                    node_id=node_id,
                    attempts=node.retry_count,
                    error=str(error),
                    blocked_descendants=blocked,
                ),
            )

        if self.auto_allocate:
            self.allocate_ready_tasks()
        return will_retry

    # =========================================================================
    # SETTLING
    # =========================================================================

    def _maybe_finish(self) -> None:
        if self.status != ProjectStatus.RUNNING or self._running or not self.auto_allocate:
            return
        self._settle()

    def _settle(self) -> None:
        if self.graph.is_complete():
            self._complete_project()
            return

        summary = self.graph.summary()
        self.status = ProjectStatus.FAILED if summary["failed"] else ProjectStatus.STALLED
        self._finalize_metrics()
        logger.warning(f"Project {self.status.value}: {summary}")
        self._finished.set()

    def _complete_project(self) -> None:
        self.status = ProjectStatus.COMPLETED
        self._finalize_metrics()
        logger.info(
            f"Project completed: {self.metrics.completed_sprints} sprints in "
            f"{self.elapsed_seconds:.2f}s "
            f"(efficiency {self.metrics.parallelization_efficiency:.0f}%)"
        )
        self.hooks.emit(
            self.hooks.on_project_completed,
            ProjectCompletedEvent(
                total_sprints=self.metrics.total_sprints,
                elapsed_seconds=self.elapsed_seconds,
                metrics=self.metrics.model_dump(),
            ),
        )
        self._finished.set()

    def _abort(self, error: InvariantError) -> None:
        logger.error(f"Scheduling invariant violated, stopping project: {error}")
        self._fatal_error = error
        self.status = ProjectStatus.FAILED
        self._finalize_metrics()
        self._finished.set()

    def _finalize_metrics(self) -> None:
        self._ended_at = time.monotonic()
        self.metrics.finalize(self.elapsed_seconds / self.settings.time_unit_seconds)

    # =========================================================================
    # REPORTING
    # =========================================================================

    @property
    def elapsed_seconds(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._ended_at if self._ended_at is not None else time.monotonic()
        return end - self._started_at

    def report(self) -> ProjectReport:
        """Current outcome of the project."""
        completed, abandoned, blocked = [], [], []
        for node in self.graph.nodes:
            if node.status == NodeStatus.COMPLETED:
                completed.append(node.id)
            elif node.status == NodeStatus.FAILED:
                abandoned.append(node.id)
            else:
                blocked.append(node.id)
        return ProjectReport(
            status=self.status,
            completed=sorted(completed),
            abandoned=sorted(abandoned),
            blocked=sorted(blocked),
            metrics=self.metrics.model_copy(),
            elapsed_seconds=self.elapsed_seconds,
        )

    def get_status(self) -> dict[str, Any]:
        """Snapshot of the run for monitoring."""
        return {
            "status": self.status.value,
            "nodes": self.graph.summary(),
            "running": sorted(self._running),
            "claims": self.claims.snapshot(),
            "critical_path": self.graph.critical_path,
            "workers": {w.id: w.status.value for w in self.pool.workers},
            "metrics": self.metrics.model_dump(),
            "elapsed_seconds": self.elapsed_seconds,
        }
