"""Exception hierarchy for sprintflow.

Errors fall into four families:
- structural errors, raised while a plan or graph is being built;
- allocation races, expected under concurrency and skipped by callers;
- execution failures, retried by the orchestrator up to a bound;
- invariant violations, which point at a caller bug and are raised loudly.
"""


class SprintFlowError(Exception):
    """Base exception for sprintflow errors."""

    pass


# =============================================================================
# STRUCTURAL ERRORS
# =============================================================================


class GraphError(SprintFlowError):
    """Dependency graph could not be built as requested."""

    pass


class CycleError(GraphError):
    """Inserting a node or edge would create a dependency cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class DanglingDependencyError(GraphError):
    """A node depends on an id that is not part of the graph."""

    def __init__(self, node_id: str, missing: list[str]) -> None:
        self.node_id = node_id
        self.missing = missing
        super().__init__(f"Node {node_id} depends on unknown nodes: {', '.join(missing)}")


class DuplicateNodeError(GraphError):
    """A node with the same id already exists."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node {node_id} already exists")


class UnknownNodeError(GraphError):
    """Lookup of a node id that is not in the graph."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Unknown node: {node_id}")


class GraphFrozenError(GraphError):
    """Structure of a validated graph cannot change."""

    pass


class PlanTooLargeError(SprintFlowError):
    """Decomposition would exceed the per-project sprint limit."""

    def __init__(self, sprint_count: int, limit: int) -> None:
        self.sprint_count = sprint_count
        self.limit = limit
        super().__init__(f"Too many sprints: {sprint_count} > {limit}")


class InvalidPlanError(SprintFlowError):
    """Sprint plan or graph failed validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(f"Sprint plan validation failed: {'; '.join(errors)}")


# =============================================================================
# ALLOCATION
# =============================================================================


class ClaimError(SprintFlowError):
    """A claim could not be recorded."""

    pass


class AlreadyClaimedError(ClaimError):
    """Node is owned by another worker."""

    def __init__(self, node_id: str, current_owner: str) -> None:
        self.node_id = node_id
        self.current_owner = current_owner
        super().__init__(f"Node {node_id} already claimed by {current_owner}")


class WorkerBusyError(ClaimError):
    """Worker already owns a different node."""

    def __init__(self, worker_id: str, current_node: str) -> None:
        self.worker_id = worker_id
        self.current_node = current_node
        super().__init__(f"Worker {worker_id} already owns {current_node}")


class UnknownWorkerError(SprintFlowError):
    """Lookup of a worker id that was never registered."""

    def __init__(self, worker_id: str) -> None:
        self.worker_id = worker_id
        super().__init__(f"Unknown worker: {worker_id}")


class NoWorkersAvailableError(SprintFlowError):
    """No online worker exists to run a node."""

    pass


# =============================================================================
# EXECUTION FAILURES
# =============================================================================


class ExecutionError(SprintFlowError):
    """Worker-reported failure of a sprint."""

    pass


class SprintTimeoutError(ExecutionError):
    """Sprint exceeded its allotted time."""

    def __init__(self, node_id: str, timeout_seconds: float) -> None:
        self.node_id = node_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Sprint {node_id} timed out after {timeout_seconds:.2f}s")


class AcceptanceError(ExecutionError):
    """Sprint finished without meeting enough acceptance criteria."""

    def __init__(self, node_id: str, ratio: float, threshold: float) -> None:
        self.node_id = node_id
        self.ratio = ratio
        self.threshold = threshold
        super().__init__(
            f"Sprint {node_id} met {ratio:.0%} of acceptance criteria "
            f"(required {threshold:.0%})"
        )


# =============================================================================
# INVARIANT VIOLATIONS
# =============================================================================


class InvariantError(SprintFlowError):
    """Scheduling invariant broken by a caller or a locking race."""

    pass


class AlreadyCompletedError(InvariantError):
    """Node was marked completed twice."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node {node_id} is already completed")


class DependencyViolationError(InvariantError):
    """Node completed before all of its prerequisites."""

    def __init__(self, node_id: str, pending: list[str]) -> None:
        self.node_id = node_id
        self.pending = pending
        super().__init__(
            f"Node {node_id} cannot complete, prerequisites pending: {', '.join(pending)}"
        )


class InvalidTransitionError(InvariantError):
    """Status change not permitted by the node state machine."""

    def __init__(self, node_id: str, current: str, requested: str) -> None:
        self.node_id = node_id
        self.current = current
        self.requested = requested
        super().__init__(f"Node {node_id} cannot move from {current} to {requested}")
