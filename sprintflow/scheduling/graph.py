"""Dependency graph - in-memory DAG of sprint nodes.

This module owns every structural invariant of a sprint plan: cycle
detection on insertion, incremental ``enables`` maintenance, node depth,
critical path computation, readiness tracking and parallel layering.
It also derives edges from the data types nodes produce and require, and
reports shared resources wanted by nodes that may run in parallel.
"""

import threading
from collections import defaultdict, deque
from collections.abc import Iterable
from typing import Any

from loguru import logger

from sprintflow.core.exceptions import (
    AlreadyCompletedError,
    CycleError,
    DanglingDependencyError,
    DependencyViolationError,
    DuplicateNodeError,
    GraphFrozenError,
    InvalidTransitionError,
    UnknownNodeError,
)
from sprintflow.scheduling.models import (
    ALLOWED_TRANSITIONS,
    Node,
    NodeStatus,
    ResourceConflict,
    SprintPlan,
    ValidationReport,
)

# Statuses that count as "scheduled" when building parallel layers
_LAYER_STATUSES = frozenset(
    {
        NodeStatus.READY,
        NodeStatus.CLAIMED,
        NodeStatus.IN_PROGRESS,
        NodeStatus.COMPLETED,
    }
)


class DependencyGraph:
    """
    Directed acyclic graph of sprint nodes.

    Every mutation and read runs under a re-entrant lock, so completion
    callbacks racing from several workers see a consistent graph.
    Once :meth:`freeze` has been called the structure is fixed and only
    node statuses move.

    Example:
        >>> graph = DependencyGraph()
        >>> graph.add_node("A")
        >>> graph.add_node("B", depends_on=["A"])
        >>> graph.add_node("C", depends_on=["A"])
        >>> graph.add_node("D", depends_on=["B", "C"])
        >>> graph.get_parallel_layers()
        [['A'], ['B', 'C'], ['D']]
        >>> graph.mark_completed("A")
        ['B', 'C']
    """

    def __init__(self, max_depth: int = 10, prioritize_critical_path: bool = True) -> None:
        """
        Initialize an empty graph.

        Args:
            max_depth: Depth above which a warning is logged.
            prioritize_critical_path: Order ready tasks on the critical
                path before all others.
        """
        self.max_depth = max_depth
        self.prioritize_critical_path = prioritize_critical_path

        self._nodes: dict[str, Node] = {}
        self._order: list[str] = []
        # Kept for ids that are referenced before they are added
        self._enables: dict[str, set[str]] = defaultdict(set)
        self._pending: dict[str, set[str]] = {}
        # Data type -> latest node producing it
        self._producers: dict[str, str] = {}
        self._lock = threading.RLock()
        self._frozen = False

        self._critical_path: list[str] = []
        self._critical_path_duration: float = 0.0

    # =========================================================================
    # CONSTRUCTION
    # =========================================================================

    def add_node(
        self,
        node_id: str,
        depends_on: Iterable[str] = (),
        **metadata: Any,
    ) -> Node:
        """
        Add a node to the graph.

        Dependencies may reference ids that are added later; such
        references are reported as dangling by :meth:`validate` until
        the target exists.

        Every data type in ``requires`` that an earlier node ``produces``
        adds an edge to that producer, under the same cycle guard.

        Args:
            node_id: Unique node identifier.
            depends_on: IDs this node waits for.
            **metadata: Extra :class:`Node` fields (title, sprint_type,
                estimated_duration, required_skills, priority, ...).

        Returns:
            The inserted node, ``ready`` when it has no dependencies and
            ``blocked`` otherwise.

        Raises:
            CycleError: If the insertion would create a cycle.
            DuplicateNodeError: If the id is already present.
            GraphFrozenError: If the graph has been frozen.
        """
        deps = set(depends_on)

        with self._lock:
            self._check_mutable()
            if node_id in self._nodes:
                raise DuplicateNodeError(node_id)

            node = Node(id=node_id, depends_on=deps, **metadata)
            knowledge = self._knowledge_sources(node)
            deps |= set(knowledge.values())
            node.depends_on = deps

            # Check before mutating so a rejected node leaves no trace
            for dep in sorted(deps):
                cycle = self._find_cycle(node_id, dep)
                if cycle:
                    logger.error(f"Rejected {node_id}: {' -> '.join(cycle)}")
                    raise CycleError(cycle)

            node.enables = self._enables[node_id]
            self._nodes[node_id] = node
            self._order.append(node_id)

            for dep in deps:
                self._enables[dep].add(node_id)

            self._pending[node_id] = {
                dep for dep in deps
                if dep not in self._nodes or self._nodes[dep].status != NodeStatus.COMPLETED
            }
            node.status = NodeStatus.BLOCKED if self._pending[node_id] else NodeStatus.READY

            try:
                self._refresh_depths(node_id)
                self._recompute_critical_path()
            except Exception:
                self._discard(node_id)
                raise

            for data_type, producer in sorted(knowledge.items()):
                logger.info(f"Knowledge dependency added: {node_id} requires {data_type} from {producer}")
            for data_type in node.produces:
                self._producers[data_type] = node_id

            logger.debug(
                f"Added node {node_id} (depth={node.depth}, deps={sorted(deps)}, "
                f"status={node.status.value})"
            )
            return node

    def add_dependency(self, node_id: str, depends_on_id: str) -> None:
        """
        Add a single edge ``node_id -> depends_on_id``.

        Raises:
            CycleError: If the edge would close a cycle.
            UnknownNodeError: If ``node_id`` is not in the graph.
            GraphFrozenError: If the graph has been frozen.
        """
        with self._lock:
            self._check_mutable()
            node = self._get(node_id)
            if depends_on_id in node.depends_on:
                return

            cycle = self._find_cycle(node_id, depends_on_id)
            if cycle:
                logger.error(f"Rejected edge {node_id} -> {depends_on_id}: {' -> '.join(cycle)}")
                raise CycleError(cycle)

            node.depends_on.add(depends_on_id)
            self._enables[depends_on_id].add(node_id)

            dep = self._nodes.get(depends_on_id)
            if node.status != NodeStatus.COMPLETED and (
                dep is None or dep.status != NodeStatus.COMPLETED
            ):
                self._pending[node_id].add(depends_on_id)
                if node.status == NodeStatus.READY:
                    node.status = NodeStatus.BLOCKED

            self._refresh_depths(node_id)
            self._recompute_critical_path()

    def freeze(self) -> None:
        """Fix the graph structure; later add_node/add_dependency calls fail."""
        with self._lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _check_mutable(self) -> None:
        if self._frozen:
            raise GraphFrozenError("Graph structure is frozen after validation")

    def _find_cycle(self, node_id: str, dep: str) -> list[str] | None:
        """Return the cycle that edge ``node_id -> dep`` would close, if any."""
        if dep == node_id:
            return [node_id, node_id]

        # Iterative DFS along depends_on; parents rebuild the path on a hit
        parent: dict[str, str | None] = {dep: None}
        stack: list[str] = [dep]
        while stack:
            current = stack.pop()
            if current == node_id:
                path: list[str] = []
                walk: str | None = current
                while walk is not None:
                    path.append(walk)
                    walk = parent[walk]
                return [node_id, *reversed(path)]
            existing = self._nodes.get(current)
            if existing is None:
                continue
            for nxt in sorted(existing.depends_on, reverse=True):
                if nxt not in parent:
                    parent[nxt] = current
                    stack.append(nxt)
        return None

    def _knowledge_sources(self, node: Node) -> dict[str, str]:
        """Map each required data type to the registered node producing it."""
        sources: dict[str, str] = {}
        for data_type in sorted(node.requires):
            producer = self._producers.get(data_type)
            if producer is not None:
                sources[data_type] = producer
        return sources

    def _discard(self, node_id: str) -> None:
        """Undo a partially applied insertion."""
        node = self._nodes.pop(node_id)
        self._order.remove(node_id)
        self._pending.pop(node_id, None)
        for dep in node.depends_on:
            self._enables[dep].discard(node_id)
        for child in sorted(self._enables.get(node_id, set())):
            if child in self._nodes:
                self._refresh_depths(child)

    def _refresh_depths(self, start: str) -> None:
        """Recompute depth for ``start`` and everything downstream of it."""
        queue: deque[str] = deque([start])
        while queue:
            current = queue.popleft()
            node = self._nodes.get(current)
            if node is None:
                continue
            known = [self._nodes[d].depth for d in node.depends_on if d in self._nodes]
            depth = 1 + max(known) if known else 0
            if depth != node.depth or current == start:
                node.depth = depth
                if depth > self.max_depth:
                    logger.warning(f"Node {current} depth {depth} exceeds max depth {self.max_depth}")
                queue.extend(sorted(self._enables[current]))

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_node(self, node_id: str) -> Node:
        """Get a node by id.

        Raises:
            UnknownNodeError: If the node does not exist.
        """
        with self._lock:
            return self._get(node_id)

    def _get(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None:
            raise UnknownNodeError(node_id)
        return node

    @property
    def nodes(self) -> list[Node]:
        """All nodes in insertion order."""
        with self._lock:
            return [self._nodes[nid] for nid in self._order]

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def can_execute(self, node_id: str) -> bool:
        """True when every dependency of the node is completed."""
        with self._lock:
            node = self._get(node_id)
            return all(
                dep in self._nodes and self._nodes[dep].status == NodeStatus.COMPLETED
                for dep in node.depends_on
            )

    def pending_dependencies(self, node_id: str) -> list[str]:
        """Dependencies of the node that are not yet completed."""
        with self._lock:
            self._get(node_id)
            return sorted(self._pending.get(node_id, set()))

    def get_ready_tasks(self) -> list[Node]:
        """
        Get all ``ready`` nodes in allocation order.

        Order: critical-path members first (unless disabled), then
        ascending depth, then descending priority, then id.
        """
        with self._lock:
            critical = set(self._critical_path) if self.prioritize_critical_path else set()
            ready = [n for n in self._nodes.values() if n.status == NodeStatus.READY]
            ready.sort(key=lambda n: (n.id not in critical, n.depth, -n.priority, n.id))
            return ready

    def get_parallel_layers(self) -> list[list[str]]:
        """
        Group nodes into the current wavefront of executable layers.

        Nodes are bucketed by depth. A node is included when it is ready,
        claimed, in progress or completed, or when it is blocked but every
        dependency is included in a strictly earlier layer. Failed nodes,
        their downstream subgraph and nodes waiting on unknown ids are left
        out.

        Returns:
            List of layers, each a sorted list of node ids.
        """
        with self._lock:
            by_depth: dict[int, list[Node]] = defaultdict(list)
            for node in self._nodes.values():
                by_depth[node.depth].append(node)

            included: dict[str, int] = {}
            layers: list[list[str]] = []
            for depth in sorted(by_depth):
                layer: list[str] = []
                for node in by_depth[depth]:
                    if node.status in _LAYER_STATUSES or (
                        node.status == NodeStatus.BLOCKED
                        and all(included.get(d, depth) < depth for d in node.depends_on)
                    ):
                        layer.append(node.id)
                if layer:
                    layer.sort()
                    for nid in layer:
                        included[nid] = depth
                    layers.append(layer)
            return layers

    @property
    def critical_path(self) -> list[str]:
        """Longest duration-weighted path through the remaining work."""
        with self._lock:
            return list(self._critical_path)

    @property
    def critical_path_duration(self) -> float:
        with self._lock:
            return self._critical_path_duration

    def dependents(self, node_id: str) -> list[str]:
        """Direct dependents of a node."""
        with self._lock:
            return sorted(self._enables.get(node_id, set()))

    def descendants(self, node_id: str) -> list[str]:
        """Every node transitively waiting on ``node_id``."""
        with self._lock:
            seen: set[str] = set()
            queue: deque[str] = deque(self._enables.get(node_id, set()))
            while queue:
                current = queue.popleft()
                if current in seen or current not in self._nodes:
                    continue
                seen.add(current)
                queue.extend(self._enables.get(current, set()))
            return sorted(seen)

    def ancestors(self, node_id: str) -> set[str]:
        """Every node ``node_id`` transitively depends on."""
        with self._lock:
            seen: set[str] = set()
            stack = list(self._get(node_id).depends_on)
            while stack:
                current = stack.pop()
                if current in seen:
                    continue
                seen.add(current)
                if current in self._nodes:
                    stack.extend(self._nodes[current].depends_on)
            return seen

    def can_run_in_parallel(self, first: str, second: str) -> bool:
        """True when neither node depends on the other, directly or transitively."""
        with self._lock:
            return first not in self.ancestors(second) and second not in self.ancestors(first)

    def resource_conflicts(self) -> list[ResourceConflict]:
        """
        Find resources wanted by nodes that may run at the same time.

        Two nodes contend for a resource when both list it in
        ``resource_requirements`` and neither is an ancestor of the other.

        Returns:
            One ResourceConflict per contended resource, sorted by name.
        """
        with self._lock:
            usage: dict[str, list[str]] = defaultdict(list)
            for nid in self._order:
                for resource in self._nodes[nid].resource_requirements:
                    usage[resource].append(nid)

            involved = {nid for users in usage.values() for nid in users}
            lineage = {nid: self.ancestors(nid) for nid in involved}

            conflicts: list[ResourceConflict] = []
            for resource in sorted(usage):
                users = usage[resource]
                contending: set[str] = set()
                for i, first in enumerate(users):
                    for second in users[i + 1:]:
                        if first not in lineage[second] and second not in lineage[first]:
                            contending.update((first, second))
                if contending:
                    conflicts.append(
                        ResourceConflict(resource=resource, node_ids=sorted(contending))
                    )
            return conflicts

    def check_references(self) -> None:
        """
        Raise for the first node, in insertion order, that depends on an unknown id.

        Raises:
            DanglingDependencyError: If a dependency was never added.
        """
        with self._lock:
            for nid in self._order:
                missing = sorted(d for d in self._nodes[nid].depends_on if d not in self._nodes)
                if missing:
                    raise DanglingDependencyError(nid, missing)

    def topological_order(self) -> list[str]:
        """
        Kahn ordering of the nodes, ties broken by id.

        Dependencies on unknown ids are ignored.
        """
        with self._lock:
            in_degree = {
                nid: sum(1 for d in node.depends_on if d in self._nodes)
                for nid, node in self._nodes.items()
            }
            ready = sorted(nid for nid, deg in in_degree.items() if deg == 0)
            queue: deque[str] = deque(ready)
            order: list[str] = []
            while queue:
                current = queue.popleft()
                order.append(current)
                for child in sorted(self._enables.get(current, set())):
                    if child not in in_degree:
                        continue
                    in_degree[child] -= 1
                    if in_degree[child] == 0:
                        queue.append(child)
            return order

    def is_complete(self) -> bool:
        """True when every node is completed (an empty graph is complete)."""
        with self._lock:
            return all(n.status == NodeStatus.COMPLETED for n in self._nodes.values())

    def summary(self) -> dict[str, int]:
        """Node count per status."""
        with self._lock:
            counts = {status.value: 0 for status in NodeStatus}
            for node in self._nodes.values():
                counts[node.status.value] += 1
            return counts

    # =========================================================================
    # STATUS CHANGES
    # =========================================================================

    def mark_completed(self, node_id: str) -> list[str]:
        """
        Mark a node completed and unblock its dependents.

        Unblock propagation and critical path recomputation both finish
        before this returns.

        Args:
            node_id: Node to complete.

        Returns:
            Sorted ids of dependents that became ``ready``.

        Raises:
            AlreadyCompletedError: If the node is already completed.
            DependencyViolationError: If a prerequisite is not completed.
            InvalidTransitionError: If the node failed permanently.
        """
        with self._lock:
            node = self._get(node_id)
            if node.status == NodeStatus.COMPLETED:
                raise AlreadyCompletedError(node_id)
            if node.status == NodeStatus.FAILED:
                raise InvalidTransitionError(node_id, node.status.value, NodeStatus.COMPLETED.value)
            pending = sorted(self._pending.get(node_id, set()))
            if pending:
                raise DependencyViolationError(node_id, pending)

            node.status = NodeStatus.COMPLETED

            unblocked: list[str] = []
            for child_id in sorted(self._enables.get(node_id, set())):
                child = self._nodes.get(child_id)
                if child is None:
                    continue
                blockers = self._pending[child_id]
                blockers.discard(node_id)
                if not blockers and child.status in (NodeStatus.BLOCKED, NodeStatus.BACKLOG):
                    child.status = NodeStatus.READY
                    unblocked.append(child_id)

            self._recompute_critical_path()

            if unblocked:
                logger.info(f"Completing {node_id} unblocked: {', '.join(unblocked)}")
            return unblocked

    def transition(self, node_id: str, status: NodeStatus) -> Node:
        """
        Move a node to a new status following the state machine.

        Completion must go through :meth:`mark_completed`. A node only
        becomes ``ready`` when its dependencies are completed.

        Raises:
            InvalidTransitionError: If the move is not permitted.
        """
        with self._lock:
            node = self._get(node_id)
            if status == NodeStatus.COMPLETED:
                raise InvalidTransitionError(node_id, node.status.value, status.value)
            if status not in ALLOWED_TRANSITIONS[node.status]:
                raise InvalidTransitionError(node_id, node.status.value, status.value)
            if status == NodeStatus.READY and self._pending.get(node_id):
                raise InvalidTransitionError(node_id, node.status.value, status.value)
            node.status = status
            return node

    def refresh_ready(self) -> list[str]:
        """Promote blocked nodes whose dependencies are all completed."""
        with self._lock:
            promoted: list[str] = []
            for nid in self._order:
                node = self._nodes[nid]
                if node.status in (NodeStatus.BLOCKED, NodeStatus.BACKLOG) and not self._pending[nid]:
                    node.status = NodeStatus.READY
                    promoted.append(nid)
            return sorted(promoted)

    # =========================================================================
    # CRITICAL PATH
    # =========================================================================

    def _recompute_critical_path(self) -> None:
        """Longest path by summed duration over non-completed nodes.

        One pass over the topological order in reverse, O(V+E). Candidate
        paths differ in their first id, so taking the smaller id among
        equal durations yields the lexicographically smaller id sequence.
        """
        remaining = {
            nid: node for nid, node in self._nodes.items()
            if node.status != NodeStatus.COMPLETED
        }
        longest: dict[str, float] = {}
        next_hop: dict[str, str | None] = {}

        for nid in reversed(self.topological_order()):
            if nid not in remaining:
                continue
            best_child: str | None = None
            tail = 0.0
            for child in sorted(self._enables.get(nid, set())):
                if child not in remaining:
                    continue
                if best_child is None or longest[child] > tail:
                    best_child, tail = child, longest[child]
            longest[nid] = remaining[nid].estimated_duration + tail
            next_hop[nid] = best_child

        start: str | None = None
        total = 0.0
        for root in sorted(longest):
            if any(d in remaining for d in remaining[root].depends_on):
                continue
            if start is None or longest[root] > total:
                start, total = root, longest[root]

        path: list[str] = []
        while start is not None:
            path.append(start)
            start = next_hop[start]

        self._critical_path = path
        self._critical_path_duration = total

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate(self) -> ValidationReport:
        """
        Validate the whole graph.

        Errors: cycles, dangling dependency references.
        Warnings: depth above ``max_depth``, orphaned nodes, resources
        contended by nodes that may run in parallel.

        Returns:
            ValidationReport; the orchestrator refuses to start when
            ``valid`` is False.
        """
        with self._lock:
            report = ValidationReport()

            cycle = self._detect_cycle()
            if cycle:
                report.add_error(f"Circular dependency detected: {' -> '.join(cycle)}")

            for nid in self._order:
                node = self._nodes[nid]
                missing = sorted(d for d in node.depends_on if d not in self._nodes)
                if missing:
                    report.add_error(str(DanglingDependencyError(nid, missing)))
                if node.depth > self.max_depth:
                    report.add_warning(
                        f"Node {nid} depth {node.depth} exceeds max depth {self.max_depth}"
                    )
                if (
                    len(self._nodes) > 1
                    and not node.depends_on
                    and not any(c in self._nodes for c in self._enables.get(nid, set()))
                ):
                    report.add_warning(f"Node {nid} is orphaned (no dependencies or dependents)")

            for conflict in self.resource_conflicts():
                report.add_warning(
                    f"Resource {conflict.resource} may be used concurrently by: "
                    f"{', '.join(conflict.node_ids)}"
                )

            logger.info(
                f"Validated graph of {len(self._nodes)} nodes: "
                f"{len(report.errors)} errors, {len(report.warnings)} warnings"
            )
            return report

    def _detect_cycle(self) -> list[str] | None:
        """Global DFS with white/gray/black colouring."""
        WHITE, GRAY, BLACK = 0, 1, 2
        colors: dict[str, int] = {nid: WHITE for nid in self._nodes}

        for root in self._order:
            if colors[root] != WHITE:
                continue
            path: list[str] = []
            stack: list[tuple[str, Iterable[str]]] = [
                (root, iter(sorted(self._nodes[root].depends_on)))
            ]
            colors[root] = GRAY
            path.append(root)
            while stack:
                current, children = stack[-1]
                advanced = False
                for child in children:
                    if child not in colors:
                        continue
                    if colors[child] == GRAY:
                        start = path.index(child)
                        return [*path[start:], child]
                    if colors[child] == WHITE:
                        colors[child] = GRAY
                        path.append(child)
                        stack.append((child, iter(sorted(self._nodes[child].depends_on))))
                        advanced = True
                        break
                if not advanced:
                    colors[current] = BLACK
                    path.pop()
                    stack.pop()
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        with self._lock:
            return {
                "nodes": {nid: self._nodes[nid].to_dict() for nid in self._order},
                "critical_path": list(self._critical_path),
                "critical_path_duration": self._critical_path_duration,
                "layers": self.get_parallel_layers(),
            }


SprintPlan.model_rebuild()
