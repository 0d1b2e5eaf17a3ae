"""Unit tests for the dependency graph."""

import random

import pytest

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
from sprintflow.scheduling.graph import DependencyGraph
from sprintflow.scheduling.models import NodeStatus, SprintType

pytestmark = pytest.mark.unit


def _fail(graph: DependencyGraph, node_id: str) -> None:
    graph.transition(node_id, NodeStatus.CLAIMED)
    graph.transition(node_id, NodeStatus.IN_PROGRESS)
    graph.transition(node_id, NodeStatus.FAILED)


# =============================================================================
# CONSTRUCTION
# =============================================================================


class TestAddNode:
    """Tests for node insertion."""

    def test_root_node_is_ready(self) -> None:
        """Test a node without dependencies starts ready at depth 0."""
        graph = DependencyGraph()
        node = graph.add_node("A", title="Analyse", sprint_type=SprintType.ANALYSIS)

        assert node.status == NodeStatus.READY
        assert node.depth == 0
        assert node.title == "Analyse"
        assert "A" in graph
        assert len(graph) == 1

    def test_dependent_node_is_blocked(self, diamond_graph: DependencyGraph) -> None:
        """Test nodes with pending dependencies start blocked."""
        assert diamond_graph.get_node("B").status == NodeStatus.BLOCKED
        assert diamond_graph.get_node("D").status == NodeStatus.BLOCKED

    def test_depths(self, diamond_graph: DependencyGraph) -> None:
        """Test depth is one more than the deepest dependency."""
        depths = {n.id: n.depth for n in diamond_graph.nodes}

        assert depths == {"A": 0, "B": 1, "C": 1, "D": 2}

    def test_enables_maintained(self, diamond_graph: DependencyGraph) -> None:
        """Test reverse edges are kept in sync with depends_on."""
        assert diamond_graph.get_node("A").enables == {"B", "C"}
        assert diamond_graph.get_node("B").enables == {"D"}
        assert diamond_graph.get_node("D").enables == set()

    def test_forward_reference_updates_depth(self) -> None:
        """Test adding a dependency after its dependent fixes depths."""
        graph = DependencyGraph()
        graph.add_node("B", depends_on=["A"])
        assert graph.get_node("B").depth == 0

        graph.add_node("A")

        assert graph.get_node("B").depth == 1
        assert graph.get_node("A").enables == {"B"}
        assert graph.get_node("B").status == NodeStatus.BLOCKED

    def test_duplicate_node_rejected(self, diamond_graph: DependencyGraph) -> None:
        """Test node ids are unique."""
        with pytest.raises(DuplicateNodeError):
            diamond_graph.add_node("A")

    def test_self_dependency_rejected(self) -> None:
        """Test a node depending on itself is a cycle and leaves no trace."""
        graph = DependencyGraph()

        with pytest.raises(CycleError) as exc_info:
            graph.add_node("X", depends_on=["X"])

        assert exc_info.value.cycle == ["X", "X"]
        assert "X" not in graph

    def test_cycle_through_forward_reference_rejected(self) -> None:
        """Test a node closing a loop with an earlier forward reference."""
        graph = DependencyGraph()
        graph.add_node("A", depends_on=["Z"])

        with pytest.raises(CycleError) as exc_info:
            graph.add_node("Z", depends_on=["A"])

        assert exc_info.value.cycle == ["Z", "A", "Z"]
        assert "Z" not in graph
        assert graph.get_node("A").enables == set()

    def test_edge_creating_cycle_rejected(self, diamond_graph: DependencyGraph) -> None:
        """Test making A depend on D fails with CycleError."""
        with pytest.raises(CycleError) as exc_info:
            diamond_graph.add_dependency("A", "D")

        cycle = exc_info.value.cycle
        assert cycle[0] == "A"
        assert cycle[-1] == "A"
        assert "D" in cycle
        assert diamond_graph.get_node("A").depends_on == set()
        assert diamond_graph.validate().valid

    def test_add_dependency_blocks_ready_node(self, diamond_graph: DependencyGraph) -> None:
        """Test a new edge to an unfinished node blocks a ready node."""
        diamond_graph.add_node("E")
        diamond_graph.add_dependency("E", "D")

        node = diamond_graph.get_node("E")
        assert node.status == NodeStatus.BLOCKED
        assert node.depth == 3
        assert diamond_graph.pending_dependencies("E") == ["D"]

    def test_frozen_graph_rejects_changes(self, diamond_graph: DependencyGraph) -> None:
        """Test structure cannot change after freezing."""
        diamond_graph.freeze()

        assert diamond_graph.frozen
        with pytest.raises(GraphFrozenError):
            diamond_graph.add_node("E")
        with pytest.raises(GraphFrozenError):
            diamond_graph.add_dependency("D", "A")

    def test_unknown_node(self, diamond_graph: DependencyGraph) -> None:
        """Test looking up a missing id."""
        with pytest.raises(UnknownNodeError):
            diamond_graph.get_node("missing")


# =============================================================================
# QUERIES
# =============================================================================


class TestQueries:
    """Tests for readiness, layering and ordering queries."""

    def test_parallel_layers(self, diamond_graph: DependencyGraph) -> None:
        """Test the diamond layers as A, then B and C, then D."""
        assert diamond_graph.get_parallel_layers() == [["A"], ["B", "C"], ["D"]]

    def test_parallel_layers_keep_completed_nodes(self, diamond_graph: DependencyGraph) -> None:
        """Test layering is stable as work completes."""
        diamond_graph.mark_completed("A")

        assert diamond_graph.get_parallel_layers() == [["A"], ["B", "C"], ["D"]]

    def test_parallel_layers_skip_failed_subgraph(self, diamond_graph: DependencyGraph) -> None:
        """Test a failed node and everything below it are left out."""
        diamond_graph.mark_completed("A")
        _fail(diamond_graph, "B")

        assert diamond_graph.get_parallel_layers() == [["A"], ["C"]]

    def test_parallel_layers_skip_dangling(self) -> None:
        """Test nodes waiting on unknown ids are never scheduled."""
        graph = DependencyGraph()
        graph.add_node("A")
        graph.add_node("X", depends_on=["ghost"])

        assert graph.get_parallel_layers() == [["A"]]

    def test_layers_respect_dependencies(self, diamond_graph: DependencyGraph) -> None:
        """Test every node sits in a later layer than its dependencies."""
        diamond_graph.add_node("E", depends_on=["A", "D"])
        layers = diamond_graph.get_parallel_layers()
        position = {nid: i for i, layer in enumerate(layers) for nid in layer}

        for node in diamond_graph.nodes:
            for dep in node.depends_on:
                assert position[dep] < position[node.id]

    def test_ready_tasks(self, diamond_graph: DependencyGraph) -> None:
        """Test only A is ready initially."""
        assert [n.id for n in diamond_graph.get_ready_tasks()] == ["A"]

    def test_ready_tasks_critical_path_first(self) -> None:
        """Test critical path members are offered before higher priority work."""
        graph = DependencyGraph()
        graph.add_node("X", estimated_duration=1, priority=5)
        graph.add_node("Y", estimated_duration=1)
        graph.add_node("Z", depends_on=["Y"], estimated_duration=10)

        assert [n.id for n in graph.get_ready_tasks()] == ["Y", "X"]

    def test_ready_tasks_priority_mode(self) -> None:
        """Test priority ordering when critical path preference is off."""
        graph = DependencyGraph(prioritize_critical_path=False)
        graph.add_node("X", estimated_duration=1, priority=5)
        graph.add_node("Y", estimated_duration=1)
        graph.add_node("Z", depends_on=["Y"], estimated_duration=10)

        assert [n.id for n in graph.get_ready_tasks()] == ["X", "Y"]

    def test_can_execute(self, diamond_graph: DependencyGraph) -> None:
        """Test execution is allowed once all dependencies completed."""
        assert diamond_graph.can_execute("A")
        assert not diamond_graph.can_execute("B")

        diamond_graph.mark_completed("A")

        assert diamond_graph.can_execute("B")
        assert not diamond_graph.can_execute("D")

    def test_topological_order(self, diamond_graph: DependencyGraph) -> None:
        """Test Kahn ordering with id tie-break."""
        assert diamond_graph.topological_order() == ["A", "B", "C", "D"]

    def test_descendants_and_dependents(self, diamond_graph: DependencyGraph) -> None:
        """Test direct and transitive downstream lookups."""
        assert diamond_graph.dependents("A") == ["B", "C"]
        assert diamond_graph.descendants("A") == ["B", "C", "D"]
        assert diamond_graph.descendants("D") == []

    def test_summary(self, diamond_graph: DependencyGraph) -> None:
        """Test per-status counts."""
        summary = diamond_graph.summary()

        assert summary["ready"] == 1
        assert summary["blocked"] == 3
        assert summary["completed"] == 0

    def test_empty_graph_is_complete(self) -> None:
        """Test an empty graph has nothing left to do."""
        graph = DependencyGraph()

        assert graph.is_complete()
        assert graph.critical_path == []
        assert graph.get_parallel_layers() == []

    def test_to_dict(self, diamond_graph: DependencyGraph) -> None:
        """Test serialization."""
        data = diamond_graph.to_dict()

        assert list(data["nodes"]) == ["A", "B", "C", "D"]
        assert data["nodes"]["D"]["depends_on"] == ["B", "C"]
        assert data["critical_path"] == ["A", "B", "D"]
        assert data["layers"] == [["A"], ["B", "C"], ["D"]]


# =============================================================================
# CRITICAL PATH
# =============================================================================


class TestCriticalPath:
    """Tests for critical path computation."""

    def test_longest_path(self, diamond_graph: DependencyGraph) -> None:
        """Test the duration-weighted longest path is A, B, D."""
        assert diamond_graph.critical_path == ["A", "B", "D"]
        assert diamond_graph.critical_path_duration == 17

    def test_recomputed_after_completion(self, diamond_graph: DependencyGraph) -> None:
        """Test completed work drops out of the path."""
        diamond_graph.mark_completed("A")

        assert diamond_graph.critical_path == ["B", "D"]
        assert diamond_graph.critical_path_duration == 12

    def test_path_follows_edges(self) -> None:
        """Test consecutive path entries are connected by dependencies."""
        graph = DependencyGraph()
        graph.add_node("a", estimated_duration=3)
        graph.add_node("b", estimated_duration=2)
        graph.add_node("c", depends_on=["a"], estimated_duration=4)
        graph.add_node("d", depends_on=["a", "b"], estimated_duration=9)
        graph.add_node("e", depends_on=["c", "d"], estimated_duration=1)
        graph.add_node("f", depends_on=["b"], estimated_duration=1)

        path = graph.critical_path
        for earlier, later in zip(path, path[1:]):
            assert earlier in graph.get_node(later).depends_on
        assert path == ["a", "d", "e"]
        assert graph.critical_path_duration == 13

    def test_ties_resolve_by_id(self) -> None:
        """Test equal length paths pick the lexicographically smaller one."""
        graph = DependencyGraph()
        graph.add_node("root", estimated_duration=1)
        graph.add_node("y", depends_on=["root"], estimated_duration=5)
        graph.add_node("x", depends_on=["root"], estimated_duration=5)

        assert graph.critical_path == ["root", "x"]


# =============================================================================
# STATUS CHANGES
# =============================================================================


class TestStatusChanges:
    """Tests for completion and the status state machine."""

    def test_mark_completed_unblocks(self, diamond_graph: DependencyGraph) -> None:
        """Test completing A unblocks B and C."""
        unblocked = diamond_graph.mark_completed("A")

        assert unblocked == ["B", "C"]
        assert diamond_graph.get_node("B").status == NodeStatus.READY
        assert diamond_graph.get_node("C").status == NodeStatus.READY
        assert diamond_graph.get_node("D").status == NodeStatus.BLOCKED

    def test_join_unblocks_after_last_dependency(self, diamond_graph: DependencyGraph) -> None:
        """Test D becomes ready only after both B and C complete."""
        diamond_graph.mark_completed("A")

        assert diamond_graph.mark_completed("B") == []
        assert diamond_graph.mark_completed("C") == ["D"]
        assert diamond_graph.mark_completed("D") == []
        assert diamond_graph.is_complete()

    def test_mark_completed_twice(self, diamond_graph: DependencyGraph) -> None:
        """Test completion is not repeatable."""
        diamond_graph.mark_completed("A")

        with pytest.raises(AlreadyCompletedError):
            diamond_graph.mark_completed("A")
        assert diamond_graph.get_node("B").status == NodeStatus.READY

    def test_mark_completed_with_pending_dependencies(
        self, diamond_graph: DependencyGraph
    ) -> None:
        """Test a node cannot complete before its prerequisites."""
        with pytest.raises(DependencyViolationError) as exc_info:
            diamond_graph.mark_completed("D")

        assert exc_info.value.pending == ["B", "C"]
        assert diamond_graph.get_node("D").status == NodeStatus.BLOCKED

    def test_failed_node_cannot_complete(self, diamond_graph: DependencyGraph) -> None:
        """Test an abandoned node stays failed."""
        _fail(diamond_graph, "A")

        with pytest.raises(InvalidTransitionError):
            diamond_graph.mark_completed("A")

    def test_transition_follows_state_machine(self, diamond_graph: DependencyGraph) -> None:
        """Test permitted and forbidden transitions."""
        diamond_graph.transition("A", NodeStatus.CLAIMED)

        with pytest.raises(InvalidTransitionError):
            diamond_graph.transition("A", NodeStatus.FAILED)
        with pytest.raises(InvalidTransitionError):
            diamond_graph.transition("A", NodeStatus.COMPLETED)

        node = diamond_graph.transition("A", NodeStatus.IN_PROGRESS)
        assert node.status == NodeStatus.IN_PROGRESS

    def test_ready_requires_completed_dependencies(
        self, diamond_graph: DependencyGraph
    ) -> None:
        """Test a blocked node cannot be forced ready."""
        with pytest.raises(InvalidTransitionError):
            diamond_graph.transition("B", NodeStatus.READY)

    def test_refresh_ready(self, diamond_graph: DependencyGraph) -> None:
        """Test blocked nodes with finished dependencies are promoted."""
        diamond_graph.mark_completed("A")
        diamond_graph.transition("B", NodeStatus.CLAIMED)
        diamond_graph.transition("B", NodeStatus.BLOCKED)

        assert diamond_graph.refresh_ready() == ["B"]
        assert diamond_graph.get_node("B").status == NodeStatus.READY


# =============================================================================
# VALIDATION
# =============================================================================


class TestValidate:
    """Tests for whole-graph validation."""

    def test_valid_graph(self, diamond_graph: DependencyGraph) -> None:
        """Test the diamond has no errors or warnings."""
        report = diamond_graph.validate()

        assert report.valid
        assert report.errors == []
        assert report.warnings == []

    def test_dangling_reference(self) -> None:
        """Test references to unknown ids are errors."""
        graph = DependencyGraph()
        graph.add_node("A", depends_on=["ghost"])

        report = graph.validate()

        assert not report.valid
        assert "A depends on unknown nodes: ghost" in report.errors[0]

    def test_orphan_warning(self, diamond_graph: DependencyGraph) -> None:
        """Test isolated nodes are reported as warnings."""
        diamond_graph.add_node("Z")

        report = diamond_graph.validate()

        assert report.valid
        assert any("Z is orphaned" in w for w in report.warnings)

    def test_depth_warning(self) -> None:
        """Test chains deeper than max_depth are reported."""
        graph = DependencyGraph(max_depth=2)
        graph.add_node("n0")
        for i in range(1, 4):
            graph.add_node(f"n{i}", depends_on=[f"n{i - 1}"])

        report = graph.validate()

        assert report.valid
        assert any("n3 depth 3 exceeds max depth 2" in w for w in report.warnings)

    def test_dangling_reference_raises(self) -> None:
        """Test check_references names the first node with unknown dependencies."""
        graph = DependencyGraph()
        graph.add_node("A")
        graph.add_node("B", depends_on=["A", "ghost", "phantom"])

        with pytest.raises(DanglingDependencyError) as exc_info:
            graph.check_references()

        assert exc_info.value.node_id == "B"
        assert exc_info.value.missing == ["ghost", "phantom"]

    def test_check_references_passes_once_added(self) -> None:
        """Test forward references stop dangling once the target exists."""
        graph = DependencyGraph()
        graph.add_node("B", depends_on=["A"])
        graph.add_node("A")

        graph.check_references()
        assert graph.validate().valid


# =============================================================================
# DEEP AND RANDOM GRAPHS
# =============================================================================


class TestDeepGraphs:
    """Tests for long chains and randomly built graphs."""

    def test_long_chain(self) -> None:
        """Test a chain far deeper than the interpreter stack is handled."""
        graph = DependencyGraph(max_depth=5000)
        graph.add_node("n0000", estimated_duration=1)
        for i in range(1, 1200):
            graph.add_node(f"n{i:04d}", depends_on=[f"n{i - 1:04d}"], estimated_duration=1)

        assert len(graph) == 1200
        assert graph.get_node("n1199").depth == 1199
        assert graph.critical_path_duration == 1200
        assert graph.critical_path[0] == "n0000"
        assert graph.critical_path[-1] == "n1199"
        assert graph.validate().valid

        assert graph.mark_completed("n0000") == ["n0001"]
        assert graph.critical_path_duration == 1199

    def test_failed_insert_leaves_no_trace(
        self, diamond_graph: DependencyGraph, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test an error after the node is linked rolls the insertion back."""

        def broken() -> None:
            raise RuntimeError("path computation failed")

        monkeypatch.setattr(diamond_graph, "_recompute_critical_path", broken)

        with pytest.raises(RuntimeError):
            diamond_graph.add_node("E", depends_on=["D"])

        assert "E" not in diamond_graph
        assert len(diamond_graph) == 4
        assert diamond_graph.get_node("D").enables == set()
        assert diamond_graph.topological_order() == ["A", "B", "C", "D"]

    @pytest.mark.parametrize("seed", range(25))
    def test_random_graphs_stay_acyclic(self, seed: int) -> None:
        """Test accepted insertions keep a full topological order and correct depths."""
        rng = random.Random(seed)
        ids = [f"t{i:02d}" for i in range(30)]
        rng.shuffle(ids)
        graph = DependencyGraph(max_depth=100)

        for node_id in ids:
            deps = rng.sample(ids, rng.randint(0, 4))
            try:
                graph.add_node(node_id, depends_on=deps, estimated_duration=rng.randint(1, 10))
            except CycleError:
                assert node_id not in graph
                continue

        order = graph.topological_order()
        assert len(order) == len(graph)
        position = {nid: i for i, nid in enumerate(order)}

        for node in graph.nodes:
            known = [d for d in node.depends_on if d in graph]
            for dep in known:
                assert position[dep] < position[node.id]
            expected = 1 + max(graph.get_node(d).depth for d in known) if known else 0
            assert node.depth == expected

        assert not any("Circular" in e for e in graph.validate().errors)


# =============================================================================
# KNOWLEDGE AND RESOURCES
# =============================================================================


class TestKnowledgeDependencies:
    """Tests for edges derived from produced and required data types."""

    def test_consumer_waits_for_producer(self) -> None:
        """Test requiring a produced data type adds a dependency on its producer."""
        graph = DependencyGraph()
        graph.add_node("schema", produces={"db-schema"})
        node = graph.add_node("api", requires={"db-schema"})

        assert node.depends_on == {"schema"}
        assert node.status == NodeStatus.BLOCKED
        assert node.depth == 1
        assert graph.get_node("schema").enables == {"api"}
        assert graph.mark_completed("schema") == ["api"]

    def test_explicit_and_knowledge_dependencies_merge(self) -> None:
        """Test derived edges join the declared ones."""
        graph = DependencyGraph()
        graph.add_node("setup")
        graph.add_node("schema", produces={"db-schema"})
        node = graph.add_node("api", depends_on=["setup"], requires={"db-schema"})

        assert node.depends_on == {"setup", "schema"}

    def test_unknown_data_type_adds_nothing(self) -> None:
        """Test requirements without a registered producer add no edge."""
        graph = DependencyGraph()
        node = graph.add_node("api", requires={"db-schema"})

        assert node.depends_on == set()
        assert node.status == NodeStatus.READY

    def test_latest_producer_wins(self) -> None:
        """Test a later producer of the same data type takes over."""
        graph = DependencyGraph()
        graph.add_node("draft", produces={"spec-doc"})
        graph.add_node("final", depends_on=["draft"], produces={"spec-doc"})
        node = graph.add_node("build", requires={"spec-doc"})

        assert node.depends_on == {"final"}

    def test_consumer_before_producer_not_wired(self) -> None:
        """Test only producers registered earlier create edges."""
        graph = DependencyGraph()
        consumer = graph.add_node("api", requires={"db-schema"})
        graph.add_node("schema", produces={"db-schema"})

        assert consumer.depends_on == set()
        assert consumer.status == NodeStatus.READY

    def test_knowledge_cycle_rejected(self) -> None:
        """Test a derived edge closing a cycle is rejected before insertion."""
        graph = DependencyGraph()
        graph.add_node("writer", depends_on=["reader"], produces={"notes"})

        with pytest.raises(CycleError) as exc_info:
            graph.add_node("reader", requires={"notes"})

        assert exc_info.value.cycle == ["reader", "writer", "reader"]
        assert "reader" not in graph

    def test_to_dict_lists_data_types(self) -> None:
        """Test serialized nodes carry sorted data types."""
        graph = DependencyGraph()
        node = graph.add_node("etl", produces={"b", "a"}, resource_requirements={"db"})

        data = node.to_dict()

        assert data["produces"] == ["a", "b"]
        assert data["requires"] == []
        assert data["resource_requirements"] == ["db"]


class TestResourceConflicts:
    """Tests for resource contention between parallel nodes."""

    def test_parallel_nodes_conflict(self, diamond_graph: DependencyGraph) -> None:
        """Test siblings needing the same resource are reported."""
        diamond_graph.add_node("E", depends_on=["A"], resource_requirements={"db"})
        diamond_graph.add_node("F", depends_on=["A"], resource_requirements={"db", "gpu"})

        conflicts = diamond_graph.resource_conflicts()

        assert len(conflicts) == 1
        assert conflicts[0].resource == "db"
        assert conflicts[0].node_ids == ["E", "F"]

    def test_ordered_nodes_do_not_conflict(self) -> None:
        """Test nodes ordered by a dependency path may share a resource."""
        graph = DependencyGraph()
        graph.add_node("A", resource_requirements={"gpu"})
        graph.add_node("B", depends_on=["A"])
        graph.add_node("C", depends_on=["B"], resource_requirements={"gpu"})

        assert graph.resource_conflicts() == []
        assert not graph.can_run_in_parallel("A", "C")
        assert graph.ancestors("C") == {"A", "B"}

    def test_can_run_in_parallel(self, diamond_graph: DependencyGraph) -> None:
        """Test independence is symmetric and transitive dependencies count."""
        assert diamond_graph.can_run_in_parallel("B", "C")
        assert diamond_graph.can_run_in_parallel("C", "B")
        assert not diamond_graph.can_run_in_parallel("A", "D")
        assert not diamond_graph.can_run_in_parallel("D", "A")

    def test_conflicts_reported_by_validate(self) -> None:
        """Test contention is a warning, not an error."""
        graph = DependencyGraph()
        graph.add_node("A", resource_requirements={"staging"})
        graph.add_node("B", resource_requirements={"staging"})

        report = graph.validate()

        assert report.valid
        assert any("Resource staging" in w and "A, B" in w for w in report.warnings)
