"""Sprint decomposer - splits a task into bounded-duration sprints.

The pipeline estimates complexity, selects phase components, splits long
components into equal parts, wires the parts into a dependency graph and
validates the result before handing it back.
"""

import math
import re
from typing import Any
from uuid import uuid4

from loguru import logger

from sprintflow.core.config import Settings, get_settings
from sprintflow.core.exceptions import (
    DanglingDependencyError,
    InvalidPlanError,
    PlanTooLargeError,
)
from sprintflow.scheduling.graph import DependencyGraph
from sprintflow.scheduling.models import (
    ComplexityAssessment,
    ComplexityLevel,
    DecompositionConstraints,
    SprintComponent,
    SprintPlan,
    SprintRequest,
    SprintType,
    ValidationReport,
)


def _round_half_up(value: float) -> int:
    # 5 * 0.7 must round to 4, not 3
    return int(math.floor(round(value, 9) + 0.5))


class SprintDecomposer:
    """
    Decompose a task into sprints no longer than ``max_sprint_duration``.

    Example:
        >>> decomposer = SprintDecomposer()
        >>> plan = decomposer.decompose(
        ...     SprintRequest(title="Checkout", description="Build and test checkout")
        ... )
        >>> plan.total_sprints
        4
        >>> plan.graph.get_parallel_layers()[0]
        ['sprint-1']
    """

    # Base duration (minutes), deliverables and skills per sprint type
    SPRINT_TEMPLATES: dict[SprintType, dict[str, Any]] = {
        SprintType.ANALYSIS: {
            "duration": 5,
            "deliverables": ["requirements", "constraints", "approach"],
            "skills": ["research", "analysis"],
        },
        SprintType.PLANNING: {
            "duration": 8,
            "deliverables": ["project_plan", "sprint_breakdown", "resource_allocation"],
            "skills": ["planning", "architecture"],
        },
        SprintType.IMPLEMENTATION: {
            "duration": 10,
            "deliverables": ["code", "tests", "documentation"],
            "skills": ["coding", "development"],
        },
        SprintType.TESTING: {
            "duration": 7,
            "deliverables": ["test_results", "coverage_report", "issues"],
            "skills": ["testing", "qa"],
        },
        SprintType.REVIEW: {
            "duration": 5,
            "deliverables": ["feedback", "approval_status", "improvements"],
            "skills": ["review", "quality"],
        },
        SprintType.DOCUMENTATION: {
            "duration": 6,
            "deliverables": ["docs", "examples", "api_reference"],
            "skills": ["documentation", "writing"],
        },
    }

    # (name, type, priority); priority <= 3 marks a core phase
    PHASES: list[tuple[str, SprintType, int]] = [
        ("understanding", SprintType.ANALYSIS, 1),
        ("planning", SprintType.PLANNING, 2),
        ("implementation", SprintType.IMPLEMENTATION, 3),
        ("testing", SprintType.TESTING, 4),
        ("documentation", SprintType.DOCUMENTATION, 4),
        ("review", SprintType.REVIEW, 5),
    ]

    PHASE_KEYWORDS: dict[SprintType, list[str]] = {
        SprintType.ANALYSIS: ["analyze", "analyse", "understand", "investigate", "research"],
        SprintType.PLANNING: ["plan", "design", "architect", "structure"],
        SprintType.IMPLEMENTATION: ["implement", "build", "create", "develop", "code"],
        SprintType.TESTING: ["test", "validate", "verify", "check"],
        SprintType.DOCUMENTATION: ["document", "docs", "readme", "guide"],
        SprintType.REVIEW: ["review", "approve", "evaluate", "assess"],
    }

    ACCEPTANCE_CRITERIA: dict[SprintType, list[str]] = {
        SprintType.ANALYSIS: [
            "Clear problem statement defined",
            "All constraints identified",
            "Solution approach documented",
        ],
        SprintType.PLANNING: [
            "Detailed plan created",
            "Resources allocated",
            "Timeline established",
        ],
        SprintType.IMPLEMENTATION: [
            "Code implemented and functional",
            "Follows coding standards",
            "Basic tests included",
        ],
        SprintType.TESTING: [
            "All tests passing",
            "Coverage meets requirements",
            "Edge cases handled",
        ],
        SprintType.REVIEW: [
            "Code reviewed for quality",
            "Feedback incorporated",
            "Approval obtained",
        ],
        SprintType.DOCUMENTATION: [
            "Usage documented",
            "Examples provided",
            "Reference up to date",
        ],
    }

    TECHNICAL_KEYWORDS = ["architecture", "integration", "security", "performance", "scale"]

    # Heuristic tuning knobs
    COMPLEXITY_MULTIPLIERS: dict[ComplexityLevel, float] = {
        ComplexityLevel.SIMPLE: 0.7,
        ComplexityLevel.MODERATE: 1.0,
        ComplexityLevel.COMPLEX: 1.5,
    }
    MODERATE_THRESHOLD = 2.0
    COMPLEX_THRESHOLD = 5.0

    def __init__(self, settings: Settings | None = None) -> None:
        """
        Initialize the decomposer.

        Args:
            settings: Optional settings override. Uses default if not provided.
        """
        self.settings = settings or get_settings()

    def decompose(
        self,
        request: SprintRequest,
        constraints: DecompositionConstraints | None = None,
    ) -> SprintPlan:
        """
        Decompose a task into a validated sprint plan.

        Args:
            request: Task to decompose.
            constraints: Optional per-call overrides.

        Returns:
            SprintPlan with the populated graph and aggregates.

        Raises:
            PlanTooLargeError: If more than ``max_sprints_per_project``
                sprints would be produced.
            InvalidPlanError: If the resulting plan fails validation.
        """
        constraints = constraints or DecompositionConstraints()
        max_duration = constraints.max_sprint_duration or self.settings.max_sprint_duration
        max_sprints = constraints.max_sprints_per_project or self.settings.max_sprints_per_project

        logger.info(f"Decomposing task into sprints: {request.title}")

        complexity = self.analyze_complexity(request)
        components = self.identify_components(request, complexity, constraints)

        refined: list[SprintComponent] = []
        for component in components:
            if component.estimated_duration > max_duration:
                refined.extend(self.split_component(component, max_duration))
            else:
                refined.append(component)

        if len(refined) > max_sprints:
            logger.error(f"Decomposition produced {len(refined)} sprints, limit is {max_sprints}")
            raise PlanTooLargeError(len(refined), max_sprints)

        graph, stages = self._build_graph(request, refined, constraints)

        report = graph.validate()
        self._validate_sprints(graph, report, max_duration)
        if not report.valid:
            try:
                graph.check_references()
            except DanglingDependencyError as e:
                raise InvalidPlanError(report.errors) from e
            raise InvalidPlanError(report.errors)

        for warning in report.warnings:
            logger.warning(warning)

        parallel_groups = [
            [nid for chain in stage for nid in chain] for stage in stages if len(stage) > 1
        ]
        total_duration = sum(
            max(sum(graph.get_node(nid).estimated_duration for nid in chain) for chain in stage)
            for stage in stages
        )

        plan = SprintPlan(
            project_id=f"project-{uuid4().hex[:12]}",
            title=request.title,
            complexity=complexity,
            graph=graph,
            sprints=graph.nodes,
            total_duration=total_duration,
            parallel_groups=parallel_groups,
            critical_path=graph.critical_path,
            warnings=report.warnings,
        )

        logger.info(
            f"Planned {plan.total_sprints} sprints ({plan.total_duration:g} min, "
            f"{len(parallel_groups)} parallel groups)"
        )
        return plan

    # =========================================================================
    # COMPLEXITY
    # =========================================================================

    def analyze_complexity(self, request: SprintRequest) -> ComplexityAssessment:
        """
        Estimate complexity from size, technical keywords and dependencies.

        The factors multiply; the product sets the level and the target
        sprint count.
        """
        text = request.text
        words = len(text.split())
        lowered = text.lower()

        factors = {
            "scope": min(words / 20, 3.0),
            "technical": 1 + 0.5 * sum(1 for kw in self.TECHNICAL_KEYWORDS if kw in lowered),
            "dependencies": 1 + 0.3 * len(request.dependencies),
            "uncertainty": 1.0,
        }
        score = math.prod(factors.values())

        if score < self.MODERATE_THRESHOLD:
            level = ComplexityLevel.SIMPLE
        elif score < self.COMPLEX_THRESHOLD:
            level = ComplexityLevel.MODERATE
        else:
            level = ComplexityLevel.COMPLEX

        return ComplexityAssessment(
            score=score,
            level=level,
            factors=factors,
            estimated_sprints=max(1, math.ceil(score * 2)),
        )

    # =========================================================================
    # COMPONENTS
    # =========================================================================

    def identify_components(
        self,
        request: SprintRequest,
        complexity: ComplexityAssessment,
        constraints: DecompositionConstraints | None = None,
    ) -> list[SprintComponent]:
        """Select phases and estimate their durations, in priority order."""
        constraints = constraints or DecompositionConstraints()

        if constraints.phases is not None:
            wanted = set(constraints.phases)
            phases = [p for p in self.PHASES if p[1] in wanted]
        else:
            phases = [p for p in self.PHASES if self._should_include_phase(request, p)]

        components = [
            SprintComponent(
                name=name,
                sprint_type=sprint_type,
                priority=priority,
                description=f"{name} phase for {request.title}",
                estimated_duration=self._estimate_phase_duration(sprint_type, complexity),
            )
            for name, sprint_type, priority in phases
        ]

        if request.estimated_duration is not None and components:
            self._distribute_duration(components, request.estimated_duration)

        return components

    def _should_include_phase(
        self,
        request: SprintRequest,
        phase: tuple[str, SprintType, int],
    ) -> bool:
        _, sprint_type, priority = phase
        if priority <= 3:
            return True
        lowered = request.text.lower()
        return any(
            re.search(rf"\b{re.escape(kw)}", lowered) for kw in self.PHASE_KEYWORDS[sprint_type]
        )

    def _estimate_phase_duration(
        self,
        sprint_type: SprintType,
        complexity: ComplexityAssessment,
    ) -> float:
        base = self.SPRINT_TEMPLATES[sprint_type]["duration"]
        return float(_round_half_up(base * self.COMPLEXITY_MULTIPLIERS[complexity.level]))

    def _distribute_duration(self, components: list[SprintComponent], total: float) -> None:
        """Spread a known total over components by template weight."""
        weights = [self.SPRINT_TEMPLATES[c.sprint_type]["duration"] for c in components]
        weight_sum = sum(weights)
        assigned = 0.0
        for component, weight in zip(components[:-1], weights[:-1], strict=False):
            share = round(total * weight / weight_sum, 2)
            component.estimated_duration = share
            assigned += share
        components[-1].estimated_duration = round(total - assigned, 2)

    def split_component(
        self,
        component: SprintComponent,
        max_duration: float,
    ) -> list[SprintComponent]:
        """
        Split a component into ``ceil(duration / max_duration)`` parts.

        Every part is ``max_duration`` long except the last, which takes
        the remainder (37 over 10 gives 10, 10, 10, 7).
        """
        count = math.ceil(component.estimated_duration / max_duration)
        parts = []
        for i in range(count):
            duration = min(max_duration, component.estimated_duration - i * max_duration)
            parts.append(
                component.model_copy(
                    update={
                        "name": f"{component.name} (Part {i + 1}/{count})",
                        "estimated_duration": round(duration, 2),
                        "part": i + 1,
                        "parts": count,
                    }
                )
            )
        return parts

    # =========================================================================
    # GRAPH
    # =========================================================================

    def _build_graph(
        self,
        request: SprintRequest,
        components: list[SprintComponent],
        constraints: DecompositionConstraints,
    ) -> tuple[DependencyGraph, list[list[list[str]]]]:
        """
        Wire components into a graph.

        Components are grouped into stages: consecutive parallelizable
        components of equal priority share a stage, everything else gets
        its own. Parts of one split component form a chain. The head of
        every chain in a stage depends on the tail of every chain in the
        previous stage.

        Returns:
            The graph and the stages as lists of chains of node ids.
        """
        graph = DependencyGraph(
            max_depth=self.settings.max_depth,
            prioritize_critical_path=self.settings.priority_mode == "critical-path",
        )

        # Group parts back into their component chains
        chains: list[list[SprintComponent]] = []
        for component in sorted(components, key=lambda c: c.priority):
            if component.part > 1 and chains and chains[-1][-1].sprint_type == component.sprint_type:
                chains[-1].append(component)
            else:
                chains.append([component])

        stage_chains: list[list[list[SprintComponent]]] = []
        for chain in chains:
            head = chain[0]
            previous = stage_chains[-1][-1][0] if stage_chains else None
            if (
                previous is not None
                and head.parallelizable
                and previous.parallelizable
                and previous.priority == head.priority
            ):
                stage_chains[-1].append(chain)
            else:
                stage_chains.append([chain])

        stages: list[list[list[str]]] = []
        previous_tails: list[str] = []
        counter = 0
        for stage in stage_chains:
            stage_ids: list[list[str]] = []
            for chain in stage:
                deps = list(previous_tails)
                chain_ids: list[str] = []
                for component in chain:
                    counter += 1
                    node_id = f"{constraints.id_prefix}-{counter}"
                    template = self.SPRINT_TEMPLATES[component.sprint_type]
                    graph.add_node(
                        node_id,
                        depends_on=deps,
                        title=f"Sprint {counter}: {component.name}",
                        description=component.description,
                        sprint_type=component.sprint_type,
                        estimated_duration=component.estimated_duration,
                        required_skills=set(template["skills"]),
                        deliverables=list(template["deliverables"]),
                        acceptance_criteria=list(self.ACCEPTANCE_CRITERIA[component.sprint_type]),
                        priority=constraints.priority,
                        parallelizable=component.parallelizable,
                        metadata={
                            "phase": component.name,
                            "phase_priority": component.priority,
                            "part": component.part,
                            "parts": component.parts,
                            "task": request.title,
                        },
                    )
                    chain_ids.append(node_id)
                    deps = [node_id]
                stage_ids.append(chain_ids)
            stages.append(stage_ids)
            previous_tails = [chain_ids[-1] for chain_ids in stage_ids]

        return graph, stages

    def _validate_sprints(
        self,
        graph: DependencyGraph,
        report: ValidationReport,
        max_duration: float,
    ) -> None:
        """Sprint-level checks on top of the structural graph validation."""
        for node in graph.nodes:
            if node.estimated_duration > max_duration:
                report.add_error(
                    f"Sprint {node.id} exceeds max duration: {node.estimated_duration:g} minutes"
                )
            if node.estimated_duration < self.settings.min_sprint_duration:
                report.add_warning(
                    f"Sprint {node.id} is very short: {node.estimated_duration:g} minutes"
                )
            if not node.deliverables:
                report.add_warning(f"Sprint {node.id} has no defined deliverables")
