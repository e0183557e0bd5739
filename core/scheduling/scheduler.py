"""
Task Scheduler.

Recommends the best next task for a worker. Candidates are ready tasks whose
dependencies are all complete; they are scored by priority weight and then
adjusted for capability and context match, phase alignment, task size and
spec activity. Recommending never writes anything.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, TYPE_CHECKING

from ..models.config import AgentCapability, SchedulerConfig
from ..models.documents import SpecDocument, SpecStatus, Task, TaskStatus
from .graph import DependencyGraph, task_node

if TYPE_CHECKING:
    from ..tracking.tracker import WorkAssignmentTracker

logger = logging.getLogger(__name__)

GENERIC_AGENT_TYPES = (None, "", "any")


@dataclass
class SchedulingConstraints:
    """Optional filters and context for a recommendation"""
    worker: Optional[str] = None
    phase: Optional[str] = None
    spec_ids: Optional[List[str]] = None
    max_hours: Optional[float] = None
    exclude: Set[str] = field(default_factory=set)


@dataclass
class Recommendation:
    """A scored candidate task"""
    spec_id: str
    task_id: str
    title: str
    score: float
    breakdown: Dict[str, float]
    agent_type: Optional[str] = None
    priority: Optional[str] = None
    phase: Optional[str] = None
    estimated_hours: Optional[float] = None
    exact_match: bool = False

    @property
    def key(self) -> str:
        return task_node(self.spec_id, self.task_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "spec_id": self.spec_id,
            "task_id": self.task_id,
            "title": self.title,
            "score": self.score,
            "breakdown": self.breakdown,
            "agent_type": self.agent_type,
            "priority": self.priority,
            "phase": self.phase,
            "estimated_hours": self.estimated_hours,
            "exact_match": self.exact_match,
        }


@dataclass
class SchedulingDecision:
    """Outcome of a next-task request: a recommendation or the reason there is none"""
    recommendation: Optional[Recommendation]
    reason: str
    considered: int = 0
    blocked: Dict[str, List[str]] = field(default_factory=dict)
    cyclic: List[str] = field(default_factory=list)
    ranked: List[Recommendation] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.recommendation is not None


class TaskScheduler:
    """
    Dependency-aware, priority-weighted task recommendation.

    Features:
    - Ready tasks with complete dependencies only; missing dependencies block
    - Tasks on dependency cycles are excluded
    - Exact capability matches preferred over generic tasks
    - Declared agent capabilities gate and weight tasks with context requirements
    - Per-worker capacity check
    - Deterministic tie-breaking by spec id, then document order
    """

    def __init__(self, tracker: 'WorkAssignmentTracker', config: Optional[SchedulerConfig] = None):
        self.tracker = tracker
        self.config = config or tracker.config

    @staticmethod
    def matches(task: Task, capability: Optional[str]) -> Optional[bool]:
        """
        Capability match for a task.

        Returns:
            True for an exact match, False for a generic match, None for no match
        """
        if capability is None:
            return False
        if task.agent_type == capability:
            return True
        if task.agent_type in GENERIC_AGENT_TYPES:
            return False
        return None

    def capability_for(self, capability: Optional[str]) -> Optional[AgentCapability]:
        if capability is None:
            return None
        return self.config.agent_capabilities.get(capability)

    @staticmethod
    def _covered(requirement: str, offered: Iterable[str]) -> bool:
        requirement = requirement.lower()
        return any(item in requirement or requirement in item for item in offered)

    def supports(self, task: Task, capability: Optional[str]) -> bool:
        """
        Whether a worker of type ``capability`` can take on a task.

        Each context requirement of the task must overlap, as a substring in
        either direction, with a context or specialization area the agent
        type declares. Agent types without a definition support every task.
        """
        definition = self.capability_for(capability)
        if definition is None:
            return True
        offered = definition.context_requirements + definition.specialization_areas
        return all(self._covered(req, offered) for req in task.context_requirements)

    def context_factor(self, task: Task, definition: AgentCapability) -> float:
        """Multiplier from 0.5 (no requirement among the agent's contexts) to 1.0 (all of them)"""
        if not task.context_requirements:
            return 1.0
        matched = sum(
            1 for req in task.context_requirements
            if self._covered(req, definition.context_requirements)
        )
        return 0.5 + 0.5 * matched / len(task.context_requirements)

    def score(
        self,
        document: SpecDocument,
        task: Task,
        exact_match: bool,
        constraints: SchedulingConstraints,
        capability: Optional[str] = None
    ) -> Dict[str, float]:
        """Score breakdown; ``total`` is the product of the base weight and every factor"""
        breakdown = {"priority": self.config.priority_weights.get(document.priority.value, 1.0)}
        if exact_match:
            breakdown["exact_match"] = self.config.exact_match_boost
        if constraints.phase is not None and document.phase == constraints.phase:
            breakdown["phase"] = self.config.phase_boost
        definition = self.capability_for(capability)
        if definition is not None:
            breakdown["context_match"] = self.context_factor(task, definition)
        if task.estimated_hours is not None and task.estimated_hours > self.config.large_task_hours:
            breakdown["large_task"] = self.config.large_task_penalty
        if document.status == SpecStatus.ACTIVE:
            breakdown["active_spec"] = self.config.active_spec_boost

        total = 1.0
        for value in breakdown.values():
            total *= value
        breakdown["total"] = round(total, 4)
        return breakdown

    async def _candidates(
        self,
        capability: Optional[str],
        constraints: SchedulingConstraints
    ) -> SchedulingDecision:
        documents = await self.tracker.load_documents()
        graph = DependencyGraph.from_documents(documents.values())
        cyclic = graph.nodes_on_cycles()

        ranked = []
        blocked: Dict[str, List[str]] = {}
        considered = 0
        for spec_id in sorted(documents):
            document = documents[spec_id]
            if constraints.spec_ids is not None and spec_id not in constraints.spec_ids:
                continue
            if document.status in (SpecStatus.DONE, SpecStatus.CANCELLED):
                continue
            for position, task in enumerate(document.tasks):
                node = task_node(spec_id, task.id)
                if task.status != TaskStatus.READY or node in constraints.exclude:
                    continue
                considered += 1
                exact = self.matches(task, capability)
                if exact is None or not self.supports(task, capability):
                    continue
                if node in cyclic:
                    blocked[node] = ["dependency cycle"]
                    continue
                unmet = graph.unmet(node)
                if unmet:
                    blocked[node] = unmet
                    continue
                if constraints.max_hours is not None and (task.estimated_hours or 0) > constraints.max_hours:
                    continue

                breakdown = self.score(document, task, exact, constraints, capability)
                ranked.append((-breakdown["total"], spec_id, position, Recommendation(
                    spec_id=spec_id,
                    task_id=task.id,
                    title=task.title,
                    score=breakdown["total"],
                    breakdown=breakdown,
                    agent_type=task.agent_type,
                    priority=document.priority.value,
                    phase=document.phase,
                    estimated_hours=task.estimated_hours,
                    exact_match=exact,
                )))

        ranked.sort(key=lambda item: item[:3])
        decision = SchedulingDecision(
            recommendation=None,
            reason="",
            considered=considered,
            blocked=blocked,
            cyclic=sorted(n for n in cyclic if ":" in n),
            ranked=[item[3] for item in ranked],
        )
        return decision

    async def get_next_task(
        self,
        capability: Optional[str],
        constraints: Optional[SchedulingConstraints] = None
    ) -> SchedulingDecision:
        """
        Best next task for a worker with ``capability``.

        The worker identity used for the capacity check is
        ``constraints.worker``, defaulting to the capability itself.
        """
        constraints = constraints or SchedulingConstraints()
        worker = constraints.worker or capability
        if worker is not None:
            held = await self.tracker.workload_for(worker)
            if held >= self.config.capacity_limit:
                return SchedulingDecision(
                    recommendation=None,
                    reason=f"{worker} is over capacity ({held}/{self.config.capacity_limit} assignments)",
                )

        decision = await self._candidates(capability, constraints)
        if decision.ranked:
            decision.recommendation = decision.ranked[0]
            decision.reason = (
                f"{decision.recommendation.key} scored {decision.recommendation.score:g}"
                f" ({'exact' if decision.recommendation.exact_match else 'generic'} match)"
            )
            logger.debug(f"Recommending {decision.recommendation.key} for {capability}: {decision.reason}")
        elif decision.blocked:
            decision.reason = f"all {len(decision.blocked)} matching ready task(s) are blocked"
        elif decision.considered:
            decision.reason = f"no ready task matches capability {capability!r}"
        else:
            decision.reason = "no ready tasks"
        return decision

    async def get_batch_recommendations(
        self,
        n: int,
        capability: Optional[str] = None,
        constraints: Optional[SchedulingConstraints] = None
    ) -> List[Recommendation]:
        """Top ``n`` candidates, ignoring capacity"""
        if n <= 0:
            return []
        decision = await self._candidates(capability, constraints or SchedulingConstraints())
        return decision.ranked[:n]
