"""
Tests for the task scheduler: candidate filtering, scoring and capacity.
"""

from unittest.mock import Mock

import pytest

from core.models.config import AgentCapability, SchedulerConfig
from core.models.documents import SpecDocument, Task
from core.scheduling.scheduler import SchedulingConstraints, TaskScheduler
from tests.helpers import build_workflow, spec_text, write_spec


async def workflow_with(project_dir, docs_dir, **documents):
    """Write each keyword as a document (name -> text) and wire the components"""
    for name, text in documents.items():
        write_spec(docs_dir, f"{name}.md", text)
    return await build_workflow(project_dir)


class TestCandidates:
    """Test which tasks are eligible"""

    @pytest.mark.asyncio
    async def test_feat_100_recommends_first_task(self, feat_workflow):
        decision = await feat_workflow.scheduler.get_next_task("backend")

        assert decision.found
        assert decision.recommendation.key == "FEAT-100:TASK-001"
        assert decision.blocked == {"FEAT-100:TASK-002": ["FEAT-100:TASK-001"]}
        assert decision.considered == 2

    @pytest.mark.asyncio
    async def test_unmet_dependencies_never_recommended(self, feat_workflow):
        await feat_workflow.tracker.assign_task("FEAT-100", "TASK-001", "alice")

        decision = await feat_workflow.scheduler.get_next_task(
            "backend", SchedulingConstraints(worker="bob")
        )

        assert not decision.found
        assert decision.reason == "all 1 matching ready task(s) are blocked"

    @pytest.mark.asyncio
    async def test_dependency_cycle_excluded(self, project_dir, docs_dir):
        workflow = await workflow_with(project_dir, docs_dir, **{"feat-3": spec_text("FEAT-3", tasks="""
            - id: A
              title: a
              depends_on: [B]
            - id: B
              title: b
              depends_on: [A]
            - id: C
              title: c
        """)})

        decision = await workflow.scheduler.get_next_task("backend")

        assert decision.recommendation.task_id == "C"
        assert decision.cyclic == ["FEAT-3:A", "FEAT-3:B"]
        assert decision.blocked["FEAT-3:A"] == ["dependency cycle"]

    @pytest.mark.asyncio
    async def test_missing_dependency_blocks(self, project_dir, docs_dir):
        workflow = await workflow_with(project_dir, docs_dir, **{"feat-4": spec_text("FEAT-4", tasks="""
            - id: A
              title: a
              depends_on: [GHOST-1]
        """)})

        decision = await workflow.scheduler.get_next_task(None)

        assert not decision.found
        assert decision.blocked == {"FEAT-4:A": ["GHOST-1"]}

    @pytest.mark.asyncio
    async def test_done_and_cancelled_specs_skipped(self, project_dir, docs_dir):
        task = """
            - id: A
              title: a
        """
        workflow = await workflow_with(
            project_dir, docs_dir,
            **{"feat-5": spec_text("FEAT-5", tasks=task, status="done"),
               "feat-6": spec_text("FEAT-6", tasks=task, status="cancelled")}
        )

        decision = await workflow.scheduler.get_next_task(None)

        assert decision.reason == "no ready tasks"

    @pytest.mark.asyncio
    async def test_no_matching_capability(self, feat_workflow):
        decision = await feat_workflow.scheduler.get_next_task("frontend")

        assert not decision.found
        assert decision.reason == "no ready task matches capability 'frontend'"

    @pytest.mark.asyncio
    async def test_constraints_filter(self, project_dir, docs_dir):
        workflow = await workflow_with(project_dir, docs_dir, **{"feat-7": spec_text("FEAT-7", tasks="""
            - id: BIG
              title: big
              estimated_hours: 20
            - id: SMALL
              title: small
              estimated_hours: 2
            - id: OTHER
              title: other
        """)})
        scheduler = workflow.scheduler

        small = await scheduler.get_next_task(None, SchedulingConstraints(max_hours=4))
        assert small.recommendation.task_id == "SMALL"

        other = await scheduler.get_next_task(None, SchedulingConstraints(exclude={"FEAT-7:BIG"}))
        assert other.recommendation.task_id == "SMALL"

        none = await scheduler.get_next_task(None, SchedulingConstraints(spec_ids=["FEAT-8"]))
        assert not none.found


class TestScoring:
    """Test score composition and ordering"""

    def test_score_breakdown(self):
        scheduler = TaskScheduler(Mock(), SchedulerConfig())
        document = SpecDocument(id="FEAT-1", title="t", status="active", priority="P1", phase="2")
        task = Task(id="A", title="a", agent_type="backend", estimated_hours=12)

        breakdown = scheduler.score(document, task, True, SchedulingConstraints(phase="2"))

        assert breakdown["priority"] == 100.0
        assert breakdown["exact_match"] == 2.0
        assert breakdown["phase"] == 1.5
        assert breakdown["large_task"] == 0.8
        assert breakdown["active_spec"] == 1.3
        assert breakdown["total"] == pytest.approx(100 * 2 * 1.5 * 0.8 * 1.3)

    def test_matches(self):
        assert TaskScheduler.matches(Task(id="A", title="a", agent_type="backend"), "backend") is True
        assert TaskScheduler.matches(Task(id="A", title="a"), "backend") is False
        assert TaskScheduler.matches(Task(id="A", title="a", agent_type="any"), "backend") is False
        assert TaskScheduler.matches(Task(id="A", title="a", agent_type="frontend"), "backend") is None
        assert TaskScheduler.matches(Task(id="A", title="a", agent_type="frontend"), None) is False

    @pytest.mark.asyncio
    async def test_priority_wins(self, project_dir, docs_dir):
        task = """
            - id: A
              title: a
              agent_type: backend
        """
        workflow = await workflow_with(
            project_dir, docs_dir,
            **{"feat-1": spec_text("FEAT-1", tasks=task, priority="P1"),
               "feat-2": spec_text("FEAT-2", tasks=task, priority="P0")}
        )

        decision = await workflow.scheduler.get_next_task("backend")

        assert decision.recommendation.spec_id == "FEAT-2"
        assert [r.spec_id for r in decision.ranked] == ["FEAT-2", "FEAT-1"]

    @pytest.mark.asyncio
    async def test_exact_match_preferred(self, project_dir, docs_dir):
        workflow = await workflow_with(
            project_dir, docs_dir,
            **{"feat-1": spec_text("FEAT-1", tasks="""
                - id: GENERIC
                  title: anyone
            """),
               "feat-2": spec_text("FEAT-2", tasks="""
                - id: EXACT
                  title: backend only
                  agent_type: backend
            """)}
        )

        decision = await workflow.scheduler.get_next_task("backend")

        assert decision.recommendation.task_id == "EXACT"
        assert decision.recommendation.exact_match
        assert decision.ranked[1].task_id == "GENERIC"

    @pytest.mark.asyncio
    async def test_ties_break_by_spec_then_document_order(self, project_dir, docs_dir):
        tasks = """
            - id: SECOND
              title: s
            - id: FIRST
              title: f
        """
        workflow = await workflow_with(
            project_dir, docs_dir,
            **{"b": spec_text("FEAT-2", tasks=tasks), "a": spec_text("FEAT-1", tasks=tasks)}
        )

        ranked = await workflow.scheduler.get_batch_recommendations(4)

        assert [r.key for r in ranked] == [
            "FEAT-1:SECOND", "FEAT-1:FIRST", "FEAT-2:SECOND", "FEAT-2:FIRST"
        ]


BACKEND_ONLY = SchedulerConfig(agent_capabilities={
    "backend": AgentCapability(
        specialization_areas=["Auth"],
        context_requirements=["api", "data-models"],
    )
})


class TestAgentCapabilities:
    """Test declared agent capabilities"""

    def setup_method(self):
        self.scheduler = TaskScheduler(Mock(), BACKEND_ONLY)

    @pytest.mark.parametrize("requirements,supported", [
        ([], True),
        (["api"], True),
        (["data-models", "auth-flows"], True),
        (["rest-api"], True),
        (["ui"], False),
        (["api", "ui"], False),
    ])
    def test_supports(self, requirements, supported):
        task = Task(id="A", title="a", context_requirements=requirements)

        assert self.scheduler.supports(task, "backend") is supported

    def test_undefined_agent_type_supports_everything(self):
        task = Task(id="A", title="a", context_requirements=["ui"])

        assert self.scheduler.supports(task, "frontend") is True
        assert self.scheduler.supports(task, None) is True

    def test_context_factor(self):
        definition = BACKEND_ONLY.agent_capabilities["backend"]

        assert self.scheduler.context_factor(Task(id="A", title="a"), definition) == 1.0
        both = Task(id="A", title="a", context_requirements=["api", "data-models"])
        assert self.scheduler.context_factor(both, definition) == 1.0
        # auth is a specialization area, not a context
        half = Task(id="A", title="a", context_requirements=["api", "auth"])
        assert self.scheduler.context_factor(half, definition) == 0.75

    def test_score_applies_context_match(self):
        document = SpecDocument(id="FEAT-1", title="t", status="backlog", priority="P1")
        task = Task(id="A", title="a", agent_type="backend", context_requirements=["api", "auth"])

        breakdown = self.scheduler.score(document, task, True, SchedulingConstraints(), "backend")

        assert breakdown["context_match"] == 0.75
        assert breakdown["total"] == pytest.approx(100 * 2 * 0.75)
        assert "context_match" not in self.scheduler.score(document, task, True, SchedulingConstraints())

    def test_capability_names_are_normalized(self):
        assert BACKEND_ONLY.agent_capabilities["backend"].specialization_areas == ["auth"]

    @pytest.mark.asyncio
    async def test_unsupported_tasks_are_skipped(self, project_dir, docs_dir):
        write_spec(docs_dir, "feat-1.md", spec_text("FEAT-1", priority="P0", tasks="""
            - id: SCREEN
              title: Login screen
              context_requirements: [ui]
        """))
        write_spec(docs_dir, "feat-2.md", spec_text("FEAT-2", priority="P2", tasks="""
            - id: ENDPOINT
              title: Login endpoint
              context_requirements: api
        """))
        workflow = await build_workflow(project_dir, config=BACKEND_ONLY)

        decision = await workflow.scheduler.get_next_task("backend")

        assert decision.recommendation.key == "FEAT-2:ENDPOINT"
        assert decision.recommendation.breakdown["context_match"] == 1.0
        assert [r.key for r in decision.ranked] == ["FEAT-2:ENDPOINT"]


class TestCapacity:
    """Test capacity checks and batch recommendations"""

    @pytest.mark.asyncio
    async def test_over_capacity(self, feat_workflow):
        await feat_workflow.tracker.assign_task("FEAT-100", "TASK-001", "backend")

        decision = await feat_workflow.scheduler.get_next_task("backend")

        assert not decision.found
        assert decision.reason == "backend is over capacity (1/1 assignments)"

    @pytest.mark.asyncio
    async def test_worker_identity_from_constraints(self, feat_workflow):
        await feat_workflow.tracker.assign_task("FEAT-100", "TASK-001", "alice")

        decision = await feat_workflow.scheduler.get_next_task(
            "backend", SchedulingConstraints(worker="alice")
        )

        assert decision.reason.startswith("alice is over capacity")

    @pytest.mark.asyncio
    async def test_higher_limit(self, feat_workflow):
        scheduler = TaskScheduler(feat_workflow.tracker, SchedulerConfig(capacity_limit=3))
        await feat_workflow.tracker.assign_task("FEAT-100", "TASK-001", "backend")

        decision = await scheduler.get_next_task("backend")

        assert "over capacity" not in decision.reason

    @pytest.mark.asyncio
    async def test_batch_ignores_capacity(self, project_dir, docs_dir):
        workflow = await workflow_with(project_dir, docs_dir, **{"feat-9": spec_text("FEAT-9", tasks="""
            - id: A
              title: a
            - id: B
              title: b
            - id: C
              title: c
        """)})
        await workflow.tracker.assign_task("FEAT-9", "A", "backend")

        batch = await workflow.scheduler.get_batch_recommendations(5, "backend")

        assert [r.task_id for r in batch] == ["B", "C"]
        assert await workflow.scheduler.get_batch_recommendations(0) == []

    @pytest.mark.asyncio
    async def test_recommending_does_not_write(self, feat_workflow, feat_100):
        before = feat_100.read_bytes()
        audit_before = len(await feat_workflow.store.get_audit_records())

        await feat_workflow.scheduler.get_next_task("backend")
        await feat_workflow.scheduler.get_batch_recommendations(3)

        assert feat_100.read_bytes() == before
        assert len(await feat_workflow.store.get_audit_records()) == audit_before
