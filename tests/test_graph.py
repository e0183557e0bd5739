"""
Unit tests for the task dependency graph.
"""

from core.models.documents import SpecDocument
from core.scheduling.graph import DependencyGraph, candidate_handoff, task_node


def make_doc(spec_id, tasks=(), status="active"):
    return SpecDocument(id=spec_id, title=spec_id, status=status, tasks=list(tasks))


class TestDependencyResolution:
    """Test how dependency ids map to graph nodes"""

    def test_sibling_task_wins(self):
        documents = [
            make_doc("FEAT-1", [{"id": "A", "title": "a"}, {"id": "B", "title": "b", "depends_on": ["A"]}]),
            make_doc("FEAT-2", [{"id": "A", "title": "other a"}]),
        ]

        graph = DependencyGraph.from_documents(documents)

        assert graph.dependencies("FEAT-1:B") == ["FEAT-1:A"]

    def test_spec_dependency(self):
        documents = [
            make_doc("FEAT-1", [{"id": "A", "title": "a", "status": "complete"}]),
            make_doc("FEAT-2", [{"id": "X", "title": "x", "depends_on": ["FEAT-1"]}]),
        ]

        graph = DependencyGraph.from_documents(documents)

        assert graph.dependencies("FEAT-2:X") == ["FEAT-1"]
        assert graph.is_complete("FEAT-1")
        assert graph.unmet("FEAT-2:X") == []

    def test_unique_task_in_other_spec(self):
        documents = [
            make_doc("FEAT-1", [{"id": "SCHEMA", "title": "s"}]),
            make_doc("FEAT-2", [{"id": "X", "title": "x", "depends_on": ["SCHEMA"]}]),
        ]

        graph = DependencyGraph.from_documents(documents)

        assert graph.unmet("FEAT-2:X") == ["FEAT-1:SCHEMA"]

    def test_ambiguous_and_missing_dependencies_block(self):
        documents = [
            make_doc("FEAT-1", [{"id": "A", "title": "a", "status": "complete"}]),
            make_doc("FEAT-2", [{"id": "A", "title": "a", "status": "complete"}]),
            make_doc("FEAT-3", [{"id": "X", "title": "x", "depends_on": ["A", "GHOST"]}]),
        ]

        graph = DependencyGraph.from_documents(documents)

        assert graph.missing[task_node("FEAT-3", "X")] == ["A", "GHOST"]
        assert graph.unmet("FEAT-3:X") == ["A", "GHOST"]

    def test_spec_depends_on_its_tasks(self):
        graph = DependencyGraph.from_documents([
            make_doc("FEAT-1", [{"id": "A", "title": "a"}, {"id": "B", "title": "b"}])
        ])

        assert graph.dependencies("FEAT-1") == ["FEAT-1:A", "FEAT-1:B"]
        assert graph.dependents("FEAT-1:A") == ["FEAT-1"]
        assert not graph.is_complete("FEAT-1")


class TestCycles:
    """Test cycle detection and ordering"""

    def test_two_task_cycle(self):
        graph = DependencyGraph.from_documents([
            make_doc("FEAT-1", [
                {"id": "A", "title": "a", "depends_on": ["B"]},
                {"id": "B", "title": "b", "depends_on": ["A"]},
                {"id": "C", "title": "c"},
            ])
        ])

        assert graph.nodes_on_cycles() == {"FEAT-1:A", "FEAT-1:B"}
        [cycle] = graph.find_cycles()
        assert cycle[0] == cycle[-1]

    def test_cycle_across_specs(self):
        graph = DependencyGraph.from_documents([
            make_doc("FEAT-1", [{"id": "A", "title": "a", "depends_on": ["FEAT-2"]}]),
            make_doc("FEAT-2", [{"id": "B", "title": "b", "depends_on": ["FEAT-1"]}]),
        ])

        assert {"FEAT-1", "FEAT-2", "FEAT-1:A", "FEAT-2:B"} <= graph.nodes_on_cycles()

    def test_acyclic_graph(self):
        graph = DependencyGraph.from_documents([
            make_doc("FEAT-1", [
                {"id": "A", "title": "a"},
                {"id": "B", "title": "b", "depends_on": ["A"]},
                {"id": "C", "title": "c", "depends_on": ["A", "B"]},
            ])
        ])

        assert graph.find_cycles() == []
        assert graph.dependents("FEAT-1:A") == ["FEAT-1", "FEAT-1:B", "FEAT-1:C"]


class TestCandidateHandoff:
    """Test which task receives a handoff"""

    def test_first_task_with_all_dependencies_complete(self):
        doc = make_doc("FEAT-1", [
            {"id": "A", "title": "a", "status": "complete"},
            {"id": "B", "title": "b", "depends_on": ["A", "Z"]},
            {"id": "C", "title": "c", "depends_on": ["A"]},
            {"id": "Z", "title": "z"},
        ])

        target, task = candidate_handoff([doc], "FEAT-1", "A")

        assert (target.id, task.id) == ("FEAT-1", "C")

    def test_in_progress_and_complete_tasks_skipped(self):
        doc = make_doc("FEAT-1", [
            {"id": "A", "title": "a", "status": "complete"},
            {"id": "B", "title": "b", "status": "in_progress", "depends_on": ["A"]},
            {"id": "C", "title": "c", "status": "complete", "depends_on": ["A"]},
        ])

        assert candidate_handoff([doc], "FEAT-1", "A") is None

    def test_blocked_task_is_a_candidate(self):
        doc = make_doc("FEAT-1", [
            {"id": "A", "title": "a", "status": "complete"},
            {"id": "B", "title": "b", "status": "blocked", "depends_on": ["A"]},
        ])

        assert candidate_handoff([doc], "FEAT-1", "A")[1].id == "B"

    def test_dependent_in_another_spec(self):
        documents = [
            make_doc("FEAT-1", [
                {"id": "A", "title": "a", "status": "complete"},
                {"id": "B", "title": "b"},
            ]),
            make_doc("FEAT-2", [{"id": "X", "title": "x", "status": "blocked", "depends_on": ["A"]}]),
        ]

        target, task = candidate_handoff(documents, "FEAT-1", "A")

        assert (target.id, task.id) == ("FEAT-2", "X")

    def test_own_spec_preferred(self):
        documents = [
            make_doc("FEAT-0", [{"id": "X", "title": "x", "depends_on": ["A"]}]),
            make_doc("FEAT-1", [
                {"id": "A", "title": "a", "status": "complete"},
                {"id": "B", "title": "b", "depends_on": ["A"]},
            ]),
        ]

        target, task = candidate_handoff(documents, "FEAT-1", "A")

        assert (target.id, task.id) == ("FEAT-1", "B")

    def test_spec_dependency_unlocks_when_spec_done(self):
        documents = [
            make_doc("FEAT-1", [
                {"id": "A", "title": "a", "status": "complete"},
                {"id": "B", "title": "b", "status": "complete"},
            ]),
            make_doc("FEAT-2", [{"id": "X", "title": "x", "depends_on": ["FEAT-1"]}]),
        ]

        target, task = candidate_handoff(documents, "FEAT-1", "B")

        assert (target.id, task.id) == ("FEAT-2", "X")
