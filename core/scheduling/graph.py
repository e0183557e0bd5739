"""
Task dependency graph.

Nodes are qualified task ids (``FEAT-100:TASK-002``) plus one node per
specification, so a task may depend either on a sibling task or on a whole
specification. A dependency id is resolved against the task's own
specification first, then against specification ids, then against task ids
of other specifications.
"""

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..models.documents import SpecDocument, SpecStatus, Task, TaskStatus

logger = logging.getLogger(__name__)

WHITE, GREY, BLACK = 0, 1, 2


def task_node(spec_id: str, task_id: str) -> str:
    return f"{spec_id}:{task_id}"


class DependencyGraph:
    """
    Directed graph from each node to the nodes it depends on.

    Features:
    - Dependency resolution across specifications
    - Unresolvable dependencies recorded per node (they block)
    - Iterative three-colour DFS cycle detection
    """

    def __init__(self):
        self._edges: Dict[str, List[str]] = {}
        self._complete: Set[str] = set()
        self.missing: Dict[str, List[str]] = defaultdict(list)

    def add_node(self, node: str, complete: bool = False) -> None:
        self._edges.setdefault(node, [])
        if complete:
            self._complete.add(node)

    def add_edge(self, node: str, dependency: str) -> None:
        self.add_node(node)
        self.add_node(dependency)
        if dependency not in self._edges[node]:
            self._edges[node].append(dependency)

    @property
    def nodes(self) -> List[str]:
        return list(self._edges)

    def dependencies(self, node: str) -> List[str]:
        return list(self._edges.get(node, []))

    def dependents(self, node: str) -> List[str]:
        return [n for n, deps in self._edges.items() if node in deps]

    def is_complete(self, node: str) -> bool:
        return node in self._complete

    def __contains__(self, node: str) -> bool:
        return node in self._edges

    @classmethod
    def from_documents(cls, documents: Iterable[SpecDocument]) -> 'DependencyGraph':
        documents = list(documents)
        graph = cls()
        by_spec = {doc.id: doc for doc in documents}
        owners: Dict[str, List[str]] = defaultdict(list)

        for doc in documents:
            graph.add_node(
                doc.id,
                complete=doc.status == SpecStatus.DONE or doc.all_tasks_complete
            )
            for task in doc.tasks:
                node = task_node(doc.id, task.id)
                graph.add_node(node, complete=task.is_complete)
                graph.add_edge(doc.id, node)
                owners[task.id].append(doc.id)

        for doc in documents:
            for task in doc.tasks:
                node = task_node(doc.id, task.id)
                for dependency in task.depends_on:
                    target = graph.resolve(doc, dependency, by_spec, owners)
                    if target is None:
                        graph.missing[node].append(dependency)
                    else:
                        graph.add_edge(node, target)
        return graph

    @staticmethod
    def resolve(
        doc: SpecDocument,
        dependency: str,
        by_spec: Dict[str, SpecDocument],
        owners: Dict[str, List[str]]
    ) -> Optional[str]:
        if doc.get_task(dependency) is not None:
            return task_node(doc.id, dependency)
        if dependency in by_spec:
            return dependency
        if len(owners.get(dependency, [])) == 1:
            return task_node(owners[dependency][0], dependency)
        return None

    def unmet(self, node: str) -> List[str]:
        """Dependencies of ``node`` that block it: incomplete or not found"""
        blocking = [d for d in self._edges.get(node, []) if d not in self._complete]
        return blocking + list(self.missing.get(node, []))

    def find_cycles(self) -> List[List[str]]:
        """
        Every cycle reachable in the graph, each listed once from the node
        where the search first closed it.
        """
        colour = {node: WHITE for node in self._edges}
        cycles: List[List[str]] = []

        for root in self._edges:
            if colour[root] != WHITE:
                continue
            path: List[str] = []
            stack = [(root, iter(self._edges[root]))]
            colour[root] = GREY
            path.append(root)

            while stack:
                node, children = stack[-1]
                advanced = False
                for child in children:
                    if colour[child] == WHITE:
                        colour[child] = GREY
                        path.append(child)
                        stack.append((child, iter(self._edges[child])))
                        advanced = True
                        break
                    if colour[child] == GREY:
                        cycles.append(path[path.index(child):] + [child])
                if not advanced:
                    colour[node] = BLACK
                    path.pop()
                    stack.pop()

        return cycles

    def nodes_on_cycles(self) -> Set[str]:
        return {node for cycle in self.find_cycles() for node in cycle}


def candidate_handoff(
    documents: Iterable[SpecDocument],
    spec_id: str,
    completed_task_id: str
) -> Optional[Tuple[SpecDocument, Task]]:
    """
    Task unlocked by completing ``completed_task_id`` in ``spec_id``.

    ``documents`` must already show the task as complete. Candidates depend
    on the completed task, or on its whole specification once that is done,
    in any specification. A candidate qualifies when it is neither complete
    nor in progress and nothing else blocks it. Tasks of the same
    specification win, then specification id, then document order.
    """
    documents = list(documents)
    graph = DependencyGraph.from_documents(documents)
    tasks = {
        task_node(doc.id, task.id): (doc, position, task)
        for doc in documents
        for position, task in enumerate(doc.tasks)
    }

    waiting = graph.dependents(task_node(spec_id, completed_task_id))
    if graph.is_complete(spec_id):
        waiting += graph.dependents(spec_id)

    candidates = []
    for node in dict.fromkeys(waiting):
        # Specification nodes depend on their own tasks
        if node not in tasks:
            continue
        doc, position, task = tasks[node]
        if task.is_complete or task.status == TaskStatus.IN_PROGRESS:
            continue
        if graph.unmet(node):
            continue
        candidates.append((doc.id != spec_id, doc.id, position, node))

    if not candidates:
        return None
    doc, _, task = tasks[min(candidates)[3]]
    return doc, task
