"""
Helpers shared by the test suite: sample documents and a builder that wires
the core components over a temporary project.
"""

import textwrap
from dataclasses import dataclass
from pathlib import Path

from core.documents.repository import DocumentRepository
from core.models.config import SchedulerConfig
from core.scheduling.scheduler import TaskScheduler
from core.state.cache import StateCache
from core.state.store import StateStore
from core.sync.checker import ConsistencyChecker
from core.sync.transaction import SyncCoordinator
from core.tracking.tracker import WorkAssignmentTracker


FEAT_100 = textwrap.dedent("""\
    ---
    id: FEAT-100
    title: User authentication
    type: feature
    status: backlog
    priority: P1
    phase: 1
    tasks:
    - id: TASK-001
      title: Design the session schema
      status: ready
      agent_type: backend
      estimated_hours: 3
    - id: TASK-002
      title: Implement login endpoint
      status: ready
      agent_type: backend
      depends_on:
      - TASK-001
      estimated_hours: 5
    ---
    # User authentication

    Prose written by a human. It must survive every rewrite.
    """)


def spec_text(spec_id: str, tasks: str = "", status: str = "active",
              priority: str = "P2", phase: str = "1") -> str:
    """Frontmatter document with the given task block (YAML list items)"""
    block = textwrap.dedent(tasks).strip("\n") if tasks else ""
    return (
        "---\n"
        f"id: {spec_id}\n"
        f"title: {spec_id} title\n"
        "type: feature\n"
        f"status: {status}\n"
        f"priority: {priority}\n"
        f"phase: '{phase}'\n"
        + (f"tasks:\n{block}\n" if block else "tasks: []\n")
        + "---\n"
        f"Body of {spec_id}.\n"
    )


def write_spec(directory: Path, name: str, text: str) -> Path:
    """Write a document file and return its path"""
    path = directory / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@dataclass
class Workflow:
    """Core components over one temporary project"""
    root: Path
    docs_dir: Path
    state_dir: Path
    repository: DocumentRepository
    store: StateStore
    coordinator: SyncCoordinator
    checker: ConsistencyChecker
    tracker: WorkAssignmentTracker
    scheduler: TaskScheduler


async def build_workflow(root: Path, config: SchedulerConfig = None) -> Workflow:
    """Wire the core components and bring every record in line with its document"""
    docs_dir = root / "docs" / "specs"
    state_dir = root / ".specflow" / "state"
    repository = DocumentRepository(docs_dir)
    store = StateStore(state_dir, cache=StateCache())
    store.initialize()
    coordinator = SyncCoordinator(repository, store)
    checker = ConsistencyChecker(repository, store)
    tracker = WorkAssignmentTracker(repository, store, coordinator, checker, config or SchedulerConfig())
    scheduler = TaskScheduler(tracker)

    documents = await repository.load_all()
    if documents:
        await coordinator.rebuild_records(list(documents.values()))

    return Workflow(
        root=root,
        docs_dir=docs_dir,
        state_dir=state_dir,
        repository=repository,
        store=store,
        coordinator=coordinator,
        checker=checker,
        tracker=tracker,
        scheduler=scheduler,
    )
