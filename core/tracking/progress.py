"""
Progress computation.

Progress is always recomputed from document content. Task counts are
used unless every task is broken into subtasks; in mixed documents an
incomplete task earns partial credit for its completed subtasks.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from ..models.documents import SpecDocument, SpecStatus
from ..models.state import SpecRecord, TaskRecord


@dataclass
class SpecProgress:
    """Progress of a single specification"""
    spec_id: str
    completed: int
    total: int
    percentage: int
    counting_subtasks: bool = False
    status: Optional[str] = None
    phase: Optional[str] = None
    main_tasks: int = 0
    completed_tasks: int = 0
    total_subtasks: int = 0
    completed_subtasks: int = 0

    @property
    def item_type(self) -> str:
        return "subtasks" if self.counting_subtasks else "tasks"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "spec_id": self.spec_id,
            "completed": self.completed,
            "total": self.total,
            "percentage": self.percentage,
            "item_type": self.item_type,
            "status": self.status,
            "phase": self.phase,
            "task_breakdown": {
                "main_tasks": self.main_tasks,
                "completed_tasks": self.completed_tasks,
                "total_subtasks": self.total_subtasks,
                "completed_subtasks": self.completed_subtasks,
            },
        }


@dataclass
class ProjectProgress:
    """Aggregated progress across all specifications"""
    completed: int = 0
    total: int = 0
    percentage: int = 0
    by_spec: Dict[str, SpecProgress] = field(default_factory=dict)
    by_phase: Dict[str, Dict[str, int]] = field(default_factory=dict)
    computed_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completed": self.completed,
            "total": self.total,
            "percentage": self.percentage,
            "by_spec": {k: v.to_dict() for k, v in self.by_spec.items()},
            "by_phase": self.by_phase,
            "computed_at": self.computed_at.isoformat(),
        }


def _percent(completed: float, total: int) -> int:
    return round(completed / total * 100) if total > 0 else 0


def calculate_spec_progress(document: SpecDocument) -> SpecProgress:
    """Compute progress for one document"""
    tasks = document.tasks
    status = document.status.value

    if not tasks:
        done = 1 if document.status == SpecStatus.DONE else 0
        return SpecProgress(
            spec_id=document.id, completed=done, total=1,
            percentage=100 * done, status=status, phase=document.phase
        )

    total_subtasks = sum(len(t.subtasks) for t in tasks)
    tasks_without_subtasks = sum(1 for t in tasks if not t.subtasks)
    completed_tasks = sum(1 for t in tasks if t.is_complete)
    completed_subtasks = sum(sum(1 for s in t.subtasks if s.completed) for t in tasks)

    counting_subtasks = False
    if total_subtasks == 0:
        total = len(tasks)
        completed: float = completed_tasks
    elif tasks_without_subtasks == 0:
        total = total_subtasks
        completed = completed_subtasks
        counting_subtasks = True
    else:
        total = len(tasks)
        completed = 0.0
        for task in tasks:
            if task.is_complete:
                completed += 1
            elif task.subtasks:
                completed += sum(1 for s in task.subtasks if s.completed) / len(task.subtasks)

    return SpecProgress(
        spec_id=document.id,
        completed=round(completed),
        total=total,
        percentage=_percent(completed, total),
        counting_subtasks=counting_subtasks,
        status=status,
        phase=document.phase,
        main_tasks=len(tasks),
        completed_tasks=completed_tasks,
        total_subtasks=total_subtasks,
        completed_subtasks=completed_subtasks,
    )


def calculate_project_progress(documents: Iterable[SpecDocument]) -> ProjectProgress:
    """Compute project-wide progress with a per-phase breakdown"""
    progress = ProjectProgress()
    for document in documents:
        spec_progress = calculate_spec_progress(document)
        progress.by_spec[document.id] = spec_progress
        progress.completed += spec_progress.completed
        progress.total += spec_progress.total

        phase = document.phase or "unphased"
        bucket = progress.by_phase.setdefault(phase, {"completed": 0, "total": 0, "percentage": 0})
        bucket["completed"] += spec_progress.completed
        bucket["total"] += spec_progress.total

    for bucket in progress.by_phase.values():
        bucket["percentage"] = _percent(bucket["completed"], bucket["total"])
    progress.percentage = _percent(progress.completed, progress.total)
    return progress


def build_spec_record(
    document: SpecDocument,
    previous: Optional[SpecRecord] = None,
    now: Optional[datetime] = None
) -> SpecRecord:
    """
    Build the fast-query record mirroring a document.

    Task records whose values did not change keep their previous
    ``updated_at`` so recency comparisons stay meaningful.
    """
    now = now or datetime.now()
    previous_tasks = previous.tasks if previous else {}

    tasks: Dict[str, TaskRecord] = {}
    for task in document.tasks:
        candidate = TaskRecord(
            status=task.status,
            assigned_agent=task.assigned_agent,
            depends_on=list(task.depends_on),
        )
        old = previous_tasks.get(task.id)
        if old is not None and (
            old.status == candidate.status
            and old.assigned_agent == candidate.assigned_agent
            and old.depends_on == candidate.depends_on
        ):
            candidate.updated_at = old.updated_at or now
        else:
            candidate.updated_at = now
        tasks[task.id] = candidate

    progress = calculate_spec_progress(document)
    return SpecRecord(
        status=document.status,
        priority=document.priority,
        phase=document.phase,
        completed=progress.completed,
        total=progress.total,
        percentage=progress.percentage,
        updated_at=now,
        tasks=tasks,
    )


def refresh_progress_totals(progress_data: Dict[str, Any]) -> Dict[str, Any]:
    """Recompute the overall and by-phase sections of progress.json from its records"""
    overall = {"completed": 0, "total": 0, "percentage": 0}
    by_phase: Dict[str, Dict[str, int]] = {}

    for record in progress_data.get("by_spec", {}).values():
        completed = int(record.get("completed", 0))
        total = int(record.get("total", 0))
        overall["completed"] += completed
        overall["total"] += total
        phase = record.get("phase") or "unphased"
        bucket = by_phase.setdefault(phase, {"completed": 0, "total": 0, "percentage": 0})
        bucket["completed"] += completed
        bucket["total"] += total

    overall["percentage"] = _percent(overall["completed"], overall["total"])
    for bucket in by_phase.values():
        bucket["percentage"] = _percent(bucket["completed"], bucket["total"])

    progress_data["overall"] = overall
    progress_data["by_phase"] = by_phase
    return progress_data
