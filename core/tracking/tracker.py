"""
Work Assignment Tracker.

Owns assignment, completion and handoff bookkeeping. Every mutation is a
single SyncCoordinator transaction covering the document, its record and the
assignment and handoff state, so either all of them change or none do.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..documents.repository import DocumentRepository
from ..errors import (
    AssignmentConflict, CapacityExceeded, DependencyViolation, EntityNotFound,
    NotAssignedError, WorkflowError
)
from ..models.config import SchedulerConfig
from ..models.documents import SpecDocument, SpecStatus, Task, TaskStatus
from ..models.results import OperationResult
from ..models.state import AssignmentRecord, ConsistencyVerdict, HandoffRecord
from ..scheduling.graph import DependencyGraph, candidate_handoff, task_node
from ..state.store import StateStore
from ..sync.checker import ConsistencyChecker
from ..sync.events import EventCategory, RoutedEvent, Severity
from ..sync.transaction import SyncCoordinator
from .progress import ProjectProgress, SpecProgress, calculate_project_progress, calculate_spec_progress

logger = logging.getLogger(__name__)


@dataclass
class CompletionOutcome:
    """Closed assignment plus the handoff it unlocked, if any"""
    record: AssignmentRecord
    handoff: Optional[HandoffRecord] = None


@dataclass
class WorkerLoad:
    worker: str
    open_assignments: int = 0
    estimated_hours: float = 0.0
    tasks: List[str] = field(default_factory=list)


@dataclass
class AssignmentSummary:
    """Open assignments with per-worker workload"""
    assignments: List[AssignmentRecord]
    workload: Dict[str, WorkerLoad]

    @property
    def total(self) -> int:
        return len(self.assignments)


@dataclass
class StateReport:
    """Side-effect free summary of workflow health"""
    verdicts: List[ConsistencyVerdict] = field(default_factory=list)
    cycles: List[List[str]] = field(default_factory=list)
    stale_handoffs: List[HandoffRecord] = field(default_factory=list)
    assignment_mismatches: List[str] = field(default_factory=list)
    parse_errors: Dict[str, str] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=datetime.now)

    @property
    def inconsistent(self) -> List[ConsistencyVerdict]:
        return [v for v in self.verdicts if not v.is_consistent]

    @property
    def is_consistent(self) -> bool:
        return not (self.inconsistent or self.cycles or self.assignment_mismatches)

    def to_dict(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for verdict in self.verdicts:
            counts[verdict.status.value] = counts.get(verdict.status.value, 0) + 1
        return {
            "consistent": self.is_consistent,
            "verdicts": counts,
            "inconsistent": [
                {"spec_id": v.spec_id, "status": v.status.value, "confidence": v.confidence,
                 "fields": [d.path for d in v.divergences]}
                for v in self.inconsistent
            ],
            "cycles": self.cycles,
            "stale_handoffs": [h.model_dump(mode="json") for h in self.stale_handoffs],
            "assignment_mismatches": self.assignment_mismatches,
            "parse_errors": self.parse_errors,
            "checked_at": self.checked_at.isoformat(),
        }


class WorkAssignmentTracker:
    """
    Assignment lifecycle, progress queries and handoffs.

    Features:
    - Dependency, capacity and double-assignment checks before any write
    - One transaction per mutation across document and state files
    - Handoff detection on completion
    - Progress always recomputed from documents
    - Side-effect free state validation
    """

    def __init__(
        self,
        repository: DocumentRepository,
        store: StateStore,
        coordinator: SyncCoordinator,
        checker: Optional[ConsistencyChecker] = None,
        config: Optional[SchedulerConfig] = None
    ):
        self.repository = repository
        self.store = store
        self.coordinator = coordinator
        self.checker = checker or ConsistencyChecker(repository, store)
        self.config = config or SchedulerConfig()
        self._lock = asyncio.Lock()

    # Lookups

    async def _require_document(self, spec_id: str) -> SpecDocument:
        document = await self.repository.get(spec_id)
        if document is None:
            raise EntityNotFound(f"Unknown specification {spec_id}", details={"spec_id": spec_id})
        return document

    @staticmethod
    def _require_task(document: SpecDocument, task_id: str) -> Task:
        task = document.get_task(task_id)
        if task is None:
            raise EntityNotFound(
                f"Unknown task {task_id} in {document.id}",
                details={"spec_id": document.id, "task_id": task_id}
            )
        return task

    async def load_documents(self) -> Dict[str, SpecDocument]:
        return await self.repository.load_all()

    async def workload_for(self, worker: str) -> int:
        """Number of open assignments held by ``worker``"""
        return sum(1 for r in await self.store.get_current_assignments() if r.worker == worker)

    async def _timed(self, operation: str, coro) -> OperationResult:
        start = time.perf_counter()
        try:
            data = await coro
        except WorkflowError as e:
            logger.warning(f"{operation} failed: {e.message}")
            return OperationResult.from_exception(
                e, operation, processing_time_ms=(time.perf_counter() - start) * 1000
            )
        return OperationResult.success_result(
            data, operation, processing_time_ms=(time.perf_counter() - start) * 1000
        )

    async def _publish(self, category: EventCategory, document: SpecDocument, payload: Any) -> None:
        router = self.coordinator.router
        if router is None:
            return
        await router.publish(RoutedEvent(
            category=category,
            severity=Severity.INFO,
            source_path=str(document.source_path) if document.source_path else document.id,
            payload=payload,
        ))

    # Mutations

    async def assign_task(
        self,
        spec_id: str,
        task_id: str,
        worker: str,
        *,
        estimated_hours: Optional[float] = None,
        notes: Optional[str] = None,
        force: bool = False
    ) -> OperationResult:
        """
        Claim a task for a worker.

        Args:
            spec_id: Specification id
            task_id: Task id within the specification
            worker: Worker (agent) identifier
            estimated_hours: Overrides the task's own estimate
            notes: Free-form assignment notes
            force: Skip the dependency check

        Returns:
            OperationResult carrying the AssignmentRecord
        """
        return await self._timed(
            "assign_task",
            self._assign(spec_id, task_id, worker, estimated_hours, notes, force)
        )

    async def _assign(
        self,
        spec_id: str,
        task_id: str,
        worker: str,
        estimated_hours: Optional[float],
        notes: Optional[str],
        force: bool
    ) -> AssignmentRecord:
        async with self._lock:
            documents = await self.load_documents()
            document = documents.get(spec_id) or await self._require_document(spec_id)
            task = self._require_task(document, task_id)

            assignments = await self.store.load("assignments")
            current = assignments.setdefault("current_assignments", {})
            existing = current.get(spec_id, {}).get(task_id)
            if existing is not None:
                raise AssignmentConflict(
                    f"{spec_id}/{task_id} is already assigned to {existing.get('worker')}",
                    details={"spec_id": spec_id, "task_id": task_id, "worker": existing.get("worker")}
                )
            if task.is_complete:
                raise AssignmentConflict(
                    f"{spec_id}/{task_id} is already complete",
                    details={"spec_id": spec_id, "task_id": task_id}
                )

            if not force:
                graph = DependencyGraph.from_documents(documents.values())
                unmet = graph.unmet(task_node(spec_id, task_id))
                if unmet:
                    raise DependencyViolation(
                        f"{spec_id}/{task_id} has unmet dependencies: {', '.join(unmet)}",
                        details={"spec_id": spec_id, "task_id": task_id, "unmet": unmet}
                    )

            held = sum(
                1 for tasks in current.values() for raw in tasks.values()
                if raw.get("worker") == worker
            )
            if held >= self.config.capacity_limit:
                raise CapacityExceeded(
                    f"{worker} already holds {held} assignment(s) (limit {self.config.capacity_limit})",
                    details={"worker": worker, "held": held, "limit": self.config.capacity_limit}
                )

            record = AssignmentRecord(
                spec_id=spec_id,
                task_id=task_id,
                worker=worker,
                priority=document.priority,
                estimated_hours=estimated_hours if estimated_hours is not None else task.estimated_hours,
                notes=notes,
            )

            updated = document.model_copy(deep=True)
            updated_task = updated.get_task(task_id)
            updated_task.status = TaskStatus.IN_PROGRESS
            updated_task.assigned_agent = worker
            if updated.status == SpecStatus.BACKLOG:
                updated.status = SpecStatus.ACTIVE

            current.setdefault(spec_id, {})[task_id] = record.model_dump(mode="json")
            await self.coordinator.apply_task_changes(
                updated,
                fields=[f"tasks.{task_id}.status", f"tasks.{task_id}.assigned_agent"],
                assignments=assignments,
                action="assign_task",
                reasoning=f"{task_id} assigned to {worker}",
            )

        logger.info(f"Assigned {spec_id}/{task_id} to {worker}")
        await self._publish(EventCategory.ASSIGNMENT, updated, record)
        return record

    async def complete_task(
        self,
        spec_id: str,
        task_id: str,
        *,
        notes: Optional[str] = None
    ) -> OperationResult:
        """
        Complete an assigned task and detect the handoff it unlocks.

        Returns:
            OperationResult carrying a CompletionOutcome
        """
        return await self._timed("complete_task", self._complete(spec_id, task_id, notes))

    async def _complete(self, spec_id: str, task_id: str, notes: Optional[str]) -> CompletionOutcome:
        async with self._lock:
            document = await self._require_document(spec_id)
            self._require_task(document, task_id)

            assignments = await self.store.load("assignments")
            current = assignments.setdefault("current_assignments", {})
            raw = current.get(spec_id, {}).get(task_id)
            if raw is None:
                raise NotAssignedError(
                    f"{spec_id}/{task_id} has no open assignment",
                    details={"spec_id": spec_id, "task_id": task_id}
                )

            record = AssignmentRecord.model_validate({"spec_id": spec_id, "task_id": task_id, **raw})
            closed = record.close()
            if notes:
                closed = closed.model_copy(update={"notes": notes})

            del current[spec_id][task_id]
            if not current[spec_id]:
                del current[spec_id]
            assignments.setdefault("assignment_history", []).append(closed.model_dump(mode="json"))

            updated = document.model_copy(deep=True)
            updated_task = updated.get_task(task_id)
            updated_task.status = TaskStatus.COMPLETE
            updated_task.subtasks = [s.model_copy(update={"completed": True}) for s in updated_task.subtasks]

            handoff = None
            handoffs = None
            related: List[SpecDocument] = []
            documents = await self.load_documents()
            documents[spec_id] = updated
            found = candidate_handoff(documents.values(), spec_id, task_id)
            if found is not None:
                target, next_task = found
                if target.id != spec_id:
                    target = target.model_copy(deep=True)
                    next_task = target.get_task(next_task.id)
                    related.append(target)
                if next_task.status == TaskStatus.BLOCKED:
                    next_task.status = TaskStatus.READY
                handoff = self._build_handoff(target, spec_id, task_id, next_task, closed)
                handoffs = await self.store.load("handoffs")
                handoffs.setdefault("ready_handoffs", []).append(handoff.model_dump(mode="json"))

            if updated.all_tasks_complete:
                updated.status = SpecStatus.DONE

            fields = [f"tasks.{task_id}.status"]
            if handoff is not None:
                prefix = f"{handoff.spec_id}:" if related else ""
                fields.append(f"{prefix}tasks.{handoff.to_task}.status")
            await self.coordinator.apply_task_changes(
                updated,
                fields=fields,
                assignments=assignments,
                handoffs=handoffs,
                action="complete_task",
                reasoning=f"{task_id} completed by {closed.worker} in {closed.duration_hours}h",
                related=related,
            )

        logger.info(
            f"Completed {spec_id}/{task_id} ({closed.duration_hours}h)"
            + (f"; handoff to {handoff.spec_id}/{handoff.to_task}" if handoff else "")
        )
        await self._publish(EventCategory.ASSIGNMENT, updated, closed)
        if handoff is not None:
            await self._publish(EventCategory.HANDOFF, related[0] if related else updated, handoff)
        return CompletionOutcome(record=closed, handoff=handoff)

    @staticmethod
    def _build_handoff(
        document: SpecDocument,
        from_spec_id: str,
        from_task: str,
        next_task: Task,
        closed: AssignmentRecord
    ) -> HandoffRecord:
        dependencies = []
        for dep_id in next_task.depends_on:
            unlocked = dep_id in (from_task, from_spec_id)
            dependencies.append({
                "task_id": dep_id,
                "completed_by": closed.worker if unlocked else None,
                "notes": closed.notes if unlocked else None,
            })
        return HandoffRecord(
            spec_id=document.id,
            from_task=from_task,
            from_spec_id=from_spec_id if from_spec_id != document.id else None,
            to_task=next_task.id,
            next_agent=next_task.agent_type or "unspecified",
            reason=f"Task {from_task} completed, {next_task.id} is now ready",
            context={
                "task": {
                    "id": next_task.id,
                    "title": next_task.title,
                    "agent_type": next_task.agent_type,
                    "estimated_hours": next_task.estimated_hours,
                },
                "spec": {
                    "id": document.id,
                    "title": document.title,
                    "priority": document.priority.value,
                    "phase": document.phase,
                },
                "dependencies": dependencies,
            },
        )

    async def complete_subtask(self, spec_id: str, task_id: str, subtask_id: str) -> OperationResult:
        """Tick one subtask; returns the spec's recomputed progress"""
        return await self._timed("complete_subtask", self._complete_subtask(spec_id, task_id, subtask_id))

    async def _complete_subtask(self, spec_id: str, task_id: str, subtask_id: str) -> SpecProgress:
        async with self._lock:
            document = await self._require_document(spec_id)
            task = self._require_task(document, task_id)
            if task.get_subtask(subtask_id) is None:
                raise EntityNotFound(
                    f"Unknown subtask {subtask_id} in {spec_id}/{task_id}",
                    details={"spec_id": spec_id, "task_id": task_id, "subtask_id": subtask_id}
                )

            updated = document.model_copy(deep=True)
            updated_task = updated.get_task(task_id)
            updated_task.subtasks = [
                s.model_copy(update={"completed": True}) if s.id == subtask_id else s
                for s in updated_task.subtasks
            ]
            await self.coordinator.apply_task_changes(
                updated,
                fields=[f"tasks.{task_id}.subtasks.{subtask_id}.completed"],
                action="complete_subtask",
                reasoning=f"subtask {subtask_id} of {task_id} completed",
            )
        return calculate_spec_progress(updated)

    async def update_task_progress(
        self,
        spec_id: str,
        task_id: str,
        *,
        status: Optional[TaskStatus] = None,
        assigned_agent: Optional[str] = None
    ) -> OperationResult:
        """Set a task's status and/or assigned agent in both representations"""
        return await self._timed(
            "update_task_progress",
            self._update_task(spec_id, task_id, status, assigned_agent)
        )

    async def _update_task(
        self,
        spec_id: str,
        task_id: str,
        status: Optional[TaskStatus],
        assigned_agent: Optional[str]
    ) -> Task:
        async with self._lock:
            document = await self._require_document(spec_id)
            self._require_task(document, task_id)

            updated = document.model_copy(deep=True)
            updated_task = updated.get_task(task_id)
            fields = []
            if status is not None:
                updated_task.status = TaskStatus(status)
                fields.append(f"tasks.{task_id}.status")
            if assigned_agent is not None:
                updated_task.assigned_agent = assigned_agent
                fields.append(f"tasks.{task_id}.assigned_agent")
            if not fields:
                return updated_task

            await self.coordinator.apply_task_changes(
                updated, fields=fields, action="update_task_progress",
                reasoning=f"updated {', '.join(fields)}",
            )
        return updated_task

    async def sync_from_documents(self) -> OperationResult:
        """Rebuild every record from its document; returns the record count"""
        return await self._timed("sync_from_documents", self._sync_from_documents())

    async def _sync_from_documents(self) -> int:
        async with self._lock:
            documents = await self.load_documents()
            await self.coordinator.rebuild_records(list(documents.values()))
        logger.info(f"Rebuilt {len(documents)} record(s) from documents")
        return len(documents)

    # Handoffs

    async def get_ready_handoffs(self, next_agent: Optional[str] = None) -> List[HandoffRecord]:
        handoffs = await self.store.get_ready_handoffs()
        pending = [h for h in handoffs if not h.acknowledged]
        if next_agent is not None:
            pending = [h for h in pending if h.next_agent == next_agent]
        return pending

    async def acknowledge_handoff(self, spec_id: str, to_task: str) -> OperationResult:
        """Move a ready handoff into history"""
        return await self._timed("acknowledge_handoff", self._acknowledge(spec_id, to_task))

    async def _acknowledge(self, spec_id: str, to_task: str) -> HandoffRecord:
        async with self._lock:
            handoffs = await self.store.load("handoffs")
            ready = handoffs.setdefault("ready_handoffs", [])
            for index, raw in enumerate(ready):
                if raw.get("spec_id") == spec_id and raw.get("to_task") == to_task:
                    break
            else:
                raise EntityNotFound(
                    f"No ready handoff to {spec_id}/{to_task}",
                    details={"spec_id": spec_id, "to_task": to_task}
                )
            handoff = HandoffRecord.model_validate(ready.pop(index)).model_copy(update={"acknowledged": True})
            handoffs.setdefault("handoff_history", []).append(handoff.model_dump(mode="json"))
            await self.coordinator.write(
                entity=spec_id,
                fields=[f"handoffs.{to_task}"],
                state={"handoffs": handoffs},
                action="acknowledge_handoff",
                reasoning=f"handoff {handoff.from_task} -> {to_task} acknowledged",
            )
        return handoff

    # Queries

    async def get_project_progress(self) -> OperationResult:
        return await self._timed("get_project_progress", self._project_progress())

    async def _project_progress(self) -> ProjectProgress:
        documents = await self.load_documents()
        return calculate_project_progress(documents.values())

    async def get_spec_progress(self, spec_id: str) -> OperationResult:
        return await self._timed("get_spec_progress", self._spec_progress(spec_id))

    async def _spec_progress(self, spec_id: str) -> SpecProgress:
        return calculate_spec_progress(await self._require_document(spec_id))

    async def get_current_assignments(self, worker: Optional[str] = None) -> OperationResult:
        return await self._timed("get_current_assignments", self._current_assignments(worker))

    async def _current_assignments(self, worker: Optional[str]) -> AssignmentSummary:
        records = await self.store.get_current_assignments()
        if worker is not None:
            records = [r for r in records if r.worker == worker]

        workload: Dict[str, WorkerLoad] = {}
        for record in records:
            load = workload.setdefault(record.worker, WorkerLoad(worker=record.worker))
            load.open_assignments += 1
            load.estimated_hours += record.estimated_hours or 0.0
            load.tasks.append(f"{record.spec_id}/{record.task_id}")
        return AssignmentSummary(assignments=records, workload=workload)

    async def validate_state(self) -> OperationResult:
        """Check every entity, the dependency graph, handoffs and assignments"""
        return await self._timed("validate_state", self._validate_state())

    async def _validate_state(self) -> StateReport:
        documents = await self.load_documents()
        report = StateReport(
            verdicts=await self.checker.check_all(),
            parse_errors={str(path): error for path, error in self.repository.parse_errors.items()},
        )

        graph = DependencyGraph.from_documents(documents.values())
        report.cycles = graph.find_cycles()

        cutoff = datetime.now() - timedelta(hours=self.config.stale_handoff_hours)
        report.stale_handoffs = [
            h for h in await self.store.get_ready_handoffs()
            if not h.acknowledged and h.ready_at < cutoff
        ]

        open_records = await self.store.get_current_assignments()
        claimed = set()
        for record in open_records:
            claimed.add(record.key)
            document = documents.get(record.spec_id)
            task = document.get_task(record.task_id) if document else None
            if task is None:
                report.assignment_mismatches.append(
                    f"{record.spec_id}/{record.task_id}: assigned to {record.worker} but task not found"
                )
            elif task.status != TaskStatus.IN_PROGRESS:
                report.assignment_mismatches.append(
                    f"{record.spec_id}/{record.task_id}: assigned to {record.worker} but status is {task.status.value}"
                )
            elif task.assigned_agent != record.worker:
                report.assignment_mismatches.append(
                    f"{record.spec_id}/{record.task_id}: assigned to {record.worker} but document names {task.assigned_agent}"
                )

        for document in documents.values():
            for task in document.tasks:
                if task.status == TaskStatus.IN_PROGRESS and (document.id, task.id) not in claimed:
                    report.assignment_mismatches.append(
                        f"{document.id}/{task.id}: in progress without an open assignment"
                    )

        if not report.is_consistent:
            logger.warning(
                f"State validation found {len(report.inconsistent)} inconsistent entit(ies), "
                f"{len(report.cycles)} cycle(s), {len(report.assignment_mismatches)} mismatch(es)"
            )
        return report

    def get_status(self) -> Dict[str, Any]:
        return {
            "capacity_limit": self.config.capacity_limit,
            "busy": self._lock.locked(),
            "transactions": self.coordinator.get_status(),
        }
