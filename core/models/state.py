"""
Workflow state models.

Covers the fast-query records persisted in the state directory, the
assignment and handoff records owned by the tracker, and the verdict and
conflict models produced by the consistency pipeline.
"""

import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, computed_field

from .documents import Priority, SpecStatus, TaskStatus


class Representation(str, Enum):
    """The two independently writable representations of an entity"""
    DOCUMENT = "document"
    RECORD = "record"

    @property
    def other(self) -> 'Representation':
        if self is Representation.DOCUMENT:
            return Representation.RECORD
        return Representation.DOCUMENT


class AssignmentStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    RELEASED = "released"


class AssignmentRecord(BaseModel):
    """An agent's claim on a task"""
    model_config = ConfigDict(validate_assignment=True)

    spec_id: str
    task_id: str
    worker: str
    started_at: datetime = Field(default_factory=datetime.now)
    status: AssignmentStatus = AssignmentStatus.IN_PROGRESS
    priority: Optional[Priority] = None
    estimated_hours: Optional[float] = None
    completed_at: Optional[datetime] = None
    duration_hours: Optional[float] = None
    notes: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.spec_id, self.task_id)

    def close(self, completed_at: Optional[datetime] = None,
              status: AssignmentStatus = AssignmentStatus.COMPLETE) -> 'AssignmentRecord':
        """Return a closed copy with duration in hours rounded to 2 places"""
        completed_at = completed_at or datetime.now()
        duration = (completed_at - self.started_at).total_seconds() / 3600
        return self.model_copy(update={
            "status": status,
            "completed_at": completed_at,
            "duration_hours": round(duration, 2),
        })


class TaskRecord(BaseModel):
    """Fast-query record of a single task"""
    status: TaskStatus = TaskStatus.READY
    assigned_agent: Optional[str] = None
    depends_on: List[str] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


class SpecRecord(BaseModel):
    """Fast-query record of a specification and its tasks"""
    status: SpecStatus = SpecStatus.BACKLOG
    priority: Priority = Priority.P2
    phase: Optional[str] = None
    completed: int = 0
    total: int = 0
    percentage: int = 0
    updated_at: Optional[datetime] = None
    tasks: Dict[str, TaskRecord] = Field(default_factory=dict)


class HandoffRecord(BaseModel):
    """Transition point where completing one task unblocks another"""
    spec_id: str
    from_task: str
    # Set when the completed task lives in another specification
    from_spec_id: Optional[str] = None
    to_task: str
    next_agent: Optional[str] = None
    reason: str = ""
    ready_at: datetime = Field(default_factory=datetime.now)
    acknowledged: bool = False
    context: Dict[str, Any] = Field(default_factory=dict)


class TransactionOutcome(str, Enum):
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


class AuditRecord(BaseModel):
    """One entry in the append-only audit log"""
    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=datetime.now)
    transaction_id: Optional[str] = None
    action: str = "transaction"
    entity: Optional[str] = None
    fields: List[str] = Field(default_factory=list)
    files: List[str] = Field(default_factory=list)
    outcome: Optional[TransactionOutcome] = TransactionOutcome.COMMITTED
    error: Optional[str] = None
    reasoning: Optional[str] = None
    duration_ms: Optional[float] = None


class FieldCategory(str, Enum):
    """Whether a divergent field is safe to repair automatically"""
    SIMPLE = "simple"
    STRUCTURAL = "structural"


class VerdictStatus(str, Enum):
    CONSISTENT = "consistent"
    AUTO_REPAIRABLE = "auto_repairable"
    AUTO_REPAIRED = "auto_repaired"
    CONFLICT = "conflict"


class Divergence(BaseModel):
    """A field whose value differs between the two representations"""
    task_id: Optional[str] = None
    field: str
    document_value: Any = None
    record_value: Any = None
    category: FieldCategory = FieldCategory.SIMPLE
    confidence: float = 1.0

    @property
    def path(self) -> str:
        if self.task_id:
            return f"tasks.{self.task_id}.{self.field}"
        return self.field

    def value_for(self, representation: Representation) -> Any:
        if representation is Representation.DOCUMENT:
            return self.document_value
        return self.record_value


class ConsistencyVerdict(BaseModel):
    """Result of comparing both representations of one specification"""
    verdict_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    spec_id: str
    status: VerdictStatus
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    divergences: List[Divergence] = Field(default_factory=list)
    source: Representation = Representation.DOCUMENT
    document_path: Optional[Path] = None
    document_written_at: Optional[datetime] = None
    record_written_at: Optional[datetime] = None
    orphan_record: bool = False
    checked_at: datetime = Field(default_factory=datetime.now)

    @computed_field
    @property
    def task_ids(self) -> List[str]:
        seen: List[str] = []
        for divergence in self.divergences:
            if divergence.task_id and divergence.task_id not in seen:
                seen.append(divergence.task_id)
        return seen

    @property
    def is_consistent(self) -> bool:
        return self.status in (VerdictStatus.CONSISTENT, VerdictStatus.AUTO_REPAIRED)

    @property
    def needs_propagation(self) -> bool:
        return self.status == VerdictStatus.AUTO_REPAIRABLE


class ResolutionStrategy(str, Enum):
    AUTO_REPAIR = "auto_repair"
    RECENCY = "recency"
    PRECEDENCE = "precedence"
    MANUAL = "manual"


class Resolution(BaseModel):
    """Candidate outcome: take every divergent value from one side"""
    source: Representation
    values: Dict[str, Any] = Field(default_factory=dict)


class Conflict(BaseModel):
    """A verdict that could not be repaired silently"""
    conflict_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    verdict: ConsistencyVerdict
    candidates: List[Resolution] = Field(default_factory=list)
    chosen: Optional[Resolution] = None
    strategy: Optional[ResolutionStrategy] = None
    reasoning: Optional[str] = None
    manual: bool = False
    created_at: datetime = Field(default_factory=datetime.now)
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    backup_id: Optional[str] = None

    @property
    def confidence(self) -> float:
        return self.verdict.confidence

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    @classmethod
    def from_verdict(cls, verdict: ConsistencyVerdict) -> 'Conflict':
        """Build a conflict with one candidate resolution per representation"""
        candidates = []
        for side in (Representation.DOCUMENT, Representation.RECORD):
            candidates.append(Resolution(
                source=side,
                values={d.path: d.value_for(side) for d in verdict.divergences}
            ))
        return cls(verdict=verdict, candidates=candidates)

    def candidate_for(self, side: Representation) -> Optional[Resolution]:
        for candidate in self.candidates:
            if candidate.source == side:
                return candidate
        return None
