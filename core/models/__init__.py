"""
Core data models for specflow

All Pydantic models for documents, state records, results and configuration.
"""

from .documents import SpecDocument, Task, Subtask, SpecStatus, TaskStatus, Priority
from .state import (
    Representation,
    AssignmentRecord,
    AssignmentStatus,
    TaskRecord,
    SpecRecord,
    HandoffRecord,
    AuditRecord,
    TransactionOutcome,
    FieldCategory,
    VerdictStatus,
    Divergence,
    ConsistencyVerdict,
    ResolutionStrategy,
    Resolution,
    Conflict,
)
from .results import OperationResult, OperationStatus
from .config import (
    ProjectConfig,
    PathsConfig,
    WatcherConfig,
    RouterConfig,
    ConsistencyConfig,
    ArbiterConfig,
    SchedulerConfig,
    GlobalSettings,
)

__all__ = [
    # Documents
    "SpecDocument",
    "Task",
    "Subtask",
    "SpecStatus",
    "TaskStatus",
    "Priority",

    # State
    "Representation",
    "AssignmentRecord",
    "AssignmentStatus",
    "TaskRecord",
    "SpecRecord",
    "HandoffRecord",
    "AuditRecord",
    "TransactionOutcome",
    "FieldCategory",
    "VerdictStatus",
    "Divergence",
    "ConsistencyVerdict",
    "ResolutionStrategy",
    "Resolution",
    "Conflict",

    # Results
    "OperationResult",
    "OperationStatus",

    # Configuration
    "ProjectConfig",
    "PathsConfig",
    "WatcherConfig",
    "RouterConfig",
    "ConsistencyConfig",
    "ArbiterConfig",
    "SchedulerConfig",
    "GlobalSettings",
]
