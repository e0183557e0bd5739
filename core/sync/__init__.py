"""
Document/record synchronization.

Key Components:
- ChangeWatcher: Debounced file monitoring over documents and state
- ChangeClassifier: Field-level description of what a change did
- ConsistencyChecker: Verdicts with an explicit confidence rubric
- EventRouter: Per-subscriber channels with circuit breaking
- SyncCoordinator: Atomic multi-file transactions with rollback
- ConflictArbiter: Resolution strategies, backups and the manual queue

The WorkflowSyncEngine that wires these together lives in
``core.sync.engine``; it also depends on the tracking and scheduling
packages, so it is not imported here.
"""

from .events import ChangeEvent, ChangeKind, EventCategory, RoutedEvent, Severity
from .watcher import ChangeWatcher
from .classifier import ChangeClassifier, ChangeDescription, DescriptionKind, FieldChange, Impact
from .checker import ConsistencyChecker, compare_representations
from .router import EventRouter, Subscriber, DeadLetter, CircuitState
from .transaction import SyncCoordinator, Transaction, TransactionState
from .arbiter import ConflictArbiter

__all__ = [
    "ChangeEvent",
    "ChangeKind",
    "EventCategory",
    "RoutedEvent",
    "Severity",
    "ChangeWatcher",
    "ChangeClassifier",
    "ChangeDescription",
    "DescriptionKind",
    "FieldChange",
    "Impact",
    "ConsistencyChecker",
    "compare_representations",
    "EventRouter",
    "Subscriber",
    "DeadLetter",
    "CircuitState",
    "SyncCoordinator",
    "Transaction",
    "TransactionState",
    "ConflictArbiter",
]
