"""
Change and routing event models.

Defines the debounced file change events produced by the watcher and the
routed events carried by the event router between pipeline stages.
"""

import itertools
from datetime import datetime
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, field_validator
import uuid


class ChangeKind(Enum):
    """Types of file changes that trigger synchronization"""
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"

    def merge(self, later: 'ChangeKind') -> 'ChangeKind':
        """
        Coalesce two changes to the same path into one.

        A create followed by modifications is still a create, anything
        followed by a delete is a delete, and a delete followed by a create
        is a modification of the original file.
        """
        if later is ChangeKind.DELETE:
            return ChangeKind.DELETE
        if self is ChangeKind.DELETE and later is ChangeKind.CREATE:
            return ChangeKind.MODIFY
        if self is ChangeKind.CREATE:
            return ChangeKind.CREATE
        return later


class ChangeEvent(BaseModel):
    """
    A debounced change to a single watched path.

    Produced once by the watcher and consumed once by the classifier, which
    fills in ``raw_diff`` from its previous snapshot of the path.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    path: Path
    kind: ChangeKind
    discovered_at: datetime = Field(default_factory=datetime.now)
    raw_diff: Optional[str] = None

    # Number of raw notifications coalesced into this event
    coalesced: int = 1

    @field_validator('path')
    @classmethod
    def validate_path(cls, v: Path) -> Path:
        """Ensure path is absolute"""
        if not v.is_absolute():
            raise ValueError('Path must be absolute')
        return v

    @classmethod
    def created(cls, path: Path, **kwargs) -> 'ChangeEvent':
        return cls(path=path, kind=ChangeKind.CREATE, **kwargs)

    @classmethod
    def modified(cls, path: Path, **kwargs) -> 'ChangeEvent':
        return cls(path=path, kind=ChangeKind.MODIFY, **kwargs)

    @classmethod
    def deleted(cls, path: Path, **kwargs) -> 'ChangeEvent':
        return cls(path=path, kind=ChangeKind.DELETE, **kwargs)

    def merge(self, later: 'ChangeEvent') -> 'ChangeEvent':
        """Fold a later notification for the same path into this one"""
        return self.model_copy(update={
            "kind": self.kind.merge(later.kind),
            "discovered_at": later.discovered_at,
            "coalesced": self.coalesced + later.coalesced,
        })

    def __str__(self) -> str:
        return f"ChangeEvent({self.kind.value}: {self.path})"


class Severity(IntEnum):
    """
    Delivery tiers for routed events.

    Lower numeric values are delivered first.
    """
    ERROR = 1
    WARNING = 2
    INFO = 3


class EventCategory(Enum):
    """What a routed event is about; subscribers declare the ones they accept"""
    CHANGE = "change"
    VERDICT = "verdict"
    CONFLICT = "conflict"
    TRANSACTION = "transaction"
    ASSIGNMENT = "assignment"
    HANDOFF = "handoff"


_sequence = itertools.count()


class RoutedEvent(BaseModel):
    """An event published through the event router"""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    category: EventCategory
    severity: Severity = Severity.INFO
    source_path: Optional[str] = None
    payload: Any = None
    timestamp: datetime = Field(default_factory=datetime.now)
    sequence: int = Field(default_factory=lambda: next(_sequence))
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def ordering_key(self) -> str:
        """Events sharing a key are delivered in publish order"""
        return self.source_path or f"<{self.category.value}>"

    def __lt__(self, other: 'RoutedEvent') -> bool:
        """Compare events for priority queue ordering"""
        if self.severity != other.severity:
            return self.severity < other.severity
        return self.sequence < other.sequence
