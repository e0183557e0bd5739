"""
Change Classifier.

Turns a ChangeEvent into a structured description of which logical fields
changed, by diffing the previous and current parsed content of the path
rather than its bytes.
"""

import asyncio
import difflib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..documents.frontmatter import parse_document
from ..documents.repository import DocumentRepository
from ..errors import ParseError, StateIOError
from ..models.documents import Priority, SpecDocument
from ..models.state import Representation
from ..state.store import StateStore
from .events import ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)

# Above this size the diff is computed off the event loop
OFFLOAD_DIFF_CHARS = 64 * 1024

WORKFLOW_STATUSES = {"ready", "in_progress", "complete", "blocked"}
METADATA_FIELDS = {"updated_at", "last_updated", "created_at", "timestamp", "version", "started_at"}
PROGRESS_FIELDS = {"completed", "total", "percentage", "subtasks"}
STRUCTURAL_FIELDS = {"depends_on", "id", "tasks"}


class ChangeType(Enum):
    ADDITION = "addition"
    DELETION = "deletion"
    MODIFICATION = "modification"


class ChangeCategory(Enum):
    """Logical category of a changed field"""
    STATUS = "status"
    ASSIGNMENT = "assignment"
    PRIORITY = "priority"
    PROGRESS = "progress"
    STRUCTURAL = "structural"
    METADATA = "metadata"
    OTHER = "other"


class DescriptionKind(Enum):
    CONTENT = "content"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    PARSE_ERROR = "parse_error"
    IGNORED = "ignored"


class Impact(Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class FieldChange:
    """One logical field that differs between two snapshots"""
    path: str
    change_type: ChangeType
    old_value: Any
    new_value: Any
    category: ChangeCategory
    spec_id: Optional[str] = None
    task_id: Optional[str] = None
    field: Optional[str] = None


@dataclass
class Snapshot:
    """Last known content of a path, raw and normalized"""
    path: Path
    text: str
    structure: Dict[str, Any]
    taken_at: datetime = field(default_factory=datetime.now)


@dataclass
class ChangeDescription:
    """Structured description of what a change did to the logical state"""
    event: ChangeEvent
    kind: DescriptionKind
    representation: Optional[Representation] = None
    state_category: Optional[str] = None
    changes: List[FieldChange] = field(default_factory=list)
    spec_ids: List[str] = field(default_factory=list)
    impact: Impact = Impact.NONE
    error: Optional[str] = None
    raw_diff: Optional[str] = None
    classified_at: datetime = field(default_factory=datetime.now)

    @property
    def is_parse_error(self) -> bool:
        return self.kind == DescriptionKind.PARSE_ERROR

    @property
    def affected_task_ids(self) -> List[str]:
        seen: List[str] = []
        for change in self.changes:
            if change.task_id and change.task_id not in seen:
                seen.append(change.task_id)
        return seen

    def changes_in(self, category: ChangeCategory) -> List[FieldChange]:
        return [c for c in self.changes if c.category == category]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.event.path),
            "kind": self.kind.value,
            "representation": self.representation.value if self.representation else None,
            "state_category": self.state_category,
            "spec_ids": self.spec_ids,
            "impact": self.impact.value,
            "error": self.error,
            "changes": [
                {
                    "path": c.path,
                    "type": c.change_type.value,
                    "category": c.category.value,
                    "old": c.old_value,
                    "new": c.new_value,
                }
                for c in self.changes
            ],
        }


def normalize_document(document: SpecDocument) -> Dict[str, Any]:
    """Normalize a document into the structure shared with state records"""
    tasks = {}
    for task in document.tasks:
        tasks[task.id] = {
            "title": task.title,
            "status": task.status.value,
            "assigned_agent": task.assigned_agent,
            "agent_type": task.agent_type,
            "depends_on": list(task.depends_on),
            "estimated_hours": task.estimated_hours,
            "subtasks": {s.id: s.completed for s in task.subtasks},
        }
    return {
        document.id: {
            "title": document.title,
            "status": document.status.value,
            "priority": document.priority.value,
            "phase": document.phase,
            "tasks": tasks,
        }
    }


def normalize_state(category: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a state category document, keyed by spec id where possible"""
    if category == "progress":
        structure = {}
        for spec_id, record in data.get("by_spec", {}).items():
            entry = {k: v for k, v in record.items() if k != "tasks"}
            entry["tasks"] = {
                task_id: dict(task) for task_id, task in record.get("tasks", {}).items()
            }
            structure[spec_id] = entry
        return structure

    if category == "assignments":
        structure = {}
        for spec_id, tasks in data.get("current_assignments", {}).items():
            structure[spec_id] = {
                "tasks": {
                    task_id: {
                        "assigned_agent": record.get("worker"),
                        "assignment_status": record.get("status"),
                        "started_at": record.get("started_at"),
                    }
                    for task_id, record in tasks.items()
                }
            }
        return structure

    # Non-entity categories are diffed as-is under a reserved key
    return {f"_{category}": data}


def categorize(field_name: Optional[str], path: str) -> ChangeCategory:
    if field_name is None:
        return ChangeCategory.STRUCTURAL
    if field_name in ("status", "assignment_status"):
        return ChangeCategory.STATUS
    if field_name == "assigned_agent":
        return ChangeCategory.ASSIGNMENT
    if field_name == "priority":
        return ChangeCategory.PRIORITY
    if field_name in PROGRESS_FIELDS or ".subtasks." in path:
        return ChangeCategory.PROGRESS
    if field_name in STRUCTURAL_FIELDS:
        return ChangeCategory.STRUCTURAL
    if field_name in METADATA_FIELDS:
        return ChangeCategory.METADATA
    return ChangeCategory.OTHER


def _locate(segments: List[str]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """Extract (spec_id, task_id, field) from a normalized path"""
    if not segments or segments[0].startswith("_"):
        return None, None, segments[-1] if segments else None
    spec_id = segments[0]
    if len(segments) >= 3 and segments[1] == "tasks":
        task_id = segments[2]
        field_name = segments[3] if len(segments) >= 4 else None
        return spec_id, task_id, field_name
    field_name = segments[1] if len(segments) >= 2 else None
    return spec_id, None, field_name


def deep_diff(old: Any, new: Any, prefix: Tuple[str, ...] = ()) -> List[FieldChange]:
    """
    Field-level diff of two normalized structures.

    Whole specs and whole tasks that appear or disappear are reported as a
    single structural change instead of one change per nested field.
    """
    changes: List[FieldChange] = []
    old = old if isinstance(old, dict) else {}
    new = new if isinstance(new, dict) else {}

    for key in list(old.keys()) + [k for k in new.keys() if k not in old]:
        segments = prefix + (str(key),)
        old_value = old.get(key)
        new_value = new.get(key)
        in_old, in_new = key in old, key in new

        entity_level = len(segments) == 1 or (len(segments) == 3 and segments[1] == "tasks")

        if isinstance(old_value, dict) and isinstance(new_value, dict):
            changes.extend(deep_diff(old_value, new_value, segments))
            continue

        if in_old and in_new and old_value == new_value:
            continue

        if not in_old:
            change_type = ChangeType.ADDITION
        elif not in_new:
            change_type = ChangeType.DELETION
        else:
            change_type = ChangeType.MODIFICATION

        path = ".".join(segments)
        spec_id, task_id, field_name = _locate(list(segments))
        if entity_level and not segments[0].startswith("_"):
            category = ChangeCategory.STRUCTURAL
            field_name = None
        else:
            category = categorize(field_name, path)

        changes.append(FieldChange(
            path=path,
            change_type=change_type,
            old_value=old_value,
            new_value=new_value,
            category=category,
            spec_id=spec_id,
            task_id=task_id,
            field=field_name,
        ))

    return changes


def assess_impact(changes: List[FieldChange]) -> Impact:
    """Rate how much a set of changes matters to the workflow"""
    if not changes:
        return Impact.NONE

    for change in changes:
        if change.category == ChangeCategory.STATUS:
            if change.old_value in WORKFLOW_STATUSES and change.new_value in WORKFLOW_STATUSES:
                return Impact.HIGH
        if change.category == ChangeCategory.ASSIGNMENT:
            if change.old_value and change.new_value and change.old_value != change.new_value:
                return Impact.HIGH
        if change.category == ChangeCategory.PRIORITY:
            try:
                if Priority(change.new_value).rank > Priority(change.old_value).rank:
                    return Impact.HIGH
            except ValueError:
                pass

    if any(change.task_id for change in changes) or len(changes) > 5:
        return Impact.MEDIUM

    return Impact.LOW


class ChangeClassifier:
    """
    Classifies changes to documents and state files.

    Features:
    - Snapshot cache of the last good content per path
    - Field-level diff of normalized structures
    - Semantic categories and impact rating
    - Malformed content reported as parse_error instead of dropped
    """

    def __init__(self, repository: DocumentRepository, store: StateStore):
        self.repository = repository
        self.store = store
        self._snapshots: Dict[str, Snapshot] = {}
        self._classified = 0
        self._parse_errors = 0

    def get_snapshot(self, path: Path) -> Optional[Snapshot]:
        return self._snapshots.get(str(Path(path)))

    def _origin(self, path: Path) -> Tuple[Optional[Representation], Optional[str]]:
        category = self.store.category_for(path)
        if category is not None:
            return Representation.RECORD, category
        if self.repository.is_document_path(path):
            return Representation.DOCUMENT, None
        return None, None

    def _normalize(self, path: Path, text: str,
                   representation: Representation, category: Optional[str]) -> Dict[str, Any]:
        """
        Raises:
            ParseError: If the content is malformed
        """
        if representation is Representation.DOCUMENT:
            return normalize_document(parse_document(text, source_path=path))
        return normalize_state(category, self.store.parse(category, text))

    async def prime(self, paths: List[Path]) -> int:
        """Take baseline snapshots so the first change diffs against real content"""
        primed = 0
        for path in paths:
            path = Path(path)
            representation, category = self._origin(path)
            if representation is None or not path.exists():
                continue
            try:
                text = await self.repository.read_text(path)
                structure = self._normalize(path, text, representation, category)
            except (ParseError, StateIOError) as e:
                logger.debug(f"Could not prime snapshot for {path}: {e.message}")
                continue
            self._snapshots[str(path)] = Snapshot(path=path, text=text, structure=structure)
            primed += 1
        logger.info(f"Primed {primed} snapshot(s)")
        return primed

    async def classify(self, event: ChangeEvent, previous: Optional[Snapshot] = None) -> ChangeDescription:
        """
        Describe the logical changes behind an event.

        Args:
            event: Debounced change event
            previous: Snapshot to diff against; defaults to the cached one

        Returns:
            ChangeDescription; never raises for malformed content
        """
        self._classified += 1
        path = Path(event.path)
        key = str(path)
        representation, category = self._origin(path)

        if representation is None:
            return ChangeDescription(event=event, kind=DescriptionKind.IGNORED)

        previous = previous if previous is not None else self._snapshots.get(key)
        old_structure = previous.structure if previous else {}
        old_text = previous.text if previous else ""

        if event.kind is ChangeKind.DELETE or not path.exists():
            changes = deep_diff(old_structure, {})
            self._snapshots.pop(key, None)
            return self._describe(event, DescriptionKind.DELETED, representation, category,
                                  changes, old_structure, old_text, "")

        try:
            text = await self.repository.read_text(path)
            structure = self._normalize(path, text, representation, category)
        except (ParseError, StateIOError) as e:
            self._parse_errors += 1
            logger.warning(f"Unparseable change to {path}: {e.message}")
            description = ChangeDescription(
                event=event,
                kind=DescriptionKind.PARSE_ERROR,
                representation=representation,
                state_category=category,
                spec_ids=self._entity_ids(old_structure),
                impact=Impact.HIGH,
                error=e.message,
            )
            return description

        if len(text) + len(old_text) > OFFLOAD_DIFF_CHARS:
            changes = await asyncio.to_thread(deep_diff, old_structure, structure)
        else:
            changes = deep_diff(old_structure, structure)

        self._snapshots[key] = Snapshot(path=path, text=text, structure=structure)
        kind = DescriptionKind.CONTENT if changes else DescriptionKind.UNCHANGED
        return self._describe(event, kind, representation, category,
                              changes, structure or old_structure, old_text, text)

    def _describe(self, event: ChangeEvent, kind: DescriptionKind,
                  representation: Representation, category: Optional[str],
                  changes: List[FieldChange], structure: Dict[str, Any],
                  old_text: str, new_text: str) -> ChangeDescription:
        raw_diff = "".join(difflib.unified_diff(
            old_text.splitlines(keepends=True),
            new_text.splitlines(keepends=True),
            fromfile=f"a/{event.path.name}",
            tofile=f"b/{event.path.name}",
        ))
        event.raw_diff = raw_diff

        spec_ids = [c.spec_id for c in changes if c.spec_id]
        if representation is Representation.DOCUMENT and not spec_ids:
            spec_ids = self._entity_ids(structure)
        spec_ids = list(dict.fromkeys(spec_ids))

        description = ChangeDescription(
            event=event,
            kind=kind,
            representation=representation,
            state_category=category,
            changes=changes,
            spec_ids=spec_ids,
            impact=assess_impact(changes),
            raw_diff=raw_diff,
        )
        logger.debug(
            f"Classified {event}: {kind.value}, {len(changes)} change(s), "
            f"impact {description.impact.value}"
        )
        return description

    @staticmethod
    def _entity_ids(structure: Dict[str, Any]) -> List[str]:
        return [key for key in structure if not key.startswith("_")]

    def get_status(self) -> Dict[str, Any]:
        return {
            "snapshots": len(self._snapshots),
            "classified": self._classified,
            "parse_errors": self._parse_errors,
        }
