"""
Specification document models.

A SpecDocument is the long-form representation of a unit of work: YAML
metadata embedded at the top of a Markdown file, with prose below it.
"""

import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


SPEC_ID_PATTERN = re.compile(r"^[A-Z]+-\d+$")


class SpecStatus(str, Enum):
    """Lifecycle status of a specification document"""
    BACKLOG = "backlog"
    ACTIVE = "active"
    DONE = "done"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class TaskStatus(str, Enum):
    """Lifecycle status of a task"""
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    BLOCKED = "blocked"


class Priority(str, Enum):
    """Specification priority, P0 being the most urgent"""
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"

    @property
    def rank(self) -> int:
        """Numeric rank where higher means more urgent"""
        return {"P0": 4, "P1": 3, "P2": 2, "P3": 1}[self.value]


class Subtask(BaseModel):
    """Checklist item inside a task"""
    id: str
    title: str = ""
    completed: bool = False

    @field_validator('id', mode='before')
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)


class Task(BaseModel):
    """A unit of work inside a specification"""
    model_config = ConfigDict(validate_assignment=True)

    id: str
    spec_id: Optional[str] = None
    title: str
    agent_type: Optional[str] = None
    status: TaskStatus = TaskStatus.READY
    depends_on: List[str] = Field(default_factory=list)
    context_requirements: List[str] = Field(default_factory=list)
    estimated_hours: Optional[float] = None
    assigned_agent: Optional[str] = None
    subtasks: List[Subtask] = Field(default_factory=list)

    @field_validator('id', mode='before')
    @classmethod
    def validate_id(cls, v: Any) -> str:
        """Task ids must be non-empty"""
        v = str(v).strip()
        if not v:
            raise ValueError('Task id cannot be empty')
        return v

    @field_validator('depends_on', 'context_requirements', mode='before')
    @classmethod
    def normalize_id_list(cls, v: Any) -> List[str]:
        """Accept a single value, a list, or null"""
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return [str(item) for item in v]

    @property
    def is_complete(self) -> bool:
        return self.status == TaskStatus.COMPLETE

    def get_subtask(self, subtask_id: str) -> Optional[Subtask]:
        for subtask in self.subtasks:
            if subtask.id == subtask_id:
                return subtask
        return None


class SpecDocument(BaseModel):
    """
    Parsed specification document.

    Holds the structured metadata from the document's frontmatter along
    with the prose body, so the document can be rendered back without
    losing human-authored content.
    """
    model_config = ConfigDict(validate_assignment=True)

    id: str
    title: str
    type: str = "feature"
    status: SpecStatus = SpecStatus.BACKLOG
    priority: Priority = Priority.P2
    phase: Optional[str] = None
    tasks: List[Task] = Field(default_factory=list)

    source_path: Optional[Path] = None
    body: str = ""

    # Frontmatter keys this model does not interpret, kept for rendering
    extra: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('id')
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Spec ids look like FEAT-100 or BUG-003"""
        v = str(v).strip()
        if not SPEC_ID_PATTERN.match(v):
            raise ValueError(f'Spec id must match TYPE-NNN: {v!r}')
        return v

    @field_validator('phase', mode='before')
    @classmethod
    def normalize_phase(cls, v: Any) -> Optional[str]:
        """YAML may load a bare phase number as an int"""
        return None if v is None else str(v)

    @model_validator(mode='after')
    def link_tasks(self) -> 'SpecDocument':
        """Set the spec back-reference on every task and reject duplicate ids"""
        seen = set()
        for task in self.tasks:
            if task.id in seen:
                raise ValueError(f'Duplicate task id {task.id} in {self.id}')
            seen.add(task.id)
            if task.spec_id != self.id:
                task.spec_id = self.id
        return self

    def get_task(self, task_id: str) -> Optional[Task]:
        """Find a task by id"""
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    @property
    def task_ids(self) -> List[str]:
        return [task.id for task in self.tasks]

    @property
    def all_tasks_complete(self) -> bool:
        return bool(self.tasks) and all(task.is_complete for task in self.tasks)
