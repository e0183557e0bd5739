"""
specflow core package

Keeps specification documents and their fast-query records consistent, and
tracks and schedules the work they describe.
"""

__version__ = "1.0.0"

from .errors import WorkflowError
from .models import OperationResult, ProjectConfig, SpecDocument, Task

__all__ = [
    "WorkflowError",
    "OperationResult",
    "ProjectConfig",
    "SpecDocument",
    "Task",
]
