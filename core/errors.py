"""
Error taxonomy for specflow.

Every expected failure mode has its own exception type carrying a stable
error code, so public operations can convert them into OperationResult
values without losing the category.
"""

from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for all workflow errors"""
    code = "WORKFLOW_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class StateIOError(WorkflowError):
    """Raised when a filesystem read or write fails"""
    code = "IO_ERROR"


class ParseError(WorkflowError):
    """Raised when document metadata or a state file is malformed"""
    code = "PARSE_ERROR"


class ConsistencyConflict(WorkflowError):
    """Raised when two representations diverge and need arbitration"""
    code = "CONSISTENCY_CONFLICT"


class DependencyViolation(WorkflowError):
    """Raised for cyclic or unmet task dependencies"""
    code = "DEPENDENCY_VIOLATION"


class CapacityExceeded(WorkflowError):
    """Raised when a worker already holds its maximum number of assignments"""
    code = "CAPACITY_EXCEEDED"


class AssignmentConflict(WorkflowError):
    """Raised when a task is claimed while already in progress"""
    code = "ASSIGNMENT_CONFLICT"


class NotAssignedError(WorkflowError):
    """Raised when completing a task that has no open assignment"""
    code = "NOT_ASSIGNED"


class EntityNotFound(WorkflowError):
    """Raised when a spec, task or subtask id is unknown"""
    code = "NOT_FOUND"


class TransactionError(WorkflowError):
    """Raised when a sync transaction fails and was rolled back"""
    code = "TRANSACTION_FAILED"


class TransactionCancelled(TransactionError):
    """Raised when a transaction is cancelled before its replace phase"""
    code = "TRANSACTION_CANCELLED"


class ConfigurationError(WorkflowError):
    """Raised when a project configuration cannot be loaded or validated"""
    code = "CONFIGURATION_ERROR"
