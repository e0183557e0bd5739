"""
Operation result models.

Every public operation reports success or failure through OperationResult
instead of raising for expected failure modes.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Generic, TypeVar
from pydantic import BaseModel, Field, ConfigDict, computed_field

from ..errors import WorkflowError


T = TypeVar('T')


class OperationStatus(Enum):
    """How a tracker, coordinator or arbiter call ended"""
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OperationResult(BaseModel, Generic[T]):
    """
    Outcome of a public workflow call.

    Expected failures (unknown spec, cancelled transaction, stale handoff)
    come back as a failed result carrying the error code of the
    ``WorkflowError`` that caused them.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    status: OperationStatus
    data: Optional[T] = None

    error: Optional[str] = None
    error_code: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None

    operation_type: str
    timestamp: datetime = Field(default_factory=datetime.now)
    processing_time_ms: Optional[float] = None

    @computed_field
    @property
    def success(self) -> bool:
        return self.status == OperationStatus.SUCCESS

    @classmethod
    def success_result(
        cls,
        data: T,
        operation_type: str,
        processing_time_ms: Optional[float] = None
    ) -> 'OperationResult[T]':
        """Wrap the value a call produced"""
        return cls(
            status=OperationStatus.SUCCESS,
            data=data,
            operation_type=operation_type,
            processing_time_ms=processing_time_ms
        )

    @classmethod
    def error_result(
        cls,
        error: str,
        operation_type: str,
        error_code: Optional[str] = None,
        error_details: Optional[Dict[str, Any]] = None,
        processing_time_ms: Optional[float] = None,
        status: OperationStatus = OperationStatus.FAILED
    ) -> 'OperationResult[T]':
        """Report a failure without raising"""
        return cls(
            status=status,
            error=error,
            error_code=error_code,
            error_details=error_details,
            operation_type=operation_type,
            processing_time_ms=processing_time_ms
        )

    @classmethod
    def from_exception(
        cls,
        exc: WorkflowError,
        operation_type: str,
        processing_time_ms: Optional[float] = None
    ) -> 'OperationResult[T]':
        """Create error result from a typed workflow error"""
        status = OperationStatus.FAILED
        if exc.code == "TRANSACTION_CANCELLED":
            status = OperationStatus.CANCELLED
        return cls.error_result(
            error=exc.message,
            operation_type=operation_type,
            error_code=exc.code,
            error_details=exc.details or None,
            processing_time_ms=processing_time_ms,
            status=status
        )
