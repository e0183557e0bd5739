"""
Progress computation and work assignment tracking.

``WorkAssignmentTracker`` lives in ``core.tracking.tracker``; it builds on
the sync package, which itself needs the progress helpers exported here.
"""

from .progress import (
    SpecProgress,
    ProjectProgress,
    calculate_spec_progress,
    calculate_project_progress,
    build_spec_record,
    refresh_progress_totals,
)

__all__ = [
    "SpecProgress",
    "ProjectProgress",
    "calculate_spec_progress",
    "calculate_project_progress",
    "build_spec_record",
    "refresh_progress_totals",
]
