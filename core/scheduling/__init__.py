"""
Dependency graph and next-task scheduling.
"""

from .graph import DependencyGraph, candidate_handoff, task_node
from .scheduler import TaskScheduler, SchedulingConstraints, SchedulingDecision, Recommendation

__all__ = [
    "DependencyGraph",
    "candidate_handoff",
    "task_node",
    "TaskScheduler",
    "SchedulingConstraints",
    "SchedulingDecision",
    "Recommendation",
]
