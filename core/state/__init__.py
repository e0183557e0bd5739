"""
State persistence for the fast-query representation.
"""

from .cache import CachedState, StateCache
from .store import StateStore, CATEGORIES, default_state

__all__ = [
    "StateCache",
    "CachedState",
    "StateStore",
    "CATEGORIES",
    "default_state",
]
