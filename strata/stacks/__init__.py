"""
Stack lifecycle: reading, observing, applying and gating.
"""

from .apply import StackApplier
from .gate import DependencyGate
from .observer import Observation, StackObserver
from .status import StackReader

__all__ = [
    "DependencyGate",
    "Observation",
    "StackApplier",
    "StackObserver",
    "StackReader",
]
