"""
Compute service drain and task definition cleanup.
"""

from .drain import DrainController, DrainResult, DrainStatus
from .taskdefs import TaskDefinitionCleanup, cleanup_task_definitions

__all__ = [
    "DrainController",
    "DrainResult",
    "DrainStatus",
    "TaskDefinitionCleanup",
    "cleanup_task_definitions",
]
