"""
Recovery and cleanup of resources that block stack deletion.
"""

from .models import OrphanResource, ReapResult, RecoveryReport, SweepResult
from .orphans import OrphanCleaner
from .reaper import StoreReaper
from .recovery import RecoveryEngine

__all__ = [
    "OrphanCleaner",
    "OrphanResource",
    "ReapResult",
    "RecoveryEngine",
    "RecoveryReport",
    "StoreReaper",
    "SweepResult",
]
