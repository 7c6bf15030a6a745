"""
Data models for recovery and resource cleanup.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..models import BlockingResource, StackState, StatefulStore


@dataclass
class OrphanResource:
    """An out-of-band resource matched by naming prefix."""
    service: str  # "vpc-link"
    resource_id: str
    name: str
    status: Optional[str] = None


@dataclass
class SweepResult:
    """Outcome of an orphan sweep. Failures are listed, never dropped."""
    prefix: str
    found: List[OrphanResource] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    still_present: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.deleted)


@dataclass
class RecoveryReport:
    """Accumulated history of a bounded delete recovery."""
    stack_name: str
    attempts: int = 0
    succeeded: bool = False
    final_state: StackState = StackState.UNKNOWN
    retained: List[BlockingResource] = field(default_factory=list)
    orphans_removed: int = 0
    # VPC link id -> why the sweep could not remove it
    orphan_failures: Dict[str, str] = field(default_factory=dict)

    def retain(self, blockers: List[BlockingResource]) -> None:
        known = {resource.logical_id for resource in self.retained}
        for blocker in blockers:
            if blocker.logical_id not in known:
                self.retained.append(blocker)
                known.add(blocker.logical_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stack": self.stack_name,
            "attempts": self.attempts,
            "succeeded": self.succeeded,
            "final_state": self.final_state.value,
            "orphans_removed": self.orphans_removed,
            "orphan_failures": dict(self.orphan_failures),
            "retained": [
                {
                    "logical_id": r.logical_id,
                    "type": r.resource_type,
                    "physical_id": r.physical_id,
                    "reason": r.status_reason,
                }
                for r in self.retained
            ],
        }


@dataclass
class ReapResult:
    """
    Outcome of emptying one stateful store.

    ``survivors`` lists exactly the members that could not be removed,
    keyed by member identifier with the error that kept them.
    """
    store: StatefulStore
    removed: int = 0
    survivors: Dict[str, str] = field(default_factory=dict)
    container_removed: bool = False
    missing: bool = False

    @property
    def ok(self) -> bool:
        return not self.survivors

    def fail(self, member: str, reason: str) -> None:
        self.survivors[member] = reason
