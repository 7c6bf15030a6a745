"""
Data model shared by the orchestration components.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Tier(Enum):
    """Stack tier. Project stacks depend on the shared stack, never the reverse."""
    SHARED = "shared"
    PROJECT = "project"


class ComputeVariant(Enum):
    """Compute flavour of a topology."""
    FARGATE = "fargate"
    EC2 = "ec2"

    @classmethod
    def parse(cls, value: str) -> "ComputeVariant":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Compute variant must be one of: {', '.join(v.value for v in cls)}")


class StackState(Enum):
    """Stack status as reported by the control plane."""
    NOT_FOUND = "NOT_FOUND"
    CREATE_IN_PROGRESS = "CREATE_IN_PROGRESS"
    CREATE_COMPLETE = "CREATE_COMPLETE"
    CREATE_FAILED = "CREATE_FAILED"
    ROLLBACK_IN_PROGRESS = "ROLLBACK_IN_PROGRESS"
    ROLLBACK_COMPLETE = "ROLLBACK_COMPLETE"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    UPDATE_IN_PROGRESS = "UPDATE_IN_PROGRESS"
    UPDATE_COMPLETE_CLEANUP_IN_PROGRESS = "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS"
    UPDATE_COMPLETE = "UPDATE_COMPLETE"
    UPDATE_FAILED = "UPDATE_FAILED"
    UPDATE_ROLLBACK_IN_PROGRESS = "UPDATE_ROLLBACK_IN_PROGRESS"
    UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS = "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS"
    UPDATE_ROLLBACK_COMPLETE = "UPDATE_ROLLBACK_COMPLETE"
    UPDATE_ROLLBACK_FAILED = "UPDATE_ROLLBACK_FAILED"
    DELETE_IN_PROGRESS = "DELETE_IN_PROGRESS"
    DELETE_COMPLETE = "DELETE_COMPLETE"
    DELETE_FAILED = "DELETE_FAILED"
    REVIEW_IN_PROGRESS = "REVIEW_IN_PROGRESS"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_remote(cls, status: Optional[str]) -> "StackState":
        """Map a raw control-plane status string onto the enumeration."""
        if not status:
            return cls.UNKNOWN
        try:
            return cls(status)
        except ValueError:
            return cls.UNKNOWN

    @property
    def in_progress(self) -> bool:
        return self.value.endswith("_IN_PROGRESS")

    @property
    def healthy(self) -> bool:
        """Terminal success: the stack exists with a consistent resource set."""
        return self in HEALTHY_STATES

    @property
    def gone(self) -> bool:
        return self in (StackState.NOT_FOUND, StackState.DELETE_COMPLETE)


HEALTHY_STATES = frozenset({
    StackState.CREATE_COMPLETE,
    StackState.UPDATE_COMPLETE,
    StackState.UPDATE_ROLLBACK_COMPLETE,
})

# Stacks in these states cannot be updated and are destroyed and recreated
RECREATE_STATES = frozenset({
    StackState.CREATE_FAILED,
    StackState.ROLLBACK_COMPLETE,
    StackState.ROLLBACK_FAILED,
    StackState.DELETE_FAILED,
    StackState.UPDATE_ROLLBACK_FAILED,
})


class Operation(Enum):
    """Kind of mutation an apply or teardown issued."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_OP = "no_op"


@dataclass(frozen=True)
class StackDescriptor:
    """Everything needed to create or update one stack. Immutable per run."""
    canonical_name: str
    template_url: str
    parameters: Dict[str, str]
    tags: Dict[str, str]
    tier: Tier
    compute_variant: ComputeVariant
    capabilities: tuple = ("CAPABILITY_NAMED_IAM",)
    service: Optional[str] = None

    def cfn_parameters(self) -> List[Dict[str, str]]:
        return [
            {"ParameterKey": key, "ParameterValue": value}
            for key, value in self.parameters.items()
        ]

    def cfn_tags(self) -> List[Dict[str, str]]:
        return [{"Key": key, "Value": value} for key, value in self.tags.items()]


@dataclass(frozen=True)
class StackEvent:
    """One status-change event, used for diagnostics."""
    timestamp: str
    logical_id: str
    resource_type: str
    status: str
    reason: str = ""

    def describe(self) -> str:
        line = f"{self.timestamp} {self.logical_id} [{self.resource_type}] {self.status}"
        if self.reason:
            line += f": {self.reason}"
        return line


@dataclass
class ApplyResult:
    """Outcome of an apply: which operation ran and the state it ended in."""
    operation: Operation
    final_state: StackState
    stack_name: str = ""
    diagnostics: List[StackEvent] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    dry_run: bool = False

    @property
    def changed(self) -> bool:
        return self.operation is not Operation.NO_OP and not self.dry_run


@dataclass(frozen=True)
class BlockingResource:
    """A stack resource that failed to delete."""
    logical_id: str
    resource_type: str
    status_reason: str = ""
    physical_id: Optional[str] = None


@dataclass
class DrainTarget:
    """A compute service whose workload must reach zero before deletion."""
    cluster: str
    service: str
    compute_variant: ComputeVariant = ComputeVariant.FARGATE
    desired_count: Optional[int] = None
    running_count: Optional[int] = None
    timeout_budget: float = 90.0
    instance_timeout_budget: float = 180.0

    @property
    def service_ref(self) -> str:
        return f"{self.cluster}/{self.service}"


class StoreKind(Enum):
    OBJECT_STORE = "object_store"
    IMAGE_REGISTRY = "image_registry"
    SECRET_STORE = "secret_store"
    LOG_GROUP = "log_group"


class EmptyingStrategy(Enum):
    """How the reaper treats a store."""
    EMPTY = "empty"                        # remove members, keep the container
    EMPTY_AND_REMOVE = "empty_and_remove"  # remove members, then the container
    SCHEDULE_DELETE = "schedule_delete"    # secret: recoverable deletion window
    FORCE_DELETE = "force_delete"          # secret: bypass the recovery window
    DELETE = "delete"                      # log group: direct delete
    DELETE_PREFIX = "delete_prefix"        # log groups: everything under a prefix


@dataclass(frozen=True)
class StatefulStore:
    """A resource whose members a stack delete will not remove."""
    kind: StoreKind
    identifier: str
    strategy: EmptyingStrategy

    def describe(self) -> str:
        return f"{self.kind.value}:{self.identifier}"


@dataclass
class ProjectStack:
    """A discovered project-tier stack."""
    stack_name: str
    service: str
    compute_variant: ComputeVariant
    state: StackState
    extra: Dict[str, Any] = field(default_factory=dict)
